from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from ein_agent.models import CaseRecord
from ein_agent.normalize import MONTH_NAMES, STATE_CODE_TO_NAME
from ein_agent.settings import Settings


class FakeSession:
    """In-memory stand-in for BrowserSession. Selectors are matched as plain strings."""

    def __init__(self, *, present_all: bool = False):
        self.present_all = present_all
        self.present: set = set()
        self.checked: set = set()
        self.html = "<html><body></body></html>"
        self.text = ""
        self.url = "about:blank"
        self.staging_dir: Optional[Path] = None

        self.options_by_selector: Dict[str, List[Tuple[str, str]]] = {}
        self.default_options: List[Tuple[str, str]] = []
        self.texts_by_selector: Dict[str, List[str]] = {}
        self.attributes: Dict[Tuple[str, str], str] = {}
        self.script_result: Any = None
        self.on_click: Dict[str, Callable[["FakeSession"], None]] = {}
        self.pdf_bytes = b"%PDF-1.4 fake page"
        self.console: List[Dict[str, str]] = []

        self.clicks: List[str] = []
        self.filled: Dict[str, str] = {}
        self.selected: Dict[str, str] = {}
        self.evaluated: List[Tuple[str, Any]] = []
        self.html_reads = 0
        self.printed = 0
        self.closed = False

    def set_page(self, text: str, html: Optional[str] = None) -> None:
        self.text = text
        self.html = html if html is not None else f"<html><body><p>{text}</p></body></html>"

    # lifecycle / waiting
    def goto(self, url: str) -> None:
        self.url = url

    def wait_for_load(self, timeout_ms: Optional[int] = None) -> None:
        pass

    def wait_for(self, selector: str, timeout_ms: Optional[int] = None) -> bool:
        return self.count(selector) > 0

    def pause(self, seconds: float) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    # page
    def page_text(self) -> str:
        return self.text

    def page_html(self) -> str:
        self.html_reads += 1
        return self.html

    def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append((script, arg))
        if callable(self.script_result):
            return self.script_result(script, arg)
        return self.script_result

    def print_to_pdf(self, **layout: Any) -> bytes:
        self.printed += 1
        return self.pdf_bytes

    def console_log(self) -> List[Dict[str, str]]:
        return list(self.console)

    # elements
    def count(self, selector: str) -> int:
        return 1 if (self.present_all or selector in self.present) else 0

    def scroll_into_view(self, selector: str) -> None:
        pass

    def click(self, selector: str, *, timeout_ms: Optional[int] = None, force: bool = False) -> None:
        self.clicks.append(selector)
        self.checked.add(selector)
        hook = self.on_click.get(selector)
        if hook:
            hook(self)

    def fill(self, selector: str, value: str, *, timeout_ms: Optional[int] = None) -> None:
        self.filled[selector] = value

    def input_value(self, selector: str) -> str:
        return self.filled.get(selector, "")

    def is_checked(self, selector: str) -> bool:
        return selector in self.checked

    def select_option(self, selector: str, *, value: Optional[str] = None, label: Optional[str] = None) -> None:
        self.selected[selector] = value if value is not None else label

    def options(self, selector: str) -> List[Tuple[str, str]]:
        return list(self.options_by_selector.get(selector, self.default_options))

    def texts(self, selector: str, limit: int = 50) -> List[str]:
        return list(self.texts_by_selector.get(selector, []))[:limit]

    def attribute(self, selector: str, name: str) -> Optional[str]:
        return self.attributes.get((selector, name))


class RecordingNotifier:
    def __init__(self):
        self.events: List[Tuple[str, tuple]] = []

    def notify_success(self, record_id, completion_number):
        self.events.append(("success", (record_id, completion_number)))

    def notify_failure(self, record_id, code, status="fail", diagnostic_context=None):
        self.events.append(("failure", (record_id, code, status, diagnostic_context)))

    def notify_artifact_available(self, record_id, url, visibility_metadata=None):
        self.events.append(("artifact", (record_id, url, visibility_metadata)))

    def kinds(self) -> List[str]:
        return [k for k, _ in self.events]


STATE_OPTIONS = [(code, name.title()) for code, name in sorted(STATE_CODE_TO_NAME.items())]
MONTH_OPTIONS = [(str(i), name) for i, name in enumerate(MONTH_NAMES, start=1)]


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def month_options():
    return list(MONTH_OPTIONS)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        form_url="https://example.test/modiein/individual/index.jsp",
        settle_delay_s=0.0,
        interaction_attempts=1,
        backoff_base_s=0.0,
        backoff_max_s=0.0,
        download_timeout_s=0.0,
        download_poll_s=0.01,
        capture_review_page=False,
        staging_root=str(tmp_path / "staging"),
        results_dir=str(tmp_path / "results"),
        recovery_log_path=str(tmp_path / "logs" / "recovery.jsonl"),
        storage_backend="local",
        local_artifact_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def llc_case():
    return CaseRecord(
        record_id="a0X5f000001",
        entity_name="Sunrise Holdings, LLC",
        entity_type="LLC",
        formation_date="2024-08-15",
        entity_state="California",
        county="Alameda",
        number_of_members=2,
        responsible_first_name="Jordan",
        responsible_last_name="Reyes",
        responsible_ssn="123-45-6789",
        phone="(510) 555-0142",
        business_address_1="100 Main St.",
        city="Oakland",
        zip_code="94607-1234",
        account_id="001A",
        case_id="500C",
    )


@pytest.fixture
def sole_case():
    return CaseRecord(
        record_id="a0X5f000002",
        entity_name="Pat Lee",
        entity_type="Sole Proprietorship",
        trade_name="Lee Design Studio",
        formation_date="03/02/2023",
        entity_state="TX",
        responsible_first_name="Pat",
        responsible_last_name="Lee",
        responsible_ssn="987654321",
        business_address_1="9 Elm Rd",
        city="Austin",
        zip_code="73301",
    )
