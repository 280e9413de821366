import json
import threading
from pathlib import Path

import pytest
from playwright.sync_api import Error as PWError

from ein_agent.capture import DOCUMENT_CONTROLS
from ein_agent.errors import (
    ERROR_CANCELLED,
    ERROR_INFRASTRUCTURE,
    ERROR_INTERACTION,
    ERROR_NO_COMPLETION_NUMBER,
    ERROR_TERMINAL_REJECTION,
    FAIL_CODE_SENTINEL,
    UNKNOWN_MESSAGE_SENTINEL,
    InfrastructureError,
    PersistenceFailure,
    RunCancelled,
)
from ein_agent.gateways import ArtifactStore, LocalArtifactStore
from ein_agent.models import CheckpointResult, FailureClassification, WorkflowContext, WorkflowState
from ein_agent.orchestrator import EinWorkflowOrchestrator, run_automation
from ein_agent.recovery import decode_document
from ein_agent.screens import FIELD_LOCATORS

from conftest import MONTH_OPTIONS, STATE_OPTIONS, FakeSession, RecordingNotifier

CONFIRMATION = "Congratulations! Your EIN is 12-3456789. Please keep this letter."
REJECTION = "We are unable to provide you with an EIN. Please try again later."


def _site(session=None):
    s = session or FakeSession(present_all=True)
    s.script_result = True
    s.default_options = STATE_OPTIONS + MONTH_OPTIONS
    s.on_click[FIELD_LOCATORS["final_submit"].selector] = lambda page: page.set_page(CONFIRMATION)
    return s


def _factory(session):
    def _make(settings, staging_dir, cancel_event):
        session.staging_dir = staging_dir
        return session

    return _make


def _serve_letter(session):
    def _download(page):
        (page.staging_dir / "CP575.pdf").write_bytes(b"%PDF-1.7 letter")

    session.on_click[DOCUMENT_CONTROLS[0].selector] = _download


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(str(tmp_path / "artifacts"))


def _run(case, settings, store, notifier, session, **kw):
    return run_automation(case, settings=settings, store=store, notifier=notifier, session_factory=_factory(session), **kw)


def test_successful_filing(sole_case, settings, store, notifier):
    session = _site()
    _serve_letter(session)

    result = _run(sole_case, settings, store, notifier, session)

    assert result.success
    assert result.completion_number == "12-3456789"
    assert result.state == WorkflowState.SUCCESS
    assert result.error_type is None
    assert len(result.artifact_urls) == 1
    assert result.artifact_urls[0].endswith("/EntityProcess/a0X5f000002/PatLee-ID-EINLetter.pdf")
    assert notifier.kinds() == ["success", "artifact"]
    assert notifier.events[1][1][2]["visible"] is True

    assert session.url == settings.form_url
    assert session.filled["css=[id='applicantSSN3']"] == "987"
    assert session.filled["css=[id='businessOperationalTradeName']"] == "Lee Design Studio"
    assert session.selected["css=[id='physicalAddressState']"] == "TX"
    assert session.closed
    assert not (Path(settings.staging_root) / result.run_id).exists()

    saved = list(Path(settings.results_dir).glob("*.json"))
    assert len(saved) == 1
    assert json.loads(saved[0].read_text())["completion_number"] == "12-3456789"


def test_review_page_is_captured_hidden(sole_case, settings, store, notifier):
    settings.capture_review_page = True
    session = _site()
    _serve_letter(session)

    result = _run(sole_case, settings, store, notifier, session)

    assert result.success
    names = [u.rsplit("/", 1)[-1] for u in result.artifact_urls]
    assert names == ["PatLee-ID-EINSubmission.pdf", "PatLee-ID-EINLetter.pdf"]
    visibility = [e[1][2]["visible"] for e in notifier.events if e[0] == "artifact"]
    assert visibility == [False, True]


def test_rejection_without_reference_number(llc_case, settings, store, notifier):
    session = _site()
    session.on_click[FIELD_LOCATORS["continue"].selector] = lambda page: page.set_page(REJECTION)

    result = _run(llc_case, settings, store, notifier, session)

    assert not result.success
    assert result.classification == FailureClassification.TERMINAL_REJECTION
    assert result.reference_number is None
    assert result.message == UNKNOWN_MESSAGE_SENTINEL
    assert result.error_type == ERROR_TERMINAL_REJECTION
    assert result.state == WorkflowState.ENTITY_CLASSIFICATION

    # diagnostic artifact still produced, hidden from the client
    assert len(result.artifact_urls) == 1
    assert result.artifact_urls[0].endswith("-ID-EINSubmissionFailure.pdf")
    assert session.printed == 1
    artifact_events = [e for e in notifier.events if e[0] == "artifact"]
    assert artifact_events[0][1][2]["visible"] is False

    failure = [e for e in notifier.events if e[0] == "failure"]
    assert len(failure) == 1
    assert failure[0][1][1] == FAIL_CODE_SENTINEL
    assert failure[0][1][2] == "fail"

    with open(settings.recovery_log_path, encoding="utf-8") as f:
        kinds = [json.loads(line)["kind"] for line in f]
    assert "failure" in kinds and "document" in kinds


def test_rejection_with_reference_number_is_the_failure_code(llc_case, settings, store, notifier):
    session = _site()
    session.on_click[FIELD_LOCATORS["continue"].selector] = lambda page: page.set_page(REJECTION + " Reference Number 101.")

    result = _run(llc_case, settings, store, notifier, session)

    assert result.reference_number == "101"
    assert result.message == ""
    failure = [e for e in notifier.events if e[0] == "failure"]
    assert failure[0][1][1] == "101"


def test_missing_completion_number(sole_case, settings, store, notifier):
    session = _site()
    session.on_click[FIELD_LOCATORS["final_submit"].selector] = lambda page: page.set_page("Thank you.")

    result = _run(sole_case, settings, store, notifier, session)

    assert not result.success
    assert result.error_type == ERROR_NO_COMPLETION_NUMBER
    assert result.classification == FailureClassification.UNKNOWN
    assert result.state == WorkflowState.CONFIRMATION
    assert "success" not in notifier.kinds()


class StuckRadioSession(FakeSession):
    def click(self, selector, *, timeout_ms=None, force=False):
        if "limited" in selector:
            raise PWError("Element is not visible")
        super().click(selector, timeout_ms=timeout_ms, force=force)


def test_required_choice_exhaustion_ends_run(llc_case, settings, store, notifier):
    session = _site(StuckRadioSession(present_all=True))
    session.script_result = lambda script, arg: "limited" not in str(arg)

    result = _run(llc_case, settings, store, notifier, session)

    assert not result.success
    assert result.error_type == ERROR_INTERACTION
    assert result.state == WorkflowState.ENTITY_CLASSIFICATION
    assert result.message == UNKNOWN_MESSAGE_SENTINEL
    assert session.closed
    assert [e[0] for e in notifier.events][-1] == "failure"


def test_failure_protocol_is_idempotent_per_page(llc_case, settings, store, notifier, tmp_path):
    session = _site()
    session.set_page(REJECTION)
    orch = EinWorkflowOrchestrator(settings, store=store, notifier=notifier, session_factory=_factory(session))
    ctx = WorkflowContext(run_id="run_x", case=llc_case, staging_dir=tmp_path / "s", session=session)

    first = orch._handle_failure(ctx, CheckpointResult(FailureClassification.TERMINAL_REJECTION))
    second = orch._handle_failure(ctx, CheckpointResult(FailureClassification.TERMINAL_REJECTION))

    assert first.classification == second.classification == FailureClassification.TERMINAL_REJECTION
    assert notifier.kinds().count("failure") == 1
    assert session.printed == 1


def test_infrastructure_fault_is_caught_at_run_boundary(sole_case, settings, store, notifier):
    session = _site()

    def _dead_goto(url):
        raise InfrastructureError("browser handle lost during goto")

    session.goto = _dead_goto

    result = _run(sole_case, settings, store, notifier, session)

    assert not result.success
    assert result.error_type == ERROR_INFRASTRUCTURE
    assert result.record_id == sole_case.record_id
    assert result.run_id
    assert session.closed
    assert notifier.kinds() == ["failure"]


def test_cancelled_run(sole_case, settings, store, notifier):
    def _factory_cancelled(settings, staging_dir, cancel_event):
        raise RunCancelled("run cancelled")

    event = threading.Event()
    event.set()
    result = run_automation(
        sole_case, settings=settings, store=store, notifier=notifier, session_factory=_factory_cancelled, cancel_event=event
    )
    assert result.error_type == ERROR_CANCELLED
    assert not result.success


def test_case_payload_uses_crm_field_names(settings, store, notifier):
    session = _site()
    _serve_letter(session)
    payload = {
        "RecordId": "a0X9",
        "EntityName": "Pat Lee",
        "EntityType": "Sole Proprietorship",
        "ResponsibleFirstName": "Pat",
        "ResponsibleLastName": "Lee",
        "ResponsibleSsn": "987-65-4321",
        "EntityState": "Texas",
        "City": "Austin",
        "ZipCode": "73301",
        "BusinessAddress1": "9 Elm Rd",
        "TradeName": None,
    }

    result = _run(payload, settings, store, notifier, session)

    assert result.success
    assert result.record_id == "a0X9"


def test_invalid_case_payload_is_a_failed_result(settings, store, notifier):
    result = run_automation({"EntityName": "No Id"}, settings=settings, store=store, notifier=notifier)
    assert not result.success
    assert result.error_type == ERROR_INFRASTRUCTURE
    assert "record" in result.message.lower()


def test_letter_capture_failure_keeps_success(sole_case, settings, store, notifier):
    session = _site()
    session.pdf_bytes = b""

    result = _run(sole_case, settings, store, notifier, session)

    assert result.success
    assert result.completion_number == "12-3456789"
    assert result.artifact_urls == []
    assert [a.succeeded for a in result.capture_attempts] == [False, False, False]
    assert notifier.kinds() == ["success"]


class DownStore(ArtifactStore):
    def upload_artifact(self, payload, logical_name, content_type, visible, external_ids=None):
        raise PersistenceFailure("blob service unavailable")

    def upload_structured_log(self, record_id, entries, *, entity_name=""):
        raise PersistenceFailure("blob service unavailable")

    def upload_diagnostic_log(self, record_id, text):
        raise PersistenceFailure("blob service unavailable")


def test_storage_outage_keeps_success_and_recovery_bytes(sole_case, settings, notifier):
    session = _site()
    _serve_letter(session)

    result = _run(sole_case, settings, DownStore(), notifier, session)

    assert result.success
    assert result.completion_number == "12-3456789"
    assert result.artifact_urls == []
    assert notifier.kinds() == ["success"]

    with open(settings.recovery_log_path, encoding="utf-8") as f:
        rows = [json.loads(line) for line in f]
    docs = [r for r in rows if r["kind"] == "document"]
    assert len(docs) == 1
    assert decode_document(docs[0]["content_b64"]) == b"%PDF-1.7 letter"


def test_diagnostic_log_carries_browser_console(sole_case, settings, store, notifier, tmp_path):
    session = _site()
    _serve_letter(session)
    session.console.append({"level": "error", "text": "Uncaught TypeError: x is undefined", "url": settings.form_url})

    result = _run(sole_case, settings, store, notifier, session)

    assert result.success
    logs = list((tmp_path / "artifacts" / "logs" / sole_case.record_id).glob("automation_*.log"))
    assert len(logs) == 1
    text = logs[0].read_text(encoding="utf-8")
    assert "--- browser console (1) ---" in text
    assert f"[error] {settings.form_url} Uncaught TypeError: x is undefined" in text


def test_payload_of_the_wrong_shape_is_a_failed_result(settings, store, notifier):
    result = run_automation(["RecordId", "a0X9"], settings=settings, store=store, notifier=notifier)
    assert not result.success
    assert result.record_id == ""
    assert result.error_type == ERROR_INFRASTRUCTURE
    assert notifier.kinds() == ["failure"]
