from __future__ import annotations

"""
Completion-number (EIN) lookup on the confirmation page.

Live heuristics first, then the same three heuristics against an offline
BeautifulSoup parse of the markup captured up front. Not finding a number is
not an error here; the orchestrator turns it into a failure outcome.
"""

import re
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup
from playwright.sync_api import TimeoutError as PWTimeoutError, Error as PWError

from .settings import setup_logger

logger = setup_logger("ein_agent.completion")

COMPLETION_NUMBER_RE = re.compile(r"^\d{2}-\d{7}$")
_SEARCH_RE = re.compile(r"(?<!\d)(\d{2}-\d{7})(?!\d)")

LABEL_VALUE_SELECTORS = (
    "css=td[align='left'] > b",
    "xpath=//td[contains(normalize-space(.), 'EIN')]/following-sibling::td[1]",
    "xpath=//th[contains(normalize-space(.), 'EIN')]/following-sibling::td[1]",
)
BOLD_SELECTOR = "css=b, strong"


def first_conforming(texts: Iterable[str], *, require_separator: bool = False) -> Optional[str]:
    for t in texts:
        t = (t or "").strip()
        if require_separator and "-" not in t:
            continue
        m = _SEARCH_RE.search(t)
        if m and COMPLETION_NUMBER_RE.match(m.group(1)):
            return m.group(1)
    return None


class CompletionNumberExtractor:
    def extract(self, session) -> Optional[str]:
        try:
            markup = session.page_html()
        except (PWTimeoutError, PWError) as e:
            logger.warning("[completion] markup snapshot failed: %s", e)
            markup = ""

        live_ok = True
        for name, fn in (
            ("label_row", self._label_row),
            ("bold_separator", self._bold_separator),
            ("page_scan", self._page_scan),
        ):
            try:
                found = fn(session)
            except (PWTimeoutError, PWError) as e:
                live_ok = False
                logger.debug("[completion] %s unavailable: %s", name, e)
                continue
            if found:
                logger.info("[completion] found via %s", name)
                return found

        if markup:
            found = self.extract_offline(markup)
            if found:
                logger.info("[completion] found via offline parse (live_ok=%s)", live_ok)
                return found
        logger.info("[completion] no completion number on page")
        return None

    def _label_row(self, session) -> Optional[str]:
        for sel in LABEL_VALUE_SELECTORS:
            found = first_conforming(session.texts(sel))
            if found:
                return found
        return None

    def _bold_separator(self, session) -> Optional[str]:
        return first_conforming(session.texts(BOLD_SELECTOR, limit=200), require_separator=True)

    def _page_scan(self, session) -> Optional[str]:
        return first_conforming([session.page_text()])

    @staticmethod
    def extract_offline(markup: str) -> Optional[str]:
        soup = BeautifulSoup(markup, "html.parser")

        cells: List[str] = [b.get_text(" ") for b in soup.select("td[align='left'] > b")]
        for td in soup.find_all(["td", "th"]):
            if "EIN" in td.get_text(" "):
                nxt = td.find_next_sibling("td")
                if nxt is not None:
                    cells.append(nxt.get_text(" "))
        found = first_conforming(cells)
        if found:
            return found

        found = first_conforming((b.get_text(" ") for b in soup.find_all(["b", "strong"])), require_separator=True)
        if found:
            return found

        return first_conforming([soup.get_text(" ")])
