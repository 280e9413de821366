from __future__ import annotations

"""
extraction.py

Pull a short reference code or a diagnostic message off a failure page.

Each extractor fetches the page markup once per call. If that snapshot has no
form of the extractor's marker phrase, it returns None without running a
single strategy. Otherwise strategies run in order and the first non-empty
result wins:
  1. structured lookup scoped to the diagnostic panel
  2. the same lookup across the whole document
  3. pattern match over the cached raw markup
  4. in-page scripted DOM query (content injected after the snapshot)
  5. offline re-parse of the cached markup with BeautifulSoup
"""

import html as html_lib
import re
from typing import Callable, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup
from playwright.sync_api import TimeoutError as PWTimeoutError, Error as PWError

from .settings import setup_logger

logger = setup_logger("ein_agent.extraction")

Strategy = Callable[[object, str], Optional[str]]

ALERT_BOX_CLASS = "ErrorAlertBox_fixSectionAlert__YrMmr"
ALERT_TITLE_BOILERPLATE = "the following error has occurred:"
ERROR_LIST_ID = "errorListId"
MESSAGE_DELIMITER = "; "

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def _flatten(markup: str) -> str:
    text = _TAG_RE.sub(" ", markup or "")
    return _WS_RE.sub(" ", html_lib.unescape(text)).strip()


def join_fragments(fragments: Iterable[str]) -> Optional[str]:
    """Dedupe, drop boilerplate titles, join with '; '."""
    seen: List[str] = []
    for f in fragments:
        t = _WS_RE.sub(" ", html_lib.unescape(_TAG_RE.sub(" ", f or ""))).strip()
        if not t or t.lower() == ALERT_TITLE_BOILERPLATE or t in seen:
            continue
        seen.append(t)
    return MESSAGE_DELIMITER.join(seen) if seen else None


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------
class LayeredExtractor:
    name = "extractor"
    marker_re: re.Pattern = re.compile(r"$^")

    def has_marker(self, markup: str) -> bool:
        if not markup:
            return False
        return bool(self.marker_re.search(markup) or self.marker_re.search(_flatten(markup)))

    def strategies(self) -> List[Tuple[str, Strategy]]:
        return [
            ("panel_lookup", self.panel_lookup),
            ("document_lookup", self.document_lookup),
            ("raw_pattern", self.raw_pattern),
            ("script_query", self.script_query),
            ("offline_reparse", self.offline_reparse),
        ]

    def extract(self, session) -> Optional[str]:
        try:
            markup = session.page_html()
        except (PWTimeoutError, PWError) as e:
            logger.warning("[extract] %s: page snapshot failed: %s", self.name, e)
            return None

        if not self.has_marker(markup):
            logger.debug("[extract] %s: no marker on page, skipping", self.name)
            return None

        for strategy_name, fn in self.strategies():
            try:
                found = fn(session, markup)
            except (PWTimeoutError, PWError) as e:
                logger.debug("[extract] %s/%s error: %s", self.name, strategy_name, e)
                continue
            if found:
                logger.info("[extract] %s found via %s", self.name, strategy_name)
                return found
        logger.info("[extract] %s: marker present but nothing extracted", self.name)
        return None

    def panel_lookup(self, session, markup: str) -> Optional[str]:
        raise NotImplementedError

    def document_lookup(self, session, markup: str) -> Optional[str]:
        raise NotImplementedError

    def raw_pattern(self, session, markup: str) -> Optional[str]:
        raise NotImplementedError

    def script_query(self, session, markup: str) -> Optional[str]:
        raise NotImplementedError

    def offline_reparse(self, session, markup: str) -> Optional[str]:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# Reference numbers
# -----------------------------------------------------------------------------
PANEL_SELECTORS = (
    f"css=.{ALERT_BOX_CLASS}",
    f"xpath=//*[@id='{ERROR_LIST_ID}']/..",
    "css=li.validation_error_text",
    "css=[role='alert']",
)
DOCUMENT_TEXT_SELECTORS = "css=p, li, td, b, strong, span, div"

_REFERENCE_JS = r"""
() => {
  const text = document.body ? document.body.innerText : '';
  const m = text.match(/reference\s*(?:number|no\.?|num|#)\s*(?:is|:|#|-)?\s*(\d+)/i);
  return m ? m[1] : null;
}
"""


class ReferenceNumberExtractor(LayeredExtractor):
    name = "reference_number"
    marker_re = re.compile(r"reference\s*(?:number|no\b|num\b|#)", re.IGNORECASE)
    value_re = re.compile(r"reference\s*(?:number|no\.?|num|#)\s*(?:is|:|#|-)?\s*(\d+)", re.IGNORECASE)

    def _search(self, texts: Iterable[str]) -> Optional[str]:
        for t in texts:
            m = self.value_re.search(_WS_RE.sub(" ", t or ""))
            if m:
                return m.group(1)
        return None

    def panel_lookup(self, session, markup: str) -> Optional[str]:
        for sel in PANEL_SELECTORS:
            found = self._search(session.texts(sel))
            if found:
                return found
        return None

    def document_lookup(self, session, markup: str) -> Optional[str]:
        return self._search(session.texts(DOCUMENT_TEXT_SELECTORS, limit=400))

    def raw_pattern(self, session, markup: str) -> Optional[str]:
        return self._search([markup])

    def script_query(self, session, markup: str) -> Optional[str]:
        found = session.evaluate(_REFERENCE_JS)
        return str(found) if found else None

    def offline_reparse(self, session, markup: str) -> Optional[str]:
        soup = BeautifulSoup(markup, "html.parser")
        return self._search([soup.get_text(" ")])


# -----------------------------------------------------------------------------
# Diagnostic messages
# -----------------------------------------------------------------------------
_ERROR_HEADER_RE = re.compile(r"error\(s\)\s+has\s+occurred:?", re.IGNORECASE)

_MESSAGE_JS = r"""
() => {
  const out = [];
  const snap = document.evaluate(
    "//*[contains(text(), 'Error(s) has occurred')]",
    document, null, XPathResult.ORDERED_NODE_SNAPSHOT_TYPE, null);
  for (let i = 0; i < snap.snapshotLength; i++) {
    const node = snap.snapshotItem(i);
    const host = node.parentElement || node;
    const text = (host.innerText || '').replace(/Error\(s\) has occurred:?/i, '').trim();
    if (text) out.push(text);
  }
  document.querySelectorAll("li.validation_error_text, a[style*='990000']").forEach(el => {
    const t = (el.innerText || '').trim();
    if (t) out.push(t);
  });
  return out;
}
"""

_RAW_MESSAGE_PATTERNS = (
    re.compile(r"<a[^>]*style=\"[^\"]*#990000[^\"]*\"[^>]*>(.*?)</a>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<li[^>]*class=\"[^\"]*validation_error_text[^\"]*\"[^>]*>(.*?)</li>", re.IGNORECASE | re.DOTALL),
    re.compile(r"Error\(s\) has occurred:?\s*([^<]+)", re.IGNORECASE),
)


class ErrorMessageExtractor(LayeredExtractor):
    name = "error_message"
    marker_re = re.compile(
        r"error\(s\)\s+has\s+occurred|the\s+following\s+error|validation_error_text|" + ERROR_LIST_ID + "|" + ALERT_BOX_CLASS,
        re.IGNORECASE,
    )

    def panel_lookup(self, session, markup: str) -> Optional[str]:
        box = f".{ALERT_BOX_CLASS}"
        fragments: List[str] = []
        fragments += session.texts(f"css={box} .section-alert__title")
        fragments += session.texts(f"css={box} ol li")
        fragments += session.texts(f"css={box} ul li")
        for sel in (f"css={box} ol li a", f"css={box} ul li a"):
            label = session.attribute(sel, "aria-label")
            if label:
                fragments.append(label)
        found = join_fragments(fragments)
        if found:
            return found
        fragments = session.texts(f"xpath=//*[@id='{ERROR_LIST_ID}']/..//a[contains(@style, '#990000')]")
        fragments += session.texts(f"xpath=//*[@id='{ERROR_LIST_ID}']/..//li[contains(@class, 'validation_error_text')]")
        return join_fragments(fragments)

    def document_lookup(self, session, markup: str) -> Optional[str]:
        fragments = session.texts("css=.validation_error_text")
        fragments += session.texts("css=a[style*='#990000']")
        return join_fragments(fragments)

    def raw_pattern(self, session, markup: str) -> Optional[str]:
        fragments: List[str] = []
        for pattern in _RAW_MESSAGE_PATTERNS:
            fragments += pattern.findall(markup)
            if fragments:
                break
        return join_fragments(fragments)

    def script_query(self, session, markup: str) -> Optional[str]:
        found = session.evaluate(_MESSAGE_JS)
        if not found:
            return None
        return join_fragments(_ERROR_HEADER_RE.sub("", str(f)) for f in found)

    def offline_reparse(self, session, markup: str) -> Optional[str]:
        soup = BeautifulSoup(markup, "html.parser")
        fragments = [el.get_text(" ") for el in soup.select("li.validation_error_text, a[style*='990000']")]
        if not fragments:
            for node in soup.find_all(string=_ERROR_HEADER_RE):
                host = node.parent if node.parent is not None else node
                fragments.append(_ERROR_HEADER_RE.sub("", host.get_text(" ")))
        return join_fragments(fragments)
