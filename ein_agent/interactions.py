from __future__ import annotations

"""
interactions.py

One UI action (fill / choose / select / click) performed through an ordered
list of techniques. A single technique failing is normal and only logged; the
caller decides whether total exhaustion is fatal (required=True raises
InteractionFailure).

Exclusive-choice techniques, in priority order:
  1. scripted property set + synthetic input/change/click events
  2. direct click after scroll-into-view
  3. click on the associated <label for=...>
  4. click on a wrapping container element
  5. alternate lookup by name/value/role, then a scripted forced check
"""

import threading
from typing import Callable, List, Optional, Sequence, Tuple

from playwright.sync_api import TimeoutError as PWTimeoutError, Error as PWError

from .browser import Backoff
from .errors import InteractionFailure
from .models import ElementLocator
from .normalize import month_candidates
from .settings import setup_logger

logger = setup_logger("ein_agent.interactions")

Option = Tuple[str, str]


# -----------------------------------------------------------------------------
# Scripts
# -----------------------------------------------------------------------------
_SCRIPTED_CHECK_JS = """
(id) => {
  const el = document.getElementById(id);
  if (!el) return false;
  el.checked = true;
  for (const t of ['input', 'change', 'click']) {
    el.dispatchEvent(new Event(t, { bubbles: true }));
  }
  try { if (window.jQuery) window.jQuery(el).trigger('change'); } catch (e) {}
  try { if (el._valueTracker) el._valueTracker.setValue(''); } catch (e) {}
  try {
    if (window.angular) {
      const scope = window.angular.element(el).scope();
      if (scope) scope.$apply();
    }
  } catch (e) {}
  try { if (el.__vue__) el.__vue__.$forceUpdate(); } catch (e) {}
  return el.checked === true;
}
"""

_FORCE_CHECK_JS = """
(sel) => {
  const el = document.querySelector(sel);
  if (!el) return false;
  if ('checked' in el) { el.checked = true; } else { el.setAttribute('aria-checked', 'true'); }
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return el.checked === true || el.getAttribute('aria-checked') === 'true';
}
"""

_SCRIPTED_VALUE_JS = """
([sel, value]) => {
  const el = document.querySelector(sel);
  if (!el) return false;
  el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return el.value === value;
}
"""


def _css_id(element_id: str) -> str:
    return f"[id='{element_id}']"


# -----------------------------------------------------------------------------
# Exclusive-choice strategies
# -----------------------------------------------------------------------------
class ChoiceStrategy:
    name = "base"

    def attempt(self, session, element_id: str) -> bool:
        raise NotImplementedError


class ScriptedCheck(ChoiceStrategy):
    name = "scripted_check"

    def attempt(self, session, element_id: str) -> bool:
        return bool(session.evaluate(_SCRIPTED_CHECK_JS, element_id))


class DirectClick(ChoiceStrategy):
    name = "direct_click"

    def attempt(self, session, element_id: str) -> bool:
        sel = f"css={_css_id(element_id)}"
        if session.count(sel) == 0:
            return False
        session.scroll_into_view(sel)
        session.click(sel)
        return session.is_checked(sel)


class LabelClick(ChoiceStrategy):
    name = "label_click"

    def attempt(self, session, element_id: str) -> bool:
        label = f"css=label[for='{element_id}']"
        if session.count(label) == 0:
            return False
        session.click(label)
        return session.is_checked(f"css={_css_id(element_id)}")


class ContainerClick(ChoiceStrategy):
    name = "container_click"

    def containers(self, element_id: str) -> List[str]:
        inner = f"input{_css_id(element_id)}"
        return [
            f"css=div:has(> {inner})",
            f"css=span:has(> {inner})",
            f"css=label:has({inner})",
            f"css=[data-radio-id='{element_id}']",
            f"css=[data-testid*='{element_id}']",
        ]

    def attempt(self, session, element_id: str) -> bool:
        target = f"css={_css_id(element_id)}"
        for sel in self.containers(element_id):
            if session.count(sel) == 0:
                continue
            session.click(sel)
            if session.is_checked(target):
                return True
        return False


class AlternateLookup(ChoiceStrategy):
    name = "alternate_lookup"

    def alternates(self, element_id: str) -> List[str]:
        return [
            f"input[type='radio'][name*='{element_id}']",
            f"input[type='radio'][value='{element_id}']",
            f"[role='radio'][id='{element_id}']",
            f"[role='radio'][data-value='{element_id}']",
        ]

    def attempt(self, session, element_id: str) -> bool:
        present = [css for css in self.alternates(element_id) if session.count(f"css={css}") > 0]
        for css in present:
            try:
                session.click(f"css={css}", force=True)
                if session.is_checked(f"css={css}"):
                    return True
            except (PWTimeoutError, PWError) as e:
                logger.debug("[interact] alternate click %s failed: %s", css, e)
        for css in present:
            if session.evaluate(_FORCE_CHECK_JS, css):
                return True
        return False


CHOICE_STRATEGIES: Tuple[ChoiceStrategy, ...] = (
    ScriptedCheck(),
    DirectClick(),
    LabelClick(),
    ContainerClick(),
    AlternateLookup(),
)


# -----------------------------------------------------------------------------
# Dropdown resolution (pure)
# -----------------------------------------------------------------------------
MIN_PARTIAL_MATCH = 3


def resolve_option(options: Sequence[Option], requested: object) -> Optional[Option]:
    """
    Pick the (value, text) option for `requested`, first match wins:
    exact value, exact text, case-insensitive text, leading substring on
    text/value (3+ characters), then month-name candidates when the input is
    a month number.
    """
    req = str(requested if requested is not None else "").strip()
    if not req:
        return None
    low = req.lower()

    for o in options:
        if o[0] == req:
            return o
    for o in options:
        if o[1] == req:
            return o
    for o in options:
        if o[1].lower() == low:
            return o
    # numbers only match exactly or as months ("0" must not hit "10");
    # fragments must lead the option ("ember" is not September)
    if not req.isdigit() and len(low) >= MIN_PARTIAL_MATCH:
        for o in options:
            if o[1].lower().startswith(low) or o[0].lower().startswith(low):
                return o
    for cand in month_candidates(req):
        c = cand.lower()
        for o in options:
            if o[0] == cand or o[1] == cand:
                return o
        for o in options:
            if o[0].lower() == c or o[1].lower() == c:
                return o
    return None


# -----------------------------------------------------------------------------
# Interactor
# -----------------------------------------------------------------------------
class FormInteractor:
    def __init__(
        self,
        session,
        *,
        attempts: int = 3,
        backoff: Optional[Backoff] = None,
        cancel_event: Optional[threading.Event] = None,
        choice_strategies: Sequence[ChoiceStrategy] = CHOICE_STRATEGIES,
    ):
        self.session = session
        self.attempts = max(1, int(attempts))
        self.backoff = backoff or Backoff()
        self.cancel_event = cancel_event
        self.choice_strategies = tuple(choice_strategies)

    def _retry(self, label: str, fn: Callable[[], bool]) -> bool:
        for attempt in range(self.attempts):
            try:
                if fn():
                    return True
            except (PWTimeoutError, PWError) as e:
                logger.debug("[interact] %s attempt %d/%d error: %s", label, attempt + 1, self.attempts, e)
            if attempt < self.attempts - 1:
                self.backoff.sleep(attempt, self.cancel_event)
        return False

    def _finish(self, ok: bool, field_name: str, action: str, required: bool) -> bool:
        if ok:
            return True
        if required:
            logger.error("[interact] %s failed for required field %s", action, field_name)
            raise InteractionFailure(field_name, action)
        logger.warning("[interact] %s failed for optional field %s, continuing", action, field_name)
        return False

    # -------------------------------------------------------------------------
    # Free text
    # -------------------------------------------------------------------------
    def fill_text(self, locator: ElementLocator, value: Optional[str], *, field_name: str = "", required: bool = False) -> bool:
        text = "" if value is None else str(value)
        if not text.strip():
            logger.debug("[interact] skip empty value for %s", field_name or locator)
            return False
        sel = locator.selector
        css = sel[len("css="):] if sel.startswith("css=") else None

        def _direct() -> bool:
            if self.session.count(sel) == 0:
                return False
            self.session.scroll_into_view(sel)
            self.session.fill(sel, text)
            return True

        def _scripted() -> bool:
            if css is None:
                return False
            return bool(self.session.evaluate(_SCRIPTED_VALUE_JS, [css, text]))

        ok = self._retry(f"fill {field_name}", _direct) or self._retry(f"fill(script) {field_name}", _scripted)
        if ok:
            logger.info("[interact] filled %s", field_name or locator)
        return self._finish(ok, field_name or str(locator), "fill", required)

    # -------------------------------------------------------------------------
    # Exclusive choice
    # -------------------------------------------------------------------------
    def select_choice(self, element_id: str, *, field_name: str = "", required: bool = True) -> bool:
        label = field_name or element_id
        for strategy in self.choice_strategies:
            if self._retry(f"{strategy.name} {label}", lambda s=strategy: s.attempt(self.session, element_id)):
                logger.info("[interact] choice %s via %s", label, strategy.name)
                return True
            logger.debug("[interact] choice %s: %s exhausted", label, strategy.name)
        return self._finish(False, label, "choice", required)

    # -------------------------------------------------------------------------
    # Dropdowns
    # -------------------------------------------------------------------------
    def select_dropdown(self, locator: ElementLocator, value: Optional[str], *, field_name: str = "", required: bool = False) -> bool:
        label = field_name or str(locator)
        if value is None or not str(value).strip():
            logger.debug("[interact] skip empty dropdown value for %s", label)
            return False
        sel = locator.selector

        def _select() -> bool:
            if self.session.count(sel) == 0:
                return False
            match = resolve_option(self.session.options(sel), value)
            if match is None:
                # fail closed, nothing to retry
                raise _NoOption()
            self.session.scroll_into_view(sel)
            try:
                self.session.select_option(sel, value=match[0])
            except (PWTimeoutError, PWError):
                self.session.select_option(sel, label=match[1])
            logger.info("[interact] selected %s=%r for %r", label, match[1], value)
            return True

        try:
            ok = self._retry(f"select {label}", _select)
        except _NoOption:
            logger.warning("[interact] no option in %s matches %r", label, value)
            ok = False
        return self._finish(ok, label, "select", required)

    # -------------------------------------------------------------------------
    # Buttons
    # -------------------------------------------------------------------------
    def click(self, locator: ElementLocator, *, field_name: str = "", required: bool = True) -> bool:
        sel = locator.selector
        label = field_name or str(locator)

        def _plain() -> bool:
            if self.session.count(sel) == 0:
                return False
            self.session.scroll_into_view(sel)
            self.session.click(sel)
            return True

        def _forced() -> bool:
            if self.session.count(sel) == 0:
                return False
            self.session.click(sel, force=True)
            return True

        ok = self._retry(f"click {label}", _plain) or self._retry(f"click(force) {label}", _forced)
        if ok:
            logger.info("[interact] clicked %s", label)
        return self._finish(ok, label, "click", required)

    def click_if_present(self, locator: ElementLocator, *, timeout_ms: int, field_name: str = "") -> bool:
        if not self.session.wait_for(locator.selector, timeout_ms=timeout_ms):
            logger.info("[interact] %s not shown, proceeding", field_name or locator)
            return False
        return self.click(locator, field_name=field_name, required=False)


class _NoOption(Exception):
    pass
