from __future__ import annotations

"""
browser.py

Playwright-backed browser control handle for one run.

What this session provides:
- Launch/close lifecycle (optionally with channel="chrome", stealth flags).
- A small selector-based surface the resilience layer builds on:
  navigate, count/click/fill/select, run a script, read page text/markup,
  print the page to PDF.
- A per-run staging directory that receives every browser download. Files are
  written under a ".crdownload" name and renamed once complete, so a poller can
  tell partial from finished files.
- Cancellable bounded pauses (pump Playwright events while waiting).
- A bounded buffer of browser console messages for the diagnostic log.

Exactly one WorkflowContext owns a session; it is not thread-safe.
"""

import os
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, TypeVar

from playwright.sync_api import (
    sync_playwright,
    TimeoutError as PWTimeoutError,
    Error as PWError,
)

from .errors import InfrastructureError, RunCancelled
from .settings import setup_logger

logger = setup_logger("ein_agent.browser")

PARTIAL_DOWNLOAD_SUFFIX = ".crdownload"
CONSOLE_LOG_LIMIT = 500

_CLOSED_MARKERS = ("has been closed", "target closed", "browser has disconnected", "connection closed")

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Waiting helpers
# -----------------------------------------------------------------------------
def sleep_or_cancel(seconds: float, cancel_event: Optional[threading.Event] = None) -> None:
    if seconds <= 0:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("run cancelled")
        return
    if cancel_event is None:
        time.sleep(seconds)
        return
    if cancel_event.wait(seconds):
        raise RunCancelled("run cancelled")


@dataclass
class Backoff:
    max_retries: int = 2
    base_delay_s: float = 0.25
    max_delay_s: float = 1.5

    def delay(self, attempt: int) -> float:
        delay = min(self.max_delay_s, self.base_delay_s * (2 ** attempt))
        jitter = (attempt % 3) * 0.03
        return delay + jitter

    def sleep(self, attempt: int, cancel_event: Optional[threading.Event] = None) -> None:
        sleep_or_cancel(self.delay(attempt), cancel_event)


def _is_closed_error(e: BaseException) -> bool:
    msg = str(e).lower()
    return any(m in msg for m in _CLOSED_MARKERS)


def _translate_closed(fn: Callable[..., T]) -> Callable[..., T]:
    """A dead browser is an infrastructure fault, not a strategy failure."""

    @wraps(fn)
    def wrapper(self: "BrowserSession", *args: Any, **kwargs: Any) -> T:
        try:
            return fn(self, *args, **kwargs)
        except PWTimeoutError:
            raise
        except PWError as e:
            if _is_closed_error(e):
                self._hard_reset()
                raise InfrastructureError(f"browser handle lost during {fn.__name__}: {e}") from e
            raise

    return wrapper


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------
class BrowserSession:
    def __init__(
        self,
        *,
        staging_dir: Path,
        headless: bool = True,
        viewport: Tuple[int, int] = (1280, 900),
        default_timeout_ms: int = 15_000,
        page_load_timeout_ms: int = 30_000,
        channel: Optional[str] = None,
        stealth_mode: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.staging_dir = Path(staging_dir)
        self.headless = headless
        self.viewport = viewport
        self.default_timeout_ms = int(default_timeout_ms)
        self.page_load_timeout_ms = int(page_load_timeout_ms)
        self.channel = channel
        self.stealth_mode = stealth_mode
        self.cancel_event = cancel_event or threading.Event()

        self._pw = None
        self._browser = None
        self._context = None
        self._page = None
        self._closed = True
        self._watched_pages: set = set()
        self._console: Deque[Dict[str, str]] = deque(maxlen=CONSOLE_LOG_LIMIT)

        self.staging_dir.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def _is_alive(self) -> bool:
        try:
            if self._closed:
                return False
            if not self._pw or not self._browser or not self._context or not self._page:
                return False
            if self._page.is_closed():
                return False
            return True
        except Exception:
            return False

    def _hard_reset(self) -> None:
        try:
            try:
                if self._context:
                    self._context.close()
            except Exception:
                pass
            try:
                if self._browser:
                    self._browser.close()
            except Exception:
                pass
            try:
                if self._pw:
                    self._pw.stop()
            except Exception:
                pass
        finally:
            self._pw = None
            self._browser = None
            self._context = None
            self._page = None
            self._closed = True

    def ensure_alive(self) -> None:
        if not self._is_alive():
            raise InfrastructureError("browser handle is not available")

    def launch(self) -> "BrowserSession":
        logger.info("[browser] launching headless=%s channel=%s", self.headless, self.channel or "chromium")
        try:
            self._pw = sync_playwright().start()

            launch_args: List[str] = []
            if self.stealth_mode:
                launch_args = [
                    "--disable-blink-features=AutomationControlled",
                    "--disable-dev-shm-usage",
                    "--no-sandbox",
                    "--disable-setuid-sandbox",
                ]
            launch_options: dict = {"headless": self.headless, "args": launch_args}

            if self.channel:
                try:
                    self._browser = self._pw.chromium.launch(channel=self.channel, **launch_options)
                except Exception as e:
                    logger.warning("[browser] channel=%s failed (%s), falling back to chromium", self.channel, e)
                    self._browser = self._pw.chromium.launch(**launch_options)
            else:
                self._browser = self._pw.chromium.launch(**launch_options)

            context_options: dict = {
                "viewport": {"width": self.viewport[0], "height": self.viewport[1]},
                "accept_downloads": True,
            }
            if self.stealth_mode:
                context_options["user_agent"] = (
                    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                    "AppleWebKit/537.36 (KHTML, like Gecko) "
                    "Chrome/124.0.0.0 Safari/537.36"
                )
                context_options["locale"] = "en-US"
                context_options["timezone_id"] = "America/New_York"

            self._context = self._browser.new_context(**context_options)
            if self.stealth_mode:
                self._context.add_init_script(
                    "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"
                )
            self._context.on("page", self._watch_page)

            self._page = self._context.new_page()
            self._watch_page(self._page)
            self._page.set_default_timeout(self.default_timeout_ms)
            self._page.set_default_navigation_timeout(self.page_load_timeout_ms)
            self._closed = False
        except Exception as e:
            self._hard_reset()
            raise InfrastructureError(f"browser launch failed: {e}") from e

        logger.info("[browser] launched staging=%s", self.staging_dir)
        return self

    def close(self) -> None:
        if self._closed and self._pw is None:
            return
        logger.info("[browser] closing")
        self._hard_reset()

    @property
    def page(self):
        if not self._page or self._closed:
            raise InfrastructureError("browser not launched")
        return self._page

    # -------------------------------------------------------------------------
    # Page events
    # -------------------------------------------------------------------------
    def _watch_page(self, page) -> None:
        # popups opened by a print/download control also deliver downloads
        if id(page) in self._watched_pages:
            return
        self._watched_pages.add(id(page))
        page.on("download", self._on_download)
        page.on("console", lambda msg: self._on_console(msg, page))

    def _on_console(self, msg, page) -> None:
        try:
            entry = {"level": msg.type, "text": msg.text, "url": page.url}
        except PWError as e:
            logger.debug("[browser] console message unreadable: %s", e)
            return
        self._console.append(entry)
        logger.debug("[browser] console %s: %s", entry["level"], entry["text"])

    def console_log(self) -> List[Dict[str, str]]:
        """Oldest first; at most CONSOLE_LOG_LIMIT entries."""
        return list(self._console)

    def _on_download(self, download) -> None:
        name = os.path.basename(download.suggested_filename or "") or f"download_{uuid.uuid4().hex[:8]}.pdf"
        if not os.path.splitext(name)[1]:
            # the completed-file poll only picks up *.pdf
            name += ".pdf"
        partial = self.staging_dir / (name + PARTIAL_DOWNLOAD_SUFFIX)
        final = self.staging_dir / name
        try:
            download.save_as(str(partial))
            os.replace(partial, final)
            logger.info("[browser] download saved %s", final.name)
        except Exception as e:
            logger.warning("[browser] download %s failed: %s", name, e)

    # -------------------------------------------------------------------------
    # Waiting
    # -------------------------------------------------------------------------
    def pause(self, seconds: float) -> None:
        """Bounded, cancellable wait that keeps Playwright events flowing."""
        deadline = time.time() + max(0.0, seconds)
        while True:
            if self.cancel_event.is_set():
                raise RunCancelled("run cancelled")
            remaining = deadline - time.time()
            if remaining <= 0:
                return
            step = min(remaining, 0.25)
            if self._is_alive():
                self._page.wait_for_timeout(step * 1000)
            else:
                sleep_or_cancel(step, self.cancel_event)

    @_translate_closed
    def wait_for_load(self, timeout_ms: Optional[int] = None) -> None:
        try:
            self.page.wait_for_load_state("load", timeout=timeout_ms or self.page_load_timeout_ms)
        except PWTimeoutError:
            logger.debug("[browser] load state timeout, continuing")

    @_translate_closed
    def wait_for(self, selector: str, timeout_ms: Optional[int] = None) -> bool:
        try:
            self.page.locator(selector).first.wait_for(state="visible", timeout=timeout_ms or self.default_timeout_ms)
            return True
        except PWTimeoutError:
            return False

    # -------------------------------------------------------------------------
    # Page access
    # -------------------------------------------------------------------------
    @_translate_closed
    def goto(self, url: str) -> None:
        self.ensure_alive()
        logger.info("[browser] navigate %s", url)
        self.page.goto(url, wait_until="domcontentloaded")

    @property
    def url(self) -> str:
        try:
            return self.page.url
        except Exception:
            return ""

    @_translate_closed
    def page_text(self) -> str:
        return self.page.evaluate("() => document.body ? document.body.innerText : ''") or ""

    @_translate_closed
    def page_html(self) -> str:
        return self.page.content() or ""

    @_translate_closed
    def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return self.page.evaluate(script)
        return self.page.evaluate(script, arg)

    @_translate_closed
    def print_to_pdf(self, **layout: Any) -> bytes:
        return self.page.pdf(**layout)

    # -------------------------------------------------------------------------
    # Element access (selector strings, resolved fresh on every call)
    # -------------------------------------------------------------------------
    @_translate_closed
    def count(self, selector: str) -> int:
        return self.page.locator(selector).count()

    @_translate_closed
    def scroll_into_view(self, selector: str) -> None:
        self.page.locator(selector).first.scroll_into_view_if_needed(timeout=self.default_timeout_ms)

    @_translate_closed
    def click(self, selector: str, *, timeout_ms: Optional[int] = None, force: bool = False) -> None:
        self.page.locator(selector).first.click(timeout=timeout_ms or self.default_timeout_ms, force=force)

    @_translate_closed
    def fill(self, selector: str, value: str, *, timeout_ms: Optional[int] = None) -> None:
        loc = self.page.locator(selector).first
        t = timeout_ms or self.default_timeout_ms
        loc.click(timeout=t)
        loc.fill("", timeout=t)
        try:
            loc.fill(value, timeout=t)
        except PWError:
            loc.press("ControlOrMeta+A")
            loc.type(value, delay=5)

    @_translate_closed
    def input_value(self, selector: str) -> str:
        return self.page.locator(selector).first.input_value()

    @_translate_closed
    def is_checked(self, selector: str) -> bool:
        return bool(self.page.locator(selector).first.is_checked())

    @_translate_closed
    def select_option(self, selector: str, *, value: Optional[str] = None, label: Optional[str] = None) -> None:
        loc = self.page.locator(selector).first
        if value is not None:
            loc.select_option(value=value)
        else:
            loc.select_option(label=label)

    @_translate_closed
    def options(self, selector: str) -> List[Tuple[str, str]]:
        rows = self.page.locator(selector).first.evaluate(
            "el => Array.from(el.options || []).map(o => [o.value, (o.text || '').trim()])"
        )
        return [(str(v), str(t)) for v, t in (rows or [])]

    @_translate_closed
    def texts(self, selector: str, limit: int = 50) -> List[str]:
        loc = self.page.locator(selector)
        out: List[str] = []
        for i in range(min(loc.count(), limit)):
            try:
                t = (loc.nth(i).inner_text(timeout=2_000) or "").strip()
            except PWTimeoutError:
                continue
            if t:
                out.append(t)
        return out

    @_translate_closed
    def attribute(self, selector: str, name: str) -> Optional[str]:
        loc = self.page.locator(selector)
        if loc.count() == 0:
            return None
        return loc.first.get_attribute(name)
