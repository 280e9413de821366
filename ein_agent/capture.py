from __future__ import annotations

"""
capture.py

Obtain completion-document bytes when the site offers no stable URL, only a
client-side print/download control.

Strategies run in fixed priority order:
  download          click the document control, poll the staging dir
  download_encoded  same trigger, base64 to the recovery log before the
                    staged file is deleted
  print_to_pdf      render the current page with the browser's native PDF
                    printer

A CaptureAttempt is kept for every strategy executed. Successful bytes are
written to the recovery log before this module returns, i.e. before any
persistence call can be made with them.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .browser import PARTIAL_DOWNLOAD_SUFFIX, sleep_or_cancel
from .errors import InfrastructureError
from .models import ArtifactDescriptor, CaptureAttempt, CaseRecord, ElementLocator
from .normalize import clean_file_token
from .recovery import RecoveryLog
from .settings import setup_logger

logger = setup_logger("ein_agent.capture")

PDF_CONTENT_TYPE = "application/pdf"

# letter/confirmation controls on the completion page
DOCUMENT_CONTROLS: Tuple[ElementLocator, ...] = (
    ElementLocator.xpath("//a[contains(text(), 'EIN Confirmation Letter') and contains(@href, '.pdf')]"),
    ElementLocator.xpath("//a[contains(normalize-space(.), 'EIN Confirmation Letter')]"),
    ElementLocator.xpath("//input[@type='submit' and contains(@value, 'Print')]"),
    ElementLocator.xpath("//a[contains(normalize-space(.), 'Print')]"),
)

PRINT_LAYOUT: Dict[str, object] = {
    "format": "Letter",
    "landscape": False,
    "print_background": True,
    "prefer_css_page_size": False,
    "scale": 1.0,
    "margin": {"top": "0", "right": "0", "bottom": "0", "left": "0"},
}


class StrategyError(Exception):
    pass


@dataclass
class CaptureRequest:
    run_id: str
    record_id: str
    entity_name: str
    label: str
    staging_dir: Path
    recovery: RecoveryLog


@dataclass
class CaptureOutcome:
    label: str
    attempts: List[CaptureAttempt] = field(default_factory=list)
    successes: List[Tuple[str, bytes]] = field(default_factory=list)

    @property
    def payload(self) -> Optional[bytes]:
        return self.successes[0][1] if self.successes else None

    @property
    def strategy_name(self) -> Optional[str]:
        return self.successes[0][0] if self.successes else None

    @property
    def succeeded(self) -> bool:
        return bool(self.successes)


# -----------------------------------------------------------------------------
# Staging poll
# -----------------------------------------------------------------------------
def wait_for_completed_file(
    directory: Path,
    *,
    timeout_s: float,
    poll_s: float = 0.5,
    ignore: Optional[Set[str]] = None,
    pattern: str = "*.pdf",
    wait: Optional[Callable[[float], None]] = None,
) -> Optional[Path]:
    """
    First finished file matching `pattern`, once no partial-download marker
    remains in `directory`. None on timeout.
    """
    directory = Path(directory)
    ignore = ignore or set()
    wait = wait or (lambda s: sleep_or_cancel(s))
    deadline = time.time() + max(0.0, timeout_s)
    while True:
        if directory.exists():
            partial = list(directory.glob(f"*{PARTIAL_DOWNLOAD_SUFFIX}"))
            if not partial:
                done = sorted(
                    (p for p in directory.glob(pattern) if p.name not in ignore and p.is_file()),
                    key=lambda p: p.stat().st_mtime,
                )
                if done:
                    return done[0]
        remaining = deadline - time.time()
        if remaining <= 0:
            return None
        wait(min(poll_s, remaining))


# -----------------------------------------------------------------------------
# Strategies
# -----------------------------------------------------------------------------
class CaptureStrategy:
    name = "base"
    # True when the strategy writes its own recovery record
    self_audited = False

    def capture(self, session, request: CaptureRequest) -> Optional[bytes]:
        raise NotImplementedError


class DownloadCapture(CaptureStrategy):
    name = "download"

    def __init__(
        self,
        controls: Sequence[ElementLocator] = DOCUMENT_CONTROLS,
        *,
        timeout_s: float = 30.0,
        poll_s: float = 0.5,
    ):
        self.controls = tuple(controls)
        self.timeout_s = float(timeout_s)
        self.poll_s = float(poll_s)

    def _trigger(self, session) -> str:
        for loc in self.controls:
            if session.count(loc.selector) > 0:
                session.click(loc.selector)
                return loc.selector
        raise StrategyError("document control not found")

    def _fetch(self, session, request: CaptureRequest) -> Tuple[Path, bytes]:
        staging = Path(request.staging_dir)
        before = {p.name for p in staging.glob("*")} if staging.exists() else set()
        used = self._trigger(session)
        logger.info("[capture] %s: triggered %s, polling %s", self.name, used, staging)
        path = wait_for_completed_file(
            staging,
            timeout_s=self.timeout_s,
            poll_s=self.poll_s,
            ignore=before,
            wait=session.pause,
        )
        if path is None:
            raise StrategyError(f"no completed download within {self.timeout_s:.0f}s")
        data = path.read_bytes()
        if data and not data.startswith(b"%PDF"):
            logger.warning("[capture] %s: %s has no PDF header", self.name, path.name)
        return path, data

    def capture(self, session, request: CaptureRequest) -> Optional[bytes]:
        path, data = self._fetch(session, request)
        path.unlink(missing_ok=True)
        return data


class EncodedDownloadCapture(DownloadCapture):
    name = "download_encoded"
    self_audited = True

    def capture(self, session, request: CaptureRequest) -> Optional[bytes]:
        path, data = self._fetch(session, request)
        try:
            if data:
                # recovery copy goes out before the staged file disappears
                request.recovery.write_document(
                    run_id=request.run_id,
                    record_id=request.record_id,
                    entity_name=request.entity_name,
                    label=request.label,
                    strategy=self.name,
                    payload=data,
                )
        finally:
            path.unlink(missing_ok=True)
        return data


class PrintToPdfCapture(CaptureStrategy):
    name = "print_to_pdf"

    def __init__(self, layout: Optional[Dict[str, object]] = None):
        self.layout = dict(layout or PRINT_LAYOUT)

    def capture(self, session, request: CaptureRequest) -> Optional[bytes]:
        return session.print_to_pdf(**self.layout)


def default_strategies(*, timeout_s: float = 30.0, poll_s: float = 0.5) -> List[CaptureStrategy]:
    return [
        DownloadCapture(timeout_s=timeout_s, poll_s=poll_s),
        EncodedDownloadCapture(timeout_s=timeout_s, poll_s=poll_s),
        PrintToPdfCapture(),
    ]


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------
class CapturePipeline:
    def __init__(self, strategies: Sequence[CaptureStrategy], recovery: RecoveryLog, *, stop_on_first: bool = True):
        self.strategies = list(strategies)
        self.recovery = recovery
        self.stop_on_first = bool(stop_on_first)

    def run(self, session, request: CaptureRequest) -> CaptureOutcome:
        outcome = CaptureOutcome(label=request.label)
        for strategy in self.strategies:
            t0 = time.time()
            try:
                data = strategy.capture(session, request)
            except InfrastructureError:
                raise
            except Exception as e:
                outcome.attempts.append(
                    CaptureAttempt(strategy.name, False, 0, f"{type(e).__name__}: {e}", int((time.time() - t0) * 1000))
                )
                logger.warning("[capture] %s/%s failed: %s", request.label, strategy.name, e)
                continue

            ms = int((time.time() - t0) * 1000)
            if not data:
                outcome.attempts.append(CaptureAttempt(strategy.name, False, 0, "empty payload", ms))
                logger.warning("[capture] %s/%s returned no bytes", request.label, strategy.name)
                continue

            outcome.attempts.append(CaptureAttempt(strategy.name, True, len(data), None, ms))
            if not strategy.self_audited:
                self.recovery.write_document(
                    run_id=request.run_id,
                    record_id=request.record_id,
                    entity_name=request.entity_name,
                    label=request.label,
                    strategy=strategy.name,
                    payload=data,
                )
            outcome.successes.append((strategy.name, data))
            logger.info("[capture] %s via %s (%d bytes)", request.label, strategy.name, len(data))
            if self.stop_on_first:
                break

        if not outcome.succeeded:
            logger.error("[capture] %s: every strategy failed (%d tried)", request.label, len(outcome.attempts))
        return outcome


# -----------------------------------------------------------------------------
# Descriptors
# -----------------------------------------------------------------------------
def artifact_name(case: CaseRecord, kind: str, strategy: Optional[str] = None) -> str:
    clean = clean_file_token(case.entity_name) or "Entity"
    suffix = f"{kind}-{strategy}" if strategy else kind
    return f"EntityProcess/{case.record_id}/{clean}-ID-{suffix}.pdf"


def artifacts_from_outcome(outcome: CaptureOutcome, case: CaseRecord, *, client_visible: bool) -> List[ArtifactDescriptor]:
    """First success is the authoritative artifact; the rest are hidden and strategy-suffixed."""
    out: List[ArtifactDescriptor] = []
    for i, (strategy, data) in enumerate(outcome.successes):
        primary = i == 0
        out.append(
            ArtifactDescriptor(
                logical_name=artifact_name(case, outcome.label, None if primary else strategy),
                record_id=case.record_id,
                content_type=PDF_CONTENT_TYPE,
                visible=client_visible and primary,
                external_ids=case.external_ids,
                payload=data,
                strategy_name=strategy,
            )
        )
    return out
