#!/usr/bin/env python3
from __future__ import annotations

"""
orchestrator.py

Drives one EIN application end-to-end.

States:
  Start -> EntityClassification -> SubTypeSelection -> ResponsiblePartyDetails
  -> AddressDetails -> BusinessDetails -> ActivityDetails -> Review
  -> Confirmation -> Success | Failure

Every "submit" action is followed by a checkpoint. A non-clean checkpoint runs
the failure protocol and ends the run with success=False; nothing is replayed.

Failure protocol (idempotent per page state):
  reference code -> else diagnostic message (sentinel if none) -> structured
  record to the recovery log and the store -> capture the current page ->
  notify "fail" with the best code available.

Only infrastructure faults leave EinWorkflowOrchestrator.run(); run_automation()
is the outer boundary that turns them into a RunResult.

Logging policy:
- INFO: state-level progress
- DEBUG: per-action detail (enable via EIN_LOG_LEVEL=DEBUG)
"""

import argparse
import json
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .browser import Backoff, BrowserSession
from .capture import CapturePipeline, CaptureRequest, artifacts_from_outcome, default_strategies
from .classifier import CheckpointClassifier
from .completion import CompletionNumberExtractor
from .entity_types import classify_entity
from .errors import (
    ERROR_CANCELLED,
    ERROR_INFRASTRUCTURE,
    ERROR_INTERACTION,
    ERROR_NO_COMPLETION_NUMBER,
    ERROR_TERMINAL_REJECTION,
    ERROR_UNKNOWN_PAGE,
    ERROR_VALIDATION,
    FAIL_CODE_SENTINEL,
    UNKNOWN_MESSAGE_SENTINEL,
    CaptureFailure,
    InfrastructureError,
    InteractionFailure,
    RunCancelled,
)
from .extraction import ErrorMessageExtractor, ReferenceNumberExtractor
from .gateways import ArtifactStore, LoggingNotifier, Notifier, build_gateways
from .interactions import FormInteractor
from .models import (
    ArtifactDescriptor,
    CaseRecord,
    CheckpointResult,
    FailureClassification,
    RunResult,
    WorkflowContext,
    WorkflowState,
)
from .recovery import RecoveryLog, system_snapshot
from .screens import FIELD_LOCATORS, FieldAction, ScreenPlan, build_screen_plan
from .settings import Settings, _env_str, setup_logger

logger = setup_logger("ein_agent.orchestrator")

SessionFactory = Callable[[Settings, Path, threading.Event], Any]

LABEL_LETTER = "EINLetter"
LABEL_REVIEW = "EINSubmission"
LABEL_FAILURE = "EINSubmissionFailure"

_ERROR_TYPES = {
    FailureClassification.TERMINAL_REJECTION: ERROR_TERMINAL_REJECTION,
    FailureClassification.VALIDATION_ERROR: ERROR_VALIDATION,
    FailureClassification.UNKNOWN: ERROR_UNKNOWN_PAGE,
}


def default_session_factory(settings: Settings, staging_dir: Path, cancel_event: threading.Event) -> BrowserSession:
    return BrowserSession(
        staging_dir=staging_dir,
        headless=settings.headless,
        viewport=settings.viewport,
        default_timeout_ms=settings.default_timeout_ms,
        page_load_timeout_ms=settings.page_load_timeout_ms,
        channel=settings.browser_channel,
        stealth_mode=settings.stealth_mode,
        cancel_event=cancel_event,
    ).launch()


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------
class EinWorkflowOrchestrator:
    """Runs the screen plan for one CaseRecord against one browser session."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[ArtifactStore] = None,
        notifier: Optional[Notifier] = None,
        recovery: Optional[RecoveryLog] = None,
        session_factory: SessionFactory = default_session_factory,
        save_results: bool = True,
    ):
        self.settings = settings or Settings.from_env()
        if store is None or notifier is None:
            built_store, built_notifier = build_gateways(self.settings)
            store = store or built_store
            notifier = notifier or built_notifier
        self.store = store
        self.notifier = notifier
        self.recovery = recovery or RecoveryLog(self.settings.recovery_log_path)
        self.session_factory = session_factory
        self.save_results = bool(save_results)

        self.reference_extractor = ReferenceNumberExtractor()
        self.message_extractor = ErrorMessageExtractor()
        self.classifier = CheckpointClassifier(
            settle_delay_s=self.settings.settle_delay_s,
            reference_extractor=self.reference_extractor,
            message_extractor=self.message_extractor,
        )
        self.completion_extractor = CompletionNumberExtractor()
        self.pipeline = CapturePipeline(
            default_strategies(timeout_s=self.settings.download_timeout_s, poll_s=self.settings.download_poll_s),
            self.recovery,
            stop_on_first=not self.settings.capture_all_strategies,
        )
        self.current_run_id: Optional[str] = None

    # -------------------------
    # Entry
    # -------------------------
    def run(
        self,
        case: CaseRecord,
        *,
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        t0 = time.time()
        run_id = run_id or f"run_{case.record_id}_{uuid.uuid4().hex[:8]}"
        self.current_run_id = run_id
        ctx = WorkflowContext(
            run_id=run_id,
            case=case,
            staging_dir=Path(self.settings.staging_root) / run_id,
            cancel_event=cancel_event or threading.Event(),
        )
        ctx.record("run_id", run_id)
        ctx.record("record_id", case.record_id)
        ctx.record("entity_type", case.entity_type)
        ctx.record("resources_at_start", system_snapshot())
        logger.info("[orch] start run=%s record=%s entity_type=%s", run_id, case.record_id, case.entity_type)

        try:
            ctx.staging_dir.mkdir(parents=True, exist_ok=True)
            ctx.session = self.session_factory(self.settings, ctx.staging_dir, ctx.cancel_event)
            try:
                result = self._drive(ctx)
            except InteractionFailure as e:
                logger.error("[orch] required interaction failed in %s: %s", ctx.state.value, e)
                ctx.record("interaction_failure", {"field": e.field_name, "action": e.action, "state": ctx.state.value})
                result = self._handle_failure(
                    ctx,
                    CheckpointResult(FailureClassification.UNKNOWN),
                    error_type=ERROR_INTERACTION,
                    detail=str(e),
                )
        finally:
            ctx.close()

        result.total_time_ms = int((time.time() - t0) * 1000)
        self._save_result(result)
        logger.info(
            "[orch] done run=%s success=%s state=%s completion=%s time=%.2fs",
            run_id, result.success, result.state.value, result.completion_number, result.total_time_ms / 1000.0,
        )
        return result

    # -------------------------
    # State machine
    # -------------------------
    def _drive(self, ctx: WorkflowContext) -> RunResult:
        s = self.settings
        session = ctx.session
        interactor = FormInteractor(
            session,
            attempts=s.interaction_attempts,
            backoff=Backoff(max_retries=s.interaction_attempts - 1, base_delay_s=s.backoff_base_s, max_delay_s=s.backoff_max_s),
            cancel_event=ctx.cancel_event,
        )

        classification = classify_entity(ctx.case.entity_type, ctx.case.description, ctx.case.trust_type)
        ctx.record("entity_category", classification.category.value)
        ctx.record("entity_sub_type", classification.sub_type)
        plan = build_screen_plan(ctx.case, classification)

        failed = self._start(ctx, interactor)
        if failed:
            return failed

        for screen in plan:
            failed = self._run_screen(ctx, interactor, screen)
            if failed:
                return failed

        ctx.state = WorkflowState.REVIEW
        logger.info("[orch] state=%s", ctx.state.value)
        if s.capture_review_page:
            self._capture(ctx, LABEL_REVIEW, client_visible=False)
        interactor.click(FIELD_LOCATORS["final_submit"], field_name="final_submit")
        session.wait_for_load()
        failed = self._checkpoint(ctx, "final_submit")
        if failed:
            return failed

        ctx.state = WorkflowState.CONFIRMATION
        logger.info("[orch] state=%s", ctx.state.value)
        number = self.completion_extractor.extract(session)
        if not number:
            return self._handle_failure(
                ctx,
                CheckpointResult(FailureClassification.UNKNOWN),
                error_type=ERROR_NO_COMPLETION_NUMBER,
            )
        return self._handle_success(ctx, number)

    def _start(self, ctx: WorkflowContext, interactor: FormInteractor) -> Optional[RunResult]:
        session = ctx.session
        ctx.state = WorkflowState.START
        logger.info("[orch] state=%s url=%s", ctx.state.value, self.settings.form_url)
        session.goto(self.settings.form_url)
        session.wait_for_load()
        session.wait_for(FIELD_LOCATORS["landing_ready"].selector)
        interactor.click(FIELD_LOCATORS["begin_application"], field_name="begin_application")
        session.wait_for_load()
        if not session.wait_for(FIELD_LOCATORS["form_ready"].selector):
            logger.warning("[orch] form container not visible after begin")
        return self._checkpoint(ctx, "begin_application")

    def _run_screen(self, ctx: WorkflowContext, interactor: FormInteractor, screen: ScreenPlan) -> Optional[RunResult]:
        ctx.state = screen.state
        logger.info("[orch] state=%s actions=%d", screen.state.value, len(screen.actions))
        for i, action in enumerate(screen.actions, start=1):
            ok = self._perform(ctx, interactor, action)
            ctx.record(f"{screen.state.value}.{i:02d}.{action.key}", ok)
            if action.kind == "submit":
                failed = self._checkpoint(ctx, f"{screen.state.value}.{action.key}.{i}")
                if failed:
                    return failed
        return None

    def _perform(self, ctx: WorkflowContext, interactor: FormInteractor, action: FieldAction) -> bool:
        kind = action.kind
        if kind == "text":
            return interactor.fill_text(action.locator, action.value, field_name=action.key, required=action.required)
        if kind == "choice":
            return interactor.select_choice(action.value, field_name=action.key, required=action.required)
        if kind == "dropdown":
            return interactor.select_dropdown(action.locator, action.value, field_name=action.key, required=action.required)
        if kind == "submit":
            ok = interactor.click(action.locator, field_name=action.key, required=True)
            ctx.session.wait_for_load()
            return ok
        if kind == "optional_click":
            return interactor.click_if_present(
                action.locator,
                timeout_ms=self.settings.optional_control_timeout_ms,
                field_name=action.key,
            )
        raise ValueError(f"unknown action kind: {kind}")

    def _checkpoint(self, ctx: WorkflowContext, label: str) -> Optional[RunResult]:
        result = self.classifier.checkpoint(ctx.session, label=label)
        if not result.is_failure:
            return None
        ctx.record(f"checkpoint.{label}", result.classification.value)
        return self._handle_failure(ctx, result)

    # -------------------------
    # Outcomes
    # -------------------------
    def _handle_failure(
        self,
        ctx: WorkflowContext,
        checkpoint: CheckpointResult,
        *,
        error_type: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> RunResult:
        session = ctx.session
        try:
            markup = session.page_html()
        except InfrastructureError:
            raise
        except Exception as e:
            logger.warning("[orch] failure page snapshot unavailable: %s", e)
            markup = ""
        key = ctx.fingerprint(markup)

        previous = ctx.handled_failures.get(key)
        if previous is not None:
            logger.info("[orch] failure already handled for this page state")
            return self._failure_result(ctx, previous, error_type)

        classification = checkpoint.classification
        if classification == FailureClassification.NONE:
            classification = FailureClassification.UNKNOWN
        reference = checkpoint.reference_number
        message = checkpoint.message
        if reference is None and message is None:
            reference = self.reference_extractor.extract(session)
            if reference is None:
                message = self.message_extractor.extract(session)
        if reference is None and not message:
            message = UNKNOWN_MESSAGE_SENTINEL

        handled = CheckpointResult(classification, reference, message)
        ctx.handled_failures[key] = handled
        ctx.classification = classification
        ctx.reference_number = reference
        ctx.failure_message = message

        diagnostic = {
            "state": ctx.state.value,
            "classification": classification.value,
            "reference_number": reference,
            "message": message,
            "detail": detail,
            "url": getattr(session, "url", ""),
        }
        ctx.record("failure", diagnostic)
        logger.warning(
            "[orch] failure run=%s state=%s class=%s ref=%s msg=%s",
            ctx.run_id, ctx.state.value, classification.value, reference, message,
        )

        self.recovery.write_record(run_id=ctx.run_id, record_id=ctx.case.record_id, kind="failure", data=diagnostic)
        self._capture(ctx, LABEL_FAILURE, client_visible=False)
        self._upload_logs(ctx)
        self._notify(
            "failure",
            self.notifier.notify_failure,
            ctx.case.record_id,
            reference or FAIL_CODE_SENTINEL,
            "fail",
            diagnostic,
        )
        return self._failure_result(ctx, handled, error_type)

    def _handle_success(self, ctx: WorkflowContext, number: str) -> RunResult:
        ctx.completion_number = number
        ctx.record("completion_number", number)
        logger.info("[orch] completion number found run=%s", ctx.run_id)

        self._notify("success", self.notifier.notify_success, ctx.case.record_id, number)
        captured = self._capture(ctx, LABEL_LETTER, client_visible=True)
        if not captured:
            # the number stands on its own; a missing letter does not fail the run
            err = CaptureFailure(LABEL_LETTER, ctx.capture_attempts)
            logger.error("[orch] %s run=%s", err, ctx.run_id)
            ctx.record("capture_failure", str(err))
        self._upload_logs(ctx)

        ctx.state = WorkflowState.SUCCESS
        return RunResult(
            run_id=ctx.run_id,
            record_id=ctx.case.record_id,
            success=True,
            completion_number=number,
            artifact_urls=list(ctx.artifact_urls),
            state=ctx.state,
            capture_attempts=list(ctx.capture_attempts),
        )

    def _failure_result(self, ctx: WorkflowContext, handled: CheckpointResult, error_type: Optional[str]) -> RunResult:
        failed_in = ctx.state
        ctx.state = WorkflowState.FAILURE
        ctx.record("failed_state", failed_in.value)
        return RunResult(
            run_id=ctx.run_id,
            record_id=ctx.case.record_id,
            success=False,
            completion_number=ctx.completion_number,
            artifact_urls=list(ctx.artifact_urls),
            classification=handled.classification,
            reference_number=handled.reference_number,
            message=handled.message or "",
            error_type=error_type or _ERROR_TYPES.get(handled.classification, ERROR_UNKNOWN_PAGE),
            state=failed_in,
            capture_attempts=list(ctx.capture_attempts),
        )

    # -------------------------
    # Capture / persistence
    # -------------------------
    def _capture(self, ctx: WorkflowContext, label: str, *, client_visible: bool) -> bool:
        request = CaptureRequest(
            run_id=ctx.run_id,
            record_id=ctx.case.record_id,
            entity_name=ctx.case.entity_name,
            label=label,
            staging_dir=ctx.staging_dir,
            recovery=self.recovery,
        )
        outcome = self.pipeline.run(ctx.session, request)
        ctx.capture_attempts.extend(outcome.attempts)
        ctx.record(f"capture.{label}", [a.to_dict() for a in outcome.attempts])
        if not outcome.succeeded:
            return False
        artifacts = artifacts_from_outcome(outcome, ctx.case, client_visible=client_visible)
        ctx.artifacts.extend(artifacts)
        self._persist(ctx, artifacts)
        return True

    def _persist(self, ctx: WorkflowContext, artifacts: List[ArtifactDescriptor]) -> None:
        for a in artifacts:
            try:
                url = self.store.upload_artifact(a.payload, a.logical_name, a.content_type, a.visible, a.external_ids)
            except Exception as e:
                # bytes are already in the recovery log
                logger.warning("[orch] upload of %s failed: %s", a.logical_name, e)
                ctx.record(f"upload.{a.logical_name}", f"failed: {e}")
                continue
            a.url = url
            ctx.artifact_urls.append(url)
            ctx.record(f"upload.{a.logical_name}", url)
            self._notify(
                "artifact",
                self.notifier.notify_artifact_available,
                ctx.case.record_id,
                url,
                {"visible": a.visible, "logical_name": a.logical_name, "strategy": a.strategy_name, **a.external_ids},
            )

    def _upload_logs(self, ctx: WorkflowContext) -> None:
        try:
            self.store.upload_structured_log(ctx.case.record_id, dict(ctx.log), entity_name=ctx.case.entity_name)
        except Exception as e:
            logger.warning("[orch] structured log upload failed: %s", e)
        try:
            self.store.upload_diagnostic_log(ctx.case.record_id, self._diagnostic_text(ctx).encode("utf-8"))
        except Exception as e:
            logger.warning("[orch] diagnostic log upload failed: %s", e)

    @staticmethod
    def _diagnostic_text(ctx: WorkflowContext) -> str:
        lines = [f"run={ctx.run_id} record={ctx.case.record_id} state={ctx.state.value}"]
        for k, v in ctx.log.items():
            lines.append(f"{k}: {json.dumps(v, default=str)}")
        if ctx.session is not None:
            console = ctx.session.console_log()
            lines.append(f"--- browser console ({len(console)}) ---")
            for c in console:
                lines.append(f"[{c.get('level')}] {c.get('url')} {c.get('text')}")
        return "\n".join(lines) + "\n"

    def _notify(self, what: str, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning("[orch] notify %s failed: %s", what, e)

    def _save_result(self, result: RunResult) -> None:
        if not self.save_results or not self.settings.results_dir:
            return
        out_dir = Path(self.settings.results_dir)
        fname = f"{result.run_id}_{result.timestamp.replace(':', '-').replace('.', '-')}.json"
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / fname).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
            logger.info("[orch] saved result %s", out_dir / fname)
        except Exception as e:
            logger.error("[orch] failed to save result: %s", e)


# -----------------------------------------------------------------------------
# Outer run boundary
# -----------------------------------------------------------------------------
def run_automation(
    case: Union[CaseRecord, Dict[str, Any]],
    *,
    settings: Optional[Settings] = None,
    store: Optional[ArtifactStore] = None,
    notifier: Optional[Notifier] = None,
    session_factory: SessionFactory = default_session_factory,
    cancel_event: Optional[threading.Event] = None,
) -> RunResult:
    """Never raises. Infrastructure faults come back as a failed RunResult."""
    t0 = time.time()
    record_id = ""
    orch: Optional[EinWorkflowOrchestrator] = None
    try:
        if isinstance(case, CaseRecord):
            record_id = case.record_id
        elif isinstance(case, dict):
            record_id = str(case.get("RecordId") or case.get("record_id") or "")
        if not isinstance(case, CaseRecord):
            case = CaseRecord.model_validate(case)
        orch = EinWorkflowOrchestrator(settings, store=store, notifier=notifier, session_factory=session_factory)
        return orch.run(case, cancel_event=cancel_event)
    except RunCancelled as e:
        error_type, message = ERROR_CANCELLED, str(e)
        logger.warning("[orch] run cancelled record=%s", record_id)
    except ValidationError as e:
        error_type, message = ERROR_INFRASTRUCTURE, f"invalid case record: {e}"
        logger.error("[orch] invalid case record: %s", e)
    except InfrastructureError as e:
        error_type, message = ERROR_INFRASTRUCTURE, str(e)
        logger.error("[orch] infrastructure failure record=%s: %s", record_id, e)
    except Exception as e:
        error_type, message = ERROR_INFRASTRUCTURE, f"{type(e).__name__}: {e}"
        logger.exception("[orch] unhandled error record=%s", record_id)

    result = RunResult(
        run_id=(orch.current_run_id if orch else None) or "",
        record_id=record_id,
        success=False,
        completion_number=None,
        artifact_urls=[],
        classification=FailureClassification.UNKNOWN,
        message=message,
        error_type=error_type,
        total_time_ms=int((time.time() - t0) * 1000),
    )
    fallback_notifier = (orch.notifier if orch else notifier) or LoggingNotifier()
    try:
        fallback_notifier.notify_failure(record_id, FAIL_CODE_SENTINEL, "fail", {"error_type": error_type, "message": message})
    except Exception as e:
        logger.warning("[orch] failure notification failed: %s", e)
    if orch:
        orch._save_result(result)
    return result


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def main():
    ap = argparse.ArgumentParser(description="Run one EIN application from a JSON case record.")
    ap.add_argument("--case", required=True, help="path to a JSON case record")
    ap.add_argument("--results-dir", default=_env_str("EIN_RESULTS_DIR", "ein_results"))
    ap.add_argument("--headed", action="store_true", help="show the browser window")
    ap.add_argument("--storage", choices=["local", "azure"], default=None)
    ap.add_argument("--no-review-capture", action="store_true")
    ap.add_argument("--capture-all", action="store_true", help="run every capture strategy, not just the first that works")
    args = ap.parse_args()

    case_path = Path(args.case).expanduser().resolve()
    if not case_path.exists():
        raise SystemExit(f"Missing case file: {case_path}")
    payload = json.loads(case_path.read_text(encoding="utf-8"))

    settings = Settings.from_env()
    settings.results_dir = args.results_dir
    if args.headed:
        settings.headless = False
    if args.storage:
        settings.storage_backend = args.storage
    if args.no_review_capture:
        settings.capture_review_page = False
    if args.capture_all:
        settings.capture_all_strategies = True

    result = run_automation(payload, settings=settings)
    print(json.dumps(result.to_dict(), indent=2))
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
