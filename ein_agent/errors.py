from __future__ import annotations

"""
Exception types and result error labels.

Only infrastructure faults are allowed to escape the orchestrator; everything
the target site reports is a business outcome and is returned, not raised.
"""

from typing import Any, List, Optional


# -----------------------------------------------------------------------------
# Error types (RunResult.error_type)
# -----------------------------------------------------------------------------
ERROR_INFRASTRUCTURE = "infrastructure_error"
ERROR_INTERACTION = "interaction_failure"
ERROR_TERMINAL_REJECTION = "terminal_rejection"
ERROR_VALIDATION = "validation_error"
ERROR_UNKNOWN_PAGE = "unknown_failure"
ERROR_NO_COMPLETION_NUMBER = "completion_number_missing"
ERROR_CANCELLED = "cancelled"

# Sentinels handed to the notification gateway
FAIL_CODE_SENTINEL = "fail"
UNKNOWN_MESSAGE_SENTINEL = "Unable to extract error message"


class EinAutomationError(Exception):
    """Base class for every error raised inside ein_agent."""


class InfrastructureError(EinAutomationError):
    """Browser handle unavailable/crashed, missing config. Aborts the run."""


class RunCancelled(InfrastructureError):
    pass


class InteractionFailure(EinAutomationError):
    def __init__(self, field_name: str, action: str, message: Optional[str] = None):
        self.field_name = field_name
        self.action = action
        super().__init__(message or f"{action} exhausted every strategy for '{field_name}'")


class CaptureFailure(EinAutomationError):
    def __init__(self, label: str, attempts: Optional[List[Any]] = None):
        self.label = label
        self.attempts = list(attempts or [])
        super().__init__(f"no capture strategy produced bytes for {label} ({len(self.attempts)} tried)")


class PersistenceFailure(EinAutomationError):
    """A gateway call failed. Never fatal to a run."""
