from __future__ import annotations

"""
Data model for one automation run.

CaseRecord is the immutable input (pydantic, frozen). Everything mutable lives
on WorkflowContext, which is created per run and torn down at run end.
"""

import hashlib
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_pascal

from .settings import setup_logger

logger = setup_logger("ein_agent.models")

DEFAULT_BUSINESS_DESCRIPTION = "Any and lawful business"


# -----------------------------------------------------------------------------
# Input
# -----------------------------------------------------------------------------
class _Record(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_pascal,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # nulls fall back to field defaults
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class MailingAddress(_Record):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.street.strip() or self.city.strip())


class CaseRecord(_Record):
    record_id: str
    entity_name: str = ""
    entity_type: str = ""
    trust_type: Optional[str] = None
    business_description: str = ""
    formation_date: Optional[str] = None
    closing_month: Optional[str] = None

    entity_state: str = ""
    entity_state_record_state: str = ""
    county: str = ""
    trade_name: str = ""
    care_of_name: str = ""
    number_of_members: int = 1

    responsible_first_name: str = ""
    responsible_middle_name: str = ""
    responsible_last_name: str = ""
    responsible_ssn: str = Field(default="", repr=False)
    phone: str = ""

    business_address_1: str = ""
    business_address_2: str = ""
    city: str = ""
    zip_code: str = ""
    mailing_address: Optional[MailingAddress] = None

    account_id: Optional[str] = None
    entity_id: Optional[str] = None
    case_id: Optional[str] = None

    @field_validator("record_id")
    @classmethod
    def _record_id_present(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("record_id is required")
        return v

    @field_validator("number_of_members", mode="before")
    @classmethod
    def _members(cls, v: Any) -> int:
        try:
            n = int(str(v).strip())
        except (TypeError, ValueError):
            return 1
        return max(1, n)

    @property
    def description(self) -> str:
        return self.business_description.strip() or DEFAULT_BUSINESS_DESCRIPTION

    @property
    def external_ids(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key, v in (("AccountId", self.account_id), ("EntityId", self.entity_id), ("CaseId", self.case_id)):
            if v:
                out[key] = v
        return out


# -----------------------------------------------------------------------------
# Locators / states / classifications
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ElementLocator:
    """Re-resolved on every use; never holds a live element reference."""
    strategy: str
    value: str
    name: str = ""

    @classmethod
    def by_id(cls, element_id: str) -> "ElementLocator":
        return cls("id", element_id)

    @classmethod
    def css(cls, selector: str) -> "ElementLocator":
        return cls("css", selector)

    @classmethod
    def xpath(cls, expr: str) -> "ElementLocator":
        return cls("xpath", expr)

    @property
    def selector(self) -> str:
        strategy = (self.strategy or "").strip().lower()
        value = (self.value or "").strip()
        if strategy in {"", "css"}:
            return f"css={value}"
        if strategy == "xpath":
            return f"xpath={value}"
        if strategy == "text":
            return f"text={value}"
        if strategy == "id":
            return f"css=[id='{value}']"
        if strategy == "name":
            return f"css=[name='{value}']"
        if strategy == "role":
            if self.name:
                return f"role={value}[name='{self.name}']"
            return f"role={value}"
        return value

    @property
    def element_id(self) -> Optional[str]:
        return self.value if self.strategy == "id" else None

    def __str__(self) -> str:
        return self.selector


class WorkflowState(str, Enum):
    START = "Start"
    ENTITY_CLASSIFICATION = "EntityClassification"
    SUB_TYPE_SELECTION = "SubTypeSelection"
    RESPONSIBLE_PARTY = "ResponsiblePartyDetails"
    ADDRESS_DETAILS = "AddressDetails"
    BUSINESS_DETAILS = "BusinessDetails"
    ACTIVITY_DETAILS = "ActivityDetails"
    REVIEW = "Review"
    CONFIRMATION = "Confirmation"
    SUCCESS = "Success"
    FAILURE = "Failure"


class FailureClassification(str, Enum):
    NONE = "None"
    TERMINAL_REJECTION = "TerminalRejection"
    VALIDATION_ERROR = "ValidationError"
    UNKNOWN = "Unknown"


@dataclass
class CheckpointResult:
    classification: FailureClassification
    reference_number: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.classification != FailureClassification.NONE


# -----------------------------------------------------------------------------
# Capture records
# -----------------------------------------------------------------------------
@dataclass
class CaptureAttempt:
    strategy_name: str
    succeeded: bool
    byte_length: int = 0
    error_detail: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy_name,
            "succeeded": self.succeeded,
            "byte_length": self.byte_length,
            "error": self.error_detail,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ArtifactDescriptor:
    logical_name: str
    record_id: str
    content_type: str
    visible: bool
    external_ids: Dict[str, str]
    payload: bytes = field(repr=False, default=b"")
    strategy_name: str = ""
    url: Optional[str] = None

    @property
    def byte_length(self) -> int:
        return len(self.payload)


# -----------------------------------------------------------------------------
# Per-run state
# -----------------------------------------------------------------------------
@dataclass
class WorkflowContext:
    run_id: str
    case: CaseRecord
    staging_dir: Path
    session: Any = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    state: WorkflowState = WorkflowState.START

    log: Dict[str, Any] = field(default_factory=dict)
    completion_number: Optional[str] = None
    classification: FailureClassification = FailureClassification.NONE
    reference_number: Optional[str] = None
    failure_message: Optional[str] = None

    capture_attempts: List[CaptureAttempt] = field(default_factory=list)
    artifacts: List[ArtifactDescriptor] = field(default_factory=list)
    artifact_urls: List[str] = field(default_factory=list)
    handled_failures: Dict[str, CheckpointResult] = field(default_factory=dict)
    _closed: bool = False

    def record(self, key: str, value: Any) -> None:
        self.log[key] = value

    @staticmethod
    def fingerprint(page_html: str) -> str:
        return hashlib.sha256((page_html or "").encode("utf-8", errors="replace")).hexdigest()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.session is not None:
                self.session.close()
        except Exception as e:
            logger.warning("[ctx] session close failed run=%s: %s", self.run_id, e)
        finally:
            self.session = None
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            logger.debug("[ctx] cleaned up run=%s staging=%s", self.run_id, self.staging_dir)


# -----------------------------------------------------------------------------
# Outcome
# -----------------------------------------------------------------------------
@dataclass
class RunResult:
    run_id: str
    record_id: str
    success: bool
    completion_number: Optional[str]
    artifact_urls: List[str]
    classification: FailureClassification = FailureClassification.NONE
    reference_number: Optional[str] = None
    message: str = ""
    error_type: Optional[str] = None
    state: WorkflowState = WorkflowState.START
    capture_attempts: List[CaptureAttempt] = field(default_factory=list)
    total_time_ms: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "record_id": self.record_id,
            "success": self.success,
            "completion_number": self.completion_number,
            "artifact_urls": list(self.artifact_urls),
            "classification": self.classification.value,
            "reference_number": self.reference_number,
            "message": self.message,
            "error_type": self.error_type,
            "state": self.state.value,
            "capture_attempts": [a.to_dict() for a in self.capture_attempts],
            "total_time_ms": self.total_time_ms,
            "timestamp": self.timestamp,
        }
