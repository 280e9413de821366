from __future__ import annotations

"""
Checkpoint classification: run after every state-changing action.

The page text is matched (case-insensitive substring) against known
boilerplate. A rejection outranks a validation error when both are present.
"""

from typing import Iterable, Optional, Tuple

from playwright.sync_api import TimeoutError as PWTimeoutError, Error as PWError

from .extraction import ErrorMessageExtractor, ReferenceNumberExtractor
from .models import CheckpointResult, FailureClassification
from .settings import setup_logger

logger = setup_logger("ein_agent.classifier")

TERMINAL_REJECTION_MARKERS: Tuple[str, ...] = (
    "we are unable to provide you with an ein",
    "unable to provide you with an ein",
    "we cannot provide you with an ein",
    "we are unable to process your request",
    "unable to process your request at this time",
    "your session has expired",
    "you have exceeded the number of",
)

VALIDATION_MARKERS: Tuple[str, ...] = (
    "error(s) has occurred",
    "the following error has occurred",
    "the following errors have occurred",
    "please correct the following",
    "is a required field",
    "is not a valid",
)


def _contains_any(haystack: str, needles: Iterable[str]) -> bool:
    return any(n in haystack for n in needles)


def classify_text(page_text: Optional[str]) -> FailureClassification:
    t = " ".join((page_text or "").lower().split())
    if not t:
        return FailureClassification.NONE
    if _contains_any(t, TERMINAL_REJECTION_MARKERS):
        return FailureClassification.TERMINAL_REJECTION
    if _contains_any(t, VALIDATION_MARKERS):
        return FailureClassification.VALIDATION_ERROR
    return FailureClassification.NONE


class CheckpointClassifier:
    def __init__(
        self,
        *,
        settle_delay_s: float = 1.0,
        reference_extractor: Optional[ReferenceNumberExtractor] = None,
        message_extractor: Optional[ErrorMessageExtractor] = None,
    ):
        self.settle_delay_s = float(settle_delay_s)
        self.reference_extractor = reference_extractor or ReferenceNumberExtractor()
        self.message_extractor = message_extractor or ErrorMessageExtractor()

    def checkpoint(self, session, *, label: str = "") -> CheckpointResult:
        session.pause(self.settle_delay_s)
        try:
            text = session.page_text()
        except (PWTimeoutError, PWError) as e:
            logger.warning("[checkpoint] %s: page text unavailable: %s", label, e)
            return CheckpointResult(FailureClassification.NONE)

        classification = classify_text(text)
        if classification == FailureClassification.NONE:
            logger.debug("[checkpoint] %s: clean", label)
            return CheckpointResult(classification)

        logger.warning("[checkpoint] %s: %s", label, classification.value)
        result = CheckpointResult(classification)
        result.reference_number = self.reference_extractor.extract(session)
        if result.reference_number is None:
            result.message = self.message_extractor.extract(session)
        return result
