"""Error classification and recovery selection.

Pure decision logic: ``classify`` maps an error's ``ErrorKind`` to a
severity and suggested action, and ``determine_recovery_strategy`` turns
that classification plus the number of retries already spent into a
concrete recovery (retry, retry with modified parameters, re-plan, skip or
halt).

Exceptions from outside the autoforge hierarchy are normalized to a kind
first:

- connection resets and rate limits -> ``transient``
- JSON decode errors -> ``malformed_output``
- builtin ``TimeoutError`` -> ``timeout``
- anything else -> ``unknown``
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .exceptions import AutoforgeError, ErrorKind

logger = logging.getLogger(__name__)


class Severity(Enum):
    """How bad a classified error is."""

    FATAL = "FATAL"
    CRITICAL = "CRITICAL"
    RECOVERABLE_WITH_MODIFICATION = "RECOVERABLE_WITH_MODIFICATION"
    RETRYABLE_TRANSIENT = "RETRYABLE_TRANSIENT"
    WARNING = "WARNING"


class SuggestedAction(Enum):
    HALT = "HALT"
    RETRY_AS_IS = "RETRY_AS_IS"
    RETRY_WITH_PARAMS = "RETRY_WITH_PARAMS"
    REPLAN = "REPLAN"
    SKIP = "SKIP"


class RecoveryType(Enum):
    RETRY_AS_IS = "RETRY_AS_IS"
    RETRY_WITH_PARAMS = "RETRY_WITH_PARAMS"
    REPLAN_FROM_CHECKPOINT = "REPLAN_FROM_CHECKPOINT"
    SKIP_OPTIONAL = "SKIP_OPTIONAL"
    HALT = "HALT"


@dataclass(frozen=True)
class ErrorClassification:
    """Derived view of an error used to pick a recovery."""

    kind: ErrorKind
    severity: Severity
    is_retryable: bool
    suggested_action: SuggestedAction
    details: str = ""
    error_type: str = "Exception"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
            "suggested_action": self.suggested_action.value,
            "details": self.details,
            "error_type": self.error_type,
        }


@dataclass(frozen=True)
class RecoveryStrategy:
    type: RecoveryType
    params: Dict[str, Any] = field(default_factory=dict)
    delay_ms: int = 0


@dataclass(frozen=True)
class RecoveryPolicy:
    """Retry ceilings and delays. ``from_settings`` reads them from config."""

    max_simple_retries: int = 2
    max_modified_retries: int = 1
    base_delay_ms: int = 1000
    modified_delay_ms: int = 2000
    timeout_multiplier: float = 1.5

    @classmethod
    def from_settings(cls, settings) -> "RecoveryPolicy":
        return cls(
            max_simple_retries=settings.max_subtask_retries.simple,
            max_modified_retries=settings.max_subtask_retries.modified,
            base_delay_ms=settings.retry_delay.base_ms,
            modified_delay_ms=settings.retry_delay.modified_ms,
        )


_TRANSIENT_MARKERS = ("econnreset", "rate limit", "rate_limit", "too many requests", "429")

# Descending priority; security violations come first so nothing can soften them.
_KIND_TABLE = {
    ErrorKind.SECURITY_VIOLATION: (Severity.FATAL, False, SuggestedAction.HALT),
    ErrorKind.TRANSIENT: (Severity.RETRYABLE_TRANSIENT, True, SuggestedAction.RETRY_AS_IS),
    ErrorKind.RESOURCE_LIMIT: (
        Severity.RECOVERABLE_WITH_MODIFICATION,
        True,
        SuggestedAction.RETRY_WITH_PARAMS,
    ),
    ErrorKind.MALFORMED_OUTPUT: (
        Severity.RECOVERABLE_WITH_MODIFICATION,
        True,
        SuggestedAction.RETRY_WITH_PARAMS,
    ),
    ErrorKind.EXECUTION: (
        Severity.RECOVERABLE_WITH_MODIFICATION,
        True,
        SuggestedAction.RETRY_WITH_PARAMS,
    ),
    ErrorKind.TIMEOUT: (
        Severity.RECOVERABLE_WITH_MODIFICATION,
        True,
        SuggestedAction.RETRY_WITH_PARAMS,
    ),
    ErrorKind.COORDINATION: (Severity.CRITICAL, False, SuggestedAction.REPLAN),
    ErrorKind.SERIALIZATION: (Severity.FATAL, False, SuggestedAction.HALT),
    ErrorKind.INFRASTRUCTURE: (Severity.FATAL, False, SuggestedAction.HALT),
    ErrorKind.UNKNOWN: (Severity.FATAL, False, SuggestedAction.HALT),
}


def error_kind_of(error: BaseException) -> ErrorKind:
    """Return the kind of an autoforge error, or infer one for a foreign exception."""
    if isinstance(error, AutoforgeError):
        return error.kind
    if isinstance(error, json.JSONDecodeError):
        return ErrorKind.MALFORMED_OUTPUT
    if isinstance(error, ConnectionError):
        return ErrorKind.TRANSIENT
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def classify(
    error: BaseException, context: Optional[Mapping[str, Any]] = None
) -> ErrorClassification:
    """Classify ``error``.

    Args:
        error: The exception to classify
        context: Optional hints; ``is_optional_task`` downgrades any
            non-fatal classification to WARNING/SKIP

    Returns:
        ErrorClassification
    """
    context = context or {}
    kind = error_kind_of(error)
    severity, is_retryable, action = _KIND_TABLE[kind]

    if context.get("is_optional_task") and severity is not Severity.FATAL:
        severity, is_retryable, action = Severity.WARNING, False, SuggestedAction.SKIP

    message = error.message if isinstance(error, AutoforgeError) else str(error)
    classification = ErrorClassification(
        kind=kind,
        severity=severity,
        is_retryable=is_retryable,
        suggested_action=action,
        details=message,
        error_type=type(error).__name__,
    )
    logger.debug(
        f"[Classifier] {classification.error_type} -> kind={kind.value} "
        f"severity={severity.value} action={action.value}"
    )
    return classification


def determine_recovery_strategy(
    classification: ErrorClassification,
    attempt_number: int,
    policy: Optional[RecoveryPolicy] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> RecoveryStrategy:
    """Pick a recovery for a classified failure.

    Args:
        classification: Result of ``classify``
        attempt_number: Retries already consumed for this subtask (0 on the
            first failure)
        policy: Retry ceilings and delays
        context: ``last_checkpoint_id`` and ``subtask_id`` for re-plans

    Returns:
        RecoveryStrategy
    """
    policy = policy or RecoveryPolicy()
    context = context or {}
    action = classification.suggested_action

    if action is SuggestedAction.RETRY_AS_IS:
        if attempt_number < policy.max_simple_retries:
            return RecoveryStrategy(
                RecoveryType.RETRY_AS_IS, delay_ms=(attempt_number + 1) * policy.base_delay_ms
            )
        logger.warning(
            f"[Classifier] Simple retries exhausted ({policy.max_simple_retries}) for {classification.kind.value}"
        )
        return RecoveryStrategy(RecoveryType.HALT, params={"reason": "max_simple_retries_exhausted"})

    if action is SuggestedAction.RETRY_WITH_PARAMS:
        if attempt_number < policy.max_modified_retries:
            params: Dict[str, Any] = {"modification_hint": classification.kind.value}
            if classification.kind is ErrorKind.TIMEOUT:
                params["timeout_multiplier"] = policy.timeout_multiplier
            return RecoveryStrategy(
                RecoveryType.RETRY_WITH_PARAMS, params=params, delay_ms=policy.modified_delay_ms
            )
        logger.warning(
            f"[Classifier] Modified retries exhausted ({policy.max_modified_retries}), escalating to re-plan"
        )
        return RecoveryStrategy(
            RecoveryType.REPLAN_FROM_CHECKPOINT,
            params=_replan_params(classification, context, "max_modified_retries_exhausted"),
        )

    if action is SuggestedAction.REPLAN:
        return RecoveryStrategy(
            RecoveryType.REPLAN_FROM_CHECKPOINT,
            params=_replan_params(classification, context, classification.details),
        )

    if action is SuggestedAction.SKIP:
        return RecoveryStrategy(RecoveryType.SKIP_OPTIONAL)

    return RecoveryStrategy(RecoveryType.HALT, params={"reason": classification.details})


def _replan_params(
    classification: ErrorClassification, context: Mapping[str, Any], reason: str
) -> Dict[str, Any]:
    return {
        "checkpoint_id": context.get("last_checkpoint_id"),
        "reason": reason or classification.kind.value,
        "failed_subtask_id": context.get("subtask_id"),
    }
