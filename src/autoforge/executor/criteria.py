"""Acceptance criteria evaluation.

Criteria are an ordered list of independent predicates over a command's
stdout, stderr and exit code. The first failing predicate decides the
outcome; with no criteria declared the command passes iff it exits 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from autoforge.models import SuccessCriterion
from autoforge.sandbox_manager import ExecResult


@dataclass(frozen=True)
class CriteriaOutcome:
    """Result of evaluating a command against its criteria.

    Attributes:
        passed: Whether every criterion held.
        failed_criterion: The first criterion that did not hold, if any.
        message: Human-readable reason, fed back to the next attempt.
    """

    passed: bool
    failed_criterion: Optional[SuccessCriterion] = None
    message: str = ""


def _check(criterion: SuccessCriterion, result: ExecResult) -> Optional[str]:
    """Return None if ``criterion`` holds, otherwise the failure message."""
    kind = criterion.type
    value = criterion.value

    if kind == "exit_code":
        try:
            expected = 0 if value is None else int(value)
        except (TypeError, ValueError):
            return f"exit_code criterion has a non-integer value: {value!r}"
        if result.exit_code != expected:
            return f"expected exit code {expected}, got {result.exit_code}"
        return None

    stream_name, _, predicate = kind.partition("_")
    stream = result.stdout if stream_name == "stdout" else result.stderr

    if predicate == "empty":
        if stream.strip():
            return f"expected {stream_name} to be empty"
        return None

    if value is None or str(value) == "":
        return f"{kind} criterion has no value"
    needle = str(value)

    if predicate == "contains":
        if needle not in stream:
            return f"expected {stream_name} to contain {needle!r}"
        return None
    if predicate == "not_contains":
        if needle in stream:
            return f"expected {stream_name} not to contain {needle!r}"
        return None

    return f"unsupported criterion type: {kind}"


def evaluate_criteria(
    result: ExecResult, criteria: Sequence[SuccessCriterion] = ()
) -> CriteriaOutcome:
    if not criteria:
        if result.exit_code == 0:
            return CriteriaOutcome(passed=True)
        return CriteriaOutcome(
            passed=False, message=f"command exited with code {result.exit_code}"
        )

    for criterion in criteria:
        failure = _check(criterion, result)
        if failure is not None:
            return CriteriaOutcome(passed=False, failed_criterion=criterion, message=failure)
    return CriteriaOutcome(passed=True)
