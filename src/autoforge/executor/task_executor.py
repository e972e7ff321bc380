"""Self-debugging execution of a single subtask.

Each attempt runs GENERATING -> RUNNING -> EVALUATING. A failed attempt
feeds its stdout, stderr, exit code or exception back into the next
generation request, up to ``max_debug_attempts`` attempts in total.

Failures folded into the retry loop:
- the generator raising or returning nothing usable
- the command timing out or failing to start
- acceptance criteria not holding

Only sandbox creation failures, security violations and exhaustion leave
this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from autoforge.collaborators import CodeGenerator
from autoforge.error_classifier import error_kind_of
from autoforge.events import EventChannel, EventType
from autoforge.exceptions import (
    CommandExecutionError,
    ErrorKind,
    GenerationError,
    SecurityViolationError,
    SubtaskExhaustedError,
)
from autoforge.executor.criteria import evaluate_criteria
from autoforge.executor.response_parser import DEFAULT_PRIMARY_FILE, parse_generated_files
from autoforge.models import Subtask
from autoforge.sandbox_manager import PROJECT_SUBDIR, ExecResult, SandboxManager, SandboxSession

logger = logging.getLogger(__name__)

# Tail of each stream kept in error context and events
MAX_OUTPUT_CHARS = 4000


def _tail(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "...[truncated]...\n" + text[-limit:]


@dataclass(frozen=True)
class AttemptRecord:
    """Immutable record of one attempt.

    Attributes:
        attempt: 1-based attempt number.
        success: Whether the attempt met its criteria.
        error_kind: Kind of failure, None on success.
        message: Failure reason (criterion message or exception text).
        exit_code: Command exit code when the command ran.
        stdout: Captured stdout (tail).
        stderr: Captured stderr (tail).
        duration_ms: Command wall time when the command ran.
        files_generated: Paths produced by the generator on this attempt.
    """

    attempt: int
    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    files_generated: List[str] = field(default_factory=list)

    def to_error_context(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class SubtaskResult:
    """Successful outcome of ``execute_subtask``.

    ``artifacts`` is the full merged file set (project files plus everything
    generated or produced); ``generated_files`` is only what the generator
    wrote across attempts.
    """

    subtask_id: str
    artifacts: Dict[str, str]
    generated_files: Dict[str, str]
    logs: Dict[str, Any]
    attempts: List[AttemptRecord]

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class TaskExecutor:
    """Runs subtasks in fresh sandboxes with bounded self-correction."""

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        code_generator: CodeGenerator,
        max_debug_attempts: int = 3,
        default_timeout_ms: int = 60_000,
        events: Optional[EventChannel] = None,
        image: Optional[str] = None,
    ):
        if max_debug_attempts < 1:
            raise ValueError("max_debug_attempts must be at least 1")
        self.sandbox_manager = sandbox_manager
        self.code_generator = code_generator
        self.max_debug_attempts = max_debug_attempts
        self.default_timeout_ms = default_timeout_ms
        self.events = events
        self.image = image

    @classmethod
    def from_settings(
        cls,
        settings,
        sandbox_manager: SandboxManager,
        code_generator: CodeGenerator,
        events: Optional[EventChannel] = None,
    ) -> "TaskExecutor":
        return cls(
            sandbox_manager,
            code_generator,
            max_debug_attempts=settings.max_debug_attempts,
            default_timeout_ms=settings.sandbox.default_command_timeout_ms,
            events=events,
        )

    def _publish(self, project_name: Optional[str], payload: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.publish(EventType.SANDBOX_LOG, project_name, payload)

    @staticmethod
    def _primary_file(subtask: Subtask) -> str:
        return subtask.expected_artifacts[0] if subtask.expected_artifacts else DEFAULT_PRIMARY_FILE

    def _generate(
        self,
        subtask: Subtask,
        snapshot: Mapping[str, str],
        error_context: Optional[Dict[str, Any]],
    ) -> Dict[str, str]:
        response = self.code_generator.generate(subtask, dict(snapshot), error_context)
        files = parse_generated_files(response, primary_file=self._primary_file(subtask))
        normalized = {}
        for path, content in files.items():
            normalized[SandboxManager.validate_relative_path(path)] = content
        return normalized

    def _collect_expected_artifacts(self, session: SandboxSession, subtask: Subtask) -> Dict[str, str]:
        """Read declared artifacts the run command wrote into the project dir."""
        if session.host_work_dir is None or not subtask.expected_artifacts:
            return {}
        project_root = (Path(session.host_work_dir) / PROJECT_SUBDIR).resolve()
        produced = {}
        for artifact in subtask.expected_artifacts:
            relative = SandboxManager.validate_relative_path(artifact)
            path = (project_root / relative).resolve()
            if not path.is_relative_to(project_root) or not path.is_file():
                continue
            try:
                produced[relative] = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning(f"[TaskEx] Could not read artifact {relative}: {e}")
        return produced

    def execute_subtask(
        self,
        subtask: Subtask,
        project_files: Mapping[str, str],
        params: Optional[Mapping[str, Any]] = None,
        project_name: Optional[str] = None,
    ) -> SubtaskResult:
        """Generate, run and verify ``subtask``.

        Args:
            subtask: The subtask to execute
            project_files: Current project file set; never mutated
            params: Per-subtask overrides (``timeout_ms``) set by a
                RETRY_WITH_PARAMS recovery
            project_name: Used for event attribution only

        Returns:
            SubtaskResult on the first attempt whose criteria hold

        Raises:
            SubtaskExhaustedError: After ``max_debug_attempts`` failed attempts
            SandboxCreationError: If a sandbox cannot be created
            SecurityViolationError: If generated paths try to escape the project
        """
        params = params or {}
        timeout_ms = int(params.get("timeout_ms") or subtask.timeout_ms or self.default_timeout_ms)
        generated: Dict[str, str] = {}
        attempts: List[AttemptRecord] = []
        last_failure: Optional[AttemptRecord] = None

        for attempt in range(1, self.max_debug_attempts + 1):
            logger.info(
                f"[TaskEx] Subtask {subtask.id} attempt {attempt}/{self.max_debug_attempts} "
                f"(timeout={timeout_ms}ms)"
            )
            snapshot = dict(project_files)
            snapshot.update(generated)
            error_context = last_failure.to_error_context() if last_failure else None

            # GENERATING
            try:
                new_files = self._generate(subtask, snapshot, error_context)
                if not new_files and not generated:
                    raise GenerationError(
                        "Code generator returned no files", context={"subtask_id": subtask.id}
                    )
            except SecurityViolationError:
                raise
            except Exception as e:
                last_failure = AttemptRecord(
                    attempt=attempt,
                    success=False,
                    error_kind=error_kind_of(e),
                    message=f"Generation failed: {e}",
                )
                attempts.append(last_failure)
                logger.warning(f"[TaskEx] Attempt {attempt} for {subtask.id}: generation failed: {e}")
                continue

            generated.update(new_files)
            snapshot.update(new_files)

            # RUNNING
            result: Optional[ExecResult] = None
            run_error: Optional[CommandExecutionError] = None
            produced: Dict[str, str] = {}
            with self.sandbox_manager.session(snapshot, image=self.image) as session:
                try:
                    result = self.sandbox_manager.exec(
                        session.session_id, subtask.run_command, timeout_ms=timeout_ms
                    )
                    produced = self._collect_expected_artifacts(session, subtask)
                except CommandExecutionError as e:
                    run_error = e

            if run_error is not None:
                last_failure = AttemptRecord(
                    attempt=attempt,
                    success=False,
                    error_kind=run_error.kind,
                    message=run_error.message,
                    files_generated=sorted(new_files),
                )
                attempts.append(last_failure)
                self._publish(
                    project_name,
                    {"subtask_id": subtask.id, "attempt": attempt, "error": run_error.message},
                )
                logger.warning(f"[TaskEx] Attempt {attempt} for {subtask.id}: {run_error.message}")
                continue

            # EVALUATING
            outcome = evaluate_criteria(result, subtask.success_criteria)
            record = AttemptRecord(
                attempt=attempt,
                success=outcome.passed,
                error_kind=None if outcome.passed else ErrorKind.EXECUTION,
                message=outcome.message,
                exit_code=result.exit_code,
                stdout=_tail(result.stdout),
                stderr=_tail(result.stderr),
                duration_ms=result.duration_ms,
                files_generated=sorted(new_files),
            )
            attempts.append(record)
            self._publish(
                project_name,
                {
                    "subtask_id": subtask.id,
                    "attempt": attempt,
                    "exit_code": result.exit_code,
                    "stdout": record.stdout,
                    "stderr": record.stderr,
                    "passed": outcome.passed,
                },
            )

            if outcome.passed:
                artifacts = dict(snapshot)
                artifacts.update(produced)
                logger.info(f"[TaskEx] Subtask {subtask.id} succeeded on attempt {attempt}")
                return SubtaskResult(
                    subtask_id=subtask.id,
                    artifacts=artifacts,
                    generated_files=dict(generated),
                    logs={
                        "stdout": result.stdout,
                        "stderr": result.stderr,
                        "exit_code": result.exit_code,
                        "duration_ms": result.duration_ms,
                    },
                    attempts=attempts,
                )

            last_failure = record
            logger.warning(f"[TaskEx] Attempt {attempt} for {subtask.id} failed: {outcome.message}")

        kind = last_failure.error_kind if last_failure and last_failure.error_kind else ErrorKind.EXECUTION
        raise SubtaskExhaustedError(
            f"Subtask {subtask.id} failed after {len(attempts)} attempts: "
            f"{last_failure.message if last_failure else 'no attempts'}",
            kind=kind,
            context={"subtask_id": subtask.id, "attempts": len(attempts)},
            attempts=attempts,
            last_failure=last_failure.to_error_context() if last_failure else None,
        )
