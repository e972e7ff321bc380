"""Project orchestration loop.

The orchestrator owns the request queue and the live ``ProjectState`` of
every active project. Each ``tick`` advances the project at the head of the
queue by one macro-step (analysis, or one pass over its remaining
subtasks), then rotates it to the tail unless it reached a terminal state.
Requests waiting out a retry delay are skipped.

Flow per project:

    new -> analysis_in_progress -> analysis_complete -> processing_tasks
        -> completed_successfully
        -> subtask_pending_retry -> processing_tasks ...
        -> failed_needs_replan -> analysis_in_progress ...
        -> failed_subtask_unrecoverable | failed_terminal

Every transition is persisted and checkpointed.

Usage:
    orchestrator = Orchestrator.from_settings(settings, planner, generator)
    orchestrator.start()
    orchestrator.submit_request("Add a CSV export", "billing-service")
    ...
    orchestrator.shutdown()
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import ValidationError

from .collaborators import CodeGenerator, Planner
from .config import Settings
from .error_classifier import (
    ErrorClassification,
    RecoveryPolicy,
    RecoveryStrategy,
    RecoveryType,
    SuggestedAction,
    classify,
    determine_recovery_strategy,
)
from .events import EventChannel, EventType
from .exceptions import (
    AutoforgeError,
    CoordinationError,
    PersistenceError,
    ReplanRequired,
    SecurityViolationError,
)
from .executor.task_executor import TaskExecutor
from .logging_config import project_name_var
from .models import (
    TERMINAL_STATUSES,
    AnalysisResult,
    ErrorRecord,
    ExecutionState,
    ProjectState,
    ProjectStatus,
    Subtask,
)
from .persistence import CHECKPOINT_MARKER, ProjectStore, sanitize_name
from .sandbox_manager import SandboxManager

logger = logging.getLogger(__name__)

MAX_PROJECT_NAME_LENGTH = 128
LOAD_FAILURE = "LoadFailure"
_STAGE_RE = re.compile(r"[^A-Za-z0-9_-]")


class SystemHealth(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR_LOOP_FAILURE = "error_loop_failure"


@dataclass
class ProjectRequest:
    """One queued request for a project."""

    project_name: str
    user_input: str
    initial_files: Dict[str, str] = field(default_factory=dict)
    force_reanalysis: bool = False
    not_before: float = 0.0
    prepared: bool = False
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SubmissionResult:
    success: bool
    message: str
    code: Optional[str] = None
    project_name: Optional[str] = None


class Orchestrator:
    """Drives projects from request to completed, verified code."""

    def __init__(
        self,
        settings: Settings,
        store: ProjectStore,
        sandbox_manager: SandboxManager,
        planner: Planner,
        code_generator: CodeGenerator,
        events: Optional[EventChannel] = None,
        task_executor: Optional[TaskExecutor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.sandbox_manager = sandbox_manager
        self.planner = planner
        self.events = events or EventChannel(settings.system.event_queue_size)
        self.task_executor = task_executor or TaskExecutor.from_settings(
            settings, sandbox_manager, code_generator, events=self.events
        )
        self.policy = RecoveryPolicy.from_settings(settings)
        self._clock = clock

        self._queue: Deque[ProjectRequest] = deque()
        self._queue_lock = threading.Lock()
        self._tick_lock = threading.RLock()
        self._projects: Dict[str, ProjectState] = {}
        self._projects_lock = threading.Lock()

        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.health = SystemHealth.INITIALIZING
        self.last_global_error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        planner: Planner,
        code_generator: CodeGenerator,
        docker_client: Any = None,
    ) -> "Orchestrator":
        return cls(
            settings,
            ProjectStore.from_settings(settings),
            SandboxManager(settings.sandbox, client=docker_client),
            planner,
            code_generator,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def initialize(self) -> None:
        """Mark the system ready. Called implicitly by ``start``."""
        if self.health is SystemHealth.INITIALIZING:
            self.health = SystemHealth.READY
            logger.info("[Orchestrator] Initialized and ready")

    def start(self, run_loop: bool = True) -> None:
        """Start accepting requests; with ``run_loop`` tick on a background thread.

        Raises:
            CoordinationError: If the system is in an error state
        """
        self.initialize()
        if self.health is not SystemHealth.READY:
            raise CoordinationError(
                f"Cannot start: system health is {self.health.value}",
                context={"health": self.health.value},
            )
        if self._running:
            logger.warning("[Orchestrator] Already running")
            return

        self._running = True
        self._stop_event.clear()
        if run_loop:
            self._thread = threading.Thread(
                target=self._run_loop, name="autoforge-orchestrator", daemon=True
            )
            self._thread.start()
        logger.info(f"[Orchestrator] Started (background loop={run_loop})")

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the loop, wait for the current tick, destroy every sandbox."""
        was_running = self._running
        self._running = False
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("[Orchestrator] Loop thread did not stop within timeout")
        self._thread = None
        self.sandbox_manager.destroy_all()
        if was_running:
            logger.info("[Orchestrator] Stopped; sandboxes cleaned up")

    def _run_loop(self) -> None:
        interval = self.settings.system.main_loop_interval_ms / 1000.0
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                self._handle_loop_error(e)
                return
            self._stop_event.wait(interval)

    def _handle_loop_error(self, error: BaseException) -> None:
        logger.critical(f"[Orchestrator] Operational loop failure: {error}", exc_info=True)
        self.health = SystemHealth.ERROR_LOOP_FAILURE
        self.last_global_error = {
            "error_type": type(error).__name__,
            "message": str(error),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._running = False
        self._stop_event.set()
        self.sandbox_manager.destroy_all()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def submit_request(
        self,
        user_input: str,
        project_name: str,
        initial_files: Optional[Dict[str, str]] = None,
        force_reanalysis: bool = False,
    ) -> SubmissionResult:
        """Queue a change request for ``project_name``.

        Returns a refusal (never raises) when the system is not running or
        the arguments are invalid.
        """
        if not self._running or self.health is not SystemHealth.READY:
            logger.error(
                f"[Orchestrator] Rejecting request: running={self._running} health={self.health.value}"
            )
            return SubmissionResult(
                False, "System not running or not ready", code="SYSTEM_NOT_OPERATIONAL"
            )
        if (
            not isinstance(project_name, str)
            or not project_name.strip()
            or len(project_name) > MAX_PROJECT_NAME_LENGTH
            or "\x00" in project_name
            or CHECKPOINT_MARKER in sanitize_name(project_name)
        ):
            return SubmissionResult(False, "Invalid or empty project name", code="INVALID_PROJECT_NAME")
        if not isinstance(user_input, str) or not user_input.strip():
            return SubmissionResult(False, "Request text must not be empty", code="INVALID_REQUEST")

        request = ProjectRequest(
            project_name=project_name,
            user_input=user_input,
            initial_files=dict(initial_files or {}),
            force_reanalysis=force_reanalysis,
        )
        with self._queue_lock:
            if any(queued.project_name == project_name for queued in self._queue):
                return SubmissionResult(
                    False,
                    f"Project {project_name} already has a queued request",
                    code="PROJECT_ALREADY_QUEUED",
                    project_name=project_name,
                )
            self._queue.append(request)
        logger.info(f"[Orchestrator] Request queued for {project_name}: {user_input[:100]!r}")
        return SubmissionResult(True, "Request submitted", project_name=project_name)

    def queued_projects(self) -> List[str]:
        with self._queue_lock:
            return [request.project_name for request in self._queue]

    def get_project(self, project_name: str) -> Optional[ProjectState]:
        with self._projects_lock:
            return self._projects.get(project_name)

    def _register_project(self, project_name: str, state: ProjectState) -> None:
        with self._projects_lock:
            self._projects[project_name] = state

    def get_system_status(self) -> Dict[str, Any]:
        with self._projects_lock:
            active = {name: state.status for name, state in self._projects.items()}
        return {
            "health": self.health.value,
            "running": self._running,
            "queued": self.queued_projects(),
            "active_projects": active,
            "active_sandboxes": len(self.sandbox_manager.active_session_ids()),
            "dropped_events": self.events.dropped_count,
            "last_global_error": self.last_global_error,
        }

    def restore_project(self, project_name: str, checkpoint_id: str) -> ProjectState:
        """Replace the live state of ``project_name`` with a checkpoint."""
        with self._tick_lock:
            state = self.store.restore_from_checkpoint(project_name, checkpoint_id)
            self._register_project(project_name, state)
        self._publish_status(state)
        logger.info(f"[Orchestrator] Restored {project_name} from checkpoint {checkpoint_id}")
        return state

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _next_ready_request(self) -> Optional[ProjectRequest]:
        now = self._clock()
        with self._queue_lock:
            for _ in range(len(self._queue)):
                request = self._queue[0]
                if request.not_before <= now:
                    return request
                self._queue.rotate(-1)
        return None

    def tick(self) -> bool:
        """Advance one project by one step. Returns True if work was done."""
        if not self._running or self.health is not SystemHealth.READY:
            return False
        request = self._next_ready_request()
        if request is None:
            return False

        token = project_name_var.set(request.project_name)
        try:
            with self._tick_lock:
                terminal = self._advance(request)
        finally:
            project_name_var.reset(token)

        with self._queue_lock:
            if self._queue and self._queue[0] is request:
                if terminal:
                    self._queue.popleft()
                else:
                    self._queue.rotate(-1)
            elif terminal and request in self._queue:
                self._queue.remove(request)
        if terminal:
            logger.info(
                f"[Orchestrator] Project {request.project_name} finished with status "
                f"{self.get_project(request.project_name).status}"
            )
        return True

    def _advance(self, request: ProjectRequest) -> bool:
        name = request.project_name
        state = self.get_project(name)
        if state is None:
            state = self._load_or_initialize(request)
            self._register_project(name, state)
            if state.execution.last_error and state.execution.last_error.error_type == LOAD_FAILURE:
                # Leave the unreadable document on disk untouched.
                return True
        if not request.prepared:
            self._prepare_request(request, state)

        try:
            if state.execution.last_checkpoint_id is None:
                self._checkpoint(state, "initialization")

            if self._needs_analysis(state):
                self._run_analysis(state)

            if state.execution.remaining_ids:
                self._process_subtasks(request, state)

            if not state.execution.remaining_ids and state.status in (
                ProjectStatus.ANALYSIS_COMPLETE.value,
                ProjectStatus.PROCESSING_TASKS.value,
            ):
                self._set_status(state, ProjectStatus.COMPLETED_SUCCESSFULLY)
                self._checkpoint(state, "project_completed")
        except Exception as e:
            self._handle_project_error(request, state, e)

        return state.status in TERMINAL_STATUSES

    # ------------------------------------------------------------------
    # Project preparation
    # ------------------------------------------------------------------

    def _load_or_initialize(self, request: ProjectRequest) -> ProjectState:
        name = request.project_name
        try:
            loaded = self.store.load(name)
        except PersistenceError as e:
            logger.error(f"[Orchestrator] Cannot load project {name}: {e}")
            state = ProjectState.new(name, request.user_input, request.initial_files)
            state.metadata.status = ProjectStatus.FAILED_TERMINAL.value
            state.execution.last_error = ErrorRecord(
                kind=e.kind.value,
                error_type=LOAD_FAILURE,
                message=e.message,
                severity="FATAL",
                suggested_action=SuggestedAction.HALT.value,
                recovery_attempted=RecoveryType.HALT.value,
                details=type(e).__name__,
            )
            return state

        if loaded is not None:
            logger.info(f"[Orchestrator] Loaded existing project {name} ({loaded.status})")
            if request.initial_files:
                loaded.context.files.update(request.initial_files)
            return loaded

        state = ProjectState.new(name, request.user_input, request.initial_files)
        logger.info(f"[Orchestrator] Initialized new project {name}")
        return state

    def _prepare_request(self, request: ProjectRequest, state: ProjectState) -> None:
        """Apply a fresh request to the project's state (once per request)."""
        request.prepared = True
        state.conversation.current_request = request.user_input
        state.execution.project_retry_attempts = 0
        if request.force_reanalysis or state.status in TERMINAL_STATUSES:
            logger.info(
                f"[Orchestrator] Resetting {state.metadata.name} for a new analysis "
                f"(previous status {state.status})"
            )
            state.execution = ExecutionState(last_checkpoint_id=state.execution.last_checkpoint_id)
            state.plan = None
            state.understanding = None
            self._set_status(state, ProjectStatus.NEW)

    @staticmethod
    def _needs_analysis(state: ProjectState) -> bool:
        if state.status in (
            ProjectStatus.NEW.value,
            ProjectStatus.ANALYSIS_IN_PROGRESS.value,
            ProjectStatus.FAILED_NEEDS_REPLAN.value,
        ):
            return True
        return state.plan is None and not state.execution.subtasks_full

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _run_analysis(self, state: ProjectState) -> None:
        name = state.metadata.name
        is_replan = state.status == ProjectStatus.FAILED_NEEDS_REPLAN.value
        failure_context = (
            state.execution.last_error.model_dump(mode="json")
            if is_replan and state.execution.last_error
            else None
        )
        self._set_status(state, ProjectStatus.ANALYSIS_IN_PROGRESS)
        logger.info(f"[Orchestrator] Running {'re-plan' if is_replan else 'analysis'} for {name}")

        context = {
            "files": dict(state.context.files),
            "completed_ids": list(state.execution.completed_ids),
            "is_replan": is_replan,
            "failure_context": failure_context,
        }
        request_text = state.conversation.current_request or state.conversation.original_request
        raw = self.planner.analyze(request_text, context)
        result = self._validate_analysis(raw)

        completed = set(state.execution.completed_ids)
        state.understanding = result.understanding
        state.plan = result.plan
        state.execution.subtasks_full = list(result.subtasks)
        state.execution.remaining_ids = [s.id for s in result.subtasks if s.id not in completed]
        state.execution.subtask_attempts = {}
        state.execution.subtask_params = {}
        state.execution.current_subtask_id = None
        self._set_status(state, ProjectStatus.ANALYSIS_COMPLETE)
        self._checkpoint(state, "analysis_complete")
        logger.info(
            f"[Orchestrator] Analysis for {name} produced {len(result.subtasks)} subtasks, "
            f"{len(state.execution.remaining_ids)} remaining"
        )

    @staticmethod
    def _validate_analysis(raw: Any) -> AnalysisResult:
        if isinstance(raw, AnalysisResult):
            result = raw
        else:
            try:
                result = AnalysisResult.model_validate(raw)
            except ValidationError as e:
                raise CoordinationError(
                    f"Planner returned an invalid analysis: {e}", cause=e
                ) from e
        ids = [subtask.id for subtask in result.subtasks]
        duplicates = sorted({sid for sid in ids if ids.count(sid) > 1})
        if duplicates:
            raise CoordinationError(
                f"Planner returned duplicate subtask ids: {duplicates}",
                context={"duplicates": duplicates},
            )
        return result

    # ------------------------------------------------------------------
    # Subtask processing
    # ------------------------------------------------------------------

    def _process_subtasks(self, request: ProjectRequest, state: ProjectState) -> None:
        name = state.metadata.name
        execution = state.execution
        self._set_status(state, ProjectStatus.PROCESSING_TASKS)

        for subtask_id in list(execution.remaining_ids):
            if not self._running:
                logger.info(f"[Orchestrator] Stop requested; pausing {name} before {subtask_id}")
                break

            subtask = state.get_subtask(subtask_id)
            if subtask is None:
                logger.error(f"[Orchestrator] Subtask {subtask_id} missing from plan of {name}; dropping it")
                execution.remaining_ids.remove(subtask_id)
                continue

            attempt_number = execution.subtask_attempts.get(subtask_id, 0) + 1
            execution.subtask_attempts[subtask_id] = attempt_number
            execution.current_subtask_id = subtask_id
            self.events.publish(
                EventType.TASK_STARTED,
                name,
                {"subtask_id": subtask_id, "title": subtask.title, "attempt": attempt_number},
            )
            logger.info(f"[Orchestrator] Subtask {subtask_id} ({subtask.title}) attempt {attempt_number}")

            try:
                result = self.task_executor.execute_subtask(
                    subtask,
                    state.context.files,
                    params=execution.subtask_params.get(subtask_id),
                    project_name=name,
                )
            except SecurityViolationError as e:
                classification = classify(e)
                self._record_error(state, e, classification, RecoveryType.HALT, subtask_id)
                self._publish_task_failed(state, subtask, classification)
                execution.current_subtask_id = None
                self._set_status(state, ProjectStatus.FAILED_SUBTASK_UNRECOVERABLE)
                self._checkpoint(state, f"subtask_{subtask_id}_security_violation")
                logger.error(f"[Orchestrator] Security violation in {subtask_id}, halting {name}: {e}")
                return
            except Exception as e:
                if not self._recover_subtask(request, state, subtask, e, attempt_number):
                    return
                continue

            state.context.files = {**state.context.files, **result.artifacts}
            execution.remaining_ids.remove(subtask_id)
            execution.completed_ids.append(subtask_id)
            execution.subtask_attempts.pop(subtask_id, None)
            execution.subtask_params.pop(subtask_id, None)
            execution.current_subtask_id = None
            execution.last_error = None
            self._checkpoint(state, f"subtask_{subtask_id}_complete")
            self.events.publish(
                EventType.TASK_COMPLETED,
                name,
                {
                    "subtask_id": subtask_id,
                    "attempts": result.attempt_count,
                    "artifacts": sorted(result.generated_files),
                },
            )

        execution.current_subtask_id = None

    def _recover_subtask(
        self,
        request: ProjectRequest,
        state: ProjectState,
        subtask: Subtask,
        error: Exception,
        attempt_number: int,
    ) -> bool:
        """Apply the recovery for a failed subtask. Returns True to continue the pass."""
        execution = state.execution
        classification = classify(error, {"is_optional_task": subtask.is_optional})
        strategy = determine_recovery_strategy(
            classification,
            attempt_number - 1,
            self.policy,
            {"last_checkpoint_id": execution.last_checkpoint_id, "subtask_id": subtask.id},
        )
        logger.warning(
            f"[Orchestrator] Subtask {subtask.id} failed: kind={classification.kind.value} "
            f"severity={classification.severity.value} recovery={strategy.type.value}"
        )
        self._record_error(state, error, classification, strategy.type, subtask.id)
        self._publish_task_failed(state, subtask, classification, strategy)

        if strategy.type in (RecoveryType.RETRY_AS_IS, RecoveryType.RETRY_WITH_PARAMS):
            if strategy.type is RecoveryType.RETRY_WITH_PARAMS:
                self._apply_retry_params(state, subtask, strategy)
            request.not_before = self._clock() + strategy.delay_ms / 1000.0
            self._set_status(state, ProjectStatus.SUBTASK_PENDING_RETRY)
            self._checkpoint(state, f"subtask_{subtask.id}_pending_retry")
            return False

        if strategy.type is RecoveryType.SKIP_OPTIONAL:
            execution.remaining_ids.remove(subtask.id)
            execution.completed_ids.append(subtask.id)
            execution.skipped_ids.append(subtask.id)
            execution.subtask_attempts.pop(subtask.id, None)
            execution.subtask_params.pop(subtask.id, None)
            execution.current_subtask_id = None
            self._set_status(state, ProjectStatus.PROCESSING_TASKS)
            self._checkpoint(state, f"subtask_{subtask.id}_skipped")
            logger.warning(f"[Orchestrator] Skipped optional subtask {subtask.id}")
            return True

        if strategy.type is RecoveryType.REPLAN_FROM_CHECKPOINT:
            reason = f"Subtask {subtask.id} failed: {strategy.params.get('reason') or classification.details}"
            execution.remaining_ids = []
            execution.current_subtask_id = None
            execution.replan_reason = reason
            self._set_status(state, ProjectStatus.FAILED_NEEDS_REPLAN)
            self._checkpoint(state, f"subtask_{subtask.id}_replan")
            raise ReplanRequired(
                reason,
                context={"subtask_id": subtask.id, "recovery_params": strategy.params},
                cause=error,
            )

        execution.current_subtask_id = None
        self._set_status(state, ProjectStatus.FAILED_SUBTASK_UNRECOVERABLE)
        self._checkpoint(state, f"subtask_{subtask.id}_halted")
        return False

    def _apply_retry_params(
        self, state: ProjectState, subtask: Subtask, strategy: RecoveryStrategy
    ) -> None:
        params = dict(state.execution.subtask_params.get(subtask.id, {}))
        params["modification_hint"] = strategy.params.get("modification_hint")
        multiplier = strategy.params.get("timeout_multiplier")
        if multiplier:
            current = (
                params.get("timeout_ms")
                or subtask.timeout_ms
                or self.settings.sandbox.default_command_timeout_ms
            )
            params["timeout_ms"] = int(current * multiplier)
        state.execution.subtask_params[subtask.id] = params

    # ------------------------------------------------------------------
    # Project-level errors
    # ------------------------------------------------------------------

    def _handle_project_error(
        self, request: ProjectRequest, state: ProjectState, error: Exception
    ) -> None:
        name = state.metadata.name
        execution = state.execution
        classification = classify(error)
        retries = execution.project_retry_attempts
        max_retries = self.settings.max_project_retries

        if isinstance(error, ReplanRequired) or classification.suggested_action is SuggestedAction.REPLAN:
            recovery = RecoveryType.REPLAN_FROM_CHECKPOINT
        elif classification.is_retryable:
            recovery = RecoveryType.RETRY_AS_IS
        else:
            recovery = RecoveryType.HALT

        if recovery is not RecoveryType.HALT and retries < max_retries:
            execution.project_retry_attempts = retries + 1
            if recovery is RecoveryType.REPLAN_FROM_CHECKPOINT:
                execution.remaining_ids = []
                execution.replan_reason = execution.replan_reason or classification.details
                self._set_status(state, ProjectStatus.FAILED_NEEDS_REPLAN)
            else:
                request.not_before = self._clock() + (
                    execution.project_retry_attempts * self.policy.base_delay_ms / 1000.0
                )
            logger.warning(
                f"[Orchestrator] Project-level {classification.kind.value} error for {name}; "
                f"{recovery.value} (project retry {execution.project_retry_attempts}/{max_retries})"
            )
        else:
            if recovery is not RecoveryType.HALT:
                logger.error(
                    f"[Orchestrator] Project retries exhausted ({max_retries}) for {name}; failing terminally"
                )
            else:
                logger.error(f"[Orchestrator] Unrecoverable project-level error for {name}: {error}")
            recovery = RecoveryType.HALT
            self._set_status(state, ProjectStatus.FAILED_TERMINAL)

        if not isinstance(error, ReplanRequired) or execution.last_error is None:
            self._record_error(state, error, classification, recovery)
        else:
            execution.last_error = execution.last_error.model_copy(
                update={"recovery_attempted": recovery.value}
            )
        self._checkpoint(state, f"project_error_state_{state.status}", raise_errors=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_error(
        self,
        state: ProjectState,
        error: BaseException,
        classification: ErrorClassification,
        recovery: RecoveryType,
        subtask_id: Optional[str] = None,
    ) -> None:
        details = None
        if isinstance(error, AutoforgeError) and error.context:
            details = json.dumps(error.context, default=str)[:4000]
        state.execution.last_error = ErrorRecord(
            kind=classification.kind.value,
            error_type=classification.error_type,
            message=classification.details[:4000],
            severity=classification.severity.value,
            suggested_action=classification.suggested_action.value,
            recovery_attempted=recovery.value,
            subtask_id=subtask_id,
            details=details,
        )

    def _set_status(self, state: ProjectState, status: ProjectStatus) -> None:
        if state.status == status.value:
            return
        previous = state.status
        state.metadata.status = status.value
        logger.info(f"[Orchestrator] {state.metadata.name}: {previous} -> {status.value}")
        self._publish_status(state, previous)

    def _publish_status(self, state: ProjectState, previous: Optional[str] = None) -> None:
        self.events.publish(
            EventType.PROJECT_STATUS_CHANGED,
            state.metadata.name,
            {"status": state.status, "previous": previous},
        )

    def _publish_task_failed(
        self,
        state: ProjectState,
        subtask: Subtask,
        classification: ErrorClassification,
        strategy: Optional[RecoveryStrategy] = None,
    ) -> None:
        self.events.publish(
            EventType.TASK_FAILED,
            state.metadata.name,
            {
                "subtask_id": subtask.id,
                "classification": classification.to_dict(),
                "recovery": strategy.type.value if strategy else RecoveryType.HALT.value,
            },
        )

    def _checkpoint(self, state: ProjectState, stage: str, raise_errors: bool = True) -> Optional[str]:
        """Save ``state`` and snapshot it under ``<stage>_<timestamp_ms>``."""
        name = state.metadata.name
        base_id = f"{_STAGE_RE.sub('_', stage)}_{int(time.time() * 1000)}"
        checkpoint_id = base_id
        suffix = 1
        previous_id = state.execution.last_checkpoint_id
        try:
            while self.store.checkpoint_exists(name, checkpoint_id):
                suffix += 1
                checkpoint_id = f"{base_id}_{suffix}"
            state.execution.last_checkpoint_id = checkpoint_id
            self.store.save(name, state)
            self.store.create_checkpoint(name, checkpoint_id)
        except PersistenceError as e:
            state.execution.last_checkpoint_id = previous_id
            if raise_errors:
                raise
            logger.error(f"[Orchestrator] Failed to checkpoint {name} at {stage}: {e}")
            return None
        logger.debug(f"[Orchestrator] Checkpoint {checkpoint_id} for {name}")
        return checkpoint_id
