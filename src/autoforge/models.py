"""Project state documents (Pydantic-based).

Persisted JSON uses camelCase keys (``subtasksFull``, ``remainingIds``,
``lastModified``); Python code uses the snake_case attribute names. Both
spellings are accepted on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DOCUMENT_VERSION = "1.0.0"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectStatus(str, Enum):
    """Lifecycle states of a project."""

    NEW = "new"
    ANALYSIS_IN_PROGRESS = "analysis_in_progress"
    ANALYSIS_COMPLETE = "analysis_complete"
    PROCESSING_TASKS = "processing_tasks"
    SUBTASK_PENDING_RETRY = "subtask_pending_retry"
    COMPLETED_SUCCESSFULLY = "completed_successfully"
    FAILED_NEEDS_REPLAN = "failed_needs_replan"
    FAILED_SUBTASK_UNRECOVERABLE = "failed_subtask_unrecoverable"
    FAILED_TERMINAL = "failed_terminal"


TERMINAL_STATUSES = frozenset(
    {
        ProjectStatus.COMPLETED_SUCCESSFULLY.value,
        ProjectStatus.FAILED_SUBTASK_UNRECOVERABLE.value,
        ProjectStatus.FAILED_TERMINAL.value,
    }
)


CriterionType = Literal[
    "stdout_contains",
    "stderr_contains",
    "stdout_not_contains",
    "stderr_not_contains",
    "stdout_empty",
    "stderr_empty",
    "exit_code",
]


class SuccessCriterion(_Document):
    """One acceptance predicate over a command's output."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: CriterionType
    value: Optional[Union[int, str]] = None


class Subtask(_Document):
    """One unit of planned work. Immutable once produced by planning."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )

    id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    dependencies_ids: List[str] = Field(default_factory=list)
    assigned_role: Optional[str] = None
    expected_artifacts: List[str] = Field(default_factory=list)
    success_criteria: List[SuccessCriterion] = Field(default_factory=list)
    run_command: str
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    is_optional: bool = False


class ErrorRecord(_Document):
    """Last error retained in the state document for external inspection."""

    kind: str
    error_type: str
    message: str
    severity: Optional[str] = None
    suggested_action: Optional[str] = None
    recovery_attempted: Optional[str] = None
    subtask_id: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ProjectMetadata(_Document):
    name: str
    created: datetime = Field(default_factory=utc_now)
    last_modified: datetime = Field(default_factory=utc_now)
    status: str = ProjectStatus.NEW.value
    version: str = DOCUMENT_VERSION


class ProjectContext(_Document):
    files: Dict[str, str] = Field(default_factory=dict)


class ExecutionState(_Document):
    subtasks_full: List[Subtask] = Field(default_factory=list)
    remaining_ids: List[str] = Field(default_factory=list)
    completed_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)
    subtask_attempts: Dict[str, int] = Field(default_factory=dict)
    subtask_params: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    project_retry_attempts: int = 0
    current_subtask_id: Optional[str] = None
    last_checkpoint_id: Optional[str] = None
    restored_from_checkpoint: Optional[str] = None
    replan_reason: Optional[str] = None
    last_error: Optional[ErrorRecord] = None


class Conversation(_Document):
    original_request: str = ""
    current_request: Optional[str] = None


class CheckpointInfo(_Document):
    checkpoint_id: str
    project_name: str
    created_at: datetime = Field(default_factory=utc_now)


class ProjectState(_Document):
    """The single live document describing one project."""

    metadata: ProjectMetadata
    context: ProjectContext = Field(default_factory=ProjectContext)
    understanding: Any = None
    plan: Any = None
    execution: ExecutionState = Field(default_factory=ExecutionState)
    conversation: Conversation = Field(default_factory=Conversation)
    checkpoint: Optional[CheckpointInfo] = None

    @classmethod
    def new(
        cls, name: str, original_request: str, files: Optional[Dict[str, str]] = None
    ) -> "ProjectState":
        return cls(
            metadata=ProjectMetadata(name=name),
            context=ProjectContext(files=dict(files or {})),
            conversation=Conversation(original_request=original_request),
        )

    @property
    def status(self) -> str:
        return self.metadata.status

    def get_subtask(self, subtask_id: str) -> Optional[Subtask]:
        for subtask in self.execution.subtasks_full:
            if subtask.id == subtask_id:
                return subtask
        return None

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "ProjectState":
        return cls.model_validate(data)


class AnalysisResult(_Document):
    """What the planning collaborator hands back."""

    understanding: Any = None
    plan: Any = None
    subtasks: List[Subtask] = Field(default_factory=list)
