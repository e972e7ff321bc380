"""autoforge - autonomous build-and-verify engine.

Takes a natural-language change request for a named project, has a planner
decompose it into subtasks, and drives each subtask through generate ->
run in a sandbox -> verify, with classified recovery and durable
checkpoints.
"""

from .config import Settings, load_settings
from .events import Event, EventChannel, EventType
from .exceptions import AutoforgeError, ErrorKind
from .models import AnalysisResult, ProjectState, ProjectStatus, Subtask, SuccessCriterion
from .orchestrator import Orchestrator, SubmissionResult, SystemHealth
from .persistence import ProjectStore
from .sandbox_manager import SandboxManager

__version__ = "0.1.0"

__all__ = [
    "AnalysisResult",
    "AutoforgeError",
    "ErrorKind",
    "Event",
    "EventChannel",
    "EventType",
    "Orchestrator",
    "ProjectState",
    "ProjectStatus",
    "ProjectStore",
    "SandboxManager",
    "Settings",
    "SubmissionResult",
    "Subtask",
    "SuccessCriterion",
    "SystemHealth",
    "load_settings",
]
