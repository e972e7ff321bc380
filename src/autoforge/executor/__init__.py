"""
Executor subpackage: self-debugging execution of planned subtasks.

- task_executor: generate -> run -> evaluate loop with bounded retries
- criteria: acceptance predicates over stdout/stderr/exit code
- response_parser: code-generation responses to file sets
"""

from autoforge.executor.criteria import CriteriaOutcome, evaluate_criteria
from autoforge.executor.response_parser import parse_generated_files
from autoforge.executor.task_executor import AttemptRecord, SubtaskResult, TaskExecutor

__all__ = [
    "AttemptRecord",
    "CriteriaOutcome",
    "SubtaskResult",
    "TaskExecutor",
    "evaluate_criteria",
    "parse_generated_files",
]
