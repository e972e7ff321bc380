"""Interfaces of the external collaborators the engine drives.

The planner and code generator live outside this package (prompt
construction, model clients). Anything with matching methods can be
plugged in.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Union, runtime_checkable

from .models import AnalysisResult, Subtask


@runtime_checkable
class Planner(Protocol):
    """Decomposes a request into subtasks.

    ``context`` carries ``files`` (current project files), ``completed_ids``
    (subtasks already done, to be preserved on a re-plan), ``is_replan`` and
    ``failure_context`` (the error that triggered the re-plan, if any).
    """

    def analyze(self, request: str, context: Mapping[str, Any]) -> AnalysisResult: ...


@runtime_checkable
class CodeGenerator(Protocol):
    """Produces files for one subtask.

    Returns either a ``{path: content}`` mapping (optionally wrapped as
    ``{"files": [{"path", "content"}]}``) or raw model text.
    """

    def generate(
        self,
        subtask: Subtask,
        existing_files: Mapping[str, str],
        error_context: Optional[Dict[str, Any]],
    ) -> Union[Mapping[str, Any], str]: ...
