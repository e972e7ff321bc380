"""Turn a code-generation response into a ``{path: content}`` file set.

Accepted shapes, tried in order:

1. A mapping: either ``{"files": [{"path": ..., "content": ...}]}`` or a
   plain ``{path: content}`` dict.
2. Text holding a JSON document of the same shape.
3. Text with fenced code blocks; a path may follow the language tag
   (```` ```python src/app.py ```` or ```` ```python:src/app.py ````).
4. Any other non-empty text, written to the primary file.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from autoforge.exceptions import GenerationError

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_FILE = "main.py"

_FENCE_RE = re.compile(
    r"```([\w.+/-]*)(?:[ \t]*[: \t][ \t]*([\w./-]+))?[ \t]*\r?\n(.*?)```",
    re.DOTALL,
)
_LANG_EXTENSIONS = {
    "python": ".py",
    "py": ".py",
    "javascript": ".js",
    "js": ".js",
    "typescript": ".ts",
    "ts": ".ts",
    "bash": ".sh",
    "sh": ".sh",
    "shell": ".sh",
    "json": ".json",
    "yaml": ".yaml",
    "yml": ".yaml",
}


def _files_from_entries(entries: Iterable[Any]) -> Dict[str, str]:
    files: Dict[str, str] = {}
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        path = entry.get("path")
        content = entry.get("content")
        if isinstance(path, str) and path and isinstance(content, str):
            files[path] = content
    return files


def _files_from_mapping(data: Mapping[str, Any]) -> Dict[str, str]:
    if "files" in data:
        files = data["files"]
        if isinstance(files, list):
            return _files_from_entries(files)
        if isinstance(files, Mapping):
            return _files_from_mapping(files)
        raise GenerationError(
            "Response 'files' must be a list or a mapping", context={"type": type(files).__name__}
        )
    files = {}
    for path, content in data.items():
        if not isinstance(path, str) or not isinstance(content, str):
            raise GenerationError(
                "Response mapping must map file paths to string contents",
                context={"path": repr(path)},
            )
        files[path] = content
    return files


def _files_from_json(text: str) -> Optional[Dict[str, str]]:
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if isinstance(data, list):
        return _files_from_entries(data)
    if isinstance(data, dict):
        return _files_from_mapping(data)
    return None


def _files_from_fences(text: str, primary_file: str) -> Dict[str, str]:
    files: Dict[str, str] = {}
    unnamed = 0
    for match in _FENCE_RE.finditer(text):
        lang, path, body = match.group(1), match.group(2), match.group(3)
        if not path and ("." in lang or "/" in lang) and lang.lower() not in _LANG_EXTENSIONS:
            path, lang = lang, ""
        if not path:
            if primary_file not in files:
                path = primary_file
            else:
                unnamed += 1
                path = f"generated_file_{unnamed}{_LANG_EXTENSIONS.get(lang.lower(), '.txt')}"
        files[path] = body.rstrip() + "\n"
    return files


def parse_generated_files(
    response: Union[Mapping[str, Any], str, None],
    primary_file: Optional[str] = None,
) -> Dict[str, str]:
    """Extract files from a collaborator response.

    Args:
        response: Mapping or raw text returned by the code generator
        primary_file: Target path for an unnamed code body

    Returns:
        Mapping of relative path to file content (possibly empty)

    Raises:
        GenerationError: If a mapping-shaped response is malformed
    """
    primary_file = primary_file or DEFAULT_PRIMARY_FILE
    if response is None:
        return {}
    if isinstance(response, Mapping):
        files = _files_from_mapping(response)
        logger.debug(f"[TaskEx] Parsed {len(files)} file(s) from mapping response")
        return files
    if not isinstance(response, str):
        raise GenerationError(
            f"Unsupported generator response type: {type(response).__name__}",
            context={"type": type(response).__name__},
        )

    files = _files_from_json(response)
    if files is not None:
        logger.debug(f"[TaskEx] Parsed {len(files)} file(s) from JSON response")
        return files

    files = _files_from_fences(response, primary_file)
    if files:
        logger.debug(f"[TaskEx] Parsed {len(files)} file(s) from fenced blocks")
        return files

    body = response.strip()
    if body:
        return {primary_file: body + "\n"}
    logger.warning("[TaskEx] Could not parse any files from generator response")
    return {}
