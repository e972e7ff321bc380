"""File-based project state persistence.

One JSON document per project (``<name>.project.json``) plus append-only
checkpoint snapshots (``<name>_checkpoint_<id>.project.json``) in a single
base directory. Writes go to a unique temp file in the same directory,
are fsynced, then ``os.replace``d over the target, so readers only ever see
a complete document.

Every mutating operation holds the project's lock file for its whole
read-modify-write sequence.

Example:
    store = ProjectStore("./ai_projects_data")
    store.save("demo", state)
    checkpoint_id = store.create_checkpoint("demo", "analysis_complete_1700000000000")
    store.restore_from_checkpoint("demo", checkpoint_id)
"""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .exceptions import (
    CheckpointExistsError,
    CheckpointNotFoundError,
    PersistenceError,
    ProjectNotFoundError,
    SerializationError,
    StorageAccessError,
)
from .file_lock import ProjectFileLock
from .models import CheckpointInfo, ProjectMetadata, ProjectState, ProjectStatus, utc_now

logger = logging.getLogger(__name__)

PROJECT_FILE_SUFFIX = ".project.json"
LOCK_FILE_SUFFIX = ".lock"
CHECKPOINT_MARKER = "_checkpoint_"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_name(name: str) -> str:
    """Map a project name (or checkpoint id) onto ``[A-Za-z0-9_-]``."""
    if not isinstance(name, str) or not name.strip():
        raise PersistenceError("Project name must be a non-empty string", context={"name": name})
    return _UNSAFE_CHARS.sub("_", name)


def project_stem(name: str) -> str:
    """Sanitized file stem for a project name.

    Stems never contain the checkpoint marker, so ``<stem>_checkpoint_``
    identifies exactly one project's checkpoints.

    Raises:
        PersistenceError: If the name is empty or maps onto a checkpoint-like stem
    """
    stem = sanitize_name(name)
    if CHECKPOINT_MARKER in stem:
        raise PersistenceError(
            f"Project name {name!r} must not contain {CHECKPOINT_MARKER!r}",
            context={"name": name},
        )
    return stem


class ProjectStore:
    """Durable storage of project state documents and checkpoints."""

    def __init__(self, base_path: Union[str, Path], lock_timeout_ms: int = 5000):
        self.base_path = Path(base_path).resolve()
        self.lock_timeout_ms = lock_timeout_ms
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageAccessError(
                f"Failed to create projects directory {self.base_path}: {e}",
                context={"path": str(self.base_path)},
                cause=e,
            ) from e
        logger.info(f"[Persistence] Initialized store at {self.base_path}")

    @classmethod
    def from_settings(cls, settings) -> "ProjectStore":
        return cls(
            settings.persistence.projects_base_path,
            lock_timeout_ms=settings.persistence.lock_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Paths and locking
    # ------------------------------------------------------------------

    def project_path(self, name: str) -> Path:
        return self.base_path / f"{project_stem(name)}{PROJECT_FILE_SUFFIX}"

    def checkpoint_path(self, name: str, checkpoint_id: str) -> Path:
        return self.base_path / (
            f"{project_stem(name)}{CHECKPOINT_MARKER}{sanitize_name(checkpoint_id)}"
            f"{PROJECT_FILE_SUFFIX}"
        )

    def lock_path(self, name: str) -> Path:
        return self.base_path / f"{project_stem(name)}{LOCK_FILE_SUFFIX}"

    def _lock(self, name: str) -> ProjectFileLock:
        return ProjectFileLock(self.lock_path(name), timeout=self.lock_timeout_ms / 1000.0)

    # ------------------------------------------------------------------
    # Raw document I/O (caller holds the lock for writes)
    # ------------------------------------------------------------------

    def _read_document(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageAccessError(
                f"Failed to read {path.name}: {e}", context={"path": str(path)}, cause=e
            ) from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SerializationError(
                f"Corrupt project document {path.name}: {e}", context={"path": str(path)}, cause=e
            ) from e
        if not isinstance(data, dict):
            raise SerializationError(
                f"Project document {path.name} is not a JSON object", context={"path": str(path)}
            )
        return data

    def _write_unlocked(self, path: Path, document: Dict[str, Any]) -> None:
        try:
            content = json.dumps(document, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Failed to serialize document for {path.name}: {e}",
                context={"path": str(path)},
                cause=e,
            ) from e

        tmp_path = path.parent / f"{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageAccessError(
                f"Failed to write {path.name}: {e}", context={"path": str(path)}, cause=e
            ) from e
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError as cleanup_error:
                    logger.warning(
                        f"[Persistence] Failed to remove temp file {tmp_path.name}: {cleanup_error}"
                    )

    def _validate(self, document: Dict[str, Any], path: Path) -> ProjectState:
        try:
            return ProjectState.from_document(document)
        except ValidationError as e:
            raise SerializationError(
                f"Project document {path.name} does not match the state schema: {e}",
                context={"path": str(path)},
                cause=e,
            ) from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, name: str, state: ProjectState) -> None:
        """Atomically persist ``state`` as the live document for ``name``.

        ``state.metadata.last_modified`` is refreshed in place.

        Raises:
            LockTimeoutError: If the project lock is held elsewhere
            SerializationError: If the state cannot be encoded
            StorageAccessError: If the write fails
        """
        path = self.project_path(name)
        with self._lock(name):
            state.metadata.last_modified = utc_now()
            self._write_unlocked(path, state.to_document())
        logger.debug(f"[Persistence] Saved project {name} (status={state.status})")

    def load(self, name: str) -> Optional[ProjectState]:
        """Load the live document, or None when the project was never saved.

        Raises:
            SerializationError: On corrupt JSON or a schema mismatch
            StorageAccessError: If the file cannot be read
        """
        path = self.project_path(name)
        document = self._read_document(path)
        if document is None:
            return None
        return self._validate(document, path)

    def exists(self, name: str) -> bool:
        return self.project_path(name).exists()

    def delete(self, name: str, include_checkpoints: bool = False) -> bool:
        """Remove a project's live document. Returns False if there was none."""
        path = self.project_path(name)
        with self._lock(name):
            removed = False
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                logger.warning(f"[Persistence] Project {name} not found for deletion")
            except OSError as e:
                raise StorageAccessError(
                    f"Failed to delete project {name}: {e}", context={"path": str(path)}, cause=e
                ) from e

            if include_checkpoints:
                for checkpoint_file in self._checkpoint_files(name):
                    try:
                        checkpoint_file.unlink()
                    except OSError as e:
                        raise StorageAccessError(
                            f"Failed to delete checkpoint {checkpoint_file.name}: {e}",
                            context={"path": str(checkpoint_file)},
                            cause=e,
                        ) from e

        if removed:
            logger.info(f"[Persistence] Deleted project {name}")
        return removed

    def list_projects(self) -> List[str]:
        """Sanitized names of every stored project, checkpoints excluded."""
        try:
            entries = sorted(self.base_path.iterdir())
        except OSError as e:
            raise StorageAccessError(
                f"Failed to list projects in {self.base_path}: {e}", cause=e
            ) from e
        names = []
        for entry in entries:
            if not entry.name.endswith(PROJECT_FILE_SUFFIX):
                continue
            stem = entry.name[: -len(PROJECT_FILE_SUFFIX)]
            if CHECKPOINT_MARKER in stem:
                continue
            names.append(stem)
        return names

    def get_metadata(self, name: str) -> Optional[ProjectMetadata]:
        state = self.load(name)
        return state.metadata if state is not None else None

    def update_status(self, name: str, status: Union[ProjectStatus, str]) -> ProjectState:
        """Load-modify-save of ``metadata.status`` under the project lock."""
        status_value = status.value if isinstance(status, ProjectStatus) else str(status)
        path = self.project_path(name)
        with self._lock(name):
            document = self._read_document(path)
            if document is None:
                raise ProjectNotFoundError(
                    f"Project {name} not found to update status", context={"project": name}
                )
            state = self._validate(document, path)
            state.metadata.status = status_value
            state.metadata.last_modified = utc_now()
            self._write_unlocked(path, state.to_document())
        logger.info(f"[Persistence] Status of {name} set to {status_value}")
        return state

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _checkpoint_files(self, name: str) -> List[Path]:
        prefix = f"{project_stem(name)}{CHECKPOINT_MARKER}"
        try:
            return [
                entry
                for entry in self.base_path.iterdir()
                if entry.name.startswith(prefix) and entry.name.endswith(PROJECT_FILE_SUFFIX)
            ]
        except OSError as e:
            raise StorageAccessError(
                f"Failed to list checkpoints for {name}: {e}", context={"project": name}, cause=e
            ) from e

    def checkpoint_exists(self, name: str, checkpoint_id: str) -> bool:
        return self.checkpoint_path(name, checkpoint_id).exists()

    def create_checkpoint(self, name: str, checkpoint_id: Optional[str] = None) -> str:
        """Snapshot the live document under ``checkpoint_id``.

        The live document's ``execution.lastCheckpointId`` is updated to the
        new id. Checkpoints are never overwritten.

        Raises:
            ProjectNotFoundError: If the project has no live document
            CheckpointExistsError: If ``checkpoint_id`` is already taken
        """
        checkpoint_id = checkpoint_id or uuid.uuid4().hex
        live_path = self.project_path(name)
        checkpoint_path = self.checkpoint_path(name, checkpoint_id)

        with self._lock(name):
            document = self._read_document(live_path)
            if document is None:
                raise ProjectNotFoundError(
                    f"Project {name} not found to create checkpoint", context={"project": name}
                )
            if checkpoint_path.exists():
                raise CheckpointExistsError(
                    f"Checkpoint {checkpoint_id} already exists for project {name}",
                    context={"project": name, "checkpoint_id": checkpoint_id},
                )

            state = self._validate(document, live_path)
            state.execution.last_checkpoint_id = checkpoint_id

            snapshot = state.model_copy(deep=True)
            snapshot.checkpoint = CheckpointInfo(checkpoint_id=checkpoint_id, project_name=name)
            self._write_unlocked(checkpoint_path, snapshot.to_document())

            state.checkpoint = None
            self._write_unlocked(live_path, state.to_document())

        logger.info(f"[Persistence] Created checkpoint {checkpoint_id} for {name}")
        return checkpoint_id

    def restore_from_checkpoint(self, name: str, checkpoint_id: str) -> ProjectState:
        """Overwrite the live document with a checkpoint's contents.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist
        """
        checkpoint_path = self.checkpoint_path(name, checkpoint_id)
        with self._lock(name):
            document = self._read_document(checkpoint_path)
            if document is None:
                raise CheckpointNotFoundError(
                    f"Checkpoint {checkpoint_id} for project {name} not found",
                    context={"project": name, "checkpoint_id": checkpoint_id},
                )
            state = self._validate(document, checkpoint_path)
            state.checkpoint = None
            state.execution.restored_from_checkpoint = checkpoint_id
            state.execution.last_checkpoint_id = checkpoint_id
            state.metadata.last_modified = utc_now()
            self._write_unlocked(self.project_path(name), state.to_document())

        logger.info(f"[Persistence] Restored {name} from checkpoint {checkpoint_id}")
        return state

    def list_checkpoints(self, name: str) -> List[CheckpointInfo]:
        """Checkpoints of ``name``, oldest first."""
        checkpoints = []
        for path in self._checkpoint_files(name):
            document = self._read_document(path)
            if document is None:
                continue
            state = self._validate(document, path)
            if state.checkpoint is None:
                logger.warning(f"[Persistence] Checkpoint file {path.name} has no checkpoint block")
                continue
            checkpoints.append(state.checkpoint)
        checkpoints.sort(key=lambda info: (info.created_at, info.checkpoint_id))
        return checkpoints
