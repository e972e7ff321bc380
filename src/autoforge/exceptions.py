"""Custom exceptions for the autoforge engine.

Every error carries an ``ErrorKind`` tag and a structured ``context`` dict.
Subclasses exist only so call sites can raise a readable name; recovery
decisions switch on ``error.kind`` and never on the class.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Tag describing what went wrong, used by the error classifier."""

    INFRASTRUCTURE = "infrastructure"  # Sandbox runtime or storage unavailable
    EXECUTION = "execution"  # Generated code failed at runtime
    TIMEOUT = "timeout"  # Command exceeded its timer
    SECURITY_VIOLATION = "security_violation"  # Path escape, insecure URL
    COORDINATION = "coordination"  # Planning/analysis failure
    SERIALIZATION = "serialization"  # Corrupt persisted state
    TRANSIENT = "transient"  # Rate limits, connection resets, lock contention
    RESOURCE_LIMIT = "resource_limit"  # Token/memory ceilings a smaller request could fit
    MALFORMED_OUTPUT = "malformed_output"  # Collaborator returned something unparsable
    UNKNOWN = "unknown"


class AutoforgeError(Exception):
    """Base exception for all autoforge errors."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.context = dict(context or {})
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and state documents."""
        return {
            "kind": self.kind.value,
            "error_type": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "cause": repr(self.cause) if self.cause is not None else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


# --- Sandbox ---


class SandboxError(AutoforgeError):
    """Base exception for sandbox lifecycle errors."""

    default_kind = ErrorKind.INFRASTRUCTURE


class SandboxCreationError(SandboxError):
    """Raised when the container runtime cannot create or start a sandbox."""


class CommandExecutionError(SandboxError):
    """Raised when a command cannot be run inside a sandbox at all."""

    default_kind = ErrorKind.EXECUTION


class CommandTimeoutError(CommandExecutionError):
    """Raised when a sandboxed command exceeds its timeout."""

    default_kind = ErrorKind.TIMEOUT


class SecurityViolationError(AutoforgeError):
    """Raised on path escapes, insecure URLs and similar violations."""

    default_kind = ErrorKind.SECURITY_VIOLATION


# --- Persistence ---


class PersistenceError(AutoforgeError):
    """Base exception for project store errors."""

    default_kind = ErrorKind.INFRASTRUCTURE


class StorageAccessError(PersistenceError):
    """Raised when the storage directory cannot be read or written."""


class SerializationError(PersistenceError):
    """Raised when a persisted document is corrupt or cannot be encoded."""

    default_kind = ErrorKind.SERIALIZATION


class LockTimeoutError(PersistenceError):
    """Raised when a project lock cannot be acquired in time."""

    default_kind = ErrorKind.TRANSIENT


class ProjectNotFoundError(PersistenceError):
    """Raised when an operation needs a stored project that does not exist."""


class CheckpointNotFoundError(PersistenceError):
    """Raised when restoring from a checkpoint that does not exist."""


class CheckpointExistsError(PersistenceError):
    """Raised when a checkpoint id is reused; checkpoints are append-only."""


# --- Execution / coordination ---


class GenerationError(AutoforgeError):
    """Raised when the code-generation collaborator yields nothing usable."""

    default_kind = ErrorKind.MALFORMED_OUTPUT


class SubtaskExhaustedError(AutoforgeError):
    """Raised when a subtask fails on every self-debug attempt.

    The kind is taken from the last failure so the orchestrator can tell a
    repeated timeout from repeated test failures.
    """

    default_kind = ErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        attempts: Optional[list] = None,
        last_failure: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, kind=kind, context=context, cause=cause)
        self.attempts = list(attempts or [])
        self.last_failure = last_failure or {}


class CoordinationError(AutoforgeError):
    """Raised for planning and orchestration failures."""

    default_kind = ErrorKind.COORDINATION


class ReplanRequired(CoordinationError):
    """Control signal: the project must go back through analysis."""


class ConfigurationError(AutoforgeError):
    """Raised when configuration cannot be loaded or validated."""

    default_kind = ErrorKind.INFRASTRUCTURE
