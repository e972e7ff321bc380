"""Isolated execution environments backed by Docker containers.

Each session is one container started with a keep-alive entrypoint plus a
private host directory under ``sandbox.temp_host_dir``. Project files are
written into that directory and bind-mounted at the container workdir.
Commands run through ``exec_run`` and race a timer; a command that
outlives its timeout gets the whole container killed, so sessions are
single-use after a timeout.

Containers always start with:
- an unprivileged user (``sandbox.container_user``)
- ``network_mode="none"`` unless the caller asks otherwise
- CPU, memory and pids ceilings
- a read-only root filesystem with a small ``/tmp`` tmpfs
- ``no-new-privileges`` and every capability dropped
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union
from urllib.parse import quote, urlsplit, urlunsplit

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from .config import SandboxSettings
from .exceptions import (
    CommandExecutionError,
    CommandTimeoutError,
    SandboxCreationError,
    SandboxError,
    SecurityViolationError,
)

logger = logging.getLogger(__name__)

KEEP_ALIVE_ENTRYPOINT = ["tail", "-f", "/dev/null"]
PROJECT_SUBDIR = "project_src"
CLONE_SUBDIR = "repo"
CLONE_CONTAINER_PATH = "/workspace/repo"
SESSION_LABEL = "autoforge.session"
MANAGED_LABEL = "autoforge.managed"

_MEMORY_RE = re.compile(r"^\s*(\d+)\s*([bkmg]?)\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
_GIT_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/\-]*$")
_URL_USERINFO_RE = re.compile(r"(https?://)[^/@\s]+@")


def parse_memory_limit(value: Union[str, int]) -> int:
    """Convert ``"512m"``, ``"1g"``, ``"64k"`` or a byte count to bytes.

    Raises:
        SandboxError: On an unparsable or non-positive value
    """
    if isinstance(value, bool):
        raise SandboxError(f"Invalid memory limit: {value!r}", context={"memory": value})
    if isinstance(value, int):
        if value <= 0:
            raise SandboxError(f"Invalid memory limit: {value!r}", context={"memory": value})
        return value
    match = _MEMORY_RE.match(str(value))
    if not match:
        raise SandboxError(f"Invalid memory limit format: {value!r}", context={"memory": value})
    amount = int(match.group(1)) * _MEMORY_UNITS[match.group(2).lower()]
    if amount <= 0:
        raise SandboxError(f"Invalid memory limit: {value!r}", context={"memory": value})
    return amount


@dataclass(frozen=True)
class ResourceLimits:
    """CPU, memory and process ceilings applied to every container."""

    cpus: float = 0.5
    memory: Union[str, int] = "256m"
    pids_limit: int = 128

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> "ResourceLimits":
        return cls(cpus=settings.cpus, memory=settings.memory, pids_limit=settings.pids_limit)

    def to_run_kwargs(self) -> Dict[str, Any]:
        if self.cpus <= 0:
            raise SandboxError(f"Invalid CPU limit: {self.cpus!r}", context={"cpus": self.cpus})
        if self.pids_limit <= 0:
            raise SandboxError(
                f"Invalid pids limit: {self.pids_limit!r}", context={"pids_limit": self.pids_limit}
            )
        return {
            "nano_cpus": int(self.cpus * 1_000_000_000),
            "mem_limit": parse_memory_limit(self.memory),
            "pids_limit": self.pids_limit,
        }


@dataclass(frozen=True)
class MountSpec:
    """A host directory bound into a container."""

    host_path: str
    container_path: str
    read_only: bool = False

    def to_volume(self) -> Dict[str, Dict[str, str]]:
        return {self.host_path: {"bind": self.container_path, "mode": "ro" if self.read_only else "rw"}}


@dataclass(frozen=True)
class ExecResult:
    """Captured output of one command. The exit code is authoritative."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass
class SandboxSession:
    """One live container and its host working directory."""

    session_id: str
    container_id: str
    image: str
    host_work_dir: Optional[Path] = None
    mounted_files: List[str] = field(default_factory=list)
    container: Any = field(default=None, repr=False)
    killed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CloneResult:
    """Location of a repository cloned into a sandbox."""

    session_dir: str
    container_path: str
    session_id: str


def _decode(stream: Optional[bytes]) -> str:
    if not stream:
        return ""
    return stream.decode("utf-8", errors="replace")


def redact(text: str, secrets: Sequence[str] = ()) -> str:
    """Strip URL userinfo and any literal secret from ``text``."""
    redacted = _URL_USERINFO_RE.sub(r"\1***@", text)
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "***")
            redacted = redacted.replace(quote(secret, safe=""), "***")
    return redacted


class SandboxManager:
    """Creates, populates, runs commands in and tears down sandboxes.

    Example:
        >>> manager = SandboxManager(settings.sandbox)
        >>> with manager.session({"main.py": "print('hi')"}) as session:
        ...     result = manager.exec(session.session_id, "python main.py", timeout_ms=5000)
        >>> result.stdout
        'hi\\n'
    """

    def __init__(self, settings: Optional[SandboxSettings] = None, client: Any = None):
        """Initialize the manager.

        Args:
            settings: Sandbox settings; defaults apply when omitted
            client: Object exposing the docker SDK ``images``/``containers``
                surface. ``docker.from_env()`` is used lazily when omitted.
        """
        self.settings = settings or SandboxSettings()
        self._client = client
        self.default_limits = ResourceLimits.from_settings(self.settings)
        self.temp_root = Path(self.settings.temp_host_dir).resolve()
        self._sessions: Dict[str, SandboxSession] = {}
        self._lock = threading.Lock()

        try:
            self.temp_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SandboxCreationError(
                f"Failed to create sandbox temp root {self.temp_root}: {e}",
                context={"temp_root": str(self.temp_root)},
                cause=e,
            ) from e
        logger.info(f"[Sandbox] Initialized. Temp host directory: {self.temp_root}")

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise SandboxCreationError(
                    f"Docker runtime unavailable: {e}", context={}, cause=e
                ) from e
        return self._client

    # ------------------------------------------------------------------
    # Session table
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> SandboxSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SandboxError(
                f"Unknown sandbox session {session_id}", context={"session_id": session_id}
            )
        return session

    def active_session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    # ------------------------------------------------------------------
    # Host directories and file mounting
    # ------------------------------------------------------------------

    def _is_within_root(self, path: Path) -> bool:
        try:
            resolved = Path(path).resolve()
            return resolved != self.temp_root and resolved.is_relative_to(self.temp_root)
        except (OSError, ValueError):
            return False

    def create_session_dir(self, prefix: str = "session-") -> Path:
        """Create a unique private directory under the temp root."""
        name = f"{prefix}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        session_dir = self.temp_root / name
        try:
            session_dir.mkdir(parents=True)
            os.chmod(session_dir, 0o755)
        except OSError as e:
            raise SandboxCreationError(
                f"Failed to create session directory {session_dir}: {e}",
                context={"session_dir": str(session_dir)},
                cause=e,
            ) from e
        logger.debug(f"[Sandbox] Created session directory {session_dir}")
        return session_dir

    def _remove_host_dir(self, path: Optional[Path]) -> None:
        if path is None:
            return
        if not self._is_within_root(path):
            logger.error(
                f"[Sandbox] Refusing to remove {path}: not inside temp root {self.temp_root}"
            )
            return
        try:
            shutil.rmtree(path)
            logger.debug(f"[Sandbox] Removed session directory {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"[Sandbox] Failed to remove session directory {path}: {e}")

    @staticmethod
    def validate_relative_path(relative_path: str) -> str:
        """Normalize a project-relative path or raise ``SecurityViolationError``."""
        if not isinstance(relative_path, str) or not relative_path.strip():
            raise SecurityViolationError(
                "Empty file path", context={"path": repr(relative_path)}
            )
        if "\x00" in relative_path:
            raise SecurityViolationError(
                "File path contains a NUL byte", context={"path": repr(relative_path)}
            )
        if (
            PurePosixPath(relative_path).is_absolute()
            or PureWindowsPath(relative_path).is_absolute()
            or PureWindowsPath(relative_path).drive
            or relative_path.startswith("\\")
        ):
            raise SecurityViolationError(
                f"Absolute file path not allowed: {relative_path}", context={"path": relative_path}
            )
        parts = [part for part in relative_path.replace("\\", "/").split("/") if part not in ("", ".")]
        if not parts or ".." in parts:
            raise SecurityViolationError(
                f"File path escapes the project root: {relative_path}",
                context={"path": relative_path},
            )
        return "/".join(parts)

    def mount_files(self, session_dir: Union[str, Path], files: Mapping[str, str]) -> List[MountSpec]:
        """Write ``files`` under ``session_dir/project_src`` and describe the mount.

        Every path is validated before anything is written.

        Raises:
            SecurityViolationError: On an absolute, escaping or NUL-containing
                path, or a session directory outside the temp root
        """
        session_dir = Path(session_dir)
        if not self._is_within_root(session_dir):
            raise SecurityViolationError(
                f"Session directory {session_dir} is outside the sandbox temp root",
                context={"session_dir": str(session_dir), "temp_root": str(self.temp_root)},
            )

        normalized = {self.validate_relative_path(path): content for path, content in files.items()}

        project_root = session_dir.resolve() / PROJECT_SUBDIR
        for relative_path in normalized:
            target = (project_root / relative_path).resolve()
            if not target.is_relative_to(project_root):
                raise SecurityViolationError(
                    f"File path escapes the project root: {relative_path}",
                    context={"path": relative_path},
                )

        try:
            project_root.mkdir(parents=True, exist_ok=True)
            os.chmod(project_root, 0o777)
            for relative_path, content in normalized.items():
                target = project_root / relative_path
                for parent in reversed(target.relative_to(project_root).parents):
                    directory = project_root / parent
                    if not directory.exists():
                        directory.mkdir()
                        os.chmod(directory, 0o777)
                target.write_text(content, encoding="utf-8")
                os.chmod(target, 0o666)
        except OSError as e:
            raise SandboxCreationError(
                f"Failed to write project files into {project_root}: {e}",
                context={"session_dir": str(session_dir)},
                cause=e,
            ) from e

        logger.debug(f"[Sandbox] Mounted {len(normalized)} files into {project_root}")
        return [MountSpec(str(project_root), self.settings.container_workdir, read_only=False)]

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    def ensure_image(self, image: str) -> None:
        """Pull ``image`` if it is not present locally."""
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            logger.info(f"[Sandbox] Image {image} not found locally, pulling")
        except DockerException as e:
            raise SandboxCreationError(
                f"Failed to inspect image {image}: {e}", context={"image": image}, cause=e
            ) from e
        try:
            self.client.images.pull(image)
        except DockerException as e:
            raise SandboxCreationError(
                f"Failed to pull image {image}: {e}", context={"image": image}, cause=e
            ) from e
        logger.info(f"[Sandbox] Pulled image {image}")

    def create_session(
        self,
        image: Optional[str] = None,
        mounts: Optional[Sequence[MountSpec]] = None,
        resource_limits: Optional[ResourceLimits] = None,
        network_mode: Optional[str] = None,
        session_dir: Optional[Path] = None,
        read_only: Optional[bool] = None,
        environment: Optional[Dict[str, str]] = None,
        mounted_files: Optional[Sequence[str]] = None,
    ) -> str:
        """Start an isolated container and register it.

        Returns:
            The new session id

        Raises:
            SandboxCreationError: If the runtime cannot create or start it
        """
        image = image or self.settings.default_image
        mounts = list(mounts or [])
        limits = resource_limits or self.default_limits
        network_mode = network_mode or self.settings.default_network_mode
        read_only = self.settings.read_only_rootfs if read_only is None else read_only
        session_id = f"sbx-{uuid.uuid4().hex[:12]}"

        volumes: Dict[str, Dict[str, str]] = {}
        for mount in mounts:
            volumes.update(mount.to_volume())

        run_kwargs: Dict[str, Any] = {
            "entrypoint": KEEP_ALIVE_ENTRYPOINT,
            "detach": True,
            "name": f"autoforge-{session_id}",
            "user": self.settings.container_user,
            "network_mode": network_mode,
            "read_only": read_only,
            "tmpfs": {"/tmp": f"rw,size={self.settings.tmpfs_size}"},
            "security_opt": ["no-new-privileges"],
            "cap_drop": ["ALL"],
            "init": True,
            "labels": {SESSION_LABEL: session_id, MANAGED_LABEL: "true"},
            "volumes": volumes,
            "environment": dict(environment or {}),
        }
        try:
            run_kwargs.update(limits.to_run_kwargs())
        except SandboxError as e:
            raise SandboxCreationError(e.message, context=e.context, cause=e) from e
        if any(m.container_path == self.settings.container_workdir for m in mounts):
            run_kwargs["working_dir"] = self.settings.container_workdir

        self.ensure_image(image)
        logger.info(
            f"[Sandbox] Creating container for {session_id} from {image} "
            f"(network={network_mode}, user={self.settings.container_user})"
        )
        try:
            container = self.client.containers.run(image, **run_kwargs)
        except DockerException as e:
            raise SandboxCreationError(
                f"Failed to create container from {image}: {e}",
                context={"image": image, "session_id": session_id},
                cause=e,
            ) from e

        session = SandboxSession(
            session_id=session_id,
            container_id=container.id,
            image=image,
            host_work_dir=Path(session_dir) if session_dir is not None else None,
            mounted_files=sorted(mounted_files or []),
            container=container,
        )
        with self._lock:
            self._sessions[session_id] = session
        logger.info(f"[Sandbox] Session {session_id} started (container {container.id[:12]})")
        return session_id

    def exec(
        self,
        session_id: str,
        command: Union[str, Sequence[str]],
        timeout_ms: Optional[int] = None,
        working_dir: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        """Run ``command`` in the session's container.

        A string runs through ``/bin/sh -c``; a sequence runs as argv.

        Raises:
            CommandTimeoutError: If the command outlives ``timeout_ms``; the
                container is killed before this is raised
            CommandExecutionError: If the runtime cannot run the command
        """
        session = self.get_session(session_id)
        if session.killed:
            raise CommandExecutionError(
                f"Session {session_id} was killed after a timeout and cannot run commands",
                context={"session_id": session_id},
            )

        timeout_ms = timeout_ms or self.settings.default_command_timeout_ms
        argv = ["/bin/sh", "-c", command] if isinstance(command, str) else list(command)
        workdir = working_dir or (self.settings.container_workdir if session.mounted_files else None)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"exec-{session_id}")
        started = time.monotonic()
        try:
            future = pool.submit(
                session.container.exec_run,
                argv,
                demux=True,
                user=self.settings.container_user,
                workdir=workdir,
                environment=environment,
            )
            try:
                raw = future.result(timeout=timeout_ms / 1000.0)
            except FutureTimeoutError:
                elapsed = int((time.monotonic() - started) * 1000)
                logger.warning(
                    f"[Sandbox] Command in {session_id} timed out after {timeout_ms}ms, killing container"
                )
                self._kill(session)
                raise CommandTimeoutError(
                    f"Command timed out after {timeout_ms}ms",
                    context={"session_id": session_id, "timeout_ms": timeout_ms, "elapsed_ms": elapsed},
                )
            except DockerException as e:
                raise CommandExecutionError(
                    f"Failed to execute command in {session_id}: {e}",
                    context={"session_id": session_id},
                    cause=e,
                ) from e
        finally:
            pool.shutdown(wait=False)

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout_bytes, stderr_bytes = raw.output if raw.output is not None else (None, None)
        exit_code = raw.exit_code if raw.exit_code is not None else -1
        result = ExecResult(
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        logger.debug(f"[Sandbox] {session_id} exit={exit_code} in {duration_ms}ms")
        return result

    def _kill(self, session: SandboxSession) -> None:
        session.killed = True
        try:
            session.container.kill()
        except NotFound:
            logger.debug(f"[Sandbox] Container for {session.session_id} already gone")
        except Exception as e:
            logger.error(f"[Sandbox] Failed to kill container for {session.session_id}: {e}")

    def destroy_session(self, session_id: str) -> None:
        """Stop and remove a session's container and host directory.

        Idempotent; failures are logged and the session is dropped anyway.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug(f"[Sandbox] Session {session_id} not found or already destroyed")
            return

        container = session.container
        if not session.killed:
            try:
                container.stop(timeout=self.settings.stop_timeout_s)
            except NotFound:
                pass
            except Exception as e:
                logger.warning(f"[Sandbox] Error stopping container for {session_id}: {e}")
        try:
            container.remove(force=True, v=True)
        except NotFound:
            pass
        except Exception as e:
            logger.error(
                f"[Sandbox] Failed to remove container for {session_id}: {e}. Manual cleanup may be required."
            )

        self._remove_host_dir(session.host_work_dir)
        logger.info(f"[Sandbox] Session {session_id} destroyed")

    def destroy_all(self) -> None:
        """Best-effort parallel cleanup of every tracked session."""
        session_ids = self.active_session_ids()
        if not session_ids:
            return
        logger.info(f"[Sandbox] Cleaning up {len(session_ids)} active sessions")
        with ThreadPoolExecutor(max_workers=min(8, len(session_ids))) as pool:
            futures = [pool.submit(self.destroy_session, sid) for sid in session_ids]
            for future in futures:
                error = future.exception()
                if error is not None:
                    logger.error(f"[Sandbox] Cleanup raised unexpectedly: {error}")
        with self._lock:
            self._sessions.clear()

    @contextmanager
    def session(
        self,
        files: Mapping[str, str],
        image: Optional[str] = None,
        resource_limits: Optional[ResourceLimits] = None,
        network_mode: Optional[str] = None,
    ) -> Iterator[SandboxSession]:
        """Create dir, mount ``files``, start a container, yield, then destroy."""
        session_dir = self.create_session_dir()
        session_id = None
        try:
            mounts = self.mount_files(session_dir, files)
            session_id = self.create_session(
                image=image,
                mounts=mounts,
                resource_limits=resource_limits,
                network_mode=network_mode,
                session_dir=session_dir,
                mounted_files=[self.validate_relative_path(p) for p in files],
            )
            yield self.get_session(session_id)
        finally:
            if session_id is not None:
                self.destroy_session(session_id)
            else:
                self._remove_host_dir(session_dir)

    # ------------------------------------------------------------------
    # Repository cloning
    # ------------------------------------------------------------------

    @staticmethod
    def _credential_parts(credentials: Union[None, str, Mapping[str, str]]) -> List[str]:
        if credentials is None:
            return []
        if isinstance(credentials, str):
            return [credentials]
        username = credentials.get("username") or "x-access-token"
        secret = credentials.get("token") or credentials.get("password") or ""
        return [username, secret] if secret else [username]

    @staticmethod
    def _inject_credentials(url: str, credentials: Union[None, str, Mapping[str, str]]) -> str:
        if not credentials:
            return url
        parts = urlsplit(url)
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        if isinstance(credentials, str):
            userinfo = quote(credentials, safe="")
        else:
            username = credentials.get("username") or "x-access-token"
            secret = credentials.get("token") or credentials.get("password") or ""
            userinfo = quote(username, safe="")
            if secret:
                userinfo = f"{userinfo}:{quote(secret, safe='')}"
        return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))

    def _validate_clone_args(
        self, url: str, branch: Optional[str], commit: Optional[str], depth: int
    ) -> None:
        parts = urlsplit(url or "")
        if parts.scheme != "https" or not parts.hostname:
            raise SecurityViolationError(
                f"Only https repository URLs are allowed: {redact(url or '')}",
                context={"url": redact(url or "")},
            )
        if parts.username or parts.password:
            raise SecurityViolationError(
                "Repository URL must not embed credentials; pass them separately",
                context={"url": redact(url)},
            )
        for label, ref in (("branch", branch), ("commit", commit)):
            if ref is not None and (not _GIT_REF_RE.match(ref) or ".." in ref):
                raise SecurityViolationError(
                    f"Invalid git {label}: {ref!r}", context={label: ref}
                )
        if not isinstance(depth, int) or isinstance(depth, bool) or depth < 1:
            raise SandboxError(f"Clone depth must be a positive integer, got {depth!r}")

    def clone_repository(
        self,
        url: str,
        branch: Optional[str] = None,
        commit: Optional[str] = None,
        depth: int = 1,
        credentials: Union[None, str, Mapping[str, str]] = None,
    ) -> CloneResult:
        """Clone ``url`` inside an isolated container for read-only inspection.

        Network access is enabled for this container only. The session stays
        alive for the caller, who must ``destroy_session`` it.

        Raises:
            SecurityViolationError: On a non-https URL or unsafe ref
            CommandExecutionError: If git fails (output is redacted)
            CommandTimeoutError: If the clone outlives ``clone_timeout_ms``
        """
        self._validate_clone_args(url, branch, commit, depth)
        secrets = self._credential_parts(credentials)
        auth_url = self._inject_credentials(url, credentials)
        safe_url = redact(url, secrets)

        session_dir = self.create_session_dir(prefix="clone-")
        repo_dir = session_dir / CLONE_SUBDIR
        session_id = None
        try:
            try:
                repo_dir.mkdir()
                os.chmod(repo_dir, 0o777)
            except OSError as e:
                raise SandboxCreationError(
                    f"Failed to prepare clone directory {repo_dir}: {e}", cause=e
                ) from e

            session_id = self.create_session(
                image=self.settings.git_image,
                mounts=[MountSpec(str(repo_dir), CLONE_CONTAINER_PATH, read_only=False)],
                network_mode=self.settings.clone_network_mode,
                session_dir=session_dir,
                environment={"HOME": "/tmp", "GIT_TERMINAL_PROMPT": "0"},
            )
            logger.info(f"[Sandbox] Cloning {safe_url} into session {session_id}")

            clone_cmd = ["git", "clone", "--depth", str(depth)]
            if branch:
                clone_cmd += ["--branch", branch]
            clone_cmd += ["--", auth_url, CLONE_CONTAINER_PATH]
            self._run_git(session_id, clone_cmd, secrets, "clone")

            if commit:
                self._run_git(
                    session_id,
                    ["git", "-C", CLONE_CONTAINER_PATH, "fetch", "--depth", str(depth), "origin", commit],
                    secrets,
                    "fetch",
                )
                self._run_git(
                    session_id,
                    ["git", "-C", CLONE_CONTAINER_PATH, "checkout", "--detach", commit],
                    secrets,
                    "checkout",
                )

            if secrets:
                self._run_git(
                    session_id,
                    ["git", "-C", CLONE_CONTAINER_PATH, "remote", "set-url", "origin", url],
                    secrets,
                    "scrub remote",
                )
        except BaseException:
            if session_id is not None:
                self.destroy_session(session_id)
            else:
                self._remove_host_dir(session_dir)
            raise

        logger.info(f"[Sandbox] Cloned {safe_url} (session {session_id})")
        return CloneResult(
            session_dir=str(repo_dir), container_path=CLONE_CONTAINER_PATH, session_id=session_id
        )

    def _run_git(self, session_id: str, argv: List[str], secrets: List[str], step: str) -> ExecResult:
        try:
            result = self.exec(
                session_id,
                argv,
                timeout_ms=self.settings.clone_timeout_ms,
                working_dir="/tmp",
                environment={"HOME": "/tmp", "GIT_TERMINAL_PROMPT": "0"},
            )
        except CommandExecutionError as e:
            e.message = redact(e.message, secrets)
            e.args = (e.message,)
            raise
        if result.exit_code != 0:
            raise CommandExecutionError(
                f"git {step} failed (exit {result.exit_code}): {redact(result.stderr.strip(), secrets)}",
                context={"session_id": session_id, "exit_code": result.exit_code, "step": step},
            )
        return result
