"""
Sandbox backends for file and command operations.
The agent works against a local directory (default) or a remote sandbox over SSH via paramiko.
"""

import logging
import os
import posixpath
import shlex
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import paramiko

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """Raised when a sandbox operation cannot be carried out."""


class Backend(ABC):
    """Abstract sandbox: a working directory you can read, write and run commands in."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the sandbox root."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text. Raises FileNotFoundError if missing."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file, creating parent directories as needed."""

    @abstractmethod
    def run_command(self, command: str, timeout: int = 120) -> Tuple[str, str, int]:
        """Run a shell command in the sandbox root. Returns (stdout, stderr, returncode)."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def close(self) -> None:
        """Release any held connections."""


# ============================================================
# Local Backend
# ============================================================

class LocalBackend(Backend):
    """Backend that operates on a local directory."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _checked_path(self, path: str) -> str:
        full = self.resolve_path(path)
        wd = self._working_directory
        if full != wd and not full.startswith(wd + os.sep):
            raise SandboxError(f"Path escapes working directory: {path!r}")
        return full

    def read_file(self, path: str) -> str:
        with open(self._checked_path(path), "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self._checked_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def run_command(self, command: str, timeout: int = 120) -> Tuple[str, str, int]:
        proc = subprocess.Popen(
            command, shell=True, cwd=self._working_directory,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            preexec_fn=os.setsid,  # own process group so a timeout kills children too
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        return stdout or "", stderr or "", proc.returncode

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass


# ============================================================
# SSH Backend
# ============================================================

class SSHBackend(Backend):
    """Backend that operates on a remote sandbox via SSH (paramiko)."""

    def __init__(self, host: str, working_directory: str,
                 user: Optional[str] = None, key_path: Optional[str] = None,
                 port: int = 22):
        self._host = host
        self._user = user
        self._port = port
        self._key_path = key_path
        self._working_directory = working_directory.rstrip("/") or "/"
        # Serialises SFTP and exec-channel setup; tool calls may run on executor threads
        self._lock = threading.RLock()
        self._client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None
        self._connect()

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self._host,
            "port": self._port,
            "username": self._user,
            "timeout": 15,
            "banner_timeout": 15,
            "auth_timeout": 20,
            "compress": True,
        }
        if self._key_path:
            kwargs["key_filename"] = os.path.expanduser(self._key_path)
            kwargs["look_for_keys"] = False
            kwargs["allow_agent"] = False
        else:
            kwargs["look_for_keys"] = True
            kwargs["allow_agent"] = True
        return kwargs

    def _connect(self) -> None:
        logger.info(f"SSH connecting to {self._user}@{self._host}:{self._port}...")
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**self._connect_kwargs())
        except (paramiko.SSHException, OSError) as e:
            raise SandboxError(f"SSH connection to {self._host} failed: {e}") from e
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(30)
        self._client = client
        self._sftp = client.open_sftp()
        logger.info(f"SSH connected to {self._host}, dir: {self._working_directory}")

    def _reconnect_if_needed(self) -> None:
        """Caller must hold self._lock."""
        transport = self._client.get_transport() if self._client else None
        if transport is not None and transport.is_active():
            return
        logger.warning("SSH connection lost, reconnecting...")
        self.close()
        self._connect()

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _remote_path(self, path: str) -> str:
        if posixpath.isabs(path):
            remote = posixpath.normpath(path)
        else:
            remote = posixpath.normpath(posixpath.join(self._working_directory, path))
        wd = self._working_directory
        if remote != wd and not remote.startswith(wd.rstrip("/") + "/"):
            raise SandboxError(f"Path escapes working directory: {path!r}")
        return remote

    def resolve_path(self, path: str) -> str:
        return self._remote_path(path)

    def _exec(self, cmd: str, timeout: int) -> Tuple[str, str, int]:
        with self._lock:
            self._reconnect_if_needed()
            # Login shell so PATH from the profile (node, npm) is available
            wrapped = f"bash -l -c {shlex.quote(cmd)}"
            _, stdout_ch, stderr_ch = self._client.exec_command(wrapped, timeout=timeout)
        channel = stdout_ch.channel
        channel.settimeout(timeout)
        try:
            stdout = stdout_ch.read().decode("utf-8", errors="replace")
            stderr = stderr_ch.read().decode("utf-8", errors="replace")
            rc = channel.recv_exit_status()
        except OSError as e:
            return "", f"Command failed: {e}", -1
        return stdout, stderr, rc

    def read_file(self, path: str) -> str:
        remote = self._remote_path(path)
        with self._lock:
            self._reconnect_if_needed()
            with self._sftp.open(remote, "r") as f:
                return f.read().decode("utf-8", errors="replace")

    def write_file(self, path: str, content: str) -> None:
        remote = self._remote_path(path)
        _, stderr, rc = self._exec(f"mkdir -p {shlex.quote(posixpath.dirname(remote))}", timeout=15)
        if rc != 0:
            raise SandboxError(f"Could not create directory for {path}: {stderr.strip()}")
        with self._lock:
            self._reconnect_if_needed()
            with self._sftp.open(remote, "w") as f:
                f.write(content.encode("utf-8"))

    def run_command(self, command: str, timeout: int = 120) -> Tuple[str, str, int]:
        return self._exec(f"cd {shlex.quote(self._working_directory)} && {command}", timeout=timeout)

    def close(self) -> None:
        """Close the SSH connection. Safe to call multiple times."""
        with self._lock:
            if self._sftp is not None:
                self._sftp.close()
                self._sftp = None
            if self._client is not None:
                self._client.close()
                self._client = None
