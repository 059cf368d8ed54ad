"""
Checkpoint persistence for agent threads.
Stores each thread's message log and session state as a JSON file so an
invocation can resume where the previous one left off.
"""

import hashlib
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, List, Optional

from agent.messages import MessageLog
from agent.state import SessionState
from config import app_config

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


@dataclass
class Checkpoint:
    """Durable projection of one thread: the full message log plus session state."""
    thread_id: str
    version: int = CHECKPOINT_VERSION
    created_at: str = ""
    updated_at: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    session_state: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_run(cls, thread_id: str, log: MessageLog, state: SessionState,
                 previous: Optional["Checkpoint"] = None) -> "Checkpoint":
        return cls(
            thread_id=thread_id,
            created_at=previous.created_at if previous else "",
            messages=log.to_dicts(),
            session_state=state.to_dict(),
        )

    def message_log(self) -> MessageLog:
        return MessageLog.from_dicts(self.messages)

    def state(self) -> SessionState:
        return SessionState.from_dict(self.session_state)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slugify(name: str) -> str:
    s = name.lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:50]
    return s or "thread"


class CheckpointStore(ABC):
    """Keyed checkpoint storage. The caller owns the lifecycle (see open_checkpoint_store)."""

    @abstractmethod
    def get(self, thread_id: str) -> Optional[Checkpoint]:
        """Return the checkpoint for `thread_id`, or None if the thread is new."""

    @abstractmethod
    def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """Write the checkpoint, replacing any previous one."""

    def close(self) -> None:
        """Release resources held by the store."""


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store, for tests and throwaway runs."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, thread_id: str) -> Optional[Checkpoint]:
        with self._lock:
            data = self._data.get(thread_id)
        return Checkpoint(**json.loads(json.dumps(data))) if data else None

    def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        checkpoint.updated_at = _now_iso()
        if not checkpoint.created_at:
            checkpoint.created_at = checkpoint.updated_at
        with self._lock:
            self._data[thread_id] = asdict(checkpoint)


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoints as JSON files.

    File layout:  {base_dir}/{slug}_{hash}.json
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or app_config.checkpoint_dir
        os.makedirs(self.base_dir, exist_ok=True)
        self._closed = False

    def _path_for(self, thread_id: str) -> str:
        digest = hashlib.sha256(thread_id.encode("utf-8")).hexdigest()[:12]
        return os.path.join(self.base_dir, f"{_slugify(thread_id)}_{digest}.json")

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Checkpoint store is closed")

    def _quarantine(self, path: str) -> str:
        """Move an unreadable checkpoint aside so the next put does not overwrite it."""
        target = f"{path}.corrupt-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%f')}"
        os.replace(path, target)
        return target

    def get(self, thread_id: str) -> Optional[Checkpoint]:
        self._check_open()
        path = self._path_for(thread_id)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            raw = f.read()
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        except ValueError as e:
            target = self._quarantine(path)
            logger.error(f"Unreadable checkpoint {path} moved to {target}: {e}")
            return None
        return Checkpoint(
            thread_id=data.get("thread_id", thread_id),
            version=data.get("version", CHECKPOINT_VERSION),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            messages=data.get("messages", []),
            session_state=data.get("session_state", {}),
        )

    def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        self._check_open()
        checkpoint.updated_at = _now_iso()
        if not checkpoint.created_at:
            checkpoint.created_at = checkpoint.updated_at

        path = self._path_for(thread_id)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(asdict(checkpoint), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.info(f"Checkpoint saved: {path} ({len(checkpoint.messages)} messages)")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def close(self) -> None:
        self._closed = True


@contextmanager
def open_checkpoint_store(base_dir: Optional[str] = None) -> Iterator[CheckpointStore]:
    """Scoped store acquisition; the store is closed on exit."""
    store = FileCheckpointStore(base_dir)
    try:
        yield store
    finally:
        store.close()
