"""
Shared state for the web server.

The backend, checkpoint store and model client are created and owned by the
caller (web.cli, or tests) and installed with configure(); route modules read
them from here. Nothing is connected lazily.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from agent.core import AgentLoop
from backend import Backend
from config import loop_config
from sessions import CheckpointStore

logger = logging.getLogger(__name__)


class ThreadLockRegistry:
    """One asyncio.Lock per thread_id, dropped once its last holder or waiter leaves.

    A thread's checkpoint is read at the start of an invocation and written at
    the end, so invocations on the same thread must not overlap.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = self._locks[thread_id] = asyncio.Lock()
        self._users[thread_id] = self._users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[thread_id] -= 1
            if not self._users[thread_id]:
                del self._users[thread_id]
                del self._locks[thread_id]


# ============================================================
# Globals
# ============================================================

_backend: Optional[Backend] = None  # LocalBackend or SSHBackend
_store: Optional[CheckpointStore] = None
_model: Optional[Any] = None  # BedrockService unless injected

_thread_locks = ThreadLockRegistry()


def configure(backend: Backend, store: CheckpointStore, model: Any) -> None:
    """Install the handles the caller opened; the caller also closes them."""
    global _backend, _store, _model
    _backend, _store, _model = backend, store, model


def release() -> None:
    """Forget the installed handles without closing them."""
    global _backend, _store, _model
    _backend = _store = _model = None


def thread_lock(thread_id: str):
    return _thread_locks.hold(thread_id)


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Web server {name} is not configured")
    return value


def get_backend() -> Backend:
    return _require(_backend, "sandbox backend")


def get_store() -> CheckpointStore:
    return _require(_store, "checkpoint store")


def get_model() -> Any:
    return _require(_model, "model client")


def build_agent_loop() -> AgentLoop:
    return AgentLoop(get_model(), get_backend(), get_store(), loop_config)
