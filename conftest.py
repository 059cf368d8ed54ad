"""Shared fakes for the test suite: a scripted model client and an in-memory sandbox."""

import json
import os
import sys
from typing import Callable, Dict, List, Optional, Tuple

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from agent.messages import Message, ToolCall, assistant_message
from backend import Backend
from config import LoopConfig
from sessions import InMemoryCheckpointStore


class FakeModel:
    """Model client that replays a script of replies.

    Script items are Messages (returned) or exceptions (raised). Once the
    script runs out, `default` is returned, or an AssertionError is raised.
    """

    def __init__(self, script: Optional[List] = None, default: Optional[Message] = None):
        self.script = list(script or [])
        self.default = default
        self.calls: List[Tuple[List[Message], Optional[list]]] = []

    def invoke(self, messages, tools=None):
        self.calls.append((list(messages), tools))
        if self.script:
            item = self.script.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("FakeModel script exhausted")
        if isinstance(item, BaseException):
            raise item
        return item


class FakeBackend(Backend):
    """In-memory sandbox with scripted command results."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})
        self.fail_writes: Dict[str, Exception] = {}
        self.commands: Dict[str, Tuple[str, str, int]] = {}
        self.command_hooks: Dict[str, Callable[["FakeBackend"], None]] = {}
        self.write_count = 0
        self.executed: List[str] = []
        self.closed = False

    @property
    def working_directory(self) -> str:
        return "/sandbox"

    def read_file(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_file(self, path: str, content: str) -> None:
        if path in self.fail_writes:
            raise self.fail_writes[path]
        self.write_count += 1
        self.files[path] = content

    def run_command(self, command: str, timeout: int = 120):
        self.executed.append(command)
        hook = self.command_hooks.get(command)
        if hook is not None:
            hook(self)
        return self.commands.get(command, ("ok", "", 0))

    def close(self) -> None:
        self.closed = True


def tool_call(call_id: str, name: str, **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def write_reply(call_id: str, path: str, content: str) -> Message:
    return assistant_message("", [tool_call(call_id, "write_files", files=[{"path": path, "content": content}])])


def summary_reply(text: str) -> Message:
    return assistant_message(f"<task_summary>\n{text}\n</task_summary>")


def package_json(*packages: str) -> str:
    return json.dumps({"name": "app", "dependencies": {p: "^1.0.0" for p in packages}})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store():
    return InMemoryCheckpointStore()


@pytest.fixture
def loop_settings():
    return LoopConfig(recursion_limit=6, model_max_attempts=2, max_parallel_tools=4)
