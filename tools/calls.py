"""Tool operations and argument repair.

A model tool call is parsed into one operation of a closed set:
RunCommand, WriteFiles, ReadFiles, or InvalidCall when the arguments cannot
be repaired. Repair runs before validation because models regularly send
near-miss shapes ("paths" instead of "files", a JSON-stringified array, a
bare "path").
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Union

from agent.messages import ToolCall
from tools.schemas import (
    RUN_COMMAND_NAME, WRITE_FILES_NAME, READ_FILES_NAME, normalize_tool_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileWrite:
    path: str
    content: str


@dataclass(frozen=True)
class RunCommand:
    call_id: str
    command: str
    name: str = RUN_COMMAND_NAME


@dataclass(frozen=True)
class WriteFiles:
    call_id: str
    files: Tuple[FileWrite, ...]
    name: str = WRITE_FILES_NAME


@dataclass(frozen=True)
class ReadFiles:
    call_id: str
    paths: Tuple[str, ...]
    name: str = READ_FILES_NAME


@dataclass(frozen=True)
class InvalidCall:
    call_id: str
    name: str
    reason: str
    hint: str = ""


ToolOperation = Union[RunCommand, WriteFiles, ReadFiles, InvalidCall]

_HINTS: Dict[str, str] = {
    RUN_COMMAND_NAME: 'Expected {"command": "<shell command>"}.',
    WRITE_FILES_NAME: 'Expected {"files": [{"path": "app/page.tsx", "content": "..."}]} with "files" as an array.',
    READ_FILES_NAME: 'Expected {"files": ["app/page.tsx"]}.',
}


class ArgumentError(ValueError):
    """Raised when tool arguments cannot be repaired into the expected shape."""


def _coerce_arguments(raw: Any) -> Dict[str, Any]:
    """Arguments may arrive as a dict, a JSON string or nothing at all."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return {}
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ArgumentError(f"arguments are not valid JSON ({e.msg})")
        if not isinstance(parsed, dict):
            raise ArgumentError("arguments must be a JSON object")
        return parsed
    raise ArgumentError(f"arguments must be an object, got {type(raw).__name__}")


def _parse_json_value(value: str, field_name: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ArgumentError(f"'{field_name}' is a string that is not valid JSON ({e.msg})")


def _repair_read_paths(args: Dict[str, Any]) -> Tuple[str, ...]:
    value = args.get("files")
    if value is None:
        value = args.get("paths")
    if value is None:
        value = args.get("path")
    if value is None:
        raise ArgumentError("missing 'files'")

    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            value = _parse_json_value(stripped, "files")
        else:
            value = [stripped]
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        raise ArgumentError(f"'files' must be an array of paths, got {type(value).__name__}")

    paths: List[str] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            paths.append(item.strip())
        elif isinstance(item, dict) and isinstance(item.get("path"), str) and item["path"].strip():
            paths.append(item["path"].strip())
        else:
            raise ArgumentError(f"'files' entries must be non-empty path strings, got {item!r:.80}")
    if not paths:
        raise ArgumentError("'files' is empty")
    return tuple(paths)


def _repair_write_files(args: Dict[str, Any]) -> Tuple[FileWrite, ...]:
    value = args.get("files")
    if value is None and "path" in args:
        value = [{"path": args.get("path"), "content": args.get("content")}]
    if value is None:
        raise ArgumentError("missing 'files'")

    if isinstance(value, str):
        value = _parse_json_value(value.strip(), "files")
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        raise ArgumentError(f"'files' must be an array, got {type(value).__name__}")

    files: List[FileWrite] = []
    for i, item in enumerate(value):
        if not isinstance(item, dict):
            raise ArgumentError(f"files[{i}] must be an object with 'path' and 'content'")
        path = item.get("path")
        content = item.get("content")
        if not isinstance(path, str) or not path.strip():
            raise ArgumentError(f"files[{i}].path must be a non-empty string")
        if not isinstance(content, str):
            raise ArgumentError(f"files[{i}].content must be a string")
        files.append(FileWrite(path=path.strip(), content=content))
    if not files:
        raise ArgumentError("'files' is empty")
    return tuple(files)


def _repair_command(args: Dict[str, Any]) -> str:
    command = args.get("command")
    if command is None:
        command = args.get("cmd")
    if not isinstance(command, str) or not command.strip():
        raise ArgumentError("'command' must be a non-empty string")
    return command.strip()


def parse_tool_call(call: ToolCall) -> ToolOperation:
    """Repair and validate a model tool call. Never raises."""
    name = normalize_tool_name(call.name)
    try:
        args = _coerce_arguments(call.arguments)
        if name == RUN_COMMAND_NAME:
            return RunCommand(call_id=call.id, command=_repair_command(args))
        if name == WRITE_FILES_NAME:
            return WriteFiles(call_id=call.id, files=_repair_write_files(args))
        if name == READ_FILES_NAME:
            return ReadFiles(call_id=call.id, paths=_repair_read_paths(args))
    except ArgumentError as e:
        logger.info(f"Rejected {name} call {call.id}: {e}")
        return InvalidCall(call_id=call.id, name=name, reason=str(e), hint=_HINTS.get(name, ""))

    known = ", ".join(sorted(_HINTS))
    return InvalidCall(
        call_id=call.id,
        name=name,
        reason=f"unknown tool '{call.name}'",
        hint=f"Available tools: {known}.",
    )
