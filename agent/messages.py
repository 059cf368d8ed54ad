"""
Conversation data model: messages, tool calls and the append-only message log.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool-result"


@dataclass
class ToolCall:
    """A tool invocation requested by the model. `arguments` is kept exactly as sent."""
    id: str
    name: str
    arguments: Any = field(default_factory=dict)

    def signature(self) -> str:
        """Stable string form used for repetition checks."""
        try:
            args = json.dumps(self.arguments, sort_keys=True, ensure_ascii=False)
        except (TypeError, ValueError):
            args = str(self.arguments)
        return f"{self.name}({args})"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            arguments=data.get("arguments", {}),
        )


@dataclass
class Message:
    """One turn of conversation."""
    role: Role
    content: str = ""
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    requested_tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return self.role == Role.ASSISTANT and bool(self.requested_tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.requested_tool_calls:
            data["requested_tool_calls"] = [c.to_dict() for c in self.requested_tool_calls]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        return cls(
            role=Role(data.get("role", "user")),
            content=content,
            tool_name=data.get("tool_name"),
            tool_call_id=data.get("tool_call_id"),
            requested_tool_calls=[
                ToolCall.from_dict(c) for c in data.get("requested_tool_calls", []) or []
            ],
        )


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------

def system_message(content: str) -> Message:
    return Message(role=Role.SYSTEM, content=content)


def user_message(content: str) -> Message:
    return Message(role=Role.USER, content=content)


def assistant_message(content: str = "", tool_calls: Optional[List[ToolCall]] = None) -> Message:
    return Message(role=Role.ASSISTANT, content=content, requested_tool_calls=list(tool_calls or []))


def tool_result_message(tool_call_id: str, tool_name: str, content: str) -> Message:
    return Message(
        role=Role.TOOL_RESULT,
        content=content,
        tool_name=tool_name,
        tool_call_id=tool_call_id,
    )


# ---------------------------------------------------------------------------
# Message Store
# ---------------------------------------------------------------------------

class MessageLog:
    """Ordered, append-only conversation log.

    The durable log keeps every appended message for auditability; filtered
    views for the model are produced by the history compactor and never
    written back here.
    """

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def extend(self, messages: List[Message]) -> None:
        self._messages.extend(messages)

    def last(self, role: Optional[Role] = None) -> Optional[Message]:
        for msg in reversed(self._messages):
            if role is None or msg.role == role:
                return msg
        return None

    def pending_tool_call_ids(self) -> List[str]:
        """Tool call ids of the latest assistant turn that have no result yet."""
        answered: set = set()
        for msg in reversed(self._messages):
            if msg.role == Role.TOOL_RESULT and msg.tool_call_id:
                answered.add(msg.tool_call_id)
            elif msg.role == Role.ASSISTANT:
                return [c.id for c in msg.requested_tool_calls if c.id not in answered]
        return []

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self._messages]

    @classmethod
    def from_dicts(cls, data: List[Dict[str, Any]]) -> "MessageLog":
        messages = []
        for item in data or []:
            try:
                messages.append(Message.from_dict(item))
            except ValueError as e:
                logger.warning(f"Skipping unreadable checkpoint message: {e}")
        return cls(messages)
