"""
Agent package - the sandbox coding agent engine.

Modules:
- messages: Message, ToolCall and the append-only MessageLog
- state: SessionState and the StateDelta values tools return
- events: AgentEvent observability payloads
- prompts: canonical system prompt, summary markers, completion-forcing prompt
- history: history compaction and repetition-loop detection
- completion: tool-result signals and the continue/force/stop decision
- intent: new-task vs continuation policy
- core: AgentLoop, the ask-model / run-tools state machine

Only the data types are re-exported here; the tools package depends on them,
so the loop is imported from agent.core directly.
"""

from .events import AgentEvent
from .messages import (
    Message,
    MessageLog,
    Role,
    ToolCall,
    assistant_message,
    system_message,
    tool_result_message,
    user_message,
)
from .state import SessionState, StateDelta, merge_deltas

__all__ = [
    "AgentEvent",
    "Message",
    "MessageLog",
    "Role",
    "ToolCall",
    "assistant_message",
    "system_message",
    "tool_result_message",
    "user_message",
    "SessionState",
    "StateDelta",
    "merge_deltas",
]
