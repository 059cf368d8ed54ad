"""Shared types and result phrases for the tools package."""

from dataclasses import dataclass, field
from typing import Optional

from agent.state import StateDelta


# Phrases the tools put in their results. The completion detector and the
# system prompt key off these, so change them together.
WRITE_SUCCESS_PHRASE = "Successfully wrote"
NO_CHANGES_PHRASE = "No changes needed"
TASK_COMPLETE_HINT = "Task appears to be complete"
INSTALL_VERIFIED_PHRASE = "Verified in"
COMMAND_SUCCESS_PHRASE = "Command succeeded"
ERROR_PREFIX = "Error"
INVALID_ARGUMENTS_PREFIX = "Invalid arguments"


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    delta: StateDelta = field(default_factory=StateDelta)

    @property
    def text(self) -> str:
        """Content for the tool-result message."""
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"{ERROR_PREFIX}: {self.error}\n{self.output}"
        return f"{ERROR_PREFIX}: {self.error or 'Unknown error'}"
