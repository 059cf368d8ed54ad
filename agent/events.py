"""
Agent event data type.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # turn_start, tool_call, tool_result, loop_detected, force_summary, done, truncated
    content: str = ""
    data: Optional[Dict[str, Any]] = None
