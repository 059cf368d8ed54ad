"""
Tools the agent can call against the sandbox.
Each tool has an Anthropic-compatible schema; calls are repaired into typed
operations and executed through a Backend (local or SSH).
"""

from tools._common import ToolResult  # noqa: F401
from tools.calls import (  # noqa: F401
    FileWrite,
    RunCommand,
    WriteFiles,
    ReadFiles,
    InvalidCall,
    ToolOperation,
    parse_tool_call,
)
from tools.file_ops import read_files, write_files  # noqa: F401
from tools.external_ops import run_command, install_targets  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    SAFE_TOOLS,
    TOOL_NAME_NORMALIZE,
    RUN_COMMAND_NAME,
    WRITE_FILES_NAME,
    READ_FILES_NAME,
    normalize_tool_name,
)
from tools.dispatch import BatchResult, ToolDispatcher, execute_operation  # noqa: F401
