"""Tool schema definitions (Bedrock/Anthropic Messages API) and name normalization."""

from typing import Any, Dict, List

RUN_COMMAND_NAME = "run_command"
WRITE_FILES_NAME = "write_files"
READ_FILES_NAME = "read_files"

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": RUN_COMMAND_NAME,
        "description": (
            "Run a shell command in the sandbox and return its output. Use it to install "
            "packages (e.g. 'npm install date-fns --yes'). Installs are verified against "
            "package.json. Never start, build or restart the dev server."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to run"},
            },
            "required": ["command"],
        },
    },
    {
        "name": WRITE_FILES_NAME,
        "description": (
            "Create or update files in the sandbox. Files whose content is already identical "
            "are skipped; if every file is unchanged the result says 'No changes needed' and "
            "the task is complete. Paths are relative to the project root."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string", "description": "Relative file path, e.g. app/page.tsx"},
                            "content": {"type": "string", "description": "Full file content"},
                        },
                        "required": ["path", "content"],
                    },
                    "description": "Files to write. Pass an array, not a JSON string.",
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": READ_FILES_NAME,
        "description": (
            "Read files from the sandbox. Returns each file under a '=== path ===' header. "
            "Check the conversation first; do not re-read content you already have."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Paths of the files to read",
                },
            },
            "required": ["files"],
        },
    },
]

# Names the model has been seen using for the same tools
TOOL_NAME_NORMALIZE: Dict[str, str] = {
    "runInTerminal": RUN_COMMAND_NAME,
    "run-command": RUN_COMMAND_NAME,
    "bash": RUN_COMMAND_NAME,
    "createOrUpdateFiles": WRITE_FILES_NAME,
    "write-files": WRITE_FILES_NAME,
    "write_file": WRITE_FILES_NAME,
    "readFiles": READ_FILES_NAME,
    "read-files": READ_FILES_NAME,
    "read_file": READ_FILES_NAME,
}

# Read-only tools may run concurrently within a batch
SAFE_TOOLS = frozenset({READ_FILES_NAME})


def normalize_tool_name(name: str) -> str:
    return TOOL_NAME_NORMALIZE.get(name, name)
