"""File operation tools: write_files, read_files."""

import logging
from typing import Dict, List, Optional

from agent.state import SessionState, StateDelta
from backend import Backend
from tools._common import (
    ToolResult, WRITE_SUCCESS_PHRASE, NO_CHANGES_PHRASE, TASK_COMPLETE_HINT,
)
from tools.calls import ReadFiles, WriteFiles

logger = logging.getLogger(__name__)


def _squash_whitespace(text: str) -> str:
    return " ".join(text.split())


def content_matches(existing: Optional[str], content: str, whitespace_insensitive: bool = False) -> bool:
    """True when `existing` already holds `content`."""
    if existing is None:
        return False
    if existing == content:
        return True
    if whitespace_insensitive:
        return _squash_whitespace(existing) == _squash_whitespace(content)
    return False


def write_files(op: WriteFiles, state: SessionState, backend: Backend,
                whitespace_insensitive: bool = False) -> ToolResult:
    """Write the changed subset of `op.files`.

    Files whose content already matches the written-files ledger are skipped.
    When every file is skipped the sandbox is not touched and the result says
    no changes are needed.
    """
    # Last entry per path wins when the model repeats a path in one call
    requested: Dict[str, str] = {}
    for f in op.files:
        requested[f.path] = f.content

    pending = [
        (path, content) for path, content in requested.items()
        if not content_matches(state.written_files.get(path), content, whitespace_insensitive)
    ]
    pending_paths = {path for path, _ in pending}
    skipped = [path for path in requested if path not in pending_paths]

    if not pending:
        logger.info(f"write_files: all {len(skipped)} file(s) already up-to-date")
        return ToolResult(
            success=True,
            output=(
                f"{NO_CHANGES_PHRASE}: all requested files are already up-to-date "
                f"({', '.join(skipped)}). {TASK_COMPLETE_HINT}."
            ),
            delta=StateDelta(main_task_completed=True, has_pending_write_errors=False),
        )

    written: Dict[str, str] = {}
    for index, (path, content) in enumerate(pending):
        try:
            backend.write_file(path, content)
        except Exception as e:
            # The sandbox content of `path` is unknown; everything after it was never attempted
            not_attempted = [p for p, _ in pending[index + 1:]]
            logger.warning(f"write_files failed on {path}: {e}")
            lines = [
                f"Wrote {len(written)} of {len(pending)} file(s) before the failure.",
                f"Written: {', '.join(written) or '(none)'}",
                f"Unknown state: {path}",
                f"Not attempted: {', '.join(not_attempted) or '(none)'}",
            ]
            if skipped:
                lines.append(f"Unchanged: {', '.join(skipped)}")
            lines.append("Write the unknown and not-attempted files again.")
            return ToolResult(
                success=False,
                output="\n".join(lines),
                error=f"write failed for {path}: {e}",
                delta=StateDelta(
                    written=written,
                    invalidated=[path],
                    main_task_completed=False,
                    has_pending_write_errors=True,
                ),
            )
        written[path] = content

    output = f"{WRITE_SUCCESS_PHRASE} {len(written)} file(s): {', '.join(written)}"
    if skipped:
        output += f"\nUnchanged: {', '.join(skipped)}"
    return ToolResult(
        success=True,
        output=output,
        delta=StateDelta(written=written, main_task_completed=True, has_pending_write_errors=False),
    )


def format_file_block(path: str, body: str) -> str:
    return f"=== {path} ===\n{body}"


def read_files(op: ReadFiles, backend: Backend) -> ToolResult:
    """Read each path and return one `=== path ===` block per file.

    Per-file failures are reported inline; the call only fails when no file
    could be read.
    """
    blocks: List[str] = []
    failures: List[str] = []
    for path in op.paths:
        try:
            content = backend.read_file(path)
        except FileNotFoundError:
            failures.append(path)
            blocks.append(format_file_block(path, "Error: file not found"))
            continue
        except Exception as e:
            failures.append(path)
            blocks.append(format_file_block(path, f"Error: {e}"))
            continue
        blocks.append(format_file_block(path, content))

    output = "\n\n".join(blocks)
    if len(failures) == len(op.paths):
        return ToolResult(success=False, output=output, error=f"could not read {', '.join(failures)}")
    return ToolResult(success=True, output=output, delta=StateDelta(last_read_snapshot=output))
