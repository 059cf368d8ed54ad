"""Tool execution dispatch: single operations and ordered batches."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from agent.messages import Message, ToolCall, tool_result_message
from agent.state import SessionState, merge_deltas
from backend import Backend
from config import LoopConfig, app_config, loop_config as default_loop_config
from tools._common import ToolResult, INVALID_ARGUMENTS_PREFIX
from tools.calls import (
    ToolOperation, RunCommand, WriteFiles, ReadFiles, InvalidCall, parse_tool_call,
)
from tools.external_ops import run_command
from tools.file_ops import read_files, write_files
from tools.schemas import SAFE_TOOLS

logger = logging.getLogger(__name__)


def execute_operation(
    op: ToolOperation,
    state: SessionState,
    backend: Backend,
    config: Optional[LoopConfig] = None,
    command_timeout: Optional[int] = None,
) -> ToolResult:
    """Run one parsed operation against the sandbox."""
    config = config or default_loop_config
    if isinstance(op, RunCommand):
        return run_command(
            op, backend,
            timeout=command_timeout or app_config.command_timeout,
            manifest=config.install_manifest,
        )
    elif isinstance(op, WriteFiles):
        return write_files(op, state, backend, whitespace_insensitive=config.whitespace_insensitive_match)
    elif isinstance(op, ReadFiles):
        return read_files(op, backend)
    elif isinstance(op, InvalidCall):
        return ToolResult(
            success=False,
            output=op.hint,
            error=f"{INVALID_ARGUMENTS_PREFIX} for {op.name}: {op.reason}",
        )
    raise TypeError(f"Unknown tool operation: {type(op).__name__}")


@dataclass
class BatchResult:
    """Tool results of one assistant turn, in request order."""
    messages: List[Message] = field(default_factory=list)
    results: List[ToolResult] = field(default_factory=list)
    state: SessionState = field(default_factory=SessionState)


class ToolDispatcher:
    """Runs the tool calls of one model response.

    Consecutive read-only calls run concurrently (bounded by
    `max_parallel_tools`); any other call is a barrier and runs alone, so
    writes and commands keep request order and a read that follows a write
    sees it. Deltas are folded into the state in request order.
    """

    def __init__(self, backend: Backend, config: Optional[LoopConfig] = None,
                 command_timeout: Optional[int] = None):
        self.backend = backend
        self.config = config or default_loop_config
        self.command_timeout = command_timeout or app_config.command_timeout

    def _execute(self, op: ToolOperation, state: SessionState) -> ToolResult:
        try:
            return execute_operation(op, state, self.backend, self.config, self.command_timeout)
        except Exception as e:
            logger.exception(f"Tool execution error: {op.name}")
            return ToolResult(success=False, output="", error=f"Tool error: {e}")

    async def _run(self, op: ToolOperation, state: SessionState,
                   semaphore: asyncio.Semaphore) -> ToolResult:
        loop = asyncio.get_running_loop()
        async with semaphore:
            return await loop.run_in_executor(None, self._execute, op, state)

    @staticmethod
    def _segments(ops: List[ToolOperation]) -> List[List[int]]:
        segments: List[List[int]] = []
        for i, op in enumerate(ops):
            parallel = isinstance(op, ReadFiles) and op.name in SAFE_TOOLS
            if parallel and segments and segments[-1] and isinstance(ops[segments[-1][0]], ReadFiles):
                segments[-1].append(i)
            else:
                segments.append([i])
        return segments

    async def dispatch_batch(self, calls: List[ToolCall], state: SessionState) -> BatchResult:
        ops = [parse_tool_call(call) for call in calls]
        results: List[Optional[ToolResult]] = [None] * len(ops)
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_tools))

        for segment in self._segments(ops):
            if len(segment) == 1:
                i = segment[0]
                results[i] = await self._run(ops[i], state, semaphore)
            else:
                gathered: Tuple[ToolResult, ...] = await asyncio.gather(
                    *(self._run(ops[i], state, semaphore) for i in segment)
                )
                for i, result in zip(segment, gathered):
                    results[i] = result
            state = merge_deltas(state, [results[i].delta for i in segment])

        batch = BatchResult(state=state)
        for call, op, result in zip(calls, ops, results):
            if not result.success:
                logger.info(f"Tool {op.name} ({call.id}) failed: {result.error}")
            batch.results.append(result)
            batch.messages.append(tool_result_message(call.id, op.name, result.text))
        return batch
