"""
Agent loop controller.

One invocation: load the thread's checkpoint, append the user request, then
alternate ASK_MODEL and RUN_TOOLS until the completion detector stops the
run, the model replies without tool calls, or the recursion limit is hit.
The checkpoint is written once, at the end.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend import Backend
from config import LoopConfig, loop_config as default_loop_config
from sessions import Checkpoint, CheckpointStore
from tools import TOOL_DEFINITIONS, ToolDispatcher

from .completion import CompletionDetector, Verdict, extract_summary, is_terminal_response
from .events import AgentEvent
from .history import HistoryCompactor
from .intent import RequestKind, classify_request
from .messages import (
    Message, MessageLog, Role, assistant_message, system_message, user_message,
)
from .prompts import COMPLETION_FORCING_PROMPT, SYSTEM_PROMPT, SYSTEM_PROMPT_SIGNATURE
from .state import SessionState

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None]]


class LoopState(str, Enum):
    START = "start"
    ASK_MODEL = "ask_model"
    RUN_TOOLS = "run_tools"
    END = "end"


class ModelInvocationError(Exception):
    """The model failed twice in a row; the invocation is aborted without a checkpoint write."""


@dataclass
class AgentRequest:
    """Transport event for one invocation."""
    query: str
    thread_id: Optional[str] = None
    session_id: Optional[str] = None

    def resolved_thread_id(self) -> str:
        return self.thread_id or f"thread-{self.session_id or 'default'}"


@dataclass
class InvocationResult:
    summary_text: str
    thread_id: str
    status: str  # completed | stopped | truncated
    turns_taken: int = 0
    written_files: Dict[str, str] = field(default_factory=dict)


class AgentLoop:
    """
    Drives one thread's conversation with the model.

    `model` is any object with invoke(messages, tools=None) -> Message. The
    checkpoint store is owned by the caller and only read and written here.
    """

    def __init__(
        self,
        model: Any,
        backend: Backend,
        store: CheckpointStore,
        config: Optional[LoopConfig] = None,
        on_event: Optional[EventCallback] = None,
        system_prompt: str = SYSTEM_PROMPT,
        tools: Optional[List[Dict[str, Any]]] = None,
    ):
        self.model = model
        self.backend = backend
        self.store = store
        self.config = config or default_loop_config
        self.on_event = on_event
        self.system_prompt = system_prompt
        # Tool schemas are bound once for every model call of this loop
        self.tools = list(tools if tools is not None else TOOL_DEFINITIONS)
        self.dispatcher = ToolDispatcher(backend, self.config)
        self.compactor = HistoryCompactor(self.config)
        self.detector = CompletionDetector(self.config)

    async def _emit(self, event_type: str, content: str = "", **data: Any) -> None:
        if self.on_event is not None:
            await self.on_event(AgentEvent(type=event_type, content=content, data=data or None))

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _ask_model(self, messages: List[Message],
                         tools: Optional[List[Dict[str, Any]]]) -> Message:
        """Invoke the model, retrying once with the same input on failure."""
        loop = asyncio.get_running_loop()
        attempts = max(1, self.config.model_max_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                reply = await loop.run_in_executor(None, self.model.invoke, messages, tools)
            except Exception as e:
                last_error = e
                logger.warning(f"Model call failed (attempt {attempt}/{attempts}): {e}")
                continue
            if isinstance(reply, Message) and reply.role == Role.ASSISTANT:
                return reply
            last_error = ValueError(f"malformed model reply: {reply!r:.200}")
            logger.warning(f"Model returned a malformed reply (attempt {attempt}/{attempts})")
        raise ModelInvocationError(f"Model call failed after {attempts} attempts: {last_error}") from last_error

    async def _force_summary(self, view: List[Message]) -> Message:
        """Tool-less call asking for the final summary. Tool calls in the reply are discarded."""
        reply = await self._ask_model(view + [user_message(COMPLETION_FORCING_PROMPT)], None)
        if reply.requested_tool_calls:
            logger.info(f"Discarding {len(reply.requested_tool_calls)} tool call(s) from the forced summary")
        return assistant_message(reply.content)

    @staticmethod
    def _with_read_snapshot(view: List[Message], state: SessionState) -> List[Message]:
        """Re-inject the last read when compaction filtered its result out of the view."""
        snapshot = state.last_read_snapshot
        if not snapshot:
            return view
        if any(m.role == Role.TOOL_RESULT and m.content == snapshot for m in view):
            return view
        return view + [user_message(f"Latest read_files output:\n{snapshot}")]

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _start(self, request: AgentRequest, previous: Optional[Checkpoint]):
        log = previous.message_log() if previous else MessageLog()
        state = replace(previous.state(), turns_taken=0) if previous else SessionState()

        pending = log.pending_tool_call_ids()
        if pending:
            # Left by an aborted invocation; the compactor strips them from the view
            logger.warning(f"[{request.resolved_thread_id()}] Resuming with unanswered tool calls: {pending}")

        has_system = any(
            m.role == Role.SYSTEM and SYSTEM_PROMPT_SIGNATURE in m.content for m in log
        )
        if not has_system:
            log.append(system_message(self.system_prompt))
        log.append(user_message(request.query))

        if classify_request(log) == RequestKind.NEW_TASK:
            state = state.reset_completion()
        return log, state

    async def handle(self, request: AgentRequest) -> InvocationResult:
        thread_id = request.resolved_thread_id()
        previous = await asyncio.to_thread(self.store.get, thread_id)
        log, state = self._start(request, previous)
        logger.info(
            f"[{thread_id}] {LoopState.START.value}: {len(log)} messages, "
            f"{len(state.written_files)} files in ledger"
        )

        last_response: Optional[Message] = None
        status = "completed"
        summary = ""

        while True:
            compaction = self.compactor.compact(log.messages)
            if compaction.loop.detected:
                await self._emit(
                    "loop_detected",
                    f"{compaction.loop.group} repeated {compaction.loop.run_length} times",
                    terminal=compaction.loop.terminal,
                )

            verdict = self.detector.decide(last_response, state, compaction.loop, log.messages)
            if verdict == Verdict.STOP:
                summary = extract_summary(last_response.content)
                break

            # Forced summaries count against the limit
            if state.turns_taken >= self.config.recursion_limit:
                status = "truncated"
                summary = (
                    f"Stopped after {state.turns_taken} model turns without a final summary "
                    f"(recursion limit {self.config.recursion_limit} reached)."
                )
                logger.warning(f"[{thread_id}] {summary}")
                await self._emit("truncated", summary)
                break

            if verdict == Verdict.FORCE_SUMMARY:
                logger.info(f"[{thread_id}] Forcing final summary")
                await self._emit("force_summary")
                view = self._with_read_snapshot(compaction.view, state)
                state = state.next_turn()
                reply = await self._force_summary(view)
                log.append(reply)
                summary = extract_summary(reply.content)
                break

            view = self._with_read_snapshot(compaction.view, state)
            state = state.next_turn()
            logger.debug(f"[{thread_id}] {LoopState.ASK_MODEL.value} turn {state.turns_taken}")
            await self._emit("turn_start", f"Turn {state.turns_taken}", turn=state.turns_taken)
            response = await self._ask_model(view, self.tools)
            log.append(response)
            last_response = response

            if is_terminal_response(response):
                continue
            if not response.has_tool_calls:
                status = "stopped"
                summary = extract_summary(response.content)
                logger.info(f"[{thread_id}] Model replied without tool calls; stopping")
                break

            logger.debug(f"[{thread_id}] {LoopState.RUN_TOOLS.value}: {len(response.requested_tool_calls)} call(s)")
            for call in response.requested_tool_calls:
                await self._emit("tool_call", call.name, id=call.id, arguments=call.arguments)
            batch = await self.dispatcher.dispatch_batch(response.requested_tool_calls, state)
            log.extend(batch.messages)
            state = batch.state
            for msg, result in zip(batch.messages, batch.results):
                await self._emit(
                    "tool_result", msg.content,
                    id=msg.tool_call_id, name=msg.tool_name, success=result.success,
                )

        logger.info(f"[{thread_id}] {LoopState.END.value}: {status} after {state.turns_taken} turn(s)")
        checkpoint = Checkpoint.from_run(thread_id, log, state, previous)
        await asyncio.to_thread(self.store.put, thread_id, checkpoint)

        result = InvocationResult(
            summary_text=summary,
            thread_id=thread_id,
            status=status,
            turns_taken=state.turns_taken,
            written_files=dict(state.written_files),
        )
        await self._emit("done", summary, status=status, turns=state.turns_taken)
        return result
