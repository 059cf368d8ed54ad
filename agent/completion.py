"""
Completion detection: classify tool results and decide, at the start of
every loop turn, whether to continue, force a summary or stop.

classify_tool_result() is a phrase policy keyed to the results the tools
produce; swap it out together with tools._common if those phrases change.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from config import LoopConfig, loop_config as default_loop_config
from tools._common import (
    WRITE_SUCCESS_PHRASE, NO_CHANGES_PHRASE, INSTALL_VERIFIED_PHRASE,
    COMMAND_SUCCESS_PHRASE, ERROR_PREFIX,
)

from .messages import Message, Role
from .prompts import SUMMARY_OPEN, SUMMARY_CLOSE
from .state import SessionState

if TYPE_CHECKING:
    from .history import LoopReport

logger = logging.getLogger(__name__)


class ToolSignal(str, Enum):
    WRITE_SUCCESS = "write_success"
    NO_CHANGES = "no_changes"
    INSTALL_VERIFIED = "install_verified"
    COMMAND_SUCCESS = "command_success"
    ERROR = "error"
    NEUTRAL = "neutral"


COMPLETION_SIGNALS = frozenset({
    ToolSignal.WRITE_SUCCESS, ToolSignal.NO_CHANGES, ToolSignal.INSTALL_VERIFIED,
})
PROGRESS_SIGNALS = frozenset({
    ToolSignal.WRITE_SUCCESS, ToolSignal.COMMAND_SUCCESS, ToolSignal.INSTALL_VERIFIED,
})


class Verdict(str, Enum):
    CONTINUE = "continue"
    FORCE_SUMMARY = "force_summary"
    STOP = "stop"


def classify_tool_result(msg: Message) -> ToolSignal:
    if msg.role != Role.TOOL_RESULT:
        return ToolSignal.NEUTRAL
    content = msg.content.lstrip()
    if content.startswith(ERROR_PREFIX):
        return ToolSignal.ERROR
    if content.startswith(NO_CHANGES_PHRASE):
        return ToolSignal.NO_CHANGES
    if content.startswith(WRITE_SUCCESS_PHRASE):
        return ToolSignal.WRITE_SUCCESS
    first_line = content.split("\n", 1)[0]
    if INSTALL_VERIFIED_PHRASE in first_line:
        return ToolSignal.INSTALL_VERIFIED
    if content.startswith(COMMAND_SUCCESS_PHRASE):
        return ToolSignal.COMMAND_SUCCESS
    return ToolSignal.NEUTRAL


def is_terminal_response(msg: Optional[Message]) -> bool:
    return msg is not None and msg.role == Role.ASSISTANT and SUMMARY_OPEN in msg.content


def extract_summary(text: str) -> str:
    """Text between the summary markers, or the whole text when they are absent."""
    start = text.find(SUMMARY_OPEN)
    if start == -1:
        return text.strip()
    start += len(SUMMARY_OPEN)
    end = text.find(SUMMARY_CLOSE, start)
    return (text[start:] if end == -1 else text[start:end]).strip()


def has_completion_signal(messages: Iterable[Message], lookback: int = 20) -> bool:
    """True if any of the last `lookback` tool results since the latest user
    request is a completion signal. Results of earlier requests do not count."""
    messages = list(messages)
    start = 0
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == Role.USER:
            start = i + 1
            break
    results = [m for m in messages[start:] if m.role == Role.TOOL_RESULT][-lookback:]
    return any(classify_tool_result(m) in COMPLETION_SIGNALS for m in results)


class CompletionDetector:
    def __init__(self, config: Optional[LoopConfig] = None):
        self.config = config or default_loop_config

    def decide(self, last_response: Optional[Message], state: SessionState,
               loop_report: "LoopReport", messages: Iterable[Message]) -> Verdict:
        """Evaluated at the start of every turn, first match wins:

        1. the last model response carries the summary marker: STOP
        2. a write completed and no write errors are pending: FORCE_SUMMARY
        3. terminal loop and a recent completion signal: FORCE_SUMMARY
        4. terminal loop without any completion signal: CONTINUE (logged)
        5. otherwise: CONTINUE
        """
        if is_terminal_response(last_response):
            return Verdict.STOP
        if state.main_task_completed and not state.has_pending_write_errors:
            return Verdict.FORCE_SUMMARY
        if loop_report.terminal:
            if has_completion_signal(messages, self.config.completion_lookback):
                logger.info("Terminal loop after a completion signal; forcing summary")
                return Verdict.FORCE_SUMMARY
            logger.warning(
                f"Terminal loop in {loop_report.group} group with no completion signal; continuing"
            )
        return Verdict.CONTINUE
