"""
Request classification: is the latest user message a new task or a nudge to
continue the previous one?

A new task resets the completion flags in the session state so a second,
unrelated request is not short-circuited by the first one's success. The
heuristic is a keyword policy; replace classify_request to change it.
"""

import logging
import re
from enum import Enum
from typing import Iterable

from .messages import Message, Role

logger = logging.getLogger(__name__)


class RequestKind(str, Enum):
    NEW_TASK = "new_task"
    CONTINUATION = "continuation"


ACTION_VERBS = frozenset({
    "add", "change", "create", "update", "make", "build", "write", "fix",
    "remove", "delete", "implement", "replace", "modify", "refactor",
    "rename", "install",
})

CONTINUATION_PHRASES = (
    "continue", "status", "go on", "keep going", "resume", "proceed",
    "carry on", "what's the progress", "are you done",
)

_WORD = re.compile(r"[a-z']+")


def classify_text(text: str) -> RequestKind:
    lowered = (text or "").strip().lower()
    if not lowered:
        return RequestKind.CONTINUATION
    if any(word in ACTION_VERBS for word in _WORD.findall(lowered)):
        return RequestKind.NEW_TASK
    if any(phrase in lowered for phrase in CONTINUATION_PHRASES):
        return RequestKind.CONTINUATION
    # Unknown phrasing is treated as new work rather than risking a stale "done"
    return RequestKind.NEW_TASK


def classify_request(messages: Iterable[Message]) -> RequestKind:
    """Classify the most recent user message of the log."""
    last_user = None
    for msg in messages:
        if msg.role == Role.USER:
            last_user = msg
    if last_user is None:
        return RequestKind.CONTINUATION
    kind = classify_text(last_user.content)
    logger.debug(f"Request classified as {kind.value}: {last_user.content[:80]}")
    return kind
