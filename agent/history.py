"""
History compaction for the agent loop.

Every turn the durable message log is turned into a bounded, de-duplicated
view for the model. The log itself is never modified; each function here
takes a sequence of messages and returns a new list.

Pipeline (HistoryCompactor.compact):
    collapse system messages -> deduplicate -> detect repetition loops
    -> compact if oversized -> repair tool-call pairing

Loop detection looks at the collapsed log before de-duplication, since
de-duplication removes exactly the repetition it is looking for.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from config import LoopConfig, loop_config as default_loop_config
from tools.calls import ReadFiles, WriteFiles, parse_tool_call

from .completion import (
    ToolSignal, classify_tool_result, COMPLETION_SIGNALS, PROGRESS_SIGNALS,
)
from .messages import Message, Role, ToolCall, user_message
from .prompts import SYSTEM_PROMPT_SIGNATURE

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Normalized hashing
# ------------------------------------------------------------------

_ISO_TIMESTAMP = re.compile(
    r"\d{4}-\d{2}-\d{2}[t ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:z|[+-]\d{2}:?\d{2})?"
)
_CLOCK_TIME = re.compile(r"\b\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:\s?[ap]m)?\b")
_DURATION = re.compile(
    r"\b\d+(?:\.\d+)?\s?(?:ms|milliseconds?|secs?|seconds?|s|mins?|minutes?|hrs?|hours?)\b"
)
_WHITESPACE = re.compile(r"\s+")


def normalize_content(text: str) -> str:
    """Lower-case, elide timestamps and durations, collapse whitespace."""
    text = (text or "").lower()
    text = _ISO_TIMESTAMP.sub("<ts>", text)
    text = _CLOCK_TIME.sub("<time>", text)
    text = _DURATION.sub("<dur>", text)
    return _WHITESPACE.sub(" ", text).strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()[:16]


def call_signature(calls: Iterable[ToolCall]) -> str:
    return "|".join(c.signature() for c in calls)


def message_hash(msg: Message) -> str:
    """Hash for repeat detection. Assistant hashes include the requested tool calls."""
    if msg.role == Role.ASSISTANT and msg.requested_tool_calls:
        return content_hash(msg.content + "\n" + call_signature(msg.requested_tool_calls))
    return content_hash(msg.content)


def tool_result_key(msg: Message) -> Tuple[str, str]:
    return (msg.tool_name or "", content_hash(msg.content))


def _calls_by_id(messages: Iterable[Message]) -> Dict[str, ToolCall]:
    calls: Dict[str, ToolCall] = {}
    for msg in messages:
        if msg.role == Role.ASSISTANT:
            for call in msg.requested_tool_calls:
                calls[call.id] = call
    return calls


# ------------------------------------------------------------------
# System message collapse
# ------------------------------------------------------------------

def collapse_system_messages(messages: Iterable[Message]) -> List[Message]:
    """Keep the first canonical system message, at position 0, and no other system message."""
    canonical: Optional[Message] = None
    rest: List[Message] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            if canonical is None and SYSTEM_PROMPT_SIGNATURE in msg.content:
                canonical = msg
            continue
        rest.append(msg)
    return ([canonical] if canonical is not None else []) + rest


# ------------------------------------------------------------------
# De-duplication
# ------------------------------------------------------------------

def deduplicate_repeats(messages: Iterable[Message], max_duplicates: int,
                        recent_window: int) -> List[Message]:
    """Drop user/assistant messages whose hash already occurs `max_duplicates`
    times among the last `recent_window` kept entries.

    Tool results of a dropped assistant message are dropped with it.
    """
    kept: List[Message] = []
    hashes: List[Optional[str]] = []
    dropped_call_ids: Set[str] = set()

    for msg in messages:
        if msg.role == Role.TOOL_RESULT:
            if msg.tool_call_id in dropped_call_ids:
                continue
            kept.append(msg)
            hashes.append(None)
            continue
        if msg.role in (Role.USER, Role.ASSISTANT):
            h = f"{msg.role.value}:{message_hash(msg)}"
            window = hashes[-recent_window:] if recent_window > 0 else []
            if window.count(h) >= max_duplicates:
                if msg.role == Role.ASSISTANT:
                    dropped_call_ids.update(c.id for c in msg.requested_tool_calls)
                continue
            kept.append(msg)
            hashes.append(h)
            continue
        kept.append(msg)
        hashes.append(None)
    return kept


def deduplicate_tool_results(messages: Iterable[Message], window: int = 5,
                             write_turns: int = 8, read_turns: int = 10) -> List[Message]:
    """Drop echoed tool results.

    * A `(tool_name, hash)` pair already among the last `window` kept entries
      is dropped, unless the result is a completion signal.
    * A write success for the same paths and content as a kept write success
      within `write_turns` assistant turns is dropped; the earlier one stays.
    * A read of the same paths returning the same content as a kept read
      within `read_turns` turns is dropped.
    """
    messages = list(messages)
    calls = _calls_by_id(messages)
    kept: List[Message] = []
    kept_keys: List[Optional[Tuple[str, str]]] = []
    last_write: Dict[str, Tuple[int, str]] = {}
    last_read: Dict[Tuple[str, ...], Tuple[int, str]] = {}
    turn = 0

    for msg in messages:
        if msg.role == Role.ASSISTANT:
            turn += 1
        if msg.role != Role.TOOL_RESULT:
            kept.append(msg)
            kept_keys.append(None)
            continue

        key = tool_result_key(msg)
        signal = classify_tool_result(msg)
        recent = kept_keys[-window:] if window > 0 else []
        if key in recent and signal not in COMPLETION_SIGNALS:
            continue

        call = calls.get(msg.tool_call_id or "")
        op = parse_tool_call(call) if call is not None else None

        if isinstance(op, WriteFiles) and signal == ToolSignal.WRITE_SUCCESS:
            written = {f.path: content_hash(f.content) for f in op.files}
            repeated = all(
                path in last_write
                and turn - last_write[path][0] <= write_turns
                and last_write[path][1] == h
                for path, h in written.items()
            )
            if repeated:
                continue
            for path, h in written.items():
                last_write[path] = (turn, h)

        elif isinstance(op, ReadFiles) and signal != ToolSignal.ERROR:
            paths = tuple(sorted(op.paths))
            prior = last_read.get(paths)
            if prior is not None and turn - prior[0] <= read_turns and prior[1] == key[1]:
                continue
            last_read[paths] = (turn, key[1])

        kept.append(msg)
        kept_keys.append(key)
    return kept


# ------------------------------------------------------------------
# Loop detection
# ------------------------------------------------------------------

@dataclass(frozen=True)
class LoopReport:
    detected: bool = False
    terminal: bool = False
    group: Optional[str] = None  # "user", "tool_result" or "assistant"
    run_length: int = 0


def _trailing_run(values: List[str]) -> int:
    if not values:
        return 0
    last = values[-1]
    run = 0
    for value in reversed(values):
        if value != last:
            break
        run += 1
    return run


def _assistant_key(msg: Message) -> str:
    if msg.requested_tool_calls:
        return call_signature(msg.requested_tool_calls)
    return content_hash(msg.content)


def detect_repetition_loop(messages: Iterable[Message], threshold: int,
                           window: int = 10) -> LoopReport:
    """Look for a value repeating `threshold` times in a row within one of
    three independent groups: user messages, tool results (tool name + hash)
    and assistant messages (tool-call signature).

    The loop is terminal unless the last `window` messages hold a progress
    result (write or command success) that is not part of the looping group.
    """
    messages = list(messages)
    users = [content_hash(m.content) for m in messages if m.role == Role.USER][-window:]
    results = ["%s:%s" % tool_result_key(m) for m in messages if m.role == Role.TOOL_RESULT][-window:]
    assistants = [_assistant_key(m) for m in messages if m.role == Role.ASSISTANT][-window:]

    looping: Dict[str, Tuple[int, str]] = {}
    for group, values in (("user", users), ("tool_result", results), ("assistant", assistants)):
        run = _trailing_run(values)
        if run >= threshold:
            looping[group] = (run, values[-1])

    if not looping:
        return LoopReport()

    group = max(looping, key=lambda g: looping[g][0])
    run_length = looping[group][0]
    looping_result = looping.get("tool_result", (0, None))[1]
    looping_calls: Set[str] = set()
    if "assistant" in looping:
        last_assistant = next(m for m in reversed(messages) if m.role == Role.ASSISTANT)
        looping_calls = {c.signature() for c in last_assistant.requested_tool_calls}

    calls = _calls_by_id(messages)
    progress = False
    for msg in messages[-window:]:
        if msg.role != Role.TOOL_RESULT or classify_tool_result(msg) not in PROGRESS_SIGNALS:
            continue
        if "%s:%s" % tool_result_key(msg) == looping_result:
            continue
        call = calls.get(msg.tool_call_id or "")
        if call is not None and call.signature() in looping_calls:
            continue
        progress = True
        break

    report = LoopReport(detected=True, terminal=not progress, group=group, run_length=run_length)
    logger.info(
        f"Repetition loop in {group} group (run of {run_length}), "
        f"{'terminal' if report.terminal else 'with progress'}"
    )
    return report


# ------------------------------------------------------------------
# Compaction
# ------------------------------------------------------------------

def summarize_messages_heuristic(messages: List[Message]) -> str:
    """Short running summary of messages left out of the view."""
    summary_parts: List[str] = []
    tool_counts: Dict[str, int] = {}
    written: List[str] = []

    for msg in messages:
        if msg.role == Role.USER and len(msg.content) > 20:
            summary_parts.append(f"User asked: {msg.content[:200]}")
        elif msg.role == Role.ASSISTANT:
            for call in msg.requested_tool_calls:
                tool_counts[call.name] = tool_counts.get(call.name, 0) + 1
            if len(msg.content) > 20:
                summary_parts.append(f"Assistant replied: {msg.content[:200]}")
        elif msg.role == Role.TOOL_RESULT and classify_tool_result(msg) == ToolSignal.WRITE_SUCCESS:
            written.append(msg.content.splitlines()[0][:200])

    result_parts = [f"[Summary of {len(messages)} earlier messages]"]
    if tool_counts:
        tools_str = ", ".join(f"{n}x{c}" for n, c in sorted(tool_counts.items(), key=lambda x: -x[1]))
        result_parts.append(f"Tools used: {tools_str}")
    result_parts.extend(written[-3:])
    result_parts.extend(summary_parts[-6:])
    return "\n".join(result_parts)


def _requesting_assistant(messages: List[Message], result_idx: int) -> Optional[int]:
    call_id = messages[result_idx].tool_call_id
    for idx in range(result_idx - 1, -1, -1):
        msg = messages[idx]
        if msg.role == Role.ASSISTANT:
            if any(c.id == call_id for c in msg.requested_tool_calls):
                return idx
            return None
    return None


def compact_if_oversized(messages: Iterable[Message], max_length: int, recent_tail: int = 12,
                         max_milestones: int = 3, max_tool_call_turns: int = 3,
                         config: Optional[LoopConfig] = None) -> List[Message]:
    """Bound the view to `max_length` messages plus kept milestones.

    Kept, in priority order: the canonical system message, a summary note for
    everything omitted, the most recent `recent_tail` messages, up to
    `max_milestones` completion results with their requesting assistant turn
    (the result itself is allowed over the bound), and the most recent
    assistant turns that carried tool calls, with their results.
    """
    messages = collapse_system_messages(messages)
    if len(messages) <= max_length:
        return messages

    config = config or default_loop_config
    system = messages[0] if messages[0].role == Role.SYSTEM else None
    body = messages[1:] if system is not None else messages
    reserved = (1 if system is not None else 0) + 1
    tail_len = max(0, min(recent_tail, max_length - reserved))
    older = body[:len(body) - tail_len]
    tail = body[len(body) - tail_len:]

    budget = max_length - reserved - len(tail)
    selected: Set[int] = set()

    milestones = 0
    for idx in range(len(older) - 1, -1, -1):
        if milestones >= max_milestones:
            break
        msg = older[idx]
        if msg.role != Role.TOOL_RESULT or classify_tool_result(msg) not in COMPLETION_SIGNALS:
            continue
        req_idx = _requesting_assistant(older, idx)
        if req_idx is None:
            continue
        cost = 0 if req_idx in selected else 1
        if cost > budget:
            break
        selected.update((req_idx, idx))
        budget -= cost
        milestones += 1

    turns = 0
    for idx in range(len(older) - 1, -1, -1):
        if turns >= max_tool_call_turns:
            break
        msg = older[idx]
        if not msg.has_tool_calls or idx in selected:
            continue
        ids = {c.id for c in msg.requested_tool_calls}
        results = [
            j for j in range(idx + 1, len(older))
            if older[j].role == Role.TOOL_RESULT and older[j].tool_call_id in ids and j not in selected
        ]
        cost = 1 + len(results)
        if cost > budget:
            continue
        selected.add(idx)
        selected.update(results)
        budget -= cost
        turns += 1

    omitted = [msg for i, msg in enumerate(older) if i not in selected]
    compacted: List[Message] = [system] if system is not None else []
    if omitted:
        compacted.append(user_message(summarize_messages_heuristic(omitted)))
    compacted.extend(older[i] for i in sorted(selected))
    compacted.extend(tail)

    logger.info(
        f"Compacted history {len(messages)} -> {len(compacted)} messages "
        f"({milestones} milestones, {turns} tool-call turns)"
    )
    compacted = deduplicate_repeats(compacted, config.max_duplicates, config.recent_window)
    return deduplicate_tool_results(
        compacted, config.tool_result_window, config.write_suppress_turns, config.read_suppress_turns,
    )


# ------------------------------------------------------------------
# Tool-call pairing
# ------------------------------------------------------------------

def repair_tool_pairing(messages: Iterable[Message]) -> List[Message]:
    """Make every tool result answer a call of the nearest preceding assistant
    message, and every requested call have a result.

    Unmatched results are dropped and unanswered calls are stripped from
    their assistant message; an assistant left with neither text nor calls is
    dropped. No result is ever invented.
    """
    out: List[Message] = []
    current: Optional[int] = None
    allowed: Set[str] = set()
    answered: Set[str] = set()
    stripped = 0

    def close() -> None:
        nonlocal stripped
        if current is None:
            return
        msg = out[current]
        calls = [c for c in msg.requested_tool_calls if c.id in answered]
        if len(calls) == len(msg.requested_tool_calls):
            return
        stripped += len(msg.requested_tool_calls) - len(calls)
        if calls or msg.content.strip():
            out[current] = replace(msg, requested_tool_calls=calls)
        else:
            # Nothing answered means nothing follows it yet
            out.pop(current)

    for msg in messages:
        if msg.role == Role.ASSISTANT:
            close()
            out.append(msg)
            current = len(out) - 1
            allowed = {c.id for c in msg.requested_tool_calls}
            answered = set()
        elif msg.role == Role.TOOL_RESULT:
            if current is None or msg.tool_call_id not in allowed or msg.tool_call_id in answered:
                stripped += 1
                continue
            answered.add(msg.tool_call_id)
            out.append(msg)
        else:
            close()
            current = None
            allowed = set()
            answered = set()
            out.append(msg)
    close()

    if stripped:
        logger.debug(f"Tool pairing repair removed {stripped} unmatched call(s)/result(s)")
    return out


# ------------------------------------------------------------------
# Compactor
# ------------------------------------------------------------------

@dataclass
class CompactionResult:
    view: List[Message] = field(default_factory=list)
    loop: LoopReport = field(default_factory=LoopReport)


class HistoryCompactor:
    """Applies the compaction pipeline with the thresholds from LoopConfig."""

    def __init__(self, config: Optional[LoopConfig] = None):
        self.config = config or default_loop_config

    def compact(self, messages: Iterable[Message]) -> CompactionResult:
        cfg = self.config
        collapsed = collapse_system_messages(messages)
        view = deduplicate_repeats(collapsed, cfg.max_duplicates, cfg.recent_window)
        view = deduplicate_tool_results(
            view, cfg.tool_result_window, cfg.write_suppress_turns, cfg.read_suppress_turns,
        )
        loop = detect_repetition_loop(collapsed, cfg.loop_threshold, cfg.loop_window)
        view = compact_if_oversized(
            view, cfg.max_history_length, cfg.recent_tail,
            cfg.max_milestones, cfg.max_tool_call_turns, config=cfg,
        )
        view = repair_tool_pairing(view)
        return CompactionResult(view=view, loop=loop)
