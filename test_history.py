"""Tests for history compaction and repetition-loop detection."""

from agent.completion import COMPLETION_SIGNALS, classify_tool_result
from agent.history import (
    HistoryCompactor, collapse_system_messages, compact_if_oversized, content_hash,
    deduplicate_repeats, deduplicate_tool_results, detect_repetition_loop,
    normalize_content, repair_tool_pairing,
)
from agent.messages import Role, assistant_message, system_message, tool_result_message, user_message
from agent.prompts import SYSTEM_PROMPT
from config import LoopConfig

from conftest import tool_call


def read_turn(call_id, path, body):
    return [
        assistant_message("", [tool_call(call_id, "read_files", files=[path])]),
        tool_result_message(call_id, "read_files", f"=== {path} ===\n{body}"),
    ]


def write_turn(call_id, path, content):
    return [
        assistant_message("", [tool_call(call_id, "write_files", files=[{"path": path, "content": content}])]),
        tool_result_message(call_id, "write_files", f"Successfully wrote 1 file(s): {path}"),
    ]


# ------------------------------------------------------------------
# Hashing
# ------------------------------------------------------------------

def test_normalize_elides_timestamps_and_durations():
    a = "Build finished at 2024-05-01T10:22:33Z in 12.5s"
    b = "build   finished at 2025-01-09T08:00:01Z in 3s"
    assert normalize_content(a) == normalize_content(b)
    assert content_hash("Done at 10:22") == content_hash("done at 11:45")


# ------------------------------------------------------------------
# System messages
# ------------------------------------------------------------------

def test_collapse_keeps_one_canonical_system_message_first():
    messages = [
        user_message("first"),
        system_message(SYSTEM_PROMPT),
        assistant_message("one"),
        system_message("stale instructions"),
        system_message(SYSTEM_PROMPT),
        user_message("second"),
    ]
    collapsed = collapse_system_messages(messages)
    assert [m.role for m in collapsed].count(Role.SYSTEM) == 1
    assert collapsed[0].role == Role.SYSTEM
    assert [m.content for m in collapsed[1:]] == ["first", "one", "second"]


# ------------------------------------------------------------------
# De-duplication
# ------------------------------------------------------------------

def test_deduplicate_repeats_caps_copies_in_window():
    messages = [system_message(SYSTEM_PROMPT)] + [user_message("are you done?") for _ in range(6)]
    kept = deduplicate_repeats(messages, max_duplicates=3, recent_window=10)
    assert [m.role for m in kept].count(Role.USER) == 3


def test_deduplicate_repeats_drops_results_of_dropped_assistant():
    messages = []
    for i in range(4):
        messages.append(assistant_message("checking", [tool_call(f"c{i}", "run_command", command="ls")]))
        messages.append(tool_result_message(f"c{i}", "run_command", f"listing {i}"))
    kept = deduplicate_repeats(messages, max_duplicates=3, recent_window=10)
    assert [m.tool_call_id for m in kept if m.role == Role.TOOL_RESULT] == ["c0", "c1", "c2"]


def test_deduplicate_tool_results_drops_echoed_reads():
    messages = [user_message("fix the header")]
    messages += read_turn("c1", "app/page.tsx", "<h1>hi</h1>")
    messages += read_turn("c2", "app/page.tsx", "<h1>hi</h1>")
    kept = deduplicate_tool_results(messages)
    results = [m for m in kept if m.role == Role.TOOL_RESULT]
    assert [m.tool_call_id for m in results] == ["c1"]


def test_deduplicate_tool_results_keeps_changed_reads():
    messages = read_turn("c1", "a.ts", "v1") + read_turn("c2", "a.ts", "v2")
    kept = deduplicate_tool_results(messages)
    assert len([m for m in kept if m.role == Role.TOOL_RESULT]) == 2


def test_repeated_write_success_keeps_the_earliest():
    messages = write_turn("c1", "a.ts", "x") + read_turn("r1", "b.ts", "b")
    messages += write_turn("c2", "a.ts", "x")
    kept = deduplicate_tool_results(messages, window=1)
    results = [m.tool_call_id for m in kept if m.role == Role.TOOL_RESULT]
    assert results == ["c1", "r1"]


def test_write_success_with_new_content_is_kept():
    messages = write_turn("c1", "a.ts", "x") + write_turn("c2", "a.ts", "y")
    kept = deduplicate_tool_results(messages)
    assert [m.tool_call_id for m in kept if m.role == Role.TOOL_RESULT] == ["c1", "c2"]


# ------------------------------------------------------------------
# Loop detection
# ------------------------------------------------------------------

def test_repeated_user_message_is_a_loop():
    messages = [system_message(SYSTEM_PROMPT)] + [user_message("make it blue") for _ in range(5)]
    report = detect_repetition_loop(messages, threshold=3)
    assert report.detected
    assert report.terminal
    assert report.group == "user"
    assert report.run_length == 5


def test_no_loop_below_threshold():
    messages = [user_message("a"), user_message("b"), user_message("b")]
    assert not detect_repetition_loop(messages, threshold=3).detected


def test_repeated_tool_calls_are_a_loop():
    messages = [user_message("show me the page")]
    for i in range(4):
        messages += read_turn(f"c{i}", "app/page.tsx", "same")
    report = detect_repetition_loop(messages, threshold=3)
    assert report.detected
    assert report.terminal


def test_independent_progress_makes_loop_non_terminal():
    messages = [user_message("ship it") for _ in range(3)]
    messages += write_turn("w1", "a.ts", "x")
    report = detect_repetition_loop(messages, threshold=3)
    # user group loops, but a write succeeded inside the window
    assert report.detected
    assert not report.terminal


def test_repeated_command_success_is_not_progress():
    messages = [user_message("check")]
    for i in range(4):
        messages.append(assistant_message("", [tool_call(f"c{i}", "run_command", command="ls")]))
        messages.append(tool_result_message(f"c{i}", "run_command", "Command succeeded (exit code 0)\napp"))
    report = detect_repetition_loop(messages, threshold=3)
    assert report.detected
    assert report.terminal


# ------------------------------------------------------------------
# Compaction
# ------------------------------------------------------------------

def long_log(turns):
    messages = [system_message(SYSTEM_PROMPT), user_message("build the dashboard page with charts")]
    for i in range(turns):
        if i % 50 == 0:
            messages += write_turn(f"w{i}", f"app/page{i}.tsx", f"page {i}")
        else:
            messages += read_turn(f"r{i}", f"lib/file{i}.ts", f"export const v{i} = {i};")
        if i % 100 == 0:
            messages.append(system_message("old system prompt copy"))
    return messages


def test_compaction_is_bounded_regardless_of_input_size():
    for turns in (30, 200, 500):
        view = compact_if_oversized(long_log(turns), max_length=25, config=LoopConfig())
        milestones = [
            m for m in view
            if m.role == Role.TOOL_RESULT and classify_tool_result(m) in COMPLETION_SIGNALS
        ]
        assert view[0].role == Role.SYSTEM
        assert view[0].content == SYSTEM_PROMPT
        assert len(view) <= 25 + len(milestones)


def test_compaction_adds_summary_note_and_keeps_tail():
    messages = long_log(100)
    view = compact_if_oversized(messages, max_length=25, recent_tail=12, config=LoopConfig())
    assert view[1].role == Role.USER
    assert view[1].content.startswith("[Summary of ")
    assert view[-1] is messages[-1]


def test_small_log_is_not_compacted():
    messages = [system_message(SYSTEM_PROMPT), user_message("hi"), assistant_message("hello")]
    assert compact_if_oversized(messages, max_length=25) == messages


# ------------------------------------------------------------------
# Tool-call pairing
# ------------------------------------------------------------------

def test_repair_strips_unanswered_calls_and_orphan_results():
    messages = [
        user_message("go"),
        assistant_message("working", [tool_call("a", "run_command", command="ls"),
                                      tool_call("b", "run_command", command="pwd")]),
        tool_result_message("a", "run_command", "ok"),
        tool_result_message("zzz", "run_command", "orphan"),
        assistant_message("", [tool_call("c", "run_command", command="whoami")]),
        user_message("next"),
    ]
    repaired = repair_tool_pairing(messages)
    assert [m.role for m in repaired] == [Role.USER, Role.ASSISTANT, Role.TOOL_RESULT, Role.USER]
    assert [c.id for c in repaired[1].requested_tool_calls] == ["a"]
    # the stored message is left untouched
    assert len(messages[1].requested_tool_calls) == 2


def test_compactor_view_is_well_paired():
    messages = long_log(120)
    # a trailing call whose result is not in yet
    messages.append(assistant_message("", [tool_call("pending", "read_files", files=["x.ts"])]))
    result = HistoryCompactor(LoopConfig(max_history_length=25)).compact(messages)

    answered_by = {}
    current_ids = set()
    for msg in result.view:
        if msg.role == Role.ASSISTANT:
            current_ids = {c.id for c in msg.requested_tool_calls}
            for call_id in current_ids:
                answered_by[call_id] = False
        elif msg.role == Role.TOOL_RESULT:
            assert msg.tool_call_id in current_ids
            answered_by[msg.tool_call_id] = True
    assert all(answered_by.values())
    assert "pending" not in answered_by
