"""Tests for tool-result classification and the completion decision."""

from agent.completion import (
    CompletionDetector, ToolSignal, Verdict, classify_tool_result, extract_summary,
    has_completion_signal, is_terminal_response,
)
from agent.history import LoopReport, detect_repetition_loop
from agent.messages import assistant_message, system_message, tool_result_message, user_message
from agent.prompts import SYSTEM_PROMPT
from agent.state import SessionState
from config import LoopConfig

from conftest import summary_reply, tool_call


def result(content, name="write_files"):
    return tool_result_message("c1", name, content)


def test_classify_tool_result():
    assert classify_tool_result(result("Successfully wrote 2 file(s): a, b")) == ToolSignal.WRITE_SUCCESS
    assert classify_tool_result(result("No changes needed: all requested files are already up-to-date (a). Task appears to be complete.")) == ToolSignal.NO_CHANGES
    assert classify_tool_result(result("Installed zod. Verified in package.json.\nadded 1", "run_command")) == ToolSignal.INSTALL_VERIFIED
    assert classify_tool_result(result("Command succeeded (exit code 0)\nok", "run_command")) == ToolSignal.COMMAND_SUCCESS
    assert classify_tool_result(result("Error: write failed for a: disk full")) == ToolSignal.ERROR
    assert classify_tool_result(result("=== a.ts ===\nconst a = 1;", "read_files")) == ToolSignal.NEUTRAL
    assert classify_tool_result(user_message("Successfully wrote 1 file(s): a")) == ToolSignal.NEUTRAL


def test_error_output_mentioning_success_is_still_an_error():
    msg = result("Error: Command exited with code 1\n[exit code: 1]\nSuccessfully wrote nothing", "run_command")
    assert classify_tool_result(msg) == ToolSignal.ERROR


def test_extract_summary():
    assert extract_summary("<task_summary>\nAdded a header.\n</task_summary>") == "Added a header."
    assert extract_summary("intro <task_summary>Done") == "Done"
    assert extract_summary("  plain reply ") == "plain reply"


def test_is_terminal_response():
    assert is_terminal_response(summary_reply("done"))
    assert not is_terminal_response(assistant_message("still working"))
    assert not is_terminal_response(None)


def test_completion_signal_lookback():
    messages = [result("Successfully wrote 1 file(s): a")]
    messages += [result(f"=== f{i} ===\nx", "read_files") for i in range(20)]
    assert not has_completion_signal(messages, lookback=20)
    assert has_completion_signal(messages, lookback=21)


def repeated_pairs(count):
    messages = []
    for i in range(count):
        messages.append(assistant_message("", [tool_call(f"r{i}", "read_files", files=["app/page.tsx"])]))
        messages.append(tool_result_message(f"r{i}", "read_files", "=== app/page.tsx ===\nexport default Page"))
    return messages


def test_terminal_loop_after_success_forces_summary():
    messages = [
        system_message(SYSTEM_PROMPT),
        user_message("write hello world on home page"),
        assistant_message("", [tool_call("w1", "write_files", files=[{"path": "app/page.tsx", "content": "hi"}])]),
        tool_result_message("w1", "write_files", "Successfully wrote 1 file(s): app/page.tsx"),
    ] + repeated_pairs(6)
    loop = detect_repetition_loop(messages, threshold=3)
    assert loop.terminal

    detector = CompletionDetector(LoopConfig())
    verdict = detector.decide(messages[-2], SessionState(), loop, messages)
    assert verdict == Verdict.FORCE_SUMMARY


def test_terminal_loop_without_success_continues():
    messages = [system_message(SYSTEM_PROMPT), user_message("what is on the home page?")] + repeated_pairs(6)
    loop = detect_repetition_loop(messages, threshold=3)
    assert loop.terminal

    detector = CompletionDetector(LoopConfig())
    assert detector.decide(messages[-2], SessionState(), loop, messages) == Verdict.CONTINUE


def test_decision_priority():
    detector = CompletionDetector(LoopConfig())
    done = SessionState(main_task_completed=True)

    assert detector.decide(summary_reply("ok"), done, LoopReport(), []) == Verdict.STOP
    assert detector.decide(assistant_message("x"), done, LoopReport(), []) == Verdict.FORCE_SUMMARY

    pending_errors = SessionState(main_task_completed=True, has_pending_write_errors=True)
    assert detector.decide(assistant_message("x"), pending_errors, LoopReport(), []) == Verdict.CONTINUE
    assert detector.decide(None, SessionState(), LoopReport(), []) == Verdict.CONTINUE


def test_earlier_request_success_is_not_a_completion_signal():
    messages = [
        system_message(SYSTEM_PROMPT),
        user_message("write hello world on home page"),
        assistant_message("", [tool_call("w1", "write_files", files=[{"path": "app/page.tsx", "content": "hi"}])]),
        tool_result_message("w1", "write_files", "Successfully wrote 1 file(s): app/page.tsx"),
        summary_reply("Added hello world."),
        user_message("add a footer component"),
    ] + repeated_pairs(6)
    assert not has_completion_signal(messages)

    loop = detect_repetition_loop(messages, threshold=3)
    assert loop.terminal
    detector = CompletionDetector(LoopConfig())
    assert detector.decide(messages[-2], SessionState(), loop, messages) == Verdict.CONTINUE
