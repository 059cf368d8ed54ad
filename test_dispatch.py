"""Tests for tool-call repair, the three tools and batch dispatch."""

import asyncio

from agent.messages import ToolCall
from agent.state import SessionState
from backend import SandboxError
from tools import (
    InvalidCall, ReadFiles, RunCommand, ToolDispatcher, WriteFiles,
    install_targets, parse_tool_call,
)
from tools.calls import FileWrite
from tools.file_ops import write_files

from conftest import FakeBackend, package_json, tool_call


def dispatch(backend, calls, state=None):
    dispatcher = ToolDispatcher(backend)
    return asyncio.run(dispatcher.dispatch_batch(calls, state or SessionState()))


# ------------------------------------------------------------------
# Argument repair
# ------------------------------------------------------------------

def test_read_files_accepts_paths_alias():
    op = parse_tool_call(tool_call("c1", "read_files", paths=["a.ts"]))
    assert op == ReadFiles(call_id="c1", paths=("a.ts",))


def test_read_files_paths_alias_runs_like_files():
    backend = FakeBackend({"a.ts": "export const a = 1;"})
    batch = dispatch(backend, [tool_call("c1", "read_files", paths=["a.ts"])])
    assert batch.results[0].success
    assert batch.messages[0].content == "=== a.ts ===\nexport const a = 1;"
    assert batch.state.last_read_snapshot == batch.messages[0].content


def test_read_files_repairs_bare_path_and_json_string():
    assert parse_tool_call(tool_call("c1", "read_files", path="app/page.tsx")).paths == ("app/page.tsx",)
    op = parse_tool_call(tool_call("c2", "read_files", files='["a.ts", "b.ts"]'))
    assert op.paths == ("a.ts", "b.ts")


def test_write_files_repairs_stringified_array():
    call = tool_call("c1", "write_files", files='[{"path": "x.ts", "content": "y"}]')
    op = parse_tool_call(call)
    assert isinstance(op, WriteFiles)
    assert op.files == (FileWrite("x.ts", "y"),)


def test_write_files_repairs_top_level_path_and_content():
    op = parse_tool_call(tool_call("c1", "write_files", path="a.ts", content="1"))
    assert op.files == (FileWrite("a.ts", "1"),)


def test_arguments_as_json_string():
    op = parse_tool_call(ToolCall(id="c1", name="run_command", arguments='{"command": "ls -la"}'))
    assert op == RunCommand(call_id="c1", command="ls -la")


def test_legacy_tool_names_are_normalized():
    op = parse_tool_call(tool_call("c1", "createOrUpdateFiles", files=[{"path": "a", "content": "b"}]))
    assert isinstance(op, WriteFiles)
    assert isinstance(parse_tool_call(tool_call("c2", "runInTerminal", command="ls")), RunCommand)


def test_unrepairable_arguments_become_invalid_call():
    op = parse_tool_call(tool_call("c1", "write_files", files=[{"path": "a.ts"}]))
    assert isinstance(op, InvalidCall)
    assert "content" in op.reason
    assert '"files"' in op.hint


def test_unknown_tool_reports_available_tools():
    backend = FakeBackend()
    batch = dispatch(backend, [tool_call("c1", "delete_everything")])
    text = batch.messages[0].content
    assert text.startswith("Error: Invalid arguments for delete_everything: unknown tool")
    assert "read_files" in text and "write_files" in text
    assert batch.state == SessionState()


# ------------------------------------------------------------------
# write_files
# ------------------------------------------------------------------

def test_identical_write_is_skipped():
    backend = FakeBackend()
    call = tool_call("c1", "write_files", files=[{"path": "app/page.tsx", "content": "hello"}])
    first = dispatch(backend, [call])
    assert first.messages[0].content == "Successfully wrote 1 file(s): app/page.tsx"

    again = tool_call("c2", "write_files", files=[{"path": "app/page.tsx", "content": "hello"}])
    second = dispatch(backend, [again], first.state)
    assert backend.write_count == 1
    assert second.messages[0].content.startswith("No changes needed")
    assert "Task appears to be complete" in second.messages[0].content
    assert second.state.written_files == {"app/page.tsx": "hello"}
    assert second.state.main_task_completed


def test_write_skips_unchanged_subset():
    backend = FakeBackend()
    state = SessionState(written_files={"a.ts": "1"})
    op = WriteFiles(call_id="c1", files=(FileWrite("a.ts", "1"), FileWrite("b.ts", "2")))
    result = write_files(op, state, backend)
    assert result.success
    assert result.output == "Successfully wrote 1 file(s): b.ts\nUnchanged: a.ts"
    assert backend.files == {"b.ts": "2"}


def test_whitespace_insensitive_match_is_opt_in():
    state = SessionState(written_files={"a.ts": "const a = 1;\n"})
    op = WriteFiles(call_id="c1", files=(FileWrite("a.ts", "const a = 1;  "),))

    strict = write_files(op, state, FakeBackend())
    assert strict.output.startswith("Successfully wrote")

    lenient = write_files(op, state, FakeBackend(), whitespace_insensitive=True)
    assert lenient.output.startswith("No changes needed")


def test_last_entry_per_path_wins():
    backend = FakeBackend()
    op = WriteFiles(call_id="c1", files=(FileWrite("a.ts", "old"), FileWrite("a.ts", "new")))
    result = write_files(op, SessionState(), backend)
    assert backend.files == {"a.ts": "new"}
    assert result.delta.written == {"a.ts": "new"}


def test_partial_write_failure_reports_each_file():
    backend = FakeBackend()
    backend.fail_writes["b.ts"] = SandboxError("disk full")
    state = SessionState(written_files={"b.ts": "stale"})
    call = tool_call("c1", "write_files", files=[
        {"path": "a.ts", "content": "1"},
        {"path": "b.ts", "content": "2"},
        {"path": "c.ts", "content": "3"},
    ])
    batch = dispatch(backend, [call], state)

    result = batch.results[0]
    assert not result.success
    text = batch.messages[0].content
    assert text.startswith("Error: write failed for b.ts: disk full")
    assert "Wrote 1 of 3 file(s) before the failure." in text
    assert "Unknown state: b.ts" in text
    assert "Not attempted: c.ts" in text

    assert batch.state.written_files == {"a.ts": "1"}
    assert batch.state.has_pending_write_errors
    assert not batch.state.main_task_completed


# ------------------------------------------------------------------
# read_files
# ------------------------------------------------------------------

def test_read_reports_missing_files_inline():
    backend = FakeBackend({"a.ts": "A"})
    batch = dispatch(backend, [tool_call("c1", "read_files", files=["a.ts", "missing.ts"])])
    assert batch.results[0].success
    assert batch.messages[0].content == (
        "=== a.ts ===\nA\n\n=== missing.ts ===\nError: file not found"
    )


def test_read_fails_when_nothing_readable():
    batch = dispatch(FakeBackend(), [tool_call("c1", "read_files", files=["nope.ts"])])
    assert not batch.results[0].success
    assert batch.messages[0].content.startswith("Error: could not read nope.ts")
    assert batch.state.last_read_snapshot is None


# ------------------------------------------------------------------
# run_command
# ------------------------------------------------------------------

def test_install_targets():
    assert install_targets("npm install date-fns --yes") == ["date-fns"]
    assert install_targets("npm i -D @types/node@20 lodash@^4 && echo done") == ["@types/node", "lodash"]
    assert install_targets("pnpm add zod") == ["zod"]
    assert install_targets("yarn add 'react-icons'") == ["react-icons"]
    assert install_targets("npm install") == []
    assert install_targets("ls -la") == []


def test_install_verified_against_manifest():
    backend = FakeBackend({"package.json": package_json("next")})
    command = "npm install date-fns --yes"
    backend.command_hooks[command] = lambda b: b.files.update({"package.json": package_json("next", "date-fns")})
    backend.commands[command] = ("added 1 package", "", 0)

    batch = dispatch(backend, [tool_call("c1", "run_command", command=command)])
    assert batch.results[0].success
    assert batch.messages[0].content.startswith("Installed date-fns. Verified in package.json.")


def test_install_missing_from_manifest_fails():
    backend = FakeBackend({"package.json": package_json("next")})
    batch = dispatch(backend, [tool_call("c1", "run_command", command="npm install date-fns")])
    assert not batch.results[0].success
    assert "date-fns not found in package.json" in batch.messages[0].content


def test_command_exit_code_is_reported():
    backend = FakeBackend()
    backend.commands["false"] = ("", "boom", 1)
    batch = dispatch(backend, [tool_call("c1", "run_command", command="false")])
    text = batch.messages[0].content
    assert text.startswith("Error: Command exited with code 1")
    assert "[exit code: 1]" in text
    assert "[stderr]\nboom" in text


def test_plain_command_success():
    backend = FakeBackend()
    backend.commands["ls"] = ("app\npackage.json", "", 0)
    batch = dispatch(backend, [tool_call("c1", "run_command", command="ls")])
    assert batch.messages[0].content == "Command succeeded (exit code 0)\napp\npackage.json"


def test_command_backend_exception_becomes_result():
    class Broken(FakeBackend):
        def run_command(self, command, timeout=120):
            raise SandboxError("connection lost")

    batch = dispatch(Broken(), [tool_call("c1", "run_command", command="ls")])
    assert batch.messages[0].content == "Error: Command could not be run: connection lost"


# ------------------------------------------------------------------
# Batches
# ------------------------------------------------------------------

def test_batch_results_keep_request_order():
    backend = FakeBackend({"a.ts": "A", "b.ts": "B", "c.ts": "C"})
    calls = [tool_call(f"c{i}", "read_files", files=[name]) for i, name in enumerate(["c.ts", "a.ts", "b.ts"])]
    batch = dispatch(backend, calls)
    assert [m.tool_call_id for m in batch.messages] == ["c0", "c1", "c2"]
    assert [m.content.split("\n")[0] for m in batch.messages] == ["=== c.ts ===", "=== a.ts ===", "=== b.ts ==="]


def test_read_after_write_sees_the_write():
    backend = FakeBackend({"a.ts": "old"})
    calls = [
        tool_call("c1", "write_files", files=[{"path": "a.ts", "content": "new"}]),
        tool_call("c2", "read_files", files=["a.ts"]),
    ]
    batch = dispatch(backend, calls)
    assert batch.messages[1].content == "=== a.ts ===\nnew"
    assert batch.state.written_files == {"a.ts": "new"}


def test_later_write_in_batch_wins():
    backend = FakeBackend()
    calls = [
        tool_call("c1", "write_files", files=[{"path": "a.ts", "content": "1"}]),
        tool_call("c2", "write_files", files=[{"path": "a.ts", "content": "2"}]),
    ]
    batch = dispatch(backend, calls)
    assert backend.files["a.ts"] == "2"
    assert batch.state.written_files == {"a.ts": "2"}


def test_segments_group_consecutive_reads():
    ops = [
        ReadFiles("c1", ("a",)), ReadFiles("c2", ("b",)),
        RunCommand("c3", "ls"),
        ReadFiles("c4", ("c",)),
    ]
    assert ToolDispatcher._segments(ops) == [[0, 1], [2], [3]]
