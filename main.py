"""
Sandbox Codex - an autonomous coding agent engine powered by Amazon Bedrock.
One-shot terminal runner: sends a request to the agent loop and prints the
events and the final summary with Rich.
"""

import asyncio
import argparse
import json
import logging
import os
import sys

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel

from agent import AgentEvent
from agent.core import AgentLoop, AgentRequest, ModelInvocationError
from backend import LocalBackend, SSHBackend, SandboxError
from bedrock_service import BedrockService, BedrockError
from config import app_config, get_credentials_info, get_model_name, loop_config, model_config
from sessions import open_checkpoint_store

# Log to a file so it doesn't interleave with the event stream
logging.basicConfig(
    filename="sandbox_codex.log",
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()

TOOL_ICONS = {
    "run_command": "▶ ",
    "write_files": "✏️ ",
    "read_files":  "\U0001f4c4 ",
}


def _describe_call(name: str, arguments) -> str:
    if isinstance(arguments, dict):
        if "command" in arguments:
            return str(arguments["command"])
        files = arguments.get("files")
        if isinstance(files, list):
            paths = [f.get("path", "?") if isinstance(f, dict) else str(f) for f in files]
            return ", ".join(paths)
    return json.dumps(arguments, ensure_ascii=False)[:80]


async def print_event(event: AgentEvent) -> None:
    data = event.data or {}
    if event.type == "turn_start":
        console.print(f"[#6e7681]── {rich_escape(event.content)}[/#6e7681]")
    elif event.type == "tool_call":
        icon = TOOL_ICONS.get(event.content, "")
        desc = _describe_call(event.content, data.get("arguments"))
        console.print(f"   {icon}[bold]{rich_escape(event.content)}[/bold] {rich_escape(desc)}")
    elif event.type == "tool_result":
        first_line = event.content.split("\n", 1)[0][:160]
        color = "#3fb950" if data.get("success") else "#f85149"
        console.print(f"     [{color}]→ {rich_escape(first_line)}[/{color}]")
    elif event.type == "loop_detected":
        console.print(f"   [#e3b341]⚠ Repetition: {rich_escape(event.content)}[/#e3b341]")
    elif event.type == "force_summary":
        console.print("   [#58a6ff]↻ Asking for the final summary[/#58a6ff]")
    elif event.type == "truncated":
        console.print(f"   [bold #f85149]⚠ {rich_escape(event.content)}[/bold #f85149]")


def _build_backend(args):
    if args.ssh:
        user, _, host = args.ssh.rpartition("@")
        return SSHBackend(
            host=host,
            working_directory=args.directory,
            user=user or None,
            key_path=args.key,
            port=args.ssh_port,
        )
    working_dir = os.path.abspath(os.path.expanduser(args.directory))
    if not os.path.isdir(working_dir):
        raise SandboxError(f"{working_dir} is not a directory")
    return LocalBackend(working_dir)


async def run(args) -> int:
    backend = _build_backend(args)
    try:
        model = BedrockService(model_id=args.model)
        with open_checkpoint_store(args.checkpoints) as store:
            loop = AgentLoop(model, backend, store, loop_config, on_event=print_event)
            result = await loop.handle(AgentRequest(
                query=args.query,
                thread_id=args.thread,
                session_id=args.session,
            ))
    finally:
        backend.close()

    border = {"completed": "#3fb950", "stopped": "#e3b341"}.get(result.status, "#f85149")
    console.print(Panel(
        rich_escape(result.summary_text or "(no summary)"),
        title=f"{result.status} · {result.turns_taken} turn(s)",
        border_style=border,
    ))
    if result.written_files:
        console.print(f"[#8b949e]Files: {rich_escape(', '.join(sorted(result.written_files)))}[/#8b949e]")
    console.print(f"[#6e7681]thread: {rich_escape(result.thread_id)}[/#6e7681]")
    return 0 if result.status != "truncated" else 2


def main():
    parser = argparse.ArgumentParser(
        description="Sandbox Codex - Coding Agent Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py "add a contact form"                 Run in current directory
  python main.py -d ~/my-app "write hello world on home page"
  python main.py --thread thread-1 "continue"         Resume a thread
  python -m web --port 8765                           Serve the HTTP API instead
        """,
    )
    parser.add_argument("query", nargs="?", default=None, help="The request for the agent")
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Check the Bedrock connection and exit",
    )
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Sandbox working directory (default: current directory)",
    )
    parser.add_argument("--thread", default=None, help="Thread id to resume")
    parser.add_argument("--session", default=None, help="Session id (used to derive the thread id)")
    parser.add_argument("--model", default=model_config.model_id, help="Bedrock model id")
    parser.add_argument("--checkpoints", default=app_config.checkpoint_dir, help="Checkpoint directory")
    parser.add_argument("--ssh", default=None, help="SSH remote sandbox: user@host")
    parser.add_argument("--key", default=None, help="SSH private key path")
    parser.add_argument("--ssh-port", type=int, default=22, help="SSH port (default: 22)")

    args = parser.parse_args()
    console.print(f"[bold]Sandbox Codex[/bold] [#6e7681]· {rich_escape(get_model_name(args.model))}[/#6e7681]")
    console.print(f"[#6e7681]{rich_escape(get_credentials_info())}[/#6e7681]")

    if args.test_connection:
        try:
            ok, message = BedrockService(model_id=args.model).test_connection()
        except BedrockError as e:
            ok, message = False, str(e)
        color = "#3fb950" if ok else "#f85149"
        console.print(f"[{color}]{rich_escape(message)}[/{color}]")
        sys.exit(0 if ok else 1)
    if not args.query:
        parser.error("a query is required")

    try:
        code = asyncio.run(run(args))
    except (SandboxError, BedrockError) as e:
        console.print(f"[bold #f85149]✗ {rich_escape(str(e))}[/bold #f85149]")
        sys.exit(1)
    except ModelInvocationError as e:
        logger.error(f"Invocation aborted: {e}")
        console.print(f"[bold #f85149]✗ {rich_escape(str(e))}[/bold #f85149]")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
