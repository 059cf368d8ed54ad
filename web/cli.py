"""
CLI entry point for the Sandbox Codex HTTP server.

Run:  python -m web [--port 8765] [--dir /path/to/project] [--ssh user@host]
"""

import argparse
import logging
import os

import uvicorn

import web.state as _state
from backend import LocalBackend, SSHBackend, SandboxError
from bedrock_service import BedrockService
from config import app_config, model_config
from sessions import open_checkpoint_store


def main():
    parser = argparse.ArgumentParser(description="Sandbox Codex - agent HTTP server")
    parser.add_argument("--port", type=int, default=8765, help="Server port (default: 8765)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--dir", default=app_config.working_directory, help="Sandbox working directory")
    parser.add_argument("--checkpoints", default=app_config.checkpoint_dir, help="Checkpoint directory")
    parser.add_argument("--model", default=model_config.model_id, help="Bedrock model id")
    parser.add_argument("--ssh", default=None, help="SSH remote sandbox: user@host (e.g. deploy@192.168.1.50)")
    parser.add_argument("--key", default=None, help="SSH private key path (default: ~/.ssh/id_rsa)")
    parser.add_argument("--ssh-port", type=int, default=22, help="SSH port (default: 22)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, app_config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.ssh:
        parts = args.ssh.split("@", 1)
        if len(parts) == 2:
            user, host = parts
        else:
            user, host = None, parts[0]
        remote_dir = args.dir if args.dir != "." else "/home/" + (user or "root")

        try:
            backend = SSHBackend(
                host=host,
                working_directory=remote_dir,
                user=user,
                key_path=args.key,
                port=args.ssh_port,
            )
        except SandboxError as e:
            print(f"\n  SSH connection failed: {e}\n")
            raise SystemExit(1)
        print(f"\n  Sandbox Codex (SSH sandbox)")
        print(f"  http://{args.host}:{args.port}")
        print(f"  Remote: {args.ssh}:{remote_dir}\n")
    else:
        working_directory = os.path.abspath(os.path.expanduser(args.dir))
        if not os.path.isdir(working_directory):
            print(f"\n  Error: directory not found: {working_directory}\n")
            raise SystemExit(1)
        backend = LocalBackend(working_directory)
        print(f"\n  Sandbox Codex")
        print(f"  http://{args.host}:{args.port}")
        print(f"  Working directory: {working_directory}\n")

    from web import app
    try:
        with open_checkpoint_store(os.path.expanduser(args.checkpoints)) as store:
            _state.configure(backend, store, BedrockService(model_id=args.model))
            try:
                uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
            finally:
                _state.release()
    finally:
        backend.close()
