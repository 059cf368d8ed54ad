"""Command tool: run_command with package install verification."""

import json
import re
import logging
from typing import List, Optional

from backend import Backend
from tools._common import ToolResult, COMMAND_SUCCESS_PHRASE, INSTALL_VERIFIED_PHRASE
from tools.calls import RunCommand

logger = logging.getLogger(__name__)

_INSTALL_PATTERN = re.compile(
    r"^\s*(?:npm\s+(?:install|i|add)|pnpm\s+(?:add|install|i)|yarn\s+add)\s+(?P<args>.+)$"
)
_SHELL_SEPARATORS = {"&&", "||", ";", "|"}
_DEPENDENCY_SECTIONS = ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies")
_MAX_OUTPUT_CHARS = 20000


def _strip_version(token: str) -> str:
    """'@scope/pkg@^1.2' -> '@scope/pkg', 'pkg@latest' -> 'pkg'."""
    if token.startswith("@"):
        return "@" + token[1:].split("@", 1)[0]
    return token.split("@", 1)[0]


def install_targets(command: str) -> List[str]:
    """Package names a package-install command should add to the manifest."""
    match = _INSTALL_PATTERN.match(command)
    if not match:
        return []
    packages: List[str] = []
    for token in match.group("args").split():
        if token in _SHELL_SEPARATORS:
            break
        if token.startswith("-"):
            continue
        name = _strip_version(token.strip("'\""))
        if name and name != "@":
            packages.append(name)
    return packages


def _manifest_has(manifest_text: str, package: str) -> bool:
    try:
        manifest = json.loads(manifest_text)
    except json.JSONDecodeError:
        return f'"{package}"' in manifest_text
    if not isinstance(manifest, dict):
        return False
    return any(package in (manifest.get(section) or {}) for section in _DEPENDENCY_SECTIONS)


def _truncate(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return (
            "\n".join(lines_out[:100])
            + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n"
            + "\n".join(lines_out[-50:])
        )
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


def verify_install(packages: List[str], backend: Backend, manifest: str) -> Optional[str]:
    """Return an error message unless every package is listed in the manifest."""
    try:
        manifest_text = backend.read_file(manifest)
    except Exception as e:
        return f"install reported success but {manifest} could not be read: {e}"
    missing = [p for p in packages if not _manifest_has(manifest_text, p)]
    if missing:
        return f"install reported success but {', '.join(missing)} not found in {manifest}"
    return None


def run_command(op: RunCommand, backend: Backend, timeout: int = 120,
                manifest: str = "package.json") -> ToolResult:
    """Execute a shell command in the sandbox. Never raises."""
    try:
        stdout, stderr, rc = backend.run_command(op.command, timeout=timeout)
    except Exception as e:
        logger.warning(f"run_command raised for {op.command!r}: {e}")
        return ToolResult(success=False, output="", error=f"Command could not be run: {e}")

    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    output = _truncate("\n".join(parts) if parts else "(no output)")

    if rc != 0:
        return ToolResult(
            success=False,
            output=f"[exit code: {rc}]\n{output}",
            error=f"Command exited with code {rc}",
        )

    packages = install_targets(op.command)
    if packages:
        problem = verify_install(packages, backend, manifest)
        if problem:
            logger.warning(f"Install not verified: {problem}")
            return ToolResult(success=False, output=output, error=problem)
        return ToolResult(
            success=True,
            output=f"Installed {', '.join(packages)}. {INSTALL_VERIFIED_PHRASE} {manifest}.\n{output}",
        )

    return ToolResult(success=True, output=f"{COMMAND_SUCCESS_PHRASE} (exit code 0)\n{output}")
