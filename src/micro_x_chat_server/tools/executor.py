from __future__ import annotations

import asyncio
import contextlib
import json
import os
import subprocess
from pathlib import Path
from typing import Any

from loguru import logger

from micro_x_chat_server.tool import DEFAULT_TOOL_TIMEOUT_MS, ToolDefinition, ToolOutcome

RUNTIME_COMMANDS: dict[str, list[str]] = {
    "bun": ["bun", "run"],
    "node": ["node"],
    "python": ["python3"],
    "bash": ["bash"],
    "go": ["go", "run"],
    "binary": [],
    "powershell": ["pwsh", "-File"],
}


class SubprocessToolInvoker:
    """Runs a tool script with its JSON arguments on stdin and parses JSON from stdout."""

    def __init__(self, runtime_commands: dict[str, list[str]] | None = None):
        self._runtime_commands = runtime_commands or RUNTIME_COMMANDS

    async def invoke(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        *,
        working_directory: str | None = None,
        timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS,
    ) -> ToolOutcome:
        if tool.runtime not in self._runtime_commands:
            return ToolOutcome.failed(f"Unsupported tool runtime: {tool.runtime}")
        command = [*self._runtime_commands[tool.runtime], str(Path(tool.path) / tool.script)]

        cwd = os.getcwd()
        if working_directory:
            expanded = os.path.expanduser(working_directory)
            if not os.path.isdir(expanded):
                return ToolOutcome.failed(f"Workspace path does not exist: {expanded}")
            cwd = expanded

        logger.debug(f"Executing tool {tool.name}: {' '.join(command)} (cwd={cwd})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(os.environ),
            )
        except (OSError, ValueError, subprocess.SubprocessError) as ex:
            return ToolOutcome.failed(f"Failed to execute tool: {ex}")

        payload = json.dumps(args).encode()
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            await _kill(proc)
            logger.warning(f"Tool {tool.name} timed out after {timeout_ms}ms")
            return ToolOutcome.failed(f"Tool execution timed out after {timeout_ms}ms")
        except BaseException:
            # Cancelled turns must not leave the tool running
            await _kill(proc)
            raise

        out_text = stdout.decode(errors="replace")
        if proc.returncode != 0:
            err_text = stderr.decode(errors="replace")
            logger.warning(f"Tool {tool.name} exited with code {proc.returncode}")
            return ToolOutcome.failed(err_text or f"Tool exited with code {proc.returncode}")

        try:
            return ToolOutcome.ok(json.loads(out_text))
        except json.JSONDecodeError:
            return ToolOutcome.failed(f"Failed to parse tool output: {out_text[:200]}")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        # The process may exit between the check and the signal
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=5)
