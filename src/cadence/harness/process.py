from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from cadence.harness.args import contains_flag, split_args
from cadence.harness.base import Harness, HarnessError, HarnessProcessError, HarnessResult

OutputHook = Callable[[str], None]

PROMPT_PLACEHOLDER = "{prompt}"
HARNESS_OUTPUT_LIMIT = 8 * 1024
READ_CHUNK_SIZE = 64 * 1024
LINE_LIMIT = 1024 * 1024


class TailBuffer:
    """Keeps only the last ``limit`` characters written to it."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._parts: list[str] = []
        self._size = 0

    def write(self, text: str) -> None:
        if self.limit <= 0 or not text:
            return
        self._parts.append(text)
        self._size += len(text)
        if self._size > self.limit * 2:
            self._compact()

    def _compact(self) -> None:
        joined = "".join(self._parts)[-self.limit :]
        self._parts = [joined]
        self._size = len(joined)

    def getvalue(self) -> str:
        self._compact()
        return self._parts[0] if self._parts else ""


def _extract_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    message = event.get("message")
    if content is None and isinstance(message, dict):
        content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    result = event.get("result")
    if isinstance(result, str):
        return result
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    return ""


def render_output_line(line: str) -> str:
    """Turn one line of stream-json output into its text; other lines pass through."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return line
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return line
    if not isinstance(event, dict):
        return line
    return _extract_text(event)


async def terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await asyncio.shield(process.wait())


async def pump_output(
    process: asyncio.subprocess.Process,
    buffer: TailBuffer,
    on_line: OutputHook | None = None,
    *,
    render: Callable[[str], str] | None = None,
) -> int:
    """Stream ``process`` stdout line by line into ``buffer`` and return its exit code.

    Output is read in chunks so lines of any length are accepted; a line longer
    than ``LINE_LIMIT`` bytes keeps only its tail. The process is killed if the
    caller is cancelled while waiting.
    """
    if process.stdout is None:
        return await process.wait()

    def _deliver(raw_line: bytes) -> None:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if render is not None:
            line = render(line)
            if not line:
                return
        buffer.write(line + "\n")
        if on_line:
            on_line(line)

    pending = b""
    try:
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            *complete, pending = (pending + chunk).split(b"\n")
            for raw_line in complete:
                _deliver(raw_line)
            pending = pending[-LINE_LIMIT:]
        if pending:
            _deliver(pending)
        return await process.wait()
    except BaseException:
        await terminate(process)
        raise


class CommandHarness(Harness):
    """Runs a coding-agent CLI as a subprocess, feeding the prompt on stdin."""

    def __init__(
        self,
        command: str = "claude",
        *,
        working_directory: Path | None = None,
        yolo: bool = False,
        output_hook: OutputHook | None = None,
        output_limit: int = HARNESS_OUTPUT_LIMIT,
    ) -> None:
        self.command = command
        self.working_directory = working_directory
        self.yolo = yolo
        self.output_hook = output_hook
        self.output_limit = output_limit

    @property
    def is_claude(self) -> bool:
        return Path(self.command).name == "claude"

    def build_command(self, prompt: str, *, model: str, args: str) -> tuple[list[str], str | None]:
        """Return the argv and the text to send on stdin (``None`` when inlined)."""
        argv = [self.command]
        if self.is_claude:
            argv.append("-p")
            if self.yolo:
                argv.append("--dangerously-skip-permissions")
            argv.append("--output-format=stream-json")
            if model and not contains_flag(args, "--model"):
                argv.extend(["--model", model])
            argv.append("--verbose")

        extra = split_args(args)
        if any(PROMPT_PLACEHOLDER in part for part in extra):
            argv.extend(part.replace(PROMPT_PLACEHOLDER, prompt) for part in extra)
            return argv, None
        argv.extend(extra)
        return argv, prompt

    async def run(
        self,
        prompt: str,
        *,
        model: str,
        args: str,
        on_output: OutputHook | None = None,
    ) -> HarnessResult:
        argv, stdin_text = self.build_command(prompt, model=model, args=args)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=os.environ.copy(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise HarnessProcessError(
                f"Harness binary not found: {self.command}",
                harness=self.command,
                retriable=False,
            ) from exc

        if process.stdout is None or process.stdin is None:
            raise HarnessProcessError(
                "Harness process did not expose its pipes.", harness=self.command, retriable=False
            )

        buffer = TailBuffer(self.output_limit)
        try:
            if stdin_text:
                process.stdin.write(stdin_text.encode("utf-8"))
                try:
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    # The harness exited before reading the prompt; its exit code reports it.
                    pass
            process.stdin.close()
        except BaseException:
            await terminate(process)
            raise

        return_code = await pump_output(
            process, buffer, on_output or self.output_hook, render=render_output_line
        )
        output = buffer.getvalue()
        if return_code != 0:
            raise HarnessError(
                f"Harness {self.command} failed with exit code {return_code}",
                harness=self.command,
                exit_code=return_code,
                output=output,
                retriable=True,
            )
        return HarnessResult(output=output)
