"""Claude CLI backend: one ``claude -p`` subprocess per generation.

The prompt goes in on stdin and the CLI answers with a single JSON envelope::

    {"type": "result", "is_error": false, "result": "...",
     "usage": {"input_tokens": 812, "output_tokens": 1490}}

Cancelling the awaiting task kills the process, so this backend is
interruptible.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from pathlib import Path
from typing import List, Optional

from storyflow.backends.base import BackendResult, BackendUsage, GeneratorBackend
from storyflow.generation.errors import BackendUnavailableError, MalformedPayloadError
from storyflow.utils.logging_config import get_logger

logger = get_logger("storyflow.backends.cli")

_EXCERPT_CHARS = 500


def cli_history_path() -> Path:
    return Path.home() / ".claude" / "history.jsonl"


class CliBackend(GeneratorBackend):
    name = "claude-cli"
    interruptible = True

    def __init__(self, command: str = "claude", model: str = "sonnet"):
        self.command = command
        self.model = model

    def build_args(self, system_prompt: str) -> List[str]:
        args = ["-p", "--output-format", "json", "--model", self.model]
        if system_prompt:
            args += ["--append-system-prompt", system_prompt]
        return args

    async def is_available(self) -> bool:
        # An authenticated CLI leaves a history file behind after first use
        return shutil.which(self.command) is not None and cli_history_path().exists()

    async def invoke(self, system_prompt: str, user_prompt: str) -> BackendResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.build_args(system_prompt),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(os.environ),
            )
        except OSError as e:
            raise BackendUnavailableError(
                f"Failed to start Claude CLI: {e}. Make sure '{self.command}' is in your PATH.",
                detail=str(e),
            ) from e

        try:
            stdout, stderr = await proc.communicate(user_prompt.encode("utf-8"))
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            raise BackendUnavailableError(
                f"Claude CLI exited with code {proc.returncode}",
                detail=err.strip() or out[:_EXCERPT_CHARS],
            )
        return self.parse_envelope(out)

    @staticmethod
    def parse_envelope(raw: str) -> BackendResult:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedPayloadError(
                "Failed to parse Claude CLI response",
                detail=raw[:_EXCERPT_CHARS],
            ) from e

        if not isinstance(payload, dict):
            raise MalformedPayloadError("Claude CLI response is not a JSON object", detail=raw[:_EXCERPT_CHARS])
        if payload.get("is_error"):
            raise MalformedPayloadError(
                f"Claude CLI error: {payload.get('result', 'unknown error')}",
                detail=raw[:_EXCERPT_CHARS],
            )

        text = payload.get("result")
        if not isinstance(text, str):
            raise MalformedPayloadError("Claude CLI response has no result text", detail=raw[:_EXCERPT_CHARS])

        usage: Optional[BackendUsage] = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            usage = BackendUsage(
                input_tokens=int(raw_usage.get("input_tokens") or 0),
                output_tokens=int(raw_usage.get("output_tokens") or 0),
            )
        return BackendResult(text=text, usage=usage)

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        # Reap it so no zombie process is left behind
        await proc.wait()
        logger.info("Killed Claude CLI process %s after cancellation", proc.pid)
