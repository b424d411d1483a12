"""Offline backend for development and tests.

Sleeps for a fixed delay, then renders deterministic placeholder prose from
the prompt. The sleep is a plain ``asyncio.sleep``, so cancellation is
immediate.
"""

from __future__ import annotations

import asyncio

from storyflow.backends.base import BackendResult, BackendUsage, GeneratorBackend


def _task_line(user_prompt: str) -> str:
    for line in user_prompt.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            return line
    return "Untitled request"


def render_placeholder(user_prompt: str) -> str:
    """Placeholder prose keyed off the first non-empty line of the prompt."""
    task = _task_line(user_prompt)
    return "\n\n".join([
        f"[Simulated response: {task}]",
        "The lamps along the harbour wall came on one by one, and the tide pulled "
        "at the moorings as if it had somewhere better to be.",
        "She counted the ships twice, then a third time, and still came up one short.",
    ])


def _rough_tokens(text: str) -> int:
    return max(1, len(text) // 4)


class SimulatedBackend(GeneratorBackend):
    name = "simulated"
    interruptible = True

    def __init__(self, delay_seconds: float = 6.0):
        self.delay_seconds = delay_seconds

    async def invoke(self, system_prompt: str, user_prompt: str) -> BackendResult:
        await asyncio.sleep(self.delay_seconds)
        text = render_placeholder(user_prompt)
        return BackendResult(
            text=text,
            usage=BackendUsage(
                input_tokens=_rough_tokens(system_prompt + user_prompt),
                output_tokens=_rough_tokens(text),
            ),
        )
