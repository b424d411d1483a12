"""Adapter for synchronous generator callables.

The callable runs in a worker thread via ``asyncio.to_thread``. Threads cannot
be interrupted, so cancelling the awaiting task only abandons the call: the
thread runs to completion and its result is dropped by the lifecycle manager.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Union

from storyflow.backends.base import BackendResult, GeneratorBackend
from storyflow.generation.errors import GeneratorError, MalformedPayloadError

SyncGenerator = Callable[[str, str], Union[BackendResult, str]]


class BlockingBackend(GeneratorBackend):
    interruptible = False

    def __init__(self, func: SyncGenerator, name: str = "blocking"):
        self.func = func
        self.name = name

    async def invoke(self, system_prompt: str, user_prompt: str) -> BackendResult:
        try:
            result = await asyncio.to_thread(self.func, system_prompt, user_prompt)
        except GeneratorError:
            raise
        except Exception as e:
            raise GeneratorError(f"{self.name} call failed: {e}", detail=repr(e)) from e

        if isinstance(result, BackendResult):
            return result
        if isinstance(result, str):
            return BackendResult(text=result)
        raise MalformedPayloadError(
            f"{self.name} returned {type(result).__name__}, expected text",
        )
