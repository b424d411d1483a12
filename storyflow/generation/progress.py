"""
Per-generation progress events.

The hub keeps the latest :class:`GenerationProgress` for each generation and
fans updates out to subscribers (the SSE endpoint). Terminal progress stays
readable for ``retention_seconds`` so a client that connects late still sees
how the job ended.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, List, Optional

from storyflow.schemas.generation import GenerationProgress, Usage


class ProgressHub:
    def __init__(self, retention_seconds: float = 60.0):
        self.retention_seconds = retention_seconds
        self._latest: Dict[str, GenerationProgress] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._expiry: Dict[str, asyncio.TimerHandle] = {}

    def emit(self, progress: GenerationProgress) -> None:
        gid = progress.generation_id
        self._latest[gid] = progress
        for queue in self._subscribers.get(gid, []):
            queue.put_nowait(progress)
        if progress.is_terminal:
            self._schedule_cleanup(gid)

    def get(self, generation_id: str) -> Optional[GenerationProgress]:
        return self._latest.get(generation_id)

    async def subscribe(self, generation_id: str) -> AsyncIterator[GenerationProgress]:
        """Yield progress for one generation until it reaches a terminal state.

        The current state, if any, is yielded first.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(generation_id, []).append(queue)
        try:
            current = self._latest.get(generation_id)
            if current is not None:
                yield current
                if current.is_terminal:
                    return
            while True:
                progress = await queue.get()
                yield progress
                if progress.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(generation_id, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(generation_id, None)

    def cleanup(self, generation_id: str) -> None:
        self._latest.pop(generation_id, None)
        handle = self._expiry.pop(generation_id, None)
        if handle is not None:
            handle.cancel()

    def close(self) -> None:
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        self._latest.clear()

    def _schedule_cleanup(self, generation_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        old = self._expiry.pop(generation_id, None)
        if old is not None:
            old.cancel()
        self._expiry[generation_id] = loop.call_later(
            self.retention_seconds, self.cleanup, generation_id
        )


class ProgressTracker:
    """Stage helpers for one generation. A tracker with no hub does nothing."""

    def __init__(self, hub: Optional[ProgressHub], generation_id: str):
        self.hub = hub
        self.generation_id = generation_id

    def _emit(self, status: str, progress: int, message: str, **extra) -> None:
        if self.hub is None:
            return
        self.hub.emit(GenerationProgress(
            generation_id=self.generation_id,
            status=status,
            progress=progress,
            message=message,
            **extra,
        ))

    def initialize(self) -> None:
        self._emit("initializing", 5, "Initializing AI generation...")

    def analyzing(self) -> None:
        self._emit("analyzing", 20, "Analyzing context and requirements...")

    def generating(self, message: str | None = None) -> None:
        self._emit("generating", 50, message or "Generating content with AI...")

    def processing(self) -> None:
        self._emit("processing", 80, "Processing and formatting response...")

    def complete(self, result: str, usage: Usage | None = None) -> None:
        self._emit("completed", 100, "Generation complete!", result=result, usage=usage)

    def error(self, message: str) -> None:
        self._emit("error", 0, "Generation failed", error=message)

    def cancelled(self, reason: str | None = None) -> None:
        message = _CANCEL_MESSAGES.get(reason or "requested", f"Generation cancelled ({reason})")
        self._emit("cancelled", 0, message)


_CANCEL_MESSAGES = {
    "requested": "Generation cancelled by user",
    "timeout": "Generation timed out",
    "client-disconnected": "Generation cancelled: client disconnected",
    "caller-cancelled": "Generation cancelled: request was aborted",
}
