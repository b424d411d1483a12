"""
Generation registry: the one piece of shared mutable state in the core.

Tracks in-flight jobs by id. Every cancellation trigger (explicit cancel call,
caller disconnect, timeout) goes through :meth:`GenerationRegistry.cancel`,
which flips a monotonic flag and wakes the job's ``asyncio.Event``.

All operations take a plain ``threading.Lock`` and never await, so they are
safe from coroutines on the event loop as well as from worker threads. The
event is set on its owning loop via ``call_soon_threadsafe`` when ``cancel``
is called from another thread.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import secrets
import threading
import time
from typing import Dict, Optional

from storyflow.utils.logging_config import get_logger

logger = get_logger("storyflow.registry")


class JobState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.CANCELLED, JobState.FAILED)


class DuplicateGenerationError(ValueError):
    """Raised when registering an id that is already in flight."""


@dataclasses.dataclass
class GenerationJob:
    generation_id: str
    agent: str = ""
    action: str = ""
    started_at: float = dataclasses.field(default_factory=time.monotonic)
    state: JobState = JobState.PENDING
    cancelled: bool = False
    cancel_reason: Optional[str] = None
    event: Optional[asyncio.Event] = None
    loop: Optional[asyncio.AbstractEventLoop] = None


def new_generation_id() -> str:
    """Timestamp plus a random suffix: ``gen-1718041234567-3f9a1c2b``."""
    return f"gen-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class GenerationRegistry:
    """Explicitly owned map of generation id -> job, guarded by one lock."""

    def __init__(self):
        self._jobs: Dict[str, GenerationJob] = {}
        self._lock = threading.Lock()

    # --- lifecycle ------------------------------------------------------------

    def register(self, generation_id: str, agent: str = "", action: str = "") -> GenerationJob:
        """Insert a fresh, uncancelled job.

        When called from a running event loop the job gets an ``asyncio.Event``
        that fires on cancellation.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        job = GenerationJob(
            generation_id=generation_id,
            agent=agent,
            action=action,
            event=asyncio.Event() if loop is not None else None,
            loop=loop,
        )
        with self._lock:
            if generation_id in self._jobs:
                raise DuplicateGenerationError(f"Generation id already in flight: {generation_id}")
            self._jobs[generation_id] = job
        return job

    def mark_running(self, generation_id: str) -> None:
        with self._lock:
            job = self._jobs.get(generation_id)
            if job is not None and job.state == JobState.PENDING:
                job.state = JobState.RUNNING

    def finish(self, generation_id: str, state: JobState) -> None:
        """Move a job to a terminal state. Terminal states are never left."""
        if not state.is_terminal:
            raise ValueError(f"{state} is not a terminal state")
        with self._lock:
            job = self._jobs.get(generation_id)
            if job is not None and not job.state.is_terminal:
                job.state = state

    def cancel(self, generation_id: str, reason: str = "requested") -> bool:
        """Request cancellation. Returns True only if this call flipped the flag.

        Absent ids, already-cancelled jobs, and finished jobs are no-ops.
        """
        with self._lock:
            job = self._jobs.get(generation_id)
            if job is None or job.cancelled or job.state.is_terminal:
                return False
            job.cancelled = True
            job.cancel_reason = reason
            # Set while still holding the lock so cleanup cannot interleave
            self._wake(job)

        logger.info(
            "Cancellation requested",
            extra={"generation_id": generation_id, "event_type": "generation_cancel_requested",
                   "metadata": {"reason": reason}},
        )
        return True

    def is_cancelled(self, generation_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(generation_id)
            return job is not None and job.cancelled

    def cancel_reason(self, generation_id: str) -> Optional[str]:
        with self._lock:
            job = self._jobs.get(generation_id)
            return job.cancel_reason if job is not None else None

    def cleanup(self, generation_id: str) -> None:
        with self._lock:
            self._jobs.pop(generation_id, None)

    # --- inspection -----------------------------------------------------------

    def get(self, generation_id: str) -> Optional[GenerationJob]:
        with self._lock:
            return self._jobs.get(generation_id)

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def __contains__(self, generation_id: object) -> bool:
        with self._lock:
            return generation_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # --------------------------------------------------------------------------

    @staticmethod
    def _wake(job: GenerationJob) -> None:
        if job.event is None or job.loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is job.loop:
            job.event.set()
        elif not job.loop.is_closed():
            job.loop.call_soon_threadsafe(job.event.set)
