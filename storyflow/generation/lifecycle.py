"""
Generation lifecycle: one request in, one outcome out.

    register -> validate context -> retrieve memory -> build prompts
             -> race backend call against the cancel event -> outcome
             -> cleanup (always)

Explicit cancel calls, caller disconnects and the deadline all go through
``GenerationRegistry.cancel``; the manager only ever waits on the job's
cancel event. Cancellation observed before the backend result is consumed
always wins over a late success.

Non-interruptible backends cannot be stopped. Their call is left running,
its task is kept referenced in ``_lingering`` until it finishes, and its
result is logged and dropped. The registry entry is still removed at once.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import time
from typing import Awaitable, Callable, Optional, Set

from storyflow.agents import router
from storyflow.backends.base import BackendUsage, GeneratorBackend
from storyflow.generation.errors import GeneratorError
from storyflow.generation.progress import ProgressHub, ProgressTracker
from storyflow.generation.prompts import build_user_prompt
from storyflow.generation.registry import GenerationRegistry, JobState, new_generation_id
from storyflow.memory.retrieval import ContextRetrievalPolicy
from storyflow.memory.store import StoryMemoryStore
from storyflow.schemas.generation import (
    BaseContext,
    ContextValidationError,
    GenerationRequest,
    GenerationResponse,
    Usage,
    parse_context,
)
from storyflow.schemas.memory import ContextBundle, StoryMemory
from storyflow.utils.logging_config import GenerationAdapter, get_logger

logger = get_logger("storyflow.lifecycle")

MemoryLoader = Callable[[str], Awaitable[Optional[StoryMemory]]]
DisconnectCheck = Callable[[], Awaitable[bool]]


class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclasses.dataclass
class GenerationOutcome:
    status: OutcomeStatus
    generation_id: str
    agent: str
    text: Optional[str] = None
    usage: Optional[Usage] = None
    reason: Optional[str] = None
    detail: Optional[str] = None
    cancel_reason: Optional[str] = None

    def to_response(self) -> GenerationResponse:
        return GenerationResponse(
            status=self.status.value,
            generation_id=self.generation_id,
            agent=self.agent,
            result=self.text if self.status == OutcomeStatus.SUCCESS else None,
            error=self.reason if self.status == OutcomeStatus.ERROR else None,
            usage=self.usage,
        )


def _to_usage(usage: Optional[BackendUsage]) -> Optional[Usage]:
    if usage is None:
        return None
    return Usage(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)


class GenerationLifecycleManager:
    def __init__(
        self,
        registry: GenerationRegistry,
        backend: GeneratorBackend,
        policy: ContextRetrievalPolicy | None = None,
        progress: ProgressHub | None = None,
        memory_loader: MemoryLoader | None = None,
        timeout: float | None = None,
        disconnect_poll_interval: float = 0.5,
    ):
        self.registry = registry
        self.backend = backend
        self.policy = policy or ContextRetrievalPolicy()
        self.progress = progress
        self.memory_loader = memory_loader
        self.timeout = timeout
        self.disconnect_poll_interval = disconnect_poll_interval
        self._lingering: Set[asyncio.Task] = set()

    @property
    def lingering_calls(self) -> int:
        """Abandoned backend calls that have not finished yet."""
        return len(self._lingering)

    async def run(
        self,
        request: GenerationRequest,
        is_disconnected: DisconnectCheck | None = None,
    ) -> GenerationOutcome:
        """Run one generation job to a terminal outcome.

        Raises ``DuplicateGenerationError`` if the caller-chosen id is already
        in flight; every other failure comes back as an ``error`` outcome.
        """
        gid = request.generation_id or new_generation_id()
        descriptor = router.resolve(request.agent_target)
        job = self.registry.register(gid, agent=descriptor.target, action=request.action)

        log = GenerationAdapter(logger, gid, agent=descriptor.target, action=request.action)
        tracker = ProgressTracker(self.progress, gid)
        loop = asyncio.get_running_loop()
        started = time.monotonic()

        def finish(status: OutcomeStatus, **kwargs) -> GenerationOutcome:
            return GenerationOutcome(status=status, generation_id=gid, agent=descriptor.target, **kwargs)

        deadline = None
        watcher: Optional[asyncio.Task] = None
        backend_task: Optional[asyncio.Task] = None
        outcome: Optional[GenerationOutcome] = None

        tracker.initialize()
        log.info("Generation started", extra={"event_type": "generation_start"})
        try:
            if self.timeout:
                deadline = loop.call_later(self.timeout, self.registry.cancel, gid, "timeout")
            if is_disconnected is not None:
                watcher = asyncio.create_task(self._watch_disconnect(gid, is_disconnected))

            try:
                ctx = parse_context(request.action, request.context)
            except ContextValidationError as e:
                outcome = finish(OutcomeStatus.ERROR, reason=str(e))
                return outcome

            tracker.analyzing()
            bundle = await self._retrieve(ctx, job.event, log)

            if bundle is None or self.registry.is_cancelled(gid):
                outcome = finish(OutcomeStatus.CANCELLED, cancel_reason=self.registry.cancel_reason(gid))
                return outcome
            user_prompt = build_user_prompt(ctx, bundle)

            self.registry.mark_running(gid)
            tracker.generating()
            backend_task = asyncio.create_task(
                self.backend.invoke(descriptor.system_instructions, user_prompt),
                name=f"backend-{gid}",
            )
            cancel_wait = asyncio.create_task(job.event.wait())
            try:
                done, _ = await asyncio.wait({backend_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancel_wait.cancel()

            # Checked before looking at the result: a late success loses to cancellation
            if backend_task not in done or self.registry.is_cancelled(gid):
                self._abandon(backend_task, log)
                outcome = finish(OutcomeStatus.CANCELLED, cancel_reason=self.registry.cancel_reason(gid))
                return outcome

            try:
                result = backend_task.result()
            except GeneratorError as e:
                log.warning("Backend call failed: %s", e.reason, extra={
                    "event_type": "generation_error", "metadata": {"detail": e.detail}})
                outcome = finish(OutcomeStatus.ERROR, reason=e.reason, detail=e.detail)
                return outcome
            except Exception as e:
                log.error("Backend call raised unexpectedly", exc_info=True,
                          extra={"event_type": "generation_error"})
                outcome = finish(OutcomeStatus.ERROR, reason=f"Unexpected backend error: {e}", detail=repr(e))
                return outcome

            tracker.processing()
            outcome = finish(OutcomeStatus.SUCCESS, text=result.text, usage=_to_usage(result.usage))
            return outcome

        except asyncio.CancelledError:
            # The awaiting request itself went away (server shutdown, client task cancelled)
            self.registry.cancel(gid, "caller-cancelled")
            if backend_task is not None:
                self._abandon(backend_task, log)
            outcome = finish(OutcomeStatus.CANCELLED, cancel_reason="caller-cancelled")
            raise

        finally:
            if deadline is not None:
                deadline.cancel()
            if watcher is not None:
                watcher.cancel()
            if backend_task is not None and not backend_task.done() and backend_task not in self._lingering:
                self._abandon(backend_task, log)

            if outcome is None:
                outcome = finish(OutcomeStatus.ERROR, reason="Generation ended without an outcome")
            self.registry.finish(gid, _JOB_STATES[outcome.status])
            self.registry.cleanup(gid)
            self._report(outcome, tracker, log, started)

    # ------------------------------------------------------------------

    async def _retrieve(self, ctx: BaseContext, cancel_event: asyncio.Event, log) -> Optional[ContextBundle]:
        """Load memory and select the bundle. Returns None if the job was cancelled mid-load."""
        memory = ctx.story_memory
        if memory is None and ctx.project_id and self.memory_loader is not None:
            load = asyncio.create_task(self.memory_loader(ctx.project_id))
            cancel_wait = asyncio.create_task(cancel_event.wait())
            try:
                await asyncio.wait({load, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancel_wait.cancel()
                if not load.done():
                    load.cancel()
            if not load.done() or load.cancelled():
                return None

            try:
                memory = load.result()
            except Exception:
                log.warning("Could not load story memory; generating without it", exc_info=True,
                            extra={"event_type": "retrieval_degraded", "project_id": ctx.project_id})
                memory = None

        bundle = self.policy.select(
            current_chapter=ctx.current_chapter,
            pov_character_id=ctx.pov_character_id,
            task_description=ctx.task_description,
            store=StoryMemoryStore(memory),
            scene_character_ids=ctx.scene_character_ids,
        )
        if bundle.degraded:
            log.warning("Context bundle degraded", extra={"event_type": "retrieval_degraded"})
        return bundle

    async def _watch_disconnect(self, gid: str, is_disconnected: DisconnectCheck) -> None:
        while True:
            await asyncio.sleep(self.disconnect_poll_interval)
            if await is_disconnected():
                self.registry.cancel(gid, "client-disconnected")
                return

    def _abandon(self, task: asyncio.Task, log) -> None:
        if task.done():
            if not task.cancelled():
                task.exception()
            return
        self._lingering.add(task)
        if self.backend.interruptible:
            task.add_done_callback(self._lingering.discard)
            task.cancel()
            return
        log.warning(
            "Backend %s cannot be interrupted; its call keeps running and the result will be discarded",
            self.backend.name,
            extra={"event_type": "zombie_call"},
        )
        task.add_done_callback(lambda t: self._zombie_done(t, log))

    def _zombie_done(self, task: asyncio.Task, log) -> None:
        self._lingering.discard(task)
        if task.cancelled():
            log.info("Abandoned backend call was cancelled", extra={"event_type": "zombie_finished"})
        elif task.exception() is not None:
            log.info("Abandoned backend call failed: %s", task.exception(), extra={"event_type": "zombie_finished"})
        else:
            log.info("Abandoned backend call finished; result discarded", extra={"event_type": "zombie_finished"})

    @staticmethod
    def _report(outcome: GenerationOutcome, tracker: ProgressTracker, log, started: float) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        if outcome.status == OutcomeStatus.SUCCESS:
            tracker.complete(outcome.text or "", outcome.usage)
            log.info("Generation complete", extra={
                "event_type": "generation_complete", "duration_ms": duration_ms,
                "metadata": outcome.usage.model_dump() if outcome.usage else None,
            })
        elif outcome.status == OutcomeStatus.CANCELLED:
            tracker.cancelled(outcome.cancel_reason)
            log.info("Generation cancelled (%s)", outcome.cancel_reason or "requested", extra={
                "event_type": "generation_cancelled", "duration_ms": duration_ms,
            })
        else:
            tracker.error(outcome.reason or "Generation failed")
            log.info("Generation failed: %s", outcome.reason, extra={
                "event_type": "generation_failed", "duration_ms": duration_ms,
            })


_JOB_STATES = {
    OutcomeStatus.SUCCESS: JobState.SUCCEEDED,
    OutcomeStatus.CANCELLED: JobState.CANCELLED,
    OutcomeStatus.ERROR: JobState.FAILED,
}
