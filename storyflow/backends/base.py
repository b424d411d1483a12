"""Generator backend interface: the boundary call that actually produces text."""

from __future__ import annotations

import abc
import dataclasses
from typing import Optional


@dataclasses.dataclass(frozen=True)
class BackendUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclasses.dataclass(frozen=True)
class BackendResult:
    text: str
    usage: Optional[BackendUsage] = None


class GeneratorBackend(abc.ABC):
    """One awaitable ``invoke`` per generation job.

    ``interruptible`` tells the lifecycle manager whether cancelling the
    awaiting task actually stops the work. When it is False the manager lets
    the call run to completion in the background and discards its result.
    """

    name: str = "backend"
    interruptible: bool = True

    @abc.abstractmethod
    async def invoke(self, system_prompt: str, user_prompt: str) -> BackendResult:
        """Produce text for the prompts, or raise a ``GeneratorError``."""

    async def is_available(self) -> bool:
        return True

    def describe(self) -> dict:
        return {"name": self.name, "interruptible": self.interruptible}
