"""Gemini backend: a single async ``generate_content`` call per generation.

No retries here. A failed call surfaces as ``Failed`` and the caller decides
whether to try again.
"""

from __future__ import annotations

from functools import cached_property
from typing import Optional

from google.genai import Client, errors, types

from storyflow.backends.base import BackendResult, BackendUsage, GeneratorBackend
from storyflow.generation.errors import BackendUnavailableError, MalformedPayloadError


class GeminiBackend(GeneratorBackend):
    name = "gemini"
    # Cancelling the awaiting task aborts the HTTP request
    interruptible = True

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        max_output_tokens: int = 8192,
        temperature: float = 0.8,
    ):
        self.api_key = api_key
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    @cached_property
    def client(self) -> Client:
        return Client(api_key=self.api_key)

    async def is_available(self) -> bool:
        return bool(self.api_key)

    async def invoke(self, system_prompt: str, user_prompt: str) -> BackendResult:
        if not self.api_key:
            raise BackendUnavailableError("Gemini API key is not configured")

        config = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
        )
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=user_prompt,
                config=config,
            )
        except errors.APIError as e:
            raise BackendUnavailableError(f"Gemini call failed with status {e.code}", detail=str(e)) from e
        except OSError as e:
            raise BackendUnavailableError(f"Gemini transport error: {e}", detail=str(e)) from e

        text = response.text
        if not text:
            reason = None
            if response.candidates:
                reason = response.candidates[0].finish_reason
            raise MalformedPayloadError(
                "Gemini returned no text",
                detail=f"finish_reason={reason}",
            )
        return BackendResult(text=text, usage=self._usage(response))

    @staticmethod
    def _usage(response) -> Optional[BackendUsage]:
        meta = getattr(response, "usage_metadata", None)
        if meta is None:
            return None
        return BackendUsage(
            input_tokens=meta.prompt_token_count or 0,
            output_tokens=meta.candidates_token_count or 0,
        )
