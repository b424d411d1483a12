"""Generator backends and the factory that picks one from settings."""

from storyflow.backends.base import BackendResult, BackendUsage, GeneratorBackend
from storyflow.backends.blocking import BlockingBackend
from storyflow.backends.cli import CliBackend
from storyflow.backends.simulated import SimulatedBackend


def create_backend(settings) -> GeneratorBackend:
    """Build the backend named by ``settings.generator_backend``."""
    kind = settings.generator_backend
    if kind == "cli":
        return CliBackend(command=settings.cli_command, model=settings.cli_model)
    if kind == "gemini":
        # Imported lazily so the CLI and simulated paths don't pay for google-genai
        from storyflow.backends.gemini import GeminiBackend

        return GeminiBackend(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            max_output_tokens=settings.gemini_max_output_tokens,
            temperature=settings.gemini_temperature,
        )
    if kind == "simulated":
        return SimulatedBackend(delay_seconds=settings.simulated_delay_seconds)
    raise ValueError(f"Unknown generator backend: {kind}")


__all__ = [
    "BackendResult",
    "BackendUsage",
    "BlockingBackend",
    "CliBackend",
    "GeneratorBackend",
    "SimulatedBackend",
    "create_backend",
]
