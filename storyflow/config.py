from __future__ import annotations

from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Storyflow"
    # Default to a local postgres database if not set in env
    database_url: str = "postgresql+asyncpg://localhost/storyflow"

    # Which generator backend serves requests: the Claude CLI subprocess,
    # a direct Gemini call, or the offline placeholder renderer.
    generator_backend: Literal["cli", "gemini", "simulated"] = "cli"

    # Claude CLI boundary
    cli_command: str = "claude"
    cli_model: str = "sonnet"

    # Gemini boundary
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_output_tokens: int = 8192
    gemini_temperature: float = 0.8

    # Simulated backend delay in seconds
    simulated_delay_seconds: float = 6.0

    # Overall deadline for one generation job (default 5 minutes)
    generation_timeout_seconds: float = 300.0

    # How often the HTTP layer checks whether the caller went away
    disconnect_poll_interval_seconds: float = 0.5

    # Terminal progress stays readable this long after a job ends
    progress_retention_seconds: float = 60.0

    # Retrieval budgets (item ceilings per category)
    retrieval_max_summaries: int = 3
    retrieval_max_facts: int = 20
    retrieval_max_character_states: int = 5
    retrieval_max_subplots: int = 5
    subplot_recency_window: int = 10

    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    log_file: str = "server.log"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings():
    return Settings()
