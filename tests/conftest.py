# tests/conftest.py
import asyncio
import os
import sys
import tempfile

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Settings are cached on first import, so point everything at throwaway
# locations before any storyflow module is loaded.
_tmp = tempfile.mkdtemp(prefix="storyflow-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_tmp, 'storyflow.db')}")
os.environ.setdefault("LOG_FILE", os.path.join(_tmp, "server.log"))
os.environ.setdefault("GENERATOR_BACKEND", "simulated")
os.environ.setdefault("SIMULATED_DELAY_SECONDS", "0.01")

import pytest

from storyflow.backends.base import BackendResult, BackendUsage, GeneratorBackend
from storyflow.generation.errors import GeneratorError
from storyflow.generation.registry import GenerationRegistry
from storyflow.schemas.memory import StoryMemory


class ScriptedBackend(GeneratorBackend):
    """Async backend that waits, then returns text or raises."""

    name = "scripted"
    interruptible = True

    def __init__(self, text="Hello", delay=0.0, error=None, usage=None):
        self.text = text
        self.delay = delay
        self.error = error
        self.usage = usage
        self.calls = []
        self.was_cancelled = False

    async def invoke(self, system_prompt, user_prompt):
        self.calls.append((system_prompt, user_prompt))
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.was_cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return BackendResult(text=self.text, usage=self.usage)


@pytest.fixture
def registry():
    return GenerationRegistry()


@pytest.fixture
def scripted_backend():
    return ScriptedBackend


@pytest.fixture
def generator_error():
    return GeneratorError


@pytest.fixture
def backend_usage():
    return BackendUsage(input_tokens=12, output_tokens=34)


@pytest.fixture
def story_memory():
    """Seven chapters in: Mara (POV) has not met Voss; Ilse knows his secret."""
    return StoryMemory.model_validate({
        "planned_chapter_count": 20,
        "chapter_summaries": [
            {
                "chapter_number": 1,
                "summary": "Mara arrives at the harbour town of Kell.",
                "key_events": ["Mara takes a room above the chandlery"],
                "characters_present": ["mara"],
                "locations_used": ["Kell Harbour"],
                "foreshadowing": [{"element": "The lighthouse lamp is never lit"}],
                "open_questions": ["Who sent Mara the letter?"],
            },
            {
                "chapter_number": 2,
                "summary": "Ilse meets Voss at the customs house.",
                "key_events": ["Voss bribes the harbourmaster"],
                "characters_present": ["ilse", "voss"],
                "locations_used": ["Customs House"],
            },
            {
                "chapter_number": 3,
                "summary": "Mara and Ilse search the warehouse.",
                "characters_present": ["mara", "ilse"],
                "locations_used": ["Warehouse Row"],
            },
            {
                "chapter_number": 4,
                "summary": "A storm traps Mara on the pier.",
                "characters_present": ["mara"],
                "cliffhanger": "The pier gives way beneath her.",
            },
            {
                "chapter_number": 5,
                "summary": "Ilse hides the ledger.",
                "characters_present": ["ilse"],
                "payoffs": ["The lighthouse lamp is never lit"],
            },
            {
                "chapter_number": 6,
                "summary": "Mara wakes in the infirmary.",
                "characters_present": ["mara"],
                "cliffhanger": "Someone has taken her letter.",
            },
        ],
        "character_knowledge_states": [
            {
                "character_id": "mara",
                "as_of_chapter": 3,
                "known_facts": ["f-mara-scar"],
                "relationships": {"ilse": "cautious ally"},
                "emotional_state": "wary",
                "recent_experiences": ["Searched the warehouse with Ilse"],
            },
            {
                "character_id": "mara",
                "as_of_chapter": 6,
                "known_facts": ["f-mara-scar", "f-ilse-ledger"],
                "relationships": {"ilse": "trusted ally"},
                "emotional_state": "shaken",
                "recent_experiences": ["Fell from the pier", "Woke in the infirmary"],
            },
            {
                "character_id": "ilse",
                "as_of_chapter": 5,
                "known_facts": ["f-voss-smuggler"],
                "secrets": ["She hid the ledger"],
                "emotional_state": "guilty",
            },
        ],
        "facts": [
            {"id": "f-mara-scar", "subject_id": "mara", "assertion": "Mara has a scar on her left hand",
             "attribute": "scar", "value": "left hand", "source_chapter": 1},
            {"id": "f-ilse-ledger", "subject_id": "ilse", "assertion": "Ilse keeps the harbour ledger",
             "source_chapter": 3},
            {"id": "f-voss-smuggler", "subject_id": "voss", "assertion": "Voss runs the smuggling ring",
             "source_chapter": 2},
            {"id": "f-kell-fog", "subject_id": "kell-harbour", "subject_type": "location",
             "subject_name": "Kell Harbour", "assertion": "Fog rolls into Kell Harbour every dusk",
             "source_chapter": 1},
            {"id": "f-future", "subject_id": "mara", "assertion": "Mara inherits the lighthouse",
             "source_chapter": 12},
        ],
        "subplots": [
            {"id": "sp-ledger", "name": "The missing ledger", "status": "developing"},
            {"id": "sp-letter", "name": "The anonymous letter", "status": "escalating"},
            {"id": "sp-old", "name": "Father's debts", "status": "resolved"},
            {"id": "sp-unplanted", "name": "The sister", "status": "setup"},
        ],
        "subplot_touches": [
            {"subplot_id": "sp-ledger", "chapter_number": 3},
            {"subplot_id": "sp-letter", "chapter_number": 6},
            {"subplot_id": "sp-old", "chapter_number": 5},
        ],
        "open_questions": [
            {"question": "Why is the lighthouse dark?", "raised_in_chapter": 1, "resolved_in_chapter": 5},
            {"question": "Where is the harbourmaster?", "raised_in_chapter": 2},
        ],
    })
