"""Tests for context retrieval: POV exclusivity, cliffhanger pinning, subplot ranking."""

import pytest

from storyflow.generation.prompts import build_context_block
from storyflow.memory.retrieval import ContextRetrievalPolicy, RetrievalBudget
from storyflow.memory.store import StoryMemoryStore
from storyflow.schemas.generation import parse_context
from storyflow.schemas.memory import StoryMemory

TASK = "Mara walks along Kell Harbour at dusk, looking for Ilse."


def _select(memory, current_chapter=7, pov="mara", task=TASK, scene=("ilse",), budget=None):
    policy = ContextRetrievalPolicy(budget or RetrievalBudget())
    return policy.select(current_chapter, pov, task, StoryMemoryStore(memory), scene_character_ids=scene)


def _with(memory, **changes):
    data = memory.model_dump(mode="json")
    for key, extra in changes.items():
        data[key] = data[key] + extra
    return StoryMemory.model_validate(data)


class TestPovConstraint:
    def test_cannot_know_holds_facts_about_strangers(self, story_memory):
        bundle = _select(story_memory)
        assert [f.id for f in bundle.pov_constraints.cannot_know] == ["f-voss-smuggler"]
        assert bundle.pov_constraints.as_of_chapter == 6
        assert bundle.pov_constraints.emotional_state == "shaken"

    def test_must_remember_is_recent_experience(self, story_memory):
        bundle = _select(story_memory)
        assert bundle.pov_constraints.must_remember == ["Fell from the pier", "Woke in the infirmary"]

    def test_uses_state_at_or_before_current_chapter(self, story_memory):
        bundle = _select(story_memory, current_chapter=4)
        assert bundle.pov_constraints.as_of_chapter == 3
        assert bundle.pov_constraints.must_remember == ["Searched the warehouse with Ilse"]

    def test_facts_from_later_chapters_are_invisible(self, story_memory):
        bundle = _select(story_memory)
        ids = {f.id for f in bundle.facts} | {f.id for f in bundle.pov_constraints.cannot_know}
        assert "f-future" not in ids

    def test_no_leak_into_other_categories(self, story_memory):
        bundle = _select(story_memory)
        assert bundle.leaked_items() == []
        forbidden = {f.id for f in bundle.pov_constraints.cannot_know}
        assert forbidden.isdisjoint({f.id for f in bundle.facts})

    def test_forbidden_text_is_redacted_from_summaries(self, story_memory):
        memory = _with(story_memory, chapter_summaries=[{
            "chapter_number": 5,
            "summary": "Ilse follows Voss.",
            "key_events": ["Voss runs the smuggling ring", "Ilse loses him in the fog"],
            "characters_present": ["ilse"],
        }])
        bundle = _select(memory)
        events = [e.event for s in bundle.summaries for e in s.key_events]
        assert "Voss runs the smuggling ring" not in events
        assert "Ilse loses him in the fog" in events
        assert bundle.leaked_items() == []

    def test_missing_knowledge_state_degrades_quietly(self, story_memory):
        bundle = _select(story_memory, pov="voss")
        assert bundle.degraded is True
        assert bundle.pov_constraints.character_id == "voss"
        assert bundle.pov_constraints.cannot_know == []
        # The rest of the bundle is still filled in
        assert bundle.summaries

    def test_no_pov_means_no_constraint(self, story_memory):
        bundle = _select(story_memory, pov=None, scene=())
        assert bundle.degraded is False
        assert bundle.pov_constraints.cannot_know == []


class TestSummaries:
    def test_newest_first_within_budget(self, story_memory):
        bundle = _select(story_memory)
        assert [s.chapter_number for s in bundle.summaries] == [6, 5, 4]

    def test_only_chapters_before_current(self, story_memory):
        bundle = _select(story_memory, current_chapter=3)
        assert [s.chapter_number for s in bundle.summaries] == [2, 1]

    def test_cliffhanger_chapter_survives_zero_budget(self, story_memory):
        bundle = _select(story_memory, budget=RetrievalBudget(max_summaries=0))
        assert [s.chapter_number for s in bundle.summaries] == [6]

    def test_plain_previous_chapter_is_not_pinned(self, story_memory):
        bundle = _select(story_memory, current_chapter=6, budget=RetrievalBudget(max_summaries=0))
        assert bundle.summaries == []


class TestFacts:
    def test_pov_then_scene_then_named_location(self, story_memory):
        bundle = _select(story_memory)
        assert [f.id for f in bundle.facts] == ["f-mara-scar", "f-ilse-ledger", "f-kell-fog"]

    def test_location_needs_to_be_named_in_task(self, story_memory):
        bundle = _select(story_memory, task="Mara sleeps.")
        assert "f-kell-fog" not in {f.id for f in bundle.facts}

    def test_fact_budget(self, story_memory):
        bundle = _select(story_memory, budget=RetrievalBudget(max_facts=1))
        assert [f.id for f in bundle.facts] == ["f-mara-scar"]


class TestCharacterStates:
    def test_other_characters_secrets_are_stripped(self, story_memory):
        bundle = _select(story_memory)
        states = {s.character_id: s for s in bundle.character_states}
        assert set(states) == {"mara", "ilse"}
        assert states["ilse"].secrets == []

    def test_scene_character_knowledge_is_scrubbed_by_id(self, story_memory):
        # ilse knows f-voss-smuggler, which mara cannot know
        bundle = _select(story_memory)
        states = {s.character_id: s for s in bundle.character_states}
        assert "f-voss-smuggler" not in states["ilse"].known_facts
        assert bundle.leaked_items() == []

    def test_scene_character_knowledge_is_scrubbed_by_text(self, story_memory):
        memory = _with(story_memory, character_knowledge_states=[{
            "character_id": "ilse",
            "as_of_chapter": 6,
            "known_facts": ["Voss runs the smuggling ring", "f-ilse-ledger"],
            "beliefs": ["voss  runs the Smuggling ring"],
            "active_goals": ["Voss runs the smuggling ring", "Return the ledger"],
        }])
        bundle = _select(memory)
        ilse = {s.character_id: s for s in bundle.character_states}["ilse"]
        assert ilse.known_facts == ["f-ilse-ledger"]
        assert ilse.beliefs == []
        assert ilse.active_goals == ["Return the ledger"]
        assert bundle.leaked_items() == []

        ctx = parse_context("continue-writing", {"existing_content": "Mara looked up."})
        prompt = build_context_block(ctx, bundle)
        # Only the constraint section may name the forbidden fact
        before_constraints = prompt.split("## POV Character Constraints")[0]
        assert "Voss runs the smuggling ring" not in before_constraints
        assert "Return the ledger" in before_constraints

    def test_leaked_items_sees_character_states(self, story_memory):
        bundle = _select(story_memory)
        ilse_state = story_memory.character_knowledge_states[-1]
        tampered = bundle.model_copy(update={"character_states": [ilse_state]})
        assert tampered.leaked_items() == ["f-voss-smuggler"]


class TestSubplots:
    def test_dormant_subplot_ranks_first(self, story_memory):
        bundle = _select(story_memory)
        ranked = [(s.subplot.id, s.last_touched_chapter) for s in bundle.subplots]
        assert ranked == [("sp-ledger", 3), ("sp-letter", 6)]

    def test_closed_and_untouched_subplots_are_skipped(self, story_memory):
        bundle = _select(story_memory)
        ids = {s.subplot.id for s in bundle.subplots}
        assert "sp-old" not in ids
        assert "sp-unplanted" not in ids

    def test_recency_window(self, story_memory):
        bundle = _select(story_memory, budget=RetrievalBudget(subplot_recency_window=2))
        assert [s.subplot.id for s in bundle.subplots] == ["sp-letter"]


class TestCarryForward:
    def test_open_questions_drop_resolved_ones(self, story_memory):
        bundle = _select(story_memory)
        assert bundle.open_questions == ["Who sent Mara the letter?", "Where is the harbourmaster?"]

    def test_setups_paid_off_are_dropped(self, story_memory):
        assert _select(story_memory).unresolved_setups == []
        assert _select(story_memory, current_chapter=3).unresolved_setups == [
            "The lighthouse lamp is never lit"
        ]

    def test_carry_forward_is_not_capped(self, story_memory):
        budget = RetrievalBudget(max_summaries=0, max_facts=0, max_character_states=0, max_subplots=0)
        bundle = _select(story_memory, budget=budget)
        assert len(bundle.open_questions) == 2


class TestRobustness:
    def test_deterministic(self, story_memory):
        assert _select(story_memory) == _select(story_memory)

    def test_empty_store(self):
        bundle = _select(None, pov=None, scene=())
        assert bundle.summaries == [] and bundle.facts == [] and not bundle.degraded

    def test_store_failure_returns_degraded_bundle(self, story_memory):
        class BrokenStore(StoryMemoryStore):
            def facts(self):
                raise RuntimeError("index corrupted")

        policy = ContextRetrievalPolicy()
        bundle = policy.select(7, "mara", TASK, BrokenStore(story_memory))
        assert bundle.degraded is True
        assert bundle.current_chapter == 7
        assert bundle.summaries == []


@pytest.mark.parametrize("chapter", [0, 1, 7, 50])
def test_leak_invariant_across_positions(story_memory, chapter):
    for pov in ("mara", "ilse", None):
        assert _select(story_memory, current_chapter=chapter, pov=pov).leaked_items() == []
