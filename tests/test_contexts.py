"""Tests for per-action context validation and prompt construction."""

import pytest

from storyflow.generation.prompts import ACTION_PROMPTS, build_context_block, build_user_prompt
from storyflow.memory.retrieval import ContextRetrievalPolicy
from storyflow.memory.store import StoryMemoryStore
from storyflow.schemas.generation import (
    ACTION_CONTEXTS,
    ChapterContext,
    ContextValidationError,
    ContinueWritingContext,
    SelectionContext,
    parse_context,
)

# Minimal valid context for actions whose model has required fields
REQUIRED = {
    "continue-writing": {"existing_content": "The tide turned."},
    "expand-selection": {"selected_text": "She ran."},
    "condense-selection": {"selected_text": "She ran."},
    "rewrite-selection": {"selected_text": "She ran."},
    "generate-alternatives": {"selected_text": "She ran."},
    "analyze-brainstorm": {"brainstorm_text": "A lighthouse that eats ships."},
    "generate-foundations": {"brainstorm_text": "A lighthouse that eats ships."},
}


class TestParseContext:
    def test_dispatches_on_action(self):
        ctx = parse_context("continue-writing", {"existing_content": "Once.", "current_chapter": 3})
        assert isinstance(ctx, ContinueWritingContext)
        assert ctx.action == "continue-writing"
        assert ctx.current_chapter == 3

    def test_grouped_actions_share_a_model(self):
        assert ACTION_CONTEXTS["generate-chapter"] is ChapterContext
        assert ACTION_CONTEXTS["generate-chapter-draft"] is ChapterContext
        assert isinstance(parse_context("generate-alternatives", REQUIRED["generate-alternatives"]), SelectionContext)

    def test_unknown_action(self):
        with pytest.raises(ContextValidationError, match="Unknown action"):
            parse_context("summon-dragon", {})

    def test_missing_required_field(self):
        with pytest.raises(ContextValidationError, match="selected_text"):
            parse_context("expand-selection", {})

    def test_action_in_payload_cannot_override(self):
        ctx = parse_context("generate-chapter", {"action": "continue-writing"})
        assert isinstance(ctx, ChapterContext)

    def test_bad_nested_memory_is_rejected(self):
        with pytest.raises(ContextValidationError, match="story_memory"):
            parse_context("generate-chapter", {"story_memory": {"chapter_summaries": [{"summary": "no number"}]}})

    def test_inline_memory_is_typed(self, story_memory):
        ctx = parse_context("generate-chapter", {"story_memory": story_memory.model_dump(mode="json")})
        assert ctx.story_memory == story_memory

    def test_unknown_fields_are_ignored(self):
        ctx = parse_context("suggest-titles", {"whatever": 1})
        assert not hasattr(ctx, "whatever")


class TestPrompts:
    def test_builder_for_every_action(self):
        assert set(ACTION_PROMPTS) == set(ACTION_CONTEXTS)

    @pytest.mark.parametrize("action", sorted(ACTION_CONTEXTS))
    def test_every_action_builds_a_prompt(self, action):
        ctx = parse_context(action, REQUIRED.get(action, {}))
        prompt = build_user_prompt(ctx)
        assert prompt.strip()

    def test_context_block_renders_memory(self, story_memory):
        ctx = parse_context("continue-writing", {
            "existing_content": "Mara looked up.",
            "current_chapter": 7,
            "pov_character_id": "mara",
            "scene_character_ids": ["ilse"],
            "characters": [{"id": "mara", "name": "Mara Quill"}, {"id": "ilse", "name": "Ilse Brandt"}],
        })
        bundle = ContextRetrievalPolicy().select(7, "mara", "", StoryMemoryStore(story_memory), ["ilse"])
        block = build_context_block(ctx, bundle)
        assert "### Chapter 6 (ends with cliffhanger)" in block
        assert "CANNOT reference (character doesn't know): Voss runs the smuggling ring" in block
        assert "Should remember: Fell from the pier; Woke in the infirmary" in block
        assert "- Mara Quill: Mara has a scar on her left hand" in block
        assert "The missing ledger (developing, last seen chapter 3)" in block

    def test_selected_text_is_quoted(self):
        ctx = parse_context("rewrite-selection", {"selected_text": "She ran."})
        assert '"She ran."' in build_user_prompt(ctx)

    def test_alternatives_count(self):
        ctx = parse_context("generate-alternatives", {"selected_text": "She ran.", "number_of_alternatives": 4})
        assert "exactly 4 alternatives" in build_user_prompt(ctx)

    def test_non_english_projects_ask_for_language(self):
        ctx = parse_context("continue-writing", {"existing_content": "Es war.", "novel_language": "de"})
        assert "Write in German." in build_user_prompt(ctx)
