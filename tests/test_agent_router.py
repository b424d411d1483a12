"""Tests for agent routing: resolve() is total and falls back to the writer."""

import pytest

from storyflow.agents import router
from storyflow.schemas.generation import SUPPORTED_ACTIONS


class TestResolve:
    def test_known_target(self):
        descriptor = router.resolve("character")
        assert descriptor.name == "CharacterAgent"
        assert "generate-dialogue" in descriptor.capabilities

    def test_case_insensitive_target(self):
        assert router.resolve("StoryMemory").target == "storyMemory"
        assert router.resolve("  PLOT ").target == "plot"

    @pytest.mark.parametrize("target", ["nonexistent-agent", "", "   ", None, 42, ["writer"], {}])
    def test_unknown_or_odd_targets_fall_back_to_writer(self, target):
        descriptor = router.resolve(target)
        assert descriptor.target == router.DEFAULT_AGENT
        assert descriptor.system_instructions

    def test_every_agent_has_instructions_and_capabilities(self):
        for descriptor in router.all_agents():
            assert descriptor.system_instructions
            assert descriptor.capabilities

    def test_capabilities_name_real_actions(self):
        for descriptor in router.all_agents():
            assert set(descriptor.capabilities) <= SUPPORTED_ACTIONS, descriptor.target

    def test_is_action_supported_uses_fallback(self):
        assert router.is_action_supported("writer", "continue-writing")
        assert router.is_action_supported("unknown", "continue-writing")
        assert not router.is_action_supported("market", "continue-writing")

    def test_available_agents_lists_default(self):
        assert router.DEFAULT_AGENT in router.available_agents()
