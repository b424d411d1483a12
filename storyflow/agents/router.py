"""Agent routing: maps an agent target to the descriptor used for a request.

``resolve`` is total. Anything it does not recognise (unknown names, empty
strings, ``None``, non-strings) routes to the writer agent.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Tuple

DEFAULT_AGENT = "writer"


@dataclasses.dataclass(frozen=True)
class AgentDescriptor:
    target: str
    name: str
    description: str
    system_instructions: str
    capabilities: Tuple[str, ...] = ()


def _agent(target, name, description, capabilities, instructions) -> AgentDescriptor:
    return AgentDescriptor(
        target=target,
        name=name,
        description=description,
        system_instructions=" ".join(instructions.split()),
        capabilities=tuple(capabilities),
    )


_AGENTS: Dict[str, AgentDescriptor] = {
    a.target: a
    for a in (
        _agent(
            "writer", "WriterAgent",
            "Prose generation, narrative writing, and creative content",
            ["generate-chapter", "generate-chapter-draft", "generate-scene-prose",
             "continue-writing", "expand-selection", "condense-selection",
             "rewrite-selection", "generate-alternatives"],
            """You are a world-class fiction writer with expertise in prose, narrative voice,
            and creative writing. You write vivid, engaging prose that matches the specified
            POV, tense, and style. Always maintain consistency with the story's
            specification, characters, and established facts.""",
        ),
        _agent(
            "character", "CharacterAgent",
            "Character profiles, dialogue, and character voice",
            ["generate-character", "deepen-character", "generate-dialogue",
             "generate-character-dialogue"],
            """You are an expert in character development and psychology. You create deep,
            nuanced characters with consistent voices, clear motivations, and believable
            flaws. When generating dialogue, each character should sound distinct and true
            to their personality.""",
        ),
        _agent(
            "chapter", "ChapterAgent",
            "Chapter structure, outlining, and content generation",
            ["generate-chapter", "generate-chapter-draft", "generate-scene"],
            """You are a story editor who plans chapters. You break chapters into scenes with
            clear goals, conflict and turns, and keep each chapter connected to the plot
            beats around it.""",
        ),
        _agent(
            "plot", "PlotAgent",
            "Plot structure, story arcs, and narrative frameworks",
            ["expand-beat", "suggest-twists", "generate-scene"],
            """You are a master story architect with deep knowledge of narrative structure.
            You help develop compelling plot beats with proper setup and payoff, rising
            tension, and satisfying resolutions. Always consider genre conventions and
            reader expectations.""",
        ),
        _agent(
            "review", "CriticAgent",
            "Manuscript critique, quality analysis, and improvement suggestions",
            ["rewrite-selection", "condense-selection"],
            """You are a professional book editor and literary critic. You provide
            constructive, specific feedback on plot coherence, character consistency,
            pacing, dialogue, prose style and emotional impact. Be honest but
            constructive.""",
        ),
        _agent(
            "wiki", "WikiAgent",
            "World-building, consistency checking, and lore management",
            ["extract-elements", "expand-entry"],
            """You are a worldbuilding expert and continuity editor. You help maintain
            consistency across locations, timeline, magic systems, cultures, and lore, and
            you flag potential contradictions.""",
        ),
        _agent(
            "market", "MarketAgent",
            "Market analysis, comparable titles, and positioning",
            ["analyze-market", "suggest-keywords", "generate-synopsis",
             "generate-query-letter", "generate-book-description", "suggest-titles"],
            """You are a publishing industry expert with knowledge of current market trends.
            You analyze manuscripts for market positioning, comparable titles, and genre
            fit, and write cover copy, synopses and query letters.""",
        ),
        _agent(
            "brainstorm", "BrainstormAgent",
            "Turning raw creative ideas into story foundations",
            ["analyze-brainstorm", "generate-foundations", "suggest-tones", "suggest-themes",
             "suggest-titles"],
            """You are a creative development partner who helps authors develop raw ideas into
            story foundations. You identify implicit plot structures, character archetypes,
            and thematic elements, and produce actionable story seeds.""",
        ),
        _agent(
            "storyMemory", "StoryMemoryAgent",
            "Chapter summaries and character knowledge tracking",
            ["summarize-chapter", "update-character-knowledge"],
            """You are a story continuity expert who maintains perfect recall of narrative
            details. You summarize chapters with focus on plot-relevant information,
            character knowledge states, and setup/payoff tracking. You track what each
            character knows at any given point in the story.""",
        ),
        _agent(
            "continuity", "ContinuityAgent",
            "Fact extraction and contradiction tracking",
            ["extract-elements"],
            """You are a meticulous continuity editor who tracks every detail in a
            manuscript: physical descriptions, knowledge states, relationships, locations,
            timeline and objects. You flag contradictions with specific citations.""",
        ),
    )
}


def resolve(agent_target: Any) -> AgentDescriptor:
    """Return the descriptor for *agent_target*, falling back to the writer."""
    if isinstance(agent_target, str):
        key = agent_target.strip()
        if key in _AGENTS:
            return _AGENTS[key]
        for target, descriptor in _AGENTS.items():
            if target.lower() == key.lower():
                return descriptor
    return _AGENTS[DEFAULT_AGENT]


def available_agents() -> List[str]:
    return list(_AGENTS)


def all_agents() -> List[AgentDescriptor]:
    return list(_AGENTS.values())


def is_action_supported(agent_target: Any, action: str) -> bool:
    return action in resolve(agent_target).capabilities
