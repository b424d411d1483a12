"""
Generation request/response schemas.

A request names an ``action``; its ``context`` dict is validated against the
action's context model via :func:`parse_context`. The context models form a
discriminated union on ``action``, so every action has exactly one shape.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from typing_extensions import Annotated

from storyflow.schemas.memory import StoryMemory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Hard limits
# ---------------------------------------------------------------------------
MAX_TEXT_CHARS = 200_000
MAX_GENERATION_ID_CHARS = 128


class ContextValidationError(ValueError):
    """Raised when a request's context does not match its action."""


# ---------------------------------------------------------------------------
# Shared project data
# ---------------------------------------------------------------------------

class NovelSpecification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    working_title: str = "Untitled"
    genre: List[str] = Field(default_factory=list)
    subgenre: List[str] = Field(default_factory=list)
    target_audience: str = "Adult"
    pov: str = "Third Limited"
    tense: str = "Past"
    tone: str = ""
    themes: List[str] = Field(default_factory=list)
    target_word_count: int = 80_000


class CharacterBrief(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    role: str = "supporting"
    age: Optional[str] = None
    physical_description: str = ""
    personality: List[str] = Field(default_factory=list)
    speech_patterns: str = ""


class PlotBeat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: str
    summary: str = ""


# ---------------------------------------------------------------------------
# Per-action contexts
# ---------------------------------------------------------------------------

class BaseContext(BaseModel):
    """Fields every action accepts: project data plus the writing position."""
    model_config = ConfigDict(extra="ignore")

    project_id: Optional[str] = Field(default=None, max_length=128)
    novel_language: Literal["en", "de", "fr", "es", "it"] = "en"
    specification: Optional[NovelSpecification] = None
    characters: List[CharacterBrief] = Field(default_factory=list)

    current_chapter: int = Field(default=0, ge=0)
    pov_character_id: Optional[str] = None
    scene_character_ids: List[str] = Field(default_factory=list)
    task_description: str = Field(default="", max_length=10_000)

    story_memory: Optional[StoryMemory] = Field(
        default=None,
        description="Inline memory snapshot; takes precedence over the stored one",
    )


class ChapterContext(BaseContext):
    action: Literal["generate-chapter", "generate-chapter-draft"]
    title: str = ""
    synopsis: str = ""
    outline: str = ""
    plot_beats: List[PlotBeat] = Field(default_factory=list)
    target_word_count: int = Field(default=3000, gt=0)


class SceneContext(BaseContext):
    action: Literal["generate-scene", "generate-scene-prose"]
    title: str = ""
    summary: str = ""
    setting: str = ""
    scene_goal: str = ""
    conflict: str = ""
    opening_emotion: str = ""
    closing_emotion: str = ""
    previous_content: str = Field(default="", max_length=MAX_TEXT_CHARS)
    target_word_count: int = Field(default=1500, gt=0)


class ContinueWritingContext(BaseContext):
    action: Literal["continue-writing"]
    existing_content: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)
    direction: str = ""
    target_word_count: int = Field(default=500, gt=0)


class SelectionContext(BaseContext):
    action: Literal["expand-selection", "condense-selection", "rewrite-selection", "generate-alternatives"]
    selected_text: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)
    surrounding_context: str = Field(default="", max_length=MAX_TEXT_CHARS)
    instructions: str = ""
    number_of_alternatives: int = Field(default=3, ge=1, le=10)


class CharacterContext(BaseContext):
    action: Literal["generate-character", "deepen-character"]
    role: Literal["protagonist", "antagonist", "supporting", "minor"] = "supporting"
    archetype: str = ""
    character: Optional[CharacterBrief] = None
    aspect_to_deepen: Literal["backstory", "personality", "motivation", "arc", "voice", "all"] = "all"


class DialogueContext(BaseContext):
    action: Literal["generate-dialogue", "generate-character-dialogue"]
    situation: str = ""
    emotion: str = ""
    speaking_to: Optional[str] = None
    previous_dialogue: List[str] = Field(default_factory=list)


class PlotContext(BaseContext):
    action: Literal["expand-beat", "suggest-twists"]
    beat: Optional[PlotBeat] = None
    detail_level: Literal["outline", "detailed", "prose"] = "detailed"
    target_surprise_level: Literal["mild", "moderate", "shocking"] = "moderate"


class SuggestionContext(BaseContext):
    action: Literal["suggest-titles", "suggest-tones", "suggest-themes", "suggest-keywords"]
    synopsis: str = ""
    number_of_suggestions: int = Field(default=5, ge=1, le=20)


class WikiContext(BaseContext):
    action: Literal["extract-elements", "expand-entry"]
    chapter_content: str = Field(default="", max_length=MAX_TEXT_CHARS)
    entry_title: str = ""
    entry_content: str = ""
    categories: List[str] = Field(default_factory=list)


class BrainstormContext(BaseContext):
    action: Literal["analyze-brainstorm", "generate-foundations"]
    brainstorm_text: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)


class MarketingContext(BaseContext):
    action: Literal["generate-synopsis", "generate-query-letter", "generate-book-description", "analyze-market"]
    synopsis: str = ""
    target_length: Literal["short", "medium", "long"] = "medium"
    target_market: str = ""


class MemoryUpkeepContext(BaseContext):
    action: Literal["summarize-chapter", "update-character-knowledge"]
    chapter_number: int = Field(default=0, ge=0)
    chapter_content: str = Field(default="", max_length=MAX_TEXT_CHARS)
    character_id: Optional[str] = None
    character_name: str = ""


GenerationContext = Annotated[
    Union[
        ChapterContext,
        SceneContext,
        ContinueWritingContext,
        SelectionContext,
        CharacterContext,
        DialogueContext,
        PlotContext,
        SuggestionContext,
        WikiContext,
        BrainstormContext,
        MarketingContext,
        MemoryUpkeepContext,
    ],
    Field(discriminator="action"),
]

_CONTEXT_ADAPTER = TypeAdapter(GenerationContext)


def _actions_of(model: type[BaseContext]) -> tuple[str, ...]:
    return get_args(model.model_fields["action"].annotation)


# action -> context model
ACTION_CONTEXTS: dict[str, type[BaseContext]] = {
    action: model
    for model in get_args(get_args(GenerationContext)[0])
    for action in _actions_of(model)
}

SUPPORTED_ACTIONS = frozenset(ACTION_CONTEXTS)


def parse_context(action: str, raw_context: dict | None) -> BaseContext:
    """Validate *raw_context* against the model registered for *action*.

    Raises :class:`ContextValidationError` with a readable message on failure.
    """
    if action not in ACTION_CONTEXTS:
        raise ContextValidationError(f"Unknown action: {action}")

    payload = dict(raw_context or {})
    payload["action"] = action
    try:
        return _CONTEXT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(l) for l in e['loc'])}: {e['msg']}"
            for e in exc.errors()
        )
        logger.info("context_validation_failed | action=%s | errors=%s", action, errors)
        raise ContextValidationError(f"Invalid context for '{action}': {errors}") from exc


# ---------------------------------------------------------------------------
# Request / response envelopes
# ---------------------------------------------------------------------------

class GenerationRequest(BaseModel):
    agent_target: Optional[str] = None
    action: str = Field(..., min_length=1, max_length=100)
    context: Dict[str, Any] = Field(default_factory=dict)
    generation_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=MAX_GENERATION_ID_CHARS,
        description="Caller-chosen id; generated when omitted",
    )


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class GenerationResponse(BaseModel):
    status: Literal["success", "cancelled", "error"]
    generation_id: str
    agent: str
    result: Optional[str] = None
    error: Optional[str] = None
    usage: Optional[Usage] = None


class GenerationProgress(BaseModel):
    generation_id: str
    status: Literal["initializing", "analyzing", "generating", "processing", "completed", "error", "cancelled"]
    progress: int = Field(..., ge=0, le=100)
    message: str
    result: Optional[str] = None
    error: Optional[str] = None
    usage: Optional[Usage] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "error", "cancelled")
