"""
Story Memory Schema Definitions

Pydantic models for the accumulated record of what has happened in a story:
chapter summaries, per-chapter character knowledge, extracted facts, subplots
and the open questions readers are carrying.

Usage:
    from storyflow.schemas import ChapterSummary, StoryMemory

    summary = ChapterSummary(chapter_number=4, summary="Mara reaches the ferry.")
    memory = StoryMemory(chapter_summaries=[summary])

    # Convert to dict for storage
    memory_dict = memory.model_dump(mode="json")
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MemoryModel(BaseModel):
    """Base model for memory records: unknown keys are ignored, records are frozen."""
    model_config = ConfigDict(extra="ignore", frozen=True)


# ---------------------------------------------------------------------------
# Chapter summaries
# ---------------------------------------------------------------------------

class KeyEvent(MemoryModel):
    """One plot-relevant event, optionally caused by an earlier event."""

    id: Optional[str] = Field(default=None, description="Stable event id, if the summarizer assigned one")
    event: str = Field(..., description="What happened")
    caused_by: Optional[str] = Field(
        default=None,
        description="Id of the event that led to this one",
    )


class ForeshadowingMarker(MemoryModel):
    """A setup planted in a chapter that expects a later payoff."""

    element: str = Field(..., description="The planted detail")
    planned_payoff: Optional[str] = Field(default=None, description="Intended payoff, if known")


class ChapterSummary(MemoryModel):
    """Summary of one finalized chapter. Re-summarizing replaces the record."""

    chapter_id: Optional[str] = None
    chapter_number: int = Field(..., ge=0)
    summary: str = ""
    key_events: List[KeyEvent] = Field(default_factory=list)
    characters_present: List[str] = Field(default_factory=list)
    locations_used: List[str] = Field(default_factory=list)
    emotional_beats: List[str] = Field(default_factory=list)
    foreshadowing: List[ForeshadowingMarker] = Field(default_factory=list)
    payoffs: List[str] = Field(
        default_factory=list,
        description="Foreshadowing elements paid off in this chapter",
    )
    open_questions: List[str] = Field(default_factory=list)
    cliffhanger: Optional[str] = Field(
        default=None,
        description="How the chapter ends, when it ends unresolved",
    )
    token_count: int = 0

    @field_validator("key_events", mode="before")
    @classmethod
    def _coerce_events(cls, value):
        # Summarizers sometimes return bare strings instead of event objects
        if isinstance(value, list):
            return [{"event": v} if isinstance(v, str) else v for v in value]
        return value

    @field_validator("foreshadowing", mode="before")
    @classmethod
    def _coerce_foreshadowing(cls, value):
        if isinstance(value, list):
            return [{"element": v} if isinstance(v, str) else v for v in value]
        return value


# ---------------------------------------------------------------------------
# Character knowledge
# ---------------------------------------------------------------------------

class CharacterKnowledgeState(MemoryModel):
    """What one character knows and believes as of a given chapter.

    ``known_facts`` may hold fact ids or the literal assertion text; both are
    matched when deciding what the character can reference.
    """

    character_id: str
    as_of_chapter: int = Field(..., ge=0)
    known_facts: List[str] = Field(default_factory=list)
    beliefs: List[str] = Field(default_factory=list, description="May be false")
    secrets: List[str] = Field(default_factory=list)
    relationships: Dict[str, str] = Field(
        default_factory=dict,
        description="Other character id -> how this character sees them",
    )
    emotional_state: str = ""
    active_goals: List[str] = Field(default_factory=list)
    recent_experiences: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

class Fact(MemoryModel):
    """A subject-scoped assertion extracted from the manuscript."""

    id: str
    subject_id: str
    subject_type: Literal["character", "location", "object"] = "character"
    subject_name: Optional[str] = Field(
        default=None,
        description="Display name; location facts are matched against task text by this",
    )
    assertion: str
    attribute: Optional[str] = Field(
        default=None,
        description="Attribute the assertion pins down (e.g. 'eye_color')",
    )
    value: Optional[str] = None
    confidence: Literal["explicit", "inferred"] = "explicit"
    source_chapter: int = Field(default=0, ge=0)
    source_citation: Optional[str] = None


# ---------------------------------------------------------------------------
# Subplots
# ---------------------------------------------------------------------------

class SubplotStatus(str, Enum):
    """Ordered progression of a subplot; the last two are terminal."""

    SETUP = "setup"
    DEVELOPING = "developing"
    ESCALATING = "escalating"
    CLIMAX = "climax"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"

    @property
    def is_closed(self) -> bool:
        return self in (SubplotStatus.RESOLVED, SubplotStatus.ABANDONED)


class TensionPoint(MemoryModel):
    chapter_number: int = Field(..., ge=0)
    tension_level: int = Field(..., ge=0, le=10)


class Subplot(MemoryModel):
    id: str
    name: str
    description: str = ""
    status: SubplotStatus = SubplotStatus.SETUP
    related_character_ids: List[str] = Field(default_factory=list)
    setup_scene_id: Optional[str] = None
    tension_curve: List[TensionPoint] = Field(default_factory=list)

    @field_validator("tension_curve")
    @classmethod
    def _order_curve(cls, points: List[TensionPoint]) -> List[TensionPoint]:
        ordered = sorted(points, key=lambda p: p.chapter_number)
        chapters = [p.chapter_number for p in ordered]
        if len(chapters) != len(set(chapters)):
            raise ValueError("tension_curve has more than one point for a chapter")
        return ordered


class SubplotTouch(MemoryModel):
    """Evidence that a subplot appeared in a chapter."""

    subplot_id: str
    chapter_number: int = Field(..., ge=0)
    touch_type: str = "mention"
    tension_level: int = Field(default=0, ge=0, le=10)


# ---------------------------------------------------------------------------
# Open questions
# ---------------------------------------------------------------------------

class OpenQuestion(MemoryModel):
    question: str
    raised_in_chapter: int = Field(default=0, ge=0)
    resolved_in_chapter: Optional[int] = None


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class StoryMemory(BaseModel):
    """Everything the story has accumulated so far, as one document."""
    model_config = ConfigDict(extra="ignore")

    chapter_summaries: List[ChapterSummary] = Field(default_factory=list)
    character_knowledge_states: List[CharacterKnowledgeState] = Field(default_factory=list)
    facts: List[Fact] = Field(default_factory=list)
    subplots: List[Subplot] = Field(default_factory=list)
    subplot_touches: List[SubplotTouch] = Field(default_factory=list)
    open_questions: List[OpenQuestion] = Field(default_factory=list)
    planned_chapter_count: Optional[int] = Field(
        default=None,
        description="Target length of the novel in chapters, when the author set one",
    )


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------

class FactContradiction(BaseModel):
    subject_id: str
    attribute: str
    fact_ids: List[str]
    values: List[str]


class SubplotWarning(BaseModel):
    subplot_id: str
    type: Literal["dormant", "missing_setup", "unresolved"]
    message: str
    last_touched_chapter: int
    current_chapter: int


# ---------------------------------------------------------------------------
# Retrieval output
# ---------------------------------------------------------------------------

class PovConstraint(BaseModel):
    """What the point-of-view character may not reference, and what they must keep in mind."""

    character_id: Optional[str] = None
    as_of_chapter: Optional[int] = None
    cannot_know: List[Fact] = Field(default_factory=list)
    must_remember: List[str] = Field(default_factory=list)
    emotional_state: str = ""


class SelectedSubplot(BaseModel):
    subplot: Subplot
    last_touched_chapter: int
    chapters_since_touch: int


class ContextBundle(BaseModel):
    """The bounded, ranked slice of story memory sent with one generation request."""

    current_chapter: int = 0
    summaries: List[ChapterSummary] = Field(default_factory=list)
    character_states: List[CharacterKnowledgeState] = Field(default_factory=list)
    facts: List[Fact] = Field(default_factory=list)
    subplots: List[SelectedSubplot] = Field(default_factory=list)
    open_questions: List[str] = Field(default_factory=list)
    unresolved_setups: List[str] = Field(default_factory=list)
    pov_constraints: PovConstraint = Field(default_factory=PovConstraint)
    degraded: bool = Field(
        default=False,
        description="True when retrieval fell back to a reduced bundle",
    )

    def leaked_items(self) -> List[str]:
        """Anything in ``cannot_know`` that also shows up elsewhere in the bundle."""
        forbidden_ids = {f.id for f in self.pov_constraints.cannot_know}
        forbidden_text = {" ".join(f.assertion.lower().split()) for f in self.pov_constraints.cannot_know}
        leaks: List[str] = [f.id for f in self.facts if f.id in forbidden_ids]

        def _check(text: str) -> None:
            if text in forbidden_ids or " ".join(text.lower().split()) in forbidden_text:
                leaks.append(text)

        for fact in self.facts:
            _check(fact.assertion)
        for summary in self.summaries:
            _check(summary.summary)
            for event in summary.key_events:
                _check(event.event)
        for text in (*self.open_questions, *self.unresolved_setups,
                     *self.pov_constraints.must_remember):
            _check(text)
        for state in self.character_states:
            for text in (*state.known_facts, *state.beliefs, *state.secrets, *state.active_goals):
                _check(text)
        return leaks
