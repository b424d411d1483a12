"""Read-only view over a project's story memory."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional

from storyflow.schemas.memory import (
    ChapterSummary,
    CharacterKnowledgeState,
    Fact,
    FactContradiction,
    OpenQuestion,
    StoryMemory,
    Subplot,
    SubplotTouch,
)


def _norm(text: str) -> str:
    return " ".join(text.lower().split())


class StoryMemoryStore:
    """Indexes a :class:`StoryMemory` snapshot for the lookups retrieval needs.

    The store never mutates the snapshot. When two summaries exist for the
    same chapter number the later one in the list wins, matching
    "re-summarization replaces".
    """

    def __init__(self, memory: StoryMemory | None = None):
        self._memory = memory or StoryMemory()

        self._summaries: Dict[int, ChapterSummary] = {}
        for summary in self._memory.chapter_summaries:
            self._summaries[summary.chapter_number] = summary

        self._states: Dict[str, List[CharacterKnowledgeState]] = defaultdict(list)
        for state in self._memory.character_knowledge_states:
            self._states[state.character_id].append(state)
        for states in self._states.values():
            states.sort(key=lambda s: s.as_of_chapter)

        self._facts_by_subject: Dict[str, List[Fact]] = defaultdict(list)
        for fact in self._memory.facts:
            self._facts_by_subject[fact.subject_id].append(fact)

        self._touches: Dict[str, List[SubplotTouch]] = defaultdict(list)
        for touch in self._memory.subplot_touches:
            self._touches[touch.subplot_id].append(touch)

    @property
    def snapshot(self) -> StoryMemory:
        return self._memory

    @property
    def planned_chapter_count(self) -> Optional[int]:
        return self._memory.planned_chapter_count

    # --- summaries ---------------------------------------------------------

    def summaries(self, before_chapter: int | None = None) -> List[ChapterSummary]:
        """Summaries in ascending chapter order, optionally only those before a chapter."""
        numbers = sorted(self._summaries)
        if before_chapter is not None:
            numbers = [n for n in numbers if n < before_chapter]
        return [self._summaries[n] for n in numbers]

    def summary_for(self, chapter_number: int) -> Optional[ChapterSummary]:
        return self._summaries.get(chapter_number)

    # --- character knowledge ----------------------------------------------

    def knowledge_states(self, character_id: str) -> List[CharacterKnowledgeState]:
        return list(self._states.get(character_id, []))

    def latest_knowledge_state(
        self, character_id: str, at_or_before: int
    ) -> Optional[CharacterKnowledgeState]:
        """Most recent state for *character_id* that does not look past *at_or_before*."""
        latest = None
        for state in self._states.get(character_id, []):
            if state.as_of_chapter > at_or_before:
                break
            latest = state
        return latest

    def character_ids(self) -> List[str]:
        return sorted(self._states)

    # --- facts ----------------------------------------------------------------

    def facts(self) -> List[Fact]:
        return list(self._memory.facts)

    def facts_about(self, subject_id: str) -> List[Fact]:
        return list(self._facts_by_subject.get(subject_id, []))

    def contradictions(self) -> List[FactContradiction]:
        """Facts that pin the same attribute of one subject to different values."""
        found: List[FactContradiction] = []
        for subject_id in sorted(self._facts_by_subject):
            by_attribute: Dict[str, List[Fact]] = defaultdict(list)
            for fact in self._facts_by_subject[subject_id]:
                if fact.attribute and fact.value is not None:
                    by_attribute[fact.attribute].append(fact)
            for attribute in sorted(by_attribute):
                facts = by_attribute[attribute]
                values = {_norm(f.value) for f in facts}
                if len(values) > 1:
                    found.append(FactContradiction(
                        subject_id=subject_id,
                        attribute=attribute,
                        fact_ids=[f.id for f in facts],
                        values=[f.value for f in facts],
                    ))
        return found

    # --- subplots -------------------------------------------------------------

    def subplots(self) -> List[Subplot]:
        return list(self._memory.subplots)

    def touches(self, subplot_id: str) -> List[SubplotTouch]:
        return list(self._touches.get(subplot_id, []))

    def last_touch_chapter(self, subplot_id: str, at_or_before: int) -> Optional[int]:
        chapters = [
            t.chapter_number for t in self._touches.get(subplot_id, [])
            if t.chapter_number <= at_or_before
        ]
        return max(chapters) if chapters else None

    # --- open questions -----------------------------------------------------

    def open_questions(self) -> List[OpenQuestion]:
        return list(self._memory.open_questions)
