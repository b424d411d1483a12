"""
Context retrieval: picks the slice of story memory that rides along with a
generation request.

Selection order:
    1. POV constraint: latest knowledge state at or before the current chapter,
       the facts the POV character cannot know, and their recent experiences.
    2. Chapter summaries, newest first, capped by budget. The chapter just
       before the current one is pinned when it ends on a cliffhanger.
    3. Facts about the POV character, characters in the scene, and locations
       named in the task, minus anything the POV character cannot know.
    4. Open subplots touched within the recency window, most dormant first.
    5. Every unresolved open question and foreshadowing setup (never capped).

Ranking is fully deterministic; ties fall back to recency and then to ids.
"""
from __future__ import annotations

import dataclasses
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from storyflow.memory.store import StoryMemoryStore
from storyflow.schemas.memory import (
    ChapterSummary,
    CharacterKnowledgeState,
    ContextBundle,
    Fact,
    PovConstraint,
    SelectedSubplot,
)
from storyflow.utils.logging_config import get_logger

logger = get_logger("storyflow.retrieval")


def _norm(text: str | None) -> str:
    return " ".join((text or "").lower().split())


def _dedupe(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for item in items:
        key = _norm(item)
        if key and key not in seen:
            seen.add(key)
            out.append(item)
    return out


@dataclasses.dataclass(frozen=True)
class RetrievalBudget:
    """Item ceilings per category. Open questions and setups are never capped."""

    max_summaries: int = 3
    max_facts: int = 20
    max_character_states: int = 5
    max_subplots: int = 5
    subplot_recency_window: int = 10

    @classmethod
    def from_settings(cls, settings=None) -> "RetrievalBudget":
        if settings is None:
            from storyflow.config import get_settings
            settings = get_settings()
        return cls(
            max_summaries=settings.retrieval_max_summaries,
            max_facts=settings.retrieval_max_facts,
            max_character_states=settings.retrieval_max_character_states,
            max_subplots=settings.retrieval_max_subplots,
            subplot_recency_window=settings.subplot_recency_window,
        )


class ContextRetrievalPolicy:
    """Stateless selector; one instance can serve every request."""

    def __init__(self, budget: RetrievalBudget | None = None):
        self.budget = budget or RetrievalBudget()

    def select(
        self,
        current_chapter: int,
        pov_character_id: Optional[str],
        task_description: str,
        store: StoryMemoryStore,
        scene_character_ids: Sequence[str] = (),
    ) -> ContextBundle:
        """Build the context bundle for one writing position.

        Never raises: a failure while reading memory degrades to an empty
        bundle so generation can still go ahead with less context.
        """
        try:
            return self._select(
                current_chapter, pov_character_id, task_description or "",
                store, list(scene_character_ids),
            )
        except Exception:
            logger.warning(
                "Context retrieval failed; continuing with an empty bundle",
                exc_info=True,
                extra={"metadata": {"chapter": current_chapter, "pov": pov_character_id}},
            )
            return ContextBundle(current_chapter=current_chapter, degraded=True)

    # ------------------------------------------------------------------

    def _select(
        self,
        current_chapter: int,
        pov_id: Optional[str],
        task: str,
        store: StoryMemoryStore,
        scene_ids: List[str],
    ) -> ContextBundle:
        # Facts established after the writing position are invisible to everyone.
        visible_facts = [f for f in store.facts() if f.source_chapter <= current_chapter]

        constraint, degraded = self._pov_constraint(store, pov_id, current_chapter, visible_facts)
        forbidden_ids = {f.id for f in constraint.cannot_know}
        forbidden_text = {_norm(f.assertion) for f in constraint.cannot_know}

        def allowed(text: str) -> bool:
            return text not in forbidden_ids and _norm(text) not in forbidden_text

        summaries = [
            self._redact_summary(s, allowed)
            for s in self._select_summaries(store, current_chapter)
        ]
        facts = self._select_facts(visible_facts, pov_id, scene_ids, task, forbidden_ids)
        facts = [f for f in facts if allowed(f.assertion)]

        constraint.must_remember = [m for m in constraint.must_remember if allowed(m)]

        return ContextBundle(
            current_chapter=current_chapter,
            summaries=summaries,
            character_states=self._select_states(store, pov_id, scene_ids, current_chapter, allowed),
            facts=facts,
            subplots=self._select_subplots(store, current_chapter),
            open_questions=[q for q in self._open_questions(store, current_chapter) if allowed(q)],
            unresolved_setups=[s for s in self._unresolved_setups(store, current_chapter) if allowed(s)],
            pov_constraints=constraint,
            degraded=degraded,
        )

    # --- 1. POV constraint ------------------------------------------------

    def _pov_constraint(
        self,
        store: StoryMemoryStore,
        pov_id: Optional[str],
        current_chapter: int,
        visible_facts: List[Fact],
    ) -> Tuple[PovConstraint, bool]:
        if not pov_id:
            return PovConstraint(), False

        state = store.latest_knowledge_state(pov_id, current_chapter)
        if state is None:
            logger.warning(
                "No knowledge state for POV character %s at chapter %d; POV constraints left empty",
                pov_id, current_chapter,
                extra={"event_type": "retrieval_degraded"},
            )
            return PovConstraint(character_id=pov_id), True

        known_refs = set(state.known_facts)
        known_text = {_norm(k) for k in state.known_facts}
        known_subjects: Set[str] = {pov_id, *state.relationships}
        known_names: Set[str] = set()

        for fact in visible_facts:
            if fact.id in known_refs or _norm(fact.assertion) in known_text:
                known_subjects.add(fact.subject_id)

        # Places and people the POV character shared a chapter with
        pov_key = _norm(pov_id)
        for summary in store.summaries(before_chapter=state.as_of_chapter + 1):
            present = {_norm(c) for c in summary.characters_present}
            if pov_key in present:
                known_names.update(present)
                known_names.update(_norm(loc) for loc in summary.locations_used)

        def knows(fact: Fact) -> bool:
            return (
                fact.subject_id in known_subjects
                or _norm(fact.subject_id) in known_names
                or (fact.subject_name is not None and _norm(fact.subject_name) in known_names)
            )

        cannot_know = sorted(
            (f for f in visible_facts if not knows(f)),
            key=lambda f: (-f.source_chapter, f.id),
        )
        return PovConstraint(
            character_id=pov_id,
            as_of_chapter=state.as_of_chapter,
            cannot_know=cannot_know,
            must_remember=_dedupe(state.recent_experiences),
            emotional_state=state.emotional_state,
        ), False

    # --- 2. Summaries -------------------------------------------------------

    def _select_summaries(self, store: StoryMemoryStore, current_chapter: int) -> List[ChapterSummary]:
        candidates = sorted(
            store.summaries(before_chapter=current_chapter),
            key=lambda s: s.chapter_number,
            reverse=True,
        )
        selected = candidates[: max(self.budget.max_summaries, 0)]

        previous = store.summary_for(current_chapter - 1)
        if previous is not None and previous.cliffhanger and previous not in selected:
            selected.append(previous)
            selected.sort(key=lambda s: s.chapter_number, reverse=True)
        return selected

    @staticmethod
    def _redact_summary(summary: ChapterSummary, allowed) -> ChapterSummary:
        events = [e for e in summary.key_events if allowed(e.event)]
        text = summary.summary if allowed(summary.summary) else ""
        if len(events) == len(summary.key_events) and text == summary.summary:
            return summary
        return summary.model_copy(update={"key_events": events, "summary": text})

    # --- 3. Facts -------------------------------------------------------------

    def _select_facts(
        self,
        visible_facts: List[Fact],
        pov_id: Optional[str],
        scene_ids: List[str],
        task: str,
        forbidden_ids: Set[str],
    ) -> List[Fact]:
        task_text = _norm(task)
        scene = set(scene_ids)

        def priority(fact: Fact) -> Optional[int]:
            if pov_id and fact.subject_id == pov_id:
                return 0
            if fact.subject_id in scene:
                return 1
            if fact.subject_type == "location" and task_text:
                names = [_norm(fact.subject_name), _norm(fact.subject_id)]
                if any(name and name in task_text for name in names):
                    return 2
            return None

        ranked = []
        for fact in visible_facts:
            if fact.id in forbidden_ids:
                continue
            rank = priority(fact)
            if rank is not None:
                ranked.append((rank, fact.confidence != "explicit", -fact.source_chapter, fact.id, fact))
        ranked.sort(key=lambda item: item[:4])
        return [item[-1] for item in ranked[: max(self.budget.max_facts, 0)]]

    # --- character states -----------------------------------------------------

    def _select_states(
        self,
        store: StoryMemoryStore,
        pov_id: Optional[str],
        scene_ids: List[str],
        current_chapter: int,
        allowed,
    ) -> List[CharacterKnowledgeState]:
        states: List[CharacterKnowledgeState] = []
        for character_id in _dedupe([c for c in [pov_id, *scene_ids] if c]):
            state = store.latest_knowledge_state(character_id, current_chapter)
            if state is None:
                continue
            # Another character's secrets are not the narrator's to tell
            secrets = state.secrets if character_id == pov_id else []
            update = {
                "known_facts": [k for k in state.known_facts if allowed(k)],
                "beliefs": [b for b in state.beliefs if allowed(b)],
                "secrets": [s for s in secrets if allowed(s)],
                "active_goals": [g for g in state.active_goals if allowed(g)],
            }
            if any(update[key] != getattr(state, key) for key in update):
                state = state.model_copy(update=update)
            states.append(state)
        return states[: max(self.budget.max_character_states, 0)]

    # --- 4. Subplots ----------------------------------------------------------

    def _select_subplots(self, store: StoryMemoryStore, current_chapter: int) -> List[SelectedSubplot]:
        picked: List[SelectedSubplot] = []
        for subplot in store.subplots():
            if subplot.status.is_closed:
                continue
            last = store.last_touch_chapter(subplot.id, current_chapter)
            if last is None:
                continue
            since = current_chapter - last
            if since > self.budget.subplot_recency_window:
                continue
            picked.append(SelectedSubplot(subplot=subplot, last_touched_chapter=last, chapters_since_touch=since))

        picked.sort(key=lambda s: (-s.chapters_since_touch, s.subplot.id))
        return picked[: max(self.budget.max_subplots, 0)]

    # --- 5. Carry-forward -----------------------------------------------------

    @staticmethod
    def _open_questions(store: StoryMemoryStore, current_chapter: int) -> List[str]:
        resolved: Set[str] = set()
        tracked: List[str] = []
        for question in store.open_questions():
            if question.raised_in_chapter > current_chapter:
                continue
            if question.resolved_in_chapter is not None and question.resolved_in_chapter < current_chapter:
                resolved.add(_norm(question.question))
            else:
                tracked.append(question.question)

        from_summaries = [
            q for s in store.summaries(before_chapter=current_chapter) for q in s.open_questions
        ]
        return [q for q in _dedupe([*from_summaries, *tracked]) if _norm(q) not in resolved]

    @staticmethod
    def _unresolved_setups(store: StoryMemoryStore, current_chapter: int) -> List[str]:
        earlier = store.summaries(before_chapter=current_chapter)
        paid = {_norm(p) for s in earlier for p in s.payoffs}
        planted = [m.element for s in earlier for m in s.foreshadowing]
        return [p for p in _dedupe(planted) if _norm(p) not in paid]
