"""Subplot health warnings shown next to the consistency report."""

from __future__ import annotations

from typing import List

from storyflow.memory.store import StoryMemoryStore
from storyflow.schemas.memory import SubplotStatus, SubplotWarning

DORMANT_AFTER_CHAPTERS = 3
DEFAULT_PLANNED_CHAPTERS = 30
LATE_STORY_FRACTION = 0.8


def subplot_warnings(store: StoryMemoryStore, current_chapter: int) -> List[SubplotWarning]:
    """Flag open subplots that look neglected, unplanted, or overdue.

    Each heuristic is reported on its own; none of them feeds retrieval
    ranking, which only looks at chapters since the last touch.
    """
    planned = store.planned_chapter_count or DEFAULT_PLANNED_CHAPTERS
    warnings: List[SubplotWarning] = []

    for subplot in store.subplots():
        if subplot.status.is_closed:
            continue

        touches = store.touches(subplot.id)
        last_touch = store.last_touch_chapter(subplot.id, current_chapter) or 0

        if last_touch > 0 and current_chapter - last_touch >= DORMANT_AFTER_CHAPTERS:
            warnings.append(SubplotWarning(
                subplot_id=subplot.id,
                type="dormant",
                message=f'"{subplot.name}" hasn\'t appeared in {current_chapter - last_touch} chapters',
                last_touched_chapter=last_touch,
                current_chapter=current_chapter,
            ))

        if not subplot.setup_scene_id and not touches:
            warnings.append(SubplotWarning(
                subplot_id=subplot.id,
                type="missing_setup",
                message=f'"{subplot.name}" has no setup scene defined',
                last_touched_chapter=0,
                current_chapter=current_chapter,
            ))

        if current_chapter > planned * LATE_STORY_FRACTION and subplot.status != SubplotStatus.CLIMAX:
            warnings.append(SubplotWarning(
                subplot_id=subplot.id,
                type="unresolved",
                message=f'"{subplot.name}" should be reaching climax/resolution soon',
                last_touched_chapter=last_touch,
                current_chapter=current_chapter,
            ))

    return warnings
