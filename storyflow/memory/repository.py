"""Load and save story-memory snapshots, one JSON document per project."""

from __future__ import annotations

from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyflow.models import StoryMemoryRecord
from storyflow.schemas.memory import StoryMemory
from storyflow.utils.logging_config import get_logger

logger = get_logger("storyflow.memory.repository")


class StaleMemoryError(Exception):
    """Raised when a save names a version that is no longer current."""

    def __init__(self, project_id: str, expected: int, actual: int):
        super().__init__(
            f"Story memory for {project_id} is at version {actual}, not {expected}"
        )
        self.project_id = project_id
        self.expected = expected
        self.actual = actual


async def _get_record(session: AsyncSession, project_id: str) -> Optional[StoryMemoryRecord]:
    result = await session.execute(
        select(StoryMemoryRecord).where(StoryMemoryRecord.project_id == project_id)
    )
    return result.scalar_one_or_none()


async def load_story_memory(session: AsyncSession, project_id: str) -> Optional[Tuple[StoryMemory, int]]:
    """Return ``(snapshot, version_number)``, or None if the project has none."""
    record = await _get_record(session, project_id)
    if record is None:
        return None
    return StoryMemory.model_validate(record.content or {}), record.version_number


async def save_story_memory(
    session: AsyncSession,
    project_id: str,
    memory: StoryMemory,
    expected_version: Optional[int] = None,
) -> int:
    """Replace the project's snapshot and return the new version number.

    With ``expected_version`` set, the save is refused if someone else saved
    in between.
    """
    record = await _get_record(session, project_id)
    content = memory.model_dump(mode="json")

    if record is None:
        if expected_version not in (None, 0):
            raise StaleMemoryError(project_id, expected_version, 0)
        record = StoryMemoryRecord(project_id=project_id, content=content, version_number=1)
        session.add(record)
    else:
        if expected_version is not None and expected_version != record.version_number:
            raise StaleMemoryError(project_id, expected_version, record.version_number)
        record.content = content
        record.version_number += 1

    await session.commit()
    logger.info(
        "Saved story memory v%d", record.version_number,
        extra={"project_id": project_id, "event_type": "memory_saved"},
    )
    return record.version_number


def make_memory_loader(session_factory: async_sessionmaker):
    """Adapt the repository to the lifecycle manager's ``project_id -> StoryMemory`` loader."""

    async def load(project_id: str) -> Optional[StoryMemory]:
        async with session_factory() as session:
            loaded = await load_story_memory(session, project_id)
        return loaded[0] if loaded is not None else None

    return load
