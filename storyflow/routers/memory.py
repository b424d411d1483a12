"""Story memory REST endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from storyflow.database import get_db
from storyflow.memory.repository import StaleMemoryError, load_story_memory, save_story_memory
from storyflow.schemas.memory import StoryMemory

router = APIRouter(tags=["memory"])


class MemoryResponse(BaseModel):
    project_id: str
    version: int
    story_memory: StoryMemory


class SaveMemoryRequest(BaseModel):
    story_memory: StoryMemory
    expected_version: Optional[int] = None


@router.get("/projects/{project_id}/memory", response_model=MemoryResponse)
async def get_memory(project_id: str, db: AsyncSession = Depends(get_db)):
    loaded = await load_story_memory(db, project_id)
    if loaded is None:
        raise HTTPException(status_code=404, detail="Story memory not found")
    memory, version = loaded
    return MemoryResponse(project_id=project_id, version=version, story_memory=memory)


@router.put("/projects/{project_id}/memory", response_model=MemoryResponse)
async def put_memory(project_id: str, body: SaveMemoryRequest, db: AsyncSession = Depends(get_db)):
    """Replace the project's story memory. ``expected_version`` guards against lost updates."""
    try:
        version = await save_story_memory(db, project_id, body.story_memory, body.expected_version)
    except StaleMemoryError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return MemoryResponse(project_id=project_id, version=version, story_memory=body.story_memory)
