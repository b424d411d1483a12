"""Generation, cancellation, progress-stream and consistency-check endpoints."""

from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyflow.agents import router as agent_router
from storyflow.database import get_db
from storyflow.generation.lifecycle import OutcomeStatus
from storyflow.generation.registry import DuplicateGenerationError
from storyflow.memory.health import subplot_warnings
from storyflow.memory.repository import load_story_memory
from storyflow.memory.store import StoryMemoryStore
from storyflow.schemas.generation import (
    ContextValidationError,
    GenerationRequest,
    GenerationResponse,
    parse_context,
)
from storyflow.schemas.memory import FactContradiction, StoryMemory, SubplotWarning

router = APIRouter(prefix="/ai", tags=["ai"])


def _error_detail(error: Exception, body: GenerationRequest) -> dict:
    # Echo the caller-chosen id so a rejected request can still be correlated
    return {"message": str(error), "generation_id": body.generation_id}


@router.post("/generate", response_model=GenerationResponse)
async def generate(body: GenerationRequest, request: Request):
    """Run one generation job and return its outcome.

    A cancelled job is a normal 200 response with ``status: "cancelled"``;
    backend failures come back as 502 with the reason in ``error``.
    """
    try:
        parse_context(body.action, body.context)
    except ContextValidationError as e:
        raise HTTPException(status_code=422, detail=_error_detail(e, body))

    manager = request.app.state.manager
    try:
        outcome = await manager.run(body, is_disconnected=request.is_disconnected)
    except DuplicateGenerationError as e:
        raise HTTPException(status_code=409, detail=_error_detail(e, body))

    status_code = 502 if outcome.status == OutcomeStatus.ERROR else 200
    return JSONResponse(status_code=status_code, content=outcome.to_response().model_dump(mode="json"))


@router.post("/generations/{generation_id}/cancel")
async def cancel_generation(generation_id: str, request: Request):
    """Request cancellation. The response is the same whether or not the id is in flight."""
    request.app.state.registry.cancel(generation_id, "requested")
    return {"generation_id": generation_id, "status": "cancel_requested"}


@router.get("/generations/{generation_id}")
async def generation_state(generation_id: str, request: Request):
    return {"generation_id": generation_id, "active": generation_id in request.app.state.registry}


@router.get("/generations/{generation_id}/events")
async def stream_generation_events(generation_id: str, request: Request):
    """Stream progress for a generation via SSE until it reaches a terminal state."""
    hub = request.app.state.progress
    if hub.get(generation_id) is None and generation_id not in request.app.state.registry:
        raise HTTPException(status_code=404, detail="Generation not found")

    async def event_generator():
        async for progress in hub.subscribe(generation_id):
            yield f"data: {json.dumps(progress.model_dump(mode='json'))}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/status")
async def generator_status(request: Request):
    backend = request.app.state.backend
    return {
        **backend.describe(),
        "available": await backend.is_available(),
        "active_generations": len(request.app.state.registry),
        "lingering_calls": request.app.state.manager.lingering_calls,
    }


@router.get("/agents")
async def list_agents():
    return {
        "default": agent_router.DEFAULT_AGENT,
        "agents": [
            {
                "target": a.target,
                "name": a.name,
                "description": a.description,
                "capabilities": list(a.capabilities),
            }
            for a in agent_router.all_agents()
        ],
    }


class ConsistencyCheckRequest(BaseModel):
    project_id: Optional[str] = None
    story_memory: Optional[StoryMemory] = None
    current_chapter: int = Field(default=0, ge=0)


class ConsistencyReport(BaseModel):
    current_chapter: int
    contradictions: List[FactContradiction]
    subplot_warnings: List[SubplotWarning]


@router.post("/consistency-check", response_model=ConsistencyReport)
async def consistency_check(body: ConsistencyCheckRequest, db: AsyncSession = Depends(get_db)):
    """Report contradicting facts and subplot health for a snapshot or a stored project."""
    memory = body.story_memory
    if memory is None:
        if not body.project_id:
            raise HTTPException(status_code=422, detail="Provide story_memory or project_id")
        loaded = await load_story_memory(db, body.project_id)
        if loaded is None:
            raise HTTPException(status_code=404, detail="Story memory not found")
        memory = loaded[0]

    store = StoryMemoryStore(memory)
    return ConsistencyReport(
        current_chapter=body.current_chapter,
        contradictions=store.contradictions(),
        subplot_warnings=subplot_warnings(store, body.current_chapter),
    )
