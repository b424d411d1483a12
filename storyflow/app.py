"""FastAPI application factory, CORS, and the generation services on ``app.state``."""

from __future__ import annotations

from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storyflow.backends import GeneratorBackend, create_backend
from storyflow.config import get_settings
from storyflow.generation.lifecycle import GenerationLifecycleManager
from storyflow.generation.progress import ProgressHub
from storyflow.generation.registry import GenerationRegistry
from storyflow.memory.retrieval import ContextRetrievalPolicy, RetrievalBudget
from storyflow.utils.logging_config import get_logger

load_dotenv()

logger = get_logger("storyflow.app")


def create_app(backend: GeneratorBackend | None = None) -> FastAPI:
    """Build the service. Pass ``backend`` to override the configured one."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Ensure tables exist
        from storyflow.database import AsyncSessionLocal, engine
        from storyflow.memory.repository import make_memory_loader
        from storyflow.models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        app.state.registry = GenerationRegistry()
        app.state.progress = ProgressHub(retention_seconds=settings.progress_retention_seconds)
        app.state.backend = backend or create_backend(settings)
        app.state.manager = GenerationLifecycleManager(
            registry=app.state.registry,
            backend=app.state.backend,
            policy=ContextRetrievalPolicy(RetrievalBudget.from_settings(settings)),
            progress=app.state.progress,
            memory_loader=make_memory_loader(AsyncSessionLocal),
            timeout=settings.generation_timeout_seconds,
            disconnect_poll_interval=settings.disconnect_poll_interval_seconds,
        )
        logger.info("Storyflow started with backend %s", app.state.backend.name,
                    extra={"event_type": "startup"})
        yield
        app.state.progress.close()
        await engine.dispose()

    app = FastAPI(title=settings.app_name, version="1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from storyflow.routers import generation, memory

    app.include_router(generation.router, prefix="/api")
    app.include_router(memory.router, prefix="/api")

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
