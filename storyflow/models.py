from datetime import datetime
from sqlalchemy import String, DateTime, JSON, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

class Base(DeclarativeBase):
    pass

class StoryMemoryRecord(Base):
    """One story-memory document per project (summaries, knowledge states, facts, subplots)."""
    __tablename__ = "story_memory"

    project_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    content: Mapped[dict] = mapped_column(JSON, default=dict) # StoryMemory.model_dump(mode="json")
    version_number: Mapped[int] = mapped_column(Integer, default=1) # Incremented on every save
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
