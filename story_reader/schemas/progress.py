from datetime import datetime
from pydantic import BaseModel, Field


class ReadingPosition(BaseModel):
    chapter_index: int = Field(default=0, ge=0)
    scroll_offset: float = 0.0
    scroll_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    scroll_percent: int = Field(default=0, ge=0, le=100)


class ReadingState(BaseModel):
    """Resume position saved by the backend; chapter numbers are 1-based."""

    chapter_number: int | None = None
    scroll_position: float | None = None


class ProgressUpdate(BaseModel):
    chapter_number: int
    scroll_position: float


class ReadingHeartbeat(BaseModel):
    story_id: str
    chapter_number: int
    scroll_percent: int = Field(ge=0, le=100)


class CachedPosition(BaseModel):
    story_id: str
    chapter_index: int = 0
    scroll_offset: float = 0.0


class SessionSummary(BaseModel):
    story_id: str
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    start_chapter_number: int | None = None
    chapter_number: int | None = None
    scroll_fraction: float = 0.0
    furthest_scroll_fraction: float = 0.0
