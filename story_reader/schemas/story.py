from datetime import datetime
from pydantic import BaseModel

GENERATING_PREFIX = "generating_"
AWAITING_PREFIX = "awaiting_"


class GenerationProgress(BaseModel):
    current_step: str
    chapters_generated: int | None = None
    last_updated: datetime | None = None

    @property
    def is_generating(self) -> bool:
        return self.current_step.startswith(GENERATING_PREFIX)

    @property
    def is_awaiting_feedback(self) -> bool:
        return self.current_step.startswith(AWAITING_PREFIX)


class Story(BaseModel):
    id: str
    title: str
    user_id: str
    status: str = "active"
    generation_progress: GenerationProgress | None = None
    series_id: str | None = None
    book_number: int | None = None
    premise_id: str | None = None
    bible_id: str | None = None
    chapters_generated: int | None = None
    genre: str | None = None
    description: str | None = None
    cover_image_url: str | None = None
    created_at: datetime | None = None

    class Config:
        extra = "ignore"

    @property
    def is_generating(self) -> bool:
        return self.generation_progress is not None and self.generation_progress.is_generating
