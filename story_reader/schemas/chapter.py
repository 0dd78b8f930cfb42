from datetime import datetime
from pydantic import BaseModel, Field


class Chapter(BaseModel):
    id: str
    story_id: str
    chapter_number: int = Field(ge=1)
    title: str
    content: str
    word_count: int | None = None
    created_at: datetime | None = None

    class Config:
        extra = "ignore"
        frozen = True


class ChapterList(BaseModel):
    chapters: list[Chapter] = Field(default_factory=list)
