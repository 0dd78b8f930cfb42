import logging
from typing import Iterable
from story_reader.core.errors import ChapterIndexError, NetworkError, OutOfOrderError
from story_reader.schemas.chapter import Chapter
from story_reader.schemas.story import Story
from story_reader.services.api_client import StoryBackend

logger = logging.getLogger(__name__)


def contiguous_chapters(chapters: Iterable[Chapter], start: int = 1) -> list[Chapter]:
    """Deduplicate by chapter number and keep the gap-free run beginning at ``start``."""
    by_number: dict[int, Chapter] = {}
    for chapter in chapters:
        by_number.setdefault(chapter.chapter_number, chapter)
    result = []
    number = start
    while number in by_number:
        result.append(by_number[number])
        number += 1
    return result


class ChapterStore:
    """Ordered, append-only chapter list for the active story."""

    def __init__(self, backend: StoryBackend) -> None:
        self._backend = backend
        self.story: Story | None = None
        self._chapters: list[Chapter] = []

    @property
    def chapters(self) -> list[Chapter]:
        return list(self._chapters)

    async def load(self, story_id: str) -> Story:
        story = await self._backend.get_story(story_id)
        try:
            fetched = await self._backend.get_chapters(story_id)
        except NetworkError:
            logger.warning("Chapter fetch failed; starting with no chapters", extra={"story_id": story_id})
            fetched = []
        chapters = contiguous_chapters(c for c in fetched if c.story_id == story_id)
        if len(chapters) != len(fetched):
            logger.warning(
                "Dropped duplicate or non-contiguous chapters",
                extra={"story_id": story_id, "fetched": len(fetched), "kept": len(chapters)},
            )
        self.story = story
        self._chapters = chapters
        logger.info("Story loaded", extra={"story_id": story_id, "chapter_count": len(chapters)})
        return story

    def clear(self) -> None:
        self.story = None
        self._chapters = []

    def refresh_story(self, story: Story) -> None:
        if self.story is None or story.id != self.story.id:
            return
        self.story = self.story.model_copy(
            update={"status": story.status, "generation_progress": story.generation_progress}
        )

    def append_chapter(self, chapter: Chapter) -> None:
        if self.story is not None and chapter.story_id != self.story.id:
            raise ValueError(f"Chapter {chapter.id} belongs to story {chapter.story_id}")
        expected = len(self._chapters) + 1
        if chapter.chapter_number != expected:
            raise OutOfOrderError(expected, chapter.chapter_number)
        self._chapters.append(chapter)

    def merge_chapters(self, chapters: Iterable[Chapter]) -> int:
        if self.story is not None:
            chapters = [c for c in chapters if c.story_id == self.story.id]
        new_chapters = contiguous_chapters(chapters, start=len(self._chapters) + 1)
        for chapter in new_chapters:
            self.append_chapter(chapter)
        if new_chapters:
            logger.info(
                "New chapters available",
                extra={"added": len(new_chapters), "chapter_count": len(self._chapters)},
            )
        return len(new_chapters)

    def chapter_count(self) -> int:
        return len(self._chapters)

    def chapter_at(self, index: int) -> Chapter:
        if index < 0 or index >= len(self._chapters):
            raise ChapterIndexError(index, len(self._chapters))
        return self._chapters[index]

    def has_chapter(self, chapter_number: int) -> bool:
        return 1 <= chapter_number <= len(self._chapters)
