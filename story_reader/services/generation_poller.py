import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable
from story_reader.core.config import Settings, settings as default_settings
from story_reader.core.errors import GenerationTimeout, NetworkError, ReaderError
from story_reader.schemas.generation import GenerationState
from story_reader.services.api_client import StoryBackend
from story_reader.services.chapter_store import ChapterStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class PollOutcome(str, Enum):
    READY = "ready"
    NEEDS_FEEDBACK = "needs_feedback"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollResult:
    story_id: str
    chapter_number: int
    outcome: PollOutcome
    checkpoint: str | None = None
    attempts: int = 0


class GenerationPoller:
    """Polls chapter generation for the active story.

    Each story has one polling slot: starting a poll or a refresh watch for a
    story cancels whatever loop held that slot before.
    """

    def __init__(
        self,
        backend: StoryBackend,
        store: ChapterStore,
        settings: Settings | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        cfg = settings or default_settings
        self._backend = backend
        self._store = store
        self.interval = cfg.generation_poll_interval
        self.max_attempts = cfg.generation_poll_max_attempts
        self.refresh_interval = cfg.story_refresh_interval
        self._sleep = sleep or asyncio.sleep
        self._tasks: dict[str, asyncio.Task] = {}

    async def request_next(self, story_id: str, expected_chapter_number: int) -> PollResult:
        if self._store.has_chapter(expected_chapter_number):
            return PollResult(story_id, expected_chapter_number, PollOutcome.READY)

        for attempt in range(1, self.max_attempts + 1):
            try:
                status = await self._backend.get_chapter_generation_status(story_id, expected_chapter_number)
            except NetworkError:
                logger.warning(
                    "Generation status check failed",
                    extra={"chapter_number": expected_chapter_number, "attempt": attempt},
                )
            else:
                if status.state == GenerationState.NEEDS_FEEDBACK:
                    logger.info(
                        "Generation waiting for checkpoint feedback",
                        extra={"chapter_number": expected_chapter_number, "checkpoint": status.checkpoint},
                    )
                    return PollResult(
                        story_id,
                        expected_chapter_number,
                        PollOutcome.NEEDS_FEEDBACK,
                        checkpoint=status.checkpoint,
                        attempts=attempt,
                    )
                if status.state == GenerationState.READY:
                    await self._pull_chapters(story_id)
                    if self._store.has_chapter(expected_chapter_number):
                        logger.info(
                            "Chapter ready",
                            extra={"chapter_number": expected_chapter_number, "attempt": attempt},
                        )
                        return PollResult(story_id, expected_chapter_number, PollOutcome.READY, attempts=attempt)
            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        raise GenerationTimeout(story_id, expected_chapter_number, self.max_attempts)

    async def _pull_chapters(self, story_id: str) -> int:
        try:
            chapters = await self._backend.get_chapters(story_id)
        except NetworkError:
            logger.warning("Chapter refresh failed", extra={"story_id": story_id})
            return 0
        return self._store.merge_chapters(chapters)

    def start(
        self,
        story_id: str,
        expected_chapter_number: int,
        on_result: Callable[[PollResult], Awaitable[None]],
    ) -> asyncio.Task:
        self.cancel(story_id)
        task = asyncio.create_task(self._run(story_id, expected_chapter_number, on_result))
        self._tasks[story_id] = task
        task.add_done_callback(lambda done: self._release(story_id, done))
        logger.info("Polling for chapter", extra={"chapter_number": expected_chapter_number})
        return task

    async def _run(
        self,
        story_id: str,
        expected_chapter_number: int,
        on_result: Callable[[PollResult], Awaitable[None]],
    ) -> None:
        try:
            result = await self.request_next(story_id, expected_chapter_number)
        except GenerationTimeout as exc:
            logger.info("Chapter still generating after polling bound", extra={"attempts": exc.attempts})
            result = PollResult(story_id, expected_chapter_number, PollOutcome.TIMED_OUT, attempts=exc.attempts)
        except ReaderError:
            logger.warning("Polling stopped by backend error", exc_info=True)
            result = PollResult(story_id, expected_chapter_number, PollOutcome.TIMED_OUT)
        await on_result(result)

    def watch(self, story_id: str, on_update: Callable[[int], None]) -> asyncio.Task:
        """Refresh chapters in the background while the story keeps generating."""
        self.cancel(story_id)
        task = asyncio.create_task(self._watch(story_id, on_update))
        self._tasks[story_id] = task
        task.add_done_callback(lambda done: self._release(story_id, done))
        return task

    async def _watch(self, story_id: str, on_update: Callable[[int], None]) -> None:
        while True:
            await self._sleep(self.refresh_interval)
            try:
                story = await self._backend.get_story(story_id)
            except ReaderError:
                logger.warning("Story refresh failed", extra={"story_id": story_id})
                continue
            self._store.refresh_story(story)
            added = await self._pull_chapters(story_id)
            if added:
                on_update(added)
            if not story.is_generating:
                logger.info("Story no longer generating; refresh stopped", extra={"story_id": story_id})
                return

    def _release(self, story_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(story_id) is task:
            del self._tasks[story_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Polling task failed", exc_info=task.exception())

    def is_polling(self, story_id: str) -> bool:
        task = self._tasks.get(story_id)
        return task is not None and not task.done()

    async def wait(self, story_id: str) -> None:
        task = self._tasks.get(story_id)
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def cancel(self, story_id: str) -> None:
        task = self._tasks.pop(story_id, None)
        # A result callback may restart polling from inside the finishing task.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        for story_id in list(self._tasks):
            self.cancel(story_id)
