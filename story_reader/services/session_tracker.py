import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable
from story_reader.schemas.progress import SessionSummary
from story_reader.services.checkpoints import normalize_fraction

logger = logging.getLogger(__name__)

FlushFn = Callable[[str, SessionSummary], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class ReadingSessionTracker:
    """Measures one reading session at a time: Idle -> Active -> Idle.

    ``start`` and ``end`` are safe to call redundantly from several lifecycle
    signals. Ending hands the summary to ``flush`` in the background; flush
    failures are logged and never reach the caller.
    """

    def __init__(
        self,
        flush: FlushFn,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._flush_fn = flush
        self._clock = clock
        self._now = now
        self._pending: set[asyncio.Task] = set()
        self._reset()

    def _reset(self) -> None:
        self.state = SessionState.IDLE
        self.story_id: str | None = None
        self.started_at: datetime | None = None
        self._started_clock: float | None = None
        self.start_chapter_number: int | None = None
        self.chapter_number: int | None = None
        self.scroll_fraction = 0.0
        self.furthest_scroll_fraction = 0.0

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def start(self, story_id: str, chapter_number: int | None = None) -> bool:
        if self.is_active:
            if story_id == self.story_id:
                return False
            self.end()
        self.state = SessionState.ACTIVE
        self.story_id = story_id
        self.started_at = self._now()
        self._started_clock = self._clock()
        self.start_chapter_number = chapter_number
        self.chapter_number = chapter_number
        logger.info("Reading session started", extra={"story_id": story_id, "chapter_number": chapter_number})
        return True

    def update_progress(self, chapter_number: int, scroll_fraction: float) -> None:
        if not self.is_active:
            return
        fraction = normalize_fraction(scroll_fraction)
        if chapter_number != self.chapter_number:
            self.furthest_scroll_fraction = 0.0
        self.chapter_number = chapter_number
        self.scroll_fraction = fraction
        self.furthest_scroll_fraction = max(self.furthest_scroll_fraction, fraction)

    def end(self) -> SessionSummary | None:
        if not self.is_active:
            return None
        elapsed = max(self._clock() - (self._started_clock or 0.0), 0.0)
        summary = SessionSummary(
            story_id=self.story_id,
            started_at=self.started_at,
            ended_at=self._now(),
            duration_seconds=elapsed,
            start_chapter_number=self.start_chapter_number,
            chapter_number=self.chapter_number,
            scroll_fraction=self.scroll_fraction,
            furthest_scroll_fraction=self.furthest_scroll_fraction,
        )
        self._reset()
        logger.info(
            "Reading session ended",
            extra={"story_id": summary.story_id, "duration_seconds": round(elapsed, 1)},
        )
        self._schedule_flush(summary)
        return summary

    def _schedule_flush(self, summary: SessionSummary) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop; session summary not flushed", extra={"story_id": summary.story_id})
            return
        task = loop.create_task(self._flush(summary))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _flush(self, summary: SessionSummary) -> None:
        try:
            await self._flush_fn(summary.story_id, summary)
        except Exception:
            logger.warning("Session flush failed", extra={"story_id": summary.story_id}, exc_info=True)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
