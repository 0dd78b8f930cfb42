"""Reading session orchestration for one reader surface.

The orchestrator is the only writer of the chapter store, the reading
position and the checkpoint record. Every mutation happens on the event loop
that drives it and suspends only at backend calls, so listeners never see a
half-applied change.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from sqlalchemy.exc import SQLAlchemyError
from story_reader.core.config import Settings, settings as default_settings
from story_reader.core.errors import ReaderError, SubmissionError
from story_reader.core.logging import story_id_ctx_var
from story_reader.schemas.chapter import Chapter
from story_reader.schemas.feedback import CheckpointDimensions, FeedbackAck, FeedbackResult, FollowUpAction
from story_reader.schemas.progress import CachedPosition, ReadingPosition, SessionSummary
from story_reader.schemas.story import Story
from story_reader.services.api_client import StoryBackend
from story_reader.services.chapter_store import ChapterStore
from story_reader.services.checkpoints import (
    BOOK_COMPLETE_CHECKPOINT,
    CheckpointRecord,
    gate_checkpoint,
    normalize_fraction,
)
from story_reader.services.generation_poller import GenerationPoller, PollOutcome, PollResult, SleepFn
from story_reader.services.local_state import LocalStateStore
from story_reader.services.session_tracker import ReadingSessionTracker

logger = logging.getLogger(__name__)


class AppPhase(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


class GenerationPhase(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    STILL_GENERATING = "still_generating"
    AWAITING_FEEDBACK = "awaiting_feedback"


class NavigationOutcome(str, Enum):
    MOVED = "moved"
    AT_START = "at_start"
    CHECKPOINT = "checkpoint"
    GENERATING = "generating"
    NO_STORY = "no_story"


@dataclass(frozen=True)
class NavigationResult:
    outcome: NavigationOutcome
    chapter_index: int
    checkpoint: str | None = None


@dataclass(frozen=True)
class CheckpointPrompt:
    story_id: str
    checkpoint: str

    @property
    def is_book_completion(self) -> bool:
        return self.checkpoint == BOOK_COMPLETE_CHECKPOINT


def scroll_fraction(raw_offset: float, content_height: float, visible_height: float) -> float:
    scrolled = max(-raw_offset, 0.0)
    scrollable = max(content_height - visible_height, 1.0)
    return normalize_fraction(scrolled / scrollable)


def scroll_percent(raw_offset: float, content_height: float, visible_height: float) -> int:
    """Whole percent scrolled, floored on the raw ratio rather than a rounded fraction."""
    fraction = scroll_fraction(raw_offset, content_height, visible_height)
    if fraction <= 0.0:
        return 0
    if fraction >= 1.0:
        return 100
    scrolled = max(-raw_offset, 0.0)
    scrollable = max(content_height - visible_height, 1.0)
    return min(math.floor(scrolled * 100 / scrollable + 1e-9), 100)


class ReadingOrchestrator:
    def __init__(
        self,
        backend: StoryBackend,
        local_state: LocalStateStore,
        settings: Settings | None = None,
        store: ChapterStore | None = None,
        poller: GenerationPoller | None = None,
        tracker: ReadingSessionTracker | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._backend = backend
        self._local_state = local_state
        self._sleep = sleep or asyncio.sleep
        self.store = store or ChapterStore(backend)
        self.poller = poller or GenerationPoller(backend, self.store, self._settings, sleep=self._sleep)
        self.tracker = tracker or ReadingSessionTracker(backend.flush_session)
        self.position = ReadingPosition()
        self.checkpoints = CheckpointRecord()
        self.generation = GenerationPhase.IDLE
        self.pending_chapter_number: int | None = None
        self.prompt: CheckpointPrompt | None = None
        self._prompt_queue: deque[CheckpointPrompt] = deque()
        self._save_task: asyncio.Task | None = None
        self._listeners: list[Callable[["ReadingOrchestrator"], None]] = []

    # State accessors

    @property
    def story(self) -> Story | None:
        return self.store.story

    @property
    def current_chapter(self) -> Chapter | None:
        if self.position.chapter_index >= self.store.chapter_count():
            return None
        return self.store.chapter_at(self.position.chapter_index)

    @property
    def current_chapter_number(self) -> int:
        return self.position.chapter_index + 1

    @property
    def can_go_to_previous_chapter(self) -> bool:
        return self.position.chapter_index > 0

    @property
    def can_go_to_next_chapter(self) -> bool:
        return self.position.chapter_index < self.store.chapter_count() - 1

    def add_listener(self, callback: Callable[["ReadingOrchestrator"], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("Reader listener failed")

    # Story lifecycle

    async def load_story(self, story_id: str) -> Story:
        if self.story is not None:
            await self.close()
            self.store.clear()
        self._reset_reading_state()
        story_id_ctx_var.set(story_id)

        story = await self.store.load(story_id)
        await self._restore_position(story_id)
        self.tracker.start(story_id, self.current_chapter_number)
        if story.is_generating:
            self.poller.watch(story_id, self._on_chapters_refreshed)
        self._notify()
        await self._evaluate_checkpoint()
        return story

    async def _restore_position(self, story_id: str) -> None:
        index, offset = 0, 0.0
        try:
            state = await self._backend.get_reading_state(story_id)
        except ReaderError:
            logger.warning("Could not fetch saved position; using local cache", extra={"story_id": story_id})
            cached = self._local_state.load_position(story_id)
            if cached:
                index, offset = cached.chapter_index, cached.scroll_offset
        else:
            if state.chapter_number:
                index, offset = state.chapter_number - 1, state.scroll_position or 0.0
        last_index = max(self.store.chapter_count() - 1, 0)
        if index < 0 or index > last_index:
            index, offset = min(max(index, 0), last_index), 0.0
        self.position = ReadingPosition(chapter_index=index, scroll_offset=offset)
        logger.info("Reading position restored", extra={"chapter_index": index})

    def _reset_reading_state(self) -> None:
        self.position = ReadingPosition()
        self.checkpoints.clear()
        self.prompt = None
        self._prompt_queue.clear()
        self.generation = GenerationPhase.IDLE
        self.pending_chapter_number = None

    def stop_generation_polling(self) -> SessionSummary | None:
        """Stop every poll and refresh loop; the reading session ends with them."""
        self.poller.cancel_all()
        if self.generation == GenerationPhase.POLLING:
            self.generation = GenerationPhase.STILL_GENERATING
            self._notify()
        return self.tracker.end()

    async def close(self) -> None:
        """Reader teardown: stop polling, end the session and flush progress."""
        self.stop_generation_polling()
        await self._flush_progress_save()
        await self.tracker.drain()

    async def clear_story(self) -> None:
        """Unload the story and forget its cached position."""
        await self.close()
        self.store.clear()
        self._reset_reading_state()
        self._local_state.clear_position()
        story_id_ctx_var.set("-")
        self._notify()

    async def on_app_phase_change(self, phase: AppPhase) -> None:
        if phase == AppPhase.BACKGROUND:
            self.tracker.end()
            await self._flush_progress_save()
        elif phase == AppPhase.ACTIVE and self.story is not None:
            self.tracker.start(self.story.id, self.current_chapter_number)

    # Navigation

    async def go_to_next_chapter(self) -> NavigationResult:
        story = self.story
        if story is None:
            return NavigationResult(NavigationOutcome.NO_STORY, self.position.chapter_index)
        index = self.position.chapter_index
        count = self.store.chapter_count()

        checkpoint = (
            gate_checkpoint(self.current_chapter_number, self.position.scroll_fraction) if index < count else None
        )
        if checkpoint is not None:
            self.checkpoints.mark(checkpoint)
            if await self._feedback_needed(story.id, checkpoint):
                self._offer_prompt(story.id, checkpoint)
                return NavigationResult(NavigationOutcome.CHECKPOINT, index, checkpoint)
            if self.story is None or self.story.id != story.id:
                return NavigationResult(NavigationOutcome.NO_STORY, self.position.chapter_index)

        if index + 1 < count:
            await self.on_chapter_changed(index + 1)
            return NavigationResult(NavigationOutcome.MOVED, index + 1)

        self._start_generation_poll(count + 1)
        return NavigationResult(NavigationOutcome.GENERATING, index)

    async def go_to_previous_chapter(self) -> NavigationResult:
        index = self.position.chapter_index
        if self.story is None:
            return NavigationResult(NavigationOutcome.NO_STORY, index)
        if index == 0:
            return NavigationResult(NavigationOutcome.AT_START, index)
        await self.on_chapter_changed(index - 1)
        return NavigationResult(NavigationOutcome.MOVED, index - 1)

    async def go_to_chapter(self, index: int) -> NavigationResult:
        if self.story is None:
            return NavigationResult(NavigationOutcome.NO_STORY, self.position.chapter_index)
        await self.on_chapter_changed(index)
        return NavigationResult(NavigationOutcome.MOVED, index)

    async def on_chapter_changed(self, new_index: int) -> None:
        self.store.chapter_at(new_index)
        self.position = ReadingPosition(chapter_index=new_index)
        self.tracker.update_progress(self.current_chapter_number, 0.0)
        self._schedule_progress_save()
        self._notify()
        await self._evaluate_checkpoint()

    async def on_scroll_update(
        self, raw_offset: float, content_height: float, visible_height: float
    ) -> ReadingPosition | None:
        """Track scrolling; returns the new position only when the whole percent changed."""
        if self.story is None or self.current_chapter is None:
            return None
        percent = scroll_percent(raw_offset, content_height, visible_height)
        self.position.scroll_offset = raw_offset
        if percent == self.position.scroll_percent:
            return None
        self.position.scroll_percent = percent
        self.position.scroll_fraction = percent / 100
        self.tracker.update_progress(self.current_chapter_number, self.position.scroll_fraction)
        self._schedule_progress_save()
        self._notify()
        await self._evaluate_checkpoint()
        return self.position.model_copy()

    # Checkpoints

    async def _evaluate_checkpoint(self) -> str | None:
        story = self.story
        if story is None or self.current_chapter is None:
            return None
        checkpoint = self.checkpoints.evaluate(self.current_chapter_number, self.position.scroll_fraction)
        if checkpoint is None:
            return None
        logger.info("Checkpoint reached", extra={"checkpoint": checkpoint})
        if await self._feedback_needed(story.id, checkpoint):
            self._offer_prompt(story.id, checkpoint)
        return checkpoint

    async def _feedback_needed(self, story_id: str, checkpoint: str) -> bool:
        try:
            status = await self._backend.get_feedback_status(story_id, checkpoint)
        except ReaderError:
            logger.warning("Feedback status check failed; assuming feedback needed", extra={"checkpoint": checkpoint})
            return True
        return not status.has_feedback

    def _offer_prompt(self, story_id: str, checkpoint: str) -> None:
        if self.story is None or self.story.id != story_id:
            return
        prompt = CheckpointPrompt(story_id, checkpoint)
        if prompt == self.prompt or prompt in self._prompt_queue:
            return
        if self.prompt is None:
            self.prompt = prompt
            logger.info("Showing checkpoint prompt", extra={"checkpoint": checkpoint})
        else:
            self._prompt_queue.append(prompt)
        self._notify()

    def _advance_prompt(self, prompt: CheckpointPrompt) -> None:
        if self.prompt != prompt:
            return
        self.prompt = self._prompt_queue.popleft() if self._prompt_queue else None
        self._notify()

    def dismiss_prompt(self) -> CheckpointPrompt | None:
        prompt = self.prompt
        if prompt is not None:
            self._advance_prompt(prompt)
        return prompt

    async def submit_checkpoint_feedback(
        self, dimensions: CheckpointDimensions, protagonist_name: str
    ) -> FeedbackAck:
        prompt = self._require_prompt()
        try:
            ack = await self._backend.submit_checkpoint_feedback(
                prompt.story_id, prompt.checkpoint, dimensions, protagonist_name
            )
        except ReaderError as exc:
            logger.warning("Checkpoint feedback submission failed", extra={"checkpoint": prompt.checkpoint})
            if isinstance(exc, SubmissionError):
                raise
            raise SubmissionError(str(exc)) from exc
        if not ack.accepted:
            logger.warning("Checkpoint feedback rejected", extra={"checkpoint": prompt.checkpoint})
            raise SubmissionError(f"Checkpoint feedback for {prompt.checkpoint} was rejected")
        self._advance_prompt(prompt)
        self._resume_generation(generating=False)
        return ack

    async def submit_checkpoint_response(
        self, response: str, follow_up_action: FollowUpAction | None = None
    ) -> FeedbackResult:
        prompt = self._require_prompt()
        try:
            result = await self._backend.submit_checkpoint_response(
                prompt.story_id, prompt.checkpoint, response, follow_up_action
            )
        except ReaderError as exc:
            logger.warning("Checkpoint response submission failed", extra={"checkpoint": prompt.checkpoint})
            if isinstance(exc, SubmissionError):
                raise
            raise SubmissionError(str(exc)) from exc
        self._advance_prompt(prompt)
        self._resume_generation(generating=result.generating_chapters)
        return result

    def _require_prompt(self) -> CheckpointPrompt:
        if self.prompt is None:
            raise SubmissionError("No checkpoint prompt is waiting for feedback")
        return self.prompt

    # Generation

    def _start_generation_poll(self, chapter_number: int) -> None:
        story = self.story
        if story is None:
            return
        self.generation = GenerationPhase.POLLING
        self.pending_chapter_number = chapter_number
        self.poller.start(story.id, chapter_number, self._on_poll_result)
        self._notify()

    def _resume_generation(self, generating: bool) -> None:
        story = self.story
        if story is None:
            return
        waiting = self.generation in (GenerationPhase.AWAITING_FEEDBACK, GenerationPhase.STILL_GENERATING)
        if self.pending_chapter_number is not None and (waiting or generating):
            self._start_generation_poll(self.pending_chapter_number)
        elif generating and not self.poller.is_polling(story.id):
            self.poller.watch(story.id, self._on_chapters_refreshed)

    def check_generation_again(self) -> bool:
        """Explicit "check back" from the reader after polling gave up."""
        if self.pending_chapter_number is None or self.generation == GenerationPhase.POLLING:
            return False
        self._start_generation_poll(self.pending_chapter_number)
        return True

    async def _on_poll_result(self, result: PollResult) -> None:
        story = self.story
        if story is None or story.id != result.story_id:
            return
        if result.outcome == PollOutcome.READY:
            self.generation = GenerationPhase.IDLE
            self.pending_chapter_number = None
            self._notify()
            if story.is_generating:
                self.poller.watch(story.id, self._on_chapters_refreshed)
            if self.position.chapter_index == result.chapter_number - 2 or result.chapter_number == 1:
                await self.on_chapter_changed(result.chapter_number - 1)
        elif result.outcome == PollOutcome.NEEDS_FEEDBACK:
            self.generation = GenerationPhase.AWAITING_FEEDBACK
            checkpoint = result.checkpoint or gate_checkpoint(
                self.current_chapter_number, self.position.scroll_fraction
            )
            self._notify()
            if checkpoint:
                self.checkpoints.mark(checkpoint)
                self._offer_prompt(story.id, checkpoint)
        else:
            self.generation = GenerationPhase.STILL_GENERATING
            logger.info("Chapter still being generated", extra={"chapter_number": result.chapter_number})
            self._notify()

    def _on_chapters_refreshed(self, added: int) -> None:
        self._notify()

    async def wait_for_generation(self) -> None:
        story = self.story
        while story is not None and self.generation == GenerationPhase.POLLING and self.poller.is_polling(story.id):
            await self.poller.wait(story.id)

    # First-line ceremony

    def should_show_first_line_ceremony(self) -> bool:
        story = self.story
        if story is None or self.store.chapter_count() == 0 or self.position.chapter_index != 0:
            return False
        return not self._local_state.has_shown_ceremony(story.id)

    def mark_first_line_ceremony_shown(self) -> None:
        if self.story is not None:
            self._local_state.mark_ceremony_shown(self.story.id)

    # Progress persistence

    def _schedule_progress_save(self) -> None:
        if self.story is None:
            return
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = asyncio.create_task(self._save_after_delay())

    async def _save_after_delay(self) -> None:
        await self._sleep(self._settings.progress_save_debounce)
        await self._save_progress()

    async def _flush_progress_save(self) -> None:
        task, self._save_task = self._save_task, None
        if task is not None and not task.done():
            task.cancel()
            await self._save_progress()

    async def _save_progress(self) -> None:
        story = self.story
        if story is None or self.current_chapter is None:
            return
        index, offset = self.position.chapter_index, self.position.scroll_offset
        try:
            self._local_state.save_position(
                CachedPosition(story_id=story.id, chapter_index=index, scroll_offset=offset)
            )
        except SQLAlchemyError:
            logger.warning("Local position cache write failed", extra={"chapter_number": index + 1}, exc_info=True)
        try:
            await self._backend.update_progress(story.id, index + 1, offset)
        except ReaderError:
            logger.warning("Progress save failed", extra={"chapter_number": index + 1})
            return
        if self.tracker.is_active:
            try:
                await self._backend.send_heartbeat(story.id, index + 1, self.position.scroll_percent)
            except ReaderError:
                logger.warning("Reading heartbeat failed", extra={"chapter_number": index + 1})
