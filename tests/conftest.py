"""Shared fixtures: an in-memory story backend and fast orchestrator settings."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque

import pytest

from story_reader.core.config import Settings
from story_reader.core.errors import NetworkError, NotFoundError, SubmissionError, UnauthorizedError
from story_reader.schemas.chapter import Chapter
from story_reader.schemas.feedback import FeedbackAck, FeedbackResult, FeedbackStatus
from story_reader.schemas.generation import GenerationState, GenerationStatus
from story_reader.schemas.progress import ReadingState
from story_reader.schemas.story import GenerationProgress, Story
from story_reader.services.local_state import LocalStateStore
from story_reader.services.orchestrator import ReadingOrchestrator

STORY_ID = "story-1"


def make_story(story_id: str = STORY_ID, step: str | None = None) -> Story:
    progress = GenerationProgress(current_step=step) if step else None
    return Story(id=story_id, title="The Glass Orchard", user_id="user-1", generation_progress=progress)


def make_chapter(number: int, story_id: str = STORY_ID) -> Chapter:
    return Chapter(
        id=f"{story_id}-ch{number}",
        story_id=story_id,
        chapter_number=number,
        title=f"Chapter {number}",
        content=f"Text of chapter {number}.",
    )


def make_chapters(count: int, story_id: str = STORY_ID) -> list[Chapter]:
    return [make_chapter(number, story_id) for number in range(1, count + 1)]


async def fast_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


class FakeBackend:
    """Minimal in-memory story service that records every call."""

    def __init__(self) -> None:
        self.stories: dict[str, Story] = {}
        self.chapters: dict[str, list[Chapter]] = defaultdict(list)
        self.reading_states: dict[str, ReadingState] = {}
        self.generation_scripts: dict[tuple[str, int], deque[GenerationStatus]] = {}
        self.release_on_ready: dict[tuple[str, int], Chapter] = {}
        self.submitted_feedback: set[tuple[str, str]] = set()
        self.unauthorized: set[str] = set()
        self.failing: set[str] = set()
        self.calls: list[tuple] = []
        self.progress_updates: list[tuple[str, int, float]] = []
        self.flushed: list = []
        self.submissions: list[tuple] = []
        self.heartbeats: list[tuple[str, int, int]] = []
        self.reject_feedback = False

    def add_story(self, story: Story, chapters: list[Chapter]) -> None:
        self.stories[story.id] = story
        self.chapters[story.id] = list(chapters)

    def script_generation(self, story_id: str, chapter_number: int, states: list[GenerationStatus]) -> None:
        self.generation_scripts[(story_id, chapter_number)] = deque(states)
        self.release_on_ready[(story_id, chapter_number)] = make_chapter(chapter_number, story_id)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if method in self.failing:
            raise NetworkError(f"{method} unavailable")

    async def get_story(self, story_id: str) -> Story:
        self._enter("get_story", story_id)
        if story_id in self.unauthorized:
            raise UnauthorizedError(story_id)
        if story_id not in self.stories:
            raise NotFoundError(story_id)
        return self.stories[story_id]

    async def get_chapters(self, story_id: str) -> list[Chapter]:
        self._enter("get_chapters", story_id)
        return list(self.chapters[story_id])

    async def get_reading_state(self, story_id: str) -> ReadingState:
        self._enter("get_reading_state", story_id)
        return self.reading_states.get(story_id, ReadingState())

    async def update_progress(self, story_id: str, chapter_number: int, scroll_position: float) -> None:
        self._enter("update_progress", story_id, chapter_number, scroll_position)
        self.progress_updates.append((story_id, chapter_number, scroll_position))

    async def get_chapter_generation_status(self, story_id: str, chapter_number: int) -> GenerationStatus:
        self._enter("get_chapter_generation_status", story_id, chapter_number)
        script = self.generation_scripts.get((story_id, chapter_number))
        status = script.popleft() if script else GenerationStatus(state=GenerationState.IN_PROGRESS)
        if status.state == GenerationState.READY:
            chapter = self.release_on_ready.get((story_id, chapter_number))
            if chapter and all(c.chapter_number != chapter_number for c in self.chapters[story_id]):
                self.chapters[story_id].append(chapter)
        return status

    async def get_feedback_status(self, story_id: str, checkpoint: str) -> FeedbackStatus:
        self._enter("get_feedback_status", story_id, checkpoint)
        return FeedbackStatus(has_feedback=(story_id, checkpoint) in self.submitted_feedback)

    async def submit_checkpoint_feedback(self, story_id, checkpoint, dimensions, protagonist_name) -> FeedbackAck:
        self.calls.append(("submit_checkpoint_feedback", story_id, checkpoint))
        if "submit_checkpoint_feedback" in self.failing:
            raise SubmissionError("write failed")
        if self.reject_feedback:
            return FeedbackAck(accepted=False)
        self.submissions.append((story_id, checkpoint, dimensions, protagonist_name))
        self.submitted_feedback.add((story_id, checkpoint))
        return FeedbackAck(accepted=True)

    async def submit_checkpoint_response(self, story_id, checkpoint, response, follow_up_action=None) -> FeedbackResult:
        self.calls.append(("submit_checkpoint_response", story_id, checkpoint))
        if "submit_checkpoint_response" in self.failing:
            raise SubmissionError("write failed")
        self.submissions.append((story_id, checkpoint, response, follow_up_action))
        self.submitted_feedback.add((story_id, checkpoint))
        return FeedbackResult(generating_chapters=True)

    async def flush_session(self, story_id: str, summary) -> None:
        self._enter("flush_session", story_id)
        self.flushed.append(summary)

    async def send_heartbeat(self, story_id: str, chapter_number: int, scroll_percent: int) -> None:
        self._enter("send_heartbeat", story_id, chapter_number, scroll_percent)
        self.heartbeats.append((story_id, chapter_number, scroll_percent))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        generation_poll_interval=0.0,
        generation_poll_max_attempts=3,
        story_refresh_interval=0.0,
        progress_save_debounce=0.0,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def local_state(tmp_path) -> LocalStateStore:
    return LocalStateStore.from_url(f"sqlite:///{tmp_path / 'state.db'}")


@pytest.fixture
async def orchestrator(anyio_backend, backend, local_state, settings):
    reader = ReadingOrchestrator(backend, local_state, settings=settings, sleep=fast_sleep)
    yield reader
    await reader.close()
