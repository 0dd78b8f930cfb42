import logging
from typing import Any, Protocol
import httpx
from pydantic import ValidationError
from story_reader.core.config import Settings, settings as default_settings
from story_reader.core.errors import NetworkError, NotFoundError, SubmissionError, UnauthorizedError
from story_reader.core.logging import new_request_id
from story_reader.schemas.chapter import Chapter, ChapterList
from story_reader.schemas.feedback import (
    CheckpointDimensions,
    CheckpointFeedback,
    CheckpointResponse,
    FeedbackAck,
    FeedbackResult,
    FeedbackStatus,
    FollowUpAction,
)
from story_reader.schemas.generation import GenerationStatus, GenerationStatusOut
from story_reader.schemas.progress import ProgressUpdate, ReadingHeartbeat, ReadingState, SessionSummary
from story_reader.schemas.story import Story

logger = logging.getLogger(__name__)


class StoryBackend(Protocol):
    async def get_story(self, story_id: str) -> Story:
        ...

    async def get_chapters(self, story_id: str) -> list[Chapter]:
        ...

    async def get_reading_state(self, story_id: str) -> ReadingState:
        ...

    async def update_progress(self, story_id: str, chapter_number: int, scroll_position: float) -> None:
        ...

    async def get_chapter_generation_status(self, story_id: str, chapter_number: int) -> GenerationStatus:
        ...

    async def get_feedback_status(self, story_id: str, checkpoint: str) -> FeedbackStatus:
        ...

    async def submit_checkpoint_feedback(
        self, story_id: str, checkpoint: str, dimensions: CheckpointDimensions, protagonist_name: str
    ) -> FeedbackAck:
        ...

    async def submit_checkpoint_response(
        self, story_id: str, checkpoint: str, response: str, follow_up_action: FollowUpAction | None = None
    ) -> FeedbackResult:
        ...

    async def flush_session(self, story_id: str, summary: SessionSummary) -> None:
        ...

    async def send_heartbeat(self, story_id: str, chapter_number: int, scroll_percent: int) -> None:
        ...


class HttpStoryBackend:
    """``StoryBackend`` over the story service's JSON API."""

    def __init__(
        self,
        access_token: str | None = None,
        user_id: str | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._access_token = access_token
        self._user_id = user_id
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.api_base_url.rstrip("/"),
            timeout=self._settings.request_timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Request-ID": new_request_id()}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        if self._user_id:
            headers["X-User-ID"] = self._user_id
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Backend request failed", extra={"path": path, "error": str(exc)})
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise UnauthorizedError(f"{method} {path} rejected with {response.status_code}")
        if response.status_code == 404:
            raise NotFoundError(f"{method} {path} not found")
        if response.is_error:
            logger.warning(
                "Backend returned error status",
                extra={"path": path, "status_code": response.status_code},
            )
            raise NetworkError(f"{method} {path} returned {response.status_code}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"{method} {path} returned invalid JSON") from exc

    @staticmethod
    def _parse(model: Any, data: Any, path: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise NetworkError(f"Unexpected payload from {path}") from exc

    async def get_story(self, story_id: str) -> Story:
        path = f"/story/{story_id}"
        data = await self._request("GET", path)
        if isinstance(data, dict) and "story" in data:
            data = data["story"]
        return self._parse(Story, data, path)

    async def get_chapters(self, story_id: str) -> list[Chapter]:
        path = f"/story/{story_id}/chapters"
        data = await self._request("GET", path)
        if isinstance(data, list):
            data = {"chapters": data}
        return self._parse(ChapterList, data, path).chapters

    async def get_reading_state(self, story_id: str) -> ReadingState:
        path = f"/story/{story_id}/current-state"
        data = await self._request("GET", path)
        return self._parse(ReadingState, data, path)

    async def update_progress(self, story_id: str, chapter_number: int, scroll_position: float) -> None:
        payload = ProgressUpdate(chapter_number=chapter_number, scroll_position=scroll_position)
        await self._request("POST", f"/story/{story_id}/progress", json=payload.model_dump())

    async def get_chapter_generation_status(self, story_id: str, chapter_number: int) -> GenerationStatus:
        path = f"/story/{story_id}/chapters/{chapter_number}/generation-status"
        data = await self._request("GET", path)
        return self._parse(GenerationStatusOut, data, path).to_status()

    async def get_feedback_status(self, story_id: str, checkpoint: str) -> FeedbackStatus:
        path = "/feedback/status"
        data = await self._request("GET", path, params={"story_id": story_id, "checkpoint": checkpoint})
        return self._parse(FeedbackStatus, data, path)

    async def submit_checkpoint_feedback(
        self, story_id: str, checkpoint: str, dimensions: CheckpointDimensions, protagonist_name: str
    ) -> FeedbackAck:
        payload = CheckpointFeedback(
            story_id=story_id,
            checkpoint=checkpoint,
            pacing=dimensions.pacing,
            tone=dimensions.tone,
            character=dimensions.character,
            protagonist_name=protagonist_name,
        )
        path = "/feedback/checkpoint"
        try:
            data = await self._request("POST", path, json=payload.model_dump(mode="json"))
            return self._parse(FeedbackAck, data, path)
        except (NetworkError, NotFoundError, UnauthorizedError) as exc:
            raise SubmissionError(f"Checkpoint feedback for {checkpoint} was not accepted") from exc

    async def submit_checkpoint_response(
        self, story_id: str, checkpoint: str, response: str, follow_up_action: FollowUpAction | None = None
    ) -> FeedbackResult:
        payload = CheckpointResponse(
            story_id=story_id,
            checkpoint=checkpoint,
            response=response,
            follow_up_action=follow_up_action,
        )
        path = "/feedback/checkpoint-response"
        try:
            data = await self._request("POST", path, json=payload.model_dump(mode="json", exclude_none=True))
            return self._parse(FeedbackResult, data, path)
        except (NetworkError, NotFoundError, UnauthorizedError) as exc:
            raise SubmissionError(f"Checkpoint response for {checkpoint} was not accepted") from exc

    async def flush_session(self, story_id: str, summary: SessionSummary) -> None:
        await self._request("POST", "/reading/sessions", json=summary.model_dump(mode="json"))

    async def send_heartbeat(self, story_id: str, chapter_number: int, scroll_percent: int) -> None:
        payload = ReadingHeartbeat(story_id=story_id, chapter_number=chapter_number, scroll_percent=scroll_percent)
        await self._request("POST", "/reading/heartbeat", json=payload.model_dump())
