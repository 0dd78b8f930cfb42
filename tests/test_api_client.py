import json

import httpx
import pytest

from story_reader.core.errors import NetworkError, NotFoundError, SubmissionError, UnauthorizedError
from story_reader.schemas.feedback import CharacterFeeling, CheckpointDimensions, Pacing, Tone
from story_reader.schemas.generation import GenerationState
from story_reader.services.api_client import HttpStoryBackend

STORY = {"id": "story-1", "title": "The Glass Orchard", "user_id": "user-1", "theme_color": "teal"}


def _backend(handler, requests: list | None = None) -> HttpStoryBackend:
    def recording(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording), base_url="http://reader.test")
    return HttpStoryBackend(access_token="token-abc", user_id="user-1", client=client)


@pytest.mark.anyio
async def test_get_story_sends_auth_headers_and_unwraps_payload():
    requests = []
    backend = _backend(lambda request: httpx.Response(200, json={"story": STORY}), requests)

    story = await backend.get_story("story-1")

    assert story.title == "The Glass Orchard"
    assert requests[0].url.path == "/story/story-1"
    assert requests[0].headers["Authorization"] == "Bearer token-abc"
    assert requests[0].headers["X-User-ID"] == "user-1"
    assert requests[0].headers["X-Request-ID"]
    await backend.aclose()


@pytest.mark.anyio
async def test_get_chapters_accepts_bare_list():
    chapter = {"id": "c1", "story_id": "story-1", "chapter_number": 1, "title": "One", "content": "Text"}
    backend = _backend(lambda request: httpx.Response(200, json=[chapter]))

    chapters = await backend.get_chapters("story-1")

    assert [c.chapter_number for c in chapters] == [1]
    await backend.aclose()


@pytest.mark.anyio
async def test_generation_status_infers_checkpoint_from_step():
    payload = {"status": None, "current_step": "awaiting_chapter_2_feedback"}
    backend = _backend(lambda request: httpx.Response(200, json=payload))

    status = await backend.get_chapter_generation_status("story-1", 4)

    assert status.state == GenerationState.NEEDS_FEEDBACK
    assert status.checkpoint == "chapter_2"
    await backend.aclose()


@pytest.mark.anyio
async def test_feedback_status_passes_query_params():
    requests = []
    backend = _backend(lambda request: httpx.Response(200, json={"has_feedback": True}), requests)

    status = await backend.get_feedback_status("story-1", "chapter_5")

    assert status.has_feedback is True
    assert requests[0].url.params["story_id"] == "story-1"
    assert requests[0].url.params["checkpoint"] == "chapter_5"
    await backend.aclose()


@pytest.mark.anyio
async def test_update_progress_posts_position():
    requests = []
    backend = _backend(lambda request: httpx.Response(204), requests)

    await backend.update_progress("story-1", 3, -480.0)

    assert requests[0].method == "POST"
    assert json.loads(requests[0].content) == {"chapter_number": 3, "scroll_position": -480.0}
    await backend.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize(
    "status_code,error",
    [(401, UnauthorizedError), (403, UnauthorizedError), (404, NotFoundError), (502, NetworkError)],
)
async def test_error_statuses_map_to_reader_errors(status_code, error):
    backend = _backend(lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    with pytest.raises(error):
        await backend.get_story("story-1")
    await backend.aclose()


@pytest.mark.anyio
async def test_transport_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = _backend(handler)

    with pytest.raises(NetworkError):
        await backend.get_reading_state("story-1")
    await backend.aclose()


@pytest.mark.anyio
async def test_unexpected_payload_is_network_error():
    backend = _backend(lambda request: httpx.Response(200, json={"chapters": [{"chapter_number": "x"}]}))

    with pytest.raises(NetworkError):
        await backend.get_chapters("story-1")
    await backend.aclose()


@pytest.mark.anyio
async def test_checkpoint_feedback_payload_and_failure():
    requests = []
    responses = iter([httpx.Response(200, json={"accepted": True}), httpx.Response(500)])
    backend = _backend(lambda request: next(responses), requests)
    dimensions = CheckpointDimensions(pacing=Pacing.SLOW, tone=Tone.LIGHT, character=CharacterFeeling.WARMING)

    ack = await backend.submit_checkpoint_feedback("story-1", "chapter_2", dimensions, "Mara")
    with pytest.raises(SubmissionError):
        await backend.submit_checkpoint_feedback("story-1", "chapter_2", dimensions, "Mara")

    assert ack.accepted is True
    assert json.loads(requests[0].content) == {
        "story_id": "story-1",
        "checkpoint": "chapter_2",
        "pacing": "slow",
        "tone": "light",
        "character": "warming",
        "protagonist_name": "Mara",
    }
    await backend.aclose()


@pytest.mark.anyio
async def test_checkpoint_response_omits_missing_follow_up():
    requests = []
    backend = _backend(lambda request: httpx.Response(200, json={"generating_chapters": True}), requests)

    result = await backend.submit_checkpoint_response("story-1", "chapter_12_complete", "What a finish")

    assert result.generating_chapters is True
    assert requests[0].url.path == "/feedback/checkpoint-response"
    assert "follow_up_action" not in json.loads(requests[0].content)
    await backend.aclose()


@pytest.mark.anyio
async def test_heartbeat_posts_story_position():
    requests = []
    backend = _backend(lambda request: httpx.Response(204), requests)

    await backend.send_heartbeat("story-1", 4, 62)

    assert requests[0].url.path == "/reading/heartbeat"
    assert json.loads(requests[0].content) == {"story_id": "story-1", "chapter_number": 4, "scroll_percent": 62}
    await backend.aclose()
