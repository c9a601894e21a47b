"""Tests for the generation orchestrator state machine."""

import asyncio
import json

import httpx
import pytest

from i2v_client.config import PollingSettings
from i2v_client.credentials import MemoryCredentialStore
from i2v_client.errors import (
    MalformedResponseError,
    PollingTimeoutError,
    ServiceError,
    TransportError,
    ValidationError,
)
from i2v_client.orchestrator import GenerationOrchestrator, GenerationParams, Phase

IMAGE = "https://i.ibb.co/abc/face.jpg"


def _ack(task_id):
    return httpx.Response(
        200, json={"code": 0, "data": {"_id": task_id, "current_status": "initialized"}},
    )


def _listing(task_id, status, **extra):
    record = {"_id": task_id, "current_status": status, "createdAt": "2024-05-01T10:00:00Z", **extra}
    return httpx.Response(200, json={"code": 0, "data": [record]})


class Recorder:
    """Collects every state passed to the render callback."""

    def __init__(self):
        self.states = []

    def __call__(self, state):
        self.states.append(state)

    @property
    def phases(self):
        return [s.phase for s in self.states]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def build(make_client, credentials, fast_polling, recorder):
    """Build an orchestrator around a fake service handler."""

    def _build(handler, polling=None, store=None, **api_overrides):
        client = make_client(handler, **api_overrides)
        orchestrator = GenerationOrchestrator(
            client, store or credentials, polling or fast_polling, render=recorder,
        )
        return orchestrator

    return _build


async def _shutdown(orchestrator):
    await orchestrator.close()
    await orchestrator._client.close()


@pytest.mark.asyncio
async def test_missing_credential_fails_without_network(build, recorder):
    calls = []

    def handler(request):
        calls.append(request)
        return _ack("never")

    orchestrator = build(handler, store=MemoryCredentialStore())
    state = await orchestrator.submit(GenerationParams(image_url=IMAGE))

    assert calls == []
    assert state.phase is Phase.FAILED
    assert isinstance(state.error, ValidationError)
    assert "API token" in state.message
    assert recorder.phases == [Phase.IDLE, Phase.VALIDATING, Phase.FAILED]
    await _shutdown(orchestrator)


@pytest.mark.asyncio
@pytest.mark.parametrize("image_url", [None, "", "   "])
async def test_missing_image_fails_without_network(build, image_url):
    calls = []

    def handler(request):
        calls.append(request)
        return _ack("never")

    orchestrator = build(handler)
    state = await orchestrator.submit(GenerationParams(image_url=image_url))

    assert calls == []
    assert state.phase is Phase.FAILED
    assert isinstance(state.error, ValidationError)
    await _shutdown(orchestrator)


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [
    GenerationParams(image_url=IMAGE, variant="general", prompt=""),
    GenerationParams(image_url=IMAGE, variant="first_last_frame", prompt="turn"),
    GenerationParams(image_url=IMAGE, duration=7),
    GenerationParams(image_url=IMAGE, duration=5, duration_unit="frames"),
    GenerationParams(image_url=IMAGE, variant="turbo"),
])
async def test_invalid_input_is_a_validation_error(build, params):
    calls = []

    def handler(request):
        calls.append(request)
        return _ack("never")

    orchestrator = build(handler)
    state = await orchestrator.submit(params)

    assert calls == []
    assert isinstance(state.error, ValidationError)
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_submission_payload_is_normalized_and_clamped(build):
    bodies = []

    def handler(request):
        if request.method == "POST":
            bodies.append(json.loads(request.content))
        return _ack("t1")

    orchestrator = build(handler, polling=PollingSettings(interval=60))
    await orchestrator.submit(GenerationParams(
        image_url="https://drive.google.com/file/d/ABC123/view?usp=sharing",
        prompt="wave hello",
        variant="general",
        count=99,
    ))

    body = bodies[0]
    assert body["image_url"] == "https://drive.google.com/uc?export=download&id=ABC123"
    assert body["number_of_images"] == 5
    assert body["model_type"] == "GENERAL"
    assert body["name"].startswith("Video_")
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_polls_until_completed(build, recorder):
    statuses = iter([
        _listing("t1", "processing", video_url="https://cdn/partial.mp4"),
        _listing("t1", "processing"),
        _listing("t1", "completed", video_url="https://cdn/final.mp4"),
    ])
    gets = []

    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        gets.append(request)
        return next(statuses)

    orchestrator = build(handler)
    submitted = await orchestrator.submit(GenerationParams(image_url=IMAGE))
    assert submitted.phase is Phase.POLLING
    assert submitted.task.id == "t1"

    final = await orchestrator.wait(timeout=2)

    assert final.phase is Phase.COMPLETED
    assert final.result_url == "https://cdn/final.mp4"
    assert len(gets) == 3
    polled = [s for s in recorder.states if s.attempts > 0]
    assert [s.phase for s in polled] == [Phase.POLLING, Phase.POLLING, Phase.COMPLETED]
    assert [s.result_url for s in polled] == [None, None, "https://cdn/final.mp4"]
    assert [s.task.result_url for s in polled[:2]] == [None, None]
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_single_task_status_mode(build):
    paths = []

    def handler(request):
        if request.method == "POST":
            return _ack("abc")
        paths.append(request.url.path)
        return httpx.Response(200, json={"generation": {"status": "completed", "video_url": "https://cdn/v.mp4"}})

    orchestrator = build(handler, status_mode="single")
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=2)

    assert paths == ["/api/v1/userImage2Video/abc"]
    assert final.result_url == "https://cdn/v.mp4"
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_failed_task_surfaces_service_message(build):
    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        return _listing("t1", "failed", failed_message="No face detected in image")

    orchestrator = build(handler)
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=2)

    assert final.phase is Phase.FAILED
    assert isinstance(final.error, ServiceError)
    assert final.message == "No face detected in image"
    assert final.task.failure_reason == "No face detected in image"
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_failed_task_without_message_gets_generic_text(build):
    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        return _listing("t1", "failed")

    orchestrator = build(handler)
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=2)

    assert final.phase is Phase.FAILED
    assert final.message == "Video generation failed"
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_poll_transport_error_is_terminal(build):
    gets = []

    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        gets.append(request)
        return httpx.Response(503, text="upstream down")

    orchestrator = build(handler)
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=2)
    await asyncio.sleep(0.05)

    assert final.phase is Phase.FAILED
    assert isinstance(final.error, TransportError)
    assert "upstream down" in final.message
    assert len(gets) == 1
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_submission_failure_is_not_retried(build):
    posts = []

    def handler(request):
        posts.append(request)
        return httpx.Response(200, json={"code": 1, "message": "Insufficient credits"})

    orchestrator = build(handler)
    state = await orchestrator.submit(GenerationParams(image_url=IMAGE))
    await asyncio.sleep(0.05)

    assert state.phase is Phase.FAILED
    assert state.message == "Insufficient credits"
    assert len(posts) == 1
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_single_response_mode_needs_no_polling(build, recorder):
    gets = []

    def handler(request):
        if request.method == "GET":
            gets.append(request)
        return _ack("t1")

    orchestrator = build(handler, response_mode="single")
    state = await orchestrator.submit(GenerationParams(image_url=IMAGE))
    await asyncio.sleep(0.05)

    assert state.phase is Phase.COMPLETED
    assert state.task.id == "t1"
    assert gets == []
    assert recorder.phases[-2:] == [Phase.AWAITING_RESPONSE, Phase.COMPLETED]
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_single_response_mode_failed_acknowledgment(build, recorder):
    def handler(request):
        return httpx.Response(200, json={
            "code": 0,
            "data": {"_id": "t1", "current_status": "failed", "failed_message": "bad image"},
        })

    orchestrator = build(handler, response_mode="single")
    state = await orchestrator.submit(GenerationParams(image_url=IMAGE))

    assert state.phase is Phase.FAILED
    assert isinstance(state.error, ServiceError)
    assert state.message == "bad image"
    assert state.task.id == "t1"
    assert recorder.phases[-2:] == [Phase.AWAITING_RESPONSE, Phase.FAILED]
    assert Phase.COMPLETED not in recorder.phases
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_out_of_range_timestamp_does_not_stall_polling(build):
    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        record = {"_id": "t1", "current_status": "completed",
                  "video_url": "https://cdn/v.mp4", "createdAt": 1e20}
        return httpx.Response(200, json={"code": 0, "data": [record]})

    orchestrator = build(handler)
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=1)

    assert final.phase is Phase.COMPLETED
    assert final.result_url == "https://cdn/v.mp4"
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_undecodable_status_body_fails_the_generation(build, monkeypatch):
    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        return _listing("t1", "processing")

    def broken_decode(data, task_id):
        raise KeyError("current_status")

    orchestrator = build(handler)
    monkeypatch.setattr(orchestrator._client.decoder, "decode_status", broken_decode)
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=1)

    assert final.phase is Phase.FAILED
    assert isinstance(final.error, MalformedResponseError)
    assert "current_status" in final.message
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_polling_ceiling_by_attempts(build):
    gets = []

    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        gets.append(request)
        return _listing("t1", "processing")

    orchestrator = build(handler, polling=PollingSettings(interval=0.01, max_attempts=3, max_wait=None))
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=2)

    assert final.phase is Phase.FAILED
    assert isinstance(final.error, PollingTimeoutError)
    assert final.attempts == 3
    assert len(gets) == 3
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_polling_ceiling_by_wall_clock(build):
    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        return _listing("t1", "processing")

    orchestrator = build(handler, polling=PollingSettings(interval=0.02, max_attempts=None, max_wait=0.05))
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    final = await orchestrator.wait(timeout=2)

    assert isinstance(final.error, PollingTimeoutError)
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_reset_stops_polling(build):
    gets = []

    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        gets.append(request)
        return _listing("t1", "processing")

    orchestrator = build(handler, polling=PollingSettings(interval=0.05))
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    orchestrator.reset()
    await asyncio.sleep(0.15)

    assert gets == []
    assert orchestrator.state.phase is Phase.IDLE
    assert orchestrator.state.task is None
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_manual_check_replaces_scheduled_check(build):
    gets = []
    statuses = iter([_listing("t1", "processing"), _listing("t1", "completed", video_url="https://cdn/v.mp4")])

    def handler(request):
        if request.method == "POST":
            return _ack("t1")
        gets.append(request)
        return next(statuses)

    orchestrator = build(handler, polling=PollingSettings(interval=30))
    await orchestrator.submit(GenerationParams(image_url=IMAGE))

    state = await orchestrator.check_now()
    assert state.phase is Phase.POLLING
    assert state.attempts == 1

    state = await orchestrator.check_now()
    assert state.phase is Phase.COMPLETED
    assert state.result_url == "https://cdn/v.mp4"
    assert len(gets) == 2
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_manual_and_scheduled_checks_never_overlap(build):
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        if request.method == "POST":
            return _ack("t1")
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        return _listing("t1", "processing")

    orchestrator = build(handler, polling=PollingSettings(interval=0.01, max_attempts=None, max_wait=None))
    await orchestrator.submit(GenerationParams(image_url=IMAGE))
    await asyncio.sleep(0.015)
    await asyncio.gather(*(orchestrator.check_now() for _ in range(3)))
    await asyncio.sleep(0.05)

    assert peak == 1
    orchestrator.reset()
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_check_now_outside_polling_is_noop(build):
    calls = []

    def handler(request):
        calls.append(request)
        return _ack("t1")

    orchestrator = build(handler)
    state = await orchestrator.check_now()

    assert state.phase is Phase.IDLE
    assert calls == []
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_stale_poll_response_is_discarded(build, recorder):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request):
        if request.method == "POST":
            return _ack(json.loads(request.content)["name"])
        if request.url.path.endswith("/first"):
            entered.set()
            await release.wait()
            return httpx.Response(
                200, json={"generation": {"status": "completed", "video_url": "https://cdn/first.mp4"}},
            )
        return httpx.Response(200, json={"generation": {"status": "processing"}})

    orchestrator = build(handler, status_mode="single")
    first = await orchestrator.submit(GenerationParams(image_url=IMAGE, name="first"))
    await asyncio.wait_for(entered.wait(), timeout=1)

    second = await orchestrator.submit(GenerationParams(image_url=IMAGE, name="second"))
    assert second.epoch > first.epoch
    release.set()
    await asyncio.sleep(0.1)

    state = orchestrator.state
    assert state.epoch == second.epoch
    assert state.task.id == "second"
    assert state.phase is Phase.POLLING
    assert state.result_url is None
    assert not any(
        s.task is not None and s.task.result_url == "https://cdn/first.mp4" for s in recorder.states
    )
    orchestrator.reset()
    await _shutdown(orchestrator)


@pytest.mark.asyncio
async def test_wait_returns_immediately_when_idle(build):
    orchestrator = build(lambda request: _ack("t1"))
    state = await orchestrator.wait(timeout=0.1)
    assert state.phase is Phase.IDLE
    await _shutdown(orchestrator)
