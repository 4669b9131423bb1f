import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from talkinghead import metrics
from talkinghead.pipeline.errors import (
    AudioSynthesisFailed,
    CapabilityError,
    InvalidInput,
    JobConflict,
    VideoSynthesisFailed,
)
from talkinghead.pipeline.models import (
    GenerationJob,
    GenerationRequest,
    GenerationStage,
    ImageSource,
    can_transition,
)
from talkinghead.pipeline.poller import AsyncTaskPoller
from talkinghead.presets import NarratorVoice

from conftest import FakeRecordStore, FakeTransport

CHARACTER = ImageSource(url="https://cdn.test/character.png")
NARRATION = {"success": True, "audioUrl": "https://cdn.test/narration.mp3"}
RAW_VIDEO = "https://cdn.test/raw.mp4"
SYNCED_VIDEO = "https://cdn.test/synced.mp4"


def _request(**overrides):
    fields = dict(
        script="Welcome to training.",
        voice=NarratorVoice.NOVA,
        character_image=CHARACTER,
        background="home_studio",
        user_id="user-1",
    )
    fields.update(overrides)
    return GenerationRequest(**fields)


def _happy_transport(**overrides):
    scripts = dict(
        generate_voice=[NARRATION],
        generate_video=[{"success": True, "taskId": "task-1"}],
        check_video_status=[
            {"status": "STARTING"},
            {"status": "RUNNING"},
            {"status": "SUCCEEDED", "videoUrl": RAW_VIDEO},
        ],
        lip_sync_service=[{"success": True, "outputVideoUrl": SYNCED_VIDEO}],
        composite_character=[{"success": True, "compositedImageUrl": "https://cdn.test/composited.png"}],
    )
    scripts.update(overrides)
    return FakeTransport(**scripts)


def _run(service, request, job_id=None):
    events = []
    job = asyncio.run(service.run(request, job_id=job_id, on_progress=events.append))
    return job, events


async def _wait_forever(_delay):
    await asyncio.Event().wait()


def _stalled_service(make_service, transport):
    """A service whose video never finishes polling."""
    service = make_service(transport)
    service.poller = AsyncTaskPoller(service.video.check_status, sleep=_wait_forever)
    return service


# ── Preconditions ────────────────────────────────────────────────────────────

@pytest.mark.parametrize("overrides", [
    {"character_image": None},
    {"character_image": ImageSource()},
    {"script": ""},
    {"script": "   \n"},
    {"background": "moon_base"},
])
def test_invalid_input_makes_no_calls(make_service, overrides):
    transport = _happy_transport()
    service = make_service(transport)
    events = []

    with pytest.raises(InvalidInput):
        asyncio.run(service.run(_request(**overrides), job_id="job-1", on_progress=events.append))

    assert transport.calls == []
    assert service.get_status("job-1").stage == GenerationStage.ERROR
    assert [e.stage for e in events] == [GenerationStage.ERROR]
    assert metrics.get_counter("runs.failed.invalid_input") == 1


def test_custom_background_skips_preset_lookup(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    job, _ = _run(service, _request(background="moon_base", custom_background=ImageSource(url="https://bg.test/x.jpg")))

    assert job.stage == GenerationStage.COMPLETE
    assert "custom backdrop" in transport.calls_to("generate-video")[0]["prompt"]


# ── Full runs ────────────────────────────────────────────────────────────────

def test_async_video_without_lipsync_service_completes_with_notice(make_service, records):
    transport = _happy_transport(
        lip_sync_service=[{"success": False, "error": "Lip sync service not configured"}],
    )
    service = make_service(transport)

    job, events = _run(service, _request())

    assert job.stage == GenerationStage.COMPLETE
    assert job.progress == 100
    assert job.final_video_url == RAW_VIDEO
    assert job.lipsync_applied is False
    assert job.notices == ["Video generated without lip sync (service not configured)"]
    assert len(transport.calls_to("check-video-status")) == 3

    assert events[-1].stage == GenerationStage.COMPLETE
    assert events[-1].final_video_url == RAW_VIDEO
    assert any(e.notice == job.notices[0] for e in events)

    assert len(records.records) == 1
    assert records.records[0].video_url == RAW_VIDEO
    assert records.records[0].title == "Welcome to training."


def test_progress_checkpoints_and_stage_order(make_service):
    service = make_service(_happy_transport())

    _, events = _run(service, _request())

    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert [10, 30, 40, 45, 50, 55, 80, 90, 100] == sorted(set(progress))

    stages = []
    for event in events:
        if not stages or stages[-1] != event.stage:
            stages.append(event.stage)
    assert stages == [
        GenerationStage.GENERATING_AUDIO,
        GenerationStage.GENERATING_VIDEO,
        GenerationStage.APPLYING_LIPSYNC,
        GenerationStage.COMPLETE,
    ]


def test_lipsync_success_uses_synced_video(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    job, _ = _run(service, _request())

    assert job.final_video_url == SYNCED_VIDEO
    assert job.video_url == RAW_VIDEO
    assert job.lipsync_applied is True
    assert job.notices == []
    sync_body = transport.calls_to("lip-sync-service")[0]
    assert sync_body["videoUrl"] == RAW_VIDEO
    assert sync_body["audioUrl"] == "https://cdn.test/narration.mp3"


def test_lipsync_failure_falls_back_to_raw_video(make_service):
    transport = _happy_transport(lip_sync_service=[CapabilityError("lip-sync-service failed with HTTP 500")])
    service = make_service(transport)

    job, _ = _run(service, _request())

    assert job.stage == GenerationStage.COMPLETE
    assert job.final_video_url == RAW_VIDEO
    assert job.notices == ["Video generated without lip sync"]
    assert metrics.get_counter("fallback.lipsync") == 1


def test_immediate_video_skips_polling(make_service):
    transport = _happy_transport(generate_video=[{"success": True, "videoUrl": RAW_VIDEO}])
    service = make_service(transport)

    job, _ = _run(service, _request())

    assert job.stage == GenerationStage.COMPLETE
    assert transport.calls_to("check-video-status") == []


def test_video_request_payload(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    _run(service, _request(script="x" * 1000))

    body = transport.calls_to("generate-video")[0]
    assert body["duration"] == 10
    assert body["imageUrl"] == CHARACTER.url
    assert body["userId"] == "user-1"
    assert "tidy home recording studio" in body["prompt"]
    assert "imageBase64" not in body


def test_inline_character_is_sent_as_base64(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    _run(service, _request(character_image=ImageSource(data="iVBORw0KGgo")))

    body = transport.calls_to("generate-video")[0]
    assert body["imageBase64"] == "iVBORw0KGgo"
    assert body["imageUrl"] == "data:image/png;base64,iVBORw0KGgo"


def test_inline_narration_passed_to_lipsync_when_storage_is_off(make_service):
    transport = _happy_transport(generate_voice=[{"success": True, "audioBase64": "SUQz"}])
    service = make_service(transport)

    _run(service, _request())

    assert transport.calls_to("lip-sync-service")[0]["audioUrl"] == "data:audio/mpeg;base64,SUQz"


# ── Compositing ──────────────────────────────────────────────────────────────

def test_composited_still_is_animated(make_service):
    transport = _happy_transport()
    service = make_service(transport, enable_compositing=True)

    _, events = _run(service, _request())

    composite_body = transport.calls_to("composite-character")[0]
    assert composite_body["characterImage"] == CHARACTER.url
    assert composite_body["backgroundImage"] == "https://cdn.test/backgrounds/home_studio.jpg"
    assert transport.calls_to("generate-video")[0]["imageUrl"] == "https://cdn.test/composited.png"
    assert 35 in [e.progress for e in events]


def test_compositing_failure_animates_raw_character(make_service):
    transport = _happy_transport(composite_character=[{"success": False, "error": "no person found"}])
    service = make_service(transport, enable_compositing=True)

    job, _ = _run(service, _request())

    assert job.stage == GenerationStage.COMPLETE
    assert transport.calls_to("generate-video")[0]["imageUrl"] == CHARACTER.url
    assert "Character placed without background compositing" in job.notices


# ── Failures ─────────────────────────────────────────────────────────────────

def test_audio_failure_stops_the_run(make_service, records):
    transport = _happy_transport(generate_voice=[CapabilityError("generate-voice failed", detail="quota exceeded")])
    service = make_service(transport)
    events = []

    with pytest.raises(AudioSynthesisFailed) as exc_info:
        asyncio.run(service.run(_request(), job_id="job-1", on_progress=events.append))

    assert exc_info.value.detail == "quota exceeded"
    assert transport.calls_to("generate-video") == []
    job = service.get_status("job-1")
    assert job.stage == GenerationStage.ERROR
    assert "Failed to generate audio" in job.error
    assert events[-1].stage == GenerationStage.ERROR
    assert records.records == []
    assert metrics.get_counter("runs.failed.audio_synthesis_failed") == 1


def test_poll_timeout_is_video_failure(make_service):
    transport = _happy_transport(check_video_status=[{"status": "RUNNING"}])
    service = make_service(transport, max_attempts=3)

    with pytest.raises(VideoSynthesisFailed, match="timed out"):
        asyncio.run(service.run(_request(), job_id="job-1"))

    assert len(transport.calls_to("check-video-status")) == 3
    assert transport.calls_to("lip-sync-service") == []
    job = service.get_status("job-1")
    assert job.stage == GenerationStage.ERROR
    assert job.progress <= 75


def test_provider_failure_detail_reaches_the_job(make_service):
    transport = _happy_transport(check_video_status=[{"status": "FAILED", "error": "Content policy violation"}])
    service = make_service(transport)

    with pytest.raises(VideoSynthesisFailed):
        asyncio.run(service.run(_request(), job_id="job-1"))

    assert "Content policy violation" in service.get_status("job-1").error


def test_submit_failure_is_video_failure(make_service):
    transport = _happy_transport(generate_video=[{"success": False, "error": "Replicate token missing"}])
    service = make_service(transport)

    with pytest.raises(VideoSynthesisFailed, match="Replicate token missing"):
        asyncio.run(service.run(_request()))


def test_persistence_failure_does_not_fail_run(make_service):
    service = make_service(_happy_transport(), record_store=FakeRecordStore(fail=True))

    job, _ = _run(service, _request())

    assert job.stage == GenerationStage.COMPLETE
    assert metrics.get_counter("persistence.failed") == 1
    assert metrics.get_counter("runs.completed") == 1


# ── Streaming / background ───────────────────────────────────────────────────

def test_stream_ends_with_complete(make_service):
    service = make_service(_happy_transport())

    async def _collect():
        return [event async for event in service.stream(_request(), job_id="job-1")]

    events = asyncio.run(_collect())

    assert events[-1].stage == GenerationStage.COMPLETE
    assert events[-1].final_video_url == SYNCED_VIDEO
    assert [e.progress for e in events] == sorted(e.progress for e in events)
    assert sum(e.stage == GenerationStage.COMPLETE for e in events) == 1


def test_stream_reports_failure_as_terminal_event(make_service):
    transport = _happy_transport(generate_voice=[{"success": False, "error": "quota"}])
    service = make_service(transport)

    async def _collect():
        return [event async for event in service.stream(_request())]

    events = asyncio.run(_collect())

    assert events[-1].stage == GenerationStage.ERROR
    assert "Failed to generate audio" in events[-1].error


def test_run_background_registers_job_before_it_starts(make_service):
    service = make_service(_happy_transport())

    async def _scenario():
        job_id = service.run_background(_request(), job_id="job-bg")
        assert service.get_status(job_id).stage == GenerationStage.IDLE
        while service._background_tasks:
            await asyncio.sleep(0)
        return service.get_status(job_id)

    job = asyncio.run(_scenario())

    assert job.stage == GenerationStage.COMPLETE
    assert job.final_video_url == SYNCED_VIDEO


# ── Job registry ─────────────────────────────────────────────────────────────

def test_job_id_in_flight_cannot_be_claimed_again(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    async def _scenario():
        job_id = service.run_background(_request(), job_id="job-1")
        with pytest.raises(JobConflict):
            service.run_background(_request(script="Second script."), job_id="job-1")
        with pytest.raises(JobConflict):
            service.stream(_request(), job_id="job-1")
        with pytest.raises(JobConflict):
            await service.run(_request(), job_id="job-1")
        while service._background_tasks:
            await asyncio.sleep(0)
        return service.get_status(job_id)

    job = asyncio.run(_scenario())

    assert job.stage == GenerationStage.COMPLETE
    assert job.final_video_url == SYNCED_VIDEO
    assert len(transport.calls_to("generate-voice")) == 1
    assert len(transport.calls_to("generate-video")) == 1


def test_finished_job_id_can_be_reused(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    first, _ = _run(service, _request(), job_id="job-1")
    second, _ = _run(service, _request(script="Module two."), job_id="job-1")

    assert first is not second
    assert second.stage == GenerationStage.COMPLETE
    assert service.get_status("job-1") is second
    assert len(transport.calls_to("generate-video")) == 2


def test_failed_job_id_can_be_retried(make_service):
    transport = _happy_transport(generate_voice=[{"success": False, "error": "quota"}, NARRATION])
    service = make_service(transport)

    with pytest.raises(AudioSynthesisFailed):
        asyncio.run(service.run(_request(), job_id="job-1"))
    job, _ = _run(service, _request(), job_id="job-1")

    assert job.stage == GenerationStage.COMPLETE
    assert job.error is None


def test_abandoned_stream_ends_job_in_error(make_service, sleep):
    transport = _happy_transport()
    service = _stalled_service(make_service, transport)

    async def _abandon():
        events = service.stream(_request(), job_id="job-1")
        async for event in events:
            if event.stage == GenerationStage.GENERATING_VIDEO and event.progress >= 40:
                break
        await events.aclose()

    asyncio.run(_abandon())

    job = service.get_status("job-1")
    assert job.stage == GenerationStage.ERROR
    assert job.error == "Run cancelled"
    assert job.progress == 40
    assert metrics.get_counter("runs.cancelled") == 1

    service.poller = AsyncTaskPoller(service.video.check_status, interval=5, sleep=sleep)
    retried, _ = _run(service, _request(), job_id="job-1")
    assert retried.stage == GenerationStage.COMPLETE


def test_shutdown_ends_background_runs_in_error(make_service):
    service = _stalled_service(make_service, _happy_transport())

    async def _scenario():
        service.run_background(_request(), job_id="job-1")
        while service.get_status("job-1").progress < 40:
            await asyncio.sleep(0)
        await service.shutdown()

    asyncio.run(_scenario())

    job = service.get_status("job-1")
    assert job.stage == GenerationStage.ERROR
    assert job.error == "Run cancelled"
    assert service._background_tasks == set()


def test_shutdown_before_first_step_still_releases_job(make_service):
    transport = _happy_transport()
    service = make_service(transport)

    async def _scenario():
        service.run_background(_request(), job_id="job-1")
        await service.shutdown()

    asyncio.run(_scenario())

    job = service.get_status("job-1")
    assert job.stage == GenerationStage.ERROR
    assert job.progress == 0
    assert transport.calls == []


def test_old_finished_jobs_are_pruned(make_service):
    service = make_service(_happy_transport())
    service.job_retention_seconds = 60
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    service._jobs.update({
        "old-done": GenerationJob(job_id="old-done", stage=GenerationStage.COMPLETE, progress=100, updated_at=long_ago),
        "old-failed": GenerationJob(job_id="old-failed", stage=GenerationStage.ERROR, updated_at=long_ago),
        "recent-done": GenerationJob(job_id="recent-done", stage=GenerationStage.COMPLETE, progress=100),
        "slow-run": GenerationJob(job_id="slow-run", stage=GenerationStage.GENERATING_VIDEO, updated_at=long_ago),
    })

    _run(service, _request(), job_id="job-1")

    assert service.get_status("old-done") is None
    assert service.get_status("old-failed") is None
    assert service.get_status("recent-done") is not None
    assert service.get_status("slow-run").stage == GenerationStage.GENERATING_VIDEO
    assert service.get_status("job-1").stage == GenerationStage.COMPLETE


# ── State machine ────────────────────────────────────────────────────────────

def test_transitions_are_forward_only():
    assert can_transition(GenerationStage.IDLE, GenerationStage.GENERATING_AUDIO)
    assert can_transition(GenerationStage.GENERATING_VIDEO, GenerationStage.ERROR)
    assert not can_transition(GenerationStage.IDLE, GenerationStage.GENERATING_VIDEO)
    assert not can_transition(GenerationStage.APPLYING_LIPSYNC, GenerationStage.GENERATING_AUDIO)
    assert not can_transition(GenerationStage.COMPLETE, GenerationStage.ERROR)
    assert not can_transition(GenerationStage.ERROR, GenerationStage.IDLE)


def test_illegal_transition_is_rejected(make_service):
    service = make_service(_happy_transport())
    job = GenerationJob(job_id="job-1")

    with pytest.raises(RuntimeError):
        service._advance(job, GenerationStage.COMPLETE, 100, None)
    assert job.stage == GenerationStage.IDLE
