import pytest

from talkinghead import metrics
from talkinghead.pipeline import storage
from talkinghead.pipeline.animate import VideoClient
from talkinghead.pipeline.composite import CompositeClient
from talkinghead.pipeline.errors import PersistenceFailed, PlaybackError
from talkinghead.pipeline.lipsync import LipSyncClient
from talkinghead.pipeline.models import AudioHandle
from talkinghead.pipeline.orchestrator import TrainingVideoService
from talkinghead.pipeline.poller import AsyncTaskPoller
from talkinghead.pipeline.voice import VoiceClient


class FakeTransport:
    """
    In-memory stand-in for FunctionsTransport.

    Responses are scripted per function name and consumed in order. A
    scripted Exception is raised instead of returned. The last response of
    a script repeats once the script runs out.
    """

    def __init__(self, **scripts):
        self.scripts = {name.replace("_", "-"): list(items) for name, items in scripts.items()}
        self.calls = []

    def script(self, name: str, *responses):
        self.scripts[name] = list(responses)

    def calls_to(self, name: str) -> list:
        return [body for called, body in self.calls if called == name]

    async def invoke(self, name: str, body: dict) -> dict:
        self.calls.append((name, body))
        queue = self.scripts.get(name)
        if not queue:
            raise AssertionError(f"Unexpected call to {name}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FakeRecordStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records = []

    async def append(self, record):
        if self.fail:
            raise PersistenceFailed("database unavailable")
        self.records.append(record)


class FakePlayer:
    def __init__(self, broken_urls=()):
        self.broken_urls = set(broken_urls)
        self.played = []

    async def play(self, voice_id: str, audio_url: str, cached: bool) -> AudioHandle:
        self.played.append((voice_id, audio_url, cached))
        if audio_url in self.broken_urls:
            raise PlaybackError(f"cannot play {audio_url}")
        return AudioHandle(voice_id=voice_id, audio_url=audio_url, cached=cached)


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value

    def delete(self, key):
        self.data.pop(key, None)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def records():
    return FakeRecordStore()


@pytest.fixture
def make_service(sleep, records, monkeypatch):
    monkeypatch.setattr(storage, "is_configured", lambda: False)

    def _make(transport, enable_compositing=False, max_attempts=5, record_store=None):
        video = VideoClient(transport)
        return TrainingVideoService(
            voice=VoiceClient(transport),
            video=video,
            lipsync=LipSyncClient(transport),
            compositor=CompositeClient(transport),
            poller=AsyncTaskPoller(video.check_status, interval=5, max_attempts=max_attempts, sleep=sleep),
            records=record_store or records,
            enable_compositing=enable_compositing,
            background_base_url="https://cdn.test",
        )

    return _make
