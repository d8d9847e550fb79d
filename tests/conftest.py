# tests/conftest.py
import pytest

from storia.retry import RetryPolicy
from storia.soundscapes.assets import LocalAssetStorage
from storia.soundscapes.models import JobState, JobStatus
from storia.soundscapes.synthesis import AudioSynthesizer
from storia.storage.repository import Repository


class FakeSynthesizer(AudioSynthesizer):
    """
    Proveedor de audio en memoria.
    script: lista de estados que devuelve poll_status en orden; el último se repite.
    submit_errors: excepciones que lanzan los primeros submit().
    """

    def __init__(self, script=None, submit_errors=None, audio=b"ID3-fake-audio"):
        self.script        = list(script or [JobState.DONE])
        self.submit_errors = list(submit_errors or [])
        self.audio         = audio
        self.submitted     = []
        self.cancelled     = []
        self.polls         = 0

    @property
    def name(self) -> str:
        return "fake"

    def submit(self, prompt, duration_seconds):
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append((prompt, duration_seconds))
        return f"job-{len(self.submitted)}"

    def poll_status(self, job_id):
        state = self.script[min(self.polls, len(self.script) - 1)]
        self.polls += 1
        if isinstance(state, Exception):
            raise state
        if state == JobState.DONE:
            return JobStatus(job_id, JobState.DONE, output_url=f"https://provider.test/{job_id}.mp3")
        if state == JobState.FAILED:
            return JobStatus(job_id, JobState.FAILED, error="prompt filtrado")
        return JobStatus(job_id, JobState.PENDING)

    def download(self, url):
        return self.audio

    def cancel(self, job_id):
        self.cancelled.append(job_id)


class FakeClock:
    """Reloj manual: cada lectura avanza step segundos."""

    def __init__(self, start: float = 0.0, step: float = 0.0):
        self.now  = start
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def repo():
    """Cada test tiene su propia DB en memoria, aislada, sin cleanup."""
    r = Repository(db_path=":memory:")
    yield r
    r.close()


@pytest.fixture
def storage(tmp_path):
    return LocalAssetStorage(tmp_path / "assets")


@pytest.fixture
def no_sleep_policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0.0, sleep=lambda _: None)


@pytest.fixture
def make_synthesizer():
    return FakeSynthesizer


@pytest.fixture
def make_clock():
    return FakeClock
