import os
import sys
import pytest

# Ensure the backend root (containing the `promptparty` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from promptparty.config import Config
from promptparty.game.service import GameService
from promptparty.game.store import MemoryStore
from promptparty.generation.client import GenerationClient, JobStatus
from promptparty.generation.orchestrator import GenerationOrchestrator
from promptparty.realtime.broadcast import Broadcaster, SubscriberRegistry
from promptparty.server import create_app


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    ADMIN_TOKEN = ''
    TRUST_PROXY_HEADERS = False
    SOCKETIO_ASYNC_MODE = 'threading'
    SOCKETIO_MESSAGE_QUEUE = ''
    STORE_BACKEND = 'memory'
    TIMER_TICKER_ENABLED = False
    PROMPT_BROADCAST_DEBOUNCE_MS = 0
    GENERATION_POLL_INTERVAL_SEC = 0
    GENERATION_MAX_POLLS = 5


class FakeClock:
    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


class FakeGenerationClient(GenerationClient):
    """Succeeds on the first poll unless a prompt has a script.

    ``scripts`` maps a prompt to the JobStatus sequence returned by poll (the
    last one repeats); ``submit_failures`` maps a prompt to how many submits
    raise before one goes through.
    """

    def __init__(self):
        self.scripts = {}
        self.submit_failures = {}
        self.submitted = []
        self.polls = 0
        self.on_poll = None
        self._jobs = {}

    def submit(self, prompt):
        if self.submit_failures.get(prompt, 0) > 0:
            self.submit_failures[prompt] -= 1
            raise RuntimeError('provider unavailable')
        self.submitted.append(prompt)
        job_id = f'job-{len(self.submitted)}'
        self._jobs[job_id] = prompt
        return job_id

    def poll(self, job_id):
        self.polls += 1
        if self.on_poll:
            self.on_poll()
        script = self.scripts.get(self._jobs[job_id])
        if script:
            return script.pop(0) if len(script) > 1 else script[0]
        return JobStatus('succeeded', image_url=f'https://img.test/{job_id}.webp')


class RecordingChannel:
    def __init__(self):
        self.events = []

    def publish(self, event, payload):
        self.events.append((event, payload))

    def named(self, name):
        return [payload for event, payload in self.events if event == name]


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def generator():
    return FakeGenerationClient()


@pytest.fixture()
def recorder():
    return RecordingChannel()


@pytest.fixture()
def service(clock, generator, recorder):
    broadcaster = Broadcaster()
    broadcaster.add_channel(recorder)
    orchestrator = GenerationOrchestrator(generator, sleep=lambda s: None, poll_interval=0, max_polls=5)
    return GameService(
        MemoryStore(),
        broadcaster,
        orchestrator,
        config={'PROMPT_BROADCAST_DEBOUNCE_MS': 0},
        subscribers=SubscriberRegistry(),
        clock_fn=clock,
        sleep=lambda s: None,
    )


@pytest.fixture()
def make_app(clock, generator):
    def _make(redis_client=None, **overrides):
        config = type('OverrideConfig', (TestConfig,), overrides)
        return create_app(config, generation_client=generator, clock=clock, redis_client=redis_client)
    return _make


@pytest.fixture()
def app_bundle(clock, generator):
    return create_app(TestConfig, generation_client=generator, clock=clock)


@pytest.fixture()
def flask_app(app_bundle):
    application, _ = app_bundle
    with application.app_context():
        yield application


@pytest.fixture()
def socketio(app_bundle):
    return app_bundle[1]


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def game(flask_app):
    return flask_app.extensions['promptparty.game']


@pytest.fixture()
def sio_client(flask_app, socketio):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
    )
    yield test_client
    try:
        test_client.disconnect()
    except Exception:
        pass
