"""
Shared fakes for the Kula test suite.

Each fake stands in for one capability backend at the seam the real code
already exposes (transport, image model, speech recognizer, webcam).
"""

import asyncio
import threading

import pytest

from kula_conversation import ConversationStore, SessionState
from kula_coordinator import InputCoordinator
from kula_orchestrator import TurnOrchestrator
from kula_senses import SpeechAdapter
from kula_transport import TransportResult
from kula_vision import ClassificationAdapter, Prediction


class FakeTransport:
    """Records messages; optionally holds each request until released."""

    def __init__(self, result: TransportResult = None):
        self.result = result or TransportResult.success("I am well, Mama.")
        self.messages = []
        self.hold = False
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.closed = False

    async def interact(self, message: str) -> TransportResult:
        self.messages.append(message)
        if self.hold:
            self.started.set()
            await self.release.wait()
        return self.result

    def close(self):
        self.closed = True


class FakeImageModel:
    """Blocking model stub used behind a real ClassificationAdapter."""

    def __init__(self, predictions=None, load_error: Exception = None, predict_error: Exception = None):
        self.predictions = predictions if predictions is not None else [
            Prediction("Healthy", 0.10),
            Prediction("Fever", 0.85),
            Prediction("Rash", 0.05),
        ]
        self.load_error = load_error
        self.predict_error = predict_error
        self.loaded = False
        self.seen = []

    def load(self):
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True

    def predict(self, image_ref):
        self.seen.append(image_ref)
        if self.predict_error is not None:
            raise self.predict_error
        return list(self.predictions)


class FakeRecognizer:
    """
    Speech backend stub.

    With `block=True`, listen() waits until the capture is stopped or
    `release` is set, so tests can observe the capturing state.
    """

    def __init__(self, transcript=None, fail_open=False, block=False):
        self.transcript = transcript
        self.fail_open = fail_open
        self.block = block
        self.release = threading.Event()
        self.opened = False
        self.closed = False
        self.languages = []

    def open(self):
        if self.fail_open:
            raise RuntimeError("no microphone")
        self.opened = True

    def close(self):
        self.closed = True

    def listen(self, stop_event, language):
        self.languages.append(language)
        if self.block:
            while not stop_event.is_set() and not self.release.is_set():
                stop_event.wait(0.01)
        return self.transcript


class FakeEyes:
    def __init__(self, path="/tmp/kula_capture.jpg", error: Exception = None):
        self.path = path
        self.error = error
        self.captures = 0
        self.stopped = False

    def capture_photo(self):
        self.captures += 1
        if self.error is not None:
            raise self.error
        return self.path

    def stop(self):
        self.stopped = True


async def wait_until(predicate, timeout=2.0):
    """Poll the event loop until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def image_model():
    return FakeImageModel()


@pytest.fixture
def classifier(image_model):
    return ClassificationAdapter(image_model)


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def speech(recognizer):
    return SpeechAdapter(recognizer, language="en-US")


@pytest.fixture
def orchestrator(transport, classifier, speech):
    return TurnOrchestrator(
        transport,
        classifier,
        speech=speech,
        store=ConversationStore(),
        session=SessionState(),
    )


@pytest.fixture
def notices():
    return []


@pytest.fixture
def eyes():
    return FakeEyes()


@pytest.fixture
def coordinator(orchestrator, eyes, notices):
    return InputCoordinator(orchestrator, eyes=eyes, on_notice=notices.append)
