"""Input admission: which source may act, and what each action changes."""

import asyncio

import pytest
import pytest_asyncio

from kula_conversation import AttachmentSource, Speaker
from kula_coordinator import (
    CAMERA_FAILED_NOTICE,
    MODEL_NOT_READY_NOTICE,
    TRANSITIONS,
    VOICE_UNAVAILABLE_NOTICE,
    InputEvent,
    InputMode,
)

from tests.conftest import wait_until


@pytest_asyncio.fixture
async def ready(coordinator, classifier, orchestrator):
    """Coordinator with the image model loaded and voice bound."""
    await classifier.load()
    orchestrator.bind()
    yield coordinator
    orchestrator.unbind()


class TestModes:

    def test_starts_idle(self, coordinator):
        assert coordinator.mode is InputMode.IDLE
        assert coordinator.describe() == "idle"

    def test_editing_text_composes(self, coordinator):
        assert coordinator.edit_text("Hi")
        assert coordinator.mode is TRANSITIONS[(InputMode.IDLE, InputEvent.EDIT_TEXT)]
        assert coordinator.session.composed_text == "Hi"

    def test_clearing_text_goes_back_to_idle(self, coordinator):
        coordinator.edit_text("Hi")
        coordinator.edit_text("")
        assert coordinator.mode is InputMode.IDLE

    @pytest.mark.asyncio
    async def test_staging_a_photo(self, ready):
        assert ready.select_image("/tmp/baby.jpg")
        assert ready.mode is TRANSITIONS[(InputMode.IDLE, InputEvent.SELECT_IMAGE)]
        assert ready.session.pending_attachment.preview_ref == "/tmp/baby.jpg"
        assert ready.session.pending_attachment.source is AttachmentSource.UPLOAD

    @pytest.mark.asyncio
    async def test_text_can_be_added_to_a_staged_photo(self, ready):
        ready.select_image("/tmp/baby.jpg")
        assert ready.edit_text("Is this a rash?")
        assert ready.mode is InputMode.STAGING_IMAGE

    @pytest.mark.asyncio
    async def test_remove_image(self, ready):
        ready.select_image("/tmp/baby.jpg")
        assert ready.remove_image()
        assert ready.mode is TRANSITIONS[(InputMode.STAGING_IMAGE, InputEvent.REMOVE_IMAGE)]
        assert ready.session.pending_attachment is None

    def test_remove_without_photo_is_rejected(self, coordinator):
        assert not coordinator.remove_image()

    @pytest.mark.asyncio
    async def test_second_photo_is_rejected_while_one_is_staged(self, ready):
        ready.select_image("/tmp/first.jpg")
        assert not ready.select_image("/tmp/second.jpg")
        assert ready.session.pending_attachment.preview_ref == "/tmp/first.jpg"

    def test_stop_voice_when_not_listening_is_rejected(self, coordinator):
        assert not coordinator.can(InputEvent.STOP_VOICE)
        assert not coordinator.stop_voice()


class TestSend:

    @pytest.mark.asyncio
    async def test_send_text(self, coordinator, transport):
        coordinator.edit_text("How are you?")

        assert await coordinator.send()

        turns = coordinator.orchestrator.store.turns
        assert [(t.speaker, t.text) for t in turns] == [
            (Speaker.USER, "How are you?"),
            (Speaker.ASSISTANT, "I am well, Mama."),
        ]
        assert coordinator.mode is InputMode.IDLE

    @pytest.mark.asyncio
    async def test_send_from_idle_is_rejected(self, coordinator, transport):
        assert not await coordinator.send()
        assert transport.messages == []

    @pytest.mark.asyncio
    async def test_whitespace_only_is_rejected(self, coordinator, transport):
        coordinator.edit_text("   ")
        assert not await coordinator.send()
        assert len(coordinator.orchestrator.store) == 0
        assert transport.messages == []

    @pytest.mark.asyncio
    async def test_send_photo_only(self, ready, transport):
        ready.select_image("/tmp/baby.jpg")

        assert await ready.send()

        assert ready.orchestrator.store.turns[0].text == "Analysis Result: Fever"
        assert "Fever" in transport.messages[0]
        assert ready.mode is InputMode.IDLE

    @pytest.mark.asyncio
    async def test_type_and_send_in_one_step(self, coordinator, transport):
        assert await coordinator.send_text("hello")
        assert transport.messages == ["hello"]

    @pytest.mark.asyncio
    async def test_everything_but_voice_wind_down_is_blocked_while_awaiting(self, ready, transport):
        transport.hold = True
        ready.edit_text("first")
        task = asyncio.ensure_future(ready.send())
        await transport.started.wait()

        assert ready.describe() == "sending"
        assert not ready.edit_text("second")
        assert not await ready.send()
        assert not ready.select_image("/tmp/baby.jpg")
        assert not await ready.start_voice()
        assert transport.messages == ["first"]

        transport.release.set()
        assert await task
        assert ready.edit_text("second")


class TestPhotoCapability:

    def test_photo_before_model_is_ready(self, coordinator, notices):
        assert not coordinator.select_image("/tmp/baby.jpg")

        assert notices == [MODEL_NOT_READY_NOTICE]
        assert coordinator.session.pending_attachment is None
        assert len(coordinator.orchestrator.store) == 0

    @pytest.mark.asyncio
    async def test_photo_after_failed_load(self, coordinator, classifier, image_model, notices):
        image_model.load_error = FileNotFoundError("model.onnx")
        with pytest.raises(Exception):
            await classifier.load()

        assert not coordinator.select_image("/tmp/baby.jpg")
        assert notices == [MODEL_NOT_READY_NOTICE]

    @pytest.mark.asyncio
    async def test_camera_capture_is_staged(self, ready, eyes):
        assert await ready.capture_image()

        assert eyes.captures == 1
        assert ready.session.pending_attachment.source is AttachmentSource.CAMERA
        assert ready.session.pending_attachment.preview_ref == eyes.path

    @pytest.mark.asyncio
    async def test_camera_failure_is_a_notice(self, ready, eyes, notices):
        eyes.error = RuntimeError("Could not open camera 0")

        assert not await ready.capture_image()

        assert notices == [CAMERA_FAILED_NOTICE]
        assert ready.session.pending_attachment is None
        assert len(ready.orchestrator.store) == 0

    @pytest.mark.asyncio
    async def test_camera_needs_the_model_too(self, coordinator, eyes, notices):
        assert not await coordinator.capture_image()
        assert eyes.captures == 0
        assert notices == [MODEL_NOT_READY_NOTICE]


class TestVoice:

    @pytest.mark.asyncio
    async def test_voice_result_is_sent_immediately(self, ready, recognizer, transport):
        recognizer.transcript = "My baby has a cough"

        assert await ready.start_voice()

        assert transport.messages == ["My baby has a cough"]
        turns = ready.orchestrator.store.turns
        assert turns[0].speaker is Speaker.USER
        assert turns[0].text == "My baby has a cough"
        assert ready.mode is InputMode.IDLE

    @pytest.mark.asyncio
    async def test_silence_appends_nothing(self, ready, recognizer, transport):
        recognizer.transcript = None

        assert await ready.start_voice()

        assert len(ready.orchestrator.store) == 0
        assert transport.messages == []
        assert ready.session.is_capturing_voice is False
        assert ready.mode is InputMode.IDLE

    @pytest.mark.asyncio
    async def test_mode_while_listening_and_stop(self, ready, recognizer, transport):
        recognizer.block = True
        recognizer.transcript = "never sent"

        task = asyncio.ensure_future(ready.start_voice())
        await wait_until(lambda: ready.mode is InputMode.CAPTURING_VOICE)

        assert not ready.edit_text("typing meanwhile")
        assert not ready.select_image("/tmp/baby.jpg")
        assert ready.stop_voice()

        assert await task
        assert transport.messages == []
        assert ready.mode is InputMode.IDLE

    @pytest.mark.asyncio
    async def test_voice_unavailable_without_binding(self, coordinator, notices):
        assert not await coordinator.start_voice()
        assert notices == [VOICE_UNAVAILABLE_NOTICE]

    @pytest.mark.asyncio
    async def test_voice_unavailable_when_microphone_fails(self, coordinator, orchestrator, recognizer, notices):
        recognizer.fail_open = True
        orchestrator.bind()

        assert not await coordinator.start_voice()
        assert notices == [VOICE_UNAVAILABLE_NOTICE]

    @pytest.mark.asyncio
    async def test_voice_is_allowed_with_composed_text(self, ready, recognizer, transport):
        ready.edit_text("draft")
        recognizer.transcript = "spoken instead"

        assert await ready.start_voice()
        assert transport.messages == ["spoken instead"]

    @pytest.mark.asyncio
    async def test_voice_is_rejected_with_staged_photo(self, ready, recognizer):
        ready.select_image("/tmp/baby.jpg")
        assert not await ready.start_voice()
        assert recognizer.languages == []


class TestToggle:

    @pytest.mark.asyncio
    async def test_toggle_sends_composed_text(self, ready, recognizer, transport):
        ready.edit_text("hello")
        assert await ready.toggle_voice()
        assert transport.messages == ["hello"]
        assert recognizer.languages == []

    @pytest.mark.asyncio
    async def test_toggle_listens_when_empty(self, ready, recognizer, transport):
        recognizer.transcript = "spoken"
        assert await ready.toggle_voice()
        assert recognizer.languages == ["en-US"]
        assert transport.messages == ["spoken"]

    @pytest.mark.asyncio
    async def test_toggle_stops_listening(self, ready, recognizer):
        recognizer.block = True
        task = asyncio.ensure_future(ready.toggle_voice())
        await wait_until(lambda: ready.mode is InputMode.CAPTURING_VOICE)

        assert await ready.toggle_voice()
        await task
        assert ready.mode is InputMode.IDLE
