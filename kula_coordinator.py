"""
Kula Input Coordinator
======================
Decides which input source may act right now.

Three sources compete for the conversation: typed text, the microphone and
photos (upload or live camera). Every user action is an event checked
against one transition table; anything not in the table is rejected. While
a request is outstanding only voice wind-down events get through, so at most
one turn is ever in flight.

The coordinator never touches session state itself - it asks the Turn
Orchestrator to make each change.
"""

import asyncio
from enum import Enum
from typing import Callable

from kula_conversation import Attachment, AttachmentSource
from kula_orchestrator import TurnOrchestrator
from kula_senses import KulaEyes


MODEL_NOT_READY_NOTICE = "Model not loaded yet. Please wait a moment and try again."
VOICE_UNAVAILABLE_NOTICE = "Voice input is not available right now."
CAMERA_FAILED_NOTICE = "Could not take a photo with the camera."


class CapabilityUnavailable(Exception):
    """A capability needed for the action is not ready."""


class InputRejected(Exception):
    """The action is not allowed in the current state."""


class InputMode(Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    CAPTURING_VOICE = "capturing-voice"
    STAGING_IMAGE = "staging-image"


class InputEvent(Enum):
    EDIT_TEXT = "edit-text"
    START_VOICE = "start-voice"
    STOP_VOICE = "stop-voice"
    VOICE_RESULT = "voice-result"
    VOICE_END = "voice-end"
    SELECT_IMAGE = "select-image"
    REMOVE_IMAGE = "remove-image"
    SEND = "send"


# (mode, event) -> nominal next mode. Anything missing is rejected.
TRANSITIONS = {
    (InputMode.IDLE, InputEvent.EDIT_TEXT): InputMode.COMPOSING,
    (InputMode.COMPOSING, InputEvent.EDIT_TEXT): InputMode.COMPOSING,
    (InputMode.STAGING_IMAGE, InputEvent.EDIT_TEXT): InputMode.STAGING_IMAGE,

    (InputMode.IDLE, InputEvent.START_VOICE): InputMode.CAPTURING_VOICE,
    (InputMode.COMPOSING, InputEvent.START_VOICE): InputMode.CAPTURING_VOICE,
    (InputMode.CAPTURING_VOICE, InputEvent.STOP_VOICE): InputMode.IDLE,
    (InputMode.CAPTURING_VOICE, InputEvent.VOICE_END): InputMode.IDLE,
    (InputMode.CAPTURING_VOICE, InputEvent.VOICE_RESULT): InputMode.COMPOSING,

    (InputMode.IDLE, InputEvent.SELECT_IMAGE): InputMode.STAGING_IMAGE,
    (InputMode.COMPOSING, InputEvent.SELECT_IMAGE): InputMode.STAGING_IMAGE,
    (InputMode.STAGING_IMAGE, InputEvent.REMOVE_IMAGE): InputMode.IDLE,

    (InputMode.COMPOSING, InputEvent.SEND): InputMode.IDLE,
    (InputMode.STAGING_IMAGE, InputEvent.SEND): InputMode.IDLE,
}

# Capability-driven events still flow while a request is outstanding
_ALLOWED_WHILE_AWAITING = {InputEvent.STOP_VOICE, InputEvent.VOICE_END, InputEvent.VOICE_RESULT}


def _print_notice(message: str):
    print(f"⚠️  {message}")


class InputCoordinator:
    """
    Admission control for user input.

    The current mode is read off the session every time it is needed, so it
    can never disagree with what the orchestrator has actually done:
    - capturing-voice while the microphone is open
    - staging-image while a photo is staged
    - composing while the text buffer is non-empty
    - idle otherwise
    """

    def __init__(self,
                 orchestrator: TurnOrchestrator,
                 eyes: KulaEyes = None,
                 on_notice: Callable[[str], None] = None):
        self.orchestrator = orchestrator
        self.eyes = eyes
        self.on_notice = on_notice or _print_notice

    @property
    def session(self):
        return self.orchestrator.session

    @property
    def mode(self) -> InputMode:
        session = self.session
        if session.is_capturing_voice:
            return InputMode.CAPTURING_VOICE
        if session.pending_attachment is not None:
            return InputMode.STAGING_IMAGE
        if session.composed_text:
            return InputMode.COMPOSING
        return InputMode.IDLE

    def can(self, event: InputEvent) -> bool:
        """Would `event` be admitted right now?"""
        if self.session.is_awaiting_response and event not in _ALLOWED_WHILE_AWAITING:
            return False
        return (self.mode, event) in TRANSITIONS

    def _admit(self, event: InputEvent):
        if not self.can(event):
            busy = " (awaiting response)" if self.session.is_awaiting_response else ""
            raise InputRejected(f"{event.value} not allowed while {self.mode.value}{busy}")

    # ========== TEXT ==========

    def edit_text(self, text: str) -> bool:
        """Replace the compose buffer."""
        try:
            self._admit(InputEvent.EDIT_TEXT)
        except InputRejected:
            return False
        self.orchestrator.set_composed_text(text)
        return True

    async def send(self) -> bool:
        """Submit the composed text and/or staged photo."""
        try:
            self._admit(InputEvent.SEND)
            text = self.session.composed_text
            attachment = self.session.pending_attachment
            if not text.strip() and attachment is None:
                raise InputRejected("nothing to send")
        except InputRejected:
            return False
        return await self.orchestrator.submit(text, attachment)

    async def send_text(self, text: str) -> bool:
        """Type-and-send in one step (keeps any staged photo)."""
        if not self.edit_text(text):
            return False
        return await self.send()

    # ========== VOICE ==========

    async def start_voice(self) -> bool:
        """
        Listen for one utterance and send it straight away.

        Returns:
            True if a capture was started (whether or not anything was heard)
        """
        try:
            self._admit(InputEvent.START_VOICE)
            if not self.orchestrator.voice_available:
                raise CapabilityUnavailable(VOICE_UNAVAILABLE_NOTICE)
        except InputRejected:
            return False
        except CapabilityUnavailable as e:
            self.on_notice(str(e))
            return False

        transcript = await self.orchestrator.capture_voice()
        if not transcript:
            return True

        # Heard something: it becomes the message, no manual editing step
        self.orchestrator.set_composed_text(transcript)
        await self.orchestrator.submit(transcript, None)
        return True

    def stop_voice(self) -> bool:
        try:
            self._admit(InputEvent.STOP_VOICE)
        except InputRejected:
            return False
        self.orchestrator.stop_voice()
        return True

    async def toggle_voice(self) -> bool:
        """
        The single send/voice control: stop if listening, send if there is
        something composed, otherwise start listening.
        """
        if self.mode is InputMode.CAPTURING_VOICE:
            return self.stop_voice()
        if self.session.composed_text.strip() or self.session.pending_attachment is not None:
            return await self.send()
        return await self.start_voice()

    # ========== PHOTOS ==========

    def _check_image_allowed(self):
        self._admit(InputEvent.SELECT_IMAGE)
        if not self.orchestrator.classifier_ready:
            raise CapabilityUnavailable(MODEL_NOT_READY_NOTICE)

    def select_image(self, image_ref: str, source: AttachmentSource = AttachmentSource.UPLOAD) -> bool:
        """Stage a photo for the next send."""
        try:
            self._check_image_allowed()
        except InputRejected:
            return False
        except CapabilityUnavailable as e:
            self.on_notice(str(e))
            return False

        self.orchestrator.stage_attachment(Attachment(source, image_ref))
        return True

    async def capture_image(self) -> bool:
        """Take a live photo with the webcam and stage it."""
        try:
            self._check_image_allowed()
            if self.eyes is None:
                raise CapabilityUnavailable(CAMERA_FAILED_NOTICE)
        except InputRejected:
            return False
        except CapabilityUnavailable as e:
            self.on_notice(str(e))
            return False

        loop = asyncio.get_running_loop()
        try:
            image_ref = await loop.run_in_executor(None, self.eyes.capture_photo)
        except RuntimeError as e:
            print(f"⚠️  Camera error: {e}")
            self.on_notice(CAMERA_FAILED_NOTICE)
            return False

        # State may have moved on while the camera was busy
        return self.select_image(image_ref, AttachmentSource.CAMERA)

    def remove_image(self) -> bool:
        try:
            self._admit(InputEvent.REMOVE_IMAGE)
        except InputRejected:
            return False
        self.orchestrator.clear_attachment()
        return True

    def describe(self) -> str:
        """One-word summary of the current input state (for status lines)."""
        if self.session.is_awaiting_response:
            return "sending"
        return self.mode.value
