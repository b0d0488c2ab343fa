"""
Kula Turn Orchestrator
======================
The heart of the client: turns one finalized input (text, a photo, or both)
into conversation Turns.

Flow for a single submission:
1. Append the user's Turn right away (optimistic)
2. Photo attached? Classify it locally and rewrite that Turn to the result
3. Append a typing indicator
4. Ask the server
5. Swap the typing indicator for the reply (or a fixed apology)

Only one submission can be in flight. Failures never escape - they become
Turns, or silent no-ops for rejected input. There are no automatic retries;
the user simply sends again.
"""

from enum import Enum
from typing import Optional

from kula_conversation import Attachment, ConversationStore, SessionState, Speaker
from kula_senses import CapabilityState, SpeechAdapter
from kula_transport import RemoteTransport
from kula_vision import ClassificationAdapter, ClassificationError, ModelLoadError, top_prediction


TRANSPORT_FAILURE_MESSAGE = "Sorry, I couldn't reach Kula right now. Please check your connection and try again."
CLASSIFICATION_FAILURE_MESSAGE = "Sorry, I couldn't analyze that photo. Please try again."
ANALYZING_PHOTO_TEXT = "Analyzing photo..."
TYPING_TEXT = "..."


def analysis_summary(label: str) -> str:
    return f"Analysis Result: {label}"


def build_photo_prompt(label: str, text: str = "") -> str:
    """
    Combine the photo analysis with whatever the user typed.

    Never returns an empty message, even when no text was given.
    """
    prompt = f"I have analyzed a photo and the result is: {label}."
    text = (text or "").strip()
    if text:
        return f"{prompt} {text}"
    return f"{prompt} What is your advice?"


class OrchestratorPhase(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"     # Local photo analysis
    SUBMITTING = "submitting"   # Waiting on the server


class TurnOrchestrator:
    """
    Sole writer of the conversation log and the session flags.

    The input coordinator decides *whether* something may happen; this class
    makes it happen.
    """

    def __init__(self,
                 transport: RemoteTransport,
                 classifier: ClassificationAdapter,
                 speech: SpeechAdapter = None,
                 store: ConversationStore = None,
                 session: SessionState = None):
        self.transport = transport
        self.classifier = classifier
        self.speech = speech
        self.store = store or ConversationStore()
        self.session = session or SessionState()
        self.phase = OrchestratorPhase.IDLE
        self._bound = False

    # ========== LIFECYCLE ==========

    def bind(self):
        """Attach this orchestrator to its speech capability."""
        if self._bound:
            return
        if self.speech is not None:
            self.speech.bind(
                on_start=self._on_speech_start,
                on_result=self._on_speech_result,
                on_end=self._on_speech_end,
            )
        self._bound = True

    def unbind(self):
        """Detach from capabilities. Late speech events are dropped after this."""
        if not self._bound:
            return
        if self.speech is not None:
            self.speech.unbind()
        self.session.is_capturing_voice = False
        self._bound = False

    # ========== CAPABILITY STATUS ==========

    @property
    def classifier_ready(self) -> bool:
        return self.classifier is not None and self.classifier.state is CapabilityState.READY

    @property
    def voice_available(self) -> bool:
        return (
            self._bound
            and self.speech is not None
            and self.speech.state is CapabilityState.READY
        )

    # ========== SESSION CHANGES (requested by the coordinator) ==========

    def set_composed_text(self, text: str):
        self.session.composed_text = text

    def stage_attachment(self, attachment: Attachment):
        self.session.pending_attachment = attachment
        print(f"📎 Photo staged ({attachment.source.value}): {attachment.preview_ref}")

    def clear_attachment(self):
        self.session.pending_attachment = None

    # ========== VOICE ==========

    async def capture_voice(self) -> Optional[str]:
        """Listen for one utterance. Returns the transcript, or None."""
        if self.session.is_awaiting_response or not self.voice_available:
            return None
        print("🎙️  Listening...")
        return await self.speech.listen()

    def stop_voice(self):
        if self.speech is not None:
            self.speech.stop()

    def _on_speech_start(self):
        self.session.is_capturing_voice = True

    def _on_speech_result(self, transcript: str):
        self.session.is_capturing_voice = False

    def _on_speech_end(self):
        self.session.is_capturing_voice = False

    # ========== SUBMISSION ==========

    async def submit(self, composed_text: str, attachment: Optional[Attachment] = None) -> bool:
        """
        Run one full turn.

        Args:
            composed_text: What the user typed or said (may be empty with a photo)
            attachment: Staged photo, if any

        Returns:
            False if the input was rejected (nothing appended), True otherwise
        """
        text = composed_text or ""
        if not text.strip() and attachment is None:
            return False
        if self.session.is_awaiting_response:
            return False

        self.session.is_awaiting_response = True
        pending_token = None
        delivered = False

        try:
            if attachment is None:
                self.store.append(Speaker.USER, text)
                prompt = text
                print(f"\n⌨️  User: \"{text[:60]}{'...' if len(text) > 60 else ''}\"")
            else:
                user_token = self.store.append(
                    Speaker.USER,
                    text if text.strip() else ANALYZING_PHOTO_TEXT,
                    image_ref=attachment.preview_ref,
                )

                self.phase = OrchestratorPhase.RESOLVING
                print("🔬 Analyzing photo...")
                try:
                    predictions = await self.classifier.classify(attachment.preview_ref)
                    top = top_prediction(predictions)
                except (ModelLoadError, ClassificationError) as e:
                    print(f"⚠️  Photo analysis failed: {e}")
                    self.store.append(Speaker.ASSISTANT, CLASSIFICATION_FAILURE_MESSAGE)
                    return True

                print(f"   Result: {top.label} ({top.confidence:.0%})")
                self.store.rewrite(user_token, analysis_summary(top.label))
                prompt = build_photo_prompt(top.label, text)

            pending_token = self.store.append(Speaker.PENDING, TYPING_TEXT)
            delivered = True

            self.phase = OrchestratorPhase.SUBMITTING
            print("🧠 Thinking...")
            result = await self.transport.interact(prompt)
            print(f"   (Think time: {result.latency:.1f}s)")

            # No await between these two - readers never see both or neither
            self.store.remove(pending_token)
            pending_token = None

            if result.ok:
                self.store.append(Speaker.ASSISTANT, result.reply)
                print(f"💬 Kula: \"{result.reply[:60]}{'...' if len(result.reply) > 60 else ''}\"")
            else:
                print(f"⚠️  Server error: {result.error}")
                self.store.append(Speaker.ASSISTANT, TRANSPORT_FAILURE_MESSAGE)
            return True

        finally:
            # Only reached with a live placeholder if the task was cancelled
            if pending_token is not None and pending_token in self.store:
                self.store.remove(pending_token)
            self.phase = OrchestratorPhase.IDLE
            self.session.is_awaiting_response = False
            if delivered:
                self.session.composed_text = ""
                self.session.pending_attachment = None
