"""
Kula Conversation Module
========================
The conversation log and the transient session flags that go with it.

- Turns are appended in the order their owning operation completes
- A Turn is never edited in place; the one sanctioned rewrite (the photo
  analysis summary) swaps in a new Turn at the same position, located by the
  token handed out when the original was appended
- Nothing here is persisted - a new session starts with an empty log

Only the Turn Orchestrator writes to these objects. Everything else (the
renderer, the input coordinator) reads.
"""

import itertools
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple


class Speaker(Enum):
    """Who a Turn is attributed to."""
    USER = "user"
    ASSISTANT = "assistant"
    PENDING = "pending"   # Typing indicator, removed once the request resolves


class TurnToken:
    """
    Identity of one appended Turn.

    Returned by ConversationStore.append and used to rewrite or remove that
    exact entry later, whatever has been appended since.
    """

    _ids = itertools.count(1)

    __slots__ = ("id",)

    def __init__(self):
        self.id = next(TurnToken._ids)

    def __repr__(self):
        return f"TurnToken({self.id})"


class Turn:
    """One entry in the conversation log."""

    __slots__ = ("_token", "_speaker", "_text", "_image_ref")

    def __init__(self, token: TurnToken, speaker: Speaker, text: str, image_ref: Optional[str] = None):
        self._token = token
        self._speaker = speaker
        self._text = text
        self._image_ref = image_ref

    @property
    def token(self) -> TurnToken:
        return self._token

    @property
    def speaker(self) -> Speaker:
        return self._speaker

    @property
    def text(self) -> str:
        return self._text

    @property
    def image_ref(self) -> Optional[str]:
        return self._image_ref

    @property
    def is_pending(self) -> bool:
        return self._speaker is Speaker.PENDING

    def with_text(self, text: str) -> "Turn":
        return Turn(self._token, self._speaker, text, self._image_ref)

    def __repr__(self):
        preview = self._text[:40] + ("..." if len(self._text) > 40 else "")
        return f"Turn({self._speaker.value}: {preview!r})"


class ConversationStore:
    """
    Ordered, append-only log of Turns.

    Listeners are notified after every change so a renderer can redraw; they
    receive no arguments and should read `turns` for the current snapshot.
    """

    def __init__(self):
        self._turns: List[Turn] = []
        self._listeners: List[Callable[[], None]] = []

    # ========== READING ==========

    @property
    def turns(self) -> Tuple[Turn, ...]:
        """Snapshot of the log in on-screen order."""
        return tuple(self._turns)

    def __len__(self):
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)

    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def get(self, token: TurnToken) -> Turn:
        return self._turns[self._index_of(token)]

    def __contains__(self, token: TurnToken) -> bool:
        return any(t.token is token for t in self._turns)

    # ========== WRITING (orchestrator only) ==========

    def append(self, speaker: Speaker, text: str, image_ref: Optional[str] = None) -> TurnToken:
        """
        Append a Turn and return the token that identifies it.

        Args:
            speaker: Who the Turn belongs to
            text: Display text (placeholder text for pending turns)
            image_ref: Local image shown alongside a user Turn

        Returns:
            Token for later rewrite/removal of this exact Turn
        """
        if speaker is not Speaker.USER and image_ref is not None:
            raise ValueError("Only user turns can carry an attached image")

        token = TurnToken()
        self._turns.append(Turn(token, speaker, text, image_ref))
        self._notify()
        return token

    def rewrite(self, token: TurnToken, text: str):
        """
        Replace the display text of the Turn identified by `token`.

        The Turn keeps its position, speaker and image. Raises LookupError if
        the token no longer refers to an entry in the log.
        """
        index = self._index_of(token)
        self._turns[index] = self._turns[index].with_text(text)
        self._notify()

    def remove(self, token: TurnToken):
        """Delete the Turn identified by `token` (used for pending placeholders)."""
        del self._turns[self._index_of(token)]
        self._notify()

    # ========== LISTENERS ==========

    def add_listener(self, listener: Callable[[], None]):
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        for listener in list(self._listeners):
            listener()

    def _index_of(self, token: TurnToken) -> int:
        # Search from the end - the token is almost always for a recent Turn
        for index in range(len(self._turns) - 1, -1, -1):
            if self._turns[index].token is token:
                return index
        raise LookupError(f"{token!r} is not in the conversation")


class AttachmentSource(Enum):
    """Where a staged image came from."""
    UPLOAD = "upload"
    CAMERA = "camera"


class Attachment:
    """An image staged for the next submission (not yet part of the log)."""

    __slots__ = ("source", "preview_ref")

    def __init__(self, source: AttachmentSource, preview_ref: str):
        self.source = source
        self.preview_ref = preview_ref

    def __repr__(self):
        return f"Attachment({self.source.value}, {self.preview_ref!r})"


class SessionState:
    """
    Transient flags for the current session.

    Written only by the Turn Orchestrator; read by the coordinator and the
    renderer.
    """

    def __init__(self):
        self.is_awaiting_response = False
        self.is_capturing_voice = False
        self.pending_attachment: Optional[Attachment] = None
        self.composed_text = ""

    def snapshot(self) -> dict:
        return {
            "is_awaiting_response": self.is_awaiting_response,
            "is_capturing_voice": self.is_capturing_voice,
            "pending_attachment": self.pending_attachment,
            "composed_text": self.composed_text,
        }
