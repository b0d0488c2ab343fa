"""
Kula Terminal Interface
=======================
Read-only view of the conversation for the terminal shell:
- Chat transcript (user on the right, Kula on the left)
- Typing indicator while a reply is on its way
- Status line (listening / analyzing / thinking / staged photo)

Nothing in here writes to the conversation or the session.
"""

import shutil
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Optional

from kula_conversation import ConversationStore, SessionState, Speaker, Turn, TurnToken
from kula_orchestrator import OrchestratorPhase


WELCOME_MESSAGE = (
    "Hello Mama! I'm Kula. Tap the mic to talk, type a message, "
    "or use the camera icon to analyze a photo."
)


class KulaStatus(Enum):
    """What the client is doing, for display."""
    IDLE = "..."
    LISTENING = "Listening..."
    ANALYZING = "Analyzing photo..."
    THINKING = "Thinking..."


def status_for(session: SessionState, phase: OrchestratorPhase = OrchestratorPhase.IDLE) -> KulaStatus:
    if session.is_capturing_voice:
        return KulaStatus.LISTENING
    if phase is OrchestratorPhase.RESOLVING:
        return KulaStatus.ANALYZING
    if session.is_awaiting_response:
        return KulaStatus.THINKING
    return KulaStatus.IDLE


def render_turn(turn: Turn, width: int = 80) -> str:
    if turn.speaker is Speaker.PENDING:
        return "Kula is typing..."

    lines = []
    if turn.image_ref:
        lines.append(f"[photo: {Path(turn.image_ref).name}]")
    lines.append(turn.text)

    if turn.speaker is Speaker.USER:
        return "\n".join(f"You: {line}".rjust(width) for line in lines)
    return "\n".join(f"Kula: {line}" for line in lines)


def render_conversation(turns: Iterable[Turn], width: int = 80) -> str:
    """Whole transcript as text. An empty conversation shows the greeting."""
    turns = list(turns)
    if not turns:
        return f"Kula: {WELCOME_MESSAGE}"
    return "\n".join(render_turn(turn, width) for turn in turns)


def status_line(session: SessionState, phase: OrchestratorPhase = OrchestratorPhase.IDLE) -> str:
    parts = [status_for(session, phase).value]
    if session.pending_attachment is not None:
        parts.append(f"📎 {Path(session.pending_attachment.preview_ref).name}")
    if session.composed_text and not session.is_awaiting_response:
        parts.append(f"✏️  {session.composed_text[:30]}{'...' if len(session.composed_text) > 30 else ''}")
    return "  |  ".join(parts)


class TerminalRenderer:
    """
    Prints the conversation as it changes.

    Subscribes to the store and prints each Turn once, plus again if its
    text is rewritten (photo analysis result).
    """

    def __init__(self, store: ConversationStore, width: Optional[int] = None):
        self.store = store
        self.width = width or min(100, shutil.get_terminal_size((80, 24)).columns)
        self._shown: Dict[TurnToken, str] = {}
        self._attached = False

    def attach(self):
        if not self._attached:
            self.store.add_listener(self.refresh)
            self._attached = True
            if len(self.store) == 0:
                print(f"\nKula: {WELCOME_MESSAGE}\n")
            self.refresh()

    def detach(self):
        if self._attached:
            self.store.remove_listener(self.refresh)
            self._attached = False

    def refresh(self):
        turns = self.store.turns
        live = {turn.token for turn in turns}
        for token in [token for token in self._shown if token not in live]:
            del self._shown[token]

        for turn in turns:
            if self._shown.get(turn.token) == turn.text:
                continue
            self._shown[turn.token] = turn.text
            print(render_turn(turn, self.width))
