#!/usr/bin/env python3
"""
Kula - Conversational Companion for Mother and Child
====================================================
Talk to the Kula advisory service three ways:
1. Type a message
2. Speak (one utterance per activation)
3. Share a photo (uploaded file or live webcam capture), analyzed locally
   before anything is sent

Usage:
    python3 main.py
    python3 main.py --server-url http://localhost:8000 --timeout 30
    python3 main.py --no-voice

Commands inside the chat:
    <text>          send a message (with the staged photo, if any)
    /send           send what is staged (e.g. a photo on its own)
    /voice          stop listening; otherwise send what is staged, or start listening
    /photo <path>   stage a photo from disk
    /camera         stage a live photo from the webcam
    /remove         unstage the photo
    /status         show what Kula is doing
    /quit           leave
"""

import argparse
import asyncio
import sys
import threading
from pathlib import Path

from kula_config import KulaSettings
from kula_conversation import ConversationStore, SessionState
from kula_coordinator import InputCoordinator, InputMode
from kula_orchestrator import TurnOrchestrator
from kula_senses import KulaEars, KulaEyes, MicrophoneRecognizer, SpeechAdapter
from kula_transport import RemoteTransport
from kula_ui import TerminalRenderer, status_line
from kula_vision import ClassificationAdapter, ModelLoadError, OnnxImageModel


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Kula - your AI companion for mother and child",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings can also come from the environment (or a .env file):
  KULA_SERVER_URL, KULA_REQUEST_TIMEOUT, KULA_SPEECH_LANGUAGE,
  KULA_MODEL_PATH, KULA_LABELS_PATH, KULA_CAMERA_INDEX, KULA_MIC_DEVICE
        """
    )
    parser.add_argument('--server-url', help='Base URL of the Kula server')
    parser.add_argument('--timeout', type=float, help='Request timeout in seconds')
    parser.add_argument('--language', help='Speech recognition language (e.g. en-US)')
    parser.add_argument('--model', help='Path to the ONNX image model')
    parser.add_argument('--labels', help='Path to the labels file for the image model')
    parser.add_argument('--camera', type=int, help='Webcam index for live photos')
    parser.add_argument('--no-voice', action='store_true', help='Disable the microphone')
    return parser.parse_args(argv)


class KulaApp:
    """
    Wires the conversation core to the terminal.
    """

    def __init__(self,
                 settings: KulaSettings,
                 voice_enabled: bool = True,
                 transport=None,
                 classifier: ClassificationAdapter = None,
                 speech: SpeechAdapter = None,
                 eyes=None):
        """
        Args:
            settings: Resolved client settings
            voice_enabled: Build a microphone-backed speech adapter
            transport, classifier, speech, eyes: Ready-made capabilities to
                use instead of the ones built from settings
        """
        self.settings = settings

        print("=" * 60)
        print("  🌸 KULA - Companion for Mother and Child")
        print("  Initializing...")
        print("=" * 60)
        for key, value in settings.describe().items():
            print(f"   {key}: {value}")
        print()

        self.store = ConversationStore()
        self.session = SessionState()

        self.transport = transport or RemoteTransport(
            settings.interact_url, timeout=settings.request_timeout
        )
        self.classifier = classifier or ClassificationAdapter(
            OnnxImageModel(settings.model_path, settings.labels_path)
        )

        self.speech = None
        if not voice_enabled:
            print("   📝 Voice: DISABLED (text and photos only)")
        elif speech is not None:
            self.speech = speech
        else:
            self.speech = SpeechAdapter(
                MicrophoneRecognizer(ears=KulaEars(device_index=settings.mic_device)),
                language=settings.speech_language,
            )

        self.eyes = eyes or KulaEyes(camera_index=settings.camera_index)

        self.orchestrator = TurnOrchestrator(
            self.transport,
            self.classifier,
            speech=self.speech,
            store=self.store,
            session=self.session,
        )
        self.coordinator = InputCoordinator(self.orchestrator, eyes=self.eyes)
        self.renderer = TerminalRenderer(self.store)

        self._tasks = set()

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _load_model(self):
        try:
            await self.classifier.load()
        except ModelLoadError:
            print("   Photos are disabled until the model can be loaded.")

    async def handle(self, line: str) -> bool:
        """
        Act on one line of input.

        Returns:
            False when the user wants to leave
        """
        line = line.strip()
        if not line:
            return True

        command, _, argument = line.partition(" ")
        command = command.lower()

        if command in ("/quit", "/exit"):
            return False
        elif command == "/voice":
            if self.session.is_awaiting_response and self.coordinator.mode is not InputMode.CAPTURING_VOICE:
                print("   (Please wait for Kula to answer first)")
            else:
                self._spawn(self.coordinator.toggle_voice())
        elif command == "/send":
            if self.coordinator.mode in (InputMode.IDLE, InputMode.CAPTURING_VOICE):
                print("   (Nothing to send)")
            elif self.session.is_awaiting_response:
                print("   (Please wait for Kula to answer first)")
            else:
                self._spawn(self.coordinator.send())
        elif command == "/photo":
            path = Path(argument.strip()).expanduser()
            if not argument.strip():
                print("   Usage: /photo <path>")
            elif not path.is_file():
                print(f"   ❌ No such file: {path}")
            elif not self.coordinator.select_image(str(path)):
                print("   (Can't add a photo right now)")
        elif command == "/camera":
            self._spawn(self.coordinator.capture_image())
        elif command == "/remove":
            if not self.coordinator.remove_image():
                print("   (No photo to remove)")
        elif command == "/status":
            print(f"   {status_line(self.session, self.orchestrator.phase)}")
        elif command.startswith("/"):
            print(f"   Unknown command: {command}")
        elif not self.coordinator.edit_text(line):
            if self.coordinator.mode is InputMode.CAPTURING_VOICE:
                print("   (Still listening - /voice to stop)")
            else:
                print("   (Please wait for Kula to answer first)")
        else:
            self._spawn(self.coordinator.send())

        return True

    def _start_stdin_reader(self) -> asyncio.Queue:
        """
        Feed stdin lines into a queue from a daemon thread.

        A blocked readline() in a daemon thread never holds up interpreter
        exit, so Ctrl-C leaves immediately. An empty string marks EOF.
        """
        loop = asyncio.get_running_loop()
        lines = asyncio.Queue()

        def reader():
            try:
                for line in sys.stdin:
                    loop.call_soon_threadsafe(lines.put_nowait, line)
                loop.call_soon_threadsafe(lines.put_nowait, "")
            except RuntimeError:
                # Loop already closed during shutdown
                pass

        threading.Thread(target=reader, name="kula-stdin", daemon=True).start()
        return lines

    async def run(self):
        """Main input loop."""
        self.orchestrator.bind()
        self._spawn(self._load_model())
        self.renderer.attach()

        print("   Commands: <text> | /send | /voice | /photo <path> | /camera | /remove | /status | /quit")
        print()

        lines = self._start_stdin_reader()
        try:
            while True:
                line = await lines.get()
                if not line:
                    break
                if not await self.handle(line):
                    break
        finally:
            print("\n👋 Goodbye, Mama!")
            await self.shutdown()

    async def shutdown(self):
        self.renderer.detach()
        self.orchestrator.unbind()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.eyes.stop()
        self.transport.close()


async def main(argv=None):
    """Entry point."""
    args = parse_args(argv)
    try:
        settings = KulaSettings(
            server_url=args.server_url,
            request_timeout=args.timeout,
            speech_language=args.language,
            model_path=args.model,
            labels_path=args.labels,
            camera_index=args.camera,
        )
    except ValueError as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(2)
    app = KulaApp(settings, voice_enabled=not args.no_voice)
    await app.run()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
