"""
Kula Senses Module
==================
Hearing and sight for the Kula client:
1. KulaEars - microphone capture with a voice-activity gate
2. SpeechTranscriber - speech-to-text via Google Speech Recognition
3. SpeechAdapter - single-utterance speech capability with an explicit
   bind()/unbind() lifecycle, exposed both as callbacks and as a future
4. KulaEyes - webcam still capture for live photos

Continuous recognition is never used: each activation yields at most one
transcript and then the capture ends by itself.
"""

import asyncio
import os
import tempfile
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional

import cv2
import numpy as np
from scipy.io import wavfile


class CapabilityState(Enum):
    """Lifecycle of an external capability (microphone, image model)."""
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class KulaEars:
    """
    Microphone handler with:
    - Rolling pre-buffer (captures speech onset)
    - Adaptive noise floor
    - Smoothed RMS so short dips don't end the utterance
    """

    def __init__(self,
                 device_index: int = None,
                 sample_rate: int = 16000,
                 base_threshold: float = 0.015,
                 pre_buffer_seconds: float = 0.8,
                 silence_duration: float = 1.5,
                 smoothing_window: int = 5):
        """
        Args:
            device_index: Which microphone to use (None = default)
            sample_rate: Audio sample rate in Hz
            base_threshold: Voice activity threshold before calibration
            pre_buffer_seconds: Audio kept from before speech was detected
            silence_duration: Silence that ends an utterance
            smoothing_window: Number of blocks averaged for VAD
        """
        self.device_index = device_index
        self.sample_rate = sample_rate
        self.base_threshold = base_threshold
        self.silence_duration = silence_duration

        self.is_running = False
        self.is_listening = False
        self._stream = None

        self._pre_buffer = deque(maxlen=int(pre_buffer_seconds * sample_rate))
        self._audio_buffer = []

        self._rms_history = deque(maxlen=smoothing_window)
        self._smoothed_rms = 0.0

        self._noise_samples = deque(maxlen=100)
        self._effective_threshold = base_threshold

    def _audio_callback(self, indata, frames, time_info, status):
        if status:
            print(f"⚠️  Audio status: {status}")

        audio_chunk = indata[:, 0].copy()
        rms = float(np.sqrt(np.mean(audio_chunk ** 2)))

        self._rms_history.append(rms)
        self._smoothed_rms = float(np.mean(self._rms_history))

        # Track ambient noise while nobody is talking
        if not self.is_listening and rms < self._effective_threshold * 1.5:
            self._noise_samples.append(rms)
            if len(self._noise_samples) >= 50:
                noise_floor = np.percentile(list(self._noise_samples), 75)
                self._effective_threshold = max(0.003, float(noise_floor) * 5.0)

        self._pre_buffer.extend(audio_chunk)

        if self.is_listening:
            self._audio_buffer.append(audio_chunk)

    def start(self):
        """Open the input stream."""
        if self._stream is not None:
            return

        print("👂 Initializing microphone...")

        try:
            import sounddevice as sd

            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype='float32',
                device=self.device_index,
                blocksize=int(self.sample_rate * 0.1),  # 100ms blocks
                callback=self._audio_callback
            )
            self._stream.start()
            self.is_running = True
            print("👂 Microphone active.")
        except Exception as e:
            print(f"⚠️  Could not start microphone: {e}")
            self._stream = None
            self.is_running = False

    def stop(self):
        """Close the input stream."""
        self.is_running = False
        self.is_listening = False
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            print("👂 Microphone stopped.")

    def record_until_silence(self,
                             stop_event: threading.Event,
                             max_wait: float = 8.0,
                             max_duration: float = 30.0,
                             min_speech_duration: float = 0.5) -> Optional[np.ndarray]:
        """
        Record one utterance.

        Args:
            stop_event: Set from another thread to cancel the capture
            max_wait: Give up if nobody starts talking within this many seconds
            max_duration: Hard cap on the recording
            min_speech_duration: Speech needed before silence can end it

        Returns:
            Recorded audio, or None if cancelled / nothing was said
        """
        if not self.is_running:
            return None

        self._audio_buffer = [np.array(list(self._pre_buffer), dtype=np.float32)]
        self.is_listening = True

        start_time = time.time()
        speech_start = None
        silence_start = None

        try:
            while not stop_event.is_set():
                now = time.time()
                if now - start_time > max_duration:
                    break

                is_speech = self._smoothed_rms > self._effective_threshold

                if speech_start is None:
                    if is_speech:
                        speech_start = now
                        print("   📢 Speech detected")
                    elif now - start_time > max_wait:
                        print("   (No speech heard)")
                        return None
                elif is_speech:
                    silence_start = None
                elif now - speech_start >= min_speech_duration:
                    if silence_start is None:
                        silence_start = now
                    elif now - silence_start > self.silence_duration:
                        break

                time.sleep(0.05)
        finally:
            self.is_listening = False

        if stop_event.is_set() or speech_start is None:
            return None

        try:
            full_audio = np.concatenate(self._audio_buffer)
        except ValueError:
            return None

        duration = len(full_audio) / self.sample_rate
        if duration < 0.3:
            print(f"   (Recording too short: {duration:.2f}s)")
            return None

        print(f"🎙️  Captured {duration:.1f} seconds")
        return full_audio

    def save_audio_to_file(self, audio: np.ndarray, filename: str = None) -> str:
        """Save audio to a (temporary) WAV file."""
        if filename is None:
            fd, filename = tempfile.mkstemp(suffix='.wav')
            os.close(fd)

        if audio.dtype == np.float32:
            audio_int16 = (audio * 32767).astype(np.int16)
        else:
            audio_int16 = audio.astype(np.int16)

        wavfile.write(filename, self.sample_rate, audio_int16)
        return filename


class SpeechTranscriber:
    """Speech-to-text with Google Speech Recognition."""

    def __init__(self):
        self._recognizer = None

    def transcribe(self, audio_file_path: str, language: str = "en-US") -> str:
        """Transcribe a WAV file. Returns "" when nothing was understood."""
        import speech_recognition as sr

        if self._recognizer is None:
            self._recognizer = sr.Recognizer()
            self._recognizer.energy_threshold = 300
            self._recognizer.dynamic_energy_threshold = False

        try:
            with sr.AudioFile(audio_file_path) as source:
                audio = self._recognizer.record(source)
            return self._recognizer.recognize_google(audio, language=language).strip()
        except sr.UnknownValueError:
            print("   (Speech not understood)")
            return ""
        except sr.RequestError as e:
            print(f"⚠️  Transcription error: {e}")
            return ""


class MicrophoneRecognizer:
    """
    Blocking speech backend: one utterance from the microphone, transcribed.

    Any object with open()/close()/listen(stop_event, language) can stand in
    for this one inside a SpeechAdapter.
    """

    def __init__(self, ears: KulaEars = None, transcriber: SpeechTranscriber = None):
        self.ears = ears or KulaEars()
        self.transcriber = transcriber or SpeechTranscriber()

    def open(self):
        self.ears.start()
        if not self.ears.is_running:
            raise RuntimeError("Microphone is not available")

    def close(self):
        self.ears.stop()

    def listen(self, stop_event: threading.Event, language: str) -> Optional[str]:
        audio = self.ears.record_until_silence(stop_event)
        if audio is None or stop_event.is_set():
            return None

        audio_path = self.ears.save_audio_to_file(audio)
        try:
            transcript = self.transcriber.transcribe(audio_path, language)
        finally:
            os.remove(audio_path)

        if stop_event.is_set():
            return None
        return transcript or None


class SpeechAdapter:
    """
    Single-utterance speech capability.

    Contract:
    - bind() attaches callbacks and opens the device; unbind() detaches them
      so no event can reach a torn-down conversation
    - start() begins one capture (no-op if one is already running)
    - stop() cancels the capture before a result arrives
    - Each capture emits on_start, then exactly one of on_result(transcript)
      or on_end() (cancel, silence and device errors look the same)
    - listen() wraps the same capture as a single awaitable
    """

    def __init__(self, recognizer=None, language: str = "en-US"):
        self.recognizer = recognizer or MicrophoneRecognizer()
        self.language = language
        self.state = CapabilityState.UNINITIALIZED

        self._on_start: Optional[Callable[[], None]] = None
        self._on_result: Optional[Callable[[str], None]] = None
        self._on_end: Optional[Callable[[], None]] = None

        self._bound = False
        self._generation = 0
        self._stop_event: Optional[threading.Event] = None
        self._capture: Optional[asyncio.Future] = None

    @property
    def is_bound(self) -> bool:
        return self._bound

    @property
    def is_capturing(self) -> bool:
        return self._capture is not None

    def bind(self,
             on_start: Callable[[], None] = None,
             on_result: Callable[[str], None] = None,
             on_end: Callable[[], None] = None):
        """Attach callbacks for one owner and open the underlying device."""
        if self._bound:
            raise RuntimeError("SpeechAdapter is already bound; unbind() it first")

        self._generation += 1
        self._on_start = on_start
        self._on_result = on_result
        self._on_end = on_end
        self._bound = True

        self.state = CapabilityState.LOADING
        try:
            self.recognizer.open()
            self.state = CapabilityState.READY
        except Exception as e:
            print(f"⚠️  Speech recognition unavailable: {e}")
            self.state = CapabilityState.FAILED

    def unbind(self):
        """Detach callbacks, cancel any capture and close the device."""
        if not self._bound:
            return

        self._generation += 1
        self._on_start = self._on_result = self._on_end = None
        self._bound = False

        if self._stop_event is not None:
            self._stop_event.set()
        if self._capture is not None and not self._capture.done():
            self._capture.set_result(None)
        self._capture = None
        self._stop_event = None

        try:
            self.recognizer.close()
        finally:
            self.state = CapabilityState.UNINITIALIZED

    def start(self) -> Optional[asyncio.Future]:
        """
        Begin one capture.

        Returns:
            Future resolving to the transcript (or None), or None if the
            request was ignored (already capturing, unbound, device not ready)
        """
        if self.is_capturing or not self._bound or self.state is not CapabilityState.READY:
            return None

        loop = asyncio.get_running_loop()
        generation = self._generation
        stop_event = threading.Event()

        self._stop_event = stop_event
        self._capture = loop.create_future()
        capture = self._capture

        if self._on_start is not None:
            self._on_start()

        worker = loop.run_in_executor(None, self._capture_blocking, stop_event)
        worker.add_done_callback(lambda f: self._finish(f, generation, stop_event))
        return capture

    def stop(self):
        """End the current capture early. The capture then ends with no result."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def listen(self) -> Optional[str]:
        """Run one capture and return its transcript (None if nothing was heard)."""
        capture = self.start()
        if capture is None:
            return None
        return await capture

    def _capture_blocking(self, stop_event: threading.Event) -> Optional[str]:
        try:
            return self.recognizer.listen(stop_event, self.language)
        except Exception as e:
            print(f"⚠️  Speech capture error: {e}")
            return None

    def _finish(self, worker: asyncio.Future, generation: int, stop_event: threading.Event):
        # Capture outlived its binding - drop it
        if generation != self._generation:
            return

        transcript = None
        if not worker.cancelled() and worker.exception() is None:
            transcript = worker.result()
        if stop_event.is_set():
            transcript = None

        capture = self._capture
        self._capture = None
        self._stop_event = None

        if transcript:
            print(f"   🗣️  Heard: \"{transcript[:60]}{'...' if len(transcript) > 60 else ''}\"")
            if self._on_result is not None:
                self._on_result(transcript)
        elif self._on_end is not None:
            self._on_end()

        if capture is not None and not capture.done():
            capture.set_result(transcript or None)


class KulaEyes:
    """Webcam handler for live photo capture."""

    def __init__(self, camera_index: int = 0, warmup_frames: int = 5):
        self.camera_index = camera_index
        self.warmup_frames = warmup_frames
        self.cap = None

    def start(self):
        if self.cap is not None:
            return

        print(f"👁  Initializing webcam (index {self.camera_index})...")
        self.cap = cv2.VideoCapture(self.camera_index)

        if not self.cap.isOpened():
            self.cap = None
            raise RuntimeError(
                f"Could not open webcam at index {self.camera_index}. "
                "Check that no other application is using it."
            )

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, 1280)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 720)

    def stop(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            print("👁  Webcam stopped.")

    def capture_photo(self, filename: str = None) -> str:
        """
        Grab one frame and save it as a JPEG.

        Returns:
            Path of the saved image
        """
        self.start()

        # Let auto-exposure settle
        frame = None
        for _ in range(max(1, self.warmup_frames)):
            ret, frame = self.cap.read()
            if not ret:
                frame = None

        if frame is None:
            raise RuntimeError("Webcam returned no frame")

        if filename is None:
            fd, filename = tempfile.mkstemp(prefix="kula_capture_", suffix=".jpg")
            os.close(fd)

        if not cv2.imwrite(filename, frame, [cv2.IMWRITE_JPEG_QUALITY, 90]):
            raise RuntimeError(f"Could not save photo to {filename}")

        print(f"📸 Captured photo: {filename}")
        return filename
