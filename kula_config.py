"""
Kula Configuration
==================
Runtime settings for the Kula client.

Values come from (highest priority first):
1. Explicit constructor arguments (e.g. from command line flags)
2. Environment variables (a local .env file is loaded automatically)
3. Built-in defaults

The orchestration core never reads the environment itself - main.py builds
a KulaSettings and hands the pieces to each component.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


DEFAULT_SERVER_URL = "https://kula-server.onrender.com"
DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_SPEECH_LANGUAGE = "en-US"
DEFAULT_MODEL_PATH = "model/model.onnx"
DEFAULT_LABELS_PATH = "model/labels.txt"


def _read_float(name: str, value: Optional[str], default: float) -> float:
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {value!r}")
    if number <= 0:
        raise ValueError(f"{name} must be greater than zero, got {value!r}")
    return number


def _read_int(name: str, value: Optional[str], default: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


class KulaSettings:
    """
    All the knobs the client needs, resolved once at startup.
    """

    def __init__(self,
                 server_url: str = None,
                 request_timeout: float = None,
                 speech_language: str = None,
                 model_path: str = None,
                 labels_path: str = None,
                 camera_index: int = None,
                 mic_device: int = None):
        """
        Args:
            server_url: Base URL of the advisory service (no trailing /interact)
            request_timeout: Client-side bound on a single request, in seconds
            speech_language: Locale passed to speech recognition
            model_path: ONNX image classification model
            labels_path: Label list that goes with the model
            camera_index: Webcam used for live photo capture
            mic_device: sounddevice input device (None = system default)
        """
        self.server_url = (server_url or os.getenv("KULA_SERVER_URL") or DEFAULT_SERVER_URL).rstrip("/")

        if request_timeout is not None:
            self.request_timeout = _read_float("request_timeout", str(request_timeout), DEFAULT_REQUEST_TIMEOUT)
        else:
            self.request_timeout = _read_float(
                "KULA_REQUEST_TIMEOUT", os.getenv("KULA_REQUEST_TIMEOUT"), DEFAULT_REQUEST_TIMEOUT
            )

        self.speech_language = speech_language or os.getenv("KULA_SPEECH_LANGUAGE") or DEFAULT_SPEECH_LANGUAGE
        self.model_path = Path(model_path or os.getenv("KULA_MODEL_PATH") or DEFAULT_MODEL_PATH)
        self.labels_path = Path(labels_path or os.getenv("KULA_LABELS_PATH") or DEFAULT_LABELS_PATH)

        if camera_index is not None:
            self.camera_index = camera_index
        else:
            self.camera_index = _read_int("KULA_CAMERA_INDEX", os.getenv("KULA_CAMERA_INDEX"), 0)

        if mic_device is not None:
            self.mic_device = mic_device
        else:
            self.mic_device = _read_int("KULA_MIC_DEVICE", os.getenv("KULA_MIC_DEVICE"), None)

    @property
    def interact_url(self) -> str:
        """The single endpoint every request goes to."""
        return f"{self.server_url}/interact"

    def describe(self) -> dict:
        """Settings summary for the startup banner."""
        return {
            "server": self.interact_url,
            "timeout": f"{self.request_timeout:g}s",
            "language": self.speech_language,
            "model": str(self.model_path),
            "labels": str(self.labels_path),
            "camera": self.camera_index,
        }
