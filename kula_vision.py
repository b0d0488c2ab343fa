"""
Kula Vision Module
==================
Local photo analysis before anything is sent to the server.

The model is a Teachable Machine style image classifier exported to ONNX,
with a labels.txt next to it ("0 Fever", "1 Rash", ...). Loading and
inference both run off the event loop.
"""

import asyncio
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort
from PIL import Image, ImageOps

from kula_senses import CapabilityState


class ModelLoadError(Exception):
    """The image model could not be loaded, or was used before it was ready."""


class ClassificationError(Exception):
    """A single classification attempt failed."""


class Prediction(NamedTuple):
    label: str
    confidence: float


def load_labels(labels_path) -> List[str]:
    """
    Read a label list, one label per line.

    Teachable Machine prefixes each line with its class index ("0 Fever");
    the index is dropped.
    """
    labels = []
    for line in Path(labels_path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        index, _, rest = line.partition(" ")
        labels.append(rest.strip() if index.isdigit() and rest.strip() else line)
    return labels


def top_prediction(predictions: Sequence[Prediction]) -> Prediction:
    """
    Most confident prediction.

    Linear scan with strict greater-than, so the earliest label wins a tie.
    """
    best: Optional[Prediction] = None
    for prediction in predictions:
        if best is None or prediction.confidence > best.confidence:
            best = prediction
    if best is None:
        raise ClassificationError("Model returned no predictions")
    return best


class OnnxImageModel:
    """Blocking image classifier backed by onnxruntime."""

    def __init__(self, model_path, labels_path, input_size: Tuple[int, int] = (224, 224)):
        self.model_path = Path(model_path)
        self.labels_path = Path(labels_path)
        self.input_size = input_size
        self.labels: List[str] = []
        self._session = None
        self._input_name = None

    def load(self):
        if not self.model_path.exists():
            raise FileNotFoundError(f"Image model not found at {self.model_path}")

        self.labels = load_labels(self.labels_path)
        if not self.labels:
            raise ValueError(f"No labels found in {self.labels_path}")

        self._session = ort.InferenceSession(str(self.model_path), providers=["CPUExecutionProvider"])
        model_input = self._session.get_inputs()[0]
        self._input_name = model_input.name

        # NHWC: [batch, height, width, channels]
        shape = model_input.shape
        if len(shape) == 4 and isinstance(shape[1], int) and isinstance(shape[2], int):
            self.input_size = (shape[2], shape[1])

    def preprocess(self, image_path) -> np.ndarray:
        with Image.open(image_path) as image:
            image = ImageOps.fit(image.convert("RGB"), self.input_size, Image.Resampling.LANCZOS)
            pixels = np.asarray(image, dtype=np.float32)
        normalized = pixels / 127.5 - 1.0
        return normalized[np.newaxis, ...]

    def predict(self, image_path) -> List[Prediction]:
        if self._session is None:
            raise RuntimeError("Model not loaded")

        batch = self.preprocess(image_path)
        scores = self._session.run(None, {self._input_name: batch})[0][0]

        return [Prediction(label, float(score)) for label, score in zip(self.labels, scores)]


class ClassificationAdapter:
    """
    Async image classification capability.

    load() must complete before classify() is used; a failed load leaves the
    adapter in FAILED and every later classify() is rejected. classify()
    never retries - a failure is final for that attempt.
    """

    def __init__(self, model):
        self.model = model
        self.state = CapabilityState.UNINITIALIZED
        self._loading: Optional[asyncio.Future] = None

    @property
    def is_ready(self) -> bool:
        return self.state is CapabilityState.READY

    async def load(self) -> "ClassificationAdapter":
        """Load the model. Concurrent callers share one load."""
        if self.state is CapabilityState.READY:
            return self
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load())
        try:
            await asyncio.shield(self._loading)
        finally:
            if self._loading is not None and self._loading.done():
                self._loading = None
        return self

    async def _load(self):
        self.state = CapabilityState.LOADING
        print("🧩 Loading image model...")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.model.load)
        except Exception as e:
            self.state = CapabilityState.FAILED
            print(f"⚠️  Image model failed to load: {e}")
            raise ModelLoadError(str(e)) from e

        self.state = CapabilityState.READY
        print("✅ Image model loaded!")

    async def classify(self, image_ref: str) -> List[Prediction]:
        """
        Classify one local image.

        Returns:
            Predictions in the model's label order
        """
        if self.state is not CapabilityState.READY:
            raise ModelLoadError(f"Image model is not ready ({self.state.value})")

        loop = asyncio.get_running_loop()
        try:
            predictions = await loop.run_in_executor(None, self.model.predict, image_ref)
        except Exception as e:
            raise ClassificationError(f"Could not classify {image_ref}: {e}") from e

        if not predictions:
            raise ClassificationError("Model returned no predictions")
        return list(predictions)
