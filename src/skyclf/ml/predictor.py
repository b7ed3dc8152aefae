"""Sky-state predictor backed by a single ONNX Runtime session.

The predictor owns one session and one pair of fixed-shape input/output
buffers bound to it through an I/O binding. The buffers are rewritten in place
on every call, so classification is serialized behind a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
from onnxruntime import OrtValue

from skyclf.ml.model_manager import ModelInfo, OnnxModelManager
from skyclf.ml.postprocessing import argmax, softmax
from skyclf.ml.preprocessing import preprocess

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession, IOBinding

    from skyclf.config import Settings

logger = logging.getLogger(__name__)


class InferenceError(RuntimeError):
    """The forward pass of the model failed."""


@dataclass(frozen=True)
class Prediction:
    """Result of classifying one image."""

    sky_state: str
    confidence: float
    probs: dict[str, float]
    model_version: str
    model_path: str
    model_task: str
    latency_ms: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OnnxPredictor:
    """Classifies sky images with the latest model found under the models root.

    If no model is present the predictor is still constructed but reports
    ``available == False`` and :meth:`classify` returns None.
    """

    def __init__(self, settings: Settings, model_manager: OnnxModelManager | None = None) -> None:
        self._lock = threading.Lock()
        self._closed = False

        self._model: ModelInfo | None = None
        self._session: InferenceSession | None = None
        self._binding: IOBinding | None = None
        self._input: NDArray[np.float32] | None = None
        self._input_value: OrtValue | None = None
        self._output: NDArray[np.float32] | None = None
        self._output_value: OrtValue | None = None
        self._input_size = settings.input_size

        manager = model_manager or OnnxModelManager(settings)
        model = manager.find_latest()
        if model is None:
            return

        try:
            self._load(manager, model)
        except BaseException:
            self.close()
            raise
        self._model = model
        logger.info("ONNX session loaded (version=%s, input=%dx%d)", model.version, self._input_size, self._input_size)

    # -- Public API ---------------------------------------------------------

    @property
    def available(self) -> bool:
        """True while a model is loaded and the predictor is not closed."""
        return self._session is not None

    @property
    def model_info(self) -> ModelInfo | None:
        return self._model

    def classify(self, image_path: str | Path) -> Prediction | None:
        """Classify one image.

        Returns:
            The prediction, or None if no model is loaded.

        Raises:
            FileNotFoundError: If the image does not exist.
            ValueError: If the image cannot be decoded.
            InferenceError: If the forward pass fails.
        """
        start = time.perf_counter()
        with self._lock:
            model = self._model
            if self._session is None or model is None:
                return None
            assert self._binding is not None
            assert self._input is not None
            assert self._output is not None

            try:
                tensor = preprocess(image_path, self._input_size)
            except (OSError, ValueError) as exc:
                logger.warning("Preprocess failed for %s: %s", image_path, exc)
                raise

            np.copyto(self._input[0], tensor)

            try:
                self._session.run_with_iobinding(self._binding)
                self._binding.synchronize_outputs()
            except Exception as exc:
                raise InferenceError(f"ONNX run failed: {exc}") from exc

            probs = softmax(self._output[0])
            best = argmax(probs)
            prob_map = {name: float(p) for name, p in zip(model.class_names, probs, strict=True)}

        prediction = Prediction(
            sky_state=model.class_names[best],
            confidence=float(probs[best]),
            probs=prob_map,
            model_version=model.version,
            model_path=model.path.as_posix(),
            model_task=str(model.task),
            latency_ms=(time.perf_counter() - start) * 1000.0,
        )
        logger.info(
            "Prediction: %s (%.1f%%) took %.1f ms",
            prediction.sky_state,
            prediction.confidence * 100,
            prediction.latency_ms,
        )
        return prediction

    def describe(self) -> dict[str, Any]:
        """Summary of the active model."""
        if self._model is None:
            return {"active": None}
        return {
            "active": self._model.version,
            "path": self._model.path.as_posix(),
            "classes": list(self._model.class_names),
        }

    def close(self) -> None:
        """Release the session, then the input buffer, then the output buffer.

        Safe to call more than once and on a predictor whose construction failed.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

            if self._binding is not None:
                self._binding.clear_binding_inputs()
                self._binding.clear_binding_outputs()
            self._binding = None
            self._session = None

            self._input_value = None
            self._input = None

            self._output_value = None
            self._output = None

        logger.info("Predictor closed")

    def __enter__(self) -> OnnxPredictor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -- Internal -----------------------------------------------------------

    def _load(self, manager: OnnxModelManager, model: ModelInfo) -> None:
        self._session = manager.create_session(model)

        input_meta = self._session.get_inputs()[0]
        output_meta = self._session.get_outputs()[0]
        self._input_size = _square_input_size(input_meta.shape, self._input_size)

        num_classes = len(model.class_names)
        out_shape = list(output_meta.shape)
        if len(out_shape) == 2 and isinstance(out_shape[1], int) and out_shape[1] != num_classes:
            raise ValueError(f"Model outputs {out_shape[1]} scores but manifest lists {num_classes} classes")

        self._input = np.zeros((1, 3, self._input_size, self._input_size), dtype=np.float32)
        self._input_value = OrtValue.ortvalue_from_numpy(self._input)

        self._output = np.zeros((1, num_classes), dtype=np.float32)
        self._output_value = OrtValue.ortvalue_from_numpy(self._output)

        self._binding = self._session.io_binding()
        self._binding.bind_ortvalue_input(input_meta.name, self._input_value)
        self._binding.bind_ortvalue_output(output_meta.name, self._output_value)


def _square_input_size(shape: list[Any], default: int) -> int:
    """Spatial size from an NCHW input shape, falling back to ``default`` for dynamic dims."""
    if len(shape) != 4:
        raise ValueError(f"Expected a 4-D NCHW model input, got shape {shape}")
    height, width = shape[2], shape[3]
    if isinstance(height, int) and isinstance(width, int):
        if height != width:
            raise ValueError(f"Model input must be square, got {height}x{width}")
        return height
    return default
