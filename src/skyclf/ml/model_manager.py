"""Model manager: discover and load versioned ONNX sky-state models.

Layout under the models root::

    <models_dir>/<version>/model.onnx
    <models_dir>/<version>/classes.json   # JSON array, index = output position

Versions are sortable names (e.g. ``20260301_120000``); the latest is the
greatest name among the directories that hold both files.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from skyclf.storage import latest_name

if TYPE_CHECKING:
    from skyclf.config import Settings

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.onnx"
CLASSES_FILENAME = "classes.json"


class ModelTask(StrEnum):
    SKYSTATE = "skystate"


@dataclass(frozen=True)
class ModelInfo:
    """A discovered model artifact."""

    version: str
    path: Path
    class_names: tuple[str, ...]
    task: ModelTask = ModelTask.SKYSTATE


def load_class_names(manifest: Path) -> tuple[str, ...]:
    """Read an ordered class-name manifest.

    Raises:
        ValueError: If the manifest is not a non-empty JSON array of unique strings.
    """
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid class manifest {manifest}: {exc}") from exc

    if not isinstance(data, list) or not data or not all(isinstance(name, str) for name in data):
        raise ValueError(f"Class manifest {manifest} must be a non-empty JSON array of strings")
    if len(set(data)) != len(data):
        raise ValueError(f"Class manifest {manifest} contains duplicate names")
    return tuple(data)


def find_latest_model(models_dir: Path) -> ModelInfo | None:
    """Return the latest complete model artifact under ``models_dir``, or None."""
    if not models_dir.is_dir():
        return None

    complete: dict[str, Path] = {}
    for entry in models_dir.iterdir():
        if not entry.is_dir():
            continue
        if (entry / MODEL_FILENAME).is_file() and (entry / CLASSES_FILENAME).is_file():
            complete[entry.name] = entry
        else:
            logger.debug("Skipping incomplete model directory %s", entry)

    version = latest_name(complete)
    if version is None:
        return None

    version_dir = complete[version]
    return ModelInfo(
        version=version,
        path=version_dir / MODEL_FILENAME,
        class_names=load_class_names(version_dir / CLASSES_FILENAME),
    )


class OnnxModelManager:
    """Finds the latest model and creates ONNX Runtime sessions for it."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._providers = self._build_providers()

        if settings.ort_lib is not None:
            logger.warning(
                "SKYCLF_ORT_LIB=%s ignored: onnxruntime uses its bundled runtime library",
                settings.ort_lib,
            )

    def find_latest(self) -> ModelInfo | None:
        """Scan the models root for the latest artifact."""
        logger.info("Scanning models in %s", self._models_dir)
        model = find_latest_model(self._models_dir)
        if model is None:
            logger.info("No model found")
        else:
            logger.info(
                "Found model %s (version=%s, classes=%s)",
                model.path,
                model.version,
                list(model.class_names),
            )
        return model

    def create_session(self, model: ModelInfo) -> InferenceSession:
        """Create an InferenceSession for ``model``.

        External data files are resolved relative to the model's own directory,
        so the artifact and its data must sit side by side.
        """
        return InferenceSession(
            str(model.path),
            sess_options=self._build_session_options(),
            providers=self._providers,
        )

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL

        custom_ops_lib = self._settings.custom_ops_lib
        if custom_ops_lib is not None:
            if not custom_ops_lib.is_file():
                raise FileNotFoundError(f"Custom ops library not found: {custom_ops_lib}")
            opts.register_custom_ops_library(str(custom_ops_lib))
            logger.info("Registered custom ops library %s", custom_ops_lib)
        return opts
