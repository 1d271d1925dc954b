"""
ONNX Runtime inference engine for the face detector.

The pipeline depends only on the InferenceEngine protocol:
    run(tensor) -> RawOutputs(boxes, scores)

OnnxInferenceEngine is the production implementation. One session is created
at startup and shared by every request thread: InferenceSession.run is
thread-safe, and intra-op parallelism is sized by INFERENCE_THREADS
independently of the number of concurrent requests.

Usage:
    engine = OnnxInferenceEngine.load('models/version-RFB-640.onnx', threads=4)
    engine.warmup(runs=1)
    raw = engine.run(tensor)  # tensor: [1, 3, 480, 640] float32
"""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import numpy as np
import onnxruntime as ort
from onnxruntime.capi.onnxruntime_pybind11_state import (
    EngineError,
    Fail,
    InvalidArgument,
    InvalidGraph,
    NoModel,
    NoSuchFile,
)

from facebox.core.exceptions import InferenceError, ModelLoadError


logger = logging.getLogger(__name__)

# Output names used by the Ultra-Light ONNX exports; positional fallback otherwise
SCORES_OUTPUT = 'scores'
BOXES_OUTPUT = 'boxes'

# Runtime errors after which the session is not trusted again
_SESSION_FATAL = (EngineError, InvalidGraph, NoModel, NoSuchFile)


@dataclass(frozen=True)
class RawOutputs:
    """Per-anchor detector outputs with the batch dimension removed."""

    boxes: np.ndarray  # [N, 4]
    scores: np.ndarray  # [N, 2] (background, face)

    @property
    def num_anchors(self) -> int:
        return int(self.boxes.shape[0])


@runtime_checkable
class InferenceEngine(Protocol):
    """Synchronous, thread-safe model execution capability."""

    @property
    def input_shape(self) -> tuple[int, int, int, int]: ...

    @property
    def ready(self) -> bool: ...

    def run(self, tensor: np.ndarray) -> RawOutputs: ...


def _squeeze_batch(arr: np.ndarray, width: int) -> np.ndarray:
    if arr.ndim == 3 and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim != 2 or arr.shape[1] != width:
        raise InferenceError('Unexpected model output shape', shape=tuple(arr.shape))
    return arr


class OnnxInferenceEngine:
    """
    Owned handle to a loaded ONNX detector session.

    Features:
    - Input shape/dtype validation before every run
    - Output tensors resolved by name with positional fallback
    - Readiness flag that flips on unrecoverable session errors
    - Run statistics for the health endpoint
    """

    def __init__(
        self,
        session: ort.InferenceSession,
        input_shape: tuple[int, int, int, int],
        threads: int,
        model_path: Path | None = None,
    ):
        self._session: ort.InferenceSession | None = session
        self._input_shape = input_shape
        self.threads = threads
        self.model_path = model_path

        self._input_name = session.get_inputs()[0].name
        self._scores_name, self._boxes_name = self._resolve_outputs(session)

        self._healthy = True
        self._stats_lock = threading.Lock()
        self._runs = 0
        self._failures = 0
        self._total_ms = 0.0

    # =========================================================================
    # Construction
    # =========================================================================
    @classmethod
    def load(
        cls,
        model_path: str | Path,
        threads: int,
        input_shape: tuple[int, int, int, int] = (1, 3, 480, 640),
        providers: list[str] | None = None,
    ) -> 'OnnxInferenceEngine':
        """
        Create an inference session from a model file.

        Args:
            model_path: Path to the .onnx artifact
            threads: intra-op thread count
            input_shape: Expected (N, C, H, W) input shape
            providers: Execution providers (default: CPU)

        Raises:
            ModelLoadError: File missing, unreadable, or incompatible with input_shape
        """
        model_path = Path(model_path)
        if not model_path.is_file():
            raise ModelLoadError(f'Model file not found: {model_path}')

        start = time.perf_counter()

        sess_options = ort.SessionOptions()
        sess_options.intra_op_num_threads = threads
        sess_options.inter_op_num_threads = 1
        sess_options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        sess_options.log_severity_level = 3

        try:
            session = ort.InferenceSession(
                str(model_path),
                sess_options=sess_options,
                providers=providers or ['CPUExecutionProvider'],
            )
        except Exception as e:
            raise ModelLoadError(f'Could not load model {model_path}: {e}') from e

        cls._check_input(session, input_shape)

        engine = cls(session, input_shape, threads, model_path)
        logger.info(
            f'ONNX session loaded: {model_path} threads={threads} '
            f'outputs=({engine._scores_name}, {engine._boxes_name}) '
            f'in {(time.perf_counter() - start) * 1000:.1f}ms'
        )
        return engine

    @staticmethod
    def _check_input(session: ort.InferenceSession, input_shape: tuple[int, ...]) -> None:
        inputs = session.get_inputs()
        if len(inputs) != 1:
            raise ModelLoadError(f'Expected a single model input, found {len(inputs)}')

        model_shape = inputs[0].shape
        if len(model_shape) != len(input_shape):
            raise ModelLoadError(
                f'Model input rank {len(model_shape)} does not match {input_shape}'
            )
        # Symbolic dims (str / None) accept any size
        for dim, expected in zip(model_shape, input_shape):
            if isinstance(dim, int) and dim != expected:
                raise ModelLoadError(
                    f'Model input shape {model_shape} does not match configured {input_shape}'
                )

    @staticmethod
    def _resolve_outputs(session: ort.InferenceSession) -> tuple[str, str]:
        names = [o.name for o in session.get_outputs()]
        if len(names) < 2:
            raise ModelLoadError(f'Expected score and box outputs, found {names}')
        if SCORES_OUTPUT in names and BOXES_OUTPUT in names:
            return SCORES_OUTPUT, BOXES_OUTPUT
        return names[0], names[1]

    # =========================================================================
    # InferenceEngine protocol
    # =========================================================================
    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return self._input_shape

    @property
    def ready(self) -> bool:
        return self._session is not None and self._healthy

    def run(self, tensor: np.ndarray) -> RawOutputs:
        """
        Execute the detector on one preprocessed tensor.

        Raises:
            InferenceError: Bad input, runtime failure, or unusable session
        """
        session = self._session
        if session is None or not self._healthy:
            raise InferenceError('Inference session is not available')

        if tensor.dtype != np.float32 or tuple(tensor.shape) != self._input_shape:
            raise InferenceError(
                'Input tensor does not match the model input',
                shape=tuple(tensor.shape),
                dtype=str(tensor.dtype),
                expected=self._input_shape,
            )

        start = time.perf_counter()
        try:
            scores, boxes = session.run(
                [self._scores_name, self._boxes_name], {self._input_name: tensor}
            )
        except _SESSION_FATAL as e:
            self._healthy = False
            self._record(start, failed=True)
            logger.error(f'Inference session failed, marking not ready: {e}')
            raise InferenceError(f'Inference session failed: {e}') from e
        except (Fail, InvalidArgument) as e:
            self._record(start, failed=True)
            raise InferenceError(f'Inference rejected input: {e}') from e
        except Exception as e:
            self._record(start, failed=True)
            raise InferenceError(f'Inference failed: {e}') from e

        self._record(start, failed=False)
        return RawOutputs(
            boxes=_squeeze_batch(np.asarray(boxes), 4),
            scores=_squeeze_batch(np.asarray(scores), 2),
        )

    # =========================================================================
    # Lifecycle / monitoring
    # =========================================================================
    def warmup(self, runs: int = 1) -> None:
        """Run dummy inferences so the first request does not pay allocation cost."""
        if runs <= 0:
            return
        dummy = np.zeros(self._input_shape, dtype=np.float32)
        for _ in range(runs):
            self.run(dummy)
        logger.info(f'ONNX session warmed up with {runs} run(s)')

    def _record(self, start: float, failed: bool) -> None:
        elapsed_ms = (time.perf_counter() - start) * 1000
        with self._stats_lock:
            self._runs += 1
            if failed:
                self._failures += 1
            else:
                self._total_ms += elapsed_ms

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            ok = self._runs - self._failures
            return {
                'ready': self.ready,
                'model_path': str(self.model_path) if self.model_path else None,
                'threads': self.threads,
                'input_shape': list(self._input_shape),
                'runs': self._runs,
                'failures': self._failures,
                'avg_latency_ms': round(self._total_ms / ok, 2) if ok else 0.0,
            }

    def close(self) -> None:
        """Release the session. Subsequent runs raise InferenceError."""
        if self._session is not None:
            self._session = None
            logger.info(f'ONNX session closed (final stats: {self.get_stats()})')
