"""
Shared fixtures for the facebox test suite.

FakeFaceEngine stands in for the ONNX session: it finds bright blobs in the
red channel of the input tensor and answers like a trained detector would,
with high face logits on anchors overlapping a blob and regression deltas
that decode exactly to the blob's bounding box.
"""

import io
import threading
import time

import cv2
import numpy as np
import pytest
from PIL import Image

from facebox.clients.onnx_engine import RawOutputs
from facebox.config import Settings
from facebox.services.anchors import generate_anchors
from facebox.services.detector import FaceDetector
from facebox.services.postprocess import box_iou


# =============================================================================
# Constants
# =============================================================================

INPUT_SHAPE = (1, 3, 480, 640)

# Normalized red value above which a pixel counts as "face" (~ 0.71 * 255)
BLOB_THRESHOLD = 1.0

# Anchors with at least this IoU against a blob fire
MATCH_IOU = 0.3

BACKGROUND_LOGIT = 6.0


# =============================================================================
# Fake inference engine
# =============================================================================


class FakeFaceEngine:
    """Deterministic InferenceEngine keyed on bright square regions."""

    def __init__(
        self,
        priors: np.ndarray,
        input_shape: tuple[int, int, int, int] = INPUT_SHAPE,
        delay_s: float = 0.0,
        gate: threading.Event | None = None,
    ):
        self.priors = priors
        self._input_shape = input_shape
        self.delay_s = delay_s
        self.gate = gate
        self.ready = True
        self.calls = 0
        self._lock = threading.Lock()

        cx, cy, w, h = (priors[:, i].astype(np.float64) for i in range(4))
        self._anchor_boxes = np.stack([cx - w / 2, cy - h / 2, cx + w / 2, cy + h / 2], axis=1)

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return self._input_shape

    def _regions(self, tensor: np.ndarray) -> list[np.ndarray]:
        mask = (tensor[0, 0] > BLOB_THRESHOLD).astype(np.uint8)
        count, _, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=8)
        height, width = mask.shape
        regions = []
        for label in range(1, count):
            x, y, w, h = stats[label, :4]
            regions.append(
                np.array([x / width, y / height, (x + w) / width, (y + h) / height])
            )
        return regions

    def _encode(self, region: np.ndarray, idx: np.ndarray) -> np.ndarray:
        pri = self.priors[idx].astype(np.float64)
        rcx = (region[0] + region[2]) / 2
        rcy = (region[1] + region[3]) / 2
        rw = region[2] - region[0]
        rh = region[3] - region[1]
        return np.stack(
            [
                (rcx - pri[:, 0]) / (0.1 * pri[:, 2]),
                (rcy - pri[:, 1]) / (0.1 * pri[:, 3]),
                np.log(rw / pri[:, 2]) / 0.2,
                np.log(rh / pri[:, 3]) / 0.2,
            ],
            axis=1,
        )

    def run(self, tensor: np.ndarray) -> RawOutputs:
        with self._lock:
            self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.delay_s:
            time.sleep(self.delay_s)

        n = len(self.priors)
        scores = np.zeros((n, 2), dtype=np.float64)
        scores[:, 0] = BACKGROUND_LOGIT
        boxes = np.zeros((n, 4), dtype=np.float64)
        best = np.zeros(n, dtype=np.float64)

        for region in self._regions(tensor):
            iou = box_iou(region, self._anchor_boxes)
            idx = np.flatnonzero((iou >= MATCH_IOU) & (iou > best))
            if idx.size == 0:
                continue
            best[idx] = iou[idx]
            scores[idx, 0] = 0.0
            scores[idx, 1] = 2.0 + 4.0 * iou[idx]
            boxes[idx] = self._encode(region, idx)

        return RawOutputs(boxes=boxes.astype(np.float32), scores=scores.astype(np.float32))


# =============================================================================
# Image helpers
# =============================================================================


def make_image(
    width: int = 640,
    height: int = 480,
    squares: list[tuple[int, int, int, int]] | None = None,
    background: int = 0,
) -> np.ndarray:
    """RGB uint8 image with white (x1, y1, x2, y2) squares on a flat background."""
    img = np.full((height, width, 3), background, dtype=np.uint8)
    for x1, y1, x2, y2 in squares or []:
        img[y1:y2, x1:x2] = 255
    return img


def encode_image(rgb: np.ndarray, fmt: str = 'PNG', **params) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(rgb).save(buf, format=fmt, **params)
    return buf.getvalue()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope='session')
def anchors():
    return generate_anchors()


@pytest.fixture
def fake_engine(anchors):
    return FakeFaceEngine(anchors.priors)


@pytest.fixture
def settings(tmp_path):
    model_path = tmp_path / 'model.onnx'
    model_path.write_bytes(b'')
    return Settings(
        model_path=model_path,
        results_dir=tmp_path / 'results',
        inference_threads=1,
        warmup_runs=0,
        worker_threads=2,
        max_request_queue_depth=8,
        request_timeout_ms=5000,
        job_queue_size=16,
    )


@pytest.fixture
def detector(settings, fake_engine):
    return FaceDetector.from_settings(settings, fake_engine)


@pytest.fixture
def face_png():
    """640x480 PNG with one 200x200 'face' at (100, 80)."""
    return encode_image(make_image(squares=[(100, 80, 300, 280)]))


@pytest.fixture
def blank_png():
    return encode_image(make_image(background=128))
