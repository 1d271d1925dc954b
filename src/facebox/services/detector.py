"""
Face detection service: decode -> preprocess -> infer -> postprocess.

FaceDetector holds only read-only collaborators (preprocessor, anchors,
engine, decode params) and keeps all per-request state on the stack, so one
instance serves every worker thread concurrently.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from facebox.clients.onnx_engine import InferenceEngine
from facebox.config import Settings
from facebox.core.exceptions import InferenceError
from facebox.services.anchors import AnchorConfig, AnchorSet, generate_anchors
from facebox.services.postprocess import (
    DecodeParams,
    Detection,
    output_format_warnings,
    postprocess,
)
from facebox.services.preprocess import Preprocessor
from facebox.utils.image_decode import decode_image


logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Detections for one image plus metadata for the detailed response."""

    detections: list[Detection]
    width: int
    height: int
    timings_ms: dict[str, float] = field(default_factory=dict)

    @property
    def num_detections(self) -> int:
        return len(self.detections)

    def to_dict(self) -> dict[str, Any]:
        return {
            'detections': [d.to_dict() for d in self.detections],
            'num_detections': self.num_detections,
            'image': {'width': self.width, 'height': self.height},
            'timings_ms': self.timings_ms,
        }


class FaceDetector:
    """
    Synchronous per-image detection pipeline.

    Public methods:
    - detect(): Full pipeline from encoded bytes
    """

    def __init__(
        self,
        engine: InferenceEngine,
        anchors: AnchorSet,
        preprocessor: Preprocessor,
        params: DecodeParams | None = None,
        confidence_threshold: float = 0.7,
        iou_threshold: float = 0.5,
        max_image_pixels: int = 40_000_000,
        top_k: int | None = None,
    ):
        if preprocessor.input_shape != engine.input_shape:
            raise ValueError(
                f'Preprocessor shape {preprocessor.input_shape} does not match '
                f'engine shape {engine.input_shape}'
            )
        self.engine = engine
        self.anchors = anchors
        self.preprocessor = preprocessor
        self.params = params or DecodeParams()
        self.confidence_threshold = confidence_threshold
        self.iou_threshold = iou_threshold
        self.max_image_pixels = max_image_pixels
        self.top_k = top_k

    @classmethod
    def from_settings(cls, settings: Settings, engine: InferenceEngine) -> 'FaceDetector':
        """Build the pipeline with anchors and constants taken from settings."""
        anchors = generate_anchors(
            AnchorConfig.from_lists(
                settings.input_width,
                settings.input_height,
                settings.anchor_min_sizes,
                settings.anchor_strides,
            )
        )
        preprocessor = Preprocessor(
            input_width=settings.input_width,
            input_height=settings.input_height,
            mean=settings.input_mean,
            std=settings.input_std,
            resize_mode=settings.resize_mode,
        )
        params = DecodeParams(
            center_variance=settings.center_variance,
            size_variance=settings.size_variance,
            box_encoding=settings.box_encoding,
            score_activation=settings.score_activation,
        )
        logger.info(
            f'FaceDetector initialized: {len(anchors)} anchors, '
            f'input={settings.input_width}x{settings.input_height}, '
            f'resize={settings.resize_mode}'
        )
        return cls(
            engine=engine,
            anchors=anchors,
            preprocessor=preprocessor,
            params=params,
            confidence_threshold=settings.confidence_threshold,
            iou_threshold=settings.iou_threshold,
            max_image_pixels=settings.max_image_pixels,
            top_k=settings.top_k,
        )

    def check_output_format(self) -> list[str]:
        """Run one blank input and warn if the outputs disagree with the decode params."""
        raw = self.engine.run(np.zeros(self.engine.input_shape, dtype=np.float32))
        warnings = output_format_warnings(raw.boxes, raw.scores, self.params)
        for message in warnings:
            logger.warning(message)
        return warnings

    def detect(
        self,
        image_bytes: bytes,
        declared_format: str | None = None,
        confidence: float | None = None,
        iou: float | None = None,
    ) -> DetectionResult:
        """
        Detect faces in one encoded image.

        Args:
            image_bytes: Raw image bytes (JPEG/PNG/BMP/WEBP)
            declared_format: Format announced by the client, if any
            confidence: Override of the confidence threshold
            iou: Override of the NMS IoU threshold

        Returns:
            DetectionResult with boxes in original image pixels

        Raises:
            DecodeError: Image bytes cannot be decoded
            PreprocessError: Internal tensor layout violation
            InferenceError: Model execution failed
        """
        t0 = time.perf_counter()
        buffer = decode_image(image_bytes, declared_format, self.max_image_pixels)
        t1 = time.perf_counter()

        prepared = self.preprocessor(buffer)
        del buffer
        t2 = time.perf_counter()

        raw = self.engine.run(prepared.tensor)
        t3 = time.perf_counter()

        if raw.num_anchors != len(self.anchors):
            raise InferenceError(
                'Model output does not match the anchor set',
                outputs=raw.num_anchors,
                anchors=len(self.anchors),
            )

        detections = postprocess(
            raw.boxes,
            raw.scores,
            self.anchors.priors,
            prepared,
            confidence_threshold=self.confidence_threshold if confidence is None else confidence,
            iou_threshold=self.iou_threshold if iou is None else iou,
            params=self.params,
            top_k=self.top_k,
        )
        t4 = time.perf_counter()

        timings = {
            'decode': round((t1 - t0) * 1000, 2),
            'preprocess': round((t2 - t1) * 1000, 2),
            'inference': round((t3 - t2) * 1000, 2),
            'postprocess': round((t4 - t3) * 1000, 2),
        }
        logger.debug(
            f'Detected {len(detections)} face(s) in {prepared.orig_width}x'
            f'{prepared.orig_height} image: {timings}'
        )

        return DetectionResult(
            detections=detections,
            width=prepared.orig_width,
            height=prepared.orig_height,
            timings_ms=timings,
        )
