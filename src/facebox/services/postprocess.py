"""
Face detector post-processor (CPU numpy).

Turns the raw per-anchor outputs of the detector into final face boxes:
1. Face probability per anchor (softmax over background/face logits)
2. Confidence filter (before decoding, for speed)
3. Anchor-relative box decode (center offset / log-scale size)
4. Rescale to original image pixels and clamp to the image
5. Greedy NMS, stable on confidence ties

Every function here is pure: inputs are never modified and no state is kept.
"""

from dataclasses import asdict, dataclass
from typing import Any, Literal

import numpy as np

from facebox.core.exceptions import InferenceError
from facebox.services.preprocess import PreprocessResult


# Positive additive constant to avoid divide-by-zero in IoU
EPS = 1.0e-7


@dataclass(frozen=True)
class Detection:
    """Face box in original image pixels with its confidence."""

    x_min: float
    y_min: float
    x_max: float
    y_max: float
    confidence: float

    @property
    def box(self) -> tuple[float, float, float, float]:
        return (self.x_min, self.y_min, self.x_max, self.y_max)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class DecodeParams:
    """Model-specific decoding constants."""

    center_variance: float = 0.1
    size_variance: float = 0.2
    box_encoding: Literal['deltas', 'corners'] = 'deltas'
    score_activation: Literal['softmax', 'none'] = 'softmax'


def face_probabilities(scores: np.ndarray, activation: str = 'softmax') -> np.ndarray:
    """
    Face-class probability per anchor.

    Args:
        scores: [N, 2] (background, face) logits or probabilities
        activation: 'softmax' for logits, 'none' if already probabilities

    Returns:
        [N] float64 probabilities in [0, 1]
    """
    if activation == 'none':
        return np.clip(scores[:, 1].astype(np.float64), 0.0, 1.0)

    logits = scores.astype(np.float64)
    shifted = logits - logits.max(axis=1, keepdims=True)
    exp = np.exp(shifted)
    return exp[:, 1] / exp.sum(axis=1)


def decode_boxes(
    deltas: np.ndarray,
    priors: np.ndarray,
    center_variance: float = 0.1,
    size_variance: float = 0.2,
) -> np.ndarray:
    """
    Decode regression deltas against anchors.

    center' = anchor.center + delta.center * center_variance * anchor.size
    size'   = anchor.size * exp(delta.size * size_variance)

    Args:
        deltas: [N, 4] (dcx, dcy, dw, dh)
        priors: [N, 4] anchors (cx, cy, w, h), normalized

    Returns:
        [N, 4] boxes (x_min, y_min, x_max, y_max), normalized
    """
    deltas = deltas.astype(np.float64)
    priors = priors.astype(np.float64)

    centers = priors[:, :2] + deltas[:, :2] * center_variance * priors[:, 2:]
    # exp overflow on garbage deltas yields inf, which clamping handles
    with np.errstate(over='ignore'):
        sizes = priors[:, 2:] * np.exp(deltas[:, 2:] * size_variance)

    return np.concatenate([centers - sizes / 2.0, centers + sizes / 2.0], axis=1)


def rescale_boxes(boxes: np.ndarray, geometry: PreprocessResult) -> np.ndarray:
    """
    Map normalized model-space boxes to original image pixels and clamp.

    x_pixel = crop_x + x_norm * crop_width (crop covers the whole image in
    stretch mode, so this reduces to x_norm * orig_width).

    Returns:
        [N, 4] float64 boxes clamped to [0, width] x [0, height]
    """
    out = np.empty_like(boxes, dtype=np.float64)
    out[:, 0::2] = geometry.crop_x + boxes[:, 0::2] * geometry.crop_width
    out[:, 1::2] = geometry.crop_y + boxes[:, 1::2] * geometry.crop_height
    out = np.nan_to_num(out, nan=0.0)
    np.clip(out[:, 0::2], 0.0, float(geometry.orig_width), out=out[:, 0::2])
    np.clip(out[:, 1::2], 0.0, float(geometry.orig_height), out=out[:, 1::2])
    return out


def box_area(boxes: np.ndarray) -> np.ndarray:
    """Area of [N, 4] xyxy boxes; ill-defined boxes have zero area."""
    w = np.maximum(0.0, boxes[:, 2] - boxes[:, 0])
    h = np.maximum(0.0, boxes[:, 3] - boxes[:, 1])
    return w * h


def box_iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """
    Intersection-over-union of one box against many.

    Args:
        box: [4] xyxy
        boxes: [M, 4] xyxy

    Returns:
        [M] IoU values
    """
    box = np.asarray(box, dtype=np.float64).reshape(1, 4)
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)

    xx1 = np.maximum(box[:, 0], boxes[:, 0])
    yy1 = np.maximum(box[:, 1], boxes[:, 1])
    xx2 = np.minimum(box[:, 2], boxes[:, 2])
    yy2 = np.minimum(box[:, 3], boxes[:, 3])

    inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
    return inter / (box_area(box) + box_area(boxes) - inter + EPS)


def nms(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float = 0.5) -> list[int]:
    """
    Greedy NMS.

    Candidates are visited by descending score; ties keep their input order.
    A candidate is dropped when its IoU with an already kept box exceeds
    iou_threshold.

    Args:
        boxes: [N, 4] xyxy
        scores: [N] confidences
        iou_threshold: IoU threshold

    Returns:
        Indices of kept boxes, highest score first
    """
    if len(scores) == 0:
        return []

    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind='stable')

    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        if order.size == 1:
            break
        ovr = box_iou(boxes[i], boxes[order[1:]])
        order = order[1:][ovr <= iou_threshold]

    return keep


def _validate_outputs(raw_boxes: np.ndarray, raw_scores: np.ndarray, num_anchors: int) -> None:
    if raw_boxes.ndim != 2 or raw_boxes.shape[1] != 4:
        raise InferenceError('Unexpected box output shape', shape=tuple(raw_boxes.shape))
    if raw_scores.ndim != 2 or raw_scores.shape[1] != 2:
        raise InferenceError('Unexpected score output shape', shape=tuple(raw_scores.shape))
    if raw_boxes.shape[0] != raw_scores.shape[0]:
        raise InferenceError(
            'Box and score outputs disagree on anchor count',
            boxes=raw_boxes.shape[0],
            scores=raw_scores.shape[0],
        )
    if raw_boxes.shape[0] != num_anchors:
        raise InferenceError(
            'Model output does not match the anchor set',
            outputs=raw_boxes.shape[0],
            anchors=num_anchors,
        )


def output_format_warnings(
    raw_boxes: np.ndarray, raw_scores: np.ndarray, params: DecodeParams
) -> list[str]:
    """
    Compare raw model outputs against the configured decoding.

    Exports that decode in-graph emit probabilities and corner boxes; decoding
    those as logits and deltas returns plausible but wrong faces.

    Returns:
        Human-readable warnings, empty when the outputs fit params
    """
    warnings = []
    scores = raw_scores.astype(np.float64)
    boxes = raw_boxes.astype(np.float64)

    looks_like_probs = bool(
        np.isfinite(scores).all()
        and (scores >= 0.0).all()
        and (scores <= 1.0).all()
        and np.allclose(scores.sum(axis=1), 1.0, atol=1e-3)
    )
    if looks_like_probs and params.score_activation == 'softmax':
        warnings.append(
            'Model scores already look like probabilities; set SCORE_ACTIVATION=none'
        )
    elif not looks_like_probs and params.score_activation == 'none':
        warnings.append('Model scores are not probabilities; set SCORE_ACTIVATION=softmax')

    looks_like_corners = bool(
        np.isfinite(boxes).all()
        and (boxes >= -0.5).all()
        and (boxes <= 1.5).all()
        and (boxes[:, 2:] > boxes[:, :2]).all()
    )
    if looks_like_corners and params.box_encoding == 'deltas':
        warnings.append('Model boxes already look like corner boxes; set BOX_ENCODING=corners')

    return warnings


def postprocess(
    raw_boxes: np.ndarray,
    raw_scores: np.ndarray,
    priors: np.ndarray,
    geometry: PreprocessResult,
    confidence_threshold: float = 0.7,
    iou_threshold: float = 0.5,
    params: DecodeParams | None = None,
    top_k: int | None = None,
) -> list[Detection]:
    """
    Decode raw detector outputs into final face detections.

    Args:
        raw_boxes: [N, 4] regression deltas (or normalized corners)
        raw_scores: [N, 2] background/face scores
        priors: [N, 4] anchor set
        geometry: Preprocessing record for the image
        confidence_threshold: Minimum face probability kept
        iou_threshold: NMS IoU threshold
        params: Decoding constants
        top_k: Optional cap on returned detections

    Returns:
        Detections ordered by descending confidence (possibly empty)

    Raises:
        InferenceError: Output shapes do not match the anchor contract
    """
    params = params or DecodeParams()
    _validate_outputs(raw_boxes, raw_scores, len(priors))

    probs = face_probabilities(raw_scores, params.score_activation)
    pos_inds = np.flatnonzero(probs >= confidence_threshold)
    if pos_inds.size == 0:
        return []

    if params.box_encoding == 'corners':
        boxes_norm = raw_boxes[pos_inds].astype(np.float64)
    else:
        boxes_norm = decode_boxes(
            raw_boxes[pos_inds],
            priors[pos_inds],
            params.center_variance,
            params.size_variance,
        )

    boxes_px = rescale_boxes(boxes_norm, geometry)
    pos_scores = probs[pos_inds]

    valid = (boxes_px[:, 2] > boxes_px[:, 0]) & (boxes_px[:, 3] > boxes_px[:, 1])
    boxes_px = boxes_px[valid]
    pos_scores = pos_scores[valid]

    keep = nms(boxes_px, pos_scores, iou_threshold)
    if top_k is not None:
        keep = keep[:top_k]

    return [
        Detection(
            x_min=float(boxes_px[i, 0]),
            y_min=float(boxes_px[i, 1]),
            x_max=float(boxes_px[i, 2]),
            y_max=float(boxes_px[i, 3]),
            confidence=float(pos_scores[i]),
        )
        for i in keep
    ]


def detections_to_list(detections: list[Detection]) -> list[dict[str, Any]]:
    """Wire representation: list of {x_min, y_min, x_max, y_max, confidence}."""
    return [d.to_dict() for d in detections]
