"""
Anchor (prior box) generation for the Ultra-Light face detector.

The detector predicts one box per anchor over a multi-scale grid:
- 4 feature maps with strides [8, 16, 32, 64]
- 2-3 square anchor sizes per grid cell
- 17640 anchors for a 640x480 input

Anchors are (cx, cy, w, h) normalized to [0, 1] and are generated once at
startup. The resulting array is write-protected and shared by all requests.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np


DEFAULT_MIN_SIZES = ((10.0, 16.0, 24.0), (32.0, 48.0), (64.0, 96.0), (128.0, 192.0, 256.0))
DEFAULT_STRIDES = (8, 16, 32, 64)


@dataclass(frozen=True)
class AnchorConfig:
    """Anchor generation parameters (from the model's training recipe)."""

    input_width: int = 640
    input_height: int = 480
    min_sizes: tuple[tuple[float, ...], ...] = DEFAULT_MIN_SIZES
    strides: tuple[int, ...] = DEFAULT_STRIDES

    @classmethod
    def from_lists(
        cls,
        input_width: int,
        input_height: int,
        min_sizes: Sequence[Sequence[float]],
        strides: Sequence[int],
    ) -> 'AnchorConfig':
        return cls(
            input_width=input_width,
            input_height=input_height,
            min_sizes=tuple(tuple(float(s) for s in level) for level in min_sizes),
            strides=tuple(int(s) for s in strides),
        )

    def feature_map_sizes(self) -> list[tuple[int, int]]:
        """(width, height) of each feature map."""
        return [
            (math.ceil(self.input_width / s), math.ceil(self.input_height / s))
            for s in self.strides
        ]

    @property
    def num_anchors(self) -> int:
        return sum(
            fw * fh * len(sizes)
            for (fw, fh), sizes in zip(self.feature_map_sizes(), self.min_sizes)
        )


def _level_anchors(
    fm_width: int,
    fm_height: int,
    stride: int,
    sizes: Sequence[float],
    input_width: int,
    input_height: int,
) -> np.ndarray:
    """
    Anchors for one feature map, row-major over cells, sizes innermost.

    Returns:
        [fm_height * fm_width * len(sizes), 4] (cx, cy, w, h)
    """
    ys, xs = np.mgrid[:fm_height, :fm_width].astype(np.float32)
    cx = (xs.reshape(-1) + 0.5) * stride / input_width
    cy = (ys.reshape(-1) + 0.5) * stride / input_height

    n_sizes = len(sizes)
    cx = np.repeat(cx, n_sizes)
    cy = np.repeat(cy, n_sizes)
    sizes_arr = np.asarray(sizes, dtype=np.float32)
    w = np.tile(sizes_arr / input_width, fm_width * fm_height)
    h = np.tile(sizes_arr / input_height, fm_width * fm_height)

    return np.stack([cx, cy, w, h], axis=-1)


@dataclass(frozen=True)
class AnchorSet:
    """Immutable anchor array plus the config that produced it."""

    config: AnchorConfig
    priors: np.ndarray  # [N, 4] (cx, cy, w, h), read-only

    def __len__(self) -> int:
        return int(self.priors.shape[0])


def generate_anchors(config: AnchorConfig | None = None) -> AnchorSet:
    """
    Generate the anchor set for a model input size.

    Args:
        config: Anchor parameters (defaults to the RFB-640 recipe)

    Returns:
        AnchorSet with a write-protected [N, 4] float32 array clipped to [0, 1]
    """
    config = config or AnchorConfig()
    levels = [
        _level_anchors(fw, fh, stride, sizes, config.input_width, config.input_height)
        for (fw, fh), stride, sizes in zip(
            config.feature_map_sizes(), config.strides, config.min_sizes
        )
    ]
    priors = np.clip(np.concatenate(levels, axis=0), 0.0, 1.0).astype(np.float32)
    priors.flags.writeable = False
    return AnchorSet(config=config, priors=priors)
