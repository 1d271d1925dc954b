"""
CPU preprocessing: PixelBuffer -> model input tensor.

Pipeline: (optional center crop) -> bilinear resize to (W, H) ->
float32 -> per-channel normalize -> HWC to CHW -> batch dimension.

The crop/scale geometry is recorded so the post-processor can map
normalized model coordinates back to original pixels.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import cv2
import numpy as np

from facebox.core.exceptions import PreprocessError
from facebox.utils.image_decode import PixelBuffer


@dataclass(frozen=True)
class PreprocessResult:
    """Result of preprocessing a single image.

    Attributes:
        tensor: [1, 3, H, W] FP32 normalized, C-contiguous
        orig_width: Original image width
        orig_height: Original image height
        crop_x: Left edge of the region fed to the model (original pixels)
        crop_y: Top edge of that region
        crop_width: Width of that region
        crop_height: Height of that region
        scale_x: W / crop_width
        scale_y: H / crop_height
    """

    tensor: np.ndarray
    orig_width: int
    orig_height: int
    crop_x: float
    crop_y: float
    crop_width: float
    crop_height: float
    scale_x: float
    scale_y: float

    @property
    def orig_shape(self) -> tuple[int, int]:
        """(height, width) of the original image."""
        return self.orig_height, self.orig_width


def fill_crop(
    width: int, height: int, target_ratio: float
) -> tuple[int, int, int, int]:
    """
    Centered crop of a (width, height) image to target_ratio (W / H).

    Returns:
        (x, y, crop_w, crop_h) in integer pixels
    """
    ratio = width / height
    if ratio > target_ratio:
        crop_w = max(1, round(height * target_ratio))
        x = (width - crop_w) // 2
        return x, 0, crop_w, height
    if ratio < target_ratio:
        crop_h = max(1, round(width / target_ratio))
        y = (height - crop_h) // 2
        return 0, y, width, crop_h
    return 0, 0, width, height


class Preprocessor:
    """
    Converts decoded images into the detector's fixed input tensor.

    Instances are immutable after construction and safe to share between
    request threads.
    """

    def __init__(
        self,
        input_width: int = 640,
        input_height: int = 480,
        mean: Sequence[float] = (0.485, 0.456, 0.406),
        std: Sequence[float] = (0.229, 0.224, 0.225),
        resize_mode: str = 'stretch',
    ):
        if resize_mode not in ('stretch', 'fill'):
            raise ValueError(f'Unknown resize mode: {resize_mode}')
        self.input_width = input_width
        self.input_height = input_height
        self.resize_mode = resize_mode
        # Folding /255 into the constants: (p/255 - m)/s == p * (1/(255 s)) - m/s
        std_arr = np.asarray(std, dtype=np.float32)
        mean_arr = np.asarray(mean, dtype=np.float32)
        self._scale = (1.0 / (255.0 * std_arr)).reshape(1, 1, 3)
        self._offset = (mean_arr / std_arr).reshape(1, 1, 3)

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return (1, 3, self.input_height, self.input_width)

    def __call__(self, buffer: PixelBuffer) -> PreprocessResult:
        return self.preprocess(buffer)

    def preprocess(self, buffer: PixelBuffer) -> PreprocessResult:
        """
        Build the model input tensor for one image.

        Raises:
            PreprocessError: Buffer or output tensor violates the layout contract
        """
        if buffer.channels != 3 or not buffer.is_consistent():
            raise PreprocessError(
                'Pixel buffer does not match its declared geometry',
                width=buffer.width,
                height=buffer.height,
                channels=buffer.channels,
                shape=tuple(buffer.data.shape),
            )

        img = buffer.data
        if self.resize_mode == 'fill':
            x, y, crop_w, crop_h = fill_crop(
                buffer.width, buffer.height, self.input_width / self.input_height
            )
            img = img[y : y + crop_h, x : x + crop_w]
        else:
            x, y, crop_w, crop_h = 0, 0, buffer.width, buffer.height

        if (crop_w, crop_h) != (self.input_width, self.input_height):
            resized = cv2.resize(
                img, (self.input_width, self.input_height), interpolation=cv2.INTER_LINEAR
            )
        else:
            resized = img

        normalized = resized.astype(np.float32) * self._scale - self._offset

        # HWC -> CHW, add batch dim
        tensor = np.ascontiguousarray(normalized.transpose(2, 0, 1))[np.newaxis, ...]

        if tensor.shape != self.input_shape or tensor.dtype != np.float32:
            raise PreprocessError(
                'Preprocessed tensor has unexpected shape',
                shape=tuple(tensor.shape),
                expected=self.input_shape,
            )

        return PreprocessResult(
            tensor=tensor,
            orig_width=buffer.width,
            orig_height=buffer.height,
            crop_x=float(x),
            crop_y=float(y),
            crop_width=float(crop_w),
            crop_height=float(crop_h),
            scale_x=self.input_width / crop_w,
            scale_y=self.input_height / crop_h,
        )
