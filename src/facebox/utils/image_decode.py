"""
Image decoding: raw upload bytes -> RGB pixel buffer.

The header is probed first so oversized images are rejected before any pixel
memory is allocated. Pillow performs the full decode because it reports
truncated streams as errors instead of returning a partially filled image.
"""

import io
from dataclasses import dataclass

import numpy as np
from PIL import Image, UnidentifiedImageError

from facebox.core.exceptions import DecodeError, ImageTooLargeError


SUPPORTED_FORMATS = ('jpeg', 'png', 'bmp', 'webp')

MIME_FORMATS = {
    'image/jpeg': 'jpeg',
    'image/jpg': 'jpeg',
    'image/pjpeg': 'jpeg',
    'image/png': 'png',
    'image/bmp': 'bmp',
    'image/x-ms-bmp': 'bmp',
    'image/webp': 'webp',
}


@dataclass
class PixelBuffer:
    """
    Decoded image in interleaved (HWC) RGB layout.

    Attributes:
        width: Image width in pixels
        height: Image height in pixels
        channels: Channel count (always 3 after decoding)
        data: uint8 array of shape (height, width, channels)
    """

    width: int
    height: int
    channels: int
    data: np.ndarray

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes)

    def is_consistent(self) -> bool:
        """Byte length matches width * height * channels."""
        return (
            self.data.dtype == np.uint8
            and self.data.shape == (self.height, self.width, self.channels)
            and self.nbytes == self.width * self.height * self.channels
        )


def sniff_format(data: bytes) -> str | None:
    """
    Identify the image container from its magic bytes.

    Returns:
        Format name ('jpeg', 'png', 'bmp', 'webp', 'gif', 'tiff') or None
    """
    if data.startswith(b'\xff\xd8\xff'):
        return 'jpeg'
    if data.startswith(b'\x89PNG\r\n\x1a\n'):
        return 'png'
    if data.startswith(b'BM'):
        return 'bmp'
    if len(data) >= 12 and data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return 'webp'
    if data.startswith((b'GIF87a', b'GIF89a')):
        return 'gif'
    if data.startswith((b'II*\x00', b'MM\x00*')):
        return 'tiff'
    return None


def format_from_mime(content_type: str | None) -> str | None:
    """Map an HTTP content type (parameters ignored) to a supported format name."""
    if not content_type:
        return None
    mime = content_type.split(';', 1)[0].strip().lower()
    return MIME_FORMATS.get(mime)


def decode_image(
    data: bytes,
    declared_format: str | None = None,
    max_pixels: int = 40_000_000,
) -> PixelBuffer:
    """
    Decode image bytes into an RGB PixelBuffer.

    Args:
        data: Raw encoded image bytes
        declared_format: Format claimed by the client (e.g. from Content-Type);
            must agree with the sniffed format when given
        max_pixels: Upper bound on width * height

    Returns:
        PixelBuffer with 3 channels

    Raises:
        DecodeError: Empty, unknown, unsupported, mismatched or corrupt data
        ImageTooLargeError: Image exceeds max_pixels
    """
    if not data:
        raise DecodeError('Empty image payload')

    fmt = sniff_format(data)
    if fmt is None:
        raise DecodeError('Unrecognized image format')
    if fmt not in SUPPORTED_FORMATS:
        raise DecodeError(f'Unsupported image format: {fmt}', format=fmt)
    if declared_format is not None and declared_format != fmt:
        raise DecodeError(
            f'Declared format {declared_format} does not match image data ({fmt})',
            declared=declared_format,
            sniffed=fmt,
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            if width <= 0 or height <= 0:
                raise DecodeError('Image has a zero dimension', width=width, height=height)
            if width * height > max_pixels:
                raise ImageTooLargeError(
                    f'Image is {width}x{height}, above the {max_pixels} pixel limit',
                    width=width,
                    height=height,
                )
            img.load()
            rgb = img.convert('RGB')
    except DecodeError:
        raise
    except Image.DecompressionBombError as e:
        raise ImageTooLargeError(f'Image exceeds the decoder pixel limit: {e}') from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError) as e:
        raise DecodeError(f'Could not decode {fmt} image: {e}', format=fmt) from e

    pixels = np.asarray(rgb, dtype=np.uint8)
    if not pixels.flags.c_contiguous:
        pixels = np.ascontiguousarray(pixels)

    return PixelBuffer(width=width, height=height, channels=3, data=pixels)
