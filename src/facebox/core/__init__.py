"""
Core module with shared dependencies, exception taxonomy, and logging.
"""

from facebox.core.exceptions import (
    CapacityError,
    DecodeError,
    FaceboxError,
    ImageTooLargeError,
    InferenceError,
    ModelLoadError,
    PipelineTimeoutError,
    PreprocessError,
)
from facebox.core.logging import configure_logging, get_logger


__all__ = [
    'CapacityError',
    'DecodeError',
    'FaceboxError',
    'ImageTooLargeError',
    'InferenceError',
    'ModelLoadError',
    'PipelineTimeoutError',
    'PreprocessError',
    'configure_logging',
    'get_logger',
]
