"""
Exception taxonomy for the detection pipeline.

Every pipeline failure is a FaceboxError carrying the HTTP status it maps to,
whether the caller may retry, and whether the client or the server caused it.
The exception handlers in facebox.main turn these into structured responses.
"""

from typing import Any


class FaceboxError(Exception):
    """Base class for per-request pipeline failures."""

    status_code: int = 500
    retryable: bool = False
    client_error: bool = False
    public_message: str | None = None

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def detail(self) -> str:
        """Message safe to return to the caller."""
        return self.public_message or self.message

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        body = {
            'detail': self.detail,
            'error_type': type(self).__name__,
            'retryable': self.retryable,
            'client_error': self.client_error,
        }
        if request_id is not None:
            body['request_id'] = request_id
        return body


class DecodeError(FaceboxError):
    """Malformed, truncated, unsupported or oversized image bytes."""

    status_code = 400
    client_error = True


class ImageTooLargeError(DecodeError):
    """Decoded image would exceed the configured pixel budget."""

    status_code = 413


class PreprocessError(FaceboxError):
    """Internal invariant violated while building the input tensor."""

    status_code = 500
    public_message = 'Internal error while preparing the image'


class InferenceError(FaceboxError):
    """Inference runtime rejected the input or failed internally."""

    status_code = 500
    public_message = 'Inference failed'


class CapacityError(FaceboxError):
    """Request queue is at its maximum depth."""

    status_code = 503
    retryable = True


class PipelineTimeoutError(FaceboxError, TimeoutError):
    """Pipeline exceeded the per-request deadline."""

    status_code = 504
    retryable = True


class ModelLoadError(Exception):
    """Model artifact missing or unloadable. Fatal at startup."""
