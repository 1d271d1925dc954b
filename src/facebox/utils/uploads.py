"""
Request body helpers for image uploads.

Both endpoints styles are supported:
- multipart/form-data with the image in an 'image' (or 'file') field
- raw binary body with an image Content-Type (or application/octet-stream)
"""

from dataclasses import dataclass

from fastapi import HTTPException, Request
from starlette.datastructures import UploadFile

from facebox.utils.image_decode import format_from_mime


UPLOAD_FIELDS = ('image', 'file')


@dataclass
class ImagePayload:
    data: bytes
    content_type: str | None
    filename: str | None = None

    @property
    def declared_format(self) -> str | None:
        return format_from_mime(self.content_type)


def _too_large(max_bytes: int) -> HTTPException:
    return HTTPException(
        status_code=413,
        detail=f'File too large. Maximum: {max_bytes // (1024 * 1024)}MB',
    )


async def read_image_payload(request: Request, max_bytes: int) -> ImagePayload:
    """
    Extract the uploaded image from a multipart form or a raw body.

    Raises:
        HTTPException: 400 when no image is present, 413 when over max_bytes
    """
    content_type = request.headers.get('content-type', '')

    if content_type.startswith('multipart/form-data'):
        form = await request.form()
        try:
            upload = next(
                (form[name] for name in UPLOAD_FIELDS if isinstance(form.get(name), UploadFile)),
                None,
            )
            if upload is None:
                raise HTTPException(
                    status_code=400,
                    detail=f'Multipart upload must contain a file field named {UPLOAD_FIELDS[0]!r}',
                )
            if upload.size is not None and upload.size > max_bytes:
                raise _too_large(max_bytes)
            data = await upload.read()
            payload = ImagePayload(
                data=data, content_type=upload.content_type, filename=upload.filename
            )
        finally:
            await form.close()
    else:
        data = await request.body()
        payload = ImagePayload(data=data, content_type=content_type or None)

    if len(payload.data) > max_bytes:
        raise _too_large(max_bytes)
    if not payload.data:
        raise HTTPException(status_code=400, detail='Empty image file')
    return payload
