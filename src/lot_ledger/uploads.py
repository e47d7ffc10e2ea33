"""Image upload collaborator.

Lots and sales may carry a reference to a photo. Uploading is best effort:
a failed upload is logged and the record is stored without an image.
"""

from __future__ import annotations

import base64
import mimetypes
from pathlib import Path
from typing import Optional, Protocol

from . import log


DEFAULT_CONTENT_TYPE = "application/octet-stream"


class Uploader(Protocol):
    """Anything that turns image bytes into an opaque reference string."""

    def upload(self, content: bytes, *, filename: str, content_type: str) -> str:
        ...


class DataUrlUploader:
    """Embed the image itself as a ``data:`` URL."""

    def upload(self, content: bytes, *, filename: str, content_type: str) -> str:
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{content_type};base64,{encoded}"


def guess_content_type(path: Path) -> str:
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or DEFAULT_CONTENT_TYPE


def upload_best_effort(uploader: Uploader, path: Optional[Path]) -> str:
    """Upload the file at ``path`` and return its reference, or ``""`` on failure.

    Reading or uploading errors are logged as warnings and never raised.
    """

    if path is None:
        return ""
    path = Path(path).expanduser()
    try:
        content = path.read_bytes()
        reference = uploader.upload(
            content,
            filename=path.name,
            content_type=guess_content_type(path),
        )
    except Exception as exc:  # any uploader failure must not block the record
        log.warning("Image upload failed for '%s': %s", path, exc)
        return ""
    log.info("Uploaded image '%s' (%d bytes)", path.name, len(content))
    return reference
