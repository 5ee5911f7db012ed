"""Storage key naming.

Objects are keyed by the content-stable ``file_unique_id`` plus a MIME-derived
extension, so re-acquiring the same bytes always lands on the same key.
"""

import re
from typing import Final

from media_ingest.services.mime_types import extension_for_mime, mime_from_path

_STANDARD_PATH: Final[re.Pattern[str]] = re.compile(
    r"^(?P<unique_id>[A-Za-z0-9_-]+)\.(?P<ext>[a-z0-9]+)$"
)


def standard_storage_path(file_unique_id: str, mime_type: str | None) -> str:
    """Return ``{file_unique_id}.{ext}``.

    Example:
        >>> standard_storage_path("AgADx1", "image/jpeg")
        'AgADx1.jpg'
    """
    if not file_unique_id:
        raise ValueError("file_unique_id is required for a storage path")
    return f"{file_unique_id}.{extension_for_mime(mime_type)}"


def is_standard_path(
    storage_path: str | None, file_unique_id: str | None, mime_type: str | None = None
) -> bool:
    """True when the path already follows the naming convention for this file.

    Without a known MIME type any lowercase extension is accepted.
    """
    if not storage_path or not file_unique_id:
        return False
    match = _STANDARD_PATH.match(storage_path)
    if match is None or match.group("unique_id") != file_unique_id:
        return False
    if mime_type:
        return match.group("ext") == extension_for_mime(mime_type)
    return True


def corrected_storage_path(
    storage_path: str | None, file_unique_id: str, mime_type: str | None
) -> str:
    """Standard path for a row, guessing the MIME type from the old path if needed."""
    return standard_storage_path(file_unique_id, mime_type or mime_from_path(storage_path))


def build_public_url(public_base_url: str, bucket: str, storage_path: str) -> str:
    return f"{public_base_url.rstrip('/')}/{bucket}/{storage_path.lstrip('/')}"


__all__ = [
    "build_public_url",
    "corrected_storage_path",
    "is_standard_path",
    "standard_storage_path",
]
