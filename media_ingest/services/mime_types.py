"""MIME type helpers for stored media."""

from typing import Final

from media_ingest.domain.models import MediaKind

DEFAULT_EXTENSION: Final[str] = "bin"
DEFAULT_MIME_TYPE: Final[str] = "application/octet-stream"

MIME_EXTENSIONS: Final[dict[str, str]] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-matroska": "mkv",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "application/pdf": "pdf",
    "application/zip": "zip",
    "application/x-tgsticker": "tgs",
    "text/plain": "txt",
}

EXTENSION_MIME_TYPES: Final[dict[str, str]] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "heic": "image/heic",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "ogg": "audio/ogg",
    "oga": "audio/ogg",
    "wav": "audio/wav",
    "pdf": "application/pdf",
    "zip": "application/zip",
    "tgs": "application/x-tgsticker",
    "txt": "text/plain",
}

KIND_DEFAULT_MIME_TYPES: Final[dict[MediaKind, str]] = {
    MediaKind.PHOTO: "image/jpeg",
    MediaKind.VIDEO: "video/mp4",
    MediaKind.ANIMATION: "video/mp4",
    MediaKind.VIDEO_NOTE: "video/mp4",
    MediaKind.VOICE: "audio/ogg",
    MediaKind.AUDIO: "audio/mpeg",
    MediaKind.STICKER: "image/webp",
    MediaKind.DOCUMENT: DEFAULT_MIME_TYPE,
}


def extension_for_mime(mime_type: str | None) -> str:
    """Map a MIME type to the file extension used in storage keys."""
    if not mime_type:
        return DEFAULT_EXTENSION
    normalized = mime_type.split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(normalized, DEFAULT_EXTENSION)


def mime_from_path(path: str | None) -> str | None:
    if not path or "." not in path.rsplit("/", 1)[-1]:
        return None
    return EXTENSION_MIME_TYPES.get(path.rsplit(".", 1)[-1].lower())


def detect_mime_type(
    media_kind: MediaKind | None,
    declared: str | None = None,
    file_path: str | None = None,
) -> str:
    """Pick the best known MIME type for a piece of media.

    The type declared in the update wins, then the extension of the platform
    file path, then the default for the media kind.
    """
    if declared:
        return declared.split(";", 1)[0].strip().lower()
    from_path = mime_from_path(file_path)
    if from_path:
        return from_path
    if media_kind is not None:
        return KIND_DEFAULT_MIME_TYPES[media_kind]
    return DEFAULT_MIME_TYPE


def content_disposition(mime_type: str) -> str:
    """Browsers render images, videos and PDFs inline; everything else downloads."""
    if mime_type.startswith(("image/", "video/")) or mime_type == "application/pdf":
        return "inline"
    return "attachment"


__all__ = [
    "DEFAULT_EXTENSION",
    "DEFAULT_MIME_TYPE",
    "content_disposition",
    "detect_mime_type",
    "extension_for_mime",
    "mime_from_path",
]
