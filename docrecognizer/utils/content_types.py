import os

from ..errors import UnsupportedContentType

SUPPORTED_CONTENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/tiff",
    "application/pdf",
}

EXTENSION_TO_CONTENT_TYPE = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".pdf": "application/pdf",
}

# browsers and curl send this when they don't know better
GENERIC_CONTENT_TYPES = {"", "application/octet-stream"}


def normalize(content_type: str | None) -> str:
    # "Application/PDF; charset=binary" -> "application/pdf"
    return (content_type or "").split(";")[0].strip().lower()


def from_file_name(file_name: str) -> str:
    ext = os.path.splitext(file_name or "")[1].lower()
    try:
        return EXTENSION_TO_CONTENT_TYPE[ext]
    except KeyError:
        raise UnsupportedContentType(ext) from None


def resolve(content_type: str | None, file_name: str) -> str:
    """Return the supported, normalized content type for an upload or raise."""
    ct = normalize(content_type)
    if ct in GENERIC_CONTENT_TYPES:
        ct = from_file_name(file_name)
    if ct not in SUPPORTED_CONTENT_TYPES:
        raise UnsupportedContentType(ct)
    return ct


def is_pdf(content_type: str | None) -> bool:
    return normalize(content_type) == "application/pdf"


def is_image(content_type: str | None) -> bool:
    return normalize(content_type).startswith("image/")
