"""Map object keys to media kinds and to their metadata sidecar keys."""

from media_tagger.models import MediaKind


SIDECAR_SUFFIX = ".metadata.json"

EXTENSION_KINDS = {
    ".jpg": MediaKind.IMAGE,
    ".jpeg": MediaKind.IMAGE,
    ".png": MediaKind.IMAGE,
    ".pdf": MediaKind.PDF,
    ".mp4": MediaKind.VIDEO,
}


def classify(key: str) -> MediaKind:
    """
    Classify an object key by its extension (case insensitive).

    Examples:
        >>> classify("holiday/IMG_0001.JPG")
        <MediaKind.IMAGE: 'image'>
        >>> classify("README")
        <MediaKind.UNSUPPORTED: 'unsupported'>

    """
    dot = key.rfind(".")
    if dot == -1:
        return MediaKind.UNSUPPORTED
    return EXTENSION_KINDS.get(key[dot:].lower(), MediaKind.UNSUPPORTED)


def sidecar_key(key: str) -> str:
    """
    Return the key of the metadata sidecar belonging to ``key``.

    Examples:
        >>> sidecar_key("docs/report.pdf")
        'docs/report.pdf.metadata.json'

    """
    return f"{key}{SIDECAR_SUFFIX}"


def is_sidecar(key: str) -> bool:
    """Tell whether ``key`` names a metadata sidecar rather than media."""
    return key.endswith(SIDECAR_SUFFIX)
