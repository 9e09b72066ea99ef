"""Filesystem helpers for prompt attachments."""
from __future__ import annotations

import base64
import logging
import mimetypes
from pathlib import Path

logger = logging.getLogger(__name__)

# Larger images are refused rather than inlined.
MAX_INLINE_BYTES = 20 * 1024 * 1024


def path_exists(path: str | Path) -> bool:
    try:
        return Path(path).expanduser().exists()
    except (OSError, ValueError):
        return False


def image_to_data_url(path: str | Path) -> str | None:
    """Read an image file and return it as a ``data:`` URL.

    Returns None when the file is missing, unreadable, too large, or
    not recognised as an image.
    """
    target = Path(path).expanduser()
    mime, _ = mimetypes.guess_type(target.name)
    if not mime or not mime.startswith("image/"):
        logger.debug("Not an image type: %s (%s)", target, mime)
        return None
    try:
        size = target.stat().st_size
        if size > MAX_INLINE_BYTES:
            logger.warning("Image %s is %d bytes; not inlining", target, size)
            return None
        data = target.read_bytes()
    except OSError:
        logger.debug("Failed to read image %s", target, exc_info=True)
        return None
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{encoded}"
