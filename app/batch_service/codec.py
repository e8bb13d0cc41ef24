"""
    Maps image IDs to their stored filenames and back.

    A filename is the ID zero-padded to eight digits plus an extension picked
    from the MIME type, e.g. (5, "image/png") -> "00000005.png".
"""
import re
from typing import Optional

from app.exceptions import InvalidArgumentException

ID_DIGITS = 8
MAX_IMAGE_ID = 10 ** ID_DIGITS - 1
DEFAULT_EXTENSION = "webp"

FILENAME_PATTERN = re.compile(r"^(\d{8})\.(webp|jpg|jpeg|png|gif)$", re.IGNORECASE)

def extension_for_mime(mime: str) -> str:
    """Picks the file extension for a MIME type, falling back to webp."""
    mime = (mime or "").lower()
    if "jpeg" in mime or "jpg" in mime:
        return "jpg"
    if "png" in mime:
        return "png"
    if "gif" in mime:
        return "gif"
    return DEFAULT_EXTENSION

def encode_filename(image_id: int, mime: str) -> str:
    if image_id < 0 or image_id > MAX_IMAGE_ID:
        raise InvalidArgumentException(
            f"Image id {image_id} does not fit in {ID_DIGITS} digits"
        )
    return f"{image_id:0{ID_DIGITS}d}.{extension_for_mime(mime)}"

def is_valid_filename(filename: str) -> bool:
    return FILENAME_PATTERN.match(filename or "") is not None

def parse_filename(filename: str) -> Optional[int]:
    """Returns the image id encoded in a filename, or None if it is not one of ours."""
    match = FILENAME_PATTERN.match(filename or "")
    if not match:
        return None
    return int(match.group(1))
