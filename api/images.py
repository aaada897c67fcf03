import base64
import binascii
import io
import uuid
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from common import config

_EXTENSIONS = {"JPEG": ".jpg", "PNG": ".png", "WEBP": ".webp", "GIF": ".gif", "BMP": ".bmp"}


class InvalidImage(ValueError):
    """Raised when a payload is not base64 or not an image Pillow can read."""


def decode_base64_image(data: str) -> Tuple[bytes, str]:
    """Decode a base64 image (data-URL prefix allowed). Returns (bytes, extension)."""
    # Strip the content type prefix if it exists (e.g. "data:image/jpeg;base64,")
    payload = data.split(";base64,")[-1]
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImage(f"Invalid base64 data: {e}") from e

    try:
        with Image.open(io.BytesIO(raw)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImage(f"Not a readable image: {e}") from e
    return raw, _EXTENSIONS.get(fmt, ".jpg")


def save_base64_image(data: str, order_id: str, photos_dir: Optional[Path] = None) -> Path:
    """Save to temp/photos/<order_id>_<uuid><ext> and return the path."""
    raw, ext = decode_base64_image(data)
    photos_dir = photos_dir or config.LOCAL_PHOTOS_DIR
    photos_dir.mkdir(parents=True, exist_ok=True)
    safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in order_id)
    dest = photos_dir / f"{safe_id}_{uuid.uuid4()}{ext}"
    dest.write_bytes(raw)
    return dest
