import io
import os
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

try:
    from .chroma_key_remover import PixelBuffer, EncodingFailed, ImageLoadFailed
except ImportError:
    from chroma_key_remover import PixelBuffer, EncodingFailed, ImageLoadFailed


SUPPORTED_INPUT_TYPES = [
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "image/bmp",
]

SUPPORTED_EXTENSIONS = [".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp"]

OUTPUT_SUFFIX = "_sin_fondo.png"
DEFAULT_BASENAME = "imagen"


def validate_image_file(filename: Optional[str], mime_type: Optional[str] = None) -> bool:
    """
    Check whether a file looks like a supported raster image.

    A matching MIME type is enough; otherwise the extension decides.
    """
    if not filename and not mime_type:
        return False

    if mime_type and mime_type in SUPPORTED_INPUT_TYPES:
        return True

    name = (filename or "").lower()
    return any(name.endswith(ext) for ext in SUPPORTED_EXTENSIONS)


def supported_input_formats() -> List[str]:
    return [ext[1:].upper() for ext in SUPPORTED_EXTENSIONS]


def output_filename(original_name: Optional[str] = None) -> str:
    """
    Name of the exported PNG, e.g. "logo.jpg" -> "logo_sin_fondo.png".
    """
    if original_name:
        base_name = os.path.basename(original_name)
        last_dot = base_name.rfind(".")
        if last_dot != -1:
            base_name = base_name[:last_dot]
    else:
        base_name = DEFAULT_BASENAME
    return f"{base_name}{OUTPUT_SUFFIX}"


def decode_image(source: Union[bytes, bytearray, str, Path, BinaryIO]) -> PixelBuffer:
    """
    Decode any Pillow-readable raster into an RGBA PixelBuffer.

    Args:
        source: Encoded bytes, a filesystem path, or a binary file object

    Returns:
        PixelBuffer owning a fresh copy of the decoded pixels

    Raises:
        ImageLoadFailed: the data is missing, corrupt, or not an image
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    try:
        with Image.open(source) as image:
            rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageLoadFailed(f"Could not load image, the file may be corrupt: {e}") from e

    return PixelBuffer.from_array(rgba)


def encode_png(buffer: PixelBuffer) -> bytes:
    """
    Encode a PixelBuffer as PNG, keeping the alpha channel byte-for-byte.

    Raises:
        EncodingFailed: the buffer is unusable or Pillow could not write it
    """
    if buffer is None or not buffer.is_intact():
        raise EncodingFailed("Cannot encode an invalid pixel buffer")

    try:
        image = Image.fromarray(buffer.rgba())
        output = io.BytesIO()
        image.save(output, format="PNG")
    except (OSError, ValueError, TypeError) as e:
        raise EncodingFailed(f"PNG encoding failed: {e}") from e

    return output.getvalue()


def save_png(buffer: PixelBuffer, path: Union[str, Path]) -> Path:
    """Encode and write buffer to path. Returns the written path."""
    data = encode_png(buffer)
    path = Path(path)
    path.write_bytes(data)
    return path
