from pathlib import Path
from typing import Callable, Optional, Union

try:
    from .chroma_key_remover import (
        ChromaKeyProcessor, ImageLoadFailed, NoImageLoaded, PixelBuffer,
        DEFAULT_TOLERANCE, PROGRESS_COMPLETE, PROGRESS_PIXELS_DONE, PROGRESS_SETUP_DONE,
    )
    from .image_sink import (
        decode_image, encode_png, output_filename, supported_input_formats, validate_image_file,
    )
except ImportError:
    from chroma_key_remover import (
        ChromaKeyProcessor, ImageLoadFailed, NoImageLoaded, PixelBuffer,
        DEFAULT_TOLERANCE, PROGRESS_COMPLETE, PROGRESS_PIXELS_DONE, PROGRESS_SETUP_DONE,
    )
    from image_sink import (
        decode_image, encode_png, output_filename, supported_input_formats, validate_image_file,
    )


class BackgroundRemovalSession:
    """
    Holds one loaded image and its latest transparent PNG.

    Every process() call keys a fresh copy of the decoded original, so the
    image can be reprocessed with other settings. A session runs one
    process() at a time.
    """

    def __init__(self):
        self.original: Optional[PixelBuffer] = None
        self.image_info: Optional[dict] = None
        self.processed_png: Optional[bytes] = None
        self.background_color = None
        self.is_processing = False
        self.progress = 0

    def load_image(self, source, name: Optional[str] = None,
                   mime_type: Optional[str] = None) -> dict:
        """
        Validate and decode an image.

        Args:
            source: Encoded bytes, a path, or a binary file object
            name: Original filename, used for validation and output naming
            mime_type: Optional MIME type reported by the caller

        Returns:
            Image info dict (name, size, type, width, height)
        """
        if isinstance(source, (str, Path)) and name is None:
            name = Path(source).name

        if (name or mime_type) and not validate_image_file(name, mime_type):
            formats = ", ".join(supported_input_formats())
            raise ImageLoadFailed(f"Invalid file. Supported formats: {formats}")

        # Decode first so a missing path fails as ImageLoadFailed
        buffer = decode_image(source)

        if isinstance(source, (bytes, bytearray)):
            size = len(source)
        elif isinstance(source, (str, Path)):
            size = Path(source).stat().st_size
        else:
            size = None

        self.original = buffer
        self.processed_png = None
        self.background_color = None
        self.image_info = {
            "name": name,
            "size": size,
            "type": mime_type,
            "width": buffer.width,
            "height": buffer.height,
        }
        return self.image_info

    def _update_progress(self, percent: int,
                         on_progress: Optional[Callable[[int], None]]) -> None:
        self.progress = percent
        if on_progress is not None:
            on_progress(percent)

    def process(self, tolerance: int = DEFAULT_TOLERANCE, background_color: str = "auto",
                on_progress: Optional[Callable[[int], None]] = None) -> bytes:
        """
        Remove the background of the loaded image and encode it as PNG.

        Progress: 10 after the background color is known, chunk updates up
        to 90, then 100 once the PNG is encoded.
        """
        if self.original is None:
            raise NoImageLoaded("No image loaded")

        processor = ChromaKeyProcessor(tolerance=tolerance, background_color=background_color)
        working = self.original.copy()

        self.is_processing = True
        self.progress = 0

        def report(percent):
            self._update_progress(percent, on_progress)

        try:
            background = processor.resolve_background_color(working)
            report(PROGRESS_SETUP_DONE)

            processor.classify(working, background, report)
            report(PROGRESS_PIXELS_DONE)

            data = encode_png(working)
        except Exception:
            self.is_processing = False
            self.progress = 0
            raise

        self.processed_png = data
        self.background_color = background
        self.is_processing = False
        report(PROGRESS_COMPLETE)
        return data

    def original_png(self) -> Optional[bytes]:
        if self.original is None:
            return None
        return encode_png(self.original)

    def output_filename(self) -> str:
        name = self.image_info["name"] if self.image_info else None
        return output_filename(name)

    def save_result(self, directory: Union[str, Path]) -> Path:
        """Write the processed PNG into directory under output_filename()."""
        if self.processed_png is None:
            raise NoImageLoaded("No processed image to save")

        path = Path(directory) / self.output_filename()
        path.write_bytes(self.processed_png)
        return path

    def get_state(self) -> dict:
        return {
            "is_processing": self.is_processing,
            "progress": self.progress,
            "has_image": self.original is not None,
            "has_processed_image": self.processed_png is not None,
            "image_info": {
                "width": self.original.width,
                "height": self.original.height,
            } if self.original is not None else None,
        }

    def reset(self) -> None:
        self.original = None
        self.image_info = None
        self.processed_png = None
        self.background_color = None
        self.is_processing = False
        self.progress = 0
