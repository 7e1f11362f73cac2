import math
import re
import numpy as np
import cv2
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple


# Processing constants
CHUNK_SIZE = 50000           # Pixels classified between two progress reports
DEFAULT_TOLERANCE = 30       # Default color distance threshold (0-255)
MAX_SAMPLE_SIZE = 50         # Upper bound on samples taken along each edge
QUANT_STEP = 10              # Histogram bucket width per channel
QUANT_CEILING = 250          # Highest bucket reachable by 8-bit input

# Progress bands (percent)
PROGRESS_SETUP_DONE = 10     # Background color resolved
PROGRESS_PIXEL_SPAN = 80     # Width of the pixel loop band
PROGRESS_PIXELS_DONE = 90    # Pixel loop finished, finalization remains
PROGRESS_COMPLETE = 100

_RGB_PATTERN = re.compile(r"rgb\((\d+),\s*(\d+),\s*(\d+)\)")
_HEX_DIGITS = set("0123456789abcdefABCDEF")


class ChromaKeyError(Exception):
    """Base class for chroma key background removal failures."""


class NoImageLoaded(ChromaKeyError):
    """Processing was requested before an image was supplied."""


class InvalidColorSpec(ChromaKeyError, ValueError):
    """An explicit background color string could not be parsed."""


class ClassificationFailed(ChromaKeyError):
    """
    The pixel buffer became inaccessible while classifying.

    Pixels processed before the failure keep their new alpha values, so the
    buffer must be discarded rather than reused.
    """


class EncodingFailed(ChromaKeyError):
    """The image sink could not produce output bytes."""


class ImageLoadFailed(ChromaKeyError):
    """Input file is unsupported or could not be decoded."""


@dataclass(frozen=True)
class Color:
    """An RGB color with one byte per channel."""
    r: int
    g: int
    b: int

    def __post_init__(self):
        for name, value in (("r", self.r), ("g", self.g), ("b", self.b)):
            if not 0 <= value <= 255:
                raise ValueError(f"Color channel {name} out of range (0-255): {value}")

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)

    def to_hex(self) -> str:
        return f"#{self.r:02x}{self.g:02x}{self.b:02x}"


WHITE = Color(255, 255, 255)


@dataclass
class PixelBuffer:
    """
    Flat RGBA pixel storage, one byte per channel, row-major.

    The classifier rewrites the alpha bytes in place and never reallocates,
    so callers holding the same array (or bytearray) see the result.
    """
    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Invalid buffer dimensions: {self.width}x{self.height}")

        if not isinstance(self.pixels, np.ndarray):
            # Wrap bytes-like storage without copying
            self.pixels = np.frombuffer(self.pixels, dtype=np.uint8)

        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {self.pixels.dtype}")
        if not self.pixels.flags.writeable:
            raise ValueError("Pixel data must be writable")
        if not self.pixels.flags.c_contiguous:
            raise ValueError("Pixel data must be C-contiguous")

        expected = self.width * self.height * 4
        if self.pixels.size != expected:
            raise ValueError(
                f"Pixel data length {self.pixels.size} does not match "
                f"{self.width}x{self.height} RGBA ({expected})"
            )
        self.pixels = self.pixels.reshape(-1)

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @classmethod
    def from_array(cls, rgba: np.ndarray) -> "PixelBuffer":
        """
        Build a buffer sharing memory with an H x W x 4 uint8 array.

        The array must be C-contiguous; pass np.ascontiguousarray(view) to
        work on a copy of a flipped or sliced view.
        """
        if rgba.ndim != 3 or rgba.shape[2] != 4:
            raise ValueError(f"Expected H x W x 4 array, got shape {rgba.shape}")
        if not rgba.flags.c_contiguous:
            raise ValueError("Pixel array must be C-contiguous to be modified in place")
        height, width = rgba.shape[:2]
        return cls(width=width, height=height, pixels=rgba.reshape(-1))

    def rgba(self) -> np.ndarray:
        """H x W x 4 view of the pixel data."""
        return self.pixels.reshape(self.height, self.width, 4)

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.width, self.height, self.pixels.copy())

    def is_intact(self) -> bool:
        """Check that the pixel storage still matches the declared geometry."""
        pixels = self.pixels
        return (
            isinstance(pixels, np.ndarray)
            and pixels.dtype == np.uint8
            and pixels.size == self.width * self.height * 4
            and pixels.flags.writeable
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def quantize_channel(value: int) -> int:
    """Round a channel value to its histogram bucket (multiples of 10, max 250)."""
    return min(QUANT_CEILING, _round_half_up(value / QUANT_STEP) * QUANT_STEP)


def quantize_color(r: int, g: int, b: int) -> Tuple[int, int, int]:
    return (quantize_channel(r), quantize_channel(g), quantize_channel(b))


def _quantize_array(values: np.ndarray) -> np.ndarray:
    """Vectorised quantize_channel for an integer array."""
    buckets = np.floor(values.astype(np.float64) / QUANT_STEP + 0.5) * QUANT_STEP
    return np.minimum(buckets, QUANT_CEILING).astype(np.int64)


class BackgroundEstimator:
    """
    Infers the background color from the most frequent quantized color along
    the image border.
    """

    def __init__(self, max_sample_size: int = MAX_SAMPLE_SIZE):
        self.max_sample_size = max_sample_size

    def sample_size(self, width: int, height: int) -> int:
        return min(self.max_sample_size, width // 4, height // 4)

    def edge_coordinates(self, width: int, height: int) -> List[Tuple[int, int]]:
        """
        List the (x, y) border samples in walk order: top, bottom, left, right.

        Returns an empty list when the image is too small to sample.
        """
        sample_size = self.sample_size(width, height)
        if sample_size <= 0:
            return []

        step_x = max(1, width // sample_size)
        step_y = max(1, height // sample_size)
        coords = []

        # Top edge
        for x in range(0, width, step_x):
            coords.append((x, 0))
            coords.append((x, 1))

        # Bottom edge
        for x in range(0, width, step_x):
            coords.append((x, height - 1))
            coords.append((x, height - 2))

        # Left edge
        for y in range(0, height, step_y):
            coords.append((0, y))
            coords.append((1, y))

        # Right edge
        for y in range(0, height, step_y):
            coords.append((width - 1, y))
            coords.append((width - 2, y))

        return coords

    def build_histogram(self, buffer: PixelBuffer) -> Dict[Tuple[int, int, int], int]:
        """Count quantized border colors, keeping first-seen order."""
        coords = self.edge_coordinates(buffer.width, buffer.height)
        histogram: Dict[Tuple[int, int, int], int] = {}
        if not coords:
            return histogram

        xs = np.array([c[0] for c in coords], dtype=np.intp)
        ys = np.array([c[1] for c in coords], dtype=np.intp)
        samples = buffer.rgba()[ys, xs, :3]
        quantized = _quantize_array(samples)

        for r, g, b in quantized.tolist():
            key = (r, g, b)
            histogram[key] = histogram.get(key, 0) + 1
        return histogram

    def estimate(self, buffer: PixelBuffer) -> Color:
        """
        Return the most common quantized border color.

        Ties go to the color seen first along the walk. Degenerate images
        (fewer than 4 pixels on a side) fall back to white.
        """
        try:
            histogram = self.build_histogram(buffer)
        except (ValueError, IndexError):
            return WHITE

        best_key = WHITE.as_tuple()
        best_count = 0
        for key, count in histogram.items():
            if count > best_count:
                best_count = count
                best_key = key

        return Color(*best_key)


def detect_background_color(buffer: PixelBuffer) -> Color:
    return BackgroundEstimator().estimate(buffer)


def parse_color_spec(spec: str, strict: bool = False) -> Color:
    """
    Parse an explicit background color.

    Args:
        spec: "#RRGGBB" (extra trailing characters ignored) or "rgb(r, g, b)"
        strict: Raise InvalidColorSpec for unrecognized formats instead of
                falling back to white

    Returns:
        Parsed Color

    Raises:
        InvalidColorSpec: malformed hex digits, short hex, or rgb() components
                          above 255
    """
    spec = spec.strip()

    if spec.startswith("#"):
        digits = spec[1:7]
        if len(digits) < 6 or not set(digits) <= _HEX_DIGITS:
            raise InvalidColorSpec(f"Invalid hex color: {spec!r}")
        return Color(int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16))

    match = _RGB_PATTERN.search(spec)
    if match:
        channels = [int(group, 10) for group in match.groups()]
        if any(channel > 255 for channel in channels):
            raise InvalidColorSpec(f"rgb() component out of range (0-255): {spec!r}")
        return Color(*channels)

    if strict:
        raise InvalidColorSpec(f"Unrecognized color format: {spec!r}")
    return WHITE


@dataclass(frozen=True)
class ToleranceConfig:
    """Per-invocation options. background is None for automatic detection."""
    tolerance: int = DEFAULT_TOLERANCE
    background: Optional[Color] = None

    def __post_init__(self):
        if not 0 <= self.tolerance <= 255:
            raise ValueError(f"Tolerance must be between 0 and 255, got {self.tolerance}")

    @property
    def is_auto(self) -> bool:
        return self.background is None

    @classmethod
    def from_options(cls, tolerance: int = DEFAULT_TOLERANCE,
                     background_color: str = "auto", strict: bool = False) -> "ToleranceConfig":
        if background_color is None or background_color.strip().lower() == "auto":
            return cls(tolerance=int(tolerance))
        return cls(tolerance=int(tolerance), background=parse_color_spec(background_color, strict=strict))


class PixelClassifier:
    """
    Rewrites alpha from the Euclidean RGB distance to the background color.

    distance <= tolerance            -> alpha 0
    distance <= 2 * tolerance        -> linear ramp 0..255
    otherwise                        -> alpha unchanged

    With tolerance 0 only exact matches are cleared; the ramp never applies.
    """

    def __init__(self, background: Color, tolerance: int = DEFAULT_TOLERANCE):
        self.background = background
        self.tolerance = tolerance

    def distance(self, r: int, g: int, b: int) -> float:
        bg = self.background
        return math.sqrt((r - bg.r) ** 2 + (g - bg.g) ** 2 + (b - bg.b) ** 2)

    def alpha_for(self, r: int, g: int, b: int, alpha: int) -> int:
        """New alpha for a single pixel."""
        tolerance = self.tolerance
        distance = self.distance(r, g, b)

        if distance <= tolerance:
            return 0
        if tolerance > 0 and distance <= tolerance * 2:
            return max(0, min(255, math.floor((distance - tolerance) / tolerance * 255)))
        return alpha

    def apply(self, pixels: np.ndarray) -> None:
        """
        Classify an N x 4 RGBA span in place. Only column 3 is written.
        """
        tolerance = self.tolerance
        diff = pixels[:, :3].astype(np.int64) - np.array(self.background.as_tuple(), dtype=np.int64)
        distance = np.sqrt((diff * diff).sum(axis=1).astype(np.float64))

        transparent = distance <= tolerance
        if tolerance > 0:
            ramp = ~transparent & (distance <= tolerance * 2)
            if ramp.any():
                ramp_alpha = np.floor((distance[ramp] - tolerance) / tolerance * 255)
                pixels[ramp, 3] = np.clip(ramp_alpha, 0, 255).astype(np.uint8)
        pixels[transparent, 3] = 0


@dataclass
class ProcessingState:
    processed_pixel_count: int = 0
    total_pixel_count: int = 0

    def reset(self, total: int = 0) -> None:
        self.processed_pixel_count = 0
        self.total_pixel_count = total

    @property
    def fraction(self) -> float:
        if self.total_pixel_count == 0:
            return 1.0
        return self.processed_pixel_count / self.total_pixel_count


class ProgressiveScheduler:
    """
    Drives a PixelClassifier over a buffer in raster order, stopping after
    every chunk boundary pixel (index % chunk_size == 0) to report progress.

    iter_chunks() hands control back to the caller at each boundary; run()
    drains it synchronously.
    """

    def __init__(self, classifier: PixelClassifier, chunk_size: int = CHUNK_SIZE,
                 cancel_check: Optional[Callable[[], None]] = None):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.classifier = classifier
        self.chunk_size = chunk_size
        self.cancel_check = cancel_check
        self.state = ProcessingState()

    def _progress_at(self, index: int, total: int) -> int:
        return _round_half_up(PROGRESS_SETUP_DONE + index / total * PROGRESS_PIXEL_SPAN)

    def _classify_span(self, buffer: PixelBuffer, start: int, end: int) -> None:
        if start >= end:
            return
        if not buffer.is_intact():
            raise ClassificationFailed(
                f"Pixel buffer became invalid after {self.state.processed_pixel_count} "
                f"of {self.state.total_pixel_count} pixels"
            )
        try:
            span = buffer.pixels.reshape(-1, 4)[start:end]
            self.classifier.apply(span)
        except (ValueError, IndexError, TypeError, AttributeError) as e:
            raise ClassificationFailed(f"Pixel buffer access failed at pixel {start}: {e}") from e
        self.state.processed_pixel_count = end

    def iter_chunks(self, buffer: PixelBuffer) -> Iterator[int]:
        """Classify chunk by chunk, yielding the progress percent at each boundary."""
        total = buffer.pixel_count
        self.state.reset(total)
        start = 0

        for boundary in range(0, total, self.chunk_size):
            end = boundary + 1
            self._classify_span(buffer, start, end)
            start = end
            if self.cancel_check is not None:
                self.cancel_check()
            yield self._progress_at(boundary, total)

        self._classify_span(buffer, start, total)

    def run(self, buffer: PixelBuffer,
            on_progress: Optional[Callable[[int], None]] = None) -> ProcessingState:
        for percent in self.iter_chunks(buffer):
            if on_progress is not None:
                on_progress(percent)
        return self.state


class ChromaKeyProcessor:
    """
    Chroma key background removal: resolve the background color, then turn
    matching pixels transparent with a soft ramp around the cut.
    """

    def __init__(self, tolerance: int = DEFAULT_TOLERANCE, background_color: str = "auto",
                 chunk_size: int = CHUNK_SIZE, strict_color: bool = False):
        """
        Initialize the processor with configuration parameters.

        Args:
            tolerance: Color distance threshold (0-255)
            background_color: "auto" to detect from the image border, or an
                              explicit "#RRGGBB" / "rgb(r, g, b)" color
            chunk_size: Pixels classified between progress reports
            strict_color: Reject unrecognized color strings instead of using white
        """
        self.config = ToleranceConfig.from_options(tolerance, background_color, strict=strict_color)
        self.chunk_size = chunk_size
        self.estimator = BackgroundEstimator()

    @property
    def tolerance(self) -> int:
        return self.config.tolerance

    def resolve_background_color(self, buffer: PixelBuffer) -> Color:
        if self.config.is_auto:
            return self.estimator.estimate(buffer)
        return self.config.background

    def classify(self, buffer: PixelBuffer, background: Color,
                 on_progress: Optional[Callable[[int], None]] = None,
                 cancel_check: Optional[Callable[[], None]] = None) -> ProcessingState:
        classifier = PixelClassifier(background, self.config.tolerance)
        scheduler = ProgressiveScheduler(classifier, self.chunk_size, cancel_check)
        return scheduler.run(buffer, on_progress)

    def remove_background(self, buffer: Optional[PixelBuffer],
                          on_progress: Optional[Callable[[int], None]] = None,
                          cancel_check: Optional[Callable[[], None]] = None) -> Color:
        """
        Make the background of buffer transparent, in place.

        Args:
            buffer: Decoded RGBA pixels
            on_progress: Called with percentages 10..100, never decreasing
            cancel_check: Called at every chunk boundary; raise to abort

        Returns:
            The reference background color that was keyed out

        Raises:
            NoImageLoaded: buffer is None
            ClassificationFailed: buffer became invalid during the pixel loop
        """
        if buffer is None:
            raise NoImageLoaded("No image loaded")

        def report(percent):
            if on_progress is not None:
                on_progress(percent)

        background = self.resolve_background_color(buffer)
        report(PROGRESS_SETUP_DONE)

        self.classify(buffer, background, on_progress, cancel_check)
        report(PROGRESS_PIXELS_DONE)
        report(PROGRESS_COMPLETE)
        return background

    def remove_background_array(self, image: np.ndarray,
                                on_progress: Optional[Callable[[int], None]] = None,
                                cancel_check: Optional[Callable[[], None]] = None) -> Tuple[np.ndarray, Color]:
        """
        Array variant for callers holding numpy images.

        Args:
            image: H x W grayscale, H x W x 3 RGB or H x W x 4 RGBA, uint8

        Returns:
            (H x W x 4 RGBA copy with the new alpha, background color used)
        """
        if image is None:
            raise NoImageLoaded("No image loaded")

        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)
        image = np.ascontiguousarray(image)

        if len(image.shape) == 2:
            rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        elif image.shape[2] == 3:
            rgba = cv2.cvtColor(image, cv2.COLOR_RGB2RGBA)
        elif image.shape[2] == 4:
            rgba = image.copy()
        else:
            raise ValueError(f"Expected 1, 3 or 4 channels, got shape {image.shape}")

        buffer = PixelBuffer.from_array(rgba)
        background = self.remove_background(buffer, on_progress, cancel_check)
        return buffer.rgba(), background
