"""Dark Channel Prior single-image defogging (windowed dark-channel pipeline).

The pipeline inverts the atmospheric scattering model

    I(x) = J(x) t(x) + A (1 - t(x))

in four steps:
1. Dark channel of a window: the colour channel holding the darkest value
2. Atmospheric light A from the top 0.1% of pixels in the dark channel
3. Transmission t(x) from the dark channel of a window around every pixel
4. Scene radiance recovery with a lower-bounded transmission

Images are NumPy arrays in the decoder's native channel order (BGR for
OpenCV) and are never reordered or resized here.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from tqdm import tqdm

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default tuning knobs
# ---------------------------------------------------------------------------
DEFAULT_MAP_WIDTH = 20  # side of the window used for the transmission map
DEFAULT_TRANSMISSION_FLOOR = 0.54  # tuned by maximising the haze metric
DEFAULT_TOP_FRACTION = 0.001  # share of pixels kept as light candidates

NUM_CHANNELS = 3
_SUPPORTED_DTYPES = (np.uint8, np.uint16)


class DefogError(Exception):
    """Base class for every error raised by the defogging pipeline."""


class InputError(DefogError, ValueError):
    """The input image is missing, undecodable or not a 3-channel image."""


class ConfigurationError(DefogError, ValueError):
    """A parameter or derived quantity makes the computation undefined."""


class BoundsError(DefogError, IndexError):
    """A region does not lie inside the image it is applied to."""


@dataclass(frozen=True)
class Region:
    """Half-open rectangle ``[x1, x2) x [y1, y2)`` over an image."""

    x1: int
    y1: int
    x2: int
    y2: int

    @classmethod
    def full(cls, image: np.ndarray) -> "Region":
        height, width = image.shape[:2]
        return cls(0, 0, width, height)

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def area(self) -> int:
        return self.width * self.height

    def check(self, image: np.ndarray) -> None:
        height, width = image.shape[:2]
        if not (0 <= self.x1 < self.x2 <= width and 0 <= self.y1 < self.y2 <= height):
            raise BoundsError(f"{self} lies outside a {width}x{height} image")

    def view(self, image: np.ndarray) -> np.ndarray:
        """Return the pixels of the region as a view into ``image``."""
        self.check(image)
        return image[self.y1:self.y2, self.x1:self.x2]


class ChannelValue(NamedTuple):
    """Light candidate: a pixel with its dark-channel value and intensity."""

    x: int
    y: int
    value: float
    intensity: float


class DefogResult(NamedTuple):
    restored: np.ndarray
    transmission: np.ndarray
    light_intensity: float


def window_around(x: int, y: int, map_width: int, width: int, height: int) -> Region:
    """Window of side ``map_width`` centred on (x, y), clamped to the image.

    ``build_transmission_map`` reproduces these windows with a padded row
    sweep instead of calling this per pixel.
    """
    half = map_width // 2
    return Region(
        max(x - half, 0),
        max(y - half, 0),
        min(x + half, width),
        min(y + half, height),
    )


def find_dark_channel(image: np.ndarray, region: Region) -> int:
    """Return the channel index holding the darkest value inside ``region``.

    Every pixel contributes its minimum channel (ties go to the lowest
    channel index); the pixel with the strictly smallest minimum wins, ties
    going to the first pixel in row-major order. The result is that pixel's
    minimum-channel index.
    """
    pixels = region.view(image).reshape(-1, NUM_CHANNELS)
    min_channels = np.argmin(pixels, axis=1)
    min_values = pixels[np.arange(len(pixels)), min_channels]
    return int(min_channels[np.argmin(min_values)])


def _first_fit_candidates(
    values: List[float], intensities: List[float], xs: List[int], ys: List[int], count: int
) -> List[ChannelValue]:
    """Bucket-replacement selection of the brightest dark-channel pixels.

    Each pixel overwrites the first slot whose (value, intensity) pair is
    lexicographically smaller than its own. This approximates a top-k
    selection and is kept as the default for output compatibility. The slots
    stay sorted in non-increasing order, so the first smaller slot is found by
    bisecting the negated keys.
    """
    slots = [ChannelValue(-1, -1, -1.0, -1.0)] * count
    keys = [(1.0, 1.0)] * count
    for x, y, value, intensity in zip(xs, ys, values, intensities):
        key = (-value, -intensity)
        slot = bisect_right(keys, key)
        if slot < count:
            keys[slot] = key
            slots[slot] = ChannelValue(x, y, value, intensity)
    return [candidate for candidate in slots if candidate.value >= 0]


def _exact_candidates(
    values: np.ndarray, intensities: np.ndarray, xs: np.ndarray, ys: np.ndarray, count: int
) -> List[ChannelValue]:
    """True top-k by (value, intensity)."""
    order = np.lexsort((intensities, values))[::-1][:count]
    return [
        ChannelValue(int(xs[i]), int(ys[i]), float(values[i]), float(intensities[i]))
        for i in order
    ]


def estimate_light_intensity(
    image: np.ndarray,
    gray: np.ndarray,
    region: Optional[Region] = None,
    top_fraction: float = DEFAULT_TOP_FRACTION,
    exact: bool = False,
) -> float:
    """Grayscale intensity of the atmospheric light inside ``region``.

    The candidates are the top ``top_fraction`` of pixels ranked by their
    value on the region's dark channel, with grayscale intensity as the
    tiebreaker. The brightest candidate's intensity is returned.
    """
    if region is None:
        region = Region.full(image)
    if gray.shape[:2] != image.shape[:2]:
        raise InputError(
            f"grayscale image {gray.shape[:2]} does not match colour image {image.shape[:2]}"
        )
    count = int(region.area * top_fraction)
    if count < 1:
        raise ConfigurationError(
            f"region of {region.area} pixels leaves no light candidates at top_fraction={top_fraction}"
        )

    channel = find_dark_channel(image, region)
    values = region.view(image)[..., channel].astype(np.float64).ravel()
    intensities = region.view(gray).astype(np.float64).ravel()
    ys, xs = np.mgrid[region.y1:region.y2, region.x1:region.x2]

    if exact:
        candidates = _exact_candidates(values, intensities, xs.ravel(), ys.ravel(), count)
    else:
        candidates = _first_fit_candidates(
            values.tolist(), intensities.tolist(), xs.ravel().tolist(), ys.ravel().tolist(), count
        )

    brightest = max(candidates, key=lambda candidate: candidate.intensity)
    logger.debug(
        "Light candidate at (%d, %d): value=%.1f intensity=%.1f (%d candidates, channel %d)",
        brightest.x, brightest.y, brightest.value, brightest.intensity, count, channel,
    )
    return brightest.intensity


def _check_light(light_intensity: float) -> None:
    if not light_intensity > 0:
        raise ConfigurationError(
            f"atmospheric light intensity must be positive, got {light_intensity}"
        )


def _window_dark_channels(
    min_values: np.ndarray, min_channels: np.ndarray, half: int, progress: bool
) -> np.ndarray:
    """Dark-channel index of the clamped window around every pixel.

    Cells outside the image are padded with +inf so they never win; the
    row-major order of real cells inside a padded window matches the clamped
    window, so the first-minimum tie-break is unchanged.
    """
    height, width = min_values.shape
    side = 2 * half
    padded = np.pad(
        min_values, ((half, half - 1), (half, half - 1)), constant_values=np.inf
    )
    offsets_y, offsets_x = np.divmod(np.arange(side * side), side)
    columns = np.arange(width)
    channels = np.empty((height, width), dtype=np.intp)

    for y in tqdm(range(height), desc="Transmission map", unit="row", disable=not progress):
        windows = sliding_window_view(padded[y:y + side], (side, side))[0]
        best = np.argmin(windows.reshape(width, side * side), axis=1)
        src_y = y - half + offsets_y[best]
        src_x = columns - half + offsets_x[best]
        channels[y] = min_channels[src_y, src_x]
    return channels


def build_transmission_map(
    image: np.ndarray,
    light_intensity: float,
    map_width: int = DEFAULT_MAP_WIDTH,
    progress: bool = False,
) -> np.ndarray:
    """t(x) = 1 - I_c(x) / A, with c the dark channel of ``window_around(x)``.

    The result is float64 and is not clamped.
    """
    _check_light(light_intensity)
    if map_width < 2:
        raise ConfigurationError(f"map width must be at least 2, got {map_width}")

    pixels = image.astype(np.float64)
    min_channels = np.argmin(pixels, axis=2)
    min_values = np.take_along_axis(pixels, min_channels[..., None], axis=2)[..., 0]
    channels = _window_dark_channels(min_values, min_channels, map_width // 2, progress)

    dark = np.take_along_axis(pixels, channels[..., None], axis=2)[..., 0]
    return 1.0 - dark / light_intensity


def recover_radiance(
    image: np.ndarray,
    transmission: np.ndarray,
    light_intensity: float,
    transmission_floor: float = DEFAULT_TRANSMISSION_FLOOR,
) -> np.ndarray:
    """Recover J(x) = (I(x) - A) / max(t(x), t0) + A, unclamped float64."""
    _check_light(light_intensity)
    if not transmission_floor > 0:
        raise ConfigurationError(
            f"transmission floor must be positive, got {transmission_floor}"
        )
    t = np.maximum(transmission, transmission_floor)[..., None]
    return (image.astype(np.float64) - light_intensity) / t + light_intensity


def channel_max(dtype: np.dtype) -> int:
    return int(np.iinfo(dtype).max)


def to_image_range(values: np.ndarray, dtype: np.dtype = np.uint8) -> np.ndarray:
    """Round half to even and saturate float values into ``dtype``."""
    return np.clip(np.rint(values), 0, channel_max(dtype)).astype(dtype)


def transmission_to_image(transmission: np.ndarray, dtype: np.dtype = np.uint8) -> np.ndarray:
    """Scale a transmission map to the channel range for display."""
    return to_image_range(transmission * channel_max(dtype), dtype)


def ensure_color_image(image: Optional[np.ndarray]) -> np.ndarray:
    """Reject anything that is not a 3-channel 8- or 16-bit image."""
    if image is None:
        raise InputError("no image data")
    if image.ndim != 3 or image.shape[2] != NUM_CHANNELS:
        raise InputError(
            f"expected a {NUM_CHANNELS}-channel colour image, got shape {image.shape}"
        )
    if image.dtype not in _SUPPORTED_DTYPES:
        raise InputError(f"unsupported sample type {image.dtype}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InputError("image is empty")
    return image


def to_gray(image: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


@dataclass
class DarkChannelDefogger:
    map_width: int = DEFAULT_MAP_WIDTH
    transmission_floor: float = DEFAULT_TRANSMISSION_FLOOR
    top_fraction: float = DEFAULT_TOP_FRACTION
    exact_top_k: bool = False
    progress: bool = False

    def __post_init__(self) -> None:
        if self.map_width < 2:
            raise ConfigurationError(f"map width must be at least 2, got {self.map_width}")
        if not 0 < self.top_fraction <= 1:
            raise ConfigurationError(
                f"top fraction must lie in (0, 1], got {self.top_fraction}"
            )
        if not self.transmission_floor > 0:
            raise ConfigurationError(
                f"transmission floor must be positive, got {self.transmission_floor}"
            )

    def estimate_light(self, image: np.ndarray, gray: np.ndarray) -> float:
        return estimate_light_intensity(
            image, gray, Region.full(image), self.top_fraction, self.exact_top_k
        )

    def transmission(self, image: np.ndarray, light_intensity: float) -> np.ndarray:
        return build_transmission_map(image, light_intensity, self.map_width, self.progress)

    def recover(
        self, image: np.ndarray, transmission: np.ndarray, light_intensity: float
    ) -> np.ndarray:
        return recover_radiance(image, transmission, light_intensity, self.transmission_floor)

    def defog(self, image: np.ndarray, gray: Optional[np.ndarray] = None) -> DefogResult:
        """Full pipeline returning (restored image, transmission map, light)."""
        image = ensure_color_image(image)
        if gray is None:
            gray = to_gray(image)

        light_intensity = self.estimate_light(image, gray)
        logger.info("Atmospheric light intensity: %.2f", light_intensity)

        transmission = self.transmission(image, light_intensity)
        logger.debug(
            "Transmission range: [%.3f, %.3f]", float(transmission.min()), float(transmission.max())
        )
        recovered = self.recover(image, transmission, light_intensity)
        return DefogResult(to_image_range(recovered, image.dtype), transmission, light_intensity)
