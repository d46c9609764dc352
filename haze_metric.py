"""High-frequency pixel count used to compare images before and after defogging.

A clearer image should carry more energy at high frequencies, so the number of
coefficients of the real DFT output above a fixed cutoff serves as a rough
before/after indicator. It plays no part in the restoration itself.
"""

from __future__ import annotations

import cv2
import numpy as np

from dark_channel_prior import ConfigurationError

DEFAULT_THRESHOLD = 127  # on a 0-255 scale


def count_high_frequency_pixels(image: np.ndarray, threshold: float = DEFAULT_THRESHOLD) -> int:
    """Count DFT coefficients whose real part exceeds ``threshold``.

    ``threshold`` is on the 8-bit scale and is rescaled for deeper integer
    samples, so counts from 8- and 16-bit images are comparable.
    """
    if threshold < 0:
        raise ConfigurationError(f"threshold must be non-negative, got {threshold}")
    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
    if np.issubdtype(gray.dtype, np.integer):
        threshold = threshold * np.iinfo(gray.dtype).max / 255.0
    spectrum = cv2.dft(gray.astype(np.float32), flags=cv2.DFT_REAL_OUTPUT)
    _, binary = cv2.threshold(spectrum, threshold, 255, cv2.THRESH_BINARY)
    return int(cv2.countNonZero(binary))
