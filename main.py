"""Defog a single colour photograph with the Dark Channel Prior.

Usage:
    python main.py path/to/foggy.jpg
    python main.py path/to/foggy.jpg --reference path/to/clear.jpg --show

Writes the transmission map to map.png and the defogged image to out.png
(see --map and --output), and prints the high-frequency pixel count of the
original and defogged images. If --reference is given, PSNR and SSIM of the
defogged image against it are printed as well.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np
from skimage.metrics import peak_signal_noise_ratio, structural_similarity

from dark_channel_prior import (
    DEFAULT_MAP_WIDTH,
    DEFAULT_TOP_FRACTION,
    DEFAULT_TRANSMISSION_FLOOR,
    ConfigurationError,
    DarkChannelDefogger,
    InputError,
    channel_max,
    ensure_color_image,
    transmission_to_image,
)
from haze_metric import DEFAULT_THRESHOLD, count_high_frequency_pixels

logger = logging.getLogger("defog")

WINDOW_NAME = "disp"

EXIT_INPUT_ERROR = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_WRITE_ERROR = 3


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(format='%(asctime)s - %(levelname)s - %(message)s')
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Single-image fog removal using the Dark Channel Prior."
    )
    parser.add_argument("input", type=Path, help="Path to the foggy colour image.")
    parser.add_argument(
        "--map",
        type=Path,
        default=Path("map.png"),
        help="Output path for the transmission map.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("out.png"),
        help="Output path for the defogged image.",
    )
    parser.add_argument(
        "--width", type=int, default=DEFAULT_MAP_WIDTH, help="Window width for the dark channel."
    )
    parser.add_argument(
        "--t0", type=float, default=DEFAULT_TRANSMISSION_FLOOR, help="Transmission floor."
    )
    parser.add_argument(
        "--top_percent",
        type=float,
        default=DEFAULT_TOP_FRACTION,
        help="Fraction of brightest dark-channel pixels for atmospheric light.",
    )
    parser.add_argument(
        "--exact_top_k",
        action="store_true",
        help="Select light candidates by exact top-k instead of first-fit replacement.",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=DEFAULT_THRESHOLD,
        help="Cutoff on the DFT real part for the high-frequency pixel count.",
    )
    parser.add_argument(
        "--reference",
        type=Path,
        default=None,
        help="Optional haze-free reference image for PSNR/SSIM.",
    )
    parser.add_argument("--show", action="store_true", help="Preview each stage in a window.")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def load_image(path: Path) -> np.ndarray:
    if not path.is_file():
        raise InputError(f"Image file not found: {path}")
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise InputError(f"Failed to read image: {path}")
    try:
        return ensure_color_image(image)
    except InputError as exc:
        raise InputError(f"{path}: {exc}") from exc


def save_image(path: Path, image: np.ndarray) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        written = cv2.imwrite(str(path), image)
    except cv2.error as exc:
        raise IOError(f"Failed to write image: {path}") from exc
    if not written:
        raise IOError(f"Failed to write image: {path}")


def show(image: np.ndarray) -> None:
    cv2.imshow(WINDOW_NAME, image)
    cv2.waitKey(0)


def _to_unit_float(image: np.ndarray) -> np.ndarray:
    return image.astype(np.float32) / float(channel_max(image.dtype))


def compute_metrics(restored: np.ndarray, reference: np.ndarray) -> Tuple[float, float]:
    """Return PSNR and SSIM of ``restored`` against ``reference``."""
    restored = _to_unit_float(restored)
    reference = _to_unit_float(reference)
    if restored.shape != reference.shape:
        reference = cv2.resize(
            reference, (restored.shape[1], restored.shape[0]), interpolation=cv2.INTER_CUBIC
        )
    psnr_val = peak_signal_noise_ratio(reference, restored, data_range=1.0)
    ssim_val = structural_similarity(reference, restored, channel_axis=2, data_range=1.0)
    return float(psnr_val), float(ssim_val)


def run(args: argparse.Namespace) -> None:
    image = load_image(args.input)
    height, width = image.shape[:2]
    logger.info("Loaded %s (%dx%d, %s)", args.input, width, height, image.dtype)

    defogger = DarkChannelDefogger(
        map_width=args.width,
        transmission_floor=args.t0,
        top_fraction=args.top_percent,
        exact_top_k=args.exact_top_k,
        progress=args.progress,
    )

    print(
        "Number of high-frequency pixels in the original image: "
        f"{count_high_frequency_pixels(image, args.threshold)}"
    )
    if args.show:
        show(image)

    restored, transmission, _ = defogger.defog(image)

    transmission_image = transmission_to_image(transmission, image.dtype)
    save_image(args.map, transmission_image)
    logger.info("Transmission map saved to %s", args.map)
    if args.show:
        show(transmission_image)

    print(
        "Number of high-frequency pixels in the defogged image: "
        f"{count_high_frequency_pixels(restored, args.threshold)}"
    )
    save_image(args.output, restored)
    logger.info("Defogged image saved to %s", args.output)
    if args.show:
        show(restored)
        cv2.destroyAllWindows()

    if args.reference is not None:
        reference = load_image(args.reference)
        psnr_val, ssim_val = compute_metrics(restored, reference)
        print(f"PSNR: {psnr_val:.3f}, SSIM: {ssim_val:.3f}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)
    try:
        run(args)
    except InputError as exc:
        logger.error("Invalid input: %s", exc)
        return EXIT_INPUT_ERROR
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIGURATION_ERROR
    except IOError as exc:
        logger.error("%s", exc)
        return EXIT_WRITE_ERROR
    return 0


if __name__ == "__main__":
    sys.exit(main())
