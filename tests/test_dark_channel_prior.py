import numpy as np
import pytest

from dark_channel_prior import (
    BoundsError,
    ConfigurationError,
    DarkChannelDefogger,
    InputError,
    Region,
    build_transmission_map,
    estimate_light_intensity,
    find_dark_channel,
    recover_radiance,
    to_gray,
    to_image_range,
    transmission_to_image,
    window_around,
)


def uniform(height, width, pixel):
    return np.tile(np.array(pixel, dtype=np.uint8), (height, width, 1))


def reference_transmission(image, light, map_width):
    height, width = image.shape[:2]
    expected = np.empty((height, width))
    for y in range(height):
        for x in range(width):
            channel = find_dark_channel(image, window_around(x, y, map_width, width, height))
            expected[y, x] = 1.0 - float(image[y, x, channel]) / light
    return expected


# --- dark channel ----------------------------------------------------------

def test_dark_channel_picks_channel_of_darkest_pixel():
    image = uniform(4, 4, (100, 100, 100))
    image[1, 2] = (50, 5, 80)
    assert find_dark_channel(image, Region.full(image)) == 1


def test_dark_channel_value_is_minimal_over_region():
    rng = np.random.default_rng(0)
    image = rng.integers(0, 256, size=(30, 30, 3), dtype=np.uint8)
    for region in (Region(0, 0, 30, 30), Region(3, 4, 17, 9), Region(20, 20, 21, 30)):
        channel = find_dark_channel(image, region)
        pixels = region.view(image)
        assert pixels[..., channel].min() == pixels.min(axis=2).min()


def test_dark_channel_ties_resolve_in_scan_order():
    assert find_dark_channel(uniform(5, 5, (7, 7, 7)), Region(0, 0, 5, 5)) == 0
    assert find_dark_channel(uniform(2, 2, (5, 5, 9)), Region(0, 0, 2, 2)) == 0
    assert find_dark_channel(uniform(2, 2, (9, 5, 5)), Region(0, 0, 2, 2)) == 1

    image = uniform(3, 3, (200, 200, 200))
    image[0, 2] = (200, 10, 200)
    image[1, 0] = (10, 200, 200)
    assert find_dark_channel(image, Region.full(image)) == 1


def test_dark_channel_single_pixel_region():
    image = uniform(3, 3, (0, 0, 0))
    image[1, 1] = (30, 20, 10)
    assert find_dark_channel(image, Region(1, 1, 2, 2)) == 2


def test_region_outside_image_raises():
    image = uniform(4, 4, (1, 2, 3))
    with pytest.raises(BoundsError):
        find_dark_channel(image, Region(0, 0, 5, 3))
    with pytest.raises(BoundsError):
        find_dark_channel(image, Region(1, 1, 1, 2))


def test_window_is_clamped_at_borders():
    assert window_around(0, 0, 20, 100, 100) == Region(0, 0, 10, 10)
    assert window_around(0, 0, 20, 100, 100).area == 100
    assert window_around(50, 50, 20, 100, 100) == Region(40, 40, 60, 60)
    assert window_around(99, 99, 20, 100, 100) == Region(89, 89, 100, 100)


# --- atmospheric light -----------------------------------------------------

def test_light_is_intensity_of_unique_brightest_pixel():
    image = uniform(40, 40, (10, 20, 30))
    image[13, 27] = (200, 220, 240)
    gray = to_gray(image)
    assert estimate_light_intensity(image, gray) == float(gray[13, 27])


def test_light_with_several_candidates():
    image = uniform(100, 100, (10, 20, 30))
    image[5, 5] = (200, 200, 200)
    image[30, 70] = (250, 250, 250)
    image[90, 10] = (200, 200, 200)
    gray = to_gray(image)
    assert estimate_light_intensity(image, gray, Region.full(image)) == 250.0


def test_first_fit_differs_from_exact_top_k():
    image = uniform(40, 50, (0, 255, 255))
    image[0, 5] = (100, 255, 255)
    image[0, 6] = (50, 0, 0)
    image[0, 7] = (200, 0, 0)
    gray = to_gray(image)
    assert gray[0, 5] > gray[0, 7] > gray[0, 6]

    assert estimate_light_intensity(image, gray) == float(gray[0, 7])
    assert estimate_light_intensity(image, gray, exact=True) == float(gray[0, 5])


def test_light_needs_at_least_one_candidate():
    image = uniform(20, 20, (10, 20, 30))
    with pytest.raises(ConfigurationError):
        estimate_light_intensity(image, to_gray(image))


def test_light_rejects_mismatched_grayscale():
    image = uniform(40, 40, (10, 20, 30))
    with pytest.raises(InputError):
        estimate_light_intensity(image, np.zeros((40, 39), dtype=np.uint8))


# --- transmission map ------------------------------------------------------

def test_transmission_map_is_deterministic():
    rng = np.random.default_rng(1)
    image = rng.integers(0, 256, size=(37, 41, 3), dtype=np.uint8)
    first = build_transmission_map(image, 230.0)
    second = build_transmission_map(image, 230.0)
    assert np.array_equal(first, second)


@pytest.mark.parametrize("map_width", [2, 6, 20, 21])
def test_transmission_map_matches_window_scan(map_width):
    rng = np.random.default_rng(2)
    image = rng.integers(0, 4, size=(25, 30, 3), dtype=np.uint8)
    result = build_transmission_map(image, 200.0, map_width)
    np.testing.assert_array_equal(result, reference_transmission(image, 200.0, map_width))


def test_transmission_map_bright_patch():
    image = uniform(100, 100, (100, 100, 100))
    image[50:53, 50:53] = 255
    transmission = build_transmission_map(image, 255.0)

    patch = np.zeros((100, 100), dtype=bool)
    patch[50:53, 50:53] = True
    assert np.allclose(transmission[patch], 0.0)
    assert np.allclose(transmission[~patch], 1.0 - 100.0 / 255.0)


def test_transmission_map_rejects_bad_parameters():
    image = uniform(10, 10, (1, 2, 3))
    with pytest.raises(ConfigurationError):
        build_transmission_map(image, 0.0)
    with pytest.raises(ConfigurationError):
        build_transmission_map(image, -4.0)
    with pytest.raises(ConfigurationError):
        build_transmission_map(image, 100.0, map_width=1)


# --- recovery --------------------------------------------------------------

def test_recovery_is_identity_without_haze():
    rng = np.random.default_rng(3)
    image = rng.integers(0, 256, size=(12, 9, 3), dtype=np.uint8)
    recovered = recover_radiance(image, np.ones((12, 9)), 255.0)
    np.testing.assert_allclose(recovered, image.astype(np.float64))


def test_recovery_of_dark_image_from_its_own_map():
    image = np.zeros((30, 30, 3), dtype=np.uint8)
    transmission = build_transmission_map(image, 255.0)
    assert np.all(transmission == 1.0)
    np.testing.assert_allclose(recover_radiance(image, transmission, 255.0), 0.0)


def test_recovery_uses_transmission_floor():
    image = uniform(1, 1, (100, 100, 100))
    recovered = recover_radiance(image, np.zeros((1, 1)), 255.0, transmission_floor=0.54)
    assert recovered[0, 0, 0] == pytest.approx((100 - 255) / 0.54 + 255)
    assert recover_radiance(image, np.full((1, 1), 0.8), 255.0)[0, 0, 0] == pytest.approx(
        (100 - 255) / 0.8 + 255
    )


def test_recovery_rejects_bad_parameters():
    image = uniform(2, 2, (1, 2, 3))
    with pytest.raises(ConfigurationError):
        recover_radiance(image, np.ones((2, 2)), 0.0)
    with pytest.raises(ConfigurationError):
        recover_radiance(image, np.ones((2, 2)), 10.0, transmission_floor=0.0)


def test_values_saturate_to_channel_range():
    values = np.array([-32.0, 127.5, 300.0])
    np.testing.assert_array_equal(to_image_range(values), [0, 128, 255])
    np.testing.assert_array_equal(to_image_range(np.array([70000.0]), np.uint16), [65535])
    np.testing.assert_array_equal(transmission_to_image(np.array([1.0, 0.5, -0.2])), [255, 128, 0])


# --- pipeline --------------------------------------------------------------

def test_defog_returns_image_map_and_light():
    rng = np.random.default_rng(4)
    image = rng.integers(120, 220, size=(48, 64, 3), dtype=np.uint8)
    defogger = DarkChannelDefogger()
    restored, transmission, light = defogger.defog(image)

    assert restored.shape == image.shape
    assert restored.dtype == np.uint8
    assert transmission.shape == (48, 64)
    assert light == estimate_light_intensity(image, to_gray(image))
    np.testing.assert_array_equal(
        restored,
        to_image_range(recover_radiance(image, transmission, light)),
    )


def test_defog_keeps_16_bit_depth():
    rng = np.random.default_rng(5)
    image = rng.integers(20000, 60000, size=(40, 40, 3), dtype=np.uint16)
    restored, _, _ = DarkChannelDefogger().defog(image)
    assert restored.dtype == np.uint16


@pytest.mark.parametrize(
    "image",
    [
        np.zeros((40, 40), dtype=np.uint8),
        np.zeros((40, 40, 4), dtype=np.uint8),
        np.zeros((40, 40, 3), dtype=np.float32),
        None,
    ],
)
def test_defog_rejects_non_color_input(image):
    with pytest.raises(InputError):
        DarkChannelDefogger().defog(image)


def test_defog_rejects_black_image():
    with pytest.raises(ConfigurationError):
        DarkChannelDefogger().defog(np.zeros((40, 40, 3), dtype=np.uint8))


@pytest.mark.parametrize(
    "kwargs",
    [{"map_width": 1}, {"top_fraction": 0.0}, {"top_fraction": 1.5}, {"transmission_floor": 0.0}],
)
def test_defogger_validates_parameters(kwargs):
    with pytest.raises(ConfigurationError):
        DarkChannelDefogger(**kwargs)
