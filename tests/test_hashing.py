import hashlib

import imagehash
import numpy as np
import pytest
from PIL import Image

from originguard.errors import DecodeError
from originguard.hashing import (
    PerceptualHash,
    Variant,
    clamp_center_crop,
    compute_hash,
    compute_hash_variants,
    content_hash,
    hamming_distance,
    min_variant_distance,
)

from .conftest import make_image, png_bytes


def _column_ramp(step: int) -> Image.Image:
    row = np.array([128 + step * x for x in range(9)], dtype=np.uint8)
    gray = np.tile(row, (8, 1))
    return Image.fromarray(np.stack([gray] * 3, axis=-1))


class TestComputeHash:
    def test_identical_images_have_distance_zero(self, image):
        assert compute_hash(image) - compute_hash(image.copy()) == 0

    def test_hex_length_follows_hash_size(self, image):
        assert len(compute_hash(image, hash_size=8).hex) == 16
        assert len(compute_hash(image, hash_size=16).hex) == 64

    def test_bit_is_set_when_left_pixel_is_brighter(self):
        assert compute_hash(_column_ramp(-10)).hex == "ffffffffffffffff"
        assert compute_hash(_column_ramp(10)).hex == "0000000000000000"

    def test_bytes_and_decoded_image_agree(self, image, image_bytes):
        assert compute_hash(image_bytes).hex == compute_hash(image).hex

    def test_mirrored_upload_equals_flip_variant(self, image):
        mirrored = image.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        assert compute_hash(mirrored).hex == compute_hash(image, flip_horizontal=True).hex
        assert (
            compute_hash(mirrored, center_crop_ratio=0.7).hex
            == compute_hash(image, flip_horizontal=True, center_crop_ratio=0.7).hex
        )

    def test_unrelated_images_are_far_apart(self):
        assert compute_hash(make_image(1)) - compute_hash(make_image(2)) > 8

    def test_downscaled_copy_stays_close(self, image):
        smaller = image.resize((128, 96), Image.Resampling.LANCZOS)
        assert compute_hash(image) - compute_hash(smaller) <= 8

    def test_variant_label_follows_transform(self, image):
        assert compute_hash(image).variant is Variant.BASE
        assert compute_hash(image, flip_horizontal=True).variant is Variant.FLIP
        assert compute_hash(image, center_crop_ratio=0.7).variant is Variant.CENTER
        assert compute_hash(image, flip_horizontal=True, center_crop_ratio=0.7).variant is Variant.CENTER_FLIP

    def test_undecodable_bytes_raise(self):
        with pytest.raises(DecodeError):
            compute_hash(b"definitely not an image")

    def test_tiny_hash_size_rejected(self, image):
        with pytest.raises(ValueError):
            compute_hash(image, hash_size=1)

    @pytest.mark.parametrize("size", [3, 5, 7])
    def test_odd_hash_size_rejected(self, image, size):
        # 25 bits would not fill whole hex digits
        with pytest.raises(ValueError):
            compute_hash(image, hash_size=size)


class TestVariants:
    def test_family_order(self, image):
        variants = compute_hash_variants(image)
        assert [v.variant for v in variants] == [Variant.BASE, Variant.FLIP, Variant.CENTER, Variant.CENTER_FLIP]

    def test_crop_ratio_is_clamped(self, image):
        low = compute_hash_variants(image, center_crop=0.1)
        floor = compute_hash_variants(image, center_crop=0.4)
        assert [v.hex for v in low] == [v.hex for v in floor]

    def test_nan_crop_falls_back_to_default(self, image):
        nan = compute_hash_variants(image, center_crop=float("nan"))
        default = compute_hash_variants(image, center_crop=0.7)
        assert [v.hex for v in nan] == [v.hex for v in default]

    @pytest.mark.parametrize(
        "ratio, expected",
        [(None, 0.7), (0.2, 0.4), (0.99, 0.95), (0.6, 0.6)],
    )
    def test_clamp_center_crop(self, ratio, expected):
        assert clamp_center_crop(ratio) == pytest.approx(expected)

    def test_min_variant_distance_finds_mirrored_pair(self, image):
        mirrored = image.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        dist, left, right = min_variant_distance(compute_hash_variants(image), compute_hash_variants(mirrored))
        assert dist == 0
        assert {left.variant, right.variant} & {Variant.FLIP, Variant.CENTER_FLIP}


class TestHammingDistance:
    def test_counts_differing_bits(self):
        assert hamming_distance("ff", "00") == 8
        assert hamming_distance("a0", "a1") == 1

    def test_is_case_insensitive(self):
        assert hamming_distance("ABCDEF", "abcdef") == 0

    def test_length_mismatch_costs_four_bits_per_digit(self):
        assert hamming_distance("abcd", "ab") == 8
        assert hamming_distance("0000000000000000", "000000000000000") == 4

    def test_accepts_hash_objects(self):
        h = PerceptualHash(imagehash.hex_to_hash("00000000000000ff"))
        assert h - "0000000000000000" == 8
        assert str(h) == "00000000000000ff"


def test_content_hash_is_sha256_of_bytes(image_bytes):
    assert content_hash(image_bytes) == hashlib.sha256(image_bytes).hexdigest()


def test_content_hash_differs_for_different_pixels(image):
    assert content_hash(png_bytes(image)) != content_hash(png_bytes(image.rotate(180)))
