"""Perceptual (dHash) and content hashing for candidate images.

The dHash family tolerates the geometry changes an unrelated tool is likely to
apply to a re-upload: a horizontal mirror, a centre crop, or both. Each image
is hashed four times:

    base        full frame
    flip        full frame, mirrored
    center      centre crop
    centerFlip  centre crop, mirrored

Bits are packed MSB first into hex, 4 bits per digit, so a hash size of 8
gives the usual 16-character / 64-bit fingerprint. Sizes are even so the bit
count always fills whole hex digits.
"""

import hashlib
import io
import logging
import math
from dataclasses import dataclass
from enum import Enum

import imagehash
import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])
DEFAULT_CENTER_CROP = 0.7

_NIBBLE_POPCOUNT = [0, 1, 1, 2, 1, 2, 2, 3, 1, 2, 2, 3, 2, 3, 3, 4]


class Variant(str, Enum):
    BASE = "base"
    FLIP = "flip"
    CENTER = "center"
    CENTER_FLIP = "centerFlip"


@dataclass(frozen=True)
class PerceptualHash:
    """One dHash of one image under one geometric transform."""

    hash: imagehash.ImageHash
    variant: Variant = Variant.BASE

    @property
    def hex(self) -> str:
        return str(self.hash)

    def __str__(self) -> str:
        return self.hex

    def __sub__(self, other: "PerceptualHash | str") -> int:
        return hamming_distance(self, other)


HashVariantSet = tuple[PerceptualHash, PerceptualHash, PerceptualHash, PerceptualHash]


def load_image(image: bytes | Image.Image) -> Image.Image:
    """Decode raw bytes (or pass through a Pillow image) as RGB."""
    if isinstance(image, Image.Image):
        return image.convert("RGB")
    try:
        img = Image.open(io.BytesIO(image))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Could not decode image: {e}") from e
    return img.convert("RGB")


def content_hash(data: bytes) -> str:
    """SHA-256 of the canonical image bytes, lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def compute_hash(
    image: bytes | Image.Image,
    hash_size: int = 8,
    flip_horizontal: bool = False,
    center_crop_ratio: float = 1.0,
) -> PerceptualHash:
    """Compute a single dHash.

    The image is optionally mirrored, then the centred crop box is resampled
    straight down to ``(hash_size + 1) x hash_size``. Each row contributes one
    bit per adjacent pixel pair: 1 when the left pixel is brighter.
    """
    if hash_size < 2 or hash_size % 2:
        raise ValueError("hash_size must be an even number >= 2")
    img = load_image(image)

    # Mirror first: the centred crop box maps onto itself, so hashing a mirrored
    # upload gives exactly the flip variant of the original.
    if flip_horizontal:
        img = img.transpose(Image.Transpose.FLIP_LEFT_RIGHT)

    ratio = max(0.1, min(1.0, center_crop_ratio))
    width, height = img.size
    crop_w, crop_h = width * ratio, height * ratio
    left, top = (width - crop_w) / 2, (height - crop_h) / 2
    box = (left, top, left + crop_w, top + crop_h)

    small = img.resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS, box=box)
    gray = np.asarray(small, dtype=np.float64) @ LUMA_WEIGHTS
    bits = gray[:, :-1] > gray[:, 1:]

    if flip_horizontal and ratio < 1.0:
        variant = Variant.CENTER_FLIP
    elif flip_horizontal:
        variant = Variant.FLIP
    elif ratio < 1.0:
        variant = Variant.CENTER
    else:
        variant = Variant.BASE
    return PerceptualHash(hash=imagehash.ImageHash(bits), variant=variant)


def clamp_center_crop(ratio: float | None) -> float:
    if ratio is None or math.isnan(ratio):
        return DEFAULT_CENTER_CROP
    return max(0.4, min(0.95, ratio))


def compute_hash_variants(
    image: bytes | Image.Image,
    hash_size: int = 8,
    center_crop: float | None = DEFAULT_CENTER_CROP,
) -> HashVariantSet:
    """Compute the base / flip / center / centerFlip dHash family."""
    img = load_image(image)
    crop = clamp_center_crop(center_crop)
    variants = (
        compute_hash(img, hash_size, False, 1.0),
        compute_hash(img, hash_size, True, 1.0),
        compute_hash(img, hash_size, False, crop),
        compute_hash(img, hash_size, True, crop),
    )
    logger.debug("[HASH] variants: %s", ", ".join(f"{v.variant.value}={v.hex}" for v in variants))
    return variants


def _as_hex(value: "PerceptualHash | imagehash.ImageHash | str") -> str:
    return str(value).strip().lower()


def hamming_distance(a: "PerceptualHash | imagehash.ImageHash | str", b: "PerceptualHash | imagehash.ImageHash | str") -> int:
    """Bit distance between two hex hashes.

    Digits are compared over the common prefix; every hex digit of length
    mismatch costs 4 bits, so a truncated or padded entry can never match
    more closely than the bits it actually shares.
    """
    ha, hb = _as_hex(a), _as_hex(b)
    overlap = min(len(ha), len(hb))
    dist = 0
    for x, y in zip(ha[:overlap], hb[:overlap]):
        dist += _NIBBLE_POPCOUNT[(int(x, 16) ^ int(y, 16)) & 0xF]
    return dist + abs(len(ha) - len(hb)) * 4


def min_variant_distance(left: HashVariantSet, right: HashVariantSet) -> tuple[int, PerceptualHash, PerceptualHash]:
    """Smallest distance across all variant pairs, with the pair that produced it."""
    best = None
    for lh in left:
        for rh in right:
            d = hamming_distance(lh, rh)
            if best is None or d < best[0]:
                best = (d, lh, rh)
    if best is None:
        raise ValueError("empty variant set")
    return best
