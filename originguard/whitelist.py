"""Operator safe list, matched by dHash Hamming distance.

A re-upload of a safe reference may have been mirrored or cropped by some
other tool, so all four hash variants are compared against every entry and
the closest pair decides.
"""

import logging
import re
from dataclasses import dataclass

from PIL import Image

from .hashing import HashVariantSet, Variant, compute_hash_variants, hamming_distance

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-f]+$")

LOOSE_MARGIN = 6


def parse_whitelist(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated list of hex dHashes."""
    if not raw:
        return ()
    entries = []
    for item in raw.split(","):
        value = item.strip().lower()
        if not value:
            continue
        if not _HEX_RE.match(value):
            logger.warning("[WHITELIST] Ignoring non-hex safe list entry %r", value)
            continue
        entries.append(value)
    return tuple(entries)


@dataclass(frozen=True)
class MatchDecision:
    matched: bool
    distance: int | None
    threshold_used: int
    variant_used: Variant
    used_loose_threshold: bool
    hash: str
    reference: str | None = None
    reason: str = ""


def is_whitelisted(
    variant_set: HashVariantSet,
    whitelist: tuple[str, ...] | list[str],
    strict_threshold: int = 8,
    loose_threshold: int | None = None,
    enable_loose: bool = False,
) -> MatchDecision:
    base = variant_set[0]
    if not whitelist:
        return MatchDecision(
            matched=False,
            distance=None,
            threshold_used=strict_threshold,
            variant_used=base.variant,
            used_loose_threshold=False,
            hash=base.hex,
            reason="No whitelist configured",
        )

    loose = loose_threshold if loose_threshold is not None else strict_threshold + LOOSE_MARGIN

    best_dist, best_variant, best_ref = None, base, None
    for variant in variant_set:
        for ref in whitelist:
            d = hamming_distance(variant, ref)
            if best_dist is None or d < best_dist:
                best_dist, best_variant, best_ref = d, variant, ref

    ok_strict = best_dist <= strict_threshold
    ok_loose = enable_loose and best_dist <= loose
    matched = ok_strict or ok_loose
    used_loose = ok_loose and not ok_strict
    threshold = loose if used_loose else strict_threshold

    if matched:
        reason = (
            f"dHash({best_variant.variant.value}) matched safe list "
            f"(distance {best_dist} <= {threshold}{' (loose)' if used_loose else ''})"
        )
    else:
        reason = f"Closest distance {best_dist} > {strict_threshold}{f'/{loose}' if enable_loose else ''}"
    logger.info("[WHITELIST] %s", reason)

    return MatchDecision(
        matched=matched,
        distance=best_dist,
        threshold_used=threshold,
        variant_used=best_variant.variant,
        used_loose_threshold=used_loose,
        hash=best_variant.hex,
        reference=best_ref,
        reason=reason,
    )


class WhitelistMatcher:
    """Safe list bound to its thresholds and hashing parameters."""

    def __init__(
        self,
        whitelist: tuple[str, ...] | list[str] = (),
        strict_threshold: int = 8,
        loose_threshold: int | None = None,
        enable_loose: bool = False,
        hash_size: int = 8,
        center_crop: float = 0.7,
    ):
        self.whitelist = tuple(whitelist)
        self.strict_threshold = strict_threshold
        self.loose_threshold = loose_threshold
        self.enable_loose = enable_loose
        self.hash_size = hash_size
        self.center_crop = center_crop

    @classmethod
    def from_settings(cls, settings) -> "WhitelistMatcher":
        return cls(
            whitelist=settings.safe_image_dhashes,
            strict_threshold=settings.dhash_threshold,
            loose_threshold=settings.loose_threshold,
            enable_loose=settings.enable_loose,
            hash_size=settings.dhash_size,
            center_crop=settings.center_crop,
        )

    def check(self, variant_set: HashVariantSet) -> MatchDecision:
        return is_whitelisted(
            variant_set,
            self.whitelist,
            self.strict_threshold,
            self.loose_threshold,
            self.enable_loose,
        )

    def check_image(self, image: bytes | Image.Image) -> MatchDecision:
        return self.check(compute_hash_variants(image, self.hash_size, self.center_crop))
