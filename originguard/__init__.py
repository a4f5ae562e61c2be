"""Perceptual deduplication and identity verification for IP registration."""

from .errors import (
    AmbiguousIdentity,
    ContractCallError,
    DecodeError,
    ModelUnavailable,
    NetworkFailure,
    NetworkTimeout,
    OriginGuardError,
    ResolutionMiss,
    VerificationError,
)
from .hashing import (
    PerceptualHash,
    Variant,
    compute_hash,
    compute_hash_variants,
    content_hash,
    hamming_distance,
)
from .whitelist import MatchDecision, WhitelistMatcher, is_whitelisted

__all__ = [
    "AmbiguousIdentity",
    "ContractCallError",
    "DecodeError",
    "MatchDecision",
    "ModelUnavailable",
    "NetworkFailure",
    "NetworkTimeout",
    "OriginGuardError",
    "PerceptualHash",
    "ResolutionMiss",
    "Variant",
    "VerificationError",
    "WhitelistMatcher",
    "compute_hash",
    "compute_hash_variants",
    "content_hash",
    "hamming_distance",
    "is_whitelisted",
]
