"""Exception taxonomy for the matching subsystem.

Only ``DecodeError`` on a primary input (and ``VerificationError`` when no
identity comparison could be produced at all) is meant to reach callers.
Everything else is caught inside the subsystem and turned into a
"no evidence" outcome.
"""


class OriginGuardError(Exception):
    """Base class for all originguard errors."""


class DecodeError(OriginGuardError):
    """The supplied bytes could not be decoded as an image."""


class ResolutionMiss(OriginGuardError):
    """The two-hop metadata chain did not lead to a content hash."""


class NetworkFailure(OriginGuardError):
    """A ledger or content-store read failed."""


class NetworkTimeout(NetworkFailure):
    """A ledger or content-store read timed out."""


class ContractCallError(NetworkFailure):
    """The node answered, but with an RPC error or a malformed payload."""


class ModelUnavailable(OriginGuardError):
    """The face landmark model could not be loaded."""


class AmbiguousIdentity(OriginGuardError):
    """More than one face was present where exactly one was expected."""


class VerificationError(OriginGuardError):
    """Neither the embedding path nor the hash fallback produced a result."""
