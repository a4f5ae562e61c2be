"""Runtime configuration, read once from the environment (or a .env file)."""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .whitelist import parse_whitelist

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY = "https://ipfs.io/ipfs/"
DEFAULT_MODEL_PATH = Path.home() / ".cache" / "originguard" / "models" / "face_landmarker.task"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r is not an integer, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r is not a number, using %s", name, raw, default)
        return default
    return default if math.isnan(value) else value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Immutable context handed to the matcher, scanner and verifier."""

    # ── Safe list ─────────────────────────────────────────────────────────────
    safe_image_dhashes: tuple[str, ...] = ()
    dhash_threshold: int = 8
    enable_loose: bool = False
    dhash_threshold_loose: int | None = None
    dhash_size: int = 8
    center_crop: float = 0.7

    # ── Ledger / content store ────────────────────────────────────────────────
    rpc_url: str = ""
    collection: str = ""
    check_last: int = 300
    scan_max_back: int = 2_000_000
    scan_step: int = 75_000
    dupcheck_timeout_ms: int = 3000
    ipfs_gateway: str = DEFAULT_GATEWAY
    http_timeout: float = 10.0

    # ── Identity ──────────────────────────────────────────────────────────────
    face_sim_threshold: float = 0.82
    identity_dhash_threshold: int = 14
    face_model_path: Path = field(default=DEFAULT_MODEL_PATH)

    @property
    def loose_threshold(self) -> int:
        if self.dhash_threshold_loose is not None:
            return self.dhash_threshold_loose
        return self.dhash_threshold + 6

    @property
    def dupcheck_timeout(self) -> float:
        return self.dupcheck_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, dotenv_path: str | Path | None = None) -> "Settings":
        """Build settings from environment variables, loading .env first."""
        load_dotenv(dotenv_path)

        loose_raw = os.getenv("SAFE_IMAGE_DHASH_THRESHOLD_LOOSE", "").strip()
        model_path = os.getenv("FACE_LANDMARKER_MODEL", "").strip()
        gateway = os.getenv("IPFS_GATEWAY", "").strip() or DEFAULT_GATEWAY
        dhash_size = _env_int("SAFE_IMAGE_DHASH_SIZE", 8)
        if dhash_size < 2 or dhash_size % 2:
            logger.warning("[CONFIG] SAFE_IMAGE_DHASH_SIZE=%s must be even and >= 2, using 8", dhash_size)
            dhash_size = 8

        return cls(
            safe_image_dhashes=parse_whitelist(os.getenv("SAFE_IMAGE_DHASHES", "")),
            dhash_threshold=_env_int("SAFE_IMAGE_DHASH_THRESHOLD", 8),
            enable_loose=_env_bool("SAFE_IMAGE_ENABLE_LOOSE"),
            dhash_threshold_loose=_env_int("SAFE_IMAGE_DHASH_THRESHOLD_LOOSE", 0) if loose_raw else None,
            dhash_size=dhash_size,
            center_crop=_env_float("SAFE_IMAGE_CENTER_CROP", 0.7),
            rpc_url=os.getenv("REGISTRY_RPC_URL", "").strip(),
            collection=os.getenv("REGISTRY_COLLECTION", "").strip(),
            check_last=_env_int("REGISTRY_CHECK_LAST", 300),
            scan_max_back=_env_int("REGISTRY_SCAN_MAX_BACK", 2_000_000),
            scan_step=_env_int("REGISTRY_SCAN_STEP", 75_000),
            dupcheck_timeout_ms=_env_int("REGISTRY_DUPCHECK_TIMEOUT_MS", 3000),
            ipfs_gateway=gateway if gateway.endswith("/") else gateway + "/",
            http_timeout=_env_float("HTTP_TIMEOUT", 10.0),
            face_sim_threshold=_env_float("FACE_SIM_THRESHOLD", 0.82),
            identity_dhash_threshold=_env_int("IDENTITY_DHASH_THRESHOLD", 14),
            face_model_path=Path(model_path) if model_path else DEFAULT_MODEL_PATH,
        )
