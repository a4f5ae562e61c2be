"""Two-hop metadata resolution: token URI -> NFT metadata -> IP metadata -> content hash.

Resolution is advisory. ``resolve`` turns any fetch or parse failure at either
hop into ``None`` so that one broken token never aborts a registry scan;
``resolve_checked`` keeps gateway outages visible as ``NetworkFailure``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

import requests

from .config import DEFAULT_GATEWAY
from .errors import NetworkFailure, NetworkTimeout, ResolutionMiss

logger = logging.getLogger(__name__)

_GATEWAY_PATH_RE = re.compile(r"/ipfs/([^?#]+)", re.IGNORECASE)
_BARE_CID_RE = re.compile(r"^(baf|Qm)[a-zA-Z0-9]+$")

IP_METADATA_TRAITS = ("ip_metadata_uri", "ipmetadatauri")


def to_gateway_url(uri: str | None, gateway: str = DEFAULT_GATEWAY) -> str:
    """Normalize ``ipfs://CID``, ``.../ipfs/CID`` and bare CIDs onto one gateway."""
    if not uri:
        return ""
    uri = uri.strip()
    if uri.lower().startswith("ipfs://"):
        path = uri[len("ipfs://"):]
        if path.lower().startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return gateway + path
    m = _GATEWAY_PATH_RE.search(uri)
    if m:
        return gateway + m.group(1)
    if _BARE_CID_RE.match(uri):
        return gateway + uri
    return uri


def normalize_content_hash(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def extract_ip_metadata_uri(nft_meta: Any) -> str | None:
    """Secondary URI from ``ipMetadataURI`` or an ``ip_metadata_uri`` attribute."""
    if not isinstance(nft_meta, dict):
        return None
    direct = nft_meta.get("ipMetadataURI")
    if isinstance(direct, str) and direct:
        return direct
    attributes = nft_meta.get("attributes")
    if not isinstance(attributes, list):
        return None
    for attr in attributes:
        if not isinstance(attr, dict):
            continue
        trait = attr.get("trait_type")
        if isinstance(trait, str) and trait.lower() in IP_METADATA_TRAITS:
            value = attr.get("value")
            if isinstance(value, str) and value:
                return value
    return None


def extract_content_hash(ip_meta: Any) -> str | None:
    if not isinstance(ip_meta, dict):
        return None
    value = normalize_content_hash(ip_meta.get("imageHash") or ip_meta.get("mediaHash"))
    return value or None


@dataclass(frozen=True)
class ResolvedMetadata:
    token_uri: str
    ip_metadata_uri: str
    content_hash: str


class MetadataResolver:
    """Reads JSON documents from the content store through an HTTP gateway."""

    def __init__(
        self,
        session: requests.Session | None = None,
        gateway: str = DEFAULT_GATEWAY,
        timeout: float = 10.0,
    ):
        self.session = session or requests.Session()
        self.gateway = gateway
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, session: requests.Session | None = None) -> "MetadataResolver":
        return cls(session=session, gateway=settings.ipfs_gateway, timeout=settings.http_timeout)

    def fetch_document(self, uri: str | None) -> Any:
        """Fetch one JSON document through the gateway.

        Raises ``NetworkFailure`` when the gateway could not be asked (transport
        error, 5xx, 429) and ``ResolutionMiss`` when it answered without a JSON
        document.
        """
        url = to_gateway_url(uri, self.gateway)
        if not url:
            raise ResolutionMiss("empty URI")
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkTimeout(f"GET {url} timed out") from e
        except requests.RequestException as e:
            raise NetworkFailure(f"GET {url} failed: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise NetworkFailure(f"GET {url} returned {resp.status_code}")
        try:
            resp.raise_for_status()
            return resp.json()
        except requests.HTTPError as e:
            raise ResolutionMiss(f"GET {url} returned {resp.status_code}") from e
        except ValueError as e:
            raise ResolutionMiss(f"{url} is not JSON") from e

    def fetch_json(self, uri: str | None) -> Any | None:
        try:
            return self.fetch_document(uri)
        except (ResolutionMiss, NetworkFailure) as e:
            logger.debug("[IPFS] Could not fetch %s: %s", uri, e)
            return None

    def _resolve(self, token_uri: str | None) -> ResolvedMetadata:
        if not token_uri:
            raise ResolutionMiss("token has no URI")
        ip_meta_uri = extract_ip_metadata_uri(self.fetch_document(token_uri))
        if not ip_meta_uri:
            raise ResolutionMiss(f"no IP metadata URI behind {token_uri}")
        digest = extract_content_hash(self.fetch_document(ip_meta_uri))
        if not digest:
            raise ResolutionMiss(f"no content hash in {ip_meta_uri}")
        return ResolvedMetadata(token_uri=token_uri, ip_metadata_uri=ip_meta_uri, content_hash=digest)

    def resolve(self, token_uri: str | None) -> ResolvedMetadata | None:
        try:
            return self._resolve(token_uri)
        except (ResolutionMiss, NetworkFailure) as e:
            logger.debug("[IPFS] %s", e)
            return None

    def resolve_checked(self, token_uri: str | None) -> ResolvedMetadata | None:
        """Like ``resolve``, but a gateway outage raises ``NetworkFailure``.

        Lets a scan tell "this token has no matching hash" apart from "this
        token could not be read".
        """
        try:
            return self._resolve(token_uri)
        except ResolutionMiss as e:
            logger.debug("[IPFS] %s", e)
            return None

    def resolve_content_hash(self, token_uri: str | None) -> str | None:
        resolved = self.resolve(token_uri)
        return resolved.content_hash if resolved else None
