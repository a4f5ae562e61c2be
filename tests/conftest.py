import io
import json

import numpy as np
import pytest
import requests
from PIL import Image

from originguard.errors import ContractCallError, NetworkFailure
from originguard.face import FaceLandmarks


def make_image(seed: int = 0, size: tuple[int, int] = (256, 192)) -> Image.Image:
    """Smooth random texture: coarse noise upsampled, so dHash bits are stable."""
    rng = np.random.RandomState(seed)
    coarse = rng.randint(0, 256, size=(12, 16, 3)).astype(np.uint8)
    return Image.fromarray(coarse).resize(size, Image.Resampling.BICUBIC)


def png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def image():
    return make_image(1)


@pytest.fixture
def image_bytes(image):
    return png_bytes(image)


# ── HTTP / content store ─────────────────────────────────────────────────────


class FakeResponse:
    def __init__(self, payload=None, status=200, raw=None):
        self._payload = payload
        self.status_code = status
        self._raw = raw

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        if self._raw is not None:
            return json.loads(self._raw)
        return self._payload


class FakeSession:
    """Serves JSON documents by exact URL; unknown URLs are 404s."""

    def __init__(self, documents=None):
        self.documents = dict(documents or {})
        self.requested: list[str] = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        doc = self.documents.get(url)
        if isinstance(doc, Exception):
            raise doc
        if isinstance(doc, FakeResponse):
            return doc
        if doc is None:
            return FakeResponse(status=404)
        return FakeResponse(doc)


GATEWAY = "https://ipfs.io/ipfs/"


def publish_token(documents: dict, token_id: int, content_hash: str) -> str:
    """Register the two-hop metadata for one token; returns its token URI."""
    token_uri = f"ipfs://QmNft{token_id}"
    ip_uri = f"ipfs://QmIp{token_id}"
    documents[f"{GATEWAY}QmNft{token_id}"] = {"name": f"#{token_id}", "ipMetadataURI": ip_uri}
    documents[f"{GATEWAY}QmIp{token_id}"] = {"imageHash": content_hash}
    return token_uri


# ── Ledger ───────────────────────────────────────────────────────────────────


class FakeChain:
    """In-memory ERC-721 collection.

    ``mints`` maps token id -> mint block. Token ids are ``index + id_offset``
    when enumerable.
    """

    def __init__(self, token_uris=None, mints=None, latest_block=1_000_000, enumerable=True, id_offset=0):
        self.token_uris = dict(token_uris or {})
        self.mints = dict(mints or {})
        self.latest_block = latest_block
        self.enumerable = enumerable
        self.id_offset = id_offset
        self.supply_error: Exception | None = None
        self.failing_windows: set[tuple[int, int]] = set()
        self.window_calls: list[tuple[int, int]] = []
        self.uri_calls: list[int] = []
        self.uri_errors: dict[int, Exception] = {}

    def total_supply(self, address):
        if self.supply_error:
            raise self.supply_error
        return len(self.token_uris)

    def token_by_index(self, address, index):
        if not self.enumerable:
            raise ContractCallError("execution reverted")
        return index + self.id_offset

    def token_uri(self, address, token_id):
        self.uri_calls.append(token_id)
        if token_id in self.uri_errors:
            raise self.uri_errors[token_id]
        if token_id not in self.token_uris:
            raise ContractCallError("ERC721: invalid token ID")
        return self.token_uris[token_id]

    def block_number(self):
        return self.latest_block

    def minted_token_ids(self, address, from_block, to_block):
        self.window_calls.append((from_block, to_block))
        if (from_block, to_block) in self.failing_windows:
            raise NetworkFailure("query returned more than 10000 results")
        return {tid for tid, block in self.mints.items() if from_block <= block <= to_block}


# ── Faces ────────────────────────────────────────────────────────────────────


def mesh_points(seed: int = 0, n: int = 478) -> np.ndarray:
    rng = np.random.RandomState(seed)
    pts = rng.uniform(100, 300, size=(n, 2))
    pts[33] = (150.0, 180.0)
    pts[263] = (250.0, 180.0)
    return pts


class FakeDetector:
    """Returns a scripted list of faces per call (cycling on the last entry)."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    def detect(self, image):
        idx = min(self.calls, len(self.script) - 1)
        self.calls += 1
        return self.script[idx]


def face_at(center, blink=None, seed=0):
    pts = mesh_points(seed)
    pts = pts - pts.mean(axis=0) + np.asarray(center, dtype=np.float64)
    return FaceLandmarks(points=pts, blink_score=blink)
