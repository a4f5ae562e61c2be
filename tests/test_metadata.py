import pytest
import requests

from originguard.errors import NetworkFailure, NetworkTimeout, ResolutionMiss
from originguard.metadata import (
    MetadataResolver,
    extract_content_hash,
    extract_ip_metadata_uri,
    normalize_content_hash,
    to_gateway_url,
)

from .conftest import GATEWAY, FakeResponse, FakeSession, publish_token


@pytest.mark.parametrize(
    "uri, expected",
    [
        ("ipfs://QmAbc", GATEWAY + "QmAbc"),
        ("ipfs://ipfs/QmAbc", GATEWAY + "QmAbc"),
        ("ipfs://bafyabc/meta.json", GATEWAY + "bafyabc/meta.json"),
        ("https://cloudflare-ipfs.com/ipfs/QmAbc", GATEWAY + "QmAbc"),
        ("https://gw.example/ipfs/QmAbc/1.json?x=1", GATEWAY + "QmAbc/1.json"),
        ("QmAbc123", GATEWAY + "QmAbc123"),
        ("bafybeigdyrzt", GATEWAY + "bafybeigdyrzt"),
        ("https://example.com/meta/1.json", "https://example.com/meta/1.json"),
        ("", ""),
        (None, ""),
    ],
)
def test_to_gateway_url(uri, expected):
    assert to_gateway_url(uri, GATEWAY) == expected


def test_custom_gateway():
    assert to_gateway_url("ipfs://QmAbc", "https://gw.example/ipfs/") == "https://gw.example/ipfs/QmAbc"


class TestExtraction:
    def test_direct_field(self):
        assert extract_ip_metadata_uri({"ipMetadataURI": "ipfs://QmIp"}) == "ipfs://QmIp"

    def test_attribute_trait_is_case_insensitive(self):
        meta = {"attributes": [{"trait_type": "Rarity", "value": "x"}, {"trait_type": "IP_Metadata_URI", "value": "ipfs://QmIp"}]}
        assert extract_ip_metadata_uri(meta) == "ipfs://QmIp"

    def test_missing_uri(self):
        assert extract_ip_metadata_uri({"attributes": "nope"}) is None
        assert extract_ip_metadata_uri(["not", "a", "dict"]) is None

    def test_media_hash_fallback_and_normalization(self):
        assert extract_content_hash({"mediaHash": " 0xABCdef "}) == "abcdef"
        assert extract_content_hash({"imageHash": "AA", "mediaHash": "bb"}) == "aa"
        assert extract_content_hash({"imageHash": ""}) is None

    def test_normalize_non_string(self):
        assert normalize_content_hash(None) == ""
        assert normalize_content_hash(12) == ""


class TestMetadataResolver:
    def test_two_hop_resolution(self):
        docs = {}
        token_uri = publish_token(docs, 5, "0xDEADBEEF")
        resolver = MetadataResolver(FakeSession(docs), GATEWAY)

        resolved = resolver.resolve(token_uri)
        assert resolved.content_hash == "deadbeef"
        assert resolved.ip_metadata_uri == "ipfs://QmIp5"
        assert resolver.resolve_content_hash(token_uri) == "deadbeef"

    def test_first_hop_network_error(self):
        session = FakeSession({GATEWAY + "QmNft1": requests.ConnectionError("reset")})
        assert MetadataResolver(session, GATEWAY).resolve("ipfs://QmNft1") is None

    def test_invalid_json(self):
        session = FakeSession({GATEWAY + "QmNft1": FakeResponse(raw="{not json")})
        assert MetadataResolver(session, GATEWAY).resolve("ipfs://QmNft1") is None

    def test_second_hop_without_hash(self):
        docs = {}
        publish_token(docs, 2, "aa")
        docs[GATEWAY + "QmIp2"] = {"name": "no hash here"}
        assert MetadataResolver(FakeSession(docs), GATEWAY).resolve_content_hash("ipfs://QmNft2") is None

    def test_second_hop_missing(self):
        docs = {GATEWAY + "QmNft3": {"ipMetadataURI": "ipfs://QmGone"}}
        assert MetadataResolver(FakeSession(docs), GATEWAY).resolve("ipfs://QmNft3") is None

    def test_empty_token_uri_is_not_fetched(self):
        session = FakeSession()
        assert MetadataResolver(session, GATEWAY).resolve("") is None
        assert session.requested == []


class TestFetchDocument:
    def test_connection_error_is_network_failure(self):
        session = FakeSession({GATEWAY + "QmA": requests.ConnectionError("gateway down")})
        with pytest.raises(NetworkFailure):
            MetadataResolver(session, GATEWAY).fetch_document("ipfs://QmA")

    def test_timeout_is_network_timeout(self):
        session = FakeSession({GATEWAY + "QmA": requests.Timeout("slow")})
        with pytest.raises(NetworkTimeout):
            MetadataResolver(session, GATEWAY).fetch_document("ipfs://QmA")

    @pytest.mark.parametrize("status", [429, 502, 503])
    def test_overloaded_gateway_is_network_failure(self, status):
        session = FakeSession({GATEWAY + "QmA": FakeResponse(status=status)})
        with pytest.raises(NetworkFailure):
            MetadataResolver(session, GATEWAY).fetch_document("ipfs://QmA")

    def test_not_found_is_a_miss(self):
        with pytest.raises(ResolutionMiss):
            MetadataResolver(FakeSession(), GATEWAY).fetch_document("ipfs://QmA")


class TestResolveChecked:
    def test_gateway_outage_raises(self):
        docs = {}
        token_uri = publish_token(docs, 1, "aa")
        docs[GATEWAY + "QmIp1"] = requests.ConnectionError("gateway down")
        with pytest.raises(NetworkFailure):
            MetadataResolver(FakeSession(docs), GATEWAY).resolve_checked(token_uri)

    def test_server_error_raises(self):
        docs = {GATEWAY + "QmNft1": FakeResponse(status=503)}
        with pytest.raises(NetworkFailure):
            MetadataResolver(FakeSession(docs), GATEWAY).resolve_checked("ipfs://QmNft1")

    def test_missing_document_is_none(self):
        assert MetadataResolver(FakeSession(), GATEWAY).resolve_checked("ipfs://QmNft1") is None

    def test_resolve_still_swallows_outage(self):
        session = FakeSession({GATEWAY + "QmNft1": FakeResponse(status=503)})
        assert MetadataResolver(session, GATEWAY).resolve("ipfs://QmNft1") is None
