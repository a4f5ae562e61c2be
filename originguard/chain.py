"""Read-only ledger access over EVM JSON-RPC.

Only the handful of ERC-721 reads the duplicate scanner needs are wrapped
here, encoded by hand: no signing, no writes.
"""

import itertools
import logging
from typing import Any

import requests

from .errors import ContractCallError, NetworkFailure, NetworkTimeout

logger = logging.getLogger(__name__)

# ── ERC-721 selectors / topics ───────────────────────────────────────────────
SEL_TOTAL_SUPPLY = "0x18160ddd"     # totalSupply()
SEL_TOKEN_BY_INDEX = "0x4f6ccce7"   # tokenByIndex(uint256)
SEL_TOKEN_URI = "0xc87b56dd"        # tokenURI(uint256)
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ZERO_ADDRESS_TOPIC = "0x" + "0" * 64


def encode_uint256(value: int) -> str:
    if value < 0:
        raise ValueError("uint256 cannot be negative")
    return format(value, "064x")


def decode_uint256(data: str) -> int:
    raw = data[2:] if data.startswith("0x") else data
    if not raw:
        raise ContractCallError("empty return data")
    try:
        return int(raw[:64], 16)
    except ValueError as e:
        raise ContractCallError(f"malformed uint256: {data!r}") from e


def decode_string(data: str) -> str:
    """Decode a single ABI-encoded dynamic ``string`` return value."""
    raw = data[2:] if data.startswith("0x") else data
    try:
        buf = bytes.fromhex(raw)
    except ValueError as e:
        raise ContractCallError("return data is not hex") from e
    if len(buf) < 64:
        raise ContractCallError("return data too short for a string")
    offset = int.from_bytes(buf[0:32], "big")
    if offset + 32 > len(buf):
        raise ContractCallError("string offset out of range")
    length = int.from_bytes(buf[offset:offset + 32], "big")
    start = offset + 32
    if start + length > len(buf):
        raise ContractCallError("string length out of range")
    return buf[start:start + length].decode("utf-8", errors="replace")


class ChainReader:
    """Thin JSON-RPC client; one instance per RPC endpoint."""

    def __init__(self, rpc_url: str, session: requests.Session | None = None, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self._ids = itertools.count(1)

    def rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as e:
            raise NetworkTimeout(f"{method} timed out") from e
        except requests.RequestException as e:
            raise NetworkFailure(f"{method} failed: {e}") from e
        except ValueError as e:
            raise ContractCallError(f"{method} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise ContractCallError(f"{method} returned a non-object response")
        if body.get("error"):
            err = body["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise ContractCallError(f"{method}: {message}")
        return body.get("result")

    def call(self, address: str, data: str) -> str:
        result = self.rpc("eth_call", [{"to": address, "data": data}, "latest"])
        if not isinstance(result, str) or result in ("", "0x"):
            raise ContractCallError(f"eth_call to {address} returned no data")
        return result

    def block_number(self) -> int:
        result = self.rpc("eth_blockNumber", [])
        if not isinstance(result, str):
            raise ContractCallError("eth_blockNumber returned no data")
        return decode_uint256(result)

    def total_supply(self, address: str) -> int:
        return decode_uint256(self.call(address, SEL_TOTAL_SUPPLY))

    def token_by_index(self, address: str, index: int) -> int:
        return decode_uint256(self.call(address, SEL_TOKEN_BY_INDEX + encode_uint256(index)))

    def token_uri(self, address: str, token_id: int) -> str:
        return decode_string(self.call(address, SEL_TOKEN_URI + encode_uint256(token_id)))

    def minted_token_ids(self, address: str, from_block: int, to_block: int) -> set[int]:
        """Token ids of ``Transfer`` events from the zero address in a block range."""
        logs = self.rpc(
            "eth_getLogs",
            [{
                "address": address,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "topics": [TRANSFER_TOPIC, ZERO_ADDRESS_TOPIC],
            }],
        )
        if not isinstance(logs, list):
            raise ContractCallError("eth_getLogs returned no list")

        token_ids: set[int] = set()
        for entry in logs:
            topics = entry.get("topics") if isinstance(entry, dict) else None
            if not topics or len(topics) < 4:
                continue
            token_ids.add(decode_uint256(topics[3]))
        logger.debug("[CHAIN] %d mint(s) in blocks %d-%d", len(token_ids), from_block, to_block)
        return token_ids
