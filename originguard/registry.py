"""On-chain duplicate detection by exact content hash.

Two paths share one comparison rule (normalized string equality of the
content hash, never a Hamming threshold):

* ``quick_check`` walks the most recently minted tokens, newest first. Most
  abuse is a re-upload shortly after the original, so this is where a
  duplicate usually sits.
* ``full_scan`` collects every token minted in the look-back range from the
  ``Transfer`` logs, in fixed-size block windows so providers do not reject
  the range, then resolves each one.

Both fail open: infrastructure errors produce ``found=False`` with
``outcome=DEGRADED`` and the cause, never an exception. A token whose URI or
metadata could not be read is skipped, but the walk then ends degraded rather
than absent.

Both paths take an optional ``threading.Event``; once set, the walk stops
before its next token or log window read.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from .errors import ContractCallError, NetworkFailure
from .metadata import MetadataResolver, normalize_content_hash

logger = logging.getLogger(__name__)


class ScanOutcome(str, Enum):
    MATCHED = "matched"
    ABSENT = "absent"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class DuplicateMatch:
    found: bool
    token_id: str | None = None
    token_uri: str | None = None
    ip_metadata_uri: str | None = None
    outcome: ScanOutcome = ScanOutcome.ABSENT
    cause: str | None = None

    @classmethod
    def absent(cls) -> "DuplicateMatch":
        return cls(found=False, outcome=ScanOutcome.ABSENT)

    @classmethod
    def degraded(cls, cause: str) -> "DuplicateMatch":
        return cls(found=False, outcome=ScanOutcome.DEGRADED, cause=cause)

    @property
    def is_degraded(self) -> bool:
        return self.outcome is ScanOutcome.DEGRADED


def _no_match(problems: list[str]) -> DuplicateMatch:
    if not problems:
        return DuplicateMatch.absent()
    return DuplicateMatch.degraded(f"{len(problems)} read(s) failed; first: {problems[0]}")


class OnChainDuplicateScanner:
    def __init__(
        self,
        chain,
        resolver: MetadataResolver,
        tail_size: int = 300,
        max_lookback: int = 2_000_000,
        window_size: int = 75_000,
        max_workers: int = 4,
    ):
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.chain = chain
        self.resolver = resolver
        self.tail_size = max(0, tail_size)
        self.max_lookback = max(0, max_lookback)
        self.window_size = window_size
        self.max_workers = max(1, max_workers)

    @classmethod
    def from_settings(cls, settings, chain, resolver: MetadataResolver) -> "OnChainDuplicateScanner":
        return cls(
            chain,
            resolver,
            tail_size=settings.check_last,
            max_lookback=settings.scan_max_back,
            window_size=settings.scan_step,
        )

    # ── Shared comparison ────────────────────────────────────────────────────

    def _match_token(self, collection: str, token_id: int, target: str) -> DuplicateMatch | None:
        """Compare one token. Raises ``NetworkFailure`` if it could not be read."""
        try:
            token_uri = self.chain.token_uri(collection, token_id)
        except ContractCallError as e:
            # burned or never minted
            logger.debug("[SCAN] tokenURI(%s) reverted: %s", token_id, e)
            return None

        resolved = self.resolver.resolve_checked(token_uri)
        if resolved is None or resolved.content_hash != target:
            return None
        logger.info("[SCAN] Duplicate found: token %s (%s)", token_id, token_uri)
        return DuplicateMatch(
            found=True,
            token_id=str(token_id),
            token_uri=token_uri,
            ip_metadata_uri=resolved.ip_metadata_uri,
            outcome=ScanOutcome.MATCHED,
        )

    def _check_token(self, collection: str, token_id: int, target: str, problems: list[str]) -> DuplicateMatch | None:
        try:
            return self._match_token(collection, token_id, target)
        except NetworkFailure as e:
            logger.debug("[SCAN] token %s unreadable: %s", token_id, e)
            problems.append(f"token {token_id}: {e}")
            return None

    def _token_id_at(self, collection: str, index: int) -> int:
        try:
            return self.chain.token_by_index(collection, index)
        except ContractCallError:
            # Not ERC721Enumerable: sequential ids are assumed.
            return index

    # ── Fast path ────────────────────────────────────────────────────────────

    def quick_check(self, collection: str, target_hash: str, stop: threading.Event | None = None) -> DuplicateMatch:
        target = normalize_content_hash(target_hash)
        if not target:
            return DuplicateMatch.absent()
        stop = stop or threading.Event()
        problems: list[str] = []
        try:
            total = self.chain.total_supply(collection)
            if total <= 0:
                return DuplicateMatch.absent()

            newest = total - 1
            oldest = max(0, total - self.tail_size)
            logger.info("[SCAN] Quick check: indices %d..%d of %s", newest, oldest, collection)
            for index in range(newest, oldest - 1, -1):
                if stop.is_set():
                    return DuplicateMatch.degraded("cancelled")
                token_id = self._token_id_at(collection, index)
                match = self._check_token(collection, token_id, target, problems)
                if match:
                    return match
        except NetworkFailure as e:
            logger.warning("[SCAN] Quick check degraded: %s", e)
            return DuplicateMatch.degraded(str(e))

        if problems:
            logger.warning("[SCAN] Quick check: %d token(s) unreadable", len(problems))
        return _no_match(problems)

    # ── Slow path ────────────────────────────────────────────────────────────

    def block_windows(self, latest: int) -> list[tuple[int, int]]:
        start = max(0, latest - self.max_lookback)
        return [
            (lo, min(lo + self.window_size - 1, latest))
            for lo in range(start, latest + 1, self.window_size)
        ]

    def minted_token_ids(
        self, collection: str, latest: int, stop: threading.Event | None = None
    ) -> tuple[set[int], list[str]]:
        """Union of minted ids over every window, plus the errors of failed windows."""
        stop = stop or threading.Event()

        def fetch(window: tuple[int, int]) -> set[int] | str:
            if stop.is_set():
                return f"blocks {window[0]}-{window[1]}: cancelled"
            try:
                return self.chain.minted_token_ids(collection, *window)
            except NetworkFailure as e:
                logger.warning("[SCAN] Log window %d-%d failed: %s", window[0], window[1], e)
                return f"blocks {window[0]}-{window[1]}: {e}"

        token_ids: set[int] = set()
        failures: list[str] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for result in pool.map(fetch, self.block_windows(latest)):
                if isinstance(result, str):
                    failures.append(result)
                else:
                    token_ids |= result
        return token_ids, failures

    def full_scan(self, collection: str, target_hash: str, stop: threading.Event | None = None) -> DuplicateMatch:
        target = normalize_content_hash(target_hash)
        if not target:
            return DuplicateMatch.absent()
        stop = stop or threading.Event()
        try:
            latest = self.chain.block_number()
            token_ids, problems = self.minted_token_ids(collection, latest, stop)
            logger.info("[SCAN] Full scan: %d minted token(s) up to block %d", len(token_ids), latest)
            for token_id in sorted(token_ids):
                if stop.is_set():
                    return DuplicateMatch.degraded("cancelled")
                match = self._check_token(collection, token_id, target, problems)
                if match:
                    return match
        except NetworkFailure as e:
            logger.warning("[SCAN] Full scan degraded: %s", e)
            return DuplicateMatch.degraded(str(e))

        if stop.is_set():
            return DuplicateMatch.degraded("cancelled")
        if problems:
            logger.warning("[SCAN] Full scan: %d read(s) failed", len(problems))
        return _no_match(problems)

    # ── Orchestration ────────────────────────────────────────────────────────

    async def check_duplicate(self, collection: str, target_hash: str, timeout: float | None = 3.0) -> DuplicateMatch:
        """Fast path, then the full scan only if the fast path found nothing.

        One deadline covers both paths. When it passes, the running path is
        told to stop and awaited, so no ledger or gateway read outlives the
        call; the result is a degraded "not found" with cause ``"timeout"``.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        quick = await self._bounded(self.quick_check, collection, target_hash, deadline)
        if quick.found:
            return quick

        full = await self._bounded(self.full_scan, collection, target_hash, deadline)
        if full.found or full.is_degraded:
            return full
        return quick if quick.is_degraded else full

    @staticmethod
    async def _bounded(fn, collection: str, target_hash: str, deadline: float | None) -> DuplicateMatch:
        loop = asyncio.get_running_loop()
        remaining = None if deadline is None else deadline - loop.time()
        if remaining is not None and remaining <= 0:
            logger.warning("[SCAN] No time left for %s", fn.__name__)
            return DuplicateMatch.degraded("timeout")

        stop = threading.Event()
        task = asyncio.ensure_future(asyncio.to_thread(fn, collection, target_hash, stop))
        try:
            return await asyncio.wait_for(asyncio.shield(task), remaining)
        except asyncio.TimeoutError:
            logger.warning("[SCAN] %s timed out", fn.__name__)
            return DuplicateMatch.degraded("timeout")
        finally:
            stop.set()
            if not task.done():
                # at most the one token or window read in flight
                await asyncio.wait([task])
