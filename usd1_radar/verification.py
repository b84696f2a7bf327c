"""BonkFun provenance verification with a durable verified set and retry queue.

Each mint moves from unverified to one of three outcomes:

* verified true: a launch/graduate program appears in the pool's or the
  mint's recent transaction history;
* verified false: the mint's history window was read completely and holds no
  such reference;
* inconclusive: any call failed (timeout, rate limit, malformed body, missing
  key). Inconclusive mints go to the retry queue and are never cached as
  negatives. After ``MAX_RETRY_ATTEMPTS`` they are discarded.

Definitive results are kept in memory for ``VERIFICATION_TTL``; positives are
also persisted as a JSON array under ``bonkfun:verified_tokens``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional

import orjson
from cachetools import TTLCache

from . import utils
from .backoff import RETRY_BACKOFF, BackoffPolicy
from .constants import VERIFIED_TOKENS_KEY
from .errors import RadarError, SourceBackingOff, VerificationInconclusive
from .kv import KeyValueStore
from .models import (
    Confidence,
    PendingRetryEntry,
    PoolCandidate,
    VerificationRecord,
    VerificationSource,
)
from .providers.helius import HeliusClient, ProgramScan

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 5
VERIFICATION_TTL = 24 * 3600.0
VERIFIED_SET_TTL = 7 * 24 * 3600.0
DEFAULT_TX_WINDOW = 10
DEFAULT_CALL_DELAY = 0.5
_RECORD_CACHE_SIZE = 100_000


@dataclass(frozen=True, slots=True)
class RetrySummary:
    """Outcome counts of one pass over the retry queue."""

    attempted: int = 0
    promoted: int = 0
    dropped: int = 0
    requeued: int = 0
    discarded: int = 0
    deferred: int = 0


@dataclass(frozen=True, slots=True)
class SweepSummary:
    """Outcome counts of one verification sweep."""

    candidates: int
    checked: int
    positives: int
    negatives: int
    inconclusive: int
    verified_total: int


class VerificationEngine:
    """Sequential Helius checks behind an in-memory record cache and a KV-backed verified set."""

    def __init__(
        self,
        helius: HeliusClient,
        kv: KeyValueStore,
        *,
        tx_window: int = DEFAULT_TX_WINDOW,
        call_delay: float = DEFAULT_CALL_DELAY,
        retry_policy: BackoffPolicy = RETRY_BACKOFF,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        record_ttl: float = VERIFICATION_TTL,
        verified_set_ttl: float = VERIFIED_SET_TTL,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._helius = helius
        self._kv = kv
        self._tx_window = max(1, tx_window)
        self._call_delay = max(0.0, call_delay)
        self._retry_policy = retry_policy
        self._max_attempts = max(1, max_attempts)
        self._verified_set_ttl = verified_set_ttl
        self._clock = clock
        self._sleep = sleep
        self._records: TTLCache = TTLCache(
            maxsize=_RECORD_CACHE_SIZE, ttl=record_ttl, timer=self._now
        )
        self._discarded: TTLCache = TTLCache(
            maxsize=_RECORD_CACHE_SIZE, ttl=record_ttl, timer=self._now
        )
        self._verified: set[str] = set()
        self._pending: Dict[str, PendingRetryEntry] = {}
        self._loaded = False
        self._loaded_at = 0.0
        self._call_lock = asyncio.Lock()
        self._last_call: float | None = None
        self._sweep: asyncio.Task[SweepSummary] | None = None
        self._last_sweep: SweepSummary | None = None

    def _now(self) -> float:
        return self._clock() if self._clock is not None else utils.now_ts()

    # ------------------------------------------------------------------
    # Durable verified set
    # ------------------------------------------------------------------

    async def load(self) -> set[str]:
        """Merge the persisted verified set into memory. Safe to call repeatedly."""

        try:
            raw = await self._kv.get(VERIFIED_TOKENS_KEY)
        except Exception as exc:
            logger.warning("Could not read verified set from KV: %s", exc)
            return set(self._verified)
        stored: set[str] = set()
        if raw:
            try:
                parsed = orjson.loads(raw)
            except orjson.JSONDecodeError:
                logger.warning("Ignoring malformed verified set under %s", VERIFIED_TOKENS_KEY)
                parsed = []
            if isinstance(parsed, list):
                stored = {m for m in parsed if isinstance(m, str) and m}
        self._verified |= stored
        self._loaded = True
        self._loaded_at = self._now()
        if stored:
            logger.info("Loaded %d verified mints from KV", len(stored))
        return set(self._verified)

    async def _persist(self) -> None:
        payload = orjson.dumps(sorted(self._verified)).decode()
        try:
            await self._kv.set(VERIFIED_TOKENS_KEY, payload, ttl=self._verified_set_ttl)
        except Exception as exc:
            logger.warning("Could not persist verified set (%d mints): %s", len(self._verified), exc)
        else:
            logger.debug("Persisted %d verified mints", len(self._verified))

    # ------------------------------------------------------------------
    # Single-mint verification
    # ------------------------------------------------------------------

    def cached_record(self, mint: str) -> VerificationRecord | None:
        """Definitive record from memory or the durable set, if any."""

        record = self._records.get(mint)
        if record is not None:
            return record
        if mint in self._verified:
            return VerificationRecord(
                mint=mint,
                is_bonkfun=True,
                confidence=Confidence.HIGH,
                source=VerificationSource.DURABLE_CACHE,
                verified_at=self._loaded_at or self._now(),
            )
        return None

    async def verify_token(
        self, mint: str, pool_address: str | None = None
    ) -> VerificationRecord | None:
        """Return the definitive record for ``mint`` or ``None`` if inconclusive.

        Inconclusive mints are placed on (or advanced in) the retry queue.
        """

        cached = self.cached_record(mint)
        if cached is not None:
            return cached
        try:
            record = await self._check(mint, pool_address)
        except VerificationInconclusive as exc:
            self._enqueue(mint, pool_address, exc.reason, deferred=exc.deferred)
            return None
        self._settle(record)
        return record

    def _settle(self, record: VerificationRecord) -> None:
        self._records[record.mint] = record
        self._pending.pop(record.mint, None)
        if record.is_bonkfun:
            self._verified.add(record.mint)
        else:
            self._verified.discard(record.mint)

    async def _check(self, mint: str, pool_address: str | None) -> VerificationRecord:
        pool_reason = "no pool address"
        if pool_address:
            try:
                scan = await self._scan(pool_address)
            except RadarError as exc:
                pool_reason = f"pool check: {exc}"
                logger.debug("Pool check for %s inconclusive: %s", mint, exc)
            else:
                if scan.found:
                    return self._record(mint, scan, VerificationSource.POOL_HISTORY)
                pool_reason = "pool history clean"
        try:
            scan = await self._scan(mint)
        except RadarError as exc:
            raise VerificationInconclusive(
                mint,
                f"{pool_reason}; mint check: {exc}",
                deferred=isinstance(exc, SourceBackingOff),
            ) from exc
        return self._record(mint, scan, VerificationSource.MINT_HISTORY)

    def _record(
        self, mint: str, scan: ProgramScan, source: VerificationSource
    ) -> VerificationRecord:
        if scan.found:
            confidence = Confidence.HIGH if scan.platform_config else Confidence.MEDIUM
        else:
            confidence = Confidence.MEDIUM
        return VerificationRecord(
            mint=mint,
            is_bonkfun=scan.found,
            confidence=confidence,
            source=source,
            verified_at=self._now(),
        )

    async def _scan(self, address: str) -> ProgramScan:
        async with self._call_lock:
            if self._last_call is not None and self._call_delay:
                wait = self._call_delay - (time.monotonic() - self._last_call)
                if wait > 0:
                    await self._sleep(wait)
            try:
                return await self._helius.scan_address(address, limit=self._tx_window)
            finally:
                self._last_call = time.monotonic()

    def _enqueue(
        self, mint: str, pool_address: str | None, reason: str, *, deferred: bool = False
    ) -> None:
        now = self._now()
        entry = self._pending.get(mint)
        if entry is None:
            entry = PendingRetryEntry(
                mint=mint,
                pool_address=pool_address,
                attempts=1,
                last_attempt_at=now,
                reason=reason,
            )
            self._pending[mint] = entry
        else:
            if pool_address:
                entry.pool_address = pool_address
            if deferred:
                return
            entry.attempts += 1
            entry.last_attempt_at = now
            entry.reason = reason
        if entry.attempts >= self._max_attempts:
            self._discard(entry)
        else:
            logger.info(
                "Verification of %s inconclusive (attempt %d/%d): %s",
                mint,
                entry.attempts,
                self._max_attempts,
                reason,
            )

    def _discard(self, entry: PendingRetryEntry) -> None:
        self._pending.pop(entry.mint, None)
        self._discarded[entry.mint] = entry.attempts
        logger.warning(
            "Discarding %s after %d inconclusive attempts: %s",
            entry.mint,
            entry.attempts,
            entry.reason,
        )

    # ------------------------------------------------------------------
    # Sweeps and retries
    # ------------------------------------------------------------------

    def _needs_check(self, mint: str) -> bool:
        return (
            self.cached_record(mint) is None
            and mint not in self._pending
            and mint not in self._discarded
        )

    async def verify_pools(
        self, pools: Iterable[PoolCandidate], *, max_new: int | None = None
    ) -> set[str]:
        """Verify unseen mints from ``pools`` and return the verified set.

        Only one sweep runs at a time; concurrent callers join the running one.
        """

        await asyncio.shield(self.start_sweep(pools, max_new=max_new))
        return set(self._verified)

    def start_sweep(
        self, pools: Iterable[PoolCandidate], *, max_new: int | None = None
    ) -> asyncio.Task[SweepSummary]:
        """Start a sweep in the background, or return the one already running."""

        if self._sweep is None or self._sweep.done():
            self._sweep = asyncio.ensure_future(self._run_sweep(list(pools), max_new))
            self._sweep.add_done_callback(self._on_sweep_done)
        else:
            logger.debug("Verification sweep in progress; joining it")
        return self._sweep

    @staticmethod
    def _on_sweep_done(task: asyncio.Task[SweepSummary]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Verification sweep failed: %s", exc, exc_info=exc)

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweep is not None and not self._sweep.done()

    @property
    def last_sweep(self) -> SweepSummary | None:
        return self._last_sweep

    async def _run_sweep(
        self, pools: list[PoolCandidate], max_new: int | None
    ) -> SweepSummary:
        if not self._loaded:
            await self.load()
        seen: set[str] = set()
        todo: list[PoolCandidate] = []
        for pool in pools:
            if pool.token_mint in seen:
                continue
            seen.add(pool.token_mint)
            if self._needs_check(pool.token_mint):
                todo.append(pool)
        candidates = len(todo)
        if max_new is not None and max_new >= 0:
            todo = todo[:max_new]

        positives = negatives = inconclusive = 0
        for pool in todo:
            record = await self.verify_token(pool.token_mint, pool.pool_address)
            if record is None:
                inconclusive += 1
            elif record.is_bonkfun:
                positives += 1
            else:
                negatives += 1
        if positives:
            await self._persist()
        summary = SweepSummary(
            candidates=candidates,
            checked=len(todo),
            positives=positives,
            negatives=negatives,
            inconclusive=inconclusive,
            verified_total=len(self._verified),
        )
        self._last_sweep = summary
        logger.info(
            "Verification sweep: %d new candidates, checked %d (+%d / -%d / ?%d), %d verified",
            summary.candidates,
            summary.checked,
            positives,
            negatives,
            inconclusive,
            summary.verified_total,
        )
        return summary

    async def process_retry_queue(self, now: float | None = None) -> RetrySummary:
        """Retry pending mints whose backoff has elapsed, one at a time."""

        current = self._now() if now is None else now
        ready = [
            entry
            for entry in list(self._pending.values())
            if self._retry_policy.ready(entry.attempts, entry.last_attempt_at, current)
        ]
        if not ready:
            return RetrySummary()
        promoted = dropped = requeued = discarded = deferred = 0
        for entry in ready:
            try:
                record = await self._check(entry.mint, entry.pool_address)
            except VerificationInconclusive as exc:
                if exc.deferred:
                    # Helius is in backoff; no request went out.
                    deferred += 1
                    continue
                entry.attempts += 1
                entry.last_attempt_at = self._now() if now is None else now
                entry.reason = exc.reason
                if entry.attempts >= self._max_attempts:
                    self._discard(entry)
                    discarded += 1
                else:
                    requeued += 1
                continue
            self._settle(record)
            if record.is_bonkfun:
                promoted += 1
            else:
                dropped += 1
        if promoted:
            await self._persist()
        summary = RetrySummary(
            attempted=len(ready),
            promoted=promoted,
            dropped=dropped,
            requeued=requeued,
            discarded=discarded,
            deferred=deferred,
        )
        logger.info(
            "Retry queue: %d attempted, %d promoted, %d dropped, %d requeued, %d discarded, %d deferred",
            summary.attempted,
            promoted,
            dropped,
            requeued,
            discarded,
            deferred,
        )
        return summary

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def verified_mints(self) -> set[str]:
        """Copy of the in-memory verified set; no external calls."""

        return set(self._verified)

    def pending_retries(self) -> list[PendingRetryEntry]:
        return [
            PendingRetryEntry(e.mint, e.pool_address, e.attempts, e.last_attempt_at, e.reason)
            for e in self._pending.values()
        ]

    def stats(self) -> Dict[str, object]:
        last: Optional[SweepSummary] = self._last_sweep
        return {
            "verified": len(self._verified),
            "cachedRecords": len(self._records),
            "pendingRetries": len(self._pending),
            "discarded": len(self._discarded),
            "sweepInProgress": self.sweep_in_progress,
            "lastSweepChecked": last.checked if last else 0,
        }

    async def aclose(self) -> None:
        """Cancel a running sweep."""

        sweep = self._sweep
        if sweep is not None and not sweep.done():
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass


__all__ = [
    "MAX_RETRY_ATTEMPTS",
    "VERIFICATION_TTL",
    "VERIFIED_SET_TTL",
    "RetrySummary",
    "SweepSummary",
    "VerificationEngine",
]
