"""Resilient log scanner for wide block ranges.

Public RPC providers cap eth_getLogs by block span, result count and
response time, and the caps differ per provider and per chain. The scanner
does not try to know them:

  1. one optimistic query over the whole range
  2. on failure, fixed-size chunks in bounded concurrent batches
  3. each chunk retried with exponential backoff
  4. a chunk that keeps failing is split into the next smaller size and
     its pieces are scanned in order; events from pieces that succeed are
     kept
  5. a range that fails at the smallest size is recorded, never dropped
     silently

Every query issued is counted in ChunkStats under the size that was
requested, so a caller can see which sizes its provider tolerates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from dropkit.chain.events import LogEvent, LogFilter
from dropkit.utils.async_batch import gather_in_batches
from dropkit.utils.retry import scan_retrying

log = logging.getLogger("audit.scanner")

DEFAULT_CHUNK_SIZES = (10000, 5000, 2500, 500, 100)


class LogSource(Protocol):
    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[LogEvent]:
        ...


@dataclass(frozen=True)
class ScanConfig:
    """Scanner tuning. Sizes must be strictly decreasing."""

    chunk_sizes: tuple[int, ...] = DEFAULT_CHUNK_SIZES
    max_concurrent: int = 5
    retries: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 5.0
    optimistic: bool = True

    def __post_init__(self) -> None:
        if not self.chunk_sizes:
            raise ValueError("chunk_sizes must not be empty")
        if any(s <= 0 for s in self.chunk_sizes):
            raise ValueError(f"chunk_sizes must be positive: {self.chunk_sizes}")
        if any(a <= b for a, b in zip(self.chunk_sizes, self.chunk_sizes[1:])):
            raise ValueError(f"chunk_sizes must be strictly decreasing: {self.chunk_sizes}")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.retries < 1:
            raise ValueError("retries must be >= 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ScanConfig:
        data = dict(data or {})
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "chunk_sizes" in known:
            known["chunk_sizes"] = tuple(int(s) for s in known["chunk_sizes"])
        return cls(**known)


@dataclass
class ChunkStats:
    """Query counters for one requested chunk size."""

    chunk_size: int
    chunks: int = 0
    attempts: int = 0
    successes: int = 0
    first_try_successes: int = 0

    @property
    def first_try_rate(self) -> float:
        return 100.0 * self.first_try_successes / self.chunks if self.chunks else 0.0

    @property
    def total_rate(self) -> float:
        return 100.0 * self.successes / self.chunks if self.chunks else 0.0

    def merge(self, other: ChunkStats) -> ChunkStats:
        if other.chunk_size != self.chunk_size:
            raise ValueError(f"Cannot merge stats for {self.chunk_size} and {other.chunk_size}")
        return ChunkStats(
            chunk_size=self.chunk_size,
            chunks=self.chunks + other.chunks,
            attempts=self.attempts + other.attempts,
            successes=self.successes + other.successes,
            first_try_successes=self.first_try_successes + other.first_try_successes,
        )


def merge_stats(*stat_maps: dict[int, ChunkStats]) -> dict[int, ChunkStats]:
    merged: dict[int, ChunkStats] = {}
    for stats in stat_maps:
        for size, entry in stats.items():
            merged[size] = merged[size].merge(entry) if size in merged else ChunkStats(**vars(entry))
    return merged


@dataclass
class ScanProgress:
    """Completed/total chunk counter, shareable between concurrent scans."""

    total: int = 0
    completed: int = 0

    def add_total(self, count: int) -> None:
        self.total += count

    def advance(self, count: int = 1) -> None:
        self.completed += count

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block interval."""

    from_block: int
    to_block: int

    def __post_init__(self) -> None:
        if self.to_block < self.from_block:
            raise ValueError(f"Empty block range {self.from_block}-{self.to_block}")

    @property
    def size(self) -> int:
        return self.to_block - self.from_block + 1

    def split(self, chunk_size: int) -> list[BlockRange]:
        return [
            BlockRange(start, min(start + chunk_size - 1, self.to_block))
            for start in range(self.from_block, self.to_block + 1, chunk_size)
        ]


@dataclass(frozen=True)
class FailedRange:
    from_block: int
    to_block: int
    error: str = ""


@dataclass
class ScanResult:
    events: list[LogEvent] = field(default_factory=list)
    stats: dict[int, ChunkStats] = field(default_factory=dict)
    failed_ranges: list[FailedRange] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_ranges

    @property
    def total_attempts(self) -> int:
        return sum(s.attempts for s in self.stats.values())

    def merge(self, other: ScanResult) -> ScanResult:
        """Union of two results; a log seen by both scans is kept once."""
        unique = {(e.block_number, e.log_index, e.address): e for e in [*self.events, *other.events]}
        return ScanResult(
            events=sorted(unique.values(), key=lambda e: e.sort_key),
            stats=merge_stats(self.stats, other.stats),
            failed_ranges=sorted(
                [*self.failed_ranges, *other.failed_ranges],
                key=lambda r: (r.from_block, r.to_block),
            ),
        )


class LogScanner:
    """Fetches every log matching a filter over a block range."""

    def __init__(
        self,
        source: LogSource,
        config: ScanConfig | None = None,
        progress: ScanProgress | None = None,
    ):
        self.source = source
        self.config = config or ScanConfig()
        self.progress = progress or ScanProgress()

    async def scan(self, log_filter: LogFilter, from_block: int, to_block: int) -> ScanResult:
        full = BlockRange(from_block, to_block)
        stats: dict[int, ChunkStats] = {}

        if self.config.optimistic:
            entry = self._entry(stats, full.size)
            entry.chunks += 1
            entry.attempts += 1
            try:
                events = await self.source.get_logs(log_filter, from_block, to_block)
            except Exception as e:
                log.debug("Optimistic query %s-%s failed (%s), scanning in chunks", from_block, to_block, e)
            else:
                entry.successes += 1
                entry.first_try_successes += 1
                covered = len(full.split(self.config.chunk_sizes[0]))
                self.progress.add_total(covered)
                self.progress.advance(covered)
                return ScanResult(events=sorted(events, key=lambda ev: ev.sort_key), stats=stats)

        chunks = full.split(self.config.chunk_sizes[0])
        self.progress.add_total(len(chunks))
        log.debug("Scanning %s-%s in %s chunks", from_block, to_block, len(chunks))

        async def run(chunk: BlockRange) -> tuple[list[LogEvent], list[FailedRange]]:
            outcome = await self._scan_range(log_filter, chunk, 0, stats)
            self.progress.advance()
            return outcome

        outcomes = await gather_in_batches(chunks, run, batch_size=self.config.max_concurrent)

        events: list[LogEvent] = []
        failed: list[FailedRange] = []
        for chunk_events, chunk_failed in outcomes:
            events.extend(chunk_events)
            failed.extend(chunk_failed)

        if failed:
            log.warning(
                "Scan %s-%s incomplete: %s range(s) unreadable, first %s-%s",
                from_block, to_block, len(failed), failed[0].from_block, failed[0].to_block,
            )
        return ScanResult(
            events=sorted(events, key=lambda ev: ev.sort_key),
            stats=stats,
            failed_ranges=failed,
        )

    async def _scan_range(
        self,
        log_filter: LogFilter,
        rng: BlockRange,
        level: int,
        stats: dict[int, ChunkStats],
    ) -> tuple[list[LogEvent], list[FailedRange]]:
        sizes = self.config.chunk_sizes
        entry = self._entry(stats, sizes[level])
        entry.chunks += 1
        tries = 0

        try:
            async for attempt in scan_retrying(self.config.retries, self.config.backoff_base, self.config.backoff_max):
                with attempt:
                    tries += 1
                    entry.attempts += 1
                    events = await self.source.get_logs(log_filter, rng.from_block, rng.to_block)
        except Exception as e:
            last_error = e
        else:
            entry.successes += 1
            if tries == 1:
                entry.first_try_successes += 1
            return events, []

        next_level = next((i for i in range(level + 1, len(sizes)) if sizes[i] < rng.size), None)
        if next_level is None:
            log.warning(
                "Blocks %s-%s unreadable after %s attempts: %s",
                rng.from_block, rng.to_block, tries, last_error,
            )
            return [], [FailedRange(rng.from_block, rng.to_block, str(last_error))]

        log.debug(
            "Blocks %s-%s failed %s times, splitting into %s-block pieces",
            rng.from_block, rng.to_block, tries, sizes[next_level],
        )
        events = []
        failed: list[FailedRange] = []
        for piece in rng.split(sizes[next_level]):
            piece_events, piece_failed = await self._scan_range(log_filter, piece, next_level, stats)
            events.extend(piece_events)
            failed.extend(piece_failed)
        return events, failed

    @staticmethod
    def _entry(stats: dict[int, ChunkStats], size: int) -> ChunkStats:
        if size not in stats:
            stats[size] = ChunkStats(chunk_size=size)
        return stats[size]
