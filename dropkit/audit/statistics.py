"""Drop statistics: funding, claim and rescue history from Transfer logs.

Two scans run concurrently over the drop's token, sharing one progress
counter:
  - Transfer(from=drop): claims, plus rescues (recipient == drop owner)
  - Transfer(to=drop):   funding

Amounts stay integers in base units; format_units renders them.
Test vs production is a heuristic on amount size: small transfers are
test traffic, in-between amounts count as production.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, localcontext
from typing import Protocol

from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address
from pydantic import BaseModel, ConfigDict, Field

from dropkit.audit.scanner import (
    ChunkStats,
    FailedRange,
    LogScanner,
    LogSource,
    ScanConfig,
    ScanProgress,
    merge_stats,
)
from dropkit.chain.events import TransferEvent, transfer_filter
from dropkit.clients.base import APIError
from dropkit.utils.async_batch import batch_gather

log = logging.getLogger("audit.statistics")

TOP_FUNDERS = 5
DEFAULT_DECIMALS = 18
DEFAULT_SYMBOL = "tokens"


class ChainReader(Protocol):
    async def get_owner(self, address: str) -> str: ...
    async def get_decimals(self, token: str) -> int: ...
    async def get_symbol(self, token: str) -> str: ...
    async def get_balance(self, token: str, account: str) -> int: ...
    async def get_block_number(self) -> int: ...
    async def get_block_timestamp(self, block: int) -> int: ...


class TestDetectionConfig(BaseModel):
    """Thresholds in whole tokens, separate for claims and funding."""

    __test__ = False  # not a pytest class

    model_config = ConfigDict(frozen=True)

    max_test_claim: Decimal = Decimal(1)
    min_production_claim: Decimal = Decimal(10)
    max_test_funding: Decimal = Decimal(50)
    min_production_funding: Decimal = Decimal(100)

    @staticmethod
    def _is_test(tokens: Decimal, max_test: Decimal, min_production: Decimal) -> bool:
        if tokens >= min_production:
            return False
        # in-between amounts count as production
        return tokens <= max_test

    def is_test_claim(self, amount: int, decimals: int) -> bool:
        return self._is_test(to_tokens(amount, decimals), self.max_test_claim, self.min_production_claim)

    def is_test_funding(self, amount: int, decimals: int) -> bool:
        return self._is_test(to_tokens(amount, decimals), self.max_test_funding, self.min_production_funding)


def to_tokens(amount: int, decimals: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = max(28, len(str(abs(amount))) + decimals + 2)
        return Decimal(amount).scaleb(-decimals)


def format_units(amount: int, decimals: int) -> str:
    """Base units -> decimal string, no trailing zeros (1500000000000000000, 18 -> '1.5')."""
    text = format(to_tokens(amount, decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part * 100 / whole, 1)


class Funding(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender: str
    amount: int
    block_number: int
    is_test: bool


class ClaimInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    block_number: int
    timestamp: datetime | None = None


class Timeline(BaseModel):
    first_claim: ClaimInfo | None = None
    last_claim: ClaimInfo | None = None


class Rescue(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: int
    block_number: int
    timestamp: datetime | None = None


class ClassBreakdown(BaseModel):
    """Totals for one class of activity (test or production)."""

    total_funded: int = 0
    total_claims: int = 0
    total_claimed: int = 0
    claimed_percentage: float = 0.0
    top_funders: list[Funding] = []


class DropStatistics(BaseModel):
    drop: str
    token: str
    symbol: str = DEFAULT_SYMBOL
    decimals: int = DEFAULT_DECIMALS
    owner: str | None = None
    from_block: int
    to_block: int

    total_funded: int = 0
    total_claims: int = 0
    total_claimed: int = 0
    remaining_balance: int = 0
    claimed_percentage: float = 0.0
    remaining_percentage: float = 0.0

    top_funders: list[Funding] = []
    timeline: Timeline = Field(default_factory=Timeline)
    rescued_amount: int = 0
    rescues: list[Rescue] = []

    chunk_stats: list[ChunkStats] = []
    failed_ranges: list[FailedRange] = []

    test: ClassBreakdown | None = None
    production: ClassBreakdown | None = None

    @property
    def complete(self) -> bool:
        return not self.failed_ranges


def _top(fundings: list[Funding]) -> list[Funding]:
    return sorted(fundings, key=lambda f: f.amount, reverse=True)[:TOP_FUNDERS]


class StatisticsCollector:
    """Rebuilds a drop's history from chain logs."""

    def __init__(
        self,
        reader: ChainReader,
        source: LogSource | None = None,
        scan_config: ScanConfig | None = None,
        detection: TestDetectionConfig | None = None,
    ):
        self.reader = reader
        self.source = source or reader
        self.scan_config = scan_config or ScanConfig()
        self.detection = detection or TestDetectionConfig()

    async def collect(
        self,
        drop: str,
        token: str,
        start_block: int = 0,
        end_block: int | None = None,
    ) -> DropStatistics:
        drop = to_checksum_address(drop)
        token = to_checksum_address(token)

        owner = await self._read_owner(drop)
        decimals, symbol = await self._read_token_info(token)
        if end_block is None:
            end_block = await self.reader.get_block_number()

        progress = ScanProgress()
        scanner = LogScanner(self.source, self.scan_config, progress)
        outgoing, incoming = await asyncio.gather(
            scanner.scan(transfer_filter(token, from_address=drop), start_block, end_block),
            scanner.scan(transfer_filter(token, to_address=drop), start_block, end_block),
        )

        claims: list[TransferEvent] = []
        rescues: list[TransferEvent] = []
        for event in outgoing.events:
            transfer = TransferEvent.from_log(event)
            if owner is not None and transfer.to_address == owner:
                rescues.append(transfer)
            else:
                claims.append(transfer)
        fundings = [TransferEvent.from_log(e) for e in incoming.events]

        log.info(
            "Drop %s: %s claims, %s rescues, %s fundings in blocks %s-%s",
            drop, len(claims), len(rescues), len(fundings), start_block, end_block,
        )

        remaining = await self.reader.get_balance(token, drop)

        funding_rows = [
            Funding(
                sender=f.from_address,
                amount=f.value,
                block_number=f.block_number,
                is_test=self.detection.is_test_funding(f.value, decimals),
            )
            for f in fundings
        ]
        claim_is_test = [self.detection.is_test_claim(c.value, decimals) for c in claims]

        total_funded = sum(f.amount for f in funding_rows)
        total_claimed = sum(c.value for c in claims)

        timestamps = await self._timestamps(
            [c.block_number for c in claims[:1] + claims[1:][-1:]] + [r.block_number for r in rescues]
        )

        stats = DropStatistics(
            drop=drop,
            token=token,
            symbol=symbol,
            decimals=decimals,
            owner=owner,
            from_block=start_block,
            to_block=end_block,
            total_funded=total_funded,
            total_claims=len(claims),
            total_claimed=total_claimed,
            remaining_balance=remaining,
            claimed_percentage=percentage(total_claimed, total_funded),
            remaining_percentage=percentage(remaining, total_funded),
            top_funders=_top(funding_rows),
            timeline=self._timeline(claims, timestamps),
            rescued_amount=sum(r.value for r in rescues),
            rescues=[
                Rescue(amount=r.value, block_number=r.block_number, timestamp=timestamps.get(r.block_number))
                for r in rescues
            ],
            chunk_stats=sorted(
                merge_stats(outgoing.stats, incoming.stats).values(),
                key=lambda s: s.chunk_size,
                reverse=True,
            ),
            failed_ranges=sorted(
                outgoing.failed_ranges + incoming.failed_ranges,
                key=lambda r: (r.from_block, r.to_block),
            ),
        )

        if any(claim_is_test) or any(f.is_test for f in funding_rows):
            stats.test, stats.production = self._breakdown(claims, claim_is_test, funding_rows)

        if not stats.complete:
            log.warning("Statistics for %s are incomplete: %s unreadable range(s)", drop, len(stats.failed_ranges))
        return stats

    async def _read_owner(self, drop: str) -> str | None:
        try:
            return to_checksum_address(await self.reader.get_owner(drop))
        except (APIError, DecodingError, ValueError) as e:
            log.warning("Could not read owner of %s, rescues will count as claims: %s", drop, e)
            return None

    async def _read_token_info(self, token: str) -> tuple[int, str]:
        try:
            return await self.reader.get_decimals(token), await self.reader.get_symbol(token)
        except (APIError, DecodingError, ValueError) as e:
            log.warning("Could not read decimals/symbol of %s, assuming %s %s: %s", token, DEFAULT_DECIMALS, DEFAULT_SYMBOL, e)
            return DEFAULT_DECIMALS, DEFAULT_SYMBOL

    async def _timestamps(self, blocks: list[int]) -> dict[int, datetime]:
        unique = sorted(set(blocks))
        values = await batch_gather(unique, self.reader.get_block_timestamp, max_concurrent=5)
        return {
            block: datetime.fromtimestamp(ts, tz=timezone.utc)
            for block, ts in zip(unique, values)
            if ts is not None
        }

    @staticmethod
    def _timeline(claims: list[TransferEvent], timestamps: dict[int, datetime]) -> Timeline:
        timeline = Timeline()
        if claims:
            first = claims[0].block_number
            timeline.first_claim = ClaimInfo(block_number=first, timestamp=timestamps.get(first))
        if len(claims) > 1:
            last = claims[-1].block_number
            timeline.last_claim = ClaimInfo(block_number=last, timestamp=timestamps.get(last))
        return timeline

    @staticmethod
    def _breakdown(
        claims: list[TransferEvent],
        claim_is_test: list[bool],
        funding_rows: list[Funding],
    ) -> tuple[ClassBreakdown, ClassBreakdown]:
        result = []
        for want_test in (True, False):
            funded = [f for f in funding_rows if f.is_test == want_test]
            claimed = [c for c, is_test in zip(claims, claim_is_test) if is_test == want_test]
            total_funded = sum(f.amount for f in funded)
            total_claimed = sum(c.value for c in claimed)
            result.append(ClassBreakdown(
                total_funded=total_funded,
                total_claims=len(claimed),
                total_claimed=total_claimed,
                claimed_percentage=percentage(total_claimed, total_funded),
                top_funders=_top(funded),
            ))
        return result[0], result[1]


def _short(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def _ts(value: datetime | None) -> str:
    return f" ({value.isoformat()})" if value else ""


def format_statistics(stats: DropStatistics) -> list[str]:
    """Human-readable report, one line per entry."""
    def fmt(amount: int) -> str:
        return format_units(amount, stats.decimals)

    sym = stats.symbol
    lines: list[str] = []

    if stats.test and stats.production:
        lines.append("Statistics breakdown:")
        lines.append(f"  {'':<15} {'Test':>18} {'Production':>18} {'Total':>18}")
        lines.append(
            f"  {'Funded':<15} {fmt(stats.test.total_funded):>18} "
            f"{fmt(stats.production.total_funded):>18} {fmt(stats.total_funded):>18}"
        )
        lines.append(
            f"  {'Claims':<15} {stats.test.total_claims:>18} "
            f"{stats.production.total_claims:>18} {stats.total_claims:>18}"
        )
        lines.append(
            f"  {'Amount claimed':<15} "
            f"{fmt(stats.test.total_claimed) + f' ({stats.test.claimed_percentage:.1f}%)':>18} "
            f"{fmt(stats.production.total_claimed) + f' ({stats.production.claimed_percentage:.1f}%)':>18} "
            f"{fmt(stats.total_claimed) + f' ({stats.claimed_percentage:.1f}%)':>18}"
        )
        lines.append(f"  Remaining balance: {fmt(stats.remaining_balance)} {sym} ({stats.remaining_percentage:.1f}%)")
    else:
        lines.append("Claims statistics:")
        lines.append(f"  - Total funded: {fmt(stats.total_funded)} {sym}")
        lines.append(f"  - Total claims: {stats.total_claims}")
        lines.append(f"  - Total claimed: {fmt(stats.total_claimed)} {sym} ({stats.claimed_percentage:.1f}%)")
        lines.append(f"  - Remaining balance: {fmt(stats.remaining_balance)} {sym} ({stats.remaining_percentage:.1f}%)")

    if stats.top_funders:
        lines.append("Top funding transactions:")
        for i, f in enumerate(stats.top_funders, 1):
            marker = " [test]" if f.is_test else ""
            lines.append(f"  {i}. {fmt(f.amount)} {sym} from {_short(f.sender)} (block {f.block_number}){marker}")

    if stats.rescues:
        lines.append("Rescue transactions:")
        lines.append(f"  - Total rescued: {fmt(stats.rescued_amount)} {sym}")
        for i, r in enumerate(stats.rescues, 1):
            lines.append(f"  {i}. {fmt(r.amount)} {sym} (block {r.block_number}){_ts(r.timestamp)}")

    if stats.timeline.first_claim or stats.timeline.last_claim:
        lines.append("Timeline:")
        if stats.timeline.first_claim:
            c = stats.timeline.first_claim
            lines.append(f"  - First claim: block {c.block_number}{_ts(c.timestamp)}")
        if stats.timeline.last_claim:
            c = stats.timeline.last_claim
            lines.append(f"  - Last claim: block {c.block_number}{_ts(c.timestamp)}")

    if stats.chunk_stats:
        lines.append("Query performance:")
        lines.append("  Chunk size | Chunks | Attempts | 1st try | Total | 1st rate | Total rate")
        for s in stats.chunk_stats:
            lines.append(
                f"  {s.chunk_size:>10} | {s.chunks:>6} | {s.attempts:>8} | {s.first_try_successes:>7} | "
                f"{s.successes:>5} | {s.first_try_rate:>7.1f}% | {s.total_rate:>9.1f}%"
            )
        best = max(stats.chunk_stats, key=lambda s: (s.first_try_rate >= 90, s.first_try_rate, s.chunk_size))
        lines.append(f"  Optimal chunk size: {best.chunk_size} blocks ({best.first_try_rate:.1f}% first-try success)")

    if stats.failed_ranges:
        lines.append("Unreadable block ranges (statistics are incomplete):")
        for r in stats.failed_ranges:
            lines.append(f"  - {r.from_block}-{r.to_block}: {r.error}")

    return lines
