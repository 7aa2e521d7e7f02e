"""Tests for drop statistics collection and the text report."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from dropkit.audit.scanner import ScanConfig
from dropkit.audit.statistics import (
    StatisticsCollector,
    TestDetectionConfig,
    format_statistics,
    format_units,
    percentage,
    to_tokens,
)
from dropkit.chain.events import LogEvent, LogFilter
from dropkit.chain.hashing import FULL_WIDTH
from dropkit.chain.leaves import Entitlement
from dropkit.chain.ledger import LocalChain, TokenLedger
from dropkit.chain.merkle import MerkleTree
from dropkit.chain.verifier import CumulativeMerkleDrop
from dropkit.clients.base import APIError
from dropkit.config import get_test_detection_config, load_config
from dropkit.errors import LogQueryError

OWNER = "0x9999999999999999999999999999999999999999"
FUNDER_SMALL = "0x5555555555555555555555555555555555555555"
FUNDER_BIG = "0x6666666666666666666666666666666666666666"
A = "0x1111111111111111111111111111111111111111"
B = "0x2222222222222222222222222222222222222222"
C = "0x3333333333333333333333333333333333333333"

TOKEN = 10**18
FAST = ScanConfig(retries=1, backoff_base=0.0, backoff_max=0.0)


@pytest.fixture
def drop_history():
    """Funded 50 (test) + 1000, claimed 1 (test) + 100 + 200, rescued 49."""
    chain = LocalChain()
    token = TokenLedger(chain, OWNER, symbol="DROP", decimals=18)
    amounts = [1 * TOKEN, 100 * TOKEN, 200 * TOKEN]
    tree = MerkleTree.from_entitlements(
        [Entitlement(account=acct, amount=amt) for acct, amt in zip([A, B, C], amounts)],
        FULL_WIDTH,
    )
    drop = CumulativeMerkleDrop(chain, token, OWNER, tree.root)

    token.mint(FUNDER_SMALL, 50 * TOKEN)
    token.mint(FUNDER_BIG, 1000 * TOKEN)
    token.transfer(FUNDER_SMALL, drop.address, 50 * TOKEN)
    token.transfer(FUNDER_BIG, drop.address, 1000 * TOKEN)

    claim_blocks = []
    for i, (acct, amt) in enumerate(zip([A, B, C], amounts)):
        chain.mine(10)
        drop.claim(acct, amt, tree.root, tree.proof(i))
        claim_blocks.append(chain.block_number)

    chain.mine(5)
    drop.rescue_funds(OWNER, 49 * TOKEN)
    return chain, token, drop, claim_blocks


class AlwaysFailing:
    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[LogEvent]:
        raise LogQueryError("503 from provider", from_block, to_block)


class NoSymbolChain(LocalChain):
    async def get_symbol(self, token: str) -> str:
        raise APIError("eth_call reverted", provider="primary")


# --- Helpers ---


class TestFormatting:
    @pytest.mark.parametrize(
        "amount,decimals,expected",
        [
            (1_500_000_000_000_000_000, 18, "1.5"),
            (10**18, 18, "1"),
            (0, 18, "0"),
            (1, 6, "0.000001"),
            (123, 0, "123"),
            (100, 0, "100"),
        ],
    )
    def test_format_units(self, amount, decimals, expected):
        assert format_units(amount, decimals) == expected

    def test_to_tokens_is_exact(self):
        assert to_tokens(2**96 - 1, 18) == Decimal("79228162514.264337593543950335")

    def test_percentage(self):
        assert percentage(1, 3) == 33.3
        assert percentage(5, 0) == 0.0
        assert percentage(10, 10) == 100.0


class TestTestDetection:
    def test_claim_thresholds(self):
        detection = TestDetectionConfig()
        assert detection.is_test_claim(TOKEN, 18)
        assert not detection.is_test_claim(2 * TOKEN, 18)  # in-between counts as production
        assert not detection.is_test_claim(10 * TOKEN, 18)

    def test_funding_thresholds(self):
        detection = TestDetectionConfig(max_test_funding=Decimal(1), min_production_funding=Decimal(10))
        assert detection.is_test_funding(TOKEN, 18)
        assert not detection.is_test_funding(5 * TOKEN, 18)

    def test_decimals_respected(self):
        assert TestDetectionConfig().is_test_claim(10**6, 6)

    def test_defaults_match_shipped_config(self):
        assert TestDetectionConfig() == get_test_detection_config(config=load_config())


# --- Collector ---


class TestStatisticsCollector:
    @pytest.mark.asyncio
    async def test_totals(self, drop_history):
        chain, token, drop, _ = drop_history
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(drop.address, token.address)

        assert stats.symbol == "DROP"
        assert stats.owner == OWNER
        assert stats.total_funded == 1050 * TOKEN
        assert stats.total_claims == 3
        assert stats.total_claimed == 301 * TOKEN
        assert stats.rescued_amount == 49 * TOKEN
        assert stats.remaining_balance == 700 * TOKEN
        assert stats.claimed_percentage == 28.7
        assert stats.remaining_percentage == 66.7
        assert stats.complete

    @pytest.mark.asyncio
    async def test_top_funders_sorted(self, drop_history):
        chain, token, drop, _ = drop_history
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(drop.address, token.address)
        assert [f.sender for f in stats.top_funders] == [FUNDER_BIG, FUNDER_SMALL]
        assert stats.top_funders[1].is_test

    @pytest.mark.asyncio
    async def test_timeline_and_rescues(self, drop_history):
        chain, token, drop, claim_blocks = drop_history
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(drop.address, token.address)

        assert stats.timeline.first_claim.block_number == claim_blocks[0]
        assert stats.timeline.last_claim.block_number == claim_blocks[-1]
        assert stats.timeline.first_claim.timestamp == datetime.fromtimestamp(
            chain.timestamp(claim_blocks[0]), tz=timezone.utc
        )
        (rescue,) = stats.rescues
        assert rescue.amount == 49 * TOKEN
        assert rescue.timestamp is not None

    @pytest.mark.asyncio
    async def test_test_production_breakdown(self, drop_history):
        chain, token, drop, _ = drop_history
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(drop.address, token.address)

        assert stats.test.total_funded == 50 * TOKEN
        assert stats.test.total_claims == 1
        assert stats.test.claimed_percentage == 2.0
        assert stats.production.total_funded == 1000 * TOKEN
        assert stats.production.total_claims == 2
        assert stats.production.total_claimed == 300 * TOKEN
        assert stats.production.claimed_percentage == 30.0

    @pytest.mark.asyncio
    async def test_no_breakdown_without_test_activity(self, drop_history):
        chain, token, drop, _ = drop_history
        detection = TestDetectionConfig(max_test_claim=Decimal(0), max_test_funding=Decimal(0))
        stats = await StatisticsCollector(chain, scan_config=FAST, detection=detection).collect(
            drop.address, token.address
        )
        assert stats.test is None
        assert stats.production is None

    @pytest.mark.asyncio
    async def test_single_claim_has_no_last_claim(self):
        chain = LocalChain()
        token = TokenLedger(chain, OWNER)
        holder = "0x7777777777777777777777777777777777777777"
        token.mint(holder, 10 * TOKEN)
        token.transfer(holder, A, TOKEN)

        stats = await StatisticsCollector(chain, scan_config=FAST).collect(holder, token.address)

        # holder is not a contract: no owner, so nothing counts as a rescue
        assert stats.owner is None
        assert stats.total_claims == 1
        assert stats.timeline.first_claim is not None
        assert stats.timeline.last_claim is None

    @pytest.mark.asyncio
    async def test_unreadable_symbol_uses_defaults(self):
        chain = NoSymbolChain()
        token = TokenLedger(chain, OWNER, symbol="DROP", decimals=6)
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(OWNER, token.address)
        assert stats.symbol == "tokens"
        assert stats.decimals == 18

    @pytest.mark.asyncio
    async def test_failed_ranges_reported(self, drop_history):
        chain, token, drop, _ = drop_history
        config = ScanConfig(chunk_sizes=(20, 5), retries=1, backoff_base=0.0, backoff_max=0.0)
        stats = await StatisticsCollector(chain, source=AlwaysFailing(), scan_config=config).collect(
            drop.address, token.address
        )
        assert not stats.complete
        assert stats.total_claims == 0
        assert stats.failed_ranges[0].from_block == 0

    @pytest.mark.asyncio
    async def test_chunk_stats_merged_across_scans(self, drop_history):
        chain, token, drop, _ = drop_history
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(drop.address, token.address)
        (entry,) = stats.chunk_stats
        assert entry.chunks == 2
        assert entry.successes == 2
        assert chain.log_queries == 2


# --- Report ---


class TestFormatStatistics:
    @pytest.mark.asyncio
    async def test_breakdown_report(self, drop_history):
        chain, token, drop, _ = drop_history
        stats = await StatisticsCollector(chain, scan_config=FAST).collect(drop.address, token.address)
        lines = format_statistics(stats)

        assert lines[0] == "Statistics breakdown:"
        assert any("Remaining balance: 700 DROP (66.7%)" in line for line in lines)
        assert "Rescue transactions:" in lines
        assert "  - Total rescued: 49 DROP" in lines
        assert "Timeline:" in lines
        assert any(line.startswith("  Optimal chunk size:") for line in lines)

    @pytest.mark.asyncio
    async def test_plain_report(self, drop_history):
        chain, token, drop, _ = drop_history
        detection = TestDetectionConfig(max_test_claim=Decimal(0), max_test_funding=Decimal(0))
        stats = await StatisticsCollector(chain, scan_config=FAST, detection=detection).collect(
            drop.address, token.address
        )
        lines = format_statistics(stats)
        assert lines[0] == "Claims statistics:"
        assert "  - Total claimed: 301 DROP (28.7%)" in lines

    @pytest.mark.asyncio
    async def test_incomplete_report(self, drop_history):
        chain, token, drop, _ = drop_history
        config = ScanConfig(chunk_sizes=(20, 5), retries=1, backoff_base=0.0, backoff_max=0.0)
        stats = await StatisticsCollector(chain, source=AlwaysFailing(), scan_config=config).collect(
            drop.address, token.address
        )
        lines = format_statistics(stats)
        assert "Unreadable block ranges (statistics are incomplete):" in lines
