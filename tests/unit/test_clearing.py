"""
Unit tests for the clearing engine.

Tests cover:
1. Price-time priority ordering
2. Uniform clearing price and boundary partial fill
3. Under-subscribed and empty auctions
4. Determinism for a given snapshot
"""

import random

import pytest

from onelaunch.core.auction import BidSnapshot, LaunchSnapshot, clear_auction, order_bids
from onelaunch.core.errors import InvalidInput
from onelaunch.utils.validation import price_to_micros


def make_bid(bid_id, price, quantity, created_at, bidder=None):
    return BidSnapshot(
        bid_id=bid_id,
        bidder=bidder or f"bidder-{bid_id}",
        price=price_to_micros(price),
        quantity=quantity,
        created_at=created_at,
    )


@pytest.fixture
def three_bids():
    return [
        make_bid("a", "5.0", 100, 1),
        make_bid("b", "5.0", 50, 2),
        make_bid("c", "3.0", 200, 3),
    ]


class TestOrdering:
    """Tests for price-time priority."""

    def test_price_then_time(self, three_bids):
        ranked = order_bids(reversed(three_bids))
        assert [b.bid_id for b in ranked] == ["a", "b", "c"]

    def test_bid_id_breaks_exact_ties(self):
        bids = [make_bid("z", "1", 1, 5), make_bid("m", "1", 1, 5)]
        assert [b.bid_id for b in order_bids(bids)] == ["m", "z"]

    def test_zero_quantity_dropped(self):
        bids = [make_bid("a", "1", 0, 1), make_bid("b", "1", 1, 2)]
        assert [b.bid_id for b in order_bids(bids)] == ["b"]


class TestClearAuction:
    """Tests for clear_auction."""

    def test_oversubscribed_partial_at_boundary(self, three_bids):
        result = clear_auction(LaunchSnapshot("L1", 120, 4, three_bids))

        assert result.clearing_price == 5_000_000
        assert result.allocations() == {"a": 100, "b": 20}
        assert result.allocation("c") == 0
        assert result.successful_bids_count == 2
        assert result.filled_quantity == 120
        assert result.losing_bid_ids == ("c",)
        assert result.fills[1].is_partial
        assert result.is_fully_subscribed
        assert result.total_raised == 5_000_000 * 120
        assert result.version == 4

    def test_undersubscribed_fills_everyone(self, three_bids):
        result = clear_auction(LaunchSnapshot("L1", 400, 0, three_bids))

        assert result.clearing_price == 3_000_000
        assert result.filled_quantity == 350
        assert result.successful_bids_count == 3
        assert result.losing_bid_ids == ()
        assert not result.is_fully_subscribed
        assert all(not f.is_partial for f in result.fills)

    def test_exact_fill_stops_walk(self, three_bids):
        result = clear_auction(LaunchSnapshot("L1", 150, 0, three_bids))

        assert result.clearing_price == 5_000_000
        assert result.allocations() == {"a": 100, "b": 50}
        assert result.losing_bid_ids == ("c",)

    def test_single_bid_larger_than_target(self):
        result = clear_auction(LaunchSnapshot("L1", 10, 0, [make_bid("a", "2", 1000, 1)]))
        assert result.allocations() == {"a": 10}
        assert result.clearing_price == 2_000_000

    def test_no_bids(self):
        result = clear_auction(LaunchSnapshot("L1", 100, 0, []))

        assert result.is_empty
        assert result.clearing_price is None
        assert result.filled_quantity == 0
        assert result.successful_bids_count == 0
        assert result.fills == ()
        assert result.total_raised == 0

    def test_only_zero_quantity_bids(self):
        result = clear_auction(LaunchSnapshot("L1", 100, 0, [make_bid("a", "9", 0, 1)]))
        assert result.is_empty
        assert result.losing_bid_ids == ()

    def test_earlier_bid_wins_tie_at_boundary(self):
        bids = [make_bid("late", "1", 10, 20), make_bid("early", "1", 10, 10)]
        result = clear_auction(LaunchSnapshot("L1", 15, 0, bids))
        assert result.allocations() == {"early": 10, "late": 5}

    def test_everyone_pays_clearing_price(self):
        bids = [make_bid("hi", "10", 5, 1), make_bid("lo", "2", 10, 2)]
        result = clear_auction(LaunchSnapshot("L1", 10, 0, bids))
        assert result.clearing_price == 2_000_000
        assert result.total_raised == 2_000_000 * 10

    def test_negative_terms_rejected(self):
        bad = BidSnapshot("x", "bidder", -1, 10, 1)
        with pytest.raises(InvalidInput):
            clear_auction(LaunchSnapshot("L1", 10, 0, [bad]))

    def test_non_positive_target_rejected(self):
        with pytest.raises(InvalidInput):
            LaunchSnapshot("L1", 0, 0, [])

    def test_snapshot_freezes_bid_list(self, three_bids):
        snapshot = LaunchSnapshot("L1", 120, 0, three_bids)
        three_bids.append(make_bid("d", "100", 1000, 0))
        assert len(snapshot.bids) == 3


class TestClearingProperties:
    """Randomized checks of clearing invariants."""

    @pytest.mark.parametrize("seed", range(20))
    def test_invariants(self, seed):
        rng = random.Random(seed)
        bids = [
            BidSnapshot(
                bid_id=f"b{i}",
                bidder=f"u{rng.randrange(5)}",
                price=rng.randrange(1, 20) * 250_000,
                quantity=rng.randrange(0, 60),
                created_at=rng.randrange(100),
            )
            for i in range(rng.randrange(1, 30))
        ]
        target = rng.randrange(1, 500)
        result = clear_auction(LaunchSnapshot("L1", target, 0, bids))

        assert result.filled_quantity <= target
        assert sum(f.filled for f in result.fills) == result.filled_quantity
        assert all(f.filled > 0 for f in result.fills)

        partial = [f for f in result.fills if f.is_partial]
        assert len(partial) <= 1
        if partial:
            assert partial[0] is result.fills[-1]

        if result.fills:
            assert result.clearing_price == min(f.price for f in result.fills)
            winner_ids = {f.bid_id for f in result.fills}
            for bid in bids:
                if bid.bid_id not in winner_ids and bid.quantity > 0:
                    assert bid.bid_id in result.losing_bid_ids
                    assert bid.price <= result.clearing_price

        total_demand = sum(b.quantity for b in bids)
        assert result.filled_quantity == min(target, total_demand)

    def test_input_order_does_not_matter(self, three_bids):
        snapshot = LaunchSnapshot("L1", 120, 0, three_bids)
        shuffled = list(three_bids)
        random.Random(7).shuffle(shuffled)

        assert clear_auction(snapshot) == clear_auction(LaunchSnapshot("L1", 120, 0, shuffled))
        assert clear_auction(snapshot) == clear_auction(snapshot)
