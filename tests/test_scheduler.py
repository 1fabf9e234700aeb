"""Tests for the listing scheduler.

Covers:
- Fixed-interval (bonding-curve) strategy: sale detection, pricing, supply cap
- Hour-aligned strategy: daytime guard, mid-wait break, zero balance
- Shared loop: retries, confirmation warnings, cycle errors, halt, approvals
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from lister.errors import ListerError, TransactionFailure
from lister.models import ListingRequest, Phase, SchedulerState, TxReceipt
from lister.pricing import linear_price
from lister.scheduler import (
    FixedIntervalScheduler,
    HourAlignedScheduler,
    build_scheduler,
)
from lister.utils.clock import StopToken
from tests.mocks.mock_market import (
    MARKETPLACE,
    NFT_CONTRACT,
    FakeClock,
    FakeMarket,
    SequenceSource,
    clear_halt,
    make_config,
)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 1, hour, minute, tzinfo=timezone.utc)


class ReadFailsAfterListing(FakeMarket):
    """The balance read right after the first listing times out."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._armed = True

    async def create_listing(self, request: ListingRequest) -> TxReceipt:
        receipt = await super().create_listing(request)
        if self._armed:
            self._armed = False
            self.fail_next_reads = 1
        return receipt


class UnconfirmedOnce(FakeMarket):
    """First listing is sent but its receipt never arrives."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.attempts = 0

    async def create_listing(self, request: ListingRequest) -> TxReceipt:
        self.attempts += 1
        if self.attempts == 1:
            self.listings.append(request)
            raise TransactionFailure(
                "createListing sent but unconfirmed", operation="createListing",
                tx_hash="0xabc", retryable=False,
            )
        return await super().create_listing(request)


def bonding(market: FakeMarket, clock: FakeClock, **config) -> FixedIntervalScheduler:
    return FixedIntervalScheduler(market, make_config(**config), clock, halt_check=clear_halt)


def hourly(
    market: FakeMarket, clock: FakeClock, draws: list[float] | None = None, **config
) -> HourAlignedScheduler:
    return HourAlignedScheduler(
        market,
        make_config(**config),
        clock,
        random_source=SequenceSource(draws or [0.5]),
        halt_check=clear_halt,
    )


# ── Fixed interval ────────────────────────────────────────────────────


class TestFixedInterval:
    @pytest.mark.asyncio
    async def test_lists_only_after_decrease(self):
        """Observations 10,10,7,7,7 → exactly 3 listings, all after 10→7."""
        market = FakeMarket(balance=10)
        sched = bonding(market, FakeClock())
        state = await sched.startup()

        created = []
        for balance in [10, 7, 7, 7]:
            market.balance = balance
            state = await sched.run_cycle(state)
            created.append(len(market.listings))

        assert created == [0, 3, 3, 3]

    @pytest.mark.asyncio
    async def test_single_sale_end_to_end(self):
        """sold_count=3 of 666, one sale → sold_count=4 and one listing priced at 3."""
        market = FakeMarket(balance=10)
        clock = FakeClock()
        sched = bonding(market, clock)
        state = await sched.startup()
        assert state.curve.sold_count == 3

        market.balance = 9
        state = await sched.run_cycle(state)

        assert state.curve.sold_count == 4
        assert state.curve.last_index == 4
        assert len(market.listings) == 1
        req = market.listings[0]
        assert req.unit_price == linear_price(3, 666, Decimal("0.00001"), Decimal("0.69"))
        assert req.currency.symbol == "ETH"
        assert req.quantity == 1
        assert req.token_id == 2
        assert req.asset_contract == NFT_CONTRACT
        assert req.end_time - req.start_time == timedelta(days=90)

    @pytest.mark.asyncio
    async def test_prices_rise_along_curve(self):
        market = FakeMarket(balance=10)
        clock = FakeClock()
        sched = bonding(market, clock)
        state = await sched.startup()

        market.balance = 7
        state = await sched.run_cycle(state)

        prices = [r.unit_price for r in market.listings]
        assert prices == sorted(prices)
        assert len(set(prices)) == 3
        assert clock.sleeps == [600, 2, 2]
        assert state.curve.sold_count == 6

    @pytest.mark.asyncio
    async def test_increase_only_updates_tracking(self):
        market = FakeMarket(balance=10)
        sched = bonding(market, FakeClock())
        state = await sched.startup()

        market.balance = 12
        state = await sched.run_cycle(state)

        assert market.listings == []
        assert state.balance == 12
        assert state.curve.sold_count == 3

    @pytest.mark.asyncio
    async def test_supply_cap_reaches_done(self):
        market = FakeMarket(balance=10)

        def sell_five(n, _seconds):
            if n == 1:
                market.balance -= 5

        clock = FakeClock(on_sleep=sell_five)
        sched = bonding(market, clock, bonding_curve={"sold_count": 664, "last_index": 664})

        state = await sched.run(max_cycles=5)

        assert state.phase is Phase.DONE
        assert state.cycle == 1
        assert len(market.listings) == 2
        assert state.curve.sold_count == 666
        assert market.listings[-1].unit_price == linear_price(
            665, 666, Decimal("0.00001"), Decimal("0.69")
        )

    @pytest.mark.asyncio
    async def test_exhausted_curve_is_done_at_startup(self):
        market = FakeMarket(balance=10)
        sched = bonding(market, FakeClock(), bonding_curve={"sold_count": 666})
        state = await sched.run()
        assert state.phase is Phase.DONE
        assert state.cycle == 0


# ── Hour aligned ──────────────────────────────────────────────────────


class TestHourAligned:
    @pytest.mark.asyncio
    async def test_scheduled_action_outside_daytime_lists_each_currency(self):
        market = FakeMarket(balance=50)
        clock = FakeClock(now=at(10, 15))
        sched = hourly(market, clock)
        state = await sched.startup()

        state = await sched.run_cycle(state)

        assert clock.sleeps == [600, 600, 600, 600, 300]
        assert market.listed_currencies == ["ETH", "ASTR"]
        assert [r.unit_price for r in market.listings] == [Decimal("0.0005"), Decimal("30")]
        assert state.listing_count == 2

    @pytest.mark.asyncio
    async def test_scheduled_action_in_daytime_lists_restricted_currency_once(self):
        market = FakeMarket(balance=50)
        clock = FakeClock(now=at(12, 30))
        sched = hourly(market, clock)
        state = await sched.startup()

        state = await sched.run_cycle(state)

        assert clock.sleeps == [600, 600, 600]
        assert market.listed_currencies == ["ASTR"]
        assert state.listing_count == 1

    @pytest.mark.asyncio
    async def test_mid_wait_decrease_breaks_early_and_ignores_guard(self):
        market = FakeMarket(balance=50)

        def sale_on_second_poll(n, _seconds):
            if n == 2:
                market.balance = 48

        clock = FakeClock(now=at(13, 15), on_sleep=sale_on_second_poll)
        sched = hourly(market, clock, draws=[0.9, 0.1])
        state = await sched.startup()

        state = await sched.run_cycle(state)
        assert market.listings == []
        assert state.pending_listings == 2
        assert clock.sleeps == [600, 600]

        state = await sched.run_cycle(state)
        # sale-driven listings use the weighted draw even inside the daytime window
        assert market.listed_currencies[:2] == ["ETH", "ASTR"]
        # then the 14:00 scheduled action follows the guard
        assert market.listed_currencies[2:] == ["ASTR"]
        assert state.pending_listings == 0

    @pytest.mark.asyncio
    async def test_increase_during_wait_keeps_waiting(self):
        market = FakeMarket(balance=50)

        def restock(n, _seconds):
            if n == 1:
                market.balance = 60

        clock = FakeClock(now=at(10, 40), on_sleep=restock)
        sched = hourly(market, clock)
        state = await sched.startup()

        state = await sched.run_cycle(state)

        assert clock.sleeps == [600, 600]
        assert market.listed_currencies == ["ETH", "ASTR"]
        assert state.balance == 60

    @pytest.mark.asyncio
    async def test_list_on_start(self):
        market = FakeMarket(balance=50)
        clock = FakeClock(now=at(10, 15))
        sched = hourly(market, clock, draws=[0.2], hourly={"list_on_start": True})
        state = await sched.startup()
        assert state.pending_listings == 1

        state = await sched.run_cycle(state)

        assert market.listed_currencies == ["ASTR", "ETH", "ASTR"]

    @pytest.mark.asyncio
    async def test_zero_balance_at_startup_is_done(self):
        market = FakeMarket(balance=0)
        sched = hourly(market, FakeClock(), hourly={"list_on_start": True})
        state = await sched.run()
        assert state.phase is Phase.DONE
        assert state.cycle == 0
        assert market.listings == []

    @pytest.mark.asyncio
    async def test_last_token_skips_second_scheduled_listing(self):
        market = FakeMarket(balance=1, custody=True)
        clock = FakeClock(now=at(10, 15))
        sched = hourly(market, clock)

        state = await sched.run(max_cycles=3)

        assert market.listed_currencies == ["ETH"]
        assert state.phase is Phase.DONE
        assert state.cycle == 1

    @pytest.mark.asyncio
    async def test_no_guard_configured(self):
        market = FakeMarket(balance=50)
        clock = FakeClock(now=at(14, 15))
        sched = hourly(market, clock, hourly={"daytime_guard": None})
        state = await sched.startup()
        await sched.run_cycle(state)
        assert market.listed_currencies == ["ETH", "ASTR"]


# ── Shared behaviour ──────────────────────────────────────────────────


class TestSubmission:
    @pytest.mark.asyncio
    async def test_listing_retried_with_backoff(self):
        market = FakeMarket(balance=10)
        market.fail_listings = 2
        clock = FakeClock()
        sched = bonding(market, clock)
        state = await sched.startup()

        market.balance = 9
        state = await sched.run_cycle(state)

        assert len(market.listings) == 1
        assert clock.sleeps == [600, 3.0, 6.0]
        assert state.curve.sold_count == 4

    @pytest.mark.asyncio
    async def test_unconfirmed_listing_warns_but_advances(self, caplog):
        caplog.set_level(logging.INFO, logger="lister")
        market = FakeMarket(balance=10, custody=False)
        sched = bonding(market, FakeClock())
        state = await sched.startup()

        market.balance = 9
        state = await sched.run_cycle(state)

        assert state.listing_count == 1
        assert state.curve.sold_count == 4
        assert any("did not decrease" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_confirmed_listing_no_warning(self, caplog):
        caplog.set_level(logging.INFO, logger="lister")
        market = FakeMarket(balance=10, custody=True)
        sched = bonding(market, FakeClock())
        state = await sched.startup()

        market.balance = 9
        state = await sched.run_cycle(state)

        assert state.balance == 8
        assert not any("did not decrease" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_failed_confirmation_read_does_not_relist(self, caplog):
        caplog.set_level(logging.WARNING, logger="lister")
        market = ReadFailsAfterListing(balance=10)

        def sell_one(n, _seconds):
            if n == 1:
                market.balance -= 1

        sched = bonding(market, FakeClock(on_sleep=sell_one))
        state = await sched.run(max_cycles=2)

        assert len(market.listings) == 1
        assert state.listing_count == 1
        assert state.curve.sold_count == 4
        assert state.curve.last_index == 4
        assert state.pending_listings == 0
        assert state.last_error == ""
        assert any("Could not confirm" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_sent_but_unconfirmed_listing_not_resent(self):
        market = UnconfirmedOnce(balance=10)
        clock = FakeClock()
        sched = bonding(market, clock)
        state = await sched.startup()

        market.balance = 9
        state = await sched.run_cycle(state)

        assert market.attempts == 1
        assert clock.sleeps == [600]
        assert state.listing_count == 1
        assert state.curve.sold_count == 4
        assert state.pending_listings == 0

    @pytest.mark.asyncio
    async def test_compare_before_startup_raises(self):
        sched = bonding(FakeMarket(), FakeClock())
        with pytest.raises(ListerError, match="never observed"):
            await sched.compare_balance(SchedulerState())


class TestLoop:
    @pytest.mark.asyncio
    async def test_cycle_error_is_caught_and_delayed(self):
        market = FakeMarket(balance=10)

        def fail_first_poll(n, _seconds):
            if n == 1:
                market.fail_next_reads = 1

        clock = FakeClock(on_sleep=fail_first_poll)
        sched = bonding(market, clock)

        state = await sched.run(max_cycles=2)

        assert clock.sleeps == [600, 300, 600]
        assert state.cycle == 2
        assert "Cycle 1" in state.last_error
        assert state.phase is not Phase.DONE

    @pytest.mark.asyncio
    async def test_exhausted_retries_do_not_stop_loop(self):
        market = FakeMarket(balance=10)
        market.fail_listings = 10

        def sale(n, _seconds):
            if n == 1:
                market.balance = 9

        clock = FakeClock(on_sleep=sale)
        sched = bonding(market, clock)

        state = await sched.run(max_cycles=2)

        assert state.cycle == 2
        assert "failed after 3 attempts" in state.last_error
        assert state.curve.sold_count == 3
        # the unsold unit stays owed for the next cycle
        assert state.pending_listings == 1
        assert market.fail_listings == 4

    @pytest.mark.asyncio
    async def test_killswitch_stops_before_cycle(self):
        market = FakeMarket(balance=10)
        sched = FixedIntervalScheduler(
            market,
            make_config(),
            FakeClock(),
            halt_check=lambda: {"status": "ACTIVE", "message": "Killswitch is ACTIVE. Reason: test"},
        )

        state = await sched.run(max_cycles=3)

        assert state.cycle == 0
        assert sched.stop.is_set
        assert "test" in sched.stop.reason

    @pytest.mark.asyncio
    async def test_stop_token_set_before_run(self):
        stop = StopToken()
        stop.set("SIGTERM")
        sched = FixedIntervalScheduler(
            FakeMarket(balance=10), make_config(), FakeClock(), stop=stop, halt_check=clear_halt
        )
        state = await sched.run()
        assert state.cycle == 0


class TestStartup:
    @pytest.mark.asyncio
    async def test_sets_nft_approval_when_missing(self):
        market = FakeMarket(balance=10, approved=False)
        await bonding(market, FakeClock()).startup()
        assert market.approvals == [(MARKETPLACE, True)]
        assert market.spender_approvals == []

    @pytest.mark.asyncio
    async def test_skips_nft_approval_when_present(self):
        market = FakeMarket(balance=10, approved=True)
        await bonding(market, FakeClock()).startup()
        assert market.approvals == []

    @pytest.mark.asyncio
    async def test_hourly_approves_erc20_currency(self):
        market = FakeMarket(balance=10)
        await hourly(market, FakeClock()).startup()
        assert market.spender_approvals == [("ASTR", MARKETPLACE, Decimal("100000"))]


class TestBuildScheduler:
    def test_known_strategies(self):
        market, clock, config = FakeMarket(), FakeClock(), make_config()
        assert isinstance(build_scheduler("bonding-curve", market, config, clock), FixedIntervalScheduler)
        assert isinstance(build_scheduler("hourly", market, config, clock), HourAlignedScheduler)

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="Unknown strategy"):
            build_scheduler("dutch-auction", FakeMarket(), make_config(), FakeClock())
