"""Listing scheduler — decides when to list, how many, and at what price.

Two strategies share one submission path:

  FixedIntervalScheduler  (bonding-curve)
    sleep poll_interval → observe → on Decreased(n) list n units priced on
    the linear bonding curve → repeat until sold_count == total_supply

  HourAlignedScheduler  (hourly)
    wait for the next top of the hour, sub-polling balance every
    poll_interval. A mid-wait decrease breaks the wait and re-lists the sold
    units with the weighted currency policy. A completed wait runs the
    scheduled action, shaped by the daytime guard. Stops at zero balance.

Every submission: price policy → with_retry(create_listing) → counters
advanced → balance re-observed. A balance that did not drop after a listing
is logged as a warning only.

A cycle error is logged, followed by error_delay, and the loop carries on.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable

from lister.clients.marketplace import MarketClient
from lister.config import ListerConfig, RetryConfig
from lister.errors import (
    ListerError,
    NetworkReadFailure,
    SchedulingCycleFailure,
    TransactionFailure,
)
from lister.guards.killswitch import check_killswitch
from lister.models import (
    BondingCurveState,
    CurrencyOption,
    ListingRequest,
    Phase,
    SchedulerState,
    TxReceipt,
)
from lister.pricing import (
    RandomSource,
    SystemRandomSource,
    linear_price,
    weighted_currency_choice,
)
from lister.utils.clock import Clock, StopToken, next_top_of_hour
from lister.utils.retry import with_retry
from lister.watcher import BalanceChange, BalanceWatcher, Decreased, Increased

log = logging.getLogger("lister.scheduler")

HaltCheck = Callable[[], dict[str, Any]]


class ListingScheduler:
    """Shared loop, startup and submission path. Subclasses supply run_cycle."""

    name = "listing"

    def __init__(
        self,
        market: MarketClient,
        config: ListerConfig,
        clock: Clock,
        token_id: int,
        retry: RetryConfig,
        error_delay: float,
        listing_delay: float = 0.0,
        stop: StopToken | None = None,
        halt_check: HaltCheck = check_killswitch,
    ):
        self.market = market
        self.config = config
        self.clock = clock
        self.token_id = token_id
        self.retry = retry
        self.error_delay = error_delay
        self.listing_delay = listing_delay
        self.stop = stop or StopToken()
        self._halt_check = halt_check
        self.watcher = BalanceWatcher(market, market.address, token_id, clock)

    # ── Hooks ─────────────────────────────────────────────────────────

    def initial_state(self) -> SchedulerState:
        return SchedulerState()

    def listing_currencies(self) -> list[str]:
        raise NotImplementedError

    def is_done(self, state: SchedulerState) -> bool:
        raise NotImplementedError

    async def run_cycle(self, state: SchedulerState) -> SchedulerState:
        raise NotImplementedError

    def after_listing(self, state: SchedulerState) -> None:
        """Called once per successful listing, before confirmation."""

    async def list_one(self, state: SchedulerState) -> SchedulerState:
        raise NotImplementedError

    # ── Startup ───────────────────────────────────────────────────────

    async def startup(self) -> SchedulerState:
        """Observe the balance and make sure the marketplace may move tokens."""
        state = self.initial_state()
        state.started_at = self.clock.now()

        first = await self.watcher.observe()
        log.info("Found %d copies of token ID %d", first.observed_balance, self.token_id)

        await self.ensure_approvals()

        state.previous = await self.watcher.observe()
        state.phase = Phase.DONE if self.is_done(state) else Phase.IDLE
        return state

    async def ensure_approvals(self) -> None:
        holder = self.market.address
        if await self.market.is_marketplace_approved(holder):
            log.info("Marketplace already approved to transfer NFTs")
        else:
            log.info("Approving marketplace to transfer NFTs...")
            receipt = await self._retry(
                lambda: self.market.set_approval_for_all(self.market.marketplace, True),
                "setApprovalForAll",
            )
            log.info("NFT approval transaction successful: %s", receipt.transaction_hash)

        for symbol in self.listing_currencies():
            currency = self.config.currency_option(symbol)
            if currency.is_native:
                continue
            amount = self.config.erc20_approval_amount
            log.info("Setting approval for %s tokens...", symbol)
            receipt = await self._retry(
                lambda c=currency: self.market.approve_spender(c, self.market.marketplace, amount),
                f"approve {symbol}",
            )
            log.info("%s token approval transaction successful: %s", symbol, receipt.transaction_hash)

    # ── Submission ────────────────────────────────────────────────────

    async def _retry(self, action: Callable[[], Any], operation: str) -> TxReceipt:
        return await with_retry(
            action,
            max_attempts=self.retry.max_attempts,
            initial_delay=self.retry.initial_delay_seconds,
            operation=operation,
            sleep=self.clock.sleep,
        )

    async def submit_listing(
        self,
        state: SchedulerState,
        currency: CurrencyOption,
        unit_price: Decimal,
        label: str,
    ) -> SchedulerState:
        """List one unit, advance counters, then re-read the balance."""
        state.phase = Phase.LISTING
        request = ListingRequest.for_one_unit(
            asset_contract=self.config.nft_contract,
            token_id=self.token_id,
            currency=currency,
            unit_price=unit_price,
            start_time=self.clock.now(),
            duration_days=self.config.listing_duration_days,
        )
        log.info("Creating %s at price %s %s...", label, unit_price, currency.symbol)
        try:
            await self._retry(lambda: self.market.create_listing(request), label)
        except TransactionFailure as e:
            if e.retryable or not e.tx_hash:
                raise
            log.warning(
                "%s was sent as %s but not confirmed; counting it as listed: %s",
                label, e.tx_hash, e,
            )

        state.listing_count += 1
        self.after_listing(state)
        log.info(
            "Listed 1 copy of token ID %d at %s %s (%d listings this run)",
            self.token_id, unit_price, currency.symbol, state.listing_count,
        )

        # The listing is on-chain from here on; a failed read must not fail the cycle.
        before = state.balance
        try:
            state.previous = await self.watcher.observe()
        except NetworkReadFailure as e:
            log.warning("Could not confirm %s, keeping balance %d: %s", label, before, e)
            return state
        if state.balance >= before:
            log.warning(
                "Token balance did not decrease after %s (%d -> %d). "
                "The marketplace might not be taking custody of the token.",
                label, before, state.balance,
            )
        return state

    async def compare_balance(self, state: SchedulerState) -> tuple[int, BalanceChange]:
        """Observe once, classify against the tracked balance and track the new one.

        Returns the balance tracked before this read along with the change.
        """
        if state.previous is None:
            raise ListerError("Balance was never observed; call startup() first")
        previous = state.balance
        current, change = await self.watcher.compare(state.previous)
        state.previous = current
        return previous, change

    async def create_pending(self, state: SchedulerState) -> SchedulerState:
        """Work off pending_listings one unit at a time.

        The counter drops only after a listing succeeds, so units whose
        submission failed are picked up again by the next cycle.
        """
        log.info("Creating %d listing(s) this round...", state.pending_listings)
        while state.pending_listings > 0:
            state = await self.list_one(state)
            state.pending_listings -= 1
            if state.pending_listings and self.listing_delay:
                await self.clock.sleep(self.listing_delay)
        return state

    # ── Loop ──────────────────────────────────────────────────────────

    def _halted(self) -> bool:
        if self.stop.is_set:
            return True
        result = self._halt_check()
        if result.get("status") == "ACTIVE":
            log.warning("%s Stopping scheduler.", result.get("message", "Halt requested."))
            self.stop.set(result.get("message", "halt"))
            return True
        return False

    async def run(self, max_cycles: int | None = None) -> SchedulerState:
        """Run until done, stopped, or `max_cycles` cycles have been attempted."""
        state = await self.startup()

        while state.phase is not Phase.DONE:
            if max_cycles is not None and state.cycle >= max_cycles:
                break
            if self._halted():
                break
            state.cycle += 1
            try:
                state = await self.run_cycle(state)
            except Exception as e:
                failure = SchedulingCycleFailure(state.cycle, e)
                state.last_error = str(failure)
                log.error("Error during listing process: %s", failure)
                await self.clock.sleep(self.error_delay)
                continue
            if self.is_done(state):
                state.phase = Phase.DONE

        self._log_summary(state)
        return state

    def _log_summary(self, state: SchedulerState) -> None:
        elapsed = 0.0
        if state.started_at is not None:
            elapsed = (self.clock.now() - state.started_at).total_seconds() / 60
        if state.phase is Phase.DONE:
            log.info(
                "All tokens listed! Total: %d listings in %.2f minutes",
                state.listing_count, elapsed,
            )
        else:
            log.info(
                "Scheduler stopped after %d cycles: %d listings in %.2f minutes%s",
                state.cycle, state.listing_count, elapsed,
                f" ({self.stop.reason})" if self.stop.reason else "",
            )


class FixedIntervalScheduler(ListingScheduler):
    """Bonding-curve variant: poll every interval, re-list what sold."""

    name = "bonding-curve"

    def __init__(self, market: MarketClient, config: ListerConfig, clock: Clock, **kwargs: Any):
        curve = config.bonding_curve
        super().__init__(
            market,
            config,
            clock,
            token_id=curve.token_id,
            retry=curve.retry,
            error_delay=curve.error_delay_seconds,
            listing_delay=curve.listing_delay_seconds,
            **kwargs,
        )
        self.curve_config = curve
        self.currency = config.currency_option(curve.currency)

    def initial_state(self) -> SchedulerState:
        return SchedulerState(curve=self.curve_config.initial_state())

    def listing_currencies(self) -> list[str]:
        return [self.curve_config.currency]

    def is_done(self, state: SchedulerState) -> bool:
        return state.curve is not None and state.curve.exhausted

    @staticmethod
    def _curve(state: SchedulerState) -> BondingCurveState:
        if state.curve is None:
            raise ListerError("Bonding curve state missing; call startup() first")
        return state.curve

    def after_listing(self, state: SchedulerState) -> None:
        state.curve = self._curve(state).advance()

    async def startup(self) -> SchedulerState:
        c = self.curve_config
        log.info("Starting bonding curve listing sequence")
        log.info("Current state: %d tokens already purchased", c.sold_count)
        log.info(
            "Will continue listing remaining tokens with prices from %s %s to %s %s",
            c.start_price, c.currency, c.max_price, c.currency,
        )
        return await super().startup()

    async def list_one(self, state: SchedulerState) -> SchedulerState:
        """List the next unit at the curve price for the current sold_count."""
        curve = self._curve(state)
        price = linear_price(curve.sold_count, curve.total_supply, curve.start_price, curve.max_price)
        return await self.submit_listing(
            state, self.currency, price, f"listing for token {curve.last_index + 1}"
        )

    async def run_cycle(self, state: SchedulerState) -> SchedulerState:
        state.phase = Phase.WAITING
        interval = self.curve_config.poll_interval_seconds
        log.info("Waiting %.1f minutes before next balance check...", interval / 60)
        await self.clock.sleep(interval)
        if self.stop.is_set:
            return state

        previous, change = await self.compare_balance(state)

        if isinstance(change, Decreased):
            count = max(0, min(change.delta, self._curve(state).remaining - state.pending_listings))
            log.info("Balance decreased by %d tokens. Creating %d new listings...", change.delta, count)
            state.pending_listings += count
        elif isinstance(change, Increased):
            log.info(
                "Balance increased from %d to %d. Updating tracking.",
                previous, state.balance,
            )
        else:
            log.info("Balance unchanged at %d. No new listings needed.", state.balance)

        if state.pending_listings > 0:
            state = await self.create_pending(state)

        state.phase = Phase.IDLE
        return state


class HourAlignedScheduler(ListingScheduler):
    """Dual-currency variant: hourly listings plus re-listing of sold units."""

    name = "hourly"

    def __init__(
        self,
        market: MarketClient,
        config: ListerConfig,
        clock: Clock,
        random_source: RandomSource | None = None,
        **kwargs: Any,
    ):
        hourly = config.hourly
        super().__init__(
            market,
            config,
            clock,
            token_id=hourly.token_id,
            retry=hourly.retry,
            error_delay=hourly.error_delay_seconds,
            listing_delay=hourly.listing_delay_seconds,
            **kwargs,
        )
        self.hourly = hourly
        self.guard = hourly.daytime_guard.to_guard() if hourly.daytime_guard else None
        self.random_source = random_source or SystemRandomSource()

    def listing_currencies(self) -> list[str]:
        symbols = list(self.hourly.weights) + list(self.hourly.scheduled_currencies)
        if self.guard is not None:
            symbols += list(self.guard.currencies)
        return list(dict.fromkeys(symbols))

    def is_done(self, state: SchedulerState) -> bool:
        return state.previous is not None and state.balance <= 0

    async def startup(self) -> SchedulerState:
        h = self.hourly
        log.info("Starting hourly listing process")
        log.info("Scheduled listings at the top of each hour: %s", ", ".join(h.scheduled_currencies))
        if self.guard is not None:
            log.info(
                "Between %02d:00 and %02d:00 only: %s",
                self.guard.start_hour, self.guard.end_hour, ", ".join(self.guard.currencies),
            )
        log.info(
            "For balance decreases, currency weights: %s",
            ", ".join(f"{c} {w:.0%}" for c, w in h.weights.items()),
        )
        log.info("Checking for balance decreases every %.1f minutes", h.poll_interval_seconds / 60)

        state = await super().startup()
        if state.phase is Phase.DONE:
            log.info("No copies of token ID %d available to list. Exiting.", self.token_id)
            return state
        if h.list_on_start:
            state.pending_listings = 1
        return state

    async def list_with_policy(
        self, state: SchedulerState, forced: str | None = None
    ) -> SchedulerState:
        """One listing whose currency comes from the weighted policy.

        Sale-driven listings use the plain weighted draw. Only the scheduled
        action consults the daytime guard.
        """
        symbol = weighted_currency_choice(
            self.hourly.weights, forced=forced, source=self.random_source
        )
        if forced:
            log.info("Using forced currency %s for listing #%d", symbol, state.listing_count + 1)
        else:
            log.info("Using probability-based currency %s for listing #%d", symbol, state.listing_count + 1)
        currency = self.config.currency_option(symbol)
        return await self.submit_listing(
            state, currency, currency.unit_price, f"listing #{state.listing_count + 1}"
        )

    async def list_one(self, state: SchedulerState) -> SchedulerState:
        return await self.list_with_policy(state)

    async def wait_for_top_of_hour(self, state: SchedulerState) -> tuple[SchedulerState, bool]:
        """Sleep until the next hour boundary, sub-polling the balance.

        Returns (state, completed). completed is False when a decrease broke
        the wait early or the scheduler was stopped.
        """
        state.phase = Phase.WAITING
        target = next_top_of_hour(self.clock.now())
        interval = self.hourly.poll_interval_seconds
        remaining = (target - self.clock.now()).total_seconds()
        log.info(
            "Scheduled next listings for %s, waiting %.1f minutes",
            target.strftime("%H:%M"), remaining / 60,
        )

        while remaining > 0:
            await self.clock.sleep(min(interval, remaining))
            if self.stop.is_set:
                return state, False

            previous, change = await self.compare_balance(state)
            remaining = (target - self.clock.now()).total_seconds()

            if isinstance(change, Decreased):
                log.info(
                    "Token balance DECREASED during wait (from %d to %d). %d tokens lost.",
                    previous, state.balance, change.delta,
                )
                log.info("Creating %d new listings to match the number of tokens lost...", change.delta)
                state.pending_listings = change.delta
                return state, False
            if isinstance(change, Increased):
                log.info(
                    "Token balance INCREASED during wait (from %d to %d). Continuing to wait.",
                    previous, state.balance,
                )
            else:
                log.info(
                    "Balance check: still %d tokens. Remaining wait: %.1f minutes",
                    state.balance, max(remaining, 0) / 60,
                )

        return state, True

    def scheduled_currencies(self) -> list[str]:
        now = self.clock.now()
        guard = self.guard
        daytime = guard is not None and guard.is_active(now)
        log.info("TIME CHECK: current time is %s, daytime window active = %s", now.strftime("%H:%M"), daytime)
        if guard is not None and daytime:
            return list(guard.currencies)
        return list(self.hourly.scheduled_currencies)

    async def run_scheduled(self, state: SchedulerState) -> SchedulerState:
        symbols = self.scheduled_currencies()
        log.info("Creating top-of-hour listings: %s", ", ".join(symbols))
        for i, symbol in enumerate(symbols):
            if i > 0 and state.balance <= 0:
                log.info("No tokens left, skipping remaining scheduled listings")
                break
            state = await self.list_with_policy(state, forced=symbol)
        return state

    async def run_cycle(self, state: SchedulerState) -> SchedulerState:
        if state.pending_listings > 0:
            state = await self.create_pending(state)
            if self.is_done(state):
                return state

        state, completed = await self.wait_for_top_of_hour(state)
        if completed and not self.is_done(state):
            state = await self.run_scheduled(state)

        state.phase = Phase.IDLE
        return state


STRATEGIES: dict[str, type[ListingScheduler]] = {
    FixedIntervalScheduler.name: FixedIntervalScheduler,
    HourAlignedScheduler.name: HourAlignedScheduler,
}


def build_scheduler(
    strategy: str,
    market: MarketClient,
    config: ListerConfig,
    clock: Clock,
    **kwargs: Any,
) -> ListingScheduler:
    try:
        cls = STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown strategy {strategy!r}; expected one of {sorted(STRATEGIES)}") from None
    return cls(market, config, clock, **kwargs)
