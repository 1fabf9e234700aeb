"""Runtime records passed between watcher, pricing, scheduler and client."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


@dataclass(frozen=True)
class CurrencyOption:
    """A currency listings can be priced in. Configuration-supplied."""

    symbol: str
    contract_address: str
    unit_price: Decimal
    decimals: int = 18

    @property
    def is_native(self) -> bool:
        return self.contract_address.lower() == NATIVE_TOKEN_ADDRESS.lower()

    def to_base_units(self, amount: Decimal) -> int:
        return int(amount.scaleb(self.decimals))


@dataclass(frozen=True)
class ListingRequest:
    """One direct listing of exactly one unit."""

    asset_contract: str
    token_id: int
    currency: CurrencyOption
    unit_price: Decimal
    start_time: datetime
    end_time: datetime
    quantity: int = 1

    def __post_init__(self) -> None:
        if self.quantity != 1:
            raise ValueError("listings are always for exactly one unit")

    @classmethod
    def for_one_unit(
        cls,
        asset_contract: str,
        token_id: int,
        currency: CurrencyOption,
        unit_price: Decimal,
        start_time: datetime,
        duration_days: int,
    ) -> ListingRequest:
        return cls(
            asset_contract=asset_contract,
            token_id=token_id,
            currency=currency,
            unit_price=unit_price,
            start_time=start_time,
            end_time=start_time + timedelta(days=duration_days),
        )


@dataclass(frozen=True)
class TxReceipt:
    transaction_hash: str
    gas_used: int


@dataclass(frozen=True)
class BalanceObservation:
    timestamp: datetime
    observed_balance: int


@dataclass(frozen=True)
class BondingCurveState:
    """Progress along the bonding curve. Replaced, never mutated in place."""

    start_price: Decimal
    max_price: Decimal
    total_supply: int
    sold_count: int
    last_index: int

    def __post_init__(self) -> None:
        if self.total_supply <= 0:
            raise ValueError("total_supply must be positive")
        if not 0 <= self.sold_count <= self.total_supply:
            raise ValueError(
                f"sold_count {self.sold_count} outside [0, {self.total_supply}]"
            )

    @property
    def remaining(self) -> int:
        return self.total_supply - self.sold_count

    @property
    def exhausted(self) -> bool:
        return self.sold_count >= self.total_supply

    def advance(self) -> BondingCurveState:
        """State after one more confirmed listing."""
        return replace(self, sold_count=self.sold_count + 1, last_index=self.last_index + 1)


class Phase(str, Enum):
    IDLE = "idle"
    LISTING = "listing"
    WAITING = "waiting"
    DONE = "done"


@dataclass
class SchedulerState:
    """Everything one scheduling cycle reads and returns.

    Owned by the scheduler; rebuilt from configuration on every start.
    """

    phase: Phase = Phase.IDLE
    previous: BalanceObservation | None = None
    curve: BondingCurveState | None = None
    listing_count: int = 0
    pending_listings: int = 0
    cycle: int = 0
    started_at: datetime | None = None
    last_error: str = ""

    @property
    def balance(self) -> int:
        return self.previous.observed_balance if self.previous else 0
