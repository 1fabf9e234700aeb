"""Balance watcher — reads the holder's token balance and classifies changes.

Reads are never cached or retried here; a failed read propagates as
NetworkReadFailure and the scheduler decides what to do with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Union

from lister.models import BalanceObservation
from lister.utils.clock import Clock

log = logging.getLogger("lister.watcher")


class BalanceReader(Protocol):
    async def get_token_balance(self, holder: str, token_id: int) -> int: ...


@dataclass(frozen=True)
class Increased:
    delta: int


@dataclass(frozen=True)
class Decreased:
    delta: int


@dataclass(frozen=True)
class Unchanged:
    pass


BalanceChange = Union[Increased, Decreased, Unchanged]


def classify(previous: int, current: int) -> BalanceChange:
    if current < previous:
        return Decreased(previous - current)
    if current > previous:
        return Increased(current - previous)
    return Unchanged()


class BalanceWatcher:
    """Single-read balance observer for one holder and token id."""

    def __init__(self, reader: BalanceReader, holder: str, token_id: int, clock: Clock):
        self._reader = reader
        self.holder = holder
        self.token_id = token_id
        self._clock = clock

    async def observe(self) -> BalanceObservation:
        balance = await self._reader.get_token_balance(self.holder, self.token_id)
        log.info("Current balance for token ID %d: %d", self.token_id, balance)
        return BalanceObservation(timestamp=self._clock.now(), observed_balance=balance)

    async def compare(self, previous: BalanceObservation) -> tuple[BalanceObservation, BalanceChange]:
        """Observe once and classify against `previous`."""
        current = await self.observe()
        return current, classify(previous.observed_balance, current.observed_balance)
