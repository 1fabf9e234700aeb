"""Error taxonomy for the lister.

ConfigMissing          fatal, aborts startup
NetworkReadFailure     balance / approval reads, propagated to the caller
TransactionFailure     listing / approval submissions, retried by with_retry
ExhaustedRetries       with_retry gave up after max_attempts
SchedulingCycleFailure any error inside one scheduler cycle, logged and skipped
"""

from __future__ import annotations


class ListerError(Exception):
    """Base error. Never carries key material in its message."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ConfigMissing(ListerError):
    """Required configuration (credential, endpoint, file) is absent or invalid."""


class NetworkReadFailure(ListerError):
    """An on-chain read failed."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message, retryable=True)
        self.operation = operation


class TransactionFailure(ListerError):
    """A transaction could not be built, sent, or was reverted."""

    def __init__(
        self, message: str, operation: str = "", tx_hash: str = "", retryable: bool = True
    ):
        super().__init__(message, retryable=retryable)
        self.operation = operation
        self.tx_hash = tx_hash


class ExhaustedRetries(ListerError):
    """Raised once with_retry has seen max_attempts consecutive failures."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            retryable=False,
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class SchedulingCycleFailure(ListerError):
    """Wraps the error that aborted one scheduling cycle."""

    def __init__(self, cycle: int, cause: BaseException):
        super().__init__(f"Cycle {cycle} failed: {cause}", retryable=True)
        self.cycle = cycle
        self.cause = cause
