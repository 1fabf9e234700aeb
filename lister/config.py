"""Configuration loader for the lister.

Non-secret settings come from config/listing.yaml (or $LISTER_CONFIG).
Secrets and fee overrides come from the environment, which the runner
populates from .env via python-dotenv.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator

from lister.errors import ConfigMissing
from lister.models import NATIVE_TOKEN_ADDRESS, BondingCurveState, CurrencyOption
from lister.pricing import DaytimeGuard, validate_weights

WORKSPACE = Path(__file__).resolve().parent.parent
CONFIG_DIR = WORKSPACE / "config"
DEFAULT_CONFIG = CONFIG_DIR / "listing.yaml"


class CurrencyConfig(BaseModel):
    address: str = NATIVE_TOKEN_ADDRESS
    price: Decimal
    decimals: int = Field(default=18, ge=0, le=36)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=3.0, ge=0)


class GasConfig(BaseModel):
    """Fee bidding overrides in wei. None leaves the choice to web3."""

    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None


class BondingCurveConfig(BaseModel):
    token_id: int = 2
    currency: str = "ETH"
    start_price: Decimal = Decimal("0.00001")
    max_price: Decimal = Decimal("0.69")
    total_supply: int = Field(default=666, gt=0)
    # Starting assumptions; not read back from chain on startup.
    sold_count: int = Field(default=0, ge=0)
    last_index: int = Field(default=0, ge=0)
    poll_interval_seconds: float = Field(default=600, gt=0)
    listing_delay_seconds: float = Field(default=2, ge=0)
    error_delay_seconds: float = Field(default=300, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @model_validator(mode="after")
    def _check_curve(self) -> BondingCurveConfig:
        if self.max_price < self.start_price:
            raise ValueError("max_price must be >= start_price")
        if self.sold_count > self.total_supply:
            raise ValueError("sold_count cannot exceed total_supply")
        return self

    def initial_state(self) -> BondingCurveState:
        return BondingCurveState(
            start_price=self.start_price,
            max_price=self.max_price,
            total_supply=self.total_supply,
            sold_count=self.sold_count,
            last_index=self.last_index,
        )


class DaytimeGuardConfig(BaseModel):
    start_hour: int = Field(default=13, ge=0, le=23)
    end_hour: int = Field(default=19, ge=0, le=24)
    currencies: list[str] = Field(default_factory=lambda: ["ASTR"], min_length=1)

    def to_guard(self) -> DaytimeGuard:
        return DaytimeGuard(self.start_hour, self.end_hour, tuple(self.currencies))


class HourlyConfig(BaseModel):
    token_id: int = 0
    weights: dict[str, float] = Field(default_factory=lambda: {"ASTR": 0.65, "ETH": 0.35})
    scheduled_currencies: list[str] = Field(default_factory=lambda: ["ETH", "ASTR"], min_length=1)
    daytime_guard: DaytimeGuardConfig | None = Field(default_factory=DaytimeGuardConfig)
    list_on_start: bool = True
    poll_interval_seconds: float = Field(default=600, gt=0)
    listing_delay_seconds: float = Field(default=0, ge=0)
    error_delay_seconds: float = Field(default=3, ge=0)
    retry: RetryConfig = Field(default_factory=lambda: RetryConfig(max_attempts=4))

    @model_validator(mode="after")
    def _check_weights(self) -> HourlyConfig:
        validate_weights(self.weights)
        return self


class ListerConfig(BaseModel):
    nft_contract: str
    marketplace: str
    listing_duration_days: int = Field(default=90, gt=0)
    erc20_approval_amount: Decimal = Decimal("100000")
    log_file: str = "logs/lister-log.txt"
    timezone: str | None = None
    gas: GasConfig = Field(default_factory=GasConfig)
    currencies: dict[str, CurrencyConfig]
    bonding_curve: BondingCurveConfig = Field(default_factory=BondingCurveConfig)
    hourly: HourlyConfig = Field(default_factory=HourlyConfig)

    @model_validator(mode="after")
    def _check_currency_refs(self) -> ListerConfig:
        referenced = {self.bonding_curve.currency}
        referenced.update(self.hourly.weights)
        referenced.update(self.hourly.scheduled_currencies)
        if self.hourly.daytime_guard is not None:
            referenced.update(self.hourly.daytime_guard.currencies)
        unknown = sorted(referenced - set(self.currencies))
        if unknown:
            raise ValueError(f"unknown currencies referenced: {', '.join(unknown)}")
        return self

    def currency_option(self, symbol: str) -> CurrencyOption:
        c = self.currencies[symbol]
        return CurrencyOption(
            symbol=symbol,
            contract_address=c.address,
            unit_price=c.price,
            decimals=c.decimals,
        )

    def log_path(self) -> Path:
        path = Path(self.log_file)
        return path if path.is_absolute() else WORKSPACE / path


class Credentials(BaseModel):
    private_key: SecretStr
    rpc_url: str


def load_config(path: Path | None = None) -> ListerConfig:
    """Load and validate the YAML config. Raises ConfigMissing."""
    if path is None:
        env_path = os.environ.get("LISTER_CONFIG", "")
        path = Path(env_path) if env_path else DEFAULT_CONFIG
    if not path.exists():
        raise ConfigMissing(f"Config file not found: {path}")
    data: dict[str, Any] = yaml.safe_load(path.read_text()) or {}
    try:
        return ListerConfig(**data)
    except ValidationError as e:
        raise ConfigMissing(f"Invalid config {path}: {e}") from e


def load_credentials(env: Mapping[str, str] | None = None) -> Credentials:
    """Read PRIVATE_KEY and RPC_URL. Raises ConfigMissing if either is absent."""
    env = os.environ if env is None else env
    private_key = env.get("PRIVATE_KEY", "").strip()
    rpc_url = env.get("RPC_URL", "").strip()
    if not private_key:
        raise ConfigMissing("Private key not found. Please add PRIVATE_KEY to your .env file")
    if not rpc_url:
        raise ConfigMissing("RPC URL not found. Please add RPC_URL to your .env file")
    return Credentials(private_key=SecretStr(private_key), rpc_url=rpc_url)


def apply_gas_overrides(gas: GasConfig, env: Mapping[str, str] | None = None) -> GasConfig:
    """MAX_FEE_PER_GAS / MAX_PRIORITY_FEE_PER_GAS in the environment win over YAML."""
    env = os.environ if env is None else env
    updates: dict[str, int] = {}
    for key in ("max_fee_per_gas", "max_priority_fee_per_gas"):
        raw = env.get(key.upper(), "").strip()
        if raw:
            try:
                updates[key] = int(raw)
            except ValueError as e:
                raise ConfigMissing(f"{key.upper()} must be an integer wei amount, got {raw!r}") from e
    return gas.model_copy(update=updates) if updates else gas
