"""Marketplace client — thirdweb MarketplaceV3 + ERC-1155 edition over web3.

Provides:
- ERC-1155 balance and operator approval reads
- setApprovalForAll for the marketplace
- ERC-20 approve for non-native listing currencies
- DirectListings.createListing for one unit
- Fee bidding overrides (maxFeePerGas / maxPriorityFeePerGas)

Reads raise NetworkReadFailure, writes raise TransactionFailure. Nothing here
retries; the scheduler wraps writes in with_retry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Protocol

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from lister.config import Credentials, GasConfig
from lister.errors import NetworkReadFailure, TransactionFailure
from lister.models import CurrencyOption, ListingRequest, TxReceipt

log = logging.getLogger("lister.marketplace")

ERC1155_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "isApprovedForAll",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "operator", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "setApprovalForAll",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "operator", "type": "address"},
            {"name": "approved", "type": "bool"},
        ],
        "outputs": [],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

MARKETPLACE_ABI: list[dict[str, Any]] = [
    {
        "name": "createListing",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {
                "name": "_params",
                "type": "tuple",
                "components": [
                    {"name": "assetContract", "type": "address"},
                    {"name": "tokenId", "type": "uint256"},
                    {"name": "quantity", "type": "uint256"},
                    {"name": "currency", "type": "address"},
                    {"name": "pricePerToken", "type": "uint256"},
                    {"name": "startTimestamp", "type": "uint128"},
                    {"name": "endTimestamp", "type": "uint128"},
                    {"name": "reserved", "type": "bool"},
                ],
            }
        ],
        "outputs": [{"name": "listingId", "type": "uint256"}],
    },
]

CHAIN_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    Web3Exception,
    ValueError,
)


class MarketClient(Protocol):
    """What the scheduler needs from the chain."""

    @property
    def address(self) -> str: ...

    @property
    def marketplace(self) -> str: ...

    async def get_token_balance(self, holder: str, token_id: int) -> int: ...

    async def is_marketplace_approved(self, holder: str) -> bool: ...

    async def set_approval_for_all(self, operator: str, approved: bool) -> TxReceipt: ...

    async def create_listing(self, request: ListingRequest) -> TxReceipt: ...

    async def approve_spender(
        self, currency: CurrencyOption, spender: str, amount: Decimal
    ) -> TxReceipt: ...


class MarketplaceClient:
    """Signs and sends marketplace transactions from one local account."""

    def __init__(
        self,
        w3: AsyncWeb3,
        account: LocalAccount,
        nft_contract: str,
        marketplace: str,
        gas: GasConfig | None = None,
        receipt_timeout: float = 180.0,
    ):
        self._w3 = w3
        self._account = account
        self.gas = gas or GasConfig()
        self.receipt_timeout = receipt_timeout
        self.nft_contract = AsyncWeb3.to_checksum_address(nft_contract)
        self._marketplace = AsyncWeb3.to_checksum_address(marketplace)
        self._edition = w3.eth.contract(address=self.nft_contract, abi=ERC1155_ABI)
        self._market = w3.eth.contract(address=self._marketplace, abi=MARKETPLACE_ABI)

    @classmethod
    def from_credentials(
        cls,
        credentials: Credentials,
        nft_contract: str,
        marketplace: str,
        gas: GasConfig | None = None,
    ) -> MarketplaceClient:
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(credentials.rpc_url))
        account = Account.from_key(credentials.private_key.get_secret_value())
        return cls(w3, account, nft_contract, marketplace, gas=gas)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def marketplace(self) -> str:
        return self._marketplace

    async def connect(self) -> str:
        """Verify the endpoint answers and return the wallet address."""
        try:
            chain_id = await self._w3.eth.chain_id
        except CHAIN_ERRORS as e:
            raise NetworkReadFailure(f"RPC endpoint unreachable: {e}", operation="connect") from e
        log.info("Connected to chain %d with wallet: %s", chain_id, self.address)
        log.info(
            "Gas settings: max priority fee=%s, max fee=%s",
            self.gas.max_priority_fee_per_gas, self.gas.max_fee_per_gas,
        )
        return self.address

    async def close(self) -> None:
        await self._w3.provider.disconnect()

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_token_balance(self, holder: str, token_id: int) -> int:
        try:
            balance = await self._edition.functions.balanceOf(
                AsyncWeb3.to_checksum_address(holder), token_id
            ).call()
        except CHAIN_ERRORS as e:
            raise NetworkReadFailure(f"Error checking NFT balance: {e}", operation="balanceOf") from e
        return int(balance)

    async def is_marketplace_approved(self, holder: str) -> bool:
        try:
            approved = await self._edition.functions.isApprovedForAll(
                AsyncWeb3.to_checksum_address(holder), self._marketplace
            ).call()
        except CHAIN_ERRORS as e:
            raise NetworkReadFailure(
                f"Error checking marketplace approval: {e}", operation="isApprovedForAll"
            ) from e
        return bool(approved)

    # ── Writes ────────────────────────────────────────────────────────

    async def set_approval_for_all(self, operator: str, approved: bool) -> TxReceipt:
        fn = self._edition.functions.setApprovalForAll(
            AsyncWeb3.to_checksum_address(operator), approved
        )
        return await self._transact(fn, "setApprovalForAll")

    async def approve_spender(
        self, currency: CurrencyOption, spender: str, amount: Decimal
    ) -> TxReceipt:
        token = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(currency.contract_address), abi=ERC20_ABI
        )
        fn = token.functions.approve(
            AsyncWeb3.to_checksum_address(spender), currency.to_base_units(amount)
        )
        return await self._transact(fn, f"approve {currency.symbol}")

    async def create_listing(self, request: ListingRequest) -> TxReceipt:
        params = (
            AsyncWeb3.to_checksum_address(request.asset_contract),
            request.token_id,
            request.quantity,
            AsyncWeb3.to_checksum_address(request.currency.contract_address),
            request.currency.to_base_units(request.unit_price),
            int(request.start_time.timestamp()),
            int(request.end_time.timestamp()),
            False,
        )
        started = time.monotonic()
        receipt = await self._transact(self._market.functions.createListing(params), "createListing")
        log.info(
            "Listing created in %.2fs! Gas used: %d, TX Hash: %s",
            time.monotonic() - started, receipt.gas_used, receipt.transaction_hash,
        )
        return receipt

    def _fee_params(self) -> dict[str, int]:
        params: dict[str, int] = {}
        if self.gas.max_fee_per_gas is not None:
            params["maxFeePerGas"] = self.gas.max_fee_per_gas
        if self.gas.max_priority_fee_per_gas is not None:
            params["maxPriorityFeePerGas"] = self.gas.max_priority_fee_per_gas
        return params

    async def _transact(self, fn: Any, operation: str) -> TxReceipt:
        """Build, sign, send and wait for one transaction.

        Failures before the send are retryable. Once the transaction is out,
        a receipt timeout or read error is not: a resend could land twice.
        """
        try:
            nonce = await self._w3.eth.get_transaction_count(self.address, "pending")
            tx = await fn.build_transaction({
                "from": self.address,
                "nonce": nonce,
                **self._fee_params(),
            })
            signed = self._account.sign_transaction(tx)
            sent = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except CHAIN_ERRORS as e:
            raise TransactionFailure(f"{operation} failed: {e}", operation=operation) from e

        tx_hash = AsyncWeb3.to_hex(sent)
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                sent, timeout=self.receipt_timeout
            )
        except CHAIN_ERRORS as e:
            raise TransactionFailure(
                f"{operation} sent but unconfirmed (tx={tx_hash}): {e}",
                operation=operation,
                tx_hash=tx_hash,
                retryable=False,
            ) from e

        if receipt.get("status", 1) == 0:
            raise TransactionFailure(
                f"{operation} reverted on-chain (tx={tx_hash})",
                operation=operation,
                tx_hash=tx_hash,
            )
        return TxReceipt(
            transaction_hash=AsyncWeb3.to_hex(receipt["transactionHash"]),
            gas_used=int(receipt["gasUsed"]),
        )


class DryRunMarketplace:
    """Reads go to the wrapped client; writes are logged and never sent."""

    def __init__(self, inner: MarketClient):
        self._inner = inner
        self._seq = 0
        self.submitted: list[str] = []

    @property
    def address(self) -> str:
        return self._inner.address

    @property
    def marketplace(self) -> str:
        return self._inner.marketplace

    async def get_token_balance(self, holder: str, token_id: int) -> int:
        return await self._inner.get_token_balance(holder, token_id)

    async def is_marketplace_approved(self, holder: str) -> bool:
        return await self._inner.is_marketplace_approved(holder)

    def _fake_receipt(self, description: str) -> TxReceipt:
        self._seq += 1
        self.submitted.append(description)
        log.info("[dry-run] would send: %s", description)
        return TxReceipt(transaction_hash=f"dry-run-{self._seq}", gas_used=0)

    async def set_approval_for_all(self, operator: str, approved: bool) -> TxReceipt:
        return self._fake_receipt(f"setApprovalForAll({operator}, {approved})")

    async def approve_spender(
        self, currency: CurrencyOption, spender: str, amount: Decimal
    ) -> TxReceipt:
        return self._fake_receipt(f"approve {amount} {currency.symbol} for {spender}")

    async def create_listing(self, request: ListingRequest) -> TxReceipt:
        return self._fake_receipt(
            f"createListing token {request.token_id} x{request.quantity} "
            f"at {request.unit_price} {request.currency.symbol}"
        )
