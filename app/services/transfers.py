"""Outbound payout rails: USDC on Base and Stripe Connect bank transfers.

The settlement core only sees the TransferClient protocol:

- ``send_transfer(destination, amount_cents) -> TransferResult``
- ``get_balance(address) -> BalanceResult``
- ``is_valid_address(destination) -> bool``

Set TRANSFER_BACKEND=usdc (or stripe) in production. The default ``log``
backend records the transfer in the logs and returns a synthetic hash.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

# USDC has 6 decimals on-chain; one cent is 10**4 raw units
USDC_DECIMALS = 6
USDC_SCALE = 10**USDC_DECIMALS
RAW_UNITS_PER_CENT = USDC_SCALE // 100

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_STRIPE_ACCOUNT_RE = re.compile(r"^acct_[0-9A-Za-z]+$")

# Minimal ERC-20 ABI: transfer + balanceOf
ERC20_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class TransferResult:
    success: bool
    tx_hash: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class BalanceResult:
    success: bool
    balance: Decimal = Decimal("0")
    error: str | None = None


class TransferClient(Protocol):
    method: str

    async def send_transfer(self, destination: str, amount_cents: int) -> TransferResult: ...

    async def get_balance(self, address: str) -> BalanceResult: ...

    def is_valid_address(self, destination: str | None) -> bool: ...


def is_valid_evm_address(address: str | None) -> bool:
    return bool(address) and _ETH_ADDRESS_RE.match(address) is not None


def cents_to_usdc_raw(amount_cents: int) -> int:
    return amount_cents * RAW_UNITS_PER_CENT


class UsdcTransferClient:
    """Sends USDC from the platform treasury wallet on Base."""

    method = "usdc"

    def is_valid_address(self, destination: str | None) -> bool:
        return is_valid_evm_address(destination)

    def _web3(self):  # type: ignore[no-untyped-def]
        from web3 import AsyncHTTPProvider, AsyncWeb3

        return AsyncWeb3(AsyncHTTPProvider(settings.resolved_rpc_url))

    async def send_transfer(self, destination: str, amount_cents: int) -> TransferResult:
        if not settings.treasury_wallet_private_key:
            return TransferResult(False, error="Treasury wallet not configured")
        if not self.is_valid_address(destination):
            return TransferResult(False, error=f"Invalid wallet address: {destination}")

        from eth_account import Account

        w3 = self._web3()
        treasury = Account.from_key(settings.treasury_wallet_private_key)
        usdc = w3.eth.contract(
            address=w3.to_checksum_address(settings.resolved_usdc_address),
            abi=ERC20_ABI,
        )
        try:
            nonce = await w3.eth.get_transaction_count(treasury.address)
            tx = await usdc.functions.transfer(
                w3.to_checksum_address(destination), cents_to_usdc_raw(amount_cents),
            ).build_transaction({
                "from": treasury.address,
                "nonce": nonce,
                "chainId": settings.chain_id,
                "gas": 100_000,
                "maxFeePerGas": await w3.eth.gas_price * 2,
                "maxPriorityFeePerGas": await w3.eth.max_priority_fee,
            })
            signed = treasury.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            logger.error("USDC transfer of %d cents to %s failed: %s", amount_cents, destination, e)
            return TransferResult(False, error=str(e)[:1000])

        logger.info("USDC transfer sent: %d cents to %s (tx %s)", amount_cents, destination, tx_hash.hex())
        return TransferResult(True, tx_hash=tx_hash.hex())

    async def get_balance(self, address: str) -> BalanceResult:
        if not self.is_valid_address(address):
            return BalanceResult(False, error=f"Invalid wallet address: {address}")
        w3 = self._web3()
        usdc = w3.eth.contract(
            address=w3.to_checksum_address(settings.resolved_usdc_address),
            abi=ERC20_ABI,
        )
        try:
            raw = await usdc.functions.balanceOf(w3.to_checksum_address(address)).call()
        except Exception as e:
            logger.error("USDC balance lookup for %s failed: %s", address, e)
            return BalanceResult(False, error=str(e)[:1000])
        return BalanceResult(True, balance=Decimal(raw) / Decimal(USDC_SCALE))


class StripeConnectTransferClient:
    """Transfers to a worker's Stripe Connect account (bank payout)."""

    method = "stripe"

    def is_valid_address(self, destination: str | None) -> bool:
        return bool(destination) and _STRIPE_ACCOUNT_RE.match(destination) is not None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.stripe_api_base,
            auth=(settings.stripe_secret_key, ""),
            timeout=settings.stripe_timeout_seconds,
        )

    async def send_transfer(self, destination: str, amount_cents: int) -> TransferResult:
        if not settings.stripe_secret_key:
            return TransferResult(False, error="Stripe not configured")
        if not self.is_valid_address(destination):
            return TransferResult(False, error=f"Invalid Stripe account: {destination}")
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/transfers",
                    data={"amount": amount_cents, "currency": "usd", "destination": destination},
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Stripe transfer of %d cents to %s failed: %s", amount_cents, destination, e)
            return TransferResult(False, error=str(e)[:1000])
        transfer_id = resp.json()["id"]
        logger.info("Stripe transfer %s: %d cents to %s", transfer_id, amount_cents, destination)
        return TransferResult(True, tx_hash=transfer_id)

    async def get_balance(self, address: str) -> BalanceResult:
        if not settings.stripe_secret_key:
            return BalanceResult(False, error="Stripe not configured")
        try:
            async with self._client() as client:
                resp = await client.get("/balance", headers={"Stripe-Account": address})
                resp.raise_for_status()
        except httpx.HTTPError as e:
            return BalanceResult(False, error=str(e)[:1000])
        available = sum(
            entry["amount"] for entry in resp.json().get("available", [])
            if entry.get("currency") == "usd"
        )
        return BalanceResult(True, balance=Decimal(available) / 100)


class LogTransferClient:
    """Development rail: logs the transfer instead of moving money."""

    def __init__(self, method: str = "usdc") -> None:
        self.method = method

    def is_valid_address(self, destination: str | None) -> bool:
        if self.method == "stripe":
            return bool(destination) and _STRIPE_ACCOUNT_RE.match(destination) is not None
        return is_valid_evm_address(destination)

    async def send_transfer(self, destination: str, amount_cents: int) -> TransferResult:
        tx_hash = "0x" + secrets.token_hex(32)
        logger.info("TRANSFER (log) method=%s to=%s amount_cents=%d tx=%s",
                    self.method, destination, amount_cents, tx_hash)
        return TransferResult(True, tx_hash=tx_hash)

    async def get_balance(self, address: str) -> BalanceResult:
        return BalanceResult(True, balance=Decimal("0"))


def get_transfer_client(method: str) -> TransferClient:
    """Return the rail for a payout method ("usdc" or "stripe")."""
    if settings.transfer_backend == "log":
        return LogTransferClient(method)
    if method == "stripe":
        return StripeConnectTransferClient()
    return UsdcTransferClient()
