"""EVM ledger client: balances, fee estimates and native-token transfers."""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from eth_account import Account
from web3 import Web3

from .chains import ChainConfig
from .config import CardPaySettings
from .custody import SigningKey
from .exceptions import (
    EstimationFailedError,
    FeeEstimationFailedError,
    InsufficientFundsError,
    InvalidAddressError,
    LedgerUnavailableError,
    TransferRejectedError,
    TransferTimeoutError,
    classify_transfer_error,
)
from .models import Balance, FeeEstimate, FeeOverrides, TransferReceipt
from .rpc_client import ChainRPCClient, MalformedResponseError, RPCError

logger = logging.getLogger(__name__)

RPCFactory = Callable[[ChainConfig], ChainRPCClient]
# Receives the locally computed hash before the payload is broadcast
SignedHook = Callable[[str], Awaitable[None]]

# Gas for a plain value transfer; used when a node refuses to estimate
NATIVE_TRANSFER_GAS = 21_000


def _hex_to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    return int(value, 16)


def receipt_succeeded(receipt: Dict[str, Any]) -> bool:
    return _hex_to_int(receipt.get("status"), default=1) != 0


def build_receipt(
    receipt: Dict[str, Any],
    chain: ChainConfig,
    amount: Decimal,
    tx_hash: Optional[str] = None,
    sender: str = "",
    recipient: str = "",
    fallback_gas_price: int = 0,
) -> TransferReceipt:
    """Turn a raw eth_getTransactionReceipt result into a TransferReceipt."""
    tx_hash = receipt.get("transactionHash") or tx_hash
    gas_used = _hex_to_int(receipt.get("gasUsed"))
    effective_price = _hex_to_int(receipt.get("effectiveGasPrice"), default=fallback_gas_price)
    amount = Decimal(str(amount))
    return TransferReceipt(
        tx_hash=tx_hash,
        from_address=receipt.get("from") or sender,
        to_address=receipt.get("to") or recipient,
        amount=amount,
        amount_minor=chain.to_minor_units(amount),
        gas_used=gas_used,
        effective_gas_price=effective_price,
        fee=chain.from_minor_units(gas_used * effective_price),
        block_number=_hex_to_int(receipt.get("blockNumber")),
        explorer_url=chain.tx_url(tx_hash),
    )


class LedgerClient:
    """Talks to EVM nodes over JSON-RPC, one client per chain key."""

    def __init__(
        self,
        settings: Optional[CardPaySettings] = None,
        rpc_factory: Optional[RPCFactory] = None,
    ):
        self._settings = settings or CardPaySettings()
        self._rpc_factory = rpc_factory or self._default_rpc_factory
        self._rpc_clients: Dict[str, ChainRPCClient] = {}

    def _default_rpc_factory(self, chain: ChainConfig) -> ChainRPCClient:
        return ChainRPCClient(chain.rpc_url, timeout=self._settings.rpc_timeout_seconds)

    def _get_rpc(self, chain: ChainConfig) -> ChainRPCClient:
        """Get or create RPC client for chain."""
        if chain.key not in self._rpc_clients:
            self._rpc_clients[chain.key] = self._rpc_factory(chain)
        return self._rpc_clients[chain.key]

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def validate_address(address: str) -> bool:
        """Syntactic and EIP-55 checksum validation; no network access."""
        if not isinstance(address, str):
            return False
        return Web3.is_address(address)

    async def get_balance(self, address: str, chain: ChainConfig) -> Balance:
        if not self.validate_address(address):
            raise InvalidAddressError(address)
        rpc = self._get_rpc(chain)
        try:
            raw = await rpc.get_balance(Web3.to_checksum_address(address))
        except (httpx.HTTPError, RPCError) as e:
            raise LedgerUnavailableError(f"Balance lookup failed: {e}", chain=chain.key)
        return Balance(
            balance=chain.from_minor_units(raw),
            raw_balance=raw,
            symbol=chain.symbol,
            decimals=chain.decimals,
        )

    async def estimate_fee(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        chain: ChainConfig,
    ) -> FeeEstimate:
        for address in (from_address, to_address):
            if not self.validate_address(address):
                raise InvalidAddressError(address)
        value = chain.to_minor_units(amount)
        rpc = self._get_rpc(chain)
        tx = {
            "from": Web3.to_checksum_address(from_address),
            "to": Web3.to_checksum_address(to_address),
            "value": hex(value),
        }
        try:
            gas_units = await rpc.estimate_gas(tx)
            gas_price = await rpc.get_gas_price()
        except RPCError as e:
            raise EstimationFailedError(
                f"Fee estimation failed: {e.message}",
                details={"chain": chain.key},
            )
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Fee estimation failed: {e}", chain=chain.key)

        return FeeEstimate(
            gas_units=gas_units,
            unit_price=gas_price,
            estimated_fee=chain.from_minor_units(gas_units * gas_price),
        )

    async def get_transaction(self, tx_hash: str, chain: ChainConfig) -> Optional[Dict[str, Any]]:
        try:
            return await self._get_rpc(chain).get_transaction(tx_hash)
        except (httpx.HTTPError, RPCError) as e:
            raise LedgerUnavailableError(f"Transaction lookup failed: {e}", chain=chain.key)

    async def get_receipt(self, tx_hash: str, chain: ChainConfig) -> Optional[Dict[str, Any]]:
        try:
            return await self._get_rpc(chain).get_transaction_receipt(tx_hash)
        except (httpx.HTTPError, RPCError) as e:
            raise LedgerUnavailableError(f"Receipt lookup failed: {e}", chain=chain.key)

    async def get_block_number(self, chain: ChainConfig) -> int:
        try:
            return await self._get_rpc(chain).get_block_number()
        except (httpx.HTTPError, RPCError) as e:
            raise LedgerUnavailableError(f"Block number lookup failed: {e}", chain=chain.key)

    # =========================================================================
    # Transfers
    # =========================================================================

    async def submit_transfer(
        self,
        signing_key: SigningKey,
        to_address: str,
        amount: Decimal,
        chain: ChainConfig,
        overrides: Optional[FeeOverrides] = None,
        on_signed: Optional[SignedHook] = None,
    ) -> TransferReceipt:
        """Sign, broadcast and confirm a native-token transfer.

        Raises a TransferError subclass for ledger-side failures. Once the
        signed payload may have reached the node, any loss of contact raises
        TransferTimeoutError carrying the locally computed hash.

        ``on_signed`` is awaited with that hash before anything is broadcast;
        if it raises, the payload is never sent.
        """
        if not self.validate_address(to_address):
            raise InvalidAddressError(to_address)
        overrides = overrides or FeeOverrides()
        value = chain.to_minor_units(amount)
        recipient = Web3.to_checksum_address(to_address)
        rpc = self._get_rpc(chain)

        account = Account.from_key(signing_key.secret_bytes())
        sender = account.address

        # Pre-broadcast: nothing has left the process yet
        try:
            nonce = await rpc.get_nonce(sender)
            gas_limit = overrides.gas_limit or await self._estimate_transfer_gas(
                rpc, sender, recipient, value
            )
            gas_price = overrides.gas_price or await rpc.get_gas_price()
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Ledger endpoint unreachable: {e}", chain=chain.key)
        except RPCError as e:
            raise LedgerUnavailableError(f"Ledger endpoint error: {e.message}", chain=chain.key)

        tx_dict = {
            "to": recipient,
            "value": value,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": chain.chain_id,
        }
        signed = Account.sign_transaction(tx_dict, account.key)
        tx_hash = Web3.to_hex(signed.hash)
        raw_tx = Web3.to_hex(signed.raw_transaction)
        if on_signed is not None:
            await on_signed(tx_hash)

        logger.info(
            "Sending transfer %s | %s -> %s | amount=%s %s | chain=%s",
            tx_hash, sender, recipient, amount, chain.symbol, chain.key,
        )

        try:
            node_hash = await rpc.send_raw_transaction(raw_tx)
        except httpx.ConnectError as e:
            # Connection never established, payload not delivered
            raise LedgerUnavailableError(f"Ledger endpoint unreachable: {e}", chain=chain.key)
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                raise TransferTimeoutError(
                    f"Broadcast outcome unknown: HTTP {e.response.status_code}",
                    tx_hash=tx_hash,
                )
            raise LedgerUnavailableError(
                f"Ledger endpoint refused request: HTTP {e.response.status_code}",
                chain=chain.key,
            )
        except httpx.HTTPError as e:
            raise TransferTimeoutError(f"Broadcast outcome unknown: {e}", tx_hash=tx_hash)
        except MalformedResponseError as e:
            raise TransferTimeoutError(f"Broadcast outcome unknown: {e.message}", tx_hash=tx_hash)
        except RPCError as e:
            if "already known" not in e.message.lower():
                raise classify_transfer_error(e.message, tx_hash=tx_hash)
            logger.info("Node already knows transaction %s, waiting for receipt", tx_hash)
            node_hash = tx_hash

        if node_hash and node_hash.lower() != tx_hash.lower():
            logger.warning("Node returned hash %s, expected %s", node_hash, tx_hash)
            tx_hash = node_hash

        receipt = await self._wait_for_confirmation(rpc, tx_hash, chain)
        result = build_receipt(
            receipt,
            chain,
            amount,
            tx_hash=tx_hash,
            sender=sender,
            recipient=recipient,
            fallback_gas_price=gas_price,
        )
        logger.info(
            "Transfer %s confirmed in block %s (fee=%s %s)",
            result.tx_hash, result.block_number, result.fee, chain.symbol,
        )
        return result

    async def _estimate_transfer_gas(
        self,
        rpc: ChainRPCClient,
        sender: str,
        recipient: str,
        value: int,
    ) -> int:
        try:
            estimate = await rpc.estimate_gas({
                "from": sender,
                "to": recipient,
                "value": hex(value),
            })
        except RPCError as e:
            classified = classify_transfer_error(e.message)
            if isinstance(classified, InsufficientFundsError):
                raise classified
            raise FeeEstimationFailedError(details={"original_error": e.message})
        return max(int(estimate * self._settings.gas_limit_buffer), NATIVE_TRANSFER_GAS)

    async def _wait_for_confirmation(
        self,
        rpc: ChainRPCClient,
        tx_hash: str,
        chain: ChainConfig,
    ) -> Dict[str, Any]:
        """Poll for a receipt until it has enough confirmations or time runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.confirmation_timeout_seconds
        required = self._settings.confirmations_required

        while True:
            try:
                receipt = await rpc.get_transaction_receipt(tx_hash)
                if receipt:
                    if not receipt_succeeded(receipt):
                        raise TransferRejectedError(
                            tx_hash=tx_hash,
                            details={"reason": "reverted", "chain": chain.key},
                        )

                    tx_block = _hex_to_int(receipt.get("blockNumber"))
                    confirmations = 1
                    if required > 1:
                        current_block = await rpc.get_block_number()
                        confirmations = current_block - tx_block + 1

                    if confirmations >= required:
                        return receipt

                    logger.debug(
                        "Transaction %s has %s confirmations, waiting for %s",
                        tx_hash, confirmations, required,
                    )
            except (httpx.HTTPError, RPCError) as e:
                logger.warning("Receipt poll for %s failed: %s", tx_hash, e)

            if loop.time() >= deadline:
                raise TransferTimeoutError(
                    f"Transaction {tx_hash} not confirmed after "
                    f"{self._settings.confirmation_timeout_seconds}s",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self._settings.poll_interval_seconds)

    async def close(self) -> None:
        """Close all RPC clients."""
        for rpc in self._rpc_clients.values():
            await rpc.close()
        self._rpc_clients.clear()


