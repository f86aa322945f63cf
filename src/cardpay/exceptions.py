"""Unified exception hierarchy for the payment engine.

All engine exceptions inherit from CardPayError, enabling:
- Consistent error handling across modules
- HTTP status code mapping in whatever API layer sits on top
- Structured error responses with error codes
- Mapping of raw node/RPC errors onto typed transfer errors

Errors fall into four families:
- CardPayClientError: the request cannot be honoured as given (4xx)
- TransferError: the ledger refused or could not confirm a transfer
- CardPayEnvironmentError: a collaborator is unavailable (5xx)
- TransactionStateError: an illegal state transition was attempted in code

Usage:
    from cardpay.exceptions import CardPayError, classify_transfer_error

    try:
        tx_hash = await rpc.send_raw_transaction(raw)
    except RPCError as e:
        raise classify_transfer_error(str(e), tx_hash=local_hash)
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional, Type

logger = logging.getLogger(__name__)


class CardPayError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "CARD_NOT_FOUND")
        details: Optional additional context
    """

    error_code: str = "CARDPAY_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Client Errors (4xx)
# =============================================================================

class CardPayClientError(CardPayError):
    """The request cannot be honoured as given."""

    error_code = "CLIENT_ERROR"
    http_status = 400


class CardNotFoundError(CardPayClientError):
    error_code = "CARD_NOT_FOUND"
    http_status = 404

    def __init__(self, card_id: str) -> None:
        super().__init__("Card not found", details={"card_id": card_id})


class CardInactiveError(CardPayClientError):
    error_code = "CARD_INACTIVE"

    def __init__(self, card_id: str) -> None:
        super().__init__("Card is not active", details={"card_id": card_id})


class CardExpiredError(CardPayClientError):
    error_code = "CARD_EXPIRED"

    def __init__(self, card_id: str) -> None:
        super().__init__("Card has expired", details={"card_id": card_id})


class CardBlockedError(CardPayClientError):
    error_code = "CARD_BLOCKED"
    http_status = 403

    def __init__(self, card_id: str, reason: Optional[str] = None) -> None:
        self.reason = reason or "unspecified"
        super().__init__(
            f"Card is blocked: {self.reason}",
            details={"card_id": card_id, "reason": self.reason},
        )


class UserNotFoundError(CardPayClientError):
    error_code = "USER_NOT_FOUND"
    http_status = 404

    def __init__(self, user_id: str) -> None:
        super().__init__("User not found", details={"user_id": user_id})


class WalletNotConfiguredError(CardPayClientError):
    """User has no wallet address or no stored signing key."""

    error_code = "WALLET_NOT_CONFIGURED"

    def __init__(self, user_id: str) -> None:
        super().__init__("User wallet not configured", details={"user_id": user_id})


class InvalidMerchantError(CardPayClientError):
    error_code = "INVALID_MERCHANT"

    def __init__(self, merchant_id: str, reason: str = "Invalid merchant") -> None:
        super().__init__(reason, details={"merchant_id": merchant_id})


class InvalidChainError(CardPayClientError):
    error_code = "INVALID_CHAIN"

    def __init__(self, chain_key: str) -> None:
        super().__init__(f"Invalid chain: {chain_key}", details={"chain": chain_key})


class InvalidAddressError(CardPayClientError):
    error_code = "INVALID_ADDRESS"

    def __init__(self, address: str, reason: str = "Invalid recipient address") -> None:
        super().__init__(reason, details={"address": address})


class InvalidAmountError(CardPayClientError):
    error_code = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str = "Invalid amount") -> None:
        super().__init__(reason, details={"amount": str(amount)})


class InvalidPeriodError(CardPayClientError):
    error_code = "INVALID_PERIOD"

    def __init__(self, period: str) -> None:
        super().__init__(f"Invalid stats period: {period}", details={"period": period})


class SpendingLimitExceededError(CardPayClientError):
    """Base for limit rejections; details echo the numbers involved."""

    error_code = "LIMIT_EXCEEDED"
    http_status = 403
    limit_name = "spending"

    def __init__(
        self,
        amount: Decimal,
        limit: Decimal,
        spent: Decimal,
        pending: Decimal = Decimal("0"),
    ) -> None:
        self.amount = amount
        self.limit = limit
        self.spent = spent
        remaining = max(limit - spent - pending, Decimal("0"))
        super().__init__(
            f"Transaction would exceed {self.limit_name} limit",
            details={
                "amount": str(amount),
                "limit": str(limit),
                "spent": str(spent),
                "pending": str(pending),
                "remaining": str(remaining),
            },
        )


class DailyLimitExceededError(SpendingLimitExceededError):
    error_code = "DAILY_LIMIT_EXCEEDED"
    limit_name = "daily"


class MonthlyLimitExceededError(SpendingLimitExceededError):
    error_code = "MONTHLY_LIMIT_EXCEEDED"
    limit_name = "monthly"


class TransactionNotFoundError(CardPayClientError):
    error_code = "TRANSACTION_NOT_FOUND"
    http_status = 404

    def __init__(self, tx_id: str) -> None:
        super().__init__("Transaction not found", details={"transaction_id": tx_id})


class UnauthorizedError(CardPayClientError):
    """Caller does not own the referenced resource."""

    error_code = "UNAUTHORIZED"
    http_status = 403


class InvalidTransitionError(CardPayClientError):
    """Requested status change is not allowed from the current status."""

    error_code = "INVALID_TRANSITION"
    http_status = 409


class NotRetryableError(CardPayClientError):
    error_code = "NOT_RETRYABLE"
    http_status = 409


# =============================================================================
# Transfer Errors
# =============================================================================

class TransferError(CardPayError):
    """The ledger refused, or could not confirm, a transfer.

    Attributes:
        retryable: A fresh attempt may succeed without user action
        ambiguous: The transfer may or may not have been applied
        tx_hash: Locally computed hash when the payload was signed
    """

    error_code = "TRANSFER_FAILED"
    http_status = 502
    retryable: bool = False
    ambiguous: bool = False
    default_message = "Transfer failed"

    def __init__(
        self,
        message: Optional[str] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.tx_hash = tx_hash
        details = details or {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message or self.default_message, details=details)


class InsufficientFundsError(TransferError):
    error_code = "INSUFFICIENT_FUNDS"
    http_status = 402
    default_message = "Insufficient balance for transfer"


class NonceConflictError(TransferError):
    error_code = "NONCE_CONFLICT"
    http_status = 409
    retryable = True
    default_message = "Transaction nonce error. Please try again."


class FeeTooLowError(TransferError):
    error_code = "FEE_TOO_LOW"
    retryable = True
    default_message = "Transaction fee too low"


class FeeEstimationFailedError(TransferError):
    error_code = "FEE_ESTIMATION_FAILED"
    default_message = "Gas estimation failed. Please adjust gas parameters."


class TransferRejectedError(TransferError):
    """Definitively not applied: node rejection or on-chain revert."""

    error_code = "TRANSFER_REJECTED"
    default_message = "Transfer failed"


class TransferTimeoutError(TransferError):
    """Submission outcome unknown; reconciliation must resolve it."""

    error_code = "TRANSFER_TIMEOUT"
    http_status = 504
    ambiguous = True
    default_message = "Transfer confirmation timed out"


# =============================================================================
# Environment Errors (5xx)
# =============================================================================

class CardPayEnvironmentError(CardPayError):
    """A collaborator the engine depends on is unavailable."""

    error_code = "SERVICE_UNAVAILABLE"
    http_status = 503


class LedgerUnavailableError(CardPayEnvironmentError):
    error_code = "LEDGER_UNAVAILABLE"

    def __init__(self, message: str = "Ledger endpoint unavailable", chain: Optional[str] = None) -> None:
        super().__init__(message, details={"chain": chain} if chain else None)


class EstimationFailedError(CardPayEnvironmentError):
    """The node refused to simulate the transfer during fee estimation."""

    error_code = "ESTIMATION_FAILED"
    http_status = 422


class PersistenceUnavailableError(CardPayEnvironmentError):
    error_code = "PERSISTENCE_UNAVAILABLE"


class KeyCustodyError(CardPayEnvironmentError):
    error_code = "KEY_CUSTODY_ERROR"


# =============================================================================
# Programming Faults
# =============================================================================

class TransactionStateError(CardPayError):
    """Illegal transition attempted on a transaction record."""

    error_code = "TRANSACTION_STATE_ERROR"
    http_status = 500


# =============================================================================
# Node Error Mapping
# =============================================================================

TRANSFER_ERROR_PATTERNS: dict[str, Type[TransferError]] = {
    "insufficient funds": InsufficientFundsError,
    "insufficient balance": InsufficientFundsError,
    "nonce too low": NonceConflictError,
    "nonce too high": NonceConflictError,
    "replacement transaction underpriced": FeeTooLowError,
    "transaction underpriced": FeeTooLowError,
    "gas price too low": FeeTooLowError,
    "max fee per gas less than block base fee": FeeTooLowError,
    "intrinsic gas too low": FeeEstimationFailedError,
    "gas required exceeds allowance": FeeEstimationFailedError,
    "out of gas": FeeEstimationFailedError,
    "execution reverted": TransferRejectedError,
    "timeout": TransferTimeoutError,
    "timed out": TransferTimeoutError,
}


def classify_transfer_error(
    message: str,
    tx_hash: Optional[str] = None,
) -> TransferError:
    """Map a raw node/RPC error message onto the transfer error taxonomy.

    Unrecognised messages become TransferRejectedError with the generic
    "Transfer failed" message; the raw text is kept in details.
    """
    lowered = (message or "").lower()
    for pattern, exc_class in TRANSFER_ERROR_PATTERNS.items():
        if pattern in lowered:
            return exc_class(tx_hash=tx_hash, details={"original_error": message})

    logger.debug("Unclassified transfer error: %s", message)
    return TransferRejectedError(tx_hash=tx_hash, details={"original_error": message})
