"""
Remit error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, back off, etc.).

Validation gates return these as values; service operations raise them.
"""

from __future__ import annotations

from typing import Any, Optional


class RemitError(Exception):
    """Base error for all Remit operations."""

    code = "REMIT_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        if code is not None:
            self.code = code
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# Untrusted input
class StructuralError(RemitError):
    """Malformed invoice or request fields. Never retried."""

    code = "INVALID_STRUCTURE"


class SignatureError(RemitError):
    """Invoice signature did not verify against the merchant address."""

    code = "INVALID_SIGNATURE"


# Delegation policy
class PolicyValidationError(RemitError):
    """Candidate delegation policy failed validation."""

    code = "INVALID_POLICY"


class PolicyViolation(RemitError):
    """Invoice failed an enforcement rule of the payer's delegation policy."""

    code = "POLICY_VIOLATION"

    def __init__(self, rule: str, message: str):
        self.rule = rule
        super().__init__(message, details={"rule": rule})


# State
class ConflictError(RemitError):
    """Request conflicts with already-recorded state. Not retryable."""

    code = "CONFLICT"


class NotFoundError(RemitError):
    """Unknown invoice, policy or transaction."""

    code = "NOT_FOUND"


# Admission control
class RateLimitedError(RemitError):
    """Caller exceeded its request quota and should back off."""

    code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int, message: str = "Too many requests. Try again shortly."):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, details={"retryAfterSeconds": retry_after_seconds})


class AuthorizationError(RemitError):
    """Missing or invalid privileged credential."""

    code = "UNAUTHORIZED"


class ConfigurationError(RemitError):
    """Required configuration is missing or invalid. Fatal at startup."""

    code = "MISCONFIGURED"


# Ledger
class LedgerError(RemitError):
    """Base error for ledger client failures."""

    code = "LEDGER_ERROR"


class TransientLedgerError(LedgerError):
    """Receipt/log fetch failed or transaction not yet mined. Safe to retry."""

    code = "LEDGER_UNAVAILABLE"

    def __init__(self, message: str, retry_after: float = 1.0, details: Optional[dict[str, Any]] = None):
        self.retry_after = retry_after
        super().__init__(message, details=details)


class TransferPendingError(TransientLedgerError):
    """Transfer was broadcast but no receipt was seen. Confirm it later; never resend."""

    code = "TRANSFER_PENDING"

    def __init__(self, tx_hash: str, message: str):
        self.tx_hash = tx_hash
        super().__init__(message, details={"txHash": tx_hash})


class LedgerTransactionFailed(LedgerError):
    """Transaction was mined but reverted."""

    code = "TRANSACTION_FAILED"


# Network
class ServiceUnavailableError(RemitError):
    """Remote merchant or guardian could not be reached or returned 5xx."""

    code = "SERVICE_UNAVAILABLE"


class RequestTooLargeError(RemitError):
    """Request body exceeds the accepted size."""

    code = "REQUEST_TOO_LARGE"
