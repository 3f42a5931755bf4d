"""
Agent payment orchestrator.

Pays a merchant invoice only after it passes the structural gate, its
signature verifies against the merchant address, and the owner's
delegation policy allows it. A transfer is submitted at most once per
invoice: a transfer already recorded in the audit trail, or one whose
receipt timed out, is confirmed rather than sent again. Only the
merchant confirmation is retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .clients import GuardianClient, MerchantClient
from .config import AgentConfig
from .errors import (
    ConflictError,
    RateLimitedError,
    RemitError,
    ServiceUnavailableError,
    SignatureError,
    StructuralError,
    TransferPendingError,
)
from .invoice import Invoice, validate_structure, verify_invoice
from .ledger import LedgerClient
from .money import format_token_amount, is_amount_string
from .policy import DelegationPolicy, enforce
from .settlement import OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class PaymentReceipt:
    invoice_id: str
    tx_hash: str
    amount: str
    token: str
    recipient: str
    status: str
    policy_source: str
    confirmation_attempts: int
    elapsed_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoiceId": self.invoice_id,
            "txHash": self.tx_hash,
            "amount": self.amount,
            "token": self.token,
            "recipient": self.recipient,
            "status": self.status,
            "policySource": self.policy_source,
            "confirmationAttempts": self.confirmation_attempts,
            "elapsedSeconds": round(self.elapsed_seconds, 3),
        }


class PaymentOrchestrator:
    def __init__(
        self,
        config: AgentConfig,
        merchant: MerchantClient,
        guardian: GuardianClient,
        ledger: LedgerClient,
        audit: Optional[AuditTrail] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.merchant = merchant
        self.guardian = guardian
        self.ledger = ledger
        self.audit = audit
        self._sleep = sleep

    def checkout(self, request: dict, idempotency_key: Optional[str] = None) -> PaymentReceipt:
        """Ask the merchant for a new invoice pinned to this payer, then pay it."""
        body = {**request}
        body.setdefault("payer", self.config.payer)
        response = self.merchant.create_invoice(body, idempotency_key=idempotency_key)
        return self.pay_invoice(response.get("invoice"))

    def pay(self, invoice_id: str) -> PaymentReceipt:
        response = self.merchant.get_invoice(invoice_id)
        if response.get("status") == OrderStatus.CONFIRMED.value:
            raise ConflictError(
                f"Invoice {invoice_id} is already settled",
                "INVOICE_ALREADY_CONFIRMED",
                {"existingTxHash": response.get("txHash") or "unknown"},
            )
        return self.pay_invoice(response.get("invoice"))

    def pay_invoice(self, candidate: Any, now: Optional[int] = None) -> PaymentReceipt:
        started = time.monotonic()

        invoice = validate_structure(candidate)
        if isinstance(invoice, StructuralError):
            self._log_failure(None, invoice)
            raise invoice
        trusted = self.config.trusted_merchant
        if trusted and invoice.merchant != trusted:
            error = SignatureError(
                f"Invoice merchant {invoice.merchant} is not the trusted merchant {trusted}",
                "UNTRUSTED_MERCHANT",
            )
            self._log_failure(invoice, error)
            raise error
        if not verify_invoice(invoice):
            error = SignatureError("Invoice signature check failed")
            self._log_failure(invoice, error)
            raise error
        if self.audit:
            self.audit.log(EventType.INVOICE_VERIFIED, invoice_id=invoice.invoice_id, recipient=invoice.recipient)

        submitted = self._submitted_transfer(invoice.invoice_id)
        if submitted:
            logger.warning("Invoice %s already has transfer %s; confirming it instead of paying again",
                           invoice.invoice_id, submitted)
            return self._settle(invoice, submitted, "previous_submission", started)

        policy, policy_source = self._load_policy(now)
        violation = enforce(invoice, policy, self.config.payer, chain_id=self.config.chain_id, now=now)
        if violation is not None:
            logger.warning("Invoice %s rejected by delegation policy: %s", invoice.invoice_id, violation.message)
            if self.audit:
                self.audit.log(
                    EventType.POLICY_DENIED,
                    invoice_id=invoice.invoice_id,
                    payer=self.config.payer,
                    recipient=invoice.recipient,
                    token=invoice.token,
                    amount=invoice.amount,
                    success=False,
                    reason=violation.rule,
                )
            raise violation
        if self.audit:
            self.audit.log(
                EventType.POLICY_CHECK,
                invoice_id=invoice.invoice_id,
                payer=self.config.payer,
                amount=invoice.amount,
                details={"policySource": policy_source},
            )

        logger.info(
            "Paying %s (%s base units) to %s for invoice %s",
            format_token_amount(invoice.amount),
            invoice.amount,
            invoice.recipient,
            invoice.invoice_id,
        )
        mined = True
        try:
            tx_hash = self.ledger.send_transfer(
                token=invoice.token,
                to=invoice.recipient,
                amount=invoice.amount_value,
                memo=invoice.memo,
            )
        except TransferPendingError as e:
            logger.warning("Transfer %s for invoice %s not mined yet: %s", e.tx_hash, invoice.invoice_id, e.message)
            tx_hash, mined = e.tx_hash, False
        except RemitError as e:
            self._log_failure(invoice, e)
            raise
        if self.audit:
            self.audit.log(
                EventType.PAYMENT_SUBMITTED,
                invoice_id=invoice.invoice_id,
                payer=self.config.payer,
                recipient=invoice.recipient,
                token=invoice.token,
                amount=invoice.amount,
                tx_hash=tx_hash,
                details=None if mined else {"mined": False},
            )
        return self._settle(invoice, tx_hash, policy_source, started)

    def _settle(self, invoice: Invoice, tx_hash: str, policy_source: str, started: float) -> PaymentReceipt:
        confirmation, attempts = self._confirm(invoice, tx_hash)
        receipt = PaymentReceipt(
            invoice_id=invoice.invoice_id,
            tx_hash=tx_hash,
            amount=invoice.amount,
            token=invoice.token,
            recipient=invoice.recipient,
            status=str(confirmation.get("status")),
            policy_source=policy_source,
            confirmation_attempts=attempts,
            elapsed_seconds=time.monotonic() - started,
        )
        if self.audit:
            self.audit.log(
                EventType.PAYMENT_COMPLETED,
                invoice_id=invoice.invoice_id,
                payer=self.config.payer,
                amount=invoice.amount,
                tx_hash=tx_hash,
                details={"idempotentReplay": bool(confirmation.get("idempotentReplay"))},
            )
        logger.info("Invoice %s settled in tx %s", invoice.invoice_id, tx_hash)
        return receipt

    def _submitted_transfer(self, invoice_id: str) -> Optional[str]:
        """Hash of a transfer this agent already submitted for the invoice, if any."""
        if not self.audit:
            return None
        events = self.audit.read_events(invoice_id=invoice_id, event_type=EventType.PAYMENT_SUBMITTED, limit=1)
        return events[-1].tx_hash if events and events[-1].tx_hash else None

    def _load_policy(self, now: Optional[int]) -> tuple[DelegationPolicy, str]:
        """Guardian policy, or the configured local one when fallback is enabled."""
        try:
            policy = DelegationPolicy.from_dict(self.guardian.get_policy(self.config.payer))
            if not is_amount_string(policy.max_amount):
                raise ValueError("maxAmount is not a base-unit amount")
            return policy, "guardian"
        except RemitError as e:
            reason = e.message
        except (KeyError, TypeError, ValueError) as e:
            reason = f"malformed guardian policy: {e}"

        if not self.config.allow_local_policy_fallback:
            raise ServiceUnavailableError(
                f"Delegation policy unavailable: {reason}. "
                "Set ALLOW_LOCAL_POLICY_FALLBACK=true to allow local fallback.",
                "POLICY_UNAVAILABLE",
            )

        logger.warning("Using local fallback delegation policy: %s", reason)
        now = int(time.time()) if now is None else now
        return self.config.fallback_policy(now), "local"

    def _confirm(self, invoice: Invoice, tx_hash: str) -> tuple[dict, int]:
        """Report the transfer to the merchant, retrying transient failures only."""
        retries = max(self.config.confirm_retries, 0)
        last_error: Optional[RemitError] = None

        for attempt in range(retries + 1):
            try:
                confirmation = self.merchant.confirm_settlement(invoice.invoice_id, tx_hash)
            except (ServiceUnavailableError, RateLimitedError) as e:
                last_error = e
                if attempt < retries:
                    delay = (
                        e.retry_after_seconds
                        if isinstance(e, RateLimitedError)
                        else self.config.confirm_backoff_seconds * (attempt + 1)
                    )
                    logger.info(
                        "Retryable confirmation error (attempt %d/%d): %s",
                        attempt + 1,
                        retries + 1,
                        e.message,
                    )
                    self._sleep(delay)
                continue
            except RemitError as e:
                self._log_failure(invoice, e, tx_hash)
                raise

            if confirmation.get("status") != OrderStatus.CONFIRMED.value:
                error = RemitError(f"Merchant confirmation failed: {confirmation}", "CONFIRMATION_FAILED")
                self._log_failure(invoice, error, tx_hash)
                raise error
            return confirmation, attempt + 1

        error = ServiceUnavailableError(
            f"Transfer {tx_hash} was submitted but merchant confirmation failed after "
            f"{retries + 1} attempts: {last_error.message if last_error else 'unknown error'}",
            "CONFIRMATION_UNAVAILABLE",
            {"txHash": tx_hash},
        )
        self._log_failure(invoice, error, tx_hash)
        raise error

    def _log_failure(self, invoice: Optional[Invoice], error: RemitError, tx_hash: Optional[str] = None) -> None:
        logger.error("Payment failed (%s): %s", error.code, error.message)
        if self.audit:
            self.audit.log(
                EventType.PAYMENT_FAILED,
                invoice_id=invoice.invoice_id if invoice else None,
                payer=self.config.payer,
                tx_hash=tx_hash,
                success=False,
                reason=error.code,
                details={"message": error.message},
            )
