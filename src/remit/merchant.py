"""
Merchant service: invoice issuance, lookup, and settlement confirmation.

Holds the merchant's orders and idempotency records in one persisted state
document. Validation failures are returned by the request gate and raised
by the service as ``RemitError`` subclasses for the HTTP layer to map.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .audit import AuditTrail, EventType
from .canonical import canonical_hash
from .config import MerchantConfig
from .errors import (
    AuthorizationError,
    NotFoundError,
    RateLimitedError,
    RemitError,
    StructuralError,
)
from .idempotency import IdempotencyRecord, IdempotencyStore, validate_idempotency_key
from .invoice import (
    INVOICE_V1_JSON_SCHEMA,
    INVOICE_VERSION,
    MAX_DESCRIPTION_LENGTH,
    MAX_LINE_ITEMS,
    MAX_PURPOSE_LENGTH,
    MAX_REFERENCE_LENGTH,
    Invoice,
    LineItem,
    MetadataValue,
    derive_memo,
    normalize_address,
    parse_line_items,
    parse_metadata,
    sign_invoice,
    sum_line_item_totals,
    validate_structure,
)
from .ledger import LedgerClient, is_tx_hash
from .money import format_token_amount, is_amount_string
from .rate_limit import FixedWindowRateLimiter, rate_limit_key
from .settlement import Order, match_settlement
from .state import KeyedLocks, StateDocument

logger = logging.getLogger(__name__)

STANDARD_VERSION = "tempo.agent-payments.v1"

MAX_METADATA_FIELDS = 50
MAX_METADATA_KEY_LENGTH = 64
MAX_METADATA_STRING_VALUE_LENGTH = 256

CREATE_INVOICE_BUCKET = "create-invoice"
CONFIRM_SETTLEMENT_BUCKET = "confirm-settlement"


@dataclass(frozen=True)
class ResolvedInvoiceRequest:
    """A create-invoice body that passed validation."""

    amount: str
    description: str
    due_at: int
    payer: Optional[str] = None
    recipient: Optional[str] = None
    token: Optional[str] = None
    merchant_reference: Optional[str] = None
    purpose: Optional[str] = None
    line_items: Optional[tuple[LineItem, ...]] = None
    metadata: Optional[dict[str, MetadataValue]] = None


@dataclass
class CreateInvoiceResult:
    invoice: Invoice
    idempotent_replay: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "standard": STANDARD_VERSION,
            "invoice": self.invoice.to_dict(),
            "idempotentReplay": self.idempotent_replay,
        }


@dataclass
class ConfirmResult:
    status: str
    invoice_id: str
    tx_hash: str
    idempotent_replay: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "status": self.status,
            "invoiceId": self.invoice_id,
            "txHash": self.tx_hash,
            "idempotentReplay": self.idempotent_replay,
        }


def _optional_address(body: Mapping[str, Any], name: str, code: str) -> Optional[str] | StructuralError:
    value = body.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        return StructuralError(f"Invalid {name} address", code)
    try:
        return normalize_address(value)
    except ValueError:
        return StructuralError(f"Invalid {name} address", code)


def _bounded_text(value: Any, max_length: int) -> bool:
    return isinstance(value, str) and 0 < len(value) <= max_length


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def resolve_invoice_request(
    body: Any,
    *,
    now: Optional[int] = None,
    default_due_in_seconds: int = 10 * 60,
    max_due_in_seconds: int = 30 * 24 * 60 * 60,
) -> ResolvedInvoiceRequest | StructuralError:
    """Turn an untyped create-invoice body into validated invoice input."""
    now = int(time.time()) if now is None else now
    if not isinstance(body, Mapping):
        return StructuralError("Request body must be an object", "INVALID_BODY")

    payer = _optional_address(body, "payer", "INVALID_PAYER_ADDRESS")
    if isinstance(payer, StructuralError):
        return payer

    merchant_reference = body.get("merchantReference")
    if merchant_reference is not None and not _bounded_text(merchant_reference, MAX_REFERENCE_LENGTH):
        return StructuralError(
            f"merchantReference must be 1-{MAX_REFERENCE_LENGTH} characters", "INVALID_MERCHANT_REFERENCE"
        )

    purpose = body.get("purpose")
    if purpose is not None and not _bounded_text(purpose, MAX_PURPOSE_LENGTH):
        return StructuralError(f"purpose must be 1-{MAX_PURPOSE_LENGTH} characters", "INVALID_PURPOSE")

    recipient = _optional_address(body, "recipient", "INVALID_RECIPIENT_ADDRESS")
    if isinstance(recipient, StructuralError):
        return recipient
    token = _optional_address(body, "token", "INVALID_TOKEN_ADDRESS")
    if isinstance(token, StructuralError):
        return token

    metadata = None
    if body.get("metadata") is not None:
        metadata = parse_metadata(
            body["metadata"],
            max_fields=MAX_METADATA_FIELDS,
            max_key_length=MAX_METADATA_KEY_LENGTH,
            max_string_length=MAX_METADATA_STRING_VALUE_LENGTH,
        )
        if isinstance(metadata, StructuralError):
            return metadata

    line_items = None
    if body.get("lineItems") is not None:
        line_items = parse_line_items(body["lineItems"], MAX_LINE_ITEMS)
        if isinstance(line_items, StructuralError):
            return line_items

    due_at = body.get("dueAt")
    if due_at is not None and (not _is_int(due_at) or due_at <= now):
        return StructuralError("dueAt must be a future unix timestamp (seconds)", "INVALID_DUE_AT")

    due_in = body.get("dueInSeconds")
    if due_in is not None and (not _is_int(due_in) or due_in <= 0 or due_in > max_due_in_seconds):
        return StructuralError(
            f"dueInSeconds must be a positive integer <= {max_due_in_seconds}", "INVALID_DUE_IN_SECONDS"
        )

    amount = body.get("amount")
    if not is_amount_string(amount):
        return StructuralError("amount is required and must be a numeric string", "MISSING_OR_INVALID_AMOUNT")

    description = body.get("description")
    if not isinstance(description, str) or not description.strip():
        return StructuralError("description is required", "MISSING_DESCRIPTION")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        return StructuralError(
            f"description must be <= {MAX_DESCRIPTION_LENGTH} characters", "DESCRIPTION_TOO_LONG"
        )

    if line_items and sum_line_item_totals(line_items) != int(amount):
        return StructuralError(
            "Invoice amount must equal sum of lineItems[].totalAmount", "LINE_ITEM_SUM_MISMATCH"
        )

    return ResolvedInvoiceRequest(
        amount=amount,
        description=description,
        due_at=due_at if due_at is not None else now + (due_in or default_due_in_seconds),
        payer=payer,
        recipient=recipient,
        token=token,
        merchant_reference=merchant_reference,
        purpose=purpose,
        line_items=line_items,
        metadata=metadata,
    )


def new_invoice_id(now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    return f"INV-{now_ms}-{secrets.randbelow(1_000_000):06d}"


def _decode_order(d: dict) -> Order:
    return Order.from_dict(d)


def _encode_order(order: Order) -> dict:
    return order.to_dict()


class MerchantService:
    """Issues signed invoices and confirms their settlement against the ledger."""

    def __init__(
        self,
        config: MerchantConfig,
        ledger: LedgerClient,
        audit: Optional[AuditTrail] = None,
        state: Optional[StateDocument] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.audit = audit
        self.address = normalize_address(config.address)
        self._signer: LocalAccount = Account.from_key(config.private_key)

        self._state = state if state is not None else StateDocument(config.state_path)
        self._orders = self._state.collection("orders", _decode_order, _encode_order)
        self.idempotency = IdempotencyStore(
            self._state.collection("idempotency", IdempotencyRecord.from_dict, IdempotencyRecord.to_dict)
        )
        self._order_locks = KeyedLocks()
        self._invoice_limiter = FixedWindowRateLimiter(
            config.invoice_rate_limit_max, config.invoice_rate_limit_window_ms
        )
        self._confirm_limiter = FixedWindowRateLimiter(
            config.confirm_rate_limit_max, config.confirm_rate_limit_window_ms
        )

    @property
    def order_count(self) -> int:
        return len(self._orders)

    # ── Issuance ─────────────────────────────────────────────────

    def create_invoice(
        self,
        body: Any,
        *,
        idempotency_key: Optional[str] = None,
        client: str = "",
        now: Optional[int] = None,
    ) -> CreateInvoiceResult:
        self.admit_invoice_request(client)
        return self.issue_invoice(body, idempotency_key=idempotency_key, now=now)

    def admit_invoice_request(self, client: str = "") -> None:
        self._check_rate(self._invoice_limiter, CREATE_INVOICE_BUCKET, client)

    def issue_invoice(
        self,
        body: Any,
        *,
        idempotency_key: Optional[str] = None,
        now: Optional[int] = None,
    ) -> CreateInvoiceResult:
        """Issue (or replay) an invoice for an already-admitted request."""
        resolved = resolve_invoice_request(
            body,
            now=now,
            default_due_in_seconds=self.config.default_due_in_seconds,
            max_due_in_seconds=self.config.max_due_in_seconds,
        )
        if isinstance(resolved, StructuralError):
            raise resolved

        key = None
        if idempotency_key is not None and idempotency_key.strip():
            key = validate_idempotency_key(idempotency_key)
            if isinstance(key, StructuralError):
                raise key

        if key is None:
            return CreateInvoiceResult(invoice=self._issue(resolved, now), idempotent_replay=False)

        request_hash = canonical_hash({**dict(body), "payer": resolved.payer or ""})
        outcome = self.idempotency.record_or_replay(
            key,
            request_hash,
            lambda: self._issue(resolved, now).invoice_id,
            now=now,
        )
        order = self._orders.get(outcome.result_id)
        if order is None:
            raise RemitError("Stored invoice could not be loaded", "INVOICE_LOOKUP_FAILED")
        if outcome.replayed and self.audit:
            self.audit.log(EventType.INVOICE_REPLAYED, invoice_id=outcome.result_id, details={"key": key})
        return CreateInvoiceResult(invoice=order.invoice, idempotent_replay=outcome.replayed)

    def _issue(self, resolved: ResolvedInvoiceRequest, now: Optional[int]) -> Invoice:
        issued_at = int(time.time()) if now is None else now
        invoice_id = new_invoice_id()
        unsigned = Invoice(
            invoice_id=invoice_id,
            issued_at=issued_at,
            due_at=resolved.due_at,
            chain_id=self.config.chain_id,
            merchant=self.address,
            recipient=resolved.recipient or self.address,
            payer=resolved.payer,
            token=resolved.token or self.config.default_token,
            amount=resolved.amount,
            memo=derive_memo(invoice_id),
            description=resolved.description,
            merchant_reference=resolved.merchant_reference,
            purpose=resolved.purpose,
            line_items=resolved.line_items,
            metadata=resolved.metadata,
        )
        invoice = sign_invoice(self._signer, unsigned)

        # Issued invoices must pass the same gate agents apply.
        checked = validate_structure(invoice.to_dict())
        if isinstance(checked, StructuralError):
            raise StructuralError(checked.message, "INVALID_INVOICE_INPUT")

        self._orders.put(invoice.invoice_id, Order(invoice=invoice))
        logger.info(
            "Issued invoice %s for %s (%s to %s)",
            invoice.invoice_id,
            invoice.amount,
            invoice.token,
            invoice.recipient,
        )
        if self.audit:
            self.audit.log(
                EventType.INVOICE_ISSUED,
                invoice_id=invoice.invoice_id,
                payer=invoice.payer,
                recipient=invoice.recipient,
                token=invoice.token,
                amount=invoice.amount,
            )
        return invoice

    # ── Lookup ───────────────────────────────────────────────────

    def get_order(self, invoice_id: str) -> Order:
        order = self._orders.get(invoice_id)
        if order is None:
            raise NotFoundError("Invoice not found", "INVOICE_NOT_FOUND")
        return order

    # ── Settlement ───────────────────────────────────────────────

    def confirm_settlement(
        self,
        invoice_id: Optional[str],
        tx_hash: Optional[str],
        *,
        credential: Optional[str],
        client: str = "",
        now: Optional[int] = None,
    ) -> ConfirmResult:
        self.admit_confirmation(credential, client)
        return self.apply_settlement(invoice_id, tx_hash, now=now)

    def admit_confirmation(self, credential: Optional[str], client: str = "") -> None:
        """Rate limit, then require the confirm credential."""
        self._check_rate(self._confirm_limiter, CONFIRM_SETTLEMENT_BUCKET, client)
        if not credential or not hmac.compare_digest(
            credential.encode(), self.config.confirm_token.encode()
        ):
            raise AuthorizationError(
                "Missing or invalid x-merchant-confirm-token", "UNAUTHORIZED_SETTLEMENT_CONFIRM"
            )

    def apply_settlement(
        self,
        invoice_id: Optional[str],
        tx_hash: Optional[str],
        *,
        now: Optional[int] = None,
    ) -> ConfirmResult:
        """Match the referenced transaction against the invoice and confirm once.

        The ledger fetch runs without holding the per-invoice lock; the
        transition is re-checked and applied under the lock afterwards.
        """
        if not invoice_id or not tx_hash:
            raise StructuralError("Missing invoiceId/orderId or txHash", "MISSING_CONFIRMATION_FIELDS")
        if not isinstance(invoice_id, str) or not isinstance(tx_hash, str):
            raise StructuralError("invoiceId/orderId and txHash must be strings", "INVALID_CONFIRMATION_FIELDS")
        if not is_tx_hash(tx_hash):
            raise StructuralError("txHash must be 0x-prefixed 32-byte hex", "INVALID_TX_HASH")

        order = self.get_order(invoice_id)
        replay = self._confirmed_replay(order, tx_hash)
        if replay is not None:
            return replay

        events = self.ledger.get_transaction_events(tx_hash)
        matched = match_settlement(order.invoice, events)
        if matched is None:
            if self.audit:
                self.audit.log(
                    EventType.SETTLEMENT_REJECTED,
                    invoice_id=invoice_id,
                    tx_hash=tx_hash,
                    success=False,
                    reason="no matching TransferWithMemo event",
                )
            raise StructuralError(
                "No matching TransferWithMemo event found for this invoice.", "SETTLEMENT_MISMATCH"
            )

        confirmed_at = int(time.time()) if now is None else now
        with self._order_locks.hold(invoice_id):
            current = self.get_order(invoice_id)
            replay = self._confirmed_replay(current, tx_hash)
            if replay is not None:
                return replay
            updated = replace(current)
            updated.confirm(tx_hash, confirmed_at)
            self._orders.put(invoice_id, updated)

        invoice = updated.invoice
        logger.info(
            "Invoice %s confirmed: received %s (tx %s)",
            invoice_id,
            format_token_amount(invoice.amount),
            tx_hash,
        )
        if self.audit:
            self.audit.log(
                EventType.SETTLEMENT_CONFIRMED,
                invoice_id=invoice_id,
                payer=matched.from_address,
                recipient=invoice.recipient,
                token=invoice.token,
                amount=invoice.amount,
                tx_hash=tx_hash,
            )
        return ConfirmResult(status=updated.status, invoice_id=invoice_id, tx_hash=tx_hash, idempotent_replay=False)

    def _confirmed_replay(self, order: Order, tx_hash: str) -> Optional[ConfirmResult]:
        """Replay result for an already-confirmed order; conflict if the tx differs."""
        if not order.is_confirmed:
            return None
        # No-op for the recorded tx; ConflictError for any other.
        order.confirm(tx_hash, order.confirmed_at or 0)
        return ConfirmResult(
            status=order.status,
            invoice_id=order.invoice.invoice_id,
            tx_hash=order.tx_hash or tx_hash,
            idempotent_replay=True,
        )

    # ── Discovery ────────────────────────────────────────────────

    def capabilities(self) -> dict[str, Any]:
        base = self.config.base_url.rstrip("/")
        return {
            "standard": STANDARD_VERSION,
            "merchant": {"address": self.address, "name": self.config.merchant_name},
            "invoice": {
                "version": INVOICE_VERSION,
                "mode": "generic",
                "schema": f"{base}/api/schemas/invoice-v1",
                "signature": "eip191.personal_sign",
                "requiredFields": list(INVOICE_V1_JSON_SCHEMA["required"]),
                "createRequest": {
                    "required": ["amount", "description"],
                    "optional": [
                        "recipient",
                        "token",
                        "payer",
                        "dueAt",
                        "dueInSeconds",
                        "merchantReference",
                        "purpose",
                        "lineItems",
                        "metadata",
                    ],
                },
            },
            "network": {
                "chainId": self.config.chain_id,
                "settlementToken": self.config.default_token,
            },
            "settlement": {
                "event": "TransferWithMemo",
                "requiredMatches": ["token", "to", "amount", "memo", "payer?"],
                "explorer": self.config.explorer_url,
            },
            "endpoints": {
                "createInvoice": f"{base}/api/invoices",
                "getInvoice": f"{base}/api/invoices/{{invoiceId}}",
                "confirmSettlement": f"{base}/api/confirm",
            },
            "idempotency": {"createInvoiceHeader": "Idempotency-Key"},
        }

    def _check_rate(self, limiter: FixedWindowRateLimiter, bucket: str, client: str) -> None:
        decision = limiter.check(rate_limit_key(bucket, client))
        if not decision.allowed:
            logger.warning("Rate limited %s for client %s", bucket, client or "unknown")
            raise RateLimitedError(decision.retry_after_seconds)
