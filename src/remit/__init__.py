"""
Remit: signed invoices, delegated spending, and on-chain settlement on Tempo.

Merchant signs an invoice → agent checks it against the owner's
delegation policy → agent pays with the invoice memo → merchant
confirms the transfer on chain.
"""

__version__ = "0.1.0"

from .canonical import canonical_hash, canonicalize
from .errors import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    LedgerError,
    NotFoundError,
    PolicyValidationError,
    PolicyViolation,
    RateLimitedError,
    RemitError,
    ServiceUnavailableError,
    SignatureError,
    StructuralError,
    TransferPendingError,
)
from .invoice import Invoice, LineItem, derive_memo, sign_invoice, validate_structure, verify_invoice
from .policy import DelegationPolicy, PolicyStore, enforce, parse_policy
from .rate_limit import FixedWindowRateLimiter
from .idempotency import IdempotencyStore
from .settlement import Order, OrderStatus, TransferEvent, match_settlement
from .merchant import MerchantService
from .guardian import GuardianService
from .agent import PaymentOrchestrator, PaymentReceipt
from .audit import AuditTrail, EventType

__all__ = [
    "canonicalize", "canonical_hash",
    "RemitError", "StructuralError", "SignatureError", "PolicyValidationError", "PolicyViolation",
    "ConflictError", "NotFoundError", "RateLimitedError", "AuthorizationError",
    "ConfigurationError", "LedgerError", "TransferPendingError", "ServiceUnavailableError",
    "Invoice", "LineItem", "derive_memo", "sign_invoice", "verify_invoice", "validate_structure",
    "DelegationPolicy", "PolicyStore", "parse_policy", "enforce",
    "FixedWindowRateLimiter", "IdempotencyStore",
    "Order", "OrderStatus", "TransferEvent", "match_settlement",
    "MerchantService", "GuardianService", "PaymentOrchestrator", "PaymentReceipt",
    "AuditTrail", "EventType",
]
