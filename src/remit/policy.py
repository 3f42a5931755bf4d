"""
Delegation policies: the guardian-held bounds on what an agent may pay
on an owner's behalf.

The guardian only validates, stores and serves policies. Enforcement runs
on the spending side (the agent) via ``enforce``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import PolicyValidationError, PolicyViolation
from .invoice import Invoice, normalize_address
from .money import is_amount_string
from .state import KeyedCollection

logger = logging.getLogger(__name__)


DEFAULT_MAX_POLICY_AMOUNT = 1_000_000_000_000
DEFAULT_MAX_LIST_ENTRIES = 50
DEFAULT_MAX_POLICY_DURATION_SECONDS = 365 * 24 * 60 * 60


class ViolationRule(str, Enum):
    CHAIN_MISMATCH = "chain_mismatch"
    INVOICE_EXPIRED = "invoice_expired"
    POLICY_EXPIRED = "policy_expired"
    PAYER_MISMATCH = "payer_mismatch"
    OVER_BUDGET = "over_budget"
    RECIPIENT_NOT_ALLOWED = "recipient_not_allowed"
    TOKEN_NOT_ALLOWED = "token_not_allowed"


@dataclass(frozen=True)
class PolicyLimits:
    max_amount_ceiling: int = DEFAULT_MAX_POLICY_AMOUNT
    max_list_entries: int = DEFAULT_MAX_LIST_ENTRIES
    max_duration_seconds: int = DEFAULT_MAX_POLICY_DURATION_SECONDS


@dataclass
class DelegationPolicy:
    """Spending bounds for one owner. Empty allow-lists mean unrestricted."""

    owner: str
    max_amount: str
    expires_at: int
    allowed_recipients: list[str] = field(default_factory=list)
    allowed_tokens: list[str] = field(default_factory=list)
    updated_at: int = 0

    @property
    def max_amount_value(self) -> int:
        return int(self.max_amount)

    def is_expired(self, now: Optional[int] = None) -> bool:
        return self.expires_at < (int(time.time()) if now is None else now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "maxAmount": self.max_amount,
            "allowedRecipients": list(self.allowed_recipients),
            "allowedTokens": list(self.allowed_tokens),
            "expiresAt": self.expires_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> DelegationPolicy:
        """Load an already-validated policy (persisted state or guardian response)."""
        return cls(
            owner=normalize_address(str(d["owner"])),
            max_amount=str(d["maxAmount"]),
            allowed_recipients=[normalize_address(str(a)) for a in d.get("allowedRecipients", [])],
            allowed_tokens=[normalize_address(str(a)) for a in d.get("allowedTokens", [])],
            expires_at=int(d["expiresAt"]),
            updated_at=int(d.get("updatedAt", 0)),
        )


def parse_policy(
    candidate: Any,
    *,
    limits: PolicyLimits = PolicyLimits(),
    now: Optional[int] = None,
) -> DelegationPolicy | PolicyValidationError:
    """Validate an untyped policy write and return the policy to store."""
    now = int(time.time()) if now is None else now
    if not isinstance(candidate, Mapping):
        return PolicyValidationError("Request body must be an object", "INVALID_BODY")

    owner_raw = candidate.get("owner")
    try:
        owner = normalize_address(owner_raw) if isinstance(owner_raw, str) else None
    except ValueError:
        owner = None
    if owner is None:
        return PolicyValidationError("owner must be a valid address", "INVALID_OWNER")

    max_amount = candidate.get("maxAmount")
    if isinstance(max_amount, int) and not isinstance(max_amount, bool):
        max_amount = str(max_amount)
    if not is_amount_string(max_amount) or int(max_amount) <= 0:
        return PolicyValidationError("maxAmount must be a positive numeric string", "INVALID_MAX_AMOUNT")
    if int(max_amount) > limits.max_amount_ceiling:
        return PolicyValidationError(
            f"maxAmount exceeds guardian limit ({limits.max_amount_ceiling})",
            "MAX_AMOUNT_ABOVE_CEILING",
        )
    max_amount = str(int(max_amount))

    recipients = _parse_address_list(candidate.get("allowedRecipients"), "allowedRecipients", limits)
    if isinstance(recipients, PolicyValidationError):
        return recipients
    tokens = _parse_address_list(candidate.get("allowedTokens"), "allowedTokens", limits)
    if isinstance(tokens, PolicyValidationError):
        return tokens

    expires_at = candidate.get("expiresAt")
    if not isinstance(expires_at, int) or isinstance(expires_at, bool) or expires_at <= now:
        return PolicyValidationError("expiresAt must be a future unix timestamp (seconds)", "INVALID_EXPIRES_AT")
    if expires_at > now + limits.max_duration_seconds:
        return PolicyValidationError(
            f"expiresAt must be within {limits.max_duration_seconds} seconds from now",
            "EXPIRES_AT_TOO_FAR",
        )

    return DelegationPolicy(
        owner=owner,
        max_amount=max_amount,
        allowed_recipients=recipients,
        allowed_tokens=tokens,
        expires_at=expires_at,
        updated_at=now,
    )


def _parse_address_list(value: Any, field_name: str, limits: PolicyLimits) -> list[str] | PolicyValidationError:
    if value is None:
        return []
    if not isinstance(value, list):
        return PolicyValidationError(f"{field_name} must be an array", "INVALID_ADDRESS_LIST")
    if len(value) > limits.max_list_entries:
        return PolicyValidationError(
            f"{field_name} allows at most {limits.max_list_entries} entries", "INVALID_ADDRESS_LIST"
        )
    deduped: dict[str, None] = {}
    for entry in value:
        try:
            deduped[normalize_address(str(entry))] = None
        except ValueError:
            return PolicyValidationError(f"{field_name} contains invalid address", "INVALID_ADDRESS_LIST")
    return list(deduped)


class PolicyStore:
    """Guardian-owned policies keyed by lower-cased owner address."""

    def __init__(self, records: KeyedCollection[DelegationPolicy], limits: PolicyLimits = PolicyLimits()):
        self._records = records
        self.limits = limits

    def get(self, owner: str) -> Optional[DelegationPolicy]:
        return self._records.get(normalize_address(owner))

    def put(self, candidate: Any, now: Optional[int] = None) -> DelegationPolicy | PolicyValidationError:
        parsed = parse_policy(candidate, limits=self.limits, now=now)
        if isinstance(parsed, PolicyValidationError):
            return parsed
        self._records.put(parsed.owner, parsed)
        logger.info(
            "Delegation policy stored for %s (max %s, %d recipients, %d tokens, expires %d)",
            parsed.owner,
            parsed.max_amount,
            len(parsed.allowed_recipients),
            len(parsed.allowed_tokens),
            parsed.expires_at,
        )
        return parsed

    def __len__(self) -> int:
        return len(self._records)


def enforce(
    invoice: Invoice,
    policy: DelegationPolicy,
    payer: str,
    *,
    chain_id: int,
    now: Optional[int] = None,
) -> Optional[PolicyViolation]:
    """Check an invoice against a policy; the first failing rule is reported."""
    now = int(time.time()) if now is None else now

    if invoice.chain_id != chain_id:
        return PolicyViolation(
            ViolationRule.CHAIN_MISMATCH.value,
            f"Wrong chain: expected {chain_id}, got {invoice.chain_id}",
        )
    if invoice.due_at < now:
        return PolicyViolation(ViolationRule.INVOICE_EXPIRED.value, "Invoice expired")
    if policy.is_expired(now):
        return PolicyViolation(ViolationRule.POLICY_EXPIRED.value, "Delegation policy expired")
    if invoice.payer and invoice.payer.lower() != payer.lower():
        return PolicyViolation(
            ViolationRule.PAYER_MISMATCH.value,
            "Invoice payer does not match delegated account",
        )

    amount = invoice.amount_value
    max_amount = policy.max_amount_value
    if amount > max_amount:
        return PolicyViolation(
            ViolationRule.OVER_BUDGET.value,
            f"Over policy budget ({amount} > {max_amount})",
        )

    allowed_recipients = {r.lower() for r in policy.allowed_recipients}
    if allowed_recipients and invoice.recipient.lower() not in allowed_recipients:
        return PolicyViolation(
            ViolationRule.RECIPIENT_NOT_ALLOWED.value,
            "Recipient not allowed by delegation policy",
        )

    allowed_tokens = {t.lower() for t in policy.allowed_tokens}
    if allowed_tokens and invoice.token.lower() not in allowed_tokens:
        return PolicyViolation(
            ViolationRule.TOKEN_NOT_ALLOWED.value,
            "Token not allowed by delegation policy",
        )

    return None
