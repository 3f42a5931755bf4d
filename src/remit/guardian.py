"""Guardian service: stores and serves per-owner delegation policies."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Optional

from .audit import AuditTrail, EventType
from .config import GuardianConfig
from .errors import (
    AuthorizationError,
    NotFoundError,
    PolicyValidationError,
    RateLimitedError,
    StructuralError,
)
from .invoice import normalize_address
from .policy import DelegationPolicy, PolicyStore
from .rate_limit import FixedWindowRateLimiter, rate_limit_key
from .state import StateDocument

logger = logging.getLogger(__name__)

WRITE_POLICY_BUCKET = "write-policy"


class GuardianService:
    def __init__(
        self,
        config: GuardianConfig,
        audit: Optional[AuditTrail] = None,
        state: Optional[StateDocument] = None,
    ):
        self.config = config
        self.audit = audit
        self._state = state if state is not None else StateDocument(config.state_path)
        self.policies = PolicyStore(
            self._state.collection("policies", DelegationPolicy.from_dict, DelegationPolicy.to_dict),
            config.policy_limits,
        )
        self._write_limiter = FixedWindowRateLimiter(
            config.write_rate_limit_max, config.write_rate_limit_window_ms
        )

    @property
    def policy_count(self) -> int:
        return len(self.policies)

    def get_policy(self, owner: str) -> DelegationPolicy:
        try:
            normalized = normalize_address(owner)
        except ValueError:
            raise StructuralError("Invalid owner address", "INVALID_OWNER") from None
        policy = self.policies.get(normalized)
        if policy is None:
            raise NotFoundError("Policy not found", "POLICY_NOT_FOUND")
        return policy

    def put_policy(
        self,
        body: Any,
        *,
        credential: Optional[str],
        client: str = "",
        now: Optional[int] = None,
    ) -> DelegationPolicy:
        """Validate and store a policy. Checks rate limit, then credential, then body."""
        self.admit_write(credential, client)
        return self.store_policy(body, now=now)

    def admit_write(self, credential: Optional[str], client: str = "") -> None:
        decision = self._write_limiter.check(rate_limit_key(WRITE_POLICY_BUCKET, client))
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after_seconds, "Too many policy write requests")

        if not credential or not hmac.compare_digest(credential.encode(), self.config.admin_token.encode()):
            logger.warning("Rejected policy write with invalid admin token from %s", client or "unknown")
            raise AuthorizationError("Unauthorized")

    def store_policy(self, body: Any, *, now: Optional[int] = None) -> DelegationPolicy:
        stored = self.policies.put(body, now=now)
        if isinstance(stored, PolicyValidationError):
            raise stored

        if self.audit:
            self.audit.log(
                EventType.POLICY_WRITTEN,
                payer=stored.owner,
                amount=stored.max_amount,
                details={
                    "allowedRecipients": stored.allowed_recipients,
                    "allowedTokens": stored.allowed_tokens,
                    "expiresAt": stored.expires_at,
                },
            )
        return stored
