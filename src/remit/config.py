"""
Service configuration loaded from environment variables.

Each role reads its environment once, at startup, into a frozen config.
Missing credentials are fatal (``ConfigurationError``); malformed positive
integers fall back to their defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from eth_account import Account

from .errors import ConfigurationError
from .invoice import normalize_address
from .money import is_amount_string
from .policy import (
    DEFAULT_MAX_LIST_ENTRIES,
    DEFAULT_MAX_POLICY_AMOUNT,
    DEFAULT_MAX_POLICY_DURATION_SECONDS,
    DelegationPolicy,
    PolicyLimits,
)


# Tempo Moderato testnet
DEFAULT_CHAIN_ID = 42431
DEFAULT_TOKEN = "0x20c0000000000000000000000000000000000001"
DEFAULT_RPC_URL = "https://rpc.moderato.tempo.xyz"
DEFAULT_EXPLORER_URL = "https://explore.moderato.tempo.xyz"

DEFAULT_DUE_IN_SECONDS = 10 * 60
MAX_DUE_IN_SECONDS = 30 * 24 * 60 * 60
MAX_REQUEST_BODY_BYTES = 100_000
DEFAULT_FALLBACK_MAX_AMOUNT = "200000000"
FALLBACK_POLICY_TTL_SECONDS = 24 * 60 * 60

MERCHANT_ADDRESS_ENV = "MERCHANT_ADDRESS"
MERCHANT_PRIVATE_KEY_ENV = "MERCHANT_PRIVATE_KEY"
MERCHANT_BASE_URL_ENV = "MERCHANT_BASE_URL"
MERCHANT_STATE_PATH_ENV = "MERCHANT_STATE_PATH"
MERCHANT_CONFIRM_TOKEN_ENV = "MERCHANT_CONFIRM_TOKEN"
DELEGATION_ADMIN_TOKEN_ENV = "DELEGATION_ADMIN_TOKEN"
GUARDIAN_STATE_PATH_ENV = "GUARDIAN_STATE_PATH"
AGENT_PRIVATE_KEY_ENV = "AGENT_PRIVATE_KEY"
AGENT_ADDRESS_ENV = "AGENT_ADDRESS"
AGENT_TRUSTED_MERCHANT_ENV = "AGENT_TRUSTED_MERCHANT"
RPC_URL_ENV = "REMIT_RPC_URL"
CHAIN_ID_ENV = "REMIT_CHAIN_ID"


def env_positive_int(name: str, fallback: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        parsed = int(raw.strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() == "true"


def env_secret(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def parse_address_list(value: Optional[str]) -> list[str]:
    """Comma-separated addresses, lower-cased. Blank entries are skipped."""
    if not value:
        return []
    addresses = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            addresses.append(normalize_address(entry))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    return addresses


@dataclass(frozen=True)
class MerchantConfig:
    address: str
    private_key: str = field(repr=False)
    confirm_token: str = field(repr=False)
    base_url: str = "http://localhost:3000"
    state_path: Optional[Path] = Path("data/merchant-state.json")
    chain_id: int = DEFAULT_CHAIN_ID
    default_token: str = DEFAULT_TOKEN
    rpc_url: str = DEFAULT_RPC_URL
    explorer_url: str = DEFAULT_EXPLORER_URL
    merchant_name: str = "Remit Merchant"
    invoice_rate_limit_max: int = 60
    invoice_rate_limit_window_ms: int = 60_000
    confirm_rate_limit_max: int = 30
    confirm_rate_limit_window_ms: int = 60_000
    default_due_in_seconds: int = DEFAULT_DUE_IN_SECONDS
    max_due_in_seconds: int = MAX_DUE_IN_SECONDS

    def __post_init__(self):
        if not self.address or not self.private_key:
            raise ConfigurationError(
                f"Missing {MERCHANT_ADDRESS_ENV} or {MERCHANT_PRIVATE_KEY_ENV}"
            )
        if not self.confirm_token:
            raise ConfigurationError(
                f"Missing {MERCHANT_CONFIRM_TOKEN_ENV}; settlement confirmation requires a credential"
            )
        try:
            signer_address = Account.from_key(self.private_key).address
            address = normalize_address(self.address)
        except Exception as e:
            raise ConfigurationError(f"Invalid merchant key or address: {e}") from e
        if signer_address.lower() != address:
            raise ConfigurationError(
                f"{MERCHANT_PRIVATE_KEY_ENV} does not match {MERCHANT_ADDRESS_ENV}"
            )

    @classmethod
    def from_env(cls) -> MerchantConfig:
        state_path = os.getenv(MERCHANT_STATE_PATH_ENV)
        return cls(
            address=os.getenv(MERCHANT_ADDRESS_ENV, ""),
            private_key=os.getenv(MERCHANT_PRIVATE_KEY_ENV, ""),
            confirm_token=env_secret(MERCHANT_CONFIRM_TOKEN_ENV) or "",
            base_url=os.getenv(MERCHANT_BASE_URL_ENV, "http://localhost:3000"),
            state_path=Path(state_path) if state_path else Path("data/merchant-state.json"),
            chain_id=env_positive_int(CHAIN_ID_ENV, DEFAULT_CHAIN_ID),
            rpc_url=os.getenv(RPC_URL_ENV, DEFAULT_RPC_URL),
            invoice_rate_limit_max=env_positive_int("MERCHANT_INVOICE_RATE_LIMIT_MAX", 60),
            invoice_rate_limit_window_ms=env_positive_int("MERCHANT_INVOICE_RATE_LIMIT_WINDOW_MS", 60_000),
            confirm_rate_limit_max=env_positive_int("MERCHANT_CONFIRM_RATE_LIMIT_MAX", 30),
            confirm_rate_limit_window_ms=env_positive_int("MERCHANT_CONFIRM_RATE_LIMIT_WINDOW_MS", 60_000),
        )


@dataclass(frozen=True)
class GuardianConfig:
    admin_token: str = field(repr=False)
    state_path: Optional[Path] = Path("data/guardian-state.json")
    max_policy_amount: int = DEFAULT_MAX_POLICY_AMOUNT
    max_list_entries: int = DEFAULT_MAX_LIST_ENTRIES
    max_policy_duration_seconds: int = DEFAULT_MAX_POLICY_DURATION_SECONDS
    write_rate_limit_max: int = 30
    write_rate_limit_window_ms: int = 60_000

    def __post_init__(self):
        if not self.admin_token:
            raise ConfigurationError(f"Guardian misconfigured: missing {DELEGATION_ADMIN_TOKEN_ENV}")

    @property
    def policy_limits(self) -> PolicyLimits:
        return PolicyLimits(
            max_amount_ceiling=self.max_policy_amount,
            max_list_entries=self.max_list_entries,
            max_duration_seconds=self.max_policy_duration_seconds,
        )

    @classmethod
    def from_env(cls) -> GuardianConfig:
        state_path = os.getenv(GUARDIAN_STATE_PATH_ENV)
        return cls(
            admin_token=env_secret(DELEGATION_ADMIN_TOKEN_ENV) or "",
            state_path=Path(state_path) if state_path else Path("data/guardian-state.json"),
            max_policy_amount=env_positive_int("GUARDIAN_MAX_POLICY_AMOUNT", DEFAULT_MAX_POLICY_AMOUNT),
            write_rate_limit_max=env_positive_int("GUARDIAN_WRITE_RATE_LIMIT_MAX", 30),
            write_rate_limit_window_ms=env_positive_int("GUARDIAN_WRITE_RATE_LIMIT_WINDOW_MS", 60_000),
        )


@dataclass(frozen=True)
class AgentConfig:
    """Spending-side settings. The local fallback policy is used only when opted in."""

    payer: str
    chain_id: int = DEFAULT_CHAIN_ID
    allow_local_policy_fallback: bool = False
    fallback_max_amount: str = DEFAULT_FALLBACK_MAX_AMOUNT
    fallback_allowed_recipients: tuple[str, ...] = ()
    fallback_allowed_tokens: tuple[str, ...] = (DEFAULT_TOKEN,)
    confirm_retries: int = 3
    confirm_backoff_seconds: float = 1.0
    merchant_url: str = "http://localhost:3000"
    guardian_url: str = "http://localhost:3001"
    merchant_confirm_token: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    rpc_url: str = DEFAULT_RPC_URL
    trusted_merchant: Optional[str] = None

    def __post_init__(self):
        try:
            normalize_address(self.payer)
        except ValueError as e:
            raise ConfigurationError(f"Invalid agent payer address: {e}") from e
        if self.trusted_merchant:
            try:
                object.__setattr__(self, "trusted_merchant", normalize_address(self.trusted_merchant))
            except ValueError as e:
                raise ConfigurationError(f"Invalid {AGENT_TRUSTED_MERCHANT_ENV}: {e}") from e
        if not is_amount_string(self.fallback_max_amount):
            raise ConfigurationError("Fallback max amount must be a numeric string")

    def fallback_policy(self, now: int) -> DelegationPolicy:
        return DelegationPolicy(
            owner=normalize_address(self.payer),
            max_amount=self.fallback_max_amount,
            allowed_recipients=list(self.fallback_allowed_recipients),
            allowed_tokens=list(self.fallback_allowed_tokens),
            expires_at=now + FALLBACK_POLICY_TTL_SECONDS,
            updated_at=now,
        )

    @classmethod
    def from_env(cls) -> AgentConfig:
        private_key = env_secret(AGENT_PRIVATE_KEY_ENV)
        if not private_key:
            raise ConfigurationError(f"Missing {AGENT_PRIVATE_KEY_ENV}")
        try:
            key_address = Account.from_key(private_key).address.lower()
        except Exception as e:
            raise ConfigurationError(f"Invalid {AGENT_PRIVATE_KEY_ENV}: {e}") from e

        payer = env_secret(AGENT_ADDRESS_ENV) or key_address
        if payer.lower() != key_address:
            raise ConfigurationError(f"{AGENT_PRIVATE_KEY_ENV} does not match {AGENT_ADDRESS_ENV}")

        fallback_amount = os.getenv("AGENT_MAX_AMOUNT", DEFAULT_FALLBACK_MAX_AMOUNT)
        fallback_tokens = parse_address_list(os.getenv("AGENT_ALLOWED_TOKENS"))
        return cls(
            payer=payer,
            chain_id=env_positive_int(CHAIN_ID_ENV, DEFAULT_CHAIN_ID),
            allow_local_policy_fallback=env_flag("ALLOW_LOCAL_POLICY_FALLBACK"),
            fallback_max_amount=fallback_amount,
            fallback_allowed_recipients=tuple(parse_address_list(os.getenv("AGENT_ALLOWED_RECIPIENTS"))),
            fallback_allowed_tokens=tuple(fallback_tokens) or (DEFAULT_TOKEN,),
            merchant_url=os.getenv("MERCHANT_URL", "http://localhost:3000"),
            guardian_url=os.getenv("GUARDIAN_URL", "http://localhost:3001"),
            merchant_confirm_token=env_secret(MERCHANT_CONFIRM_TOKEN_ENV),
            private_key=private_key,
            rpc_url=os.getenv(RPC_URL_ENV, DEFAULT_RPC_URL),
            trusted_merchant=os.getenv(AGENT_TRUSTED_MERCHANT_ENV, "").strip() or None,
        )
