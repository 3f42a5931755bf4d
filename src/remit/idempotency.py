"""Request-hash-keyed deduplication for invoice creation."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import ConflictError, StructuralError
from .state import KeyedCollection, KeyedLocks

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 128
_KEY_RE = re.compile(r"^[A-Za-z0-9:._-]+$")


@dataclass
class IdempotencyRecord:
    request_hash: str
    invoice_id: str
    created_at: int

    def to_dict(self) -> dict:
        return {
            "requestHash": self.request_hash,
            "invoiceId": self.invoice_id,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> IdempotencyRecord:
        return cls(
            request_hash=str(d["requestHash"]),
            invoice_id=str(d["invoiceId"]),
            created_at=int(d["createdAt"]),
        )


@dataclass
class IdempotencyOutcome:
    result_id: str
    replayed: bool


def validate_idempotency_key(key: str) -> str | StructuralError:
    candidate = key.strip()
    if not candidate or len(candidate) > MAX_IDEMPOTENCY_KEY_LENGTH or not _KEY_RE.match(candidate):
        return StructuralError(
            f"Idempotency-Key must be <= {MAX_IDEMPOTENCY_KEY_LENGTH} chars and use [A-Za-z0-9:._-]",
            "INVALID_IDEMPOTENCY_KEY",
        )
    return candidate


class IdempotencyStore:
    """
    Maps caller-chosen keys to the resource a request created.

    Records never expire within the process lifetime. Concurrent callers
    with the same key serialize on a per-key lock: the loser waits for the
    winner and then replays its result.
    """

    def __init__(self, records: KeyedCollection[IdempotencyRecord]):
        self._records = records
        self._locks = KeyedLocks()

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self._records.get(key)

    def record_or_replay(
        self,
        key: str,
        request_hash: str,
        compute: Callable[[], str],
        now: Optional[int] = None,
    ) -> IdempotencyOutcome:
        """Run ``compute`` once per key; replay its result id on matching retries."""
        with self._locks.hold(key):
            existing = self._records.get(key)
            if existing is not None:
                if existing.request_hash != request_hash:
                    raise ConflictError(
                        "Idempotency-Key already used with different request payload.",
                        "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD",
                    )
                logger.info("Idempotent replay for key %s -> %s", key, existing.invoice_id)
                return IdempotencyOutcome(result_id=existing.invoice_id, replayed=True)

            result_id = compute()
            self._records.put(
                key,
                IdempotencyRecord(
                    request_hash=request_hash,
                    invoice_id=result_id,
                    created_at=int(time.time()) if now is None else now,
                ),
            )
            return IdempotencyOutcome(result_id=result_id, replayed=False)
