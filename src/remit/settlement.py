"""
Settlement matching: reconciles a signed invoice against observed ledger
``TransferWithMemo`` events, and the merchant-side order lifecycle tied to it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from eth_utils import keccak

from .invoice import Invoice, validate_structure
from .errors import ConflictError, StructuralError


# TIP-20: event TransferWithMemo(address indexed from, address indexed to, uint256 amount, bytes32 indexed memo)
TRANSFER_WITH_MEMO_SIGNATURE = "TransferWithMemo(address,address,uint256,bytes32)"
TRANSFER_WITH_MEMO_TOPIC = "0x" + keccak(text=TRANSFER_WITH_MEMO_SIGNATURE).hex()


@dataclass(frozen=True)
class TransferEvent:
    contract_address: str
    from_address: str
    to_address: str
    amount: int
    memo: str
    log_index: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contractAddress": self.contract_address,
            "from": self.from_address,
            "to": self.to_address,
            "amount": str(self.amount),
            "memo": self.memo,
            "logIndex": self.log_index,
        }


def match_settlement(invoice: Invoice, events: Iterable[TransferEvent]) -> Optional[TransferEvent]:
    """Return the first event that settles ``invoice``, or None."""
    expected_amount = invoice.amount_value
    token = invoice.token.lower()
    recipient = invoice.recipient.lower()
    memo = invoice.memo.lower()
    payer = invoice.payer.lower() if invoice.payer else None

    for event in events:
        if event.contract_address.lower() != token:
            continue
        if event.to_address.lower() != recipient:
            continue
        if int(event.amount) != expected_amount:
            continue
        if event.memo.lower() != memo:
            continue
        if payer is not None and event.from_address.lower() != payer:
            continue
        return event
    return None


def decode_transfer_with_memo(log: Mapping[str, Any]) -> Optional[TransferEvent]:
    """Decode a raw JSON-RPC receipt log; non-matching logs return None."""
    topics = [str(t).lower() for t in log.get("topics") or []]
    if len(topics) != 4 or topics[0] != TRANSFER_WITH_MEMO_TOPIC:
        return None
    data = str(log.get("data") or "0x")
    data_hex = data[2:] if data.startswith("0x") else data
    if len(data_hex) < 64:
        return None
    log_index = log.get("logIndex")
    return TransferEvent(
        contract_address=str(log.get("address", "")).lower(),
        from_address=_topic_to_address(topics[1]),
        to_address=_topic_to_address(topics[2]),
        amount=int(data_hex[:64], 16),
        memo=topics[3],
        log_index=int(log_index, 16) if isinstance(log_index, str) else log_index,
    )


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:]


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


@dataclass
class Order:
    """Merchant record binding an issued invoice to its settlement state."""

    invoice: Invoice
    status: str = OrderStatus.PENDING.value
    tx_hash: Optional[str] = None
    confirmed_at: Optional[int] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == OrderStatus.CONFIRMED.value

    def confirm(self, tx_hash: str, now: int) -> bool:
        """Apply pending -> confirmed once.

        Returns False for a replay with the same transaction; raises
        ConflictError for a different one.
        """
        if self.is_confirmed:
            if (self.tx_hash or "").lower() == tx_hash.lower():
                return False
            raise ConflictError(
                "Invoice is already confirmed with a different transaction hash.",
                "INVOICE_ALREADY_CONFIRMED",
                {"existingTxHash": self.tx_hash or "unknown"},
            )
        self.status = OrderStatus.CONFIRMED.value
        self.tx_hash = tx_hash
        self.confirmed_at = now
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "invoice": self.invoice.to_dict(),
            "txHash": self.tx_hash,
            "confirmedAt": self.confirmed_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Order:
        invoice = validate_structure(d["invoice"])
        if isinstance(invoice, StructuralError):
            raise ValueError(f"Stored invoice is invalid: {invoice.message}")
        status = str(d.get("status", OrderStatus.PENDING.value))
        if status not in {s.value for s in OrderStatus}:
            raise ValueError(f"Invalid order status: {status}")
        return cls(
            invoice=invoice,
            status=status,
            tx_hash=d.get("txHash"),
            confirmed_at=int(d["confirmedAt"]) if d.get("confirmedAt") is not None else None,
        )
