"""
Invoice creation, signing, and verification.

An Invoice (``tempo.invoice.v1``) is a merchant-issued, signed claim for a
specific payment. The signature is an EIP-191 personal_sign over a fixed,
pipe-delimited message whose field order is part of the wire contract:
changing it invalidates every previously issued signature.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import is_checksum_address

from .canonical import canonicalize
from .errors import StructuralError
from .money import is_amount_string


INVOICE_VERSION = "tempo.invoice.v1"
MESSAGE_DELIMITER = "|"
MEMO_SIZE_BYTES = 32

MAX_INVOICE_ID_BYTES = MEMO_SIZE_BYTES
MAX_DESCRIPTION_LENGTH = 512
MAX_REFERENCE_LENGTH = 128
MAX_PURPOSE_LENGTH = 128
MAX_LINE_ITEMS = 50
MAX_LINE_ITEM_TITLE_LENGTH = 256
MAX_LINE_ITEM_FIELD_LENGTH = 128

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_MEMO_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
_SIGNATURE_RE = re.compile(r"^0x[a-fA-F0-9]+$")

_INVOICE_FIELDS = {
    "version", "invoiceId", "issuedAt", "dueAt", "chainId", "merchant",
    "recipient", "payer", "token", "amount", "memo", "description",
    "merchantReference", "purpose", "lineItems", "metadata", "merchantSig",
}
_LINE_ITEM_FIELDS = {"id", "title", "category", "quantity", "unitAmount", "totalAmount"}

MetadataValue = Union[str, int, float, bool]


@dataclass(frozen=True)
class LineItem:
    title: str
    total_amount: str
    id: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None
    unit_amount: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.id is not None:
            d["id"] = self.id
        d["title"] = self.title
        if self.category is not None:
            d["category"] = self.category
        if self.quantity is not None:
            d["quantity"] = self.quantity
        if self.unit_amount is not None:
            d["unitAmount"] = self.unit_amount
        d["totalAmount"] = self.total_amount
        return d


@dataclass(frozen=True)
class Invoice:
    """A canonical invoice. Unsigned while ``merchant_sig`` is None."""

    invoice_id: str
    issued_at: int
    due_at: int
    chain_id: int
    merchant: str
    recipient: str
    token: str
    amount: str
    memo: str
    description: str
    payer: Optional[str] = None
    merchant_reference: Optional[str] = None
    purpose: Optional[str] = None
    line_items: Optional[tuple[LineItem, ...]] = None
    metadata: Optional[dict[str, MetadataValue]] = None
    merchant_sig: Optional[str] = None
    version: str = INVOICE_VERSION

    @property
    def amount_value(self) -> int:
        return int(self.amount)

    def unsigned(self) -> Invoice:
        return replace(self, merchant_sig=None)

    def to_dict(self) -> dict[str, Any]:
        """Wire form (camelCase), omitting absent optional fields."""
        d: dict[str, Any] = {
            "version": self.version,
            "invoiceId": self.invoice_id,
            "issuedAt": self.issued_at,
            "dueAt": self.due_at,
            "chainId": self.chain_id,
            "merchant": self.merchant,
            "recipient": self.recipient,
        }
        if self.payer is not None:
            d["payer"] = self.payer
        d["token"] = self.token
        d["amount"] = self.amount
        d["memo"] = self.memo
        d["description"] = self.description
        if self.merchant_reference is not None:
            d["merchantReference"] = self.merchant_reference
        if self.purpose is not None:
            d["purpose"] = self.purpose
        if self.line_items is not None:
            d["lineItems"] = [item.to_dict() for item in self.line_items]
        if self.metadata is not None:
            d["metadata"] = dict(self.metadata)
        if self.merchant_sig is not None:
            d["merchantSig"] = self.merchant_sig
        return d


def normalize_address(address: str) -> str:
    """Normalize 20-byte hex addresses to lower-case; reject bad checksums."""
    candidate = address.strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid address: {address}")
    body = candidate[2:]
    if body != body.lower() and body != body.upper() and not is_checksum_address(candidate):
        raise ValueError(f"Invalid address checksum: {address}")
    return "0x" + body.lower()


def is_address(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        normalize_address(value)
    except ValueError:
        return False
    return True


def derive_memo(invoice_id: str) -> str:
    """UTF-8 encode the invoice id and right-pad with zero bytes to 32 bytes."""
    raw = invoice_id.encode("utf-8")
    if len(raw) > MEMO_SIZE_BYTES:
        raise ValueError(
            f"invoiceId encodes to {len(raw)} bytes; memo holds at most {MEMO_SIZE_BYTES}"
        )
    return "0x" + raw.ljust(MEMO_SIZE_BYTES, b"\x00").hex()


def build_message(invoice: Invoice) -> str:
    """Build the exact string the merchant signs."""
    line_items = [item.to_dict() for item in invoice.line_items or ()]
    return MESSAGE_DELIMITER.join(
        [
            invoice.version,
            invoice.invoice_id,
            str(invoice.issued_at),
            str(invoice.due_at),
            str(invoice.chain_id),
            invoice.merchant.lower(),
            invoice.recipient.lower(),
            (invoice.payer or "").lower(),
            invoice.token.lower(),
            invoice.amount,
            invoice.memo.lower(),
            invoice.description,
            invoice.merchant_reference or "",
            invoice.purpose or "",
            canonicalize(line_items),
            canonicalize(invoice.metadata or {}),
        ]
    )


def sign_invoice(signer: LocalAccount | str, invoice: Invoice) -> Invoice:
    """Sign the canonical message and attach it as ``merchant_sig``."""
    account = Account.from_key(signer) if isinstance(signer, str) else signer
    signable = encode_defunct(text=build_message(invoice))
    signed = account.sign_message(signable)
    return replace(invoice, merchant_sig="0x" + bytes(signed.signature).hex())


def verify_invoice(invoice: Invoice) -> bool:
    """Check the signature recovers to ``invoice.merchant``. Never raises."""
    if not invoice.merchant_sig:
        return False
    try:
        signable = encode_defunct(text=build_message(invoice))
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(_strip_0x(invoice.merchant_sig)),
        )
    except Exception:
        return False
    return recovered.lower() == invoice.merchant.lower()


def sum_line_item_totals(line_items: tuple[LineItem, ...] | list[LineItem]) -> int:
    return sum((int(item.total_amount) for item in line_items), 0)


def validate_structure(candidate: Any, *, require_signature: bool = True) -> Invoice | StructuralError:
    """Gate for untrusted invoice payloads.

    Returns a normalized ``Invoice`` (addresses lower-cased) or the first
    ``StructuralError`` found. Pure: no I/O, no clock.
    """
    if not isinstance(candidate, Mapping):
        return StructuralError("Invoice is not an object", "INVALID_INVOICE")

    unknown = sorted(set(candidate) - _INVOICE_FIELDS)
    if unknown:
        return StructuralError(f"Unknown invoice field: {unknown[0]}", "UNKNOWN_FIELD")

    required = ["version", "invoiceId", "merchant", "recipient", "token", "amount", "memo", "description"]
    if require_signature:
        required.append("merchantSig")
    for name in required:
        value = candidate.get(name)
        if not isinstance(value, str) or not value:
            return StructuralError(f"Missing or invalid invoice field: {name}", "MISSING_FIELD")

    if candidate["version"] != INVOICE_VERSION:
        return StructuralError(f"Unsupported invoice version: {candidate['version']}", "UNSUPPORTED_VERSION")

    invoice_id = candidate["invoiceId"]
    if len(invoice_id.encode("utf-8")) > MAX_INVOICE_ID_BYTES:
        return StructuralError(
            f"invoiceId must encode to at most {MAX_INVOICE_ID_BYTES} UTF-8 bytes",
            "INVALID_INVOICE_ID",
        )

    issued_at = candidate.get("issuedAt")
    due_at = candidate.get("dueAt")
    chain_id = candidate.get("chainId")
    if not all(_is_positive_int(v) for v in (issued_at, due_at, chain_id)):
        return StructuralError("Invalid invoice timestamps or chainId", "INVALID_TIMESTAMPS")
    if due_at <= issued_at:
        return StructuralError("Invoice dueAt must be greater than issuedAt", "DUE_AT_NOT_AFTER_ISSUED_AT")

    addresses: dict[str, Optional[str]] = {}
    for name in ("merchant", "recipient", "token", "payer"):
        raw = candidate.get(name)
        if name == "payer" and raw is None:
            addresses[name] = None
            continue
        if not is_address(raw):
            return StructuralError(f"Invalid invoice {name} address", "INVALID_ADDRESS", {"field": name})
        addresses[name] = normalize_address(raw)

    amount = candidate["amount"]
    if not is_amount_string(amount):
        return StructuralError("Invalid invoice amount format", "INVALID_AMOUNT")

    memo = candidate["memo"]
    if not _MEMO_RE.match(memo):
        return StructuralError("Invalid invoice memo format", "INVALID_MEMO")
    if memo.lower() != derive_memo(invoice_id):
        return StructuralError("Invoice memo does not match invoiceId", "MEMO_MISMATCH")

    description = candidate["description"]
    if len(description) > MAX_DESCRIPTION_LENGTH:
        return StructuralError(
            f"description must be <= {MAX_DESCRIPTION_LENGTH} characters", "INVALID_DESCRIPTION"
        )

    merchant_reference = candidate.get("merchantReference")
    if merchant_reference is not None and not _is_bounded_string(merchant_reference, MAX_REFERENCE_LENGTH):
        return StructuralError("Invalid invoice merchantReference", "INVALID_MERCHANT_REFERENCE")

    purpose = candidate.get("purpose")
    if purpose is not None and not _is_bounded_string(purpose, MAX_PURPOSE_LENGTH):
        return StructuralError("Invalid invoice purpose", "INVALID_PURPOSE")

    line_items: Optional[tuple[LineItem, ...]] = None
    if candidate.get("lineItems") is not None:
        parsed_items = parse_line_items(candidate["lineItems"])
        if isinstance(parsed_items, StructuralError):
            return parsed_items
        line_items = parsed_items
        if line_items and sum_line_item_totals(line_items) != int(amount):
            return StructuralError(
                "Invoice amount must equal sum of lineItems[].totalAmount",
                "LINE_ITEM_SUM_MISMATCH",
            )

    metadata: Optional[dict[str, MetadataValue]] = None
    if candidate.get("metadata") is not None:
        parsed_metadata = parse_metadata(candidate["metadata"])
        if isinstance(parsed_metadata, StructuralError):
            return parsed_metadata
        metadata = parsed_metadata

    merchant_sig = candidate.get("merchantSig")
    if merchant_sig is not None and (not isinstance(merchant_sig, str) or not _SIGNATURE_RE.match(merchant_sig)):
        return StructuralError("Invalid invoice merchantSig format", "INVALID_SIGNATURE_FORMAT")

    return Invoice(
        version=INVOICE_VERSION,
        invoice_id=invoice_id,
        issued_at=issued_at,
        due_at=due_at,
        chain_id=chain_id,
        merchant=addresses["merchant"],
        recipient=addresses["recipient"],
        payer=addresses["payer"],
        token=addresses["token"],
        amount=amount,
        memo=memo.lower(),
        description=description,
        merchant_reference=merchant_reference,
        purpose=purpose,
        line_items=line_items,
        metadata=metadata,
        merchant_sig=merchant_sig,
    )


def parse_line_items(value: Any, max_items: int = MAX_LINE_ITEMS) -> tuple[LineItem, ...] | StructuralError:
    if not isinstance(value, list):
        return StructuralError("lineItems must be an array", "INVALID_LINE_ITEMS")
    if len(value) > max_items:
        return StructuralError(f"lineItems allows at most {max_items} entries", "INVALID_LINE_ITEMS")

    items: list[LineItem] = []
    for index, raw in enumerate(value):
        where = {"index": index}
        if not isinstance(raw, Mapping):
            return StructuralError("Invalid line item shape", "INVALID_LINE_ITEMS", where)
        if set(raw) - _LINE_ITEM_FIELDS:
            return StructuralError("Unknown line item field", "INVALID_LINE_ITEMS", where)
        if not _is_bounded_string(raw.get("title"), MAX_LINE_ITEM_TITLE_LENGTH):
            return StructuralError("Invalid line item title", "INVALID_LINE_ITEMS", where)
        if not is_amount_string(raw.get("totalAmount")):
            return StructuralError("Invalid line item totalAmount", "INVALID_LINE_ITEMS", where)
        for name in ("id", "category"):
            if raw.get(name) is not None and not _is_bounded_string(raw[name], MAX_LINE_ITEM_FIELD_LENGTH):
                return StructuralError(f"Invalid line item {name}", "INVALID_LINE_ITEMS", where)
        unit_amount = raw.get("unitAmount")
        if unit_amount is not None and not is_amount_string(unit_amount):
            return StructuralError("Invalid line item unitAmount", "INVALID_LINE_ITEMS", where)
        quantity = raw.get("quantity")
        if quantity is not None and not _is_positive_int(quantity):
            return StructuralError("Invalid line item quantity", "INVALID_LINE_ITEMS", where)
        if unit_amount is not None and quantity is not None:
            if int(unit_amount) * quantity != int(raw["totalAmount"]):
                return StructuralError(
                    "Line item unitAmount * quantity must equal totalAmount",
                    "LINE_ITEM_TOTAL_MISMATCH",
                    where,
                )
        items.append(
            LineItem(
                id=raw.get("id"),
                title=raw["title"],
                category=raw.get("category"),
                quantity=quantity,
                unit_amount=unit_amount,
                total_amount=raw["totalAmount"],
            )
        )
    return tuple(items)


def parse_metadata(
    value: Any,
    *,
    max_fields: Optional[int] = None,
    max_key_length: Optional[int] = None,
    max_string_length: Optional[int] = None,
) -> dict[str, MetadataValue] | StructuralError:
    """Validate a metadata map of primitive scalars; bounds are optional."""
    if not isinstance(value, Mapping):
        return StructuralError("metadata must be an object", "INVALID_METADATA")
    if max_fields is not None and len(value) > max_fields:
        return StructuralError(f"metadata allows at most {max_fields} fields", "INVALID_METADATA")

    normalized: dict[str, MetadataValue] = {}
    for key, raw in value.items():
        if not isinstance(key, str) or not key:
            return StructuralError("metadata keys must be non-empty strings", "INVALID_METADATA")
        if max_key_length is not None and len(key) > max_key_length:
            return StructuralError(f"metadata keys must be <= {max_key_length} characters", "INVALID_METADATA")
        if isinstance(raw, bool) or isinstance(raw, str):
            if max_string_length is not None and isinstance(raw, str) and len(raw) > max_string_length:
                return StructuralError(
                    f"metadata string values must be <= {max_string_length} characters",
                    "INVALID_METADATA",
                )
        elif isinstance(raw, (int, float)):
            if isinstance(raw, float) and not math.isfinite(raw):
                return StructuralError("metadata numbers must be finite", "INVALID_METADATA")
        else:
            return StructuralError(
                "Invoice metadata values must be string | number | boolean", "INVALID_METADATA"
            )
        normalized[key] = raw
    return normalized


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _is_bounded_string(value: Any, max_length: int) -> bool:
    return isinstance(value, str) and 0 < len(value) <= max_length


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


INVOICE_V1_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": "https://tempo.xyz/schemas/invoice-v1.json",
    "title": "Tempo Agent Invoice V1",
    "type": "object",
    "additionalProperties": False,
    "required": [
        "version", "invoiceId", "issuedAt", "dueAt", "chainId", "merchant",
        "recipient", "token", "amount", "memo", "description", "merchantSig",
    ],
    "properties": {
        "version": {"type": "string", "const": INVOICE_VERSION},
        "invoiceId": {"type": "string", "minLength": 1, "maxLength": MAX_INVOICE_ID_BYTES},
        "issuedAt": {"type": "integer", "minimum": 1},
        "dueAt": {"type": "integer", "minimum": 1},
        "chainId": {"type": "integer", "minimum": 1},
        "merchant": {"type": "string", "pattern": _ADDRESS_RE.pattern},
        "recipient": {"type": "string", "pattern": _ADDRESS_RE.pattern},
        "payer": {"type": "string", "pattern": _ADDRESS_RE.pattern},
        "token": {"type": "string", "pattern": _ADDRESS_RE.pattern},
        "amount": {"type": "string", "pattern": "^[0-9]+$"},
        "memo": {"type": "string", "pattern": _MEMO_RE.pattern},
        "description": {"type": "string", "minLength": 1, "maxLength": MAX_DESCRIPTION_LENGTH},
        "merchantReference": {"type": "string", "minLength": 1, "maxLength": MAX_REFERENCE_LENGTH},
        "purpose": {"type": "string", "minLength": 1, "maxLength": MAX_PURPOSE_LENGTH},
        "lineItems": {
            "type": "array",
            "maxItems": MAX_LINE_ITEMS,
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["title", "totalAmount"],
                "properties": {
                    "id": {"type": "string", "minLength": 1, "maxLength": MAX_LINE_ITEM_FIELD_LENGTH},
                    "title": {"type": "string", "minLength": 1, "maxLength": MAX_LINE_ITEM_TITLE_LENGTH},
                    "category": {"type": "string", "minLength": 1, "maxLength": MAX_LINE_ITEM_FIELD_LENGTH},
                    "quantity": {"type": "integer", "minimum": 1},
                    "unitAmount": {"type": "string", "pattern": "^[0-9]+$"},
                    "totalAmount": {"type": "string", "pattern": "^[0-9]+$"},
                },
            },
        },
        "metadata": {
            "type": "object",
            "additionalProperties": {"type": ["string", "number", "boolean"]},
        },
        "merchantSig": {"type": "string", "pattern": _SIGNATURE_RE.pattern},
    },
}
