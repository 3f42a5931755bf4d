"""Shared fixtures: accounts, a signed-invoice factory, and an in-memory ledger."""

import time

import pytest
from eth_account import Account

from remit.audit import AuditTrail
from remit.config import DEFAULT_CHAIN_ID, DEFAULT_TOKEN, GuardianConfig, MerchantConfig
from remit.errors import NotFoundError
from remit.invoice import Invoice, derive_memo, sign_invoice
from remit.settlement import TransferEvent

CONFIRM_TOKEN = "confirm-secret"
ADMIN_TOKEN = "admin-secret"


class FakeLedger:
    """Ledger double: transfers become TransferWithMemo events keyed by tx hash."""

    def __init__(self, payer: str = ""):
        self.payer = payer.lower()
        self.transactions: dict[str, list[TransferEvent]] = {}
        self.sent: list[dict] = []
        self.lookups: list[str] = []
        self.fail_with = None

    def add_transaction(self, tx_hash: str, events: list[TransferEvent]) -> None:
        self.transactions[tx_hash] = events

    def sign_message(self, message: str) -> str:
        raise NotImplementedError

    def verify_signature(self, address: str, message: str, signature: str) -> bool:
        raise NotImplementedError

    def get_transaction_events(self, tx_hash: str) -> list[TransferEvent]:
        self.lookups.append(tx_hash)
        if self.fail_with is not None:
            raise self.fail_with
        if tx_hash not in self.transactions:
            raise NotFoundError(f"Transaction not found: {tx_hash}", "TRANSACTION_NOT_FOUND")
        return self.transactions[tx_hash]

    def send_transfer(self, *, token: str, to: str, amount: int, memo: str) -> str:
        tx_hash = "0x" + f"{len(self.sent) + 1:064x}"
        self.sent.append({"token": token, "to": to, "amount": amount, "memo": memo})
        self.add_transaction(
            tx_hash,
            [
                TransferEvent(
                    contract_address=token.lower(),
                    from_address=self.payer,
                    to_address=to.lower(),
                    amount=amount,
                    memo=memo.lower(),
                )
            ],
        )
        return tx_hash


def tx_hash_for(n: int) -> str:
    return "0x" + f"{n:064x}"


def transfer_for(invoice: Invoice, *, payer: str, **overrides) -> TransferEvent:
    fields = dict(
        contract_address=invoice.token,
        from_address=payer.lower(),
        to_address=invoice.recipient,
        amount=invoice.amount_value,
        memo=invoice.memo,
    )
    fields.update(overrides)
    return TransferEvent(**fields)


@pytest.fixture
def merchant_account():
    return Account.create()


@pytest.fixture
def agent_account():
    return Account.create()


@pytest.fixture
def make_invoice(merchant_account):
    def _make(sign=True, **overrides) -> Invoice:
        now = int(time.time())
        invoice_id = overrides.pop("invoice_id", "INV-1700000000000-000001")
        fields = dict(
            invoice_id=invoice_id,
            issued_at=now,
            due_at=now + 600,
            chain_id=DEFAULT_CHAIN_ID,
            merchant=merchant_account.address.lower(),
            recipient=merchant_account.address.lower(),
            token=DEFAULT_TOKEN,
            amount="285000000",
            memo=derive_memo(invoice_id),
            description="Weekend ski rental",
        )
        fields.update(overrides)
        invoice = Invoice(**fields)
        return sign_invoice(merchant_account, invoice) if sign else invoice

    return _make


@pytest.fixture
def audit_trail(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")


@pytest.fixture
def merchant_config(merchant_account, tmp_path):
    return MerchantConfig(
        address=merchant_account.address,
        private_key=merchant_account.key.hex(),
        confirm_token=CONFIRM_TOKEN,
        state_path=tmp_path / "merchant-state.json",
        base_url="http://merchant.test",
    )


@pytest.fixture
def guardian_config(tmp_path):
    return GuardianConfig(admin_token=ADMIN_TOKEN, state_path=tmp_path / "guardian-state.json")
