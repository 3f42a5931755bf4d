"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from remit.audit import AuditChainError, AuditTrail, EventType


def _trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.INVOICE_ISSUED, invoice_id="INV-1", amount="285000000")
    trail.log(EventType.SETTLEMENT_CONFIRMED, invoice_id="INV-1", tx_hash="0x" + "11" * 32)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "1"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditChainError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_entry_breaks_chain(tmp_path):
    trail = _trail(tmp_path)
    for n in range(3):
        trail.log(EventType.INVOICE_ISSUED, invoice_id=f"INV-{n}")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(AuditChainError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_continues_across_instances(tmp_path):
    _trail(tmp_path).log(EventType.POLICY_WRITTEN, payer="0x" + "ab" * 20)
    trail = _trail(tmp_path)
    trail.log(EventType.POLICY_CHECK, payer="0x" + "ab" * 20)

    events = trail.read_events()
    assert [e.event_type for e in events] == ["policy_written", "policy_check"]
    assert events[1].prev_hash == events[0].event_hash


def test_filters_and_limit(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.INVOICE_ISSUED, invoice_id="INV-1")
    trail.log(EventType.INVOICE_ISSUED, invoice_id="INV-2")
    trail.log(EventType.PAYMENT_FAILED, invoice_id="INV-2", success=False, reason="over_budget")

    assert [e.invoice_id for e in trail.read_events(event_type=EventType.INVOICE_ISSUED)] == ["INV-1", "INV-2"]
    assert len(trail.read_events(invoice_id="INV-2")) == 2
    assert trail.read_events(limit=1)[0].event_type == "payment_failed"


def test_summary(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.PAYMENT_SUBMITTED, invoice_id="INV-1")
    trail.log(EventType.PAYMENT_FAILED, invoice_id="INV-1", success=False, reason="confirmation_unavailable")

    summary = trail.summary()
    assert summary["total_events"] == 2
    assert summary["by_type"] == {"payment_submitted": 1, "payment_failed": 1}
    assert summary["failures"] == 1
    assert json.loads(summary["last_event"])["reason"] == "confirmation_unavailable"


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("REMIT_AUDIT_HMAC_KEY", "shared-key")
    _trail(tmp_path).log(EventType.INVOICE_VERIFIED, invoice_id="INV-1")

    assert not (tmp_path / "secret" / "audit_hmac.key").exists()
    assert len(_trail(tmp_path).read_events()) == 1
