"""Tests for the persisted state document and keyed collections."""

import json
import threading

import pytest

from remit.errors import ConfigurationError
from remit.state import KeyedLocks, StateDocument


def _identity(d):
    return dict(d)


class TestStateDocument:
    def test_missing_file_starts_empty(self, tmp_path):
        doc = StateDocument(tmp_path / "state.json")
        coll = doc.collection("orders", _identity, _identity)
        assert len(coll) == 0
        assert not (tmp_path / "state.json").exists()

    def test_put_rewrites_whole_document(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        doc = StateDocument(path)
        orders = doc.collection("orders", _identity, _identity)
        keys = doc.collection("idempotency", _identity, _identity)

        orders.put("INV-1", {"status": "pending"})
        keys.put("k", {"invoiceId": "INV-1"})

        assert json.loads(path.read_text()) == {
            "orders": {"INV-1": {"status": "pending"}},
            "idempotency": {"k": {"invoiceId": "INV-1"}},
        }
        assert not list(path.parent.glob("*.tmp.*"))

    def test_reload_hydrates_collections(self, tmp_path):
        path = tmp_path / "state.json"
        StateDocument(path).collection("orders", _identity, _identity).put("INV-1", {"n": 1})
        coll = StateDocument(path).collection("orders", _identity, _identity)
        assert coll.get("INV-1") == {"n": 1}
        assert "INV-1" in coll
        assert coll.scan() == [("INV-1", {"n": 1})]

    def test_corrupt_json_is_fatal(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Failed to load state"):
            StateDocument(path)

    def test_non_object_document_is_fatal(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[]")
        with pytest.raises(ConfigurationError):
            StateDocument(path)

    def test_undecodable_record_is_fatal(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"orders": {"INV-1": {}}}))

        def decode(d):
            return d["status"]

        with pytest.raises(ConfigurationError, match="Corrupt orders record"):
            StateDocument(path).collection("orders", decode, _identity)

    def test_duplicate_collection_rejected(self):
        doc = StateDocument()
        doc.collection("orders", _identity, _identity)
        with pytest.raises(ValueError):
            doc.collection("orders", _identity, _identity)

    def test_failed_write_rolls_back_memory(self, tmp_path, monkeypatch):
        doc = StateDocument(tmp_path / "state.json")
        coll = doc.collection("orders", _identity, _identity)
        coll.put("INV-1", {"v": 1})

        def fail():
            raise OSError("disk full")

        monkeypatch.setattr(doc, "save", fail)
        with pytest.raises(OSError):
            coll.put("INV-1", {"v": 2})
        with pytest.raises(OSError):
            coll.put("INV-2", {"v": 1})
        assert coll.get("INV-1") == {"v": 1}
        assert coll.get("INV-2") is None


def test_keyed_locks_do_not_block_other_keys():
    locks = KeyedLocks()
    with locks.hold("a"):
        with locks.hold("b"):
            pass


def test_keyed_locks_are_dropped_when_released():
    locks = KeyedLocks()
    for n in range(100):
        with locks.hold(f"INV-{n}"):
            assert len(locks) == 1
    assert len(locks) == 0


def test_keyed_locks_stay_exclusive_while_contended():
    locks = KeyedLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def first():
        with locks.hold("INV-1"):
            order.append("first-in")
            entered.set()
            release.wait(5)
            order.append("first-out")

    def second():
        entered.wait(5)
        with locks.hold("INV-1"):
            order.append("second-in")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for t in threads:
        t.start()
    entered.wait(5)
    release.set()
    for t in threads:
        t.join(5)

    assert order == ["first-in", "first-out", "second-in"]
    assert len(locks) == 0
