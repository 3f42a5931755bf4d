"""Tests for the merchant and guardian HTTP surfaces."""

import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from remit.config import DEFAULT_TOKEN
from remit.errors import (
    ConflictError,
    LedgerTransactionFailed,
    PolicyViolation,
    RateLimitedError,
    RemitError,
    ServiceUnavailableError,
    TransientLedgerError,
)
from remit.guardian import GuardianService
from remit.http_api import create_guardian_app, create_merchant_app, status_for
from remit.merchant import MerchantService

from conftest import ADMIN_TOKEN, CONFIRM_TOKEN, FakeLedger, transfer_for, tx_hash_for

PAYER = "0x" + "aa" * 20
OWNER = "0x" + "ab" * 20


@pytest.fixture
def ledger():
    return FakeLedger(payer=PAYER)


@pytest.fixture
def merchant_service(merchant_config, ledger):
    return MerchantService(merchant_config, ledger)


@pytest.fixture
def merchant(merchant_service):
    return TestClient(create_merchant_app(merchant_service))


@pytest.fixture
def guardian(guardian_config):
    return TestClient(create_guardian_app(GuardianService(guardian_config)))


def _create(client, body=None, **headers):
    return client.post("/api/invoices", json=body or {"amount": "285000000", "description": "Skis"}, headers=headers)


def _confirm_headers():
    return {"x-merchant-confirm-token": CONFIRM_TOKEN}


@pytest.mark.parametrize(
    "error,status",
    [
        (RateLimitedError(1), 429),
        (ConflictError("dup"), 409),
        (PolicyViolation("over_budget", "too much"), 400),
        (LedgerTransactionFailed("reverted"), 400),
        (TransientLedgerError("not mined"), 502),
        (ServiceUnavailableError("down"), 502),
        (RemitError("boom"), 500),
    ],
)
def test_status_mapping(error, status):
    assert status_for(error) == status


class TestMerchantDiscovery:
    def test_health(self, merchant):
        assert merchant.get("/api/health").json() == {"ok": True, "orderCount": 0}

    def test_capabilities_and_well_known_match(self, merchant):
        caps = merchant.get("/api/capabilities").json()
        assert caps["standard"] == "tempo.agent-payments.v1"
        assert merchant.get("/.well-known/tempo-agent-payments.json").json() == caps

    def test_schema(self, merchant):
        schema = merchant.get("/api/schemas/invoice-v1").json()
        assert schema["title"] == "Tempo Agent Invoice V1"


class TestCreateInvoice:
    def test_creates_invoice(self, merchant):
        response = _create(merchant)
        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["idempotentReplay"] is False
        assert payload["invoice"]["amount"] == "285000000"
        assert merchant.get("/api/health").json()["orderCount"] == 1

    def test_idempotency_header(self, merchant):
        first = _create(merchant, **{"Idempotency-Key": "cart-7"}).json()
        second = _create(merchant, **{"Idempotency-Key": "cart-7"}).json()
        assert second["idempotentReplay"] is True
        assert second["invoice"]["invoiceId"] == first["invoice"]["invoiceId"]

        conflict = _create(merchant, {"amount": "1", "description": "x"}, **{"Idempotency-Key": "cart-7"})
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD"

    def test_validation_error_envelope(self, merchant):
        response = _create(merchant, {"amount": "1.5", "description": "x"})
        assert response.status_code == 400
        assert response.json() == {
            "ok": False,
            "error": {
                "code": "MISSING_OR_INVALID_AMOUNT",
                "message": "amount is required and must be a numeric string",
            },
        }

    def test_bad_json(self, merchant):
        response = merchant.post("/api/invoices", content=b"{nope", headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_JSON"

    def test_body_too_large(self, merchant):
        body = {"amount": "1", "description": "x", "metadata": {"pad": "x" * 120_000}}
        response = _create(merchant, body)
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "REQUEST_TOO_LARGE"

    def test_rate_limit_checked_before_body(self, merchant_config, ledger):
        service = MerchantService(replace(merchant_config, invoice_rate_limit_max=1), ledger)
        client = TestClient(create_merchant_app(service))
        assert _create(client, **{"X-Forwarded-For": "7.7.7.7"}).status_code == 200

        response = client.post("/api/invoices", content=b"{nope", headers={"X-Forwarded-For": "7.7.7.7"})
        assert response.status_code == 429
        assert int(response.headers["retry-after"]) >= 1
        assert response.json()["error"]["details"]["retryAfterSeconds"] >= 1

        assert _create(client, **{"X-Forwarded-For": "8.8.8.8"}).status_code == 200


class TestGetInvoice:
    def test_found(self, merchant):
        invoice = _create(merchant).json()["invoice"]
        response = merchant.get(f"/api/invoices/{invoice['invoiceId']}")
        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["status"] == "pending"
        assert payload["invoice"] == invoice
        assert payload["txHash"] is None

    def test_not_found(self, merchant):
        response = merchant.get("/api/invoices/INV-nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "INVOICE_NOT_FOUND"


class TestConfirm:
    def _issue_and_pay(self, merchant, merchant_service, ledger, n=1, **overrides):
        invoice_id = _create(merchant).json()["invoice"]["invoiceId"]
        invoice = merchant_service.get_order(invoice_id).invoice
        tx_hash = tx_hash_for(n)
        ledger.add_transaction(tx_hash, [transfer_for(invoice, payer=PAYER, **overrides)])
        return invoice_id, tx_hash

    def test_confirm_and_replay(self, merchant, merchant_service, ledger):
        invoice_id, tx_hash = self._issue_and_pay(merchant, merchant_service, ledger)
        body = {"invoiceId": invoice_id, "txHash": tx_hash}

        first = merchant.post("/api/confirm", json=body, headers=_confirm_headers())
        assert first.status_code == 200
        assert first.json() == {
            "ok": True,
            "status": "confirmed",
            "invoiceId": invoice_id,
            "txHash": tx_hash,
            "idempotentReplay": False,
        }

        second = merchant.post("/api/settlements/confirm", json=body, headers=_confirm_headers())
        assert second.json()["idempotentReplay"] is True
        assert merchant.get(f"/api/invoices/{invoice_id}").json()["txHash"] == tx_hash

    def test_order_id_alias(self, merchant, merchant_service, ledger):
        invoice_id, tx_hash = self._issue_and_pay(merchant, merchant_service, ledger)
        response = merchant.post(
            "/api/settlements/confirm",
            json={"orderId": invoice_id, "txHash": tx_hash},
            headers=_confirm_headers(),
        )
        assert response.status_code == 200

    def test_conflicting_tx(self, merchant, merchant_service, ledger):
        invoice_id, first = self._issue_and_pay(merchant, merchant_service, ledger, n=1)
        invoice = merchant_service.get_order(invoice_id).invoice
        second = tx_hash_for(2)
        ledger.add_transaction(second, [transfer_for(invoice, payer=PAYER)])

        merchant.post("/api/confirm", json={"invoiceId": invoice_id, "txHash": first}, headers=_confirm_headers())
        response = merchant.post(
            "/api/confirm", json={"invoiceId": invoice_id, "txHash": second}, headers=_confirm_headers()
        )
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"existingTxHash": first}

    def test_credential_checked_before_body(self, merchant):
        response = merchant.post("/api/confirm", content=b"{nope")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED_SETTLEMENT_CONFIRM"

    def test_non_object_body(self, merchant):
        response = merchant.post("/api/confirm", json=["x"], headers=_confirm_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_BODY"

    @pytest.mark.parametrize(
        "body",
        [
            {"invoiceId": ["INV-1"], "txHash": tx_hash_for(1)},
            {"invoiceId": {"id": "INV-1"}, "txHash": tx_hash_for(1)},
            {"orderId": 7, "txHash": tx_hash_for(1)},
            {"invoiceId": "INV-1", "txHash": 12345},
        ],
    )
    def test_non_string_fields_are_rejected(self, merchant, ledger, body):
        response = merchant.post("/api/confirm", json=body, headers=_confirm_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_CONFIRMATION_FIELDS"
        assert ledger.lookups == []

    def test_mismatch(self, merchant, merchant_service, ledger):
        invoice_id, tx_hash = self._issue_and_pay(merchant, merchant_service, ledger, amount=5)
        response = merchant.post(
            "/api/confirm", json={"invoiceId": invoice_id, "txHash": tx_hash}, headers=_confirm_headers()
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "SETTLEMENT_MISMATCH"

    def test_ledger_unavailable_is_502(self, merchant, merchant_service, ledger):
        invoice_id, tx_hash = self._issue_and_pay(merchant, merchant_service, ledger)
        ledger.fail_with = TransientLedgerError("rpc down")
        response = merchant.post(
            "/api/confirm", json={"invoiceId": invoice_id, "txHash": tx_hash}, headers=_confirm_headers()
        )
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "LEDGER_UNAVAILABLE"
        assert merchant.get(f"/api/invoices/{invoice_id}").json()["status"] == "pending"


class TestGuardianApi:
    def _policy(self, **overrides):
        body = {
            "owner": OWNER,
            "maxAmount": "300000000",
            "allowedTokens": [DEFAULT_TOKEN],
            "expiresAt": int(time.time()) + 3600,
        }
        body.update(overrides)
        return body

    def test_index_and_health(self, guardian):
        assert guardian.get("/").json()["service"] == "remit-guardian"
        assert guardian.get("/api/health").json() == {"ok": True, "policyCount": 0}

    def test_write_then_read(self, guardian):
        response = guardian.post("/api/delegations", json=self._policy(), headers={"x-admin-token": ADMIN_TOKEN})
        assert response.status_code == 200
        stored = response.json()
        assert stored["owner"] == OWNER
        assert stored["allowedRecipients"] == []
        assert guardian.get(f"/api/delegations/{OWNER}").json() == stored

    def test_write_requires_admin_token(self, guardian):
        response = guardian.post("/api/delegations", json=self._policy(), headers={"x-admin-token": "wrong"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Unauthorized"

    def test_invalid_policy(self, guardian):
        response = guardian.post(
            "/api/delegations", json=self._policy(maxAmount="0"), headers={"x-admin-token": ADMIN_TOKEN}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_MAX_AMOUNT"

    def test_unknown_and_malformed_owner(self, guardian):
        assert guardian.get(f"/api/delegations/{OWNER}").status_code == 404
        assert guardian.get("/api/delegations/alice").status_code == 400
