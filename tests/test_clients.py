"""Tests for the HTTP clients, including a full checkout over the real apps."""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from remit.agent import PaymentOrchestrator
from remit.clients import GuardianClient, MerchantClient
from remit.config import DEFAULT_TOKEN, AgentConfig
from remit.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PolicyValidationError,
    RateLimitedError,
    ServiceUnavailableError,
    StructuralError,
)
from remit.guardian import GuardianService
from remit.http_api import create_guardian_app, create_merchant_app
from remit.merchant import MerchantService

from conftest import ADMIN_TOKEN, CONFIRM_TOKEN, FakeLedger

BASE = "http://testserver"


def _mock_client(status, payload=None, headers=None, text=None):
    def handler(request):
        if text is not None:
            return httpx.Response(status, text=text, headers=headers)
        return httpx.Response(status, json=payload, headers=headers)

    return httpx.Client(transport=httpx.MockTransport(handler))


class TestErrorMapping:
    @pytest.mark.parametrize(
        "status,error_type",
        [
            (400, StructuralError),
            (401, AuthorizationError),
            (404, NotFoundError),
            (409, ConflictError),
            (500, ServiceUnavailableError),
            (503, ServiceUnavailableError),
        ],
    )
    def test_status_to_error(self, status, error_type):
        payload = {"ok": False, "error": {"code": "X_CODE", "message": "went wrong"}}
        client = MerchantClient(BASE, http=_mock_client(status, payload))
        with pytest.raises(error_type) as exc:
            client.get_invoice("INV-1")
        assert exc.value.message == "went wrong"

    def test_code_and_details_preserved(self):
        payload = {"ok": False, "error": {"code": "INVOICE_ALREADY_CONFIRMED", "message": "m", "details": {"a": 1}}}
        client = MerchantClient(BASE, http=_mock_client(409, payload))
        with pytest.raises(ConflictError) as exc:
            client.confirm_settlement("INV-1", "0x" + "11" * 32)
        assert exc.value.code == "INVOICE_ALREADY_CONFIRMED"
        assert exc.value.details == {"a": 1}

    def test_rate_limit_reads_retry_after(self):
        client = MerchantClient(BASE, http=_mock_client(429, {"ok": False}, headers={"Retry-After": "7"}))
        with pytest.raises(RateLimitedError) as exc:
            client.capabilities()
        assert exc.value.retry_after_seconds == 7

    def test_plain_string_error(self):
        client = GuardianClient(BASE, http=_mock_client(404, {"error": "Policy not found"}))
        with pytest.raises(NotFoundError, match="Policy not found"):
            client.get_policy("0x" + "ab" * 20)

    def test_guardian_validation_errors(self):
        payload = {"ok": False, "error": {"code": "INVALID_MAX_AMOUNT", "message": "bad"}}
        client = GuardianClient(BASE, http=_mock_client(400, payload))
        with pytest.raises(PolicyValidationError):
            client.put_policy({})

    def test_non_json_body(self):
        client = MerchantClient(BASE, http=_mock_client(200, text="<html>"))
        with pytest.raises(ServiceUnavailableError, match="non-JSON"):
            client.capabilities()

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = MerchantClient(BASE, http=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(ServiceUnavailableError):
            client.get_invoice("INV-1")

    def test_headers_sent(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={"ok": True})

        http = httpx.Client(transport=httpx.MockTransport(handler))
        MerchantClient(BASE, confirm_token="tok", http=http).confirm_settlement("INV-1", "0x" + "11" * 32)
        assert seen["x-merchant-confirm-token"] == "tok"
        MerchantClient(BASE, http=http).create_invoice({"amount": "1"}, idempotency_key="k-1")
        assert seen["idempotency-key"] == "k-1"
        GuardianClient(BASE, admin_token="adm", http=http).put_policy({})
        assert seen["x-admin-token"] == "adm"


def test_checkout_end_to_end(merchant_config, guardian_config, agent_account):
    payer = agent_account.address.lower()
    ledger = FakeLedger(payer=payer)

    merchant_http = TestClient(create_merchant_app(MerchantService(merchant_config, ledger)))
    guardian_http = TestClient(create_guardian_app(GuardianService(guardian_config)))

    guardian = GuardianClient(BASE, admin_token=ADMIN_TOKEN, http=guardian_http)
    guardian.put_policy(
        {
            "owner": agent_account.address,
            "maxAmount": "300000000",
            "allowedTokens": [DEFAULT_TOKEN],
            "expiresAt": int(time.time()) + 3600,
        }
    )

    merchant = MerchantClient(BASE, confirm_token=CONFIRM_TOKEN, http=merchant_http)
    orchestrator = PaymentOrchestrator(AgentConfig(payer=payer), merchant, guardian, ledger, sleep=lambda s: None)

    receipt = orchestrator.checkout({"amount": "285000000", "description": "Weekend ski rental"}, idempotency_key="cart-1")
    assert receipt.status == "confirmed"

    stored = merchant.get_invoice(receipt.invoice_id)
    assert stored["status"] == "confirmed"
    assert stored["txHash"] == receipt.tx_hash
    assert stored["invoice"]["payer"] == payer

    with pytest.raises(ConflictError):
        orchestrator.pay(receipt.invoice_id)
    assert len(ledger.sent) == 1
