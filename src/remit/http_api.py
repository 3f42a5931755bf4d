"""
FastAPI wrappers for the merchant and guardian services.

Routes only parse transport details (headers, JSON body) and delegate to
the services; every ``RemitError`` is rendered as
``{"ok": false, "error": {"code", "message", "details"?}}``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .config import MAX_REQUEST_BODY_BYTES
from .errors import (
    AuthorizationError,
    ConflictError,
    LedgerError,
    LedgerTransactionFailed,
    NotFoundError,
    PolicyValidationError,
    PolicyViolation,
    RateLimitedError,
    RemitError,
    RequestTooLargeError,
    ServiceUnavailableError,
    SignatureError,
    StructuralError,
)
from .guardian import GuardianService
from .invoice import INVOICE_V1_JSON_SCHEMA
from .merchant import MerchantService
from .rate_limit import client_identity

logger = logging.getLogger(__name__)

CONFIRM_TOKEN_HEADER = "x-merchant-confirm-token"
ADMIN_TOKEN_HEADER = "x-admin-token"
IDEMPOTENCY_KEY_HEADER = "idempotency-key"


def status_for(error: RemitError) -> int:
    if isinstance(error, RateLimitedError):
        return 429
    if isinstance(error, RequestTooLargeError):
        return 413
    if isinstance(error, AuthorizationError):
        return 401
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, (StructuralError, SignatureError, PolicyValidationError, PolicyViolation)):
        return 400
    if isinstance(error, LedgerTransactionFailed):
        return 400
    if isinstance(error, (LedgerError, ServiceUnavailableError)):
        return 502
    return 500


def _client(request: Request) -> str:
    identity = client_identity(request.headers)
    if identity == "unknown" and request.client is not None:
        return request.client.host
    return identity


def error_response(error: RemitError) -> JSONResponse:
    status = status_for(error)
    headers = {}
    if isinstance(error, RateLimitedError):
        headers["Retry-After"] = str(error.retry_after_seconds)
    if status >= 500:
        logger.error("Request failed with %s: %s", error.code, error.message)
    return JSONResponse({"ok": False, "error": error.to_dict()}, status_code=status, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RemitError)
    async def remit_error_handler(request: Request, exc: RemitError) -> JSONResponse:
        return error_response(exc)


async def read_json_body(request: Request, max_bytes: int = MAX_REQUEST_BODY_BYTES) -> Any:
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_bytes:
        raise RequestTooLargeError(f"Request body exceeds {max_bytes // 1000}KB")
    raw = await request.body()
    if len(raw) > max_bytes:
        raise RequestTooLargeError(f"Request body exceeds {max_bytes // 1000}KB")
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise StructuralError("Request body must be valid JSON", "BAD_JSON") from None


def create_merchant_app(service: MerchantService) -> FastAPI:
    app = FastAPI(title="Remit Merchant")
    register_error_handlers(app)

    @app.get("/api/health")
    def health():
        return {"ok": True, "orderCount": service.order_count}

    @app.get("/api/capabilities")
    def capabilities():
        return service.capabilities()

    @app.get("/.well-known/tempo-agent-payments.json")
    def well_known():
        return service.capabilities()

    @app.get("/api/schemas/invoice-v1")
    def invoice_schema():
        return INVOICE_V1_JSON_SCHEMA

    @app.post("/api/invoices")
    async def create_invoice(request: Request):
        await run_in_threadpool(service.admit_invoice_request, _client(request))
        body = await read_json_body(request)
        result = await run_in_threadpool(
            service.issue_invoice,
            body,
            idempotency_key=request.headers.get(IDEMPOTENCY_KEY_HEADER),
        )
        return result.to_dict()

    @app.get("/api/invoices/{invoice_id}")
    def get_invoice(invoice_id: str):
        order = service.get_order(invoice_id)
        return {"ok": True, **order.to_dict()}

    async def confirm(request: Request):
        await run_in_threadpool(
            service.admit_confirmation,
            request.headers.get(CONFIRM_TOKEN_HEADER),
            _client(request),
        )
        body = await read_json_body(request)
        if not isinstance(body, dict):
            raise StructuralError("Request body must be an object", "INVALID_BODY")
        result = await run_in_threadpool(
            service.apply_settlement,
            body.get("invoiceId") or body.get("orderId"),
            body.get("txHash"),
        )
        return result.to_dict()

    app.add_api_route("/api/confirm", confirm, methods=["POST"])
    app.add_api_route("/api/settlements/confirm", confirm, methods=["POST"])
    return app


def create_guardian_app(service: GuardianService) -> FastAPI:
    app = FastAPI(title="Remit Guardian")
    register_error_handlers(app)

    @app.get("/")
    def index():
        return {
            "ok": True,
            "service": "remit-guardian",
            "health": "/api/health",
            "readDelegation": "/api/delegations/{owner}",
            "writeDelegation": "/api/delegations",
        }

    @app.get("/api/health")
    def health():
        return {"ok": True, "policyCount": service.policy_count}

    @app.get("/api/delegations/{owner}")
    def get_delegation(owner: str):
        return service.get_policy(owner).to_dict()

    @app.post("/api/delegations")
    async def put_delegation(request: Request):
        await run_in_threadpool(
            service.admit_write,
            request.headers.get(ADMIN_TOKEN_HEADER),
            _client(request),
        )
        body = await read_json_body(request)
        policy = await run_in_threadpool(service.store_policy, body)
        return policy.to_dict()

    return app
