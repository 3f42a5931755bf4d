"""
HTTP clients for the merchant and guardian services.

Responses in the ``{"ok": false, "error": {...}}`` envelope are mapped back
onto the ``RemitError`` taxonomy so callers handle remote and local
failures the same way.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Type

import httpx

from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PolicyValidationError,
    RateLimitedError,
    RemitError,
    RequestTooLargeError,
    ServiceUnavailableError,
    StructuralError,
)

logger = logging.getLogger(__name__)


class _ServiceClient:
    invalid_error: Type[RemitError] = StructuralError

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise ServiceUnavailableError(f"{method} {url} failed: {e}") from e
        if response.status_code >= 400:
            raise self._error_from(response)
        try:
            return response.json()
        except ValueError as e:
            raise ServiceUnavailableError(f"{method} {url} returned a non-JSON body") from e

    def _error_from(self, response: httpx.Response) -> RemitError:
        status = response.status_code
        code: Optional[str] = None
        message = f"HTTP {status}"
        details = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                message = error.get("message") or message
                details = error.get("details")
            elif isinstance(error, str):
                message = error

        if status == 429:
            retry_after = response.headers.get("retry-after", "")
            seconds = int(retry_after) if retry_after.isdigit() else int((details or {}).get("retryAfterSeconds", 1))
            return RateLimitedError(seconds, message)
        if status >= 500:
            return ServiceUnavailableError(message, code)
        error_type = {
            400: self.invalid_error,
            401: AuthorizationError,
            403: AuthorizationError,
            404: NotFoundError,
            409: ConflictError,
            413: RequestTooLargeError,
        }.get(status, RemitError)
        return error_type(message, code, details)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class MerchantClient(_ServiceClient):
    def __init__(self, base_url: str, confirm_token: Optional[str] = None, **kwargs):
        super().__init__(base_url, **kwargs)
        self.confirm_token = confirm_token

    def capabilities(self) -> dict:
        return self._request("GET", "/api/capabilities")

    def create_invoice(self, request: dict, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        return self._request("POST", "/api/invoices", json=request, headers=headers)

    def get_invoice(self, invoice_id: str) -> dict:
        return self._request("GET", f"/api/invoices/{invoice_id}")

    def confirm_settlement(self, invoice_id: str, tx_hash: str) -> dict:
        headers = {"x-merchant-confirm-token": self.confirm_token} if self.confirm_token else {}
        return self._request(
            "POST",
            "/api/confirm",
            json={"invoiceId": invoice_id, "txHash": tx_hash},
            headers=headers,
        )


class GuardianClient(_ServiceClient):
    invalid_error = PolicyValidationError

    def __init__(self, base_url: str, admin_token: Optional[str] = None, **kwargs):
        super().__init__(base_url, **kwargs)
        self.admin_token = admin_token

    def get_policy(self, owner: str) -> dict:
        return self._request("GET", f"/api/delegations/{owner}")

    def put_policy(self, policy: dict) -> dict:
        headers = {"x-admin-token": self.admin_token} if self.admin_token else {}
        return self._request("POST", "/api/delegations", json=policy, headers=headers)
