"""
Remit CLI. Runs the merchant and guardian services and drives agent payments.

Commands:
    remit merchant serve    Run the invoice issuing / settlement service
    remit guardian serve    Run the delegation policy service
    remit policy set        Write a delegation policy to the guardian
    remit policy show       Read an owner's delegation policy
    remit invoice verify    Check an invoice file's structure and signature
    remit pay               Pay an existing invoice as the agent
    remit checkout          Request a new invoice and pay it
    remit audit             View the audit trail
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .agent import PaymentOrchestrator
from .audit import AuditChainError, AuditTrail
from .clients import GuardianClient, MerchantClient
from .config import (
    DEFAULT_TOKEN,
    DELEGATION_ADMIN_TOKEN_ENV,
    AgentConfig,
    GuardianConfig,
    MerchantConfig,
)
from .errors import ConfigurationError, PolicyViolation, RemitError
from .invoice import validate_structure, verify_invoice
from .ledger import JsonRpcLedgerClient
from .money import format_token_amount


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit() or int(raw[:-1]) <= 0:
        raise ValueError(f"Invalid duration: {value} (expected formats like 12h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]


def _parse_addresses(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _build_orchestrator(config: AgentConfig) -> PaymentOrchestrator:
    ledger = JsonRpcLedgerClient.from_private_key(config.rpc_url, config.chain_id, config.private_key)
    return PaymentOrchestrator(
        config,
        merchant=MerchantClient(config.merchant_url, confirm_token=config.merchant_confirm_token),
        guardian=GuardianClient(config.guardian_url),
        ledger=ledger,
        audit=AuditTrail(),
    )


def _echo_receipt(receipt) -> None:
    click.echo(f"✅ Invoice {receipt.invoice_id} {receipt.status}")
    click.echo(f"   Amount:    {format_token_amount(receipt.amount)} ({receipt.amount} base units)")
    click.echo(f"   Recipient: {receipt.recipient}")
    click.echo(f"   Tx:        {receipt.tx_hash}")
    click.echo(f"   Policy:    {receipt.policy_source}")


def _run_payment(action) -> None:
    try:
        config = AgentConfig.from_env()
    except ConfigurationError as e:
        _fail(str(e))
    orchestrator = _build_orchestrator(config)
    try:
        receipt = action(orchestrator)
    except PolicyViolation as e:
        _fail(f"Blocked by delegation policy ({e.rule}): {e.message}")
    except RemitError as e:
        _fail(f"Payment failed [{e.code}]: {e.message}")
    _echo_receipt(receipt)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging verbosity (default: INFO)",
)
def main(log_level: str):
    """Remit: signed invoices and delegated agent payments on Tempo."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.group("merchant")
def merchant_group():
    """Merchant service operations."""
    pass


@merchant_group.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=3000, help="Listen port (default: 3000)")
def merchant_serve(host: str, port: int):
    """Serve the merchant API (invoices, settlement confirmation, discovery)."""
    import uvicorn

    from .http_api import create_merchant_app
    from .merchant import MerchantService

    try:
        config = MerchantConfig.from_env()
    except ConfigurationError as e:
        _fail(str(e))
    ledger = JsonRpcLedgerClient.from_private_key(config.rpc_url, config.chain_id, config.private_key)
    service = MerchantService(config, ledger, audit=AuditTrail())
    click.echo(f"🧾 Merchant {config.address} on chain {config.chain_id}")
    uvicorn.run(create_merchant_app(service), host=host, port=port)


@main.group("guardian")
def guardian_group():
    """Guardian service operations."""
    pass


@guardian_group.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=3001, help="Listen port (default: 3001)")
def guardian_serve(host: str, port: int):
    """Serve the delegation policy API."""
    import uvicorn

    from .guardian import GuardianService
    from .http_api import create_guardian_app

    try:
        config = GuardianConfig.from_env()
    except ConfigurationError as e:
        _fail(str(e))
    service = GuardianService(config, audit=AuditTrail())
    click.echo(f"🛡️  Guardian serving {service.policy_count} stored policies")
    uvicorn.run(create_guardian_app(service), host=host, port=port)


@main.group("policy")
def policy_group():
    """Delegation policy operations against a guardian."""
    pass


@policy_group.command("set")
@click.option("--owner", required=True, help="Payer address the policy governs")
@click.option("--max-amount", required=True, help="Per-invoice ceiling in base units")
@click.option("--recipients", default="", help="Comma-separated recipient allowlist (empty = any)")
@click.option("--tokens", default=DEFAULT_TOKEN, help="Comma-separated token allowlist (empty = any)")
@click.option("--expires-in", default="30d", help="Duration until expiry (e.g., 12h, 30d)")
@click.option("--guardian-url", envvar="GUARDIAN_URL", default="http://localhost:3001", help="Guardian base URL")
@click.option(
    "--admin-token",
    envvar=DELEGATION_ADMIN_TOKEN_ENV,
    prompt=True,
    hide_input=True,
    help=f"Guardian admin token (or {DELEGATION_ADMIN_TOKEN_ENV})",
)
def policy_set(
    owner: str,
    max_amount: str,
    recipients: str,
    tokens: str,
    expires_in: str,
    guardian_url: str,
    admin_token: str,
):
    """Create or replace an owner's delegation policy."""
    try:
        ttl = _parse_duration_to_seconds(expires_in)
    except ValueError as e:
        _fail(str(e))

    body = {
        "owner": owner,
        "maxAmount": max_amount,
        "allowedRecipients": _parse_addresses(recipients),
        "allowedTokens": _parse_addresses(tokens),
        "expiresAt": int(time.time()) + ttl,
    }
    with GuardianClient(guardian_url, admin_token=admin_token) as guardian:
        try:
            stored = guardian.put_policy(body)
        except RemitError as e:
            _fail(f"Failed to write policy [{e.code}]: {e.message}")

    click.echo(f"✅ Policy stored for {stored['owner']}")
    click.echo(f"   Max:     {format_token_amount(stored['maxAmount'])} per invoice")
    click.echo(f"   Expires: {time.strftime('%Y-%m-%d %H:%M', time.localtime(stored['expiresAt']))}")


@policy_group.command("show")
@click.argument("owner")
@click.option("--guardian-url", envvar="GUARDIAN_URL", default="http://localhost:3001", help="Guardian base URL")
def policy_show(owner: str, guardian_url: str):
    """Print an owner's delegation policy as JSON."""
    with GuardianClient(guardian_url) as guardian:
        try:
            policy = guardian.get_policy(owner)
        except RemitError as e:
            _fail(f"[{e.code}] {e.message}")
    click.echo(json.dumps(policy, indent=2))


@main.group("invoice")
def invoice_group():
    """Invoice inspection."""
    pass


@invoice_group.command("verify")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def invoice_verify(path: Path):
    """Check an invoice JSON file (bare invoice or merchant response)."""
    try:
        document = json.loads(path.read_text())
    except ValueError as e:
        _fail(f"Not valid JSON: {e}")
    if isinstance(document, dict) and isinstance(document.get("invoice"), dict):
        document = document["invoice"]

    invoice = validate_structure(document)
    if isinstance(invoice, RemitError):
        _fail(f"Invoice is malformed [{invoice.code}]: {invoice.message}")
    if not verify_invoice(invoice):
        _fail(f"Invoice signature does not match merchant {invoice.merchant}")

    click.echo(f"✅ Invoice is valid: {invoice.invoice_id}")
    click.echo(f"   Merchant:  {invoice.merchant}")
    click.echo(f"   Recipient: {invoice.recipient}")
    click.echo(f"   Amount:    {format_token_amount(invoice.amount)} ({invoice.amount} base units)")
    click.echo(f"   Due:       {time.strftime('%Y-%m-%d %H:%M', time.localtime(invoice.due_at))}")
    click.echo(f"   Memo:      {invoice.memo}")


@main.command()
@click.argument("invoice_id")
def pay(invoice_id: str):
    """Pay an existing merchant invoice within the delegation policy."""
    _run_payment(lambda orchestrator: orchestrator.pay(invoice_id))


@main.command()
@click.option("--amount", required=True, help="Amount in base units")
@click.option("--description", required=True, help="What is being purchased")
@click.option("--token", default=None, help="Token address (default: merchant default)")
@click.option("--reference", default=None, help="Merchant reference")
@click.option("--idempotency-key", default=None, help="Idempotency key for invoice creation")
def checkout(
    amount: str,
    description: str,
    token: Optional[str],
    reference: Optional[str],
    idempotency_key: Optional[str],
):
    """Request a new invoice from the merchant and pay it."""
    request = {"amount": amount, "description": description}
    if token:
        request["token"] = token
    if reference:
        request["merchantReference"] = reference
    _run_payment(lambda orchestrator: orchestrator.checkout(request, idempotency_key=idempotency_key))


@main.command()
@click.option("--invoice-id", default=None, help="Filter by invoice ID")
@click.option("--limit", type=int, default=20, help="Number of events to show")
def audit(invoice_id: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    try:
        events = trail.read_events(invoice_id=invoice_id, limit=limit)
    except AuditChainError as e:
        _fail(f"Audit trail integrity check failed: {e}")

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_token_amount(event.amount)}" if event.amount else ""
        invoice = f" {event.invoice_id}" if event.invoice_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{invoice}{amount}{reason}")


if __name__ == "__main__":
    main()
