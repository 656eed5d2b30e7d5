"""
Autopay CLI — paid fetches and spending limits from the shell.

Commands:
    autopay fetch         Fetch a URL, paying x402 charges within limits
    autopay limits ...    Set, show, check or reset spending limits
    autopay tx ...        Look up or verify a ledger transaction
    autopay audit         View audit trail
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from typing import Optional

import click

from .audit import AuditTrail
from .client import AutopayClient, FetchOutcome
from .config import AutopayConfig
from .coordinator import PaymentCoordinator
from .errors import InvalidLimitFormat
from .ledger import SolanaRpcClient
from .limits import SpendingGovernor
from .proof import load_proof_secret
from .signer import SubprocessSigner


def _config() -> AutopayConfig:
    try:
        return AutopayConfig.from_env()
    except ValueError as exc:
        click.echo(f"❌ Invalid configuration: {exc}", err=True)
        sys.exit(1)


def _audit(config: AutopayConfig) -> AuditTrail:
    try:
        return AuditTrail(config.audit_path, key_path=config.secrets_dir / "audit_hmac.key")
    except RuntimeError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)


def _governor(config: AutopayConfig, trail: Optional[AuditTrail] = None) -> SpendingGovernor:
    return SpendingGovernor(config.db_path, audit=trail)


def _coordinator(config: AutopayConfig, trail: Optional[AuditTrail] = None) -> PaymentCoordinator:
    rpc = SolanaRpcClient(
        config.resolved_rpc_url,
        timeout=config.request_timeout_seconds,
        commitment=config.commitment,
    )
    signer = SubprocessSigner(config.signer_command) if config.signer_command else None
    return PaymentCoordinator(config.network, rpc=rpc, signer=signer, audit=trail)


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers = {}
    for raw in values:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"Expected NAME:VALUE, got {raw!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Autopay — x402 payments with health checks and spending limits."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


@main.command()
@click.argument("url")
@click.option("--method", default="GET", help="HTTP method")
@click.option("--data", default=None, help="Request body (JSON or raw text)")
@click.option("--header", "header_values", multiple=True, help="Extra header NAME:VALUE")
@click.option("--max-payment", default=None, help="Absolute ceiling for this fetch (e.g. 10.00)")
@click.option("--threshold", default=None, help="Autopay threshold; above this approval is needed")
@click.option("--identity", default=None, help="Spending identity")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
def fetch(
    url: str,
    method: str,
    data: Optional[str],
    header_values: tuple[str, ...],
    max_payment: Optional[str],
    threshold: Optional[str],
    identity: Optional[str],
    as_json: bool,
):
    """Fetch a URL, paying an x402 charge if one is required."""
    config = _config()
    headers = _parse_headers(header_values)
    body = None
    if data is not None:
        try:
            body = json.loads(data)
        except json.JSONDecodeError:
            body = data

    trail = _audit(config)

    async def _run():
        coordinator = _coordinator(config, trail)
        client = AutopayClient(
            coordinator,
            governor=_governor(config, trail),
            config=config,
            audit=trail,
            proof_secret=load_proof_secret(config.secrets_dir / "proof.key"),
        )
        try:
            return await client.fetch_with_autopay(
                url,
                method=method,
                data=body,
                headers=headers,
                max_payment=max_payment,
                autopay_threshold=threshold,
                identity=identity,
            )
        finally:
            await client.aclose()
            if coordinator.rpc is not None:
                await coordinator.rpc.aclose()

    result = asyncio.run(_run())

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif result.success:
        click.echo(f"✅ {url} ({result.status_code})")
        if result.payment_executed:
            click.echo(f"   Paid:      {result.payment_amount} → {result.payment_recipient}")
            click.echo(f"   Signature: {result.payment_signature}")
        payload = result.data
        click.echo(payload if isinstance(payload, str) else json.dumps(payload, indent=2))
    elif result.outcome == FetchOutcome.NEEDS_APPROVAL:
        click.echo(f"⚠️  Approval required: {result.payment_amount} → {result.payment_recipient}")
        click.echo("   Re-run with a higher --threshold to pay.")
    else:
        click.echo(f"❌ {result.outcome.value}: {result.error}", err=True)
        if result.payment_executed:
            click.echo(f"   Payment signature: {result.payment_signature}", err=True)

    if not result.success:
        sys.exit(1)


# ── Limits ────────────────────────────────────────────────────────

@main.group("limits")
def limits_group():
    """Manage per-identity spending limits."""
    pass


@limits_group.command("set")
@click.argument("identity")
@click.option("--per-transaction", default=None, help="Per-transaction ceiling, e.g. $5.00")
@click.option("--daily", default=None, help="Daily ceiling, e.g. $50.00")
@click.option("--monthly", default=None, help="Monthly ceiling, e.g. $500.00")
@click.option("--enable/--disable", "enabled", default=None, help="Enable or disable enforcement")
def limits_set(
    identity: str,
    per_transaction: Optional[str],
    daily: Optional[str],
    monthly: Optional[str],
    enabled: Optional[bool],
):
    """Create or update limits; omitted values keep their current setting."""
    config = _config()
    governor = _governor(config, _audit(config))
    try:
        limit = governor.set_limits(
            identity,
            per_transaction=per_transaction,
            daily=daily,
            monthly=monthly,
            enabled=enabled,
        )
    except InvalidLimitFormat as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    click.echo(f"✅ Limits saved for {identity}")
    click.echo(f"   Per transaction: {limit.per_transaction}")
    click.echo(f"   Daily:           {limit.daily}")
    click.echo(f"   Monthly:         {limit.monthly}")
    click.echo(f"   Enabled:         {'yes' if limit.enabled else 'no'}")


@limits_group.command("show")
@click.argument("identity")
def limits_show(identity: str):
    """Show limits and current spending."""
    config = _config()
    governor = _governor(config)
    limit = governor.get_limits(identity)
    stats = governor.get_spending_stats(identity)

    if limit is None:
        click.echo(f"📊 {identity}: no limits configured (unlimited)")
    else:
        state = "" if limit.enabled else " (disabled)"
        click.echo(f"📊 Limits for {identity}{state}")
        click.echo(f"   Per transaction: {limit.per_transaction}")
        click.echo(f"   Daily:           {limit.daily}")
        click.echo(f"   Monthly:         {limit.monthly}")
    summary = stats.to_dict()
    click.echo(f"   Spent today:     {summary['total_today']} ({stats.transactions_today} charges)")
    click.echo(f"   Spent month:     {summary['total_this_month']} ({stats.transactions_this_month} charges)")


@limits_group.command("check")
@click.argument("identity")
@click.argument("amount")
def limits_check(identity: str, amount: str):
    """Check whether AMOUNT (e.g. 0.25) would be allowed."""
    config = _config()
    governor = _governor(config)
    try:
        check = governor.check_limit(identity, amount)
    except ValueError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)
    if check.allowed:
        click.echo(f"✅ Allowed: {amount} for {identity}")
    else:
        click.echo(f"❌ Denied: {check.reason}")
        sys.exit(1)


@limits_group.command("reset")
@click.argument("identity")
def limits_reset(identity: str):
    """Remove limits; the identity becomes unlimited."""
    config = _config()
    governor = _governor(config, _audit(config))
    if governor.reset_limits(identity):
        click.echo(f"✅ Limits removed for {identity}")
    else:
        click.echo(f"No limits configured for {identity}")


# ── Transactions ─────────────────────────────────────────────────

@main.group("tx")
def tx_group():
    """Inspect ledger transactions."""
    pass


@tx_group.command("status")
@click.argument("signature")
def tx_status(signature: str):
    """Show confirmation status for SIGNATURE."""
    config = _config()

    async def _run():
        coordinator = _coordinator(config)
        try:
            return await coordinator.get_transaction_status(signature)
        finally:
            await coordinator.rpc.aclose()

    status = asyncio.run(_run())
    click.echo(f"{signature}: {status.value}")


@tx_group.command("verify")
@click.argument("signature")
@click.option("--recipient", required=True, help="Expected recipient address")
@click.option("--amount", required=True, type=int, help="Expected amount in base units")
@click.option("--asset", required=True, help="Token mint address or SOL")
def tx_verify(signature: str, recipient: str, amount: int, asset: str):
    """Check that SIGNATURE paid RECIPIENT at least AMOUNT of ASSET."""
    config = _config()

    async def _run():
        coordinator = _coordinator(config)
        try:
            return await coordinator.verify_transaction(signature, recipient, amount, asset)
        finally:
            await coordinator.rpc.aclose()

    if asyncio.run(_run()):
        click.echo(f"✅ Verified: {signature}")
    else:
        click.echo(f"❌ Not verified: {signature}")
        sys.exit(1)


@main.command()
@click.option("--identity", default=None, help="Filter by identity")
@click.option("--signature", default=None, help="Only events for this transaction signature")
@click.option("--unreconciled", is_flag=True, help="Payments submitted but never verified")
@click.option("--summary", "show_summary", is_flag=True, help="Print totals and unreconciled signatures as JSON")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(identity: Optional[str], signature: Optional[str], unreconciled: bool, show_summary: bool, limit: int):
    """View the audit trail."""
    config = _config()
    trail = _audit(config)
    try:
        if show_summary:
            click.echo(json.dumps(trail.summary(identity=identity), indent=2))
            return
        if unreconciled:
            events = trail.unreconciled(identity=identity)
        else:
            events = trail.read_events(identity=identity, signature=signature, limit=limit)
    except RuntimeError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        target = f" → {event.recipient or event.resource}" if (event.recipient or event.resource) else ""
        sig = f" [{event.signature}]" if event.signature else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{target}{sig}{reason}")
