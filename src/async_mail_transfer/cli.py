# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the mail transfer service.

This module provides a CLI to run the service and to manage accounts,
messages, drafts and domains directly against the database, without going
through the HTTP API.

Usage:
    mail-transfer serve
    mail-transfer check-domain example.com --selector mail
    mail-transfer accounts add alice@example.com --user-id u-1
    mail-transfer accounts list
    mail-transfer messages list <account_id> --direction received
    mail-transfer drafts list <account_id>
    mail-transfer send <account_id> --to bob@remote.org --subject Hello --body "Hi there"

Example:
    $ mail-transfer --db ./mail.db accounts add alice@example.com
    $ mail-transfer --db ./mail.db serve --port 8080 --inbound-port 2525
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import load_settings
from .core import MailTransferCore
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def build_core(settings: Dict[str, Any]) -> MailTransferCore:
    """Create a core for one-shot commands. The SMTP listener stays closed."""
    return MailTransferCore.from_settings(settings, inbound_enabled=False)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _execute(ctx: click.Context, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Run one core command and exit with status 1 when it fails."""

    async def _run() -> Dict[str, Any]:
        core = build_core(ctx.obj["settings"])
        await core.init()
        try:
            return await core.handle_command(cmd, payload)
        finally:
            await core.stop()

    result = run_async(_run())
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    return result


@click.group()
@click.version_option(package_name="async-mail-transfer")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="Path to config.ini.")
@click.option("--db", "db_path", default=None, help="Database path (overrides configuration).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Mail transfer service: SMTP ingestion, relay with draft fallback, DNS checks."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", "-h", default=None, help="HTTP host to bind to (default: 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="HTTP port (default: 8000).")
@click.option("--inbound-port", type=int, default=None, help="SMTP port (default: 25).")
@click.option("--no-inbound", is_flag=True, help="Do not open the SMTP listener.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], inbound_port: Optional[int], no_inbound: bool) -> None:
    """Run the HTTP API and the SMTP listener."""
    import uvicorn

    from .server import create_server_app

    settings = dict(ctx.obj["settings"])
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    if inbound_port:
        settings["inbound_port"] = inbound_port
    if no_inbound:
        settings["inbound_enabled"] = False
    configure_logging(settings.get("log_level"))

    console.print("\n[bold cyan]Starting mail transfer service[/bold cyan]")
    console.print(f"  DB:      {settings['db_path']}")
    console.print(f"  HTTP:    {settings['http_host']}:{settings['http_port']}")
    if settings.get("inbound_enabled"):
        console.print(f"  SMTP:    {settings['inbound_host']}:{settings['inbound_port']}")
    console.print()

    app = create_server_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))


@main.command("check-domain")
@click.argument("domain")
@click.option("--selector", "-s", default=None, help="DKIM selector (default from configuration).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check_domain(ctx: click.Context, domain: str, selector: Optional[str], as_json: bool) -> None:
    """Look up MX, SPF, DMARC and DKIM records for DOMAIN."""
    result = _execute(ctx, "checkDomain", {"domain": domain, "dkim_selector": selector})
    result.pop("ok", None)
    if as_json:
        print_json(result)
        return

    table = Table(title=f"DNS authentication: {result['domain']}")
    table.add_column("Record", style="cyan")
    table.add_column("Value")
    mx = result.get("mx")
    table.add_row("MX", ", ".join(f"{r['priority']} {r['exchange']}" for r in mx) if mx else "[dim]absent[/dim]")
    table.add_row("SPF", result.get("spf") or "[dim]absent[/dim]")
    table.add_row("DMARC", result.get("dmarc") or "[dim]absent[/dim]")
    table.add_row(f"DKIM ({result['dkim_selector']})", result.get("dkim") or "[dim]absent[/dim]")
    console.print(table)
    for error in result.get("errors") or []:
        err_console.print(f"[yellow]Lookup error:[/yellow] {error}")


@main.group("accounts")
def accounts() -> None:
    """Manage local mail accounts."""


@accounts.command("add")
@click.argument("address")
@click.option("--user-id", "-u", default=None, help="Owning user identifier.")
@click.option("--id", "account_id", default=None, help="Explicit account identifier.")
@click.pass_context
def accounts_add(ctx: click.Context, address: str, user_id: Optional[str], account_id: Optional[str]) -> None:
    """Provision an account for ADDRESS."""
    payload: Dict[str, Any] = {"address": address, "user_id": user_id}
    if account_id:
        payload["id"] = account_id
    result = _execute(ctx, "addAccount", payload)
    print_success(f"Account '{result['id']}' created for {address}")


@accounts.command("list")
@click.option("--user-id", "-u", default=None, help="Only accounts of this user.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def accounts_list(ctx: click.Context, user_id: Optional[str], as_json: bool) -> None:
    """List provisioned accounts."""
    items = _execute(ctx, "listAccounts", {"user_id": user_id})["accounts"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No accounts found.[/dim]")
        return
    table = Table(title="Accounts")
    table.add_column("ID", style="cyan")
    table.add_column("Address")
    table.add_column("User")
    for acc in items:
        table.add_row(acc["id"], acc["address"], acc.get("user_id") or "-")
    console.print(table)


@main.group("messages")
def messages() -> None:
    """Inspect stored messages."""


@messages.command("list")
@click.argument("account_id")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--direction", type=click.Choice(["sent", "received"]), default=None)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def messages_list(ctx: click.Context, account_id: str, limit: int, offset: int, direction: Optional[str], as_json: bool) -> None:
    """List messages of ACCOUNT_ID, newest first."""
    payload = {"account_id": account_id, "limit": limit, "offset": offset, "direction": direction}
    result = _execute(ctx, "listMessages", payload)
    if as_json:
        print_json({"messages": result["messages"], "stats": result["stats"]})
        return
    stats = result["stats"]
    table = Table(title=f"Messages ({stats['total']} total, {stats['unread']} unread)")
    table.add_column("Date")
    table.add_column("Dir")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Subject")
    for msg in result["messages"]:
        subject = msg["subject"] if msg["is_read"] else f"[bold]{msg['subject']}[/bold]"
        table.add_row(msg.get("created_at") or "-", msg["direction"], msg["from_address"], msg["to_address"], subject)
    console.print(table)


@main.group("drafts")
def drafts() -> None:
    """Inspect drafts."""


@drafts.command("list")
@click.argument("account_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def drafts_list(ctx: click.Context, account_id: str, as_json: bool) -> None:
    """List drafts of ACCOUNT_ID."""
    items = _execute(ctx, "listDrafts", {"account_id": account_id})["drafts"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No drafts found.[/dim]")
        return
    table = Table(title="Drafts")
    table.add_column("ID", style="cyan")
    table.add_column("To")
    table.add_column("Subject")
    for draft in items:
        table.add_row(draft["id"], draft.get("to_address") or "-", draft.get("subject") or "")
    console.print(table)


@main.command("send")
@click.argument("account_id")
@click.option("--to", "to", required=True, help="Recipient address.")
@click.option("--subject", default="", help="Message subject.")
@click.option("--body", default="", help="Plain-text body.")
@click.option("--html", default=None, help="Optional HTML body.")
@click.option("--from", "sender", default=None, help="Sender address (default: the account's).")
@click.option("--provider", default=None, help="Relay provider name.")
@click.pass_context
def send(ctx: click.Context, account_id: str, to: str, subject: str, body: str,
         html: Optional[str], sender: Optional[str], provider: Optional[str]) -> None:
    """Relay a message from ACCOUNT_ID; on relay failure it is kept as a draft."""
    payload = {
        "account_id": account_id,
        "to": to,
        "subject": subject,
        "body": body,
        "html": html,
        "from": sender,
        "provider": provider,
    }
    result = _execute(ctx, "sendMessage", payload)
    if result["status"] == "sent":
        print_success(f"Message sent ({result['message_id']})")
    else:
        console.print(f"[yellow]Relay failed, saved as draft {result['draft_id']}:[/yellow] {result.get('error')}")


if __name__ == "__main__":
    main()
