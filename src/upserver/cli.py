"""CLI entry point for UpServer operators."""

import json
import logging
import sqlite3
import sys

import click

from upserver.config import get_config
from upserver.core import customers as customers_mod
from upserver.core import publish as publish_mod
from upserver.core import reviews as reviews_mod
from upserver.core.errors import SiteNotFound, UpServerError
from upserver.core.staging import StagingManager
from upserver.core.triage import evaluate, policy_from_config
from upserver.db.engine import get_db
from upserver.integrations.git import GitError
from upserver.integrations.slack import Notifier


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(exc: Exception):
    click.echo(f"Error ({type(exc).__name__}): {exc}", err=True)
    sys.exit(1)


def _site(customer_id: str):
    config = get_config()
    with _get_db() as db:
        customer = customers_mod.require_customer(db, customer_id)
    site = config.site_path(customer.site_folder)
    if not site.is_dir():
        raise SiteNotFound(f"Site folder not found: {site}")
    return site


def _notifier():
    config = get_config()
    return Notifier(config.slack_bot_token, config.slack_channel)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose):
    """ups - UpServer operator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Customer Commands ─────────────────────────────────────────────────────────


@main.group("customer")
def customer_group():
    """Manage customers."""
    pass


@customer_group.command("add")
@click.argument("name")
@click.argument("site_folder")
@click.option("--id", "customer_id", default=None, help="Customer ID (defaults to a slug of NAME)")
@click.option("--port", type=int, default=None, help="Fixed staging port")
@click.option("--url", default=None, help="Public staging URL")
@click.option("--github", default=None, help="GitHub repository")
def customer_add(name, site_folder, customer_id, port, url, github):
    """Register a customer site."""
    config = get_config()
    customer_id = customer_id or customers_mod.slugify(name)
    try:
        with _get_db() as db:
            customer = customers_mod.create_customer(
                db, customer_id, name, site_folder,
                staging_port=port, staging_url=url, github_repo=github,
                port_range=(config.port_range_start, config.port_range_end),
            )
    except (UpServerError, sqlite3.IntegrityError) as e:
        _fail(e)
    click.echo(f"Customer created: {customer.id} ({customer.name})")
    click.echo(f"  Site: {config.site_path(customer.site_folder)}")
    if customer.staging_port:
        click.echo(f"  Staging port: {customer.staging_port}")


@customer_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def customer_list(json_output):
    """List customers."""
    with _get_db() as db:
        customers = customers_mod.list_customers(db)

    if json_output:
        click.echo(json.dumps([_customer_dict(c) for c in customers], indent=2))
        return
    if not customers:
        click.echo("No customers found.")
        return
    for c in customers:
        port = f" port={c.staging_port}" if c.staging_port else ""
        click.echo(f"  {c.id}: {c.name} [{c.site_folder}]{port}")


@customer_group.command("set-port")
@click.argument("customer_id")
@click.argument("port", type=int, required=False)
@click.option("--clear", is_flag=True, help="Remove the fixed port")
def customer_set_port(customer_id, port, clear):
    """Set or clear a customer's fixed staging port."""
    config = get_config()
    try:
        with _get_db() as db:
            customers_mod.require_customer(db, customer_id)
            if clear:
                customers_mod.clear_staging_port(db, customer_id)
                click.echo(f"Cleared fixed port for {customer_id}")
                return
            if port is None:
                raise click.UsageError("PORT is required unless --clear is given")
            customers_mod.update_customer(
                db, customer_id,
                port_range=(config.port_range_start, config.port_range_end),
                staging_port=port,
            )
    except UpServerError as e:
        _fail(e)
    click.echo(f"{customer_id} now stages on port {port}")


# ── Staging Commands ──────────────────────────────────────────────────────────


@main.group("staging")
def staging_group():
    """Manage preview servers."""
    pass


def _manager() -> StagingManager:
    return StagingManager(get_config(), notifier=_notifier())


@staging_group.command("start")
@click.argument("customer_id")
def staging_start(customer_id):
    """Start a preview and keep it running until interrupted."""
    manager = _manager()
    try:
        result = manager.start(customer_id)
    except UpServerError as e:
        _fail(e)

    click.echo(f"Preview {result.status}: {result.url} (port {result.port}, pid {result.pid})")
    handle = manager.supervisor.get(customer_id)
    if handle is None:
        return  # started by another process; it keeps running there

    click.echo("Press Ctrl-C to stop.")
    try:
        handle.proc.wait()
        click.echo(f"Preview exited with code {handle.proc.returncode}")
    except KeyboardInterrupt:
        manager.stop(customer_id)
        click.echo("Preview stopped.")


@staging_group.command("stop")
@click.argument("customer_id")
def staging_stop(customer_id):
    """Stop a preview server."""
    try:
        result = _manager().stop(customer_id)
    except UpServerError as e:
        _fail(e)
    if result.status == "not_found":
        click.echo(f"No preview server recorded for {customer_id}")
    else:
        click.echo(f"Stopped preview for {customer_id}")


@staging_group.command("status")
@click.argument("customer_id")
def staging_status(customer_id):
    """Show (and reconcile) a customer's preview status."""
    record = _manager().get_status(customer_id)
    if record is None:
        click.echo(f"No preview server recorded for {customer_id}")
        return
    click.echo(f"Preview: {record.customer_id}")
    click.echo(f"  Status: {record.status}")
    click.echo(f"  Port: {record.port}")
    if record.pid:
        click.echo(f"  PID: {record.pid}")
    if record.last_activity:
        click.echo(f"  Last activity: {record.last_activity.isoformat()}")
    if record.exit_code is not None:
        click.echo(f"  Exit code: {record.exit_code}")
    if record.last_error:
        click.echo(f"  Last error:\n{record.last_error}")


@staging_group.command("preflight")
@click.argument("customer_id")
def staging_preflight(customer_id):
    """Run the readiness checklist for a customer."""
    try:
        result = _manager().preflight(customer_id)
    except UpServerError as e:
        _fail(e)
    click.echo(f"Site: {result.site_path}")
    checks = [
        ("site folder exists", result.site_folder_exists),
        ("staging URL configured", result.staging_url_configured),
        ("staging port valid", result.staging_port_valid),
        ("git remote configured", result.git_remote_configured),
        ("no uncommitted changes", not result.has_uncommitted_changes),
        ("agent CLI available", result.agent_ready),
        ("preview healthy", result.dev_server_healthy),
    ]
    for label, ok in checks:
        click.echo(f"  {'✓' if ok else '✗'} {label}")


@staging_group.command("list")
def staging_list():
    """List preview server records."""
    records = _manager().list_records()
    if not records:
        click.echo("No preview servers recorded.")
        return
    for r in records:
        pid = f" pid={r.pid}" if r.pid else ""
        click.echo(f"  {r.customer_id}: {r.status} port={r.port}{pid}")


@staging_group.command("cleanup")
@click.option("--idle-minutes", type=int, default=None, help="Override the idle threshold")
def staging_cleanup(idle_minutes):
    """Stop previews that have been idle too long."""
    stopped = _manager().cleanup_inactive(idle_minutes)
    if not stopped:
        click.echo("No idle previews.")
        return
    for customer_id in stopped:
        click.echo(f"  Stopped {customer_id}")


# ── Review Commands ───────────────────────────────────────────────────────────


@main.group("review")
def review_group():
    """Work the review queue."""
    pass


@review_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--customer", default=None, help="Filter by customer")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def review_list(status, customer, json_output):
    """List review requests."""
    with _get_db() as db:
        if customer:
            found = reviews_mod.list_by_customer(db, customer, status)
        else:
            found = reviews_mod.list_reviews(db, status)

    if json_output:
        click.echo(json.dumps([_review_dict(r) for r in found], indent=2))
        return
    if not found:
        click.echo("No review requests found.")
        return
    for r in found:
        price = f" ${r.quoted_price_cents / 100:.2f}" if r.quoted_price_cents else ""
        click.echo(f"  {r.id} [{r.status}] {r.customer_id} {r.scope}{price}: {_clip(r.request_content)}")


@review_group.command("show")
@click.argument("review_id")
def review_show(review_id):
    """Show a review request with its history."""
    with _get_db() as db:
        review = reviews_mod.get_review(db, review_id)
        if not review:
            click.echo(f"Review not found: {review_id}", err=True)
            sys.exit(1)
        events = reviews_mod.get_review_events(db, review_id)

    click.echo(f"Review: {review.id}")
    click.echo(f"  Customer: {review.customer_id}")
    click.echo(f"  Status: {review.status}")
    click.echo(f"  Scope: {review.scope} ({review.confidence_pct}%)")
    click.echo(f"  Triggers: {', '.join(review.triggers) or '-'}")
    click.echo(f"  Reason: {review.reason}")
    if review.quoted_price_cents is not None:
        click.echo(f"  Quote: ${review.quoted_price_cents / 100:.2f}")
    if review.quote_note:
        click.echo(f"  Note: {review.quote_note}")
    click.echo(f"  Request: {review.request_content}")
    if events:
        click.echo("  History:")
        for e in events:
            when = e.created_at.strftime("%Y-%m-%d %H:%M") if e.created_at else ""
            click.echo(f"    {when} {e.event_type}: {e.old_value} -> {e.new_value}")


@review_group.command("quote")
@click.argument("review_id")
@click.argument("price_cents", type=int)
@click.option("--note", default=None, help="Note shown with the quote")
def review_quote(review_id, price_cents, note):
    """Quote a price (in cents) for a review request."""
    try:
        with _get_db() as db:
            review = reviews_mod.quote(db, review_id, price_cents, note)
    except (UpServerError, ValueError) as e:
        _fail(e)
    click.echo(f"Quoted {review.id} at ${review.quoted_price_cents / 100:.2f}")


@review_group.command("status")
@click.argument("review_id")
@click.argument("status", type=click.Choice(list(reviews_mod.TRANSITIONS)))
def review_status(review_id, status):
    """Move a review request to approved, rejected or completed."""
    try:
        with _get_db() as db:
            review = reviews_mod.set_status(db, review_id, status)
    except (UpServerError, ValueError) as e:
        _fail(e)
    click.echo(f"{review.id}: {review.status}")


@review_group.command("approve")
@click.argument("review_id")
def review_approve(review_id):
    """Approve a quoted review on the customer's behalf."""
    try:
        with _get_db() as db:
            review = reviews_mod.approve(db, review_id)
    except UpServerError as e:
        _fail(e)
    click.echo(f"{review.id}: {review.status}")


# ── Publish Commands ──────────────────────────────────────────────────────────


@main.group("publish")
def publish_group():
    """Publish and roll back customer sites."""
    pass


@publish_group.command("run")
@click.argument("customer_id")
def publish_run(customer_id):
    """Commit and push a customer's pending changes."""
    try:
        site = _site(customer_id)
        _manager().update_activity(customer_id)
        result = publish_mod.publish(site, _notifier(), customer_id)
    except UpServerError as e:
        _fail(e)
    click.echo(result.message)
    if not result.success and result.error:
        sys.exit(1)


@publish_group.command("history")
@click.argument("customer_id")
@click.option("--limit", "-n", default=10, type=int, help="Number of commits (1-50)")
def publish_history(customer_id, limit):
    """Show recent commits for a customer site."""
    try:
        commits = publish_mod.history(_site(customer_id), limit)
    except (UpServerError, GitError) as e:
        _fail(e)
    if not commits:
        click.echo("No commits yet.")
        return
    for c in commits:
        click.echo(f"  {c.short_hash} {c.timestamp} {c.subject}")


@publish_group.command("rollback")
@click.argument("customer_id")
@click.argument("commit_hash")
def publish_rollback(customer_id, commit_hash):
    """Restore a customer site to an earlier commit (as a new commit)."""
    try:
        site = _site(customer_id)
        _manager().update_activity(customer_id)
        result = publish_mod.rollback(site, commit_hash, _notifier(), customer_id)
    except (UpServerError, GitError) as e:
        _fail(e)
    click.echo(result.message)
    if not result.success and result.error:
        sys.exit(1)


# ── Triage Command ────────────────────────────────────────────────────────────


@main.command("triage")
@click.argument("request")
@click.option("--file", "-f", "files", multiple=True, help="File touched by the agent (repeatable)")
@click.option("--incomplete", is_flag=True, help="Agent did not report success")
@click.option("--errored", is_flag=True, help="Agent run errored")
def triage_command(request, files, incomplete, errored):
    """Evaluate a request against the triage policy."""
    result = evaluate(
        request,
        list(files),
        agent_succeeded=not incomplete,
        agent_errored=errored,
        policy=policy_from_config(get_config()),
    )
    click.echo(json.dumps(result.to_dict(), indent=2))


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API (and the idle-preview sweeper)."""
    from upserver.web.app import run_server

    click.echo(f"Serving UpServer API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the admin MCP server (stdio transport)."""
    from upserver.mcp.server import mcp
    from upserver.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _clip(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def _customer_dict(c) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "site_folder": c.site_folder,
        "staging_port": c.staging_port,
        "staging_url": c.staging_url,
        "github_repo": c.github_repo,
    }


def _review_dict(r) -> dict:
    return {
        "id": r.id,
        "customer_id": r.customer_id,
        "status": r.status,
        "scope": r.scope,
        "confidence_pct": r.confidence_pct,
        "triggers": r.triggers,
        "quoted_price_cents": r.quoted_price_cents,
        "request": r.request_content,
    }


if __name__ == "__main__":
    main()
