"""MCP server exposing UpServer's operator tools: review queue, triage, previews, history."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from upserver.config import Config, get_config
from upserver.core import customers as customers_mod
from upserver.core import publish as publish_mod
from upserver.core import reviews as reviews_mod
from upserver.core.errors import SiteNotFound, UpServerError
from upserver.core.staging import StagingManager, StagingSweeper
from upserver.core.triage import evaluate, policy_from_config
from upserver.db.engine import init_db
from upserver.integrations.git import GitError
from upserver.integrations.slack import Notifier


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    staging: StagingManager
    sweeper: StagingSweeper | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection and preview manager on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    notifier = Notifier(config.slack_bot_token, config.slack_channel)
    staging = StagingManager(config, notifier=notifier)

    sweeper = StagingSweeper(staging)
    sweeper.start()

    try:
        yield AppContext(db=db, config=config, staging=staging, sweeper=sweeper)
    finally:
        sweeper.stop()
        db.close()


mcp = FastMCP("upserver", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(exc: Exception) -> dict:
    return {"error": str(exc), "type": type(exc).__name__}


# ── Review Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def list_reviews(ctx: Context, status: str | None = None, customer_id: str | None = None) -> list[dict]:
    """List review requests, newest first. Status: open, quoted, approved, rejected, completed."""
    app = _ctx(ctx)
    if customer_id:
        found = reviews_mod.list_by_customer(app.db, customer_id, status)
    else:
        found = reviews_mod.list_reviews(app.db, status)
    return [_review_to_dict(r) for r in found]


@mcp.tool()
def get_review(ctx: Context, review_id: str) -> dict:
    """Get a review request with its event history."""
    app = _ctx(ctx)
    review = reviews_mod.get_review(app.db, review_id)
    if not review:
        return {"error": f"Review not found: {review_id}"}
    result = _review_to_dict(review)
    result["events"] = [
        {
            "event_type": e.event_type,
            "old_value": e.old_value,
            "new_value": e.new_value,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in reviews_mod.get_review_events(app.db, review_id)
    ]
    return result


@mcp.tool()
def quote_review(ctx: Context, review_id: str, price_cents: int, note: str | None = None) -> dict:
    """Quote a price in cents for an open (or re-quote a quoted) review request."""
    try:
        review = reviews_mod.quote(_ctx(ctx).db, review_id, price_cents, note)
    except (UpServerError, ValueError) as e:
        return _error(e)
    return _review_to_dict(review)


@mcp.tool()
def set_review_status(ctx: Context, review_id: str, status: str) -> dict:
    """Move a review to approved, rejected or completed (quoting uses quote_review)."""
    try:
        review = reviews_mod.set_status(_ctx(ctx).db, review_id, status)
    except (UpServerError, ValueError) as e:
        return _error(e)
    return _review_to_dict(review)


@mcp.tool()
def evaluate_request(
    ctx: Context,
    request: str,
    files_touched: list[str] | None = None,
    agent_succeeded: bool = True,
    agent_errored: bool = False,
) -> dict:
    """Dry-run the triage policy on a request and the files an agent touched."""
    result = evaluate(
        request,
        files_touched or [],
        agent_succeeded=agent_succeeded,
        agent_errored=agent_errored,
        policy=policy_from_config(_ctx(ctx).config),
    )
    return result.to_dict()


# ── Staging Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def staging_status(ctx: Context, customer_id: str) -> dict:
    """Get (and reconcile) a customer's preview server status."""
    record = _ctx(ctx).staging.get_status(customer_id)
    if record is None:
        return {"customer_id": customer_id, "status": "none"}
    return _record_to_dict(record)


@mcp.tool()
def start_staging(ctx: Context, customer_id: str) -> dict:
    """Start a customer's preview server. Blocks until it accepts connections or fails."""
    try:
        result = _ctx(ctx).staging.start(customer_id)
    except UpServerError as e:
        return _error(e)
    return {"status": result.status, "port": result.port, "url": result.url, "pid": result.pid}


@mcp.tool()
def stop_staging(ctx: Context, customer_id: str) -> dict:
    """Stop a customer's preview server."""
    try:
        result = _ctx(ctx).staging.stop(customer_id)
    except UpServerError as e:
        return _error(e)
    return {"status": result.status, "port": result.port}


@mcp.tool()
def list_staging(ctx: Context) -> list[dict]:
    """List all recorded preview servers."""
    return [_record_to_dict(r) for r in _ctx(ctx).staging.list_records()]


# ── Publish Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def publish_history(ctx: Context, customer_id: str, limit: int = 10) -> list[dict] | dict:
    """Recent commits for a customer's site (limit 1-50)."""
    app = _ctx(ctx)
    try:
        customer = customers_mod.require_customer(app.db, customer_id)
        site = app.config.site_path(customer.site_folder)
        if not site.is_dir():
            raise SiteNotFound(f"Site folder not found: {site}")
        commits = publish_mod.history(site, limit)
    except (UpServerError, GitError) as e:
        return _error(e)
    return [
        {"hash": c.hash, "short_hash": c.short_hash, "timestamp": c.timestamp, "subject": c.subject}
        for c in commits
    ]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _review_to_dict(review) -> dict:
    return {
        "id": review.id,
        "customer_id": review.customer_id,
        "session_id": review.session_id,
        "status": review.status,
        "decision": review.decision,
        "scope": review.scope,
        "confidence_pct": review.confidence_pct,
        "reason": review.reason,
        "triggers": review.triggers,
        "policy_version": review.policy_version,
        "request_content": review.request_content,
        "quoted_price_cents": review.quoted_price_cents,
        "quote_note": review.quote_note,
        "quoted_at": review.quoted_at.isoformat() if review.quoted_at else None,
        "approved_at": review.approved_at.isoformat() if review.approved_at else None,
        "completed_at": review.completed_at.isoformat() if review.completed_at else None,
        "created_at": review.created_at.isoformat() if review.created_at else None,
    }


def _record_to_dict(record) -> dict:
    return {
        "customer_id": record.customer_id,
        "status": record.status,
        "port": record.port,
        "pid": record.pid,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "last_activity": record.last_activity.isoformat() if record.last_activity else None,
        "exit_code": record.exit_code,
        "last_error": record.last_error,
    }
