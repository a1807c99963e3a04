"""HTTP API: customer-facing routes under /api/customers, operator routes under /api/admin."""

import dataclasses
import functools
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from upserver.config import Config, get_config
from upserver.core import chat as chat_mod
from upserver.core import customers as customers_mod
from upserver.core import publish as publish_mod
from upserver.core import reviews as reviews_mod
from upserver.core.chat import ChatService
from upserver.core.errors import (
    GENERIC_CUSTOMER_MESSAGE,
    ConfigurationError,
    CustomerNotFound,
    DependencyInstallFailed,
    DevServerNotReady,
    InvalidCommit,
    InvalidStatusTransition,
    NoFreePorts,
    PortConfigError,
    PortInUse,
    ReviewNotFound,
    RollbackBlockedByLocalChanges,
    SessionNotFound,
    SiteNotFound,
    SpawnFailed,
    StartInProgress,
    UpServerError,
)
from upserver.core.staging import StagingManager, StagingSweeper
from upserver.core.triage import evaluate, policy_from_config
from upserver.db.engine import get_db
from upserver.integrations import git
from upserver.integrations.git import GitError
from upserver.integrations.slack import Notifier

logger = logging.getLogger(__name__)

# Looked up along the exception's MRO, so a subclass entry wins over its base.
STATUS_CODES = {
    CustomerNotFound: 404,
    ReviewNotFound: 404,
    SessionNotFound: 404,
    SiteNotFound: 409,
    PortConfigError: 400,
    ConfigurationError: 400,
    StartInProgress: 409,
    PortInUse: 409,
    NoFreePorts: 503,
    DependencyInstallFailed: 502,
    SpawnFailed: 502,
    DevServerNotReady: 502,
    InvalidStatusTransition: 409,
    RollbackBlockedByLocalChanges: 409,
    InvalidCommit: 400,
}


def _status_for(exc: Exception) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    if isinstance(exc, ValueError):
        return 400
    return 500


def customer_route(handler):
    """Customer routes never expose raw error detail."""

    @functools.wraps(handler)
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except UpServerError as e:
            logger.info("%s %s -> %s: %s", request.method, request.url.path, type(e).__name__, e)
            return JSONResponse({"error": e.customer_message}, status_code=_status_for(e))
        except (GitError, ValueError) as e:
            logger.warning("%s %s failed: %s", request.method, request.url.path, e)
            return JSONResponse({"error": GENERIC_CUSTOMER_MESSAGE}, status_code=_status_for(e))

    return wrapper


def admin_route(handler):
    """Admin routes return the raw detail and the error type."""

    @functools.wraps(handler)
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except (UpServerError, GitError, ValueError) as e:
            logger.info("%s %s -> %s: %s", request.method, request.url.path, type(e).__name__, e)
            return JSONResponse(
                {"error": str(e), "type": type(e).__name__}, status_code=_status_for(e)
            )
        except sqlite3.IntegrityError as e:
            return JSONResponse({"error": str(e), "type": "IntegrityError"}, status_code=409)

    return wrapper


# ── Helpers ───────────────────────────────────────────────────────────────────


def _jsonable(obj):
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: _jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    return obj


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


def _config(request: Request) -> Config:
    return request.app.state.config


def _staging(request: Request) -> StagingManager:
    return request.app.state.staging


def _site_for(config: Config, customer_id: str):
    with get_db(config.db_path) as db:
        customer = customers_mod.require_customer(db, customer_id)
    site = config.site_path(customer.site_folder)
    if not site.is_dir():
        raise SiteNotFound(f"Site folder not found: {site}")
    return site


# ── Customer: staging ─────────────────────────────────────────────────────────


@customer_route
async def staging_status(request: Request):
    customer_id = request.path_params["customer_id"]
    with get_db(_config(request).db_path) as db:
        customers_mod.require_customer(db, customer_id)
    record = await run_in_threadpool(_staging(request).get_status, customer_id)
    return JSONResponse({"server": _jsonable(record)})


@customer_route
async def staging_preflight(request: Request):
    customer_id = request.path_params["customer_id"]
    result = await run_in_threadpool(_staging(request).preflight, customer_id)
    return JSONResponse(_jsonable(result))


@customer_route
async def staging_start(request: Request):
    customer_id = request.path_params["customer_id"]
    result = await run_in_threadpool(_staging(request).start, customer_id)
    return JSONResponse(_jsonable(result))


@customer_route
async def staging_stop(request: Request):
    customer_id = request.path_params["customer_id"]
    result = await run_in_threadpool(_staging(request).stop, customer_id)
    return JSONResponse(_jsonable(result))


# ── Customer: chat ────────────────────────────────────────────────────────────


@customer_route
async def sessions(request: Request):
    customer_id = request.path_params["customer_id"]
    config = _config(request)
    if request.method == "POST":
        data = await _body(request)
        with get_db(config.db_path) as db:
            session = chat_mod.create_session(db, customer_id, data.get("title"))
        return JSONResponse(_jsonable(session), status_code=201)

    with get_db(config.db_path) as db:
        customers_mod.require_customer(db, customer_id)
        found = chat_mod.list_sessions(db, customer_id)
    return JSONResponse(_jsonable(found))


def _message_input(data: dict) -> tuple[str, list[str] | None]:
    content = data.get("content")
    if not isinstance(content, str):
        raise ValueError("'content' is required")
    images = data.get("images") or None
    if images is not None and not (
        isinstance(images, list) and all(isinstance(i, str) for i in images)
    ):
        raise ValueError("'images' must be a list of paths")
    return content, images


@customer_route
async def session_messages(request: Request):
    customer_id = request.path_params["customer_id"]
    session_id = request.path_params["session_id"]
    config = _config(request)

    if request.method == "GET":
        with get_db(config.db_path) as db:
            chat_mod.get_session(db, session_id, customer_id)
            found = chat_mod.get_messages(db, session_id)
        return JSONResponse(_jsonable(found))

    content, images = _message_input(await _body(request))
    result = await run_in_threadpool(
        request.app.state.chat.send_message, session_id, customer_id, content, images
    )
    return JSONResponse({
        "message": _jsonable(result.message),
        "flagged": result.triage.flagged,
        "files_touched": result.files_touched,
        "review_id": result.review.id if result.review else None,
    })


def _sse(chunks):
    try:
        for chunk in chunks:
            yield f"data: {json.dumps(chunk)}\n\n"
    except UpServerError as e:
        logger.info("Stream ended with %s: %s", type(e).__name__, e)
        yield f"data: {json.dumps({'type': 'error', 'message': e.customer_message})}\n\n"
    except Exception:
        logger.exception("Chat stream failed")
        yield f"data: {json.dumps({'type': 'error', 'message': GENERIC_CUSTOMER_MESSAGE})}\n\n"


@customer_route
async def session_messages_stream(request: Request):
    customer_id = request.path_params["customer_id"]
    session_id = request.path_params["session_id"]
    content, images = _message_input(await _body(request))
    with get_db(_config(request).db_path) as db:
        chat_mod.get_session(db, session_id, customer_id)

    chunks = request.app.state.chat.stream_message(session_id, customer_id, content, images)
    return StreamingResponse(
        _sse(chunks),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── Customer: reviews ─────────────────────────────────────────────────────────


@customer_route
async def customer_reviews(request: Request):
    customer_id = request.path_params["customer_id"]
    status = request.query_params.get("status")
    with get_db(_config(request).db_path) as db:
        customers_mod.require_customer(db, customer_id)
        found = reviews_mod.list_by_customer(db, customer_id, status)
    return JSONResponse(_jsonable(found))


@customer_route
async def customer_review_approve(request: Request):
    customer_id = request.path_params["customer_id"]
    review_id = request.path_params["review_id"]
    with get_db(_config(request).db_path) as db:
        review = reviews_mod.approve(db, review_id, customer_id=customer_id)
    return JSONResponse(_jsonable(review))


@customer_route
async def customer_review_reject(request: Request):
    customer_id = request.path_params["customer_id"]
    review_id = request.path_params["review_id"]
    with get_db(_config(request).db_path) as db:
        review = reviews_mod.reject(db, review_id, customer_id=customer_id)
    return JSONResponse(_jsonable(review))


# ── Customer: publish ─────────────────────────────────────────────────────────


@customer_route
async def publish_run(request: Request):
    customer_id = request.path_params["customer_id"]
    site = _site_for(_config(request), customer_id)
    _staging(request).update_activity(customer_id)
    result = await run_in_threadpool(
        publish_mod.publish, site, request.app.state.notifier, customer_id
    )
    return JSONResponse(result.to_dict())


@customer_route
async def publish_status(request: Request):
    customer_id = request.path_params["customer_id"]
    site = _site_for(_config(request), customer_id)
    last = await run_in_threadpool(publish_mod.last_publish, site)
    dirty = await run_in_threadpool(git.status_porcelain, site)
    return JSONResponse({
        "last_publish": _jsonable(last),
        "has_uncommitted_changes": bool(dirty),
    })


@customer_route
async def publish_history(request: Request):
    customer_id = request.path_params["customer_id"]
    site = _site_for(_config(request), customer_id)
    limit = int(request.query_params.get("limit", 10))
    commits = await run_in_threadpool(publish_mod.history, site, limit)
    return JSONResponse([
        {**_jsonable(c), "short_hash": c.short_hash} for c in commits
    ])


@customer_route
async def publish_rollback(request: Request):
    customer_id = request.path_params["customer_id"]
    data = await _body(request)
    site = _site_for(_config(request), customer_id)
    _staging(request).update_activity(customer_id)
    result = await run_in_threadpool(
        publish_mod.rollback, site, str(data.get("commit_hash") or ""),
        request.app.state.notifier, customer_id,
    )
    return JSONResponse(result.to_dict())


# ── Admin ─────────────────────────────────────────────────────────────────────


@admin_route
async def admin_customers(request: Request):
    config = _config(request)
    if request.method == "POST":
        data = await _body(request)
        for key in ("id", "name", "site_folder"):
            if not data.get(key):
                raise ValueError(f"'{key}' is required")
        with get_db(config.db_path) as db:
            customer = customers_mod.create_customer(
                db,
                data["id"],
                data["name"],
                data["site_folder"],
                staging_port=data.get("staging_port"),
                staging_url=data.get("staging_url"),
                github_repo=data.get("github_repo"),
                port_range=(config.port_range_start, config.port_range_end),
            )
        return JSONResponse(_jsonable(customer), status_code=201)

    with get_db(config.db_path) as db:
        found = customers_mod.list_customers(db)
    return JSONResponse(_jsonable(found))


@admin_route
async def admin_staging(request: Request):
    records = await run_in_threadpool(_staging(request).list_records)
    return JSONResponse(_jsonable(records))


@admin_route
async def admin_staging_start(request: Request):
    result = await run_in_threadpool(_staging(request).start, request.path_params["customer_id"])
    return JSONResponse(_jsonable(result))


@admin_route
async def admin_staging_stop(request: Request):
    result = await run_in_threadpool(_staging(request).stop, request.path_params["customer_id"])
    return JSONResponse(_jsonable(result))


@admin_route
async def admin_reviews(request: Request):
    status = request.query_params.get("status")
    with get_db(_config(request).db_path) as db:
        found = reviews_mod.list_reviews(db, status)
    return JSONResponse(_jsonable(found))


@admin_route
async def admin_review_detail(request: Request):
    review_id = request.path_params["review_id"]
    with get_db(_config(request).db_path) as db:
        review = reviews_mod.require_review(db, review_id)
        events = reviews_mod.get_review_events(db, review_id)
    return JSONResponse({**_jsonable(review), "events": _jsonable(events)})


@admin_route
async def admin_review_quote(request: Request):
    data = await _body(request)
    price = data.get("price_cents")
    with get_db(_config(request).db_path) as db:
        review = reviews_mod.quote(db, request.path_params["review_id"], price, data.get("note"))
    return JSONResponse(_jsonable(review))


@admin_route
async def admin_review_status(request: Request):
    data = await _body(request)
    with get_db(_config(request).db_path) as db:
        review = reviews_mod.set_status(db, request.path_params["review_id"], data.get("status", ""))
    return JSONResponse(_jsonable(review))


def _flag(data: dict, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' must be a boolean")
    return value


@admin_route
async def admin_triage(request: Request):
    data = await _body(request)
    result = evaluate(
        data.get("request", ""),
        data.get("files_touched") or [],
        agent_succeeded=_flag(data, "agent_succeeded", True),
        agent_errored=_flag(data, "agent_errored", False),
        policy=policy_from_config(_config(request)),
    )
    return JSONResponse(result.to_dict())


async def health(request: Request):
    return JSONResponse({"status": "ok"})


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    staging: StagingManager | None = None,
    chat: ChatService | None = None,
    notifier: Notifier | None = None,
    run_sweeper: bool = True,
) -> Starlette:
    config = config or get_config()
    notifier = notifier or Notifier(config.slack_bot_token, config.slack_channel)
    staging = staging or StagingManager(config, notifier=notifier)
    chat = chat or ChatService(
        config, notifier=notifier, staging=staging, policy=policy_from_config(config)
    )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        sweeper = StagingSweeper(staging) if run_sweeper else None
        if sweeper:
            sweeper.start()
        try:
            yield
        finally:
            if sweeper:
                sweeper.stop()

    c = "/api/customers/{customer_id}"
    routes = [
        Route("/health", health),
        Route(f"{c}/staging", staging_status),
        Route(f"{c}/staging/preflight", staging_preflight),
        Route(f"{c}/staging/start", staging_start, methods=["POST"]),
        Route(f"{c}/staging/stop", staging_stop, methods=["POST"]),
        Route(f"{c}/sessions", sessions, methods=["GET", "POST"]),
        Route(f"{c}/sessions/{{session_id}}/messages", session_messages, methods=["GET", "POST"]),
        Route(f"{c}/sessions/{{session_id}}/messages/stream", session_messages_stream, methods=["POST"]),
        Route(f"{c}/reviews", customer_reviews),
        Route(f"{c}/reviews/{{review_id}}/approve", customer_review_approve, methods=["POST"]),
        Route(f"{c}/reviews/{{review_id}}/reject", customer_review_reject, methods=["POST"]),
        Route(f"{c}/publish", publish_run, methods=["POST"]),
        Route(f"{c}/publish/status", publish_status),
        Route(f"{c}/publish/history", publish_history),
        Route(f"{c}/publish/rollback", publish_rollback, methods=["POST"]),
        Route("/api/admin/customers", admin_customers, methods=["GET", "POST"]),
        Route("/api/admin/staging", admin_staging),
        Route("/api/admin/staging/{customer_id}/start", admin_staging_start, methods=["POST"]),
        Route("/api/admin/staging/{customer_id}/stop", admin_staging_stop, methods=["POST"]),
        Route("/api/admin/reviews", admin_reviews),
        Route("/api/admin/reviews/{review_id}", admin_review_detail),
        Route("/api/admin/reviews/{review_id}/quote", admin_review_quote, methods=["POST"]),
        Route("/api/admin/reviews/{review_id}/status", admin_review_status, methods=["POST"]),
        Route("/api/admin/triage", admin_triage, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.staging = staging
    app.state.chat = chat
    app.state.notifier = notifier
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
