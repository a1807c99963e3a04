"""Review queue for flagged requests: quote, approve, reject, complete."""

import json
import logging
import sqlite3
import uuid

from upserver.core.errors import InvalidStatusTransition, ReviewNotFound
from upserver.core.triage import TriageResult
from upserver.db.models import ReviewEvent, ReviewRequest, parse_dt

logger = logging.getLogger(__name__)

STATUSES = ("open", "quoted", "approved", "rejected", "completed")

# target status -> statuses it may be reached from (quoting is handled by quote()).
TRANSITIONS = {
    "approved": ("quoted",),
    "rejected": ("quoted",),
    "completed": ("open", "quoted", "approved", "rejected"),
}
QUOTABLE = ("open", "quoted")

_TIMESTAMP_COLUMNS = {
    "approved": "approved_at",
    "completed": "completed_at",
}


def create_from_triage(
    db: sqlite3.Connection,
    customer_id: str,
    session_id: str,
    customer_message_id: str,
    assistant_message_id: str,
    request_content: str,
    triage: TriageResult,
    commit: bool = True,
) -> ReviewRequest:
    """Open a review for a flagged request.

    Pass ``commit=False`` to write it in the same transaction as the
    assistant message it refers to.
    """
    review_id = uuid.uuid4().hex[:12]
    db.execute(
        """INSERT INTO review_requests
           (id, customer_id, session_id, customer_message_id, assistant_message_id,
            request_content, decision, scope, confidence_pct, reason, triggers,
            policy_version, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'open')""",
        (
            review_id, customer_id, session_id, customer_message_id, assistant_message_id,
            request_content, triage.decision, triage.scope, triage.confidence_pct,
            triage.reason, json.dumps(list(triage.triggers)), triage.policy_version,
        ),
    )
    _log_event(db, review_id, "created", None, "open")
    if commit:
        db.commit()
    logger.info(
        "Review %s opened for %s (%s, %s)",
        review_id, customer_id, triage.scope, ", ".join(triage.triggers) or "no triggers",
    )
    return get_review(db, review_id)


def get_review(db: sqlite3.Connection, review_id: str) -> ReviewRequest | None:
    row = db.execute("SELECT * FROM review_requests WHERE id = ?", (review_id,)).fetchone()
    if not row:
        return None
    return _row_to_review(row)


def require_review(db: sqlite3.Connection, review_id: str) -> ReviewRequest:
    review = get_review(db, review_id)
    if not review:
        raise ReviewNotFound(f"Review request not found: {review_id}")
    return review


def list_by_customer(
    db: sqlite3.Connection,
    customer_id: str,
    status: str | None = None,
) -> list[ReviewRequest]:
    """A customer's review requests, newest first."""
    query = "SELECT * FROM review_requests WHERE customer_id = ?"
    params: list = [customer_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, rowid DESC"
    return [_row_to_review(r) for r in db.execute(query, params).fetchall()]


def list_reviews(db: sqlite3.Connection, status: str | None = None) -> list[ReviewRequest]:
    """All review requests across customers, newest first."""
    query = "SELECT * FROM review_requests"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, rowid DESC"
    return [_row_to_review(r) for r in db.execute(query, params).fetchall()]


def quote(
    db: sqlite3.Connection,
    review_id: str,
    price_cents: int,
    note: str | None = None,
) -> ReviewRequest:
    """Attach a price. Allowed from open, and from quoted to revise an earlier quote."""
    if isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents <= 0:
        raise ValueError(f"Quoted price must be a positive number of cents, got {price_cents!r}")

    review = require_review(db, review_id)
    if review.status not in QUOTABLE:
        raise InvalidStatusTransition(review_id, review.status, "quoted")

    cur = db.execute(
        """UPDATE review_requests
           SET status = 'quoted', quoted_price_cents = ?, quote_note = ?,
               quoted_at = datetime('now'), updated_at = datetime('now')
           WHERE id = ? AND status = ?""",
        (price_cents, note, review_id, review.status),
    )
    if cur.rowcount == 0:
        db.rollback()
        raise InvalidStatusTransition(review_id, _current_status(db, review_id), "quoted")

    old_price = str(review.quoted_price_cents) if review.quoted_price_cents is not None else None
    _log_event(db, review_id, "quoted", old_price, str(price_cents))
    if review.status != "quoted":
        _log_event(db, review_id, "status_changed", review.status, "quoted")
    db.commit()
    logger.info("Review %s quoted at %d cents", review_id, price_cents)
    return get_review(db, review_id)


def set_status(db: sqlite3.Connection, review_id: str, status: str) -> ReviewRequest:
    """Move a review along one of the allowed edges, atomically."""
    if status == "quoted":
        raise ValueError("Use quote() to move a review to 'quoted'")
    if status not in TRANSITIONS:
        raise ValueError(f"Invalid review status: {status!r} (expected one of {', '.join(TRANSITIONS)})")

    review = require_review(db, review_id)
    if review.status not in TRANSITIONS[status]:
        raise InvalidStatusTransition(review_id, review.status, status)

    set_parts = ["status = ?", "updated_at = datetime('now')"]
    if column := _TIMESTAMP_COLUMNS.get(status):
        set_parts.append(f"{column} = datetime('now')")

    cur = db.execute(
        f"UPDATE review_requests SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
        (status, review_id, review.status),
    )
    if cur.rowcount == 0:
        db.rollback()
        raise InvalidStatusTransition(review_id, _current_status(db, review_id), status)

    _log_event(db, review_id, "status_changed", review.status, status)
    db.commit()
    logger.info("Review %s: %s -> %s", review_id, review.status, status)
    return get_review(db, review_id)


def _require_owned(db: sqlite3.Connection, review_id: str, customer_id: str | None) -> ReviewRequest:
    review = require_review(db, review_id)
    if customer_id is not None and review.customer_id != customer_id:
        raise ReviewNotFound(f"Review request not found: {review_id}")
    return review


def approve(db: sqlite3.Connection, review_id: str, customer_id: str | None = None) -> ReviewRequest:
    """Customer accepts the quote. ``customer_id`` scopes the lookup to that customer."""
    _require_owned(db, review_id, customer_id)
    return set_status(db, review_id, "approved")


def reject(db: sqlite3.Connection, review_id: str, customer_id: str | None = None) -> ReviewRequest:
    _require_owned(db, review_id, customer_id)
    return set_status(db, review_id, "rejected")


def mark_completed(db: sqlite3.Connection, review_id: str) -> ReviewRequest:
    return set_status(db, review_id, "completed")


def get_review_events(db: sqlite3.Connection, review_id: str) -> list[ReviewEvent]:
    """Get the audit trail for a review."""
    rows = db.execute(
        "SELECT * FROM review_events WHERE review_id = ? ORDER BY id",
        (review_id,),
    ).fetchall()
    return [
        ReviewEvent(
            id=r["id"],
            review_id=r["review_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _current_status(db: sqlite3.Connection, review_id: str) -> str:
    row = db.execute("SELECT status FROM review_requests WHERE id = ?", (review_id,)).fetchone()
    return row["status"] if row else "missing"


def _log_event(
    db: sqlite3.Connection,
    review_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO review_events (review_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (review_id, event_type, old_value, new_value),
    )


def _row_to_review(row: sqlite3.Row) -> ReviewRequest:
    return ReviewRequest(
        id=row["id"],
        customer_id=row["customer_id"],
        session_id=row["session_id"],
        customer_message_id=row["customer_message_id"],
        assistant_message_id=row["assistant_message_id"],
        request_content=row["request_content"],
        decision=row["decision"],
        scope=row["scope"],
        confidence_pct=row["confidence_pct"],
        reason=row["reason"],
        triggers=json.loads(row["triggers"] or "[]"),
        policy_version=row["policy_version"],
        status=row["status"],
        quoted_price_cents=row["quoted_price_cents"],
        quote_note=row["quote_note"],
        quoted_at=parse_dt(row["quoted_at"]),
        approved_at=parse_dt(row["approved_at"]),
        completed_at=parse_dt(row["completed_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
