"""Chat sessions and the agent turn: store, run, triage, queue for review."""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from dataclasses import dataclass

from upserver.config import Config
from upserver.core import reviews
from upserver.core.customers import require_customer
from upserver.core.errors import SessionNotFound
from upserver.core.triage import DEFAULT_POLICY, TriagePolicy, TriageResult, evaluate
from upserver.db.engine import get_db
from upserver.db.models import ChatSession, Customer, Message, ReviewRequest, parse_dt
from upserver.integrations.agent import AgentOutcome, ClaudeAgent, relative_paths

logger = logging.getLogger(__name__)

TITLE_CHARS = 50


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def create_session(db: sqlite3.Connection, customer_id: str, title: str | None = None) -> ChatSession:
    require_customer(db, customer_id)
    session_id = _new_id()
    db.execute(
        "INSERT INTO chat_sessions (id, customer_id, title) VALUES (?, ?, ?)",
        (session_id, customer_id, title),
    )
    db.commit()
    return get_session(db, session_id)


def get_session(
    db: sqlite3.Connection,
    session_id: str,
    customer_id: str | None = None,
) -> ChatSession:
    """Get a session; with ``customer_id`` another customer's session counts as missing."""
    row = db.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
    if not row or (customer_id is not None and row["customer_id"] != customer_id):
        raise SessionNotFound(f"Chat session not found: {session_id}")
    return _row_to_session(row)


def list_sessions(db: sqlite3.Connection, customer_id: str) -> list[ChatSession]:
    rows = db.execute(
        "SELECT * FROM chat_sessions WHERE customer_id = ? ORDER BY updated_at DESC, rowid DESC",
        (customer_id,),
    ).fetchall()
    return [_row_to_session(r) for r in rows]


def get_messages(db: sqlite3.Connection, session_id: str) -> list[Message]:
    rows = db.execute(
        "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at, rowid",
        (session_id,),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def get_message(db: sqlite3.Connection, message_id: str) -> Message | None:
    row = db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    return _row_to_message(row) if row else None


def _insert_message(
    db: sqlite3.Connection,
    session_id: str,
    role: str,
    content: str,
    images: list[str] | None = None,
    flagged: bool = False,
) -> str:
    message_id = _new_id()
    db.execute(
        """INSERT INTO messages (id, session_id, role, content, images, flagged)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (message_id, session_id, role, content, json.dumps(images) if images else None, int(flagged)),
    )
    return message_id


@dataclass
class Turn:
    """One customer message on its way through the agent."""

    customer: Customer
    session: ChatSession
    customer_message_id: str
    content: str
    images: list[str] | None = None


@dataclass
class TurnResult:
    message: Message
    triage: TriageResult
    files_touched: list[str]
    review: ReviewRequest | None = None


class ChatService:
    """Runs chat turns. ``send_message`` buffers, ``stream_message`` forwards."""

    def __init__(
        self,
        config: Config,
        agent: ClaudeAgent | None = None,
        notifier=None,
        staging=None,
        policy: TriagePolicy = DEFAULT_POLICY,
    ):
        self.config = config
        self.agent = agent or ClaudeAgent(model=config.agent_model, max_turns=config.agent_max_turns)
        self.notifier = notifier
        self.staging = staging
        self.policy = policy

    def send_message(
        self,
        session_id: str,
        customer_id: str,
        content: str,
        images: list[str] | None = None,
    ) -> TurnResult:
        turn = self._begin(session_id, customer_id, content, images)
        outcome = AgentOutcome(session_handle=turn.session.agent_session_id)
        for event in self._events(turn):
            outcome.apply(event)
        return self._finish(turn, outcome)

    def stream_message(
        self,
        session_id: str,
        customer_id: str,
        content: str,
        images: list[str] | None = None,
    ) -> Iterator[dict]:
        """Yield ``text``/``file_edit`` chunks, then one ``done`` (or ``error``) dict."""
        turn = self._begin(session_id, customer_id, content, images)
        outcome = AgentOutcome(session_handle=turn.session.agent_session_id)
        for event in self._events(turn):
            outcome.apply(event)
            if event.kind == "text":
                yield {"type": "text", "text": event.text}
            elif event.kind == "file_edit":
                yield {"type": "file_edit", "path": event.path}
            elif event.kind == "error":
                yield {"type": "error", "message": event.text}
                break

        result = self._finish(turn, outcome)
        yield {
            "type": "done",
            "message_id": result.message.id,
            "flagged": result.triage.flagged,
            "files_touched": result.files_touched,
            "review_id": result.review.id if result.review else None,
        }

    # ── shared turn path ──

    def _begin(self, session_id, customer_id, content, images) -> Turn:
        with get_db(self.config.db_path) as db:
            session = get_session(db, session_id, customer_id)
            customer = require_customer(db, customer_id)
            if not session.title:
                title = content if len(content) <= TITLE_CHARS else content[:TITLE_CHARS] + "..."
                db.execute("UPDATE chat_sessions SET title = ? WHERE id = ?", (title, session_id))
            message_id = _insert_message(db, session_id, "customer", content, images)
            db.commit()

        if self.staging is not None:
            self.staging.update_activity(customer_id)
        return Turn(customer, session, message_id, content, images)

    def _events(self, turn: Turn):
        site = self.config.site_path(turn.customer.site_folder)
        return self.agent.stream(site, turn.content, turn.session.agent_session_id, turn.images)

    def _finish(self, turn: Turn, outcome: AgentOutcome) -> TurnResult:
        site = self.config.site_path(turn.customer.site_folder)
        files = relative_paths(outcome.files_touched, site)
        triage = evaluate(
            turn.content,
            files,
            agent_succeeded=outcome.succeeded,
            agent_errored=outcome.errored,
            policy=self.policy,
        )

        review = None
        with get_db(self.config.db_path) as db:
            assistant_id = _insert_message(
                db, turn.session.id, "assistant", outcome.response, flagged=triage.flagged
            )
            if triage.flagged:
                review = reviews.create_from_triage(
                    db,
                    customer_id=turn.customer.id,
                    session_id=turn.session.id,
                    customer_message_id=turn.customer_message_id,
                    assistant_message_id=assistant_id,
                    request_content=turn.content,
                    triage=triage,
                    commit=False,
                )
            db.commit()

            db.execute(
                """UPDATE chat_sessions
                   SET agent_session_id = COALESCE(?, agent_session_id), updated_at = datetime('now')
                   WHERE id = ?""",
                (outcome.session_handle, turn.session.id),
            )
            db.commit()
            message = get_message(db, assistant_id)

        if triage.flagged:
            logger.info(
                "Request from %s flagged (%s): %s",
                turn.customer.id, triage.scope, ", ".join(triage.triggers),
            )
            if self.notifier is not None:
                self.notifier.notify(
                    "flagged_request",
                    customer_id=turn.customer.id,
                    review_id=review.id,
                    scope=triage.scope,
                    triggers=triage.triggers,
                    request=turn.content,
                )
        else:
            logger.info("Request from %s auto-accepted (%d files)", turn.customer.id, len(files))

        return TurnResult(message=message, triage=triage, files_touched=files, review=review)


def _row_to_session(row: sqlite3.Row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        customer_id=row["customer_id"],
        title=row["title"],
        status=row["status"],
        agent_session_id=row["agent_session_id"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        images=json.loads(row["images"]) if row["images"] else [],
        flagged=bool(row["flagged"]),
        created_at=parse_dt(row["created_at"]),
    )
