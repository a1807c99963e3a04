"""Data models for UpServer."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Customer:
    id: str
    name: str
    site_folder: str
    staging_port: int | None = None
    staging_url: str | None = None
    github_repo: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ChatSession:
    id: str
    customer_id: str
    title: str | None = None
    status: str = "active"
    agent_session_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Message:
    id: str
    session_id: str
    role: str
    content: str
    images: list[str] = field(default_factory=list)
    flagged: bool = False
    created_at: datetime | None = None


@dataclass
class StagingServer:
    customer_id: str
    port: int
    pid: int | None = None
    status: str = "stopped"
    started_at: datetime | None = None
    last_activity: datetime | None = None
    exit_code: int | None = None
    last_error: str | None = None
    updated_at: datetime | None = None


@dataclass
class ReviewRequest:
    id: str
    customer_id: str
    session_id: str
    customer_message_id: str
    assistant_message_id: str
    request_content: str
    decision: str
    scope: str
    confidence_pct: int
    reason: str
    triggers: list[str] = field(default_factory=list)
    policy_version: str = ""
    status: str = "open"
    quoted_price_cents: int | None = None
    quote_note: str | None = None
    quoted_at: datetime | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ReviewEvent:
    id: int | None = None
    review_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Commit:
    hash: str
    timestamp: int
    subject: str

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
