"""Tests for the HTTP API."""

import json
import socket
import subprocess
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from upserver.config import Config
from upserver.core import chat as chat_mod
from upserver.core import customers as customers_mod
from upserver.core.chat import ChatService
from upserver.core.errors import GENERIC_CUSTOMER_MESSAGE
from upserver.db.engine import init_db
from upserver.integrations.agent import AgentEvent
from upserver.web import app as app_mod
from upserver.web.app import create_app


class FakeAgent:
    def __init__(self, events):
        self.events = events

    def stream(self, site_path, message, session_handle=None, images=None):
        yield from self.events


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def web_env():
    """Seeded DB, one static git site, and a client whose agent asks for a booking system."""
    with tempfile.TemporaryDirectory() as tmp:
        start = _free_port()
        config = Config(
            db_path=Path(tmp) / "test.db",
            sites_dir=Path(tmp) / "sites",
            port_range_start=start,
            port_range_end=min(start + 30, 65535),
            ready_timeout=10.0,
            stop_timeout=5.0,
        )
        site = config.sites_dir / "bakery"
        site.mkdir(parents=True)
        (site / "index.html").write_text("<h1>Corner Bakery</h1>")
        for args in (
            ["init"],
            ["config", "user.name", "Test"],
            ["config", "user.email", "test@test.com"],
            ["config", "commit.gpgsign", "false"],
            ["add", "."],
            ["commit", "-m", "init"],
        ):
            subprocess.run(["git", *args], cwd=site, capture_output=True, check=True)

        db = init_db(config.db_path)
        customers_mod.create_customer(db, "bakery", "Corner Bakery", "bakery")
        customers_mod.create_customer(db, "florist", "Florist", "florist")
        session = chat_mod.create_session(db, "bakery")
        db.close()

        events = [
            AgentEvent("init", session_id="agent-1"),
            AgentEvent("text", text="I've drafted the page."),
            AgentEvent("file_edit", path=str(site / "booking.html")),
            AgentEvent("result", subtype="success"),
        ]
        chat = ChatService(config, agent=FakeAgent(events))
        app = create_app(config, chat=chat, run_sweeper=False)
        client = TestClient(app)
        yield client, session.id, site

        app.state.staging.stop("bakery")


def _flag_request(client, session_id) -> str:
    resp = client.post(
        f"/api/customers/bakery/sessions/{session_id}/messages",
        json={"content": "Add a booking system to the site"},
    )
    assert resp.status_code == 200
    return resp.json()["review_id"]


class TestHealth:
    def test_health(self, web_env):
        client, _, _ = web_env
        assert client.get("/health").json() == {"status": "ok"}


class TestAdminCustomers:
    def test_list(self, web_env):
        client, _, _ = web_env
        ids = {c["id"] for c in client.get("/api/admin/customers").json()}
        assert ids == {"bakery", "florist"}

    def test_create(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/admin/customers",
            json={"id": "cafe", "name": "Cafe", "site_folder": "cafe"},
        )
        assert resp.status_code == 201
        assert resp.json()["site_folder"] == "cafe"

    def test_create_missing_field(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/admin/customers", json={"id": "cafe"})
        assert resp.status_code == 400
        assert resp.json()["type"] == "ValueError"

    def test_port_outside_range(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/admin/customers",
            json={"id": "cafe", "name": "Cafe", "site_folder": "cafe", "staging_port": 1},
        )
        assert resp.status_code == 400
        assert resp.json()["type"] == "PortConfigError"

    def test_duplicate(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/admin/customers",
            json={"id": "bakery", "name": "Again", "site_folder": "other"},
        )
        assert resp.status_code == 409

    def test_invalid_json(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/admin/customers", content=b"{nope")
        assert resp.status_code == 400


class TestChat:
    def test_sessions(self, web_env):
        client, session_id, _ = web_env
        resp = client.post("/api/customers/bakery/sessions", json={"title": "Menu"})
        assert resp.status_code == 201
        ids = {s["id"] for s in client.get("/api/customers/bakery/sessions").json()}
        assert ids == {session_id, resp.json()["id"]}

    def test_unknown_customer_gets_generic_message(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/customers/nobody/sessions")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Customer not found."}

    def test_send_message_flags_major_request(self, web_env):
        client, session_id, _ = web_env
        resp = client.post(
            f"/api/customers/bakery/sessions/{session_id}/messages",
            json={"content": "Add a booking system to the site"},
        )
        body = resp.json()
        assert body["flagged"] is True
        assert body["files_touched"] == ["booking.html"]
        assert body["review_id"]
        assert body["message"]["content"] == "I've drafted the page."

        history = client.get(f"/api/customers/bakery/sessions/{session_id}/messages").json()
        assert [m["role"] for m in history] == ["customer", "assistant"]

    def test_missing_content(self, web_env):
        client, session_id, _ = web_env
        resp = client.post(f"/api/customers/bakery/sessions/{session_id}/messages", json={})
        assert resp.status_code == 400
        assert resp.json() == {"error": GENERIC_CUSTOMER_MESSAGE}

    def test_other_customers_session(self, web_env):
        client, session_id, _ = web_env
        resp = client.get(f"/api/customers/florist/sessions/{session_id}/messages")
        assert resp.status_code == 404

    def test_stream(self, web_env):
        client, session_id, _ = web_env
        resp = client.post(
            f"/api/customers/bakery/sessions/{session_id}/messages/stream",
            json={"content": "Add a booking system"},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        chunks = [
            json.loads(line[len("data: "):])
            for line in resp.text.splitlines()
            if line.startswith("data: ")
        ]
        assert [c["type"] for c in chunks] == ["text", "file_edit", "done"]
        assert chunks[-1]["flagged"] is True

    def test_stream_unknown_session(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/customers/bakery/sessions/nope/messages/stream",
            json={"content": "hello"},
        )
        assert resp.status_code == 404


class TestReviews:
    def test_quote_and_approve(self, web_env):
        client, session_id, _ = web_env
        review_id = _flag_request(client, session_id)

        listed = client.get("/api/customers/bakery/reviews").json()
        assert [r["id"] for r in listed] == [review_id]
        assert listed[0]["status"] == "open"

        resp = client.post(f"/api/admin/reviews/{review_id}/quote", json={"price_cents": 15000, "note": "2 days"})
        assert resp.json()["status"] == "quoted"

        resp = client.post(f"/api/customers/bakery/reviews/{review_id}/approve")
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"

        resp = client.post(f"/api/admin/reviews/{review_id}/status", json={"status": "completed"})
        assert resp.json()["status"] == "completed"

        detail = client.get(f"/api/admin/reviews/{review_id}").json()
        assert [e["event_type"] for e in detail["events"]] == [
            "created", "quoted", "status_changed", "status_changed", "status_changed",
        ]

    def test_approve_before_quote(self, web_env):
        client, session_id, _ = web_env
        review_id = _flag_request(client, session_id)
        resp = client.post(f"/api/customers/bakery/reviews/{review_id}/approve")
        assert resp.status_code == 409
        assert "current state" in resp.json()["error"]

    def test_other_customer_cannot_reject(self, web_env):
        client, session_id, _ = web_env
        review_id = _flag_request(client, session_id)
        client.post(f"/api/admin/reviews/{review_id}/quote", json={"price_cents": 100})
        resp = client.post(f"/api/customers/florist/reviews/{review_id}/reject")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Review request not found."}

    def test_invalid_quote(self, web_env):
        client, session_id, _ = web_env
        review_id = _flag_request(client, session_id)
        resp = client.post(f"/api/admin/reviews/{review_id}/quote", json={"price_cents": -5})
        assert resp.status_code == 400
        assert resp.json()["type"] == "ValueError"

    def test_admin_filter_by_status(self, web_env):
        client, session_id, _ = web_env
        _flag_request(client, session_id)
        assert len(client.get("/api/admin/reviews?status=open").json()) == 1
        assert client.get("/api/admin/reviews?status=quoted").json() == []

    def test_admin_unknown_review(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/admin/reviews/nope")
        assert resp.status_code == 404
        assert resp.json()["type"] == "ReviewNotFound"


class TestTriage:
    def test_dry_run(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/admin/triage",
            json={"request": "Fix a typo", "files_touched": ["package.json"]},
        )
        body = resp.json()
        assert body["decision"] == "flag"
        assert body["triggers"] == ["high_risk_file:package.json"]

    def test_flags_must_be_booleans(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/admin/triage",
            json={"request": "Fix a typo", "agent_succeeded": "false"},
        )
        assert resp.status_code == 400
        assert resp.json()["type"] == "ValueError"

        resp = client.post(
            "/api/admin/triage",
            json={"request": "Change the headline", "agent_errored": True},
        )
        assert resp.json()["triggers"] == ["agent_execution_error"]


class TestStaging:
    def test_status_without_record(self, web_env):
        client, _, _ = web_env
        assert client.get("/api/customers/bakery/staging").json() == {"server": None}

    def test_start_and_stop(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/customers/bakery/staging/start")
        assert resp.status_code == 200
        assert resp.json()["status"] == "started"

        server = client.get("/api/customers/bakery/staging").json()["server"]
        assert server["status"] == "running"
        assert [r["customer_id"] for r in client.get("/api/admin/staging").json()] == ["bakery"]

        resp = client.post("/api/admin/staging/bakery/stop")
        assert resp.json()["status"] == "stopped"

    def test_missing_site(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/customers/florist/staging/start")
        assert resp.status_code == 409
        assert "could not be found" in resp.json()["error"]

        resp = client.post("/api/admin/staging/florist/start")
        assert resp.json()["type"] == "SiteNotFound"

    def test_preflight(self, web_env):
        client, _, _ = web_env
        body = client.get("/api/customers/bakery/staging/preflight").json()
        assert body["site_folder_exists"] is True
        assert body["git_remote_configured"] is False
        assert body["has_uncommitted_changes"] is False


class TestPublish:
    def test_publish_and_history(self, web_env):
        client, _, site = web_env
        assert client.get("/api/customers/bakery/publish/status").json()["has_uncommitted_changes"] is False

        (site / "index.html").write_text("<h1>New</h1>")
        resp = client.post("/api/customers/bakery/publish")
        body = resp.json()
        # No remote configured, so the commit stays local.
        assert body["success"] is True
        assert body["warning"] == "push_failed"

        history = client.get("/api/customers/bakery/publish/history?limit=5").json()
        assert len(history) == 2
        assert history[0]["short_hash"] == body["commit_hash"][:7]

    def test_git_reads_run_off_the_event_loop(self, web_env, monkeypatch):
        client, _, _ = web_env
        offloaded = []
        original = app_mod.run_in_threadpool

        async def recording(func, *args, **kwargs):
            offloaded.append(func.__name__)
            return await original(func, *args, **kwargs)

        monkeypatch.setattr(app_mod, "run_in_threadpool", recording)
        client.get("/api/customers/bakery/publish/status")
        client.get("/api/customers/bakery/publish/history")
        assert offloaded == ["last_publish", "status_porcelain", "history"]

    def test_nothing_to_publish(self, web_env):
        client, _, _ = web_env
        body = client.post("/api/customers/bakery/publish").json()
        assert body == {"success": False, "message": "No changes to publish"}

    def test_rollback(self, web_env):
        client, _, site = web_env
        first = client.get("/api/customers/bakery/publish/history").json()[0]["hash"]
        (site / "index.html").write_text("<h1>New</h1>")
        client.post("/api/customers/bakery/publish")

        resp = client.post("/api/customers/bakery/publish/rollback", json={"commit_hash": first})
        assert resp.json()["rolled_back_to"] == first
        assert (site / "index.html").read_text() == "<h1>Corner Bakery</h1>"

    def test_rollback_bad_hash(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/customers/bakery/publish/rollback", json={"commit_hash": "zzz"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "That version could not be found."}

    def test_rollback_blocked(self, web_env):
        client, _, site = web_env
        first = client.get("/api/customers/bakery/publish/history").json()[0]["hash"]
        (site / "index.html").write_text("<h1>Draft</h1>")
        resp = client.post("/api/customers/bakery/publish/rollback", json={"commit_hash": first})
        assert resp.status_code == 409
        assert "unpublished local changes" in resp.json()["error"]

    def test_publish_missing_site(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/customers/florist/publish")
        assert resp.status_code == 409
