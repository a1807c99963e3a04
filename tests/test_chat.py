"""Tests for chat sessions and the agent turn."""

import tempfile
from pathlib import Path

import pytest

from upserver.config import Config
from upserver.core import chat as chat_mod
from upserver.core import customers as customers_mod
from upserver.core import reviews as reviews_mod
from upserver.core.errors import CustomerNotFound, SessionNotFound
from upserver.db.engine import get_db, init_db
from upserver.integrations.agent import AgentEvent


class FakeAgent:
    """Replays a fixed list of events and remembers how it was called."""

    def __init__(self, events):
        self.events = events
        self.calls = []

    def stream(self, site_path, message, session_handle=None, images=None):
        self.calls.append((Path(site_path), message, session_handle, images))
        yield from self.events


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, category, **fields):
        self.sent.append((category, fields))


class FakeStaging:
    def __init__(self):
        self.touched = []

    def update_activity(self, customer_id):
        self.touched.append(customer_id)


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(db_path=Path(tmp) / "test.db", sites_dir=Path(tmp) / "sites")
        (config.sites_dir / "bakery").mkdir(parents=True)
        db = init_db(config.db_path)
        customers_mod.create_customer(db, "bakery", "Corner Bakery", "bakery")
        customers_mod.create_customer(db, "florist", "Florist", "florist")
        session = chat_mod.create_session(db, "bakery")
        db.close()
        yield config, session


def _service(config, events):
    agent = FakeAgent(events)
    notifier = FakeNotifier()
    staging = FakeStaging()
    service = chat_mod.ChatService(config, agent=agent, notifier=notifier, staging=staging)
    return service, agent, notifier, staging


def _success(site: Path, *files: str, text="Done! Check the preview."):
    events = [AgentEvent("init", session_id="agent-1"), AgentEvent("text", text=text)]
    events += [AgentEvent("file_edit", path=str(site / f)) for f in files]
    events.append(AgentEvent("result", subtype="success"))
    return events


class TestSessions:
    def test_create_and_list(self, env):
        config, session = env
        with get_db(config.db_path) as db:
            second = chat_mod.create_session(db, "bakery", title="Menu")
            listed = chat_mod.list_sessions(db, "bakery")
        assert {s.id for s in listed} == {session.id, second.id}
        assert second.title == "Menu"
        assert session.status == "active"

    def test_unknown_customer(self, env):
        config, _ = env
        with get_db(config.db_path) as db:
            with pytest.raises(CustomerNotFound):
                chat_mod.create_session(db, "nobody")

    def test_other_customers_session_is_missing(self, env):
        config, session = env
        with get_db(config.db_path) as db:
            with pytest.raises(SessionNotFound):
                chat_mod.get_session(db, session.id, customer_id="florist")
            assert chat_mod.get_session(db, session.id).customer_id == "bakery"


class TestSendMessage:
    def test_minor_edit_auto_accepted(self, env):
        config, session = env
        site = config.site_path("bakery")
        service, agent, notifier, staging = _service(config, _success(site, "index.html"))

        result = service.send_message(session.id, "bakery", "Change the headline to 'Fresh bread'")
        assert not result.triage.flagged
        assert result.review is None
        assert result.files_touched == ["index.html"]
        assert result.message.role == "assistant"
        assert result.message.content == "Done! Check the preview."
        assert notifier.sent == []
        assert staging.touched == ["bakery"]
        assert agent.calls[0][0] == site
        assert agent.calls[0][2] is None

        with get_db(config.db_path) as db:
            stored = chat_mod.get_session(db, session.id)
            messages = chat_mod.get_messages(db, session.id)
        assert stored.agent_session_id == "agent-1"
        assert stored.title == "Change the headline to 'Fresh bread'"
        assert [m.role for m in messages] == ["customer", "assistant"]

    def test_major_request_opens_review(self, env):
        config, session = env
        site = config.site_path("bakery")
        service, _, notifier, _ = _service(config, _success(site, "src/App.tsx"))

        result = service.send_message(session.id, "bakery", "Add a Stripe checkout to the shop")
        assert result.triage.flagged
        assert result.message.flagged
        assert result.review is not None
        assert result.review.status == "open"
        assert result.review.assistant_message_id == result.message.id

        with get_db(config.db_path) as db:
            assert [r.id for r in reviews_mod.list_by_customer(db, "bakery")] == [result.review.id]

        category, fields = notifier.sent[0]
        assert category == "flagged_request"
        assert fields["review_id"] == result.review.id
        assert fields["scope"] == "major"

    def test_agent_error_is_uncertain(self, env):
        config, session = env
        service, _, _, _ = _service(config, [AgentEvent("error", text="Something broke")])
        result = service.send_message(session.id, "bakery", "Change the title")
        assert result.triage.scope == "uncertain"
        assert result.review is not None
        assert result.message.content == "Something broke"

    def test_resume_uses_stored_handle(self, env):
        config, session = env
        site = config.site_path("bakery")
        service, agent, _, _ = _service(config, _success(site))
        service.send_message(session.id, "bakery", "First")
        service.send_message(session.id, "bakery", "Second")
        assert agent.calls[1][2] == "agent-1"

    def test_long_title_truncated(self, env):
        config, session = env
        service, _, _, _ = _service(config, _success(config.site_path("bakery")))
        service.send_message(session.id, "bakery", "x" * 80)
        with get_db(config.db_path) as db:
            assert chat_mod.get_session(db, session.id).title == "x" * 50 + "..."

    def test_wrong_customer(self, env):
        config, session = env
        service, agent, _, _ = _service(config, [])
        with pytest.raises(SessionNotFound):
            service.send_message(session.id, "florist", "hello")
        assert agent.calls == []


class TestStreamMessage:
    def test_chunks_then_done(self, env):
        config, session = env
        site = config.site_path("bakery")
        service, _, _, _ = _service(config, _success(site, "about.html"))

        chunks = list(service.stream_message(session.id, "bakery", "Update the about page"))
        assert [c["type"] for c in chunks] == ["text", "file_edit", "done"]
        done = chunks[-1]
        assert done["flagged"] is False
        assert done["files_touched"] == ["about.html"]
        assert done["review_id"] is None

        with get_db(config.db_path) as db:
            assert chat_mod.get_message(db, done["message_id"]).role == "assistant"

    def test_error_chunk(self, env):
        config, session = env
        service, _, _, _ = _service(config, [AgentEvent("error", text="nope")])
        chunks = list(service.stream_message(session.id, "bakery", "Change the title"))
        assert [c["type"] for c in chunks] == ["error", "done"]
        assert chunks[-1]["flagged"] is True
        assert chunks[-1]["review_id"]
