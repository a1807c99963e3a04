"""Tests for the MCP operator tools, called directly with a stub context."""

import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from upserver.config import Config
from upserver.core import chat as chat_mod
from upserver.core import customers as customers_mod
from upserver.core import reviews as reviews_mod
from upserver.core.staging import StagingManager
from upserver.core.triage import evaluate
from upserver.db.engine import init_db
from upserver.mcp import prompts
from upserver.mcp import server


@pytest.fixture
def ctx():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(db_path=Path(tmp) / "test.db", sites_dir=Path(tmp) / "sites")
        db = init_db(config.db_path)
        customers_mod.create_customer(db, "bakery", "Bakery", "bakery")
        app = server.AppContext(db=db, config=config, staging=StagingManager(config))
        yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
        db.close()


def _review(db, request="Add a booking system") -> str:
    session = chat_mod.create_session(db, "bakery")
    customer_msg = chat_mod._insert_message(db, session.id, "customer", request)
    assistant_msg = chat_mod._insert_message(db, session.id, "assistant", "Flagged.", flagged=True)
    return reviews_mod.create_from_triage(
        db, "bakery", session.id, customer_msg, assistant_msg, request, evaluate(request)
    ).id


class TestReviewTools:
    def test_quote_and_status(self, ctx):
        db = ctx.request_context.lifespan_context.db
        review_id = _review(db)

        assert [r["id"] for r in server.list_reviews(ctx, status="open")] == [review_id]
        assert server.quote_review(ctx, review_id, 9900)["status"] == "quoted"
        assert server.set_review_status(ctx, review_id, "approved")["status"] == "approved"

        detail = server.get_review(ctx, review_id)
        assert detail["quoted_price_cents"] == 9900
        assert detail["events"][0]["event_type"] == "created"

    def test_errors_returned_not_raised(self, ctx):
        db = ctx.request_context.lifespan_context.db
        review_id = _review(db)
        assert server.set_review_status(ctx, review_id, "approved")["type"] == "InvalidStatusTransition"
        assert server.quote_review(ctx, review_id, -1)["type"] == "ValueError"
        assert "error" in server.get_review(ctx, "nope")

    def test_list_by_customer(self, ctx):
        db = ctx.request_context.lifespan_context.db
        _review(db)
        assert len(server.list_reviews(ctx, customer_id="bakery")) == 1
        assert server.list_reviews(ctx, customer_id="florist") == []


class TestOtherTools:
    def test_evaluate_request(self, ctx):
        result = server.evaluate_request(ctx, "Change the title", ["index.html"])
        assert result["decision"] == "auto"

    def test_staging_status_none(self, ctx):
        assert server.staging_status(ctx, "bakery") == {"customer_id": "bakery", "status": "none"}
        assert server.list_staging(ctx) == []

    def test_start_missing_site(self, ctx):
        assert server.start_staging(ctx, "bakery")["type"] == "SiteNotFound"

    def test_publish_history_missing_customer(self, ctx):
        assert server.publish_history(ctx, "nobody")["type"] == "CustomerNotFound"


class TestPrompts:
    def test_prompts_mention_tools(self):
        assert "get_review" in prompts.quote_review_prompt("abc")
        assert "list_staging" in prompts.staging_health_report()
