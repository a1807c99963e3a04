"""Tests for the review queue."""

import tempfile
from pathlib import Path

import pytest

from upserver.core import chat as chat_mod
from upserver.core import customers as customers_mod
from upserver.core import reviews as reviews_mod
from upserver.core.errors import InvalidStatusTransition, ReviewNotFound
from upserver.core.triage import evaluate
from upserver.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database with one customer and session."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        customers_mod.create_customer(conn, "bakery", "Corner Bakery", "bakery")
        customers_mod.create_customer(conn, "florist", "Florist", "florist")
        yield conn
        conn.close()


def _flagged_review(db, customer_id="bakery", request="Add a booking system"):
    session = chat_mod.create_session(db, customer_id)
    customer_msg = chat_mod._insert_message(db, session.id, "customer", request)
    assistant_msg = chat_mod._insert_message(db, session.id, "assistant", "Done.", flagged=True)
    db.commit()
    return reviews_mod.create_from_triage(
        db,
        customer_id=customer_id,
        session_id=session.id,
        customer_message_id=customer_msg,
        assistant_message_id=assistant_msg,
        request_content=request,
        triage=evaluate(request, ["src/App.tsx"]),
    )


class TestCreate:
    def test_create_from_triage(self, db):
        review = _flagged_review(db)
        assert review.status == "open"
        assert review.decision == "flag"
        assert review.scope == "major"
        assert review.confidence_pct == 84
        assert review.triggers[0].startswith("major_intent:")
        assert review.quoted_price_cents is None
        assert len(review.id) == 12

    def test_created_event(self, db):
        review = _flagged_review(db)
        events = reviews_mod.get_review_events(db, review.id)
        assert [(e.event_type, e.new_value) for e in events] == [("created", "open")]

    def test_list_by_customer(self, db):
        first = _flagged_review(db)
        second = _flagged_review(db, request="Add stripe checkout")
        _flagged_review(db, customer_id="florist")
        listed = reviews_mod.list_by_customer(db, "bakery")
        assert [r.id for r in listed] == [second.id, first.id]

    def test_list_filtered_by_status(self, db):
        a = _flagged_review(db)
        _flagged_review(db)
        reviews_mod.quote(db, a.id, 5000)
        assert [r.id for r in reviews_mod.list_reviews(db, "quoted")] == [a.id]
        assert len(reviews_mod.list_reviews(db)) == 2

    def test_require_missing(self, db):
        with pytest.raises(ReviewNotFound):
            reviews_mod.require_review(db, "nope")


class TestQuote:
    def test_quote_open(self, db):
        review = _flagged_review(db)
        quoted = reviews_mod.quote(db, review.id, 12500, "Two days of work")
        assert quoted.status == "quoted"
        assert quoted.quoted_price_cents == 12500
        assert quoted.quote_note == "Two days of work"
        assert quoted.quoted_at is not None

    def test_requote_replaces_price(self, db):
        review = _flagged_review(db)
        reviews_mod.quote(db, review.id, 12500)
        requoted = reviews_mod.quote(db, review.id, 9900)
        assert requoted.quoted_price_cents == 9900
        events = reviews_mod.get_review_events(db, review.id)
        quoted_events = [(e.old_value, e.new_value) for e in events if e.event_type == "quoted"]
        assert quoted_events == [(None, "12500"), ("12500", "9900")]
        status_events = [e for e in events if e.event_type == "status_changed"]
        assert len(status_events) == 1

    @pytest.mark.parametrize("price", [0, -100, 12.5, True, "100", None])
    def test_invalid_price(self, db, price):
        review = _flagged_review(db)
        with pytest.raises(ValueError):
            reviews_mod.quote(db, review.id, price)
        assert reviews_mod.get_review(db, review.id).status == "open"

    def test_cannot_quote_approved(self, db):
        review = _flagged_review(db)
        reviews_mod.quote(db, review.id, 100)
        reviews_mod.approve(db, review.id)
        with pytest.raises(InvalidStatusTransition):
            reviews_mod.quote(db, review.id, 200)

    def test_quote_missing(self, db):
        with pytest.raises(ReviewNotFound):
            reviews_mod.quote(db, "nope", 100)


class TestTransitions:
    def test_full_lifecycle(self, db):
        review = _flagged_review(db)
        reviews_mod.quote(db, review.id, 5000)
        approved = reviews_mod.approve(db, review.id, customer_id="bakery")
        assert approved.status == "approved"
        assert approved.approved_at is not None
        completed = reviews_mod.mark_completed(db, review.id)
        assert completed.status == "completed"
        assert completed.completed_at is not None

        events = reviews_mod.get_review_events(db, review.id)
        changes = [(e.old_value, e.new_value) for e in events if e.event_type == "status_changed"]
        assert changes == [("open", "quoted"), ("quoted", "approved"), ("approved", "completed")]

    def test_cannot_approve_unquoted(self, db):
        review = _flagged_review(db)
        with pytest.raises(InvalidStatusTransition) as exc:
            reviews_mod.approve(db, review.id)
        assert exc.value.current == "open"
        assert exc.value.target == "approved"

    def test_reject_quoted(self, db):
        review = _flagged_review(db)
        reviews_mod.quote(db, review.id, 5000)
        assert reviews_mod.reject(db, review.id).status == "rejected"

    def test_rejected_can_be_completed(self, db):
        review = _flagged_review(db)
        reviews_mod.quote(db, review.id, 5000)
        reviews_mod.reject(db, review.id)
        with pytest.raises(InvalidStatusTransition):
            reviews_mod.approve(db, review.id)
        done = reviews_mod.mark_completed(db, review.id)
        assert done.status == "completed"
        assert done.completed_at is not None

    def test_completed_is_terminal(self, db):
        review = _flagged_review(db)
        reviews_mod.mark_completed(db, review.id)
        for target in ("approved", "rejected", "completed"):
            with pytest.raises(InvalidStatusTransition):
                reviews_mod.set_status(db, review.id, target)

    def test_complete_straight_from_open(self, db):
        review = _flagged_review(db)
        assert reviews_mod.mark_completed(db, review.id).status == "completed"

    def test_set_status_cannot_target_quoted(self, db):
        review = _flagged_review(db)
        with pytest.raises(ValueError):
            reviews_mod.set_status(db, review.id, "quoted")

    def test_unknown_status(self, db):
        review = _flagged_review(db)
        with pytest.raises(ValueError):
            reviews_mod.set_status(db, review.id, "archived")

    def test_other_customer_cannot_approve(self, db):
        review = _flagged_review(db)
        reviews_mod.quote(db, review.id, 5000)
        with pytest.raises(ReviewNotFound):
            reviews_mod.approve(db, review.id, customer_id="florist")
        assert reviews_mod.get_review(db, review.id).status == "quoted"

    def test_failed_transition_leaves_no_event(self, db):
        review = _flagged_review(db)
        with pytest.raises(InvalidStatusTransition):
            reviews_mod.reject(db, review.id)
        assert len(reviews_mod.get_review_events(db, review.id)) == 1
