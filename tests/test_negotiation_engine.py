"""
Tests: Negotiation Engine — thread protocol and award.

Covers:
    1. open_thread rules (self-contact, duplicates, closed / elapsed listings)
    2. reply / mark_read participant rules
    3. award atomicity and the disclosure it triggers
    4. The three-party scenario: owner A, contenders B and C
    5. Concurrent awards on a shared file database
    6. Read views (get_thread, inbox)
"""

import smtplib
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from marketplace import create_app
from marketplace.config import TestingConfig
from marketplace.core.failures import FailureKind
from marketplace.models import db
from marketplace.models.disclosure import DisclosureGrant
from marketplace.models.listing import STATE_OPEN, STATE_RESERVED, Listing
from marketplace.models.message import Message, ThreadIndex
from marketplace.models.notification import EmailLog
from marketplace.services.disclosure_service import DisclosureLedger
from marketplace.services.listing_service import ListingStore
from marketplace.services.negotiation_service import (
    THREAD_AWARDED,
    THREAD_EXPIRED,
    THREAD_OPEN,
    THREAD_VOID,
    NegotiationEngine,
)


def _today():
    return datetime.now(timezone.utc).date()


def _open(listing, org, body="Interested"):
    msg, failure = NegotiationEngine.open_thread(listing.id, org.id, body)
    assert failure is None, failure
    return msg.thread_id


@pytest.fixture()
def abc(make_org, make_listing):
    """Owner A with one open listing; B and C are unrelated members."""
    a, b, c = make_org("Alpha"), make_org("Bravo"), make_org("Charlie")
    listing = make_listing(a, descriptor="Two electricians")
    return {"a": a, "b": b, "c": c, "listing": listing}


# ── open_thread ─────────────────────────────────────────────────────────────


class TestOpenThread:
    def test_first_message_identifies_thread(self, abc):
        msg, failure = NegotiationEngine.open_thread(abc["listing"].id, abc["b"].id, "Hello")
        assert failure is None
        assert msg.thread_id == msg.id
        assert msg.sender_org_id == abc["b"].id
        assert msg.recipient_org_id == abc["a"].id
        assert msg.read_at is None
        index = db.session.get(ThreadIndex, msg.id)
        assert index.initiator_org_id == abc["b"].id

    def test_default_subject_names_category_and_descriptor(self, abc):
        msg, _ = NegotiationEngine.open_thread(abc["listing"].id, abc["b"].id, "Hello")
        assert msg.subject == "Interested in available staffing: Two electricians"

    def test_explicit_subject_kept(self, abc):
        msg, _ = NegotiationEngine.open_thread(
            abc["listing"].id, abc["b"].id, "Hello", subject="Rates for March",
        )
        assert msg.subject == "Rates for March"

    def test_owner_cannot_contact_own_listing(self, abc):
        msg, failure = NegotiationEngine.open_thread(abc["listing"].id, abc["a"].id, "Me again")
        assert msg is None
        assert failure.kind == FailureKind.SELF_CONTACT
        assert Message.query.count() == 0

    def test_second_open_is_duplicate_and_points_at_existing(self, abc):
        tid = _open(abc["listing"], abc["b"])
        msg, failure = NegotiationEngine.open_thread(abc["listing"].id, abc["b"].id, "Again")

        assert msg is None
        assert failure.kind == FailureKind.DUPLICATE_THREAD
        assert failure.details["thread_id"] == tid
        assert ThreadIndex.query.count() == 1
        assert Message.query.count() == 1

    def test_unique_index_backs_duplicate_rule(self, abc):
        tid = _open(abc["listing"], abc["b"])
        # Bypass the pre-check: the constraint alone must reject the second thread
        with patch("marketplace.services.negotiation_service.ThreadIndex.query") as q:
            q.filter_by.return_value.first.side_effect = [None, db.session.get(ThreadIndex, tid)]
            msg, failure = NegotiationEngine.open_thread(abc["listing"].id, abc["b"].id, "Race")

        assert msg is None
        assert failure.kind == FailureKind.DUPLICATE_THREAD
        assert ThreadIndex.query.count() == 1
        assert Message.query.count() == 1

    def test_empty_body_rejected(self, abc):
        _, failure = NegotiationEngine.open_thread(abc["listing"].id, abc["b"].id, "   ")
        assert failure.kind == FailureKind.VALIDATION

    def test_missing_listing(self, abc):
        _, failure = NegotiationEngine.open_thread("missing", abc["b"].id, "Hi")
        assert failure.kind == FailureKind.NOT_FOUND

    def test_reserved_listing_reports_already_reserved(self, abc):
        ListingStore.reserve(abc["listing"].id, abc["b"].id)
        db.session.commit()

        _, failure = NegotiationEngine.open_thread(abc["listing"].id, abc["c"].id, "Hi")
        assert failure.kind == FailureKind.ALREADY_RESERVED
        assert failure.informational

    def test_elapsed_listing_is_void(self, abc, make_listing):
        old = make_listing(
            abc["a"], valid_from=_today() - timedelta(days=10), valid_to=_today() - timedelta(days=1),
        )
        _, failure = NegotiationEngine.open_thread(old.id, abc["b"].id, "Hi")
        assert failure.kind == FailureKind.THREAD_VOID
        assert failure.details["state"] == THREAD_EXPIRED


# ── reply / mark_read ───────────────────────────────────────────────────────


class TestReply:
    def test_reply_swaps_sender_and_prefixes_subject(self, abc):
        tid = _open(abc["listing"], abc["b"])
        msg, failure = NegotiationEngine.reply(tid, abc["a"].id, "Sure, when?")

        assert failure is None
        assert msg.thread_id == tid
        assert msg.sender_org_id == abc["a"].id
        assert msg.recipient_org_id == abc["b"].id
        assert msg.subject.startswith("Re: Interested in")

        again, _ = NegotiationEngine.reply(tid, abc["b"].id, "Monday")
        assert again.subject == msg.subject
        assert again.recipient_org_id == abc["a"].id

    def test_reply_does_not_mark_previous_read(self, abc):
        tid = _open(abc["listing"], abc["b"])
        NegotiationEngine.reply(tid, abc["a"].id, "Sure")
        assert db.session.get(Message, tid).read_at is None

    def test_outsider_cannot_reply(self, abc):
        tid = _open(abc["listing"], abc["b"])
        msg, failure = NegotiationEngine.reply(tid, abc["c"].id, "Me too")
        assert msg is None
        assert failure.kind == FailureKind.NOT_PARTICIPANT
        assert Message.query.count() == 1

    def test_reply_to_missing_thread(self, abc):
        _, failure = NegotiationEngine.reply(999, abc["a"].id, "Hi")
        assert failure.kind == FailureKind.NOT_FOUND

    def test_reply_after_window_elapsed_is_void(self, abc, make_listing):
        listing = make_listing(
            abc["a"], valid_from=_today() - timedelta(days=10), valid_to=_today() - timedelta(days=5),
        )
        past = datetime.now(timezone.utc) - timedelta(days=7)
        msg, failure = NegotiationEngine.open_thread(listing.id, abc["b"].id, "Hi", now=past)
        assert failure is None

        _, failure = NegotiationEngine.reply(msg.thread_id, abc["a"].id, "Too late")
        assert failure.kind == FailureKind.THREAD_VOID
        assert failure.details["state"] == THREAD_EXPIRED


class TestMarkRead:
    def test_recipient_marks_once(self, abc):
        tid = _open(abc["listing"], abc["b"])
        first, failure = NegotiationEngine.mark_read(tid, abc["a"].id)
        assert failure is None
        stamped = first.read_at
        assert stamped is not None

        second, failure = NegotiationEngine.mark_read(tid, abc["a"].id)
        assert failure is None
        assert second.read_at == stamped

    def test_sender_cannot_mark_read(self, abc):
        tid = _open(abc["listing"], abc["b"])
        _, failure = NegotiationEngine.mark_read(tid, abc["b"].id)
        assert failure.kind == FailureKind.FORBIDDEN
        assert db.session.get(Message, tid).read_at is None

    def test_missing_message(self, abc):
        _, failure = NegotiationEngine.mark_read(12345, abc["a"].id)
        assert failure.kind == FailureKind.NOT_FOUND


# ── award ───────────────────────────────────────────────────────────────────


class TestAward:
    def test_award_reserves_marks_read_and_discloses(self, abc):
        tid = _open(abc["listing"], abc["b"])

        listing, failure = NegotiationEngine.award(tid, abc["a"].id)

        assert failure is None
        assert listing.state == STATE_RESERVED
        assert listing.reserved_by_org_id == abc["b"].id
        assert db.session.get(Message, tid).read_at is not None
        assert DisclosureLedger.counterpart_real_contact(tid, abc["b"].id)["company_name"] == "Alpha AS"
        assert DisclosureLedger.counterpart_real_contact(tid, abc["a"].id)["company_name"] == "Bravo AS"

    def test_award_marks_only_latest_unread_to_owner(self, abc):
        tid = _open(abc["listing"], abc["b"], "first")
        NegotiationEngine.reply(tid, abc["a"].id, "question")
        latest, _ = NegotiationEngine.reply(tid, abc["b"].id, "answer")

        NegotiationEngine.award(tid, abc["a"].id)

        assert db.session.get(Message, latest.id).read_at is not None
        assert db.session.get(Message, tid).read_at is None

    def test_award_sends_email_with_owner_contact(self, abc):
        tid = _open(abc["listing"], abc["b"])
        NegotiationEngine.award(tid, abc["a"].id)

        log = EmailLog.query.filter_by(category="award").one()
        assert log.recipient_email == abc["b"].contact_email
        assert log.thread_id == tid
        assert log.status == "sent"
        assert "Interested in available staffing" in log.subject

    def test_email_failure_does_not_undo_award(self, app, abc, monkeypatch):
        tid = _open(abc["listing"], abc["b"])
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.example.invalid")
        with patch(
            "marketplace.services.email_service.EmailService._send_smtp",
            side_effect=smtplib.SMTPException("relay refused"),
        ):
            listing, failure = NegotiationEngine.award(tid, abc["a"].id)

        assert failure is None
        assert db.session.get(Listing, listing.id).state == STATE_RESERVED
        assert DisclosureGrant.query.filter_by(thread_id=tid).count() == 1
        assert EmailLog.query.filter_by(category="award").one().status == "failed"

    def test_email_log_store_fault_does_not_fail_award(self, abc):
        tid = _open(abc["listing"], abc["b"])
        with patch(
            "marketplace.services.negotiation_service.EmailService.send_from_template",
            side_effect=OperationalError("INSERT INTO email_logs", {}, Exception("connection lost")),
        ):
            listing, failure = NegotiationEngine.award(tid, abc["a"].id)

        assert failure is None
        assert db.session.get(Listing, listing.id).state == STATE_RESERVED
        assert DisclosureGrant.query.filter_by(thread_id=tid).count() == 1
        assert EmailLog.query.filter_by(category="award").count() == 0

    def test_only_owner_may_award(self, abc):
        tid = _open(abc["listing"], abc["b"])
        _, failure = NegotiationEngine.award(tid, abc["b"].id)
        assert failure.kind == FailureKind.FORBIDDEN
        assert db.session.get(Listing, abc["listing"].id).state == STATE_OPEN

    def test_stranger_is_not_participant(self, abc):
        tid = _open(abc["listing"], abc["b"])
        _, failure = NegotiationEngine.award(tid, abc["c"].id)
        assert failure.kind == FailureKind.NOT_PARTICIPANT

    def test_retry_after_success_mutates_nothing(self, abc):
        tid = _open(abc["listing"], abc["b"])
        NegotiationEngine.award(tid, abc["a"].id)
        _, failure = NegotiationEngine.award(tid, abc["a"].id)

        assert failure.kind == FailureKind.ALREADY_RESERVED
        assert DisclosureGrant.query.count() == 1
        assert EmailLog.query.filter_by(category="award").count() == 1

    def test_award_on_elapsed_listing_is_void(self, abc, make_listing):
        listing = make_listing(
            abc["a"], valid_from=_today() - timedelta(days=10), valid_to=_today() - timedelta(days=5),
        )
        past = datetime.now(timezone.utc) - timedelta(days=7)
        msg, _ = NegotiationEngine.open_thread(listing.id, abc["b"].id, "Hi", now=past)

        _, failure = NegotiationEngine.award(msg.thread_id, abc["a"].id)
        assert failure.kind == FailureKind.THREAD_VOID
        assert db.session.get(Listing, listing.id).state == STATE_OPEN
        assert DisclosureGrant.query.count() == 0


# ── Three-party scenario ────────────────────────────────────────────────────


def test_owner_awards_one_of_two_contenders(abc):
    """A lists, B and C both negotiate, A awards B."""
    a, b, c, listing = abc["a"], abc["b"], abc["c"], abc["listing"]
    tid_b = _open(listing, b, "B here")
    tid_c = _open(listing, c, "C here")
    NegotiationEngine.reply(tid_b, a.id, "Tell me more, B")
    NegotiationEngine.reply(tid_c, a.id, "Tell me more, C")
    NegotiationEngine.reply(tid_b, b.id, "Available Monday")
    NegotiationEngine.reply(tid_c, c.id, "Available Tuesday")

    # Neither contender learns anything before the award
    view_b, _ = NegotiationEngine.get_thread(tid_b, b.id)
    assert view_b["counterpart"]["handle"] == a.handle
    assert view_b["counterpart"]["contact"] is None

    listing_after, failure = NegotiationEngine.award(tid_b, a.id)
    assert failure is None
    assert listing_after.reserved_by_org_id == b.id

    # B and A see each other
    view_b, _ = NegotiationEngine.get_thread(tid_b, b.id)
    assert view_b["state"] == THREAD_AWARDED
    assert view_b["counterpart"]["contact"]["company_name"] == "Alpha AS"
    view_a, _ = NegotiationEngine.get_thread(tid_b, a.id)
    assert view_a["counterpart"]["contact"]["company_name"] == "Bravo AS"

    # C's thread is void and discloses nothing
    view_c, _ = NegotiationEngine.get_thread(tid_c, c.id)
    assert view_c["state"] == THREAD_VOID
    assert view_c["counterpart"]["contact"] is None
    assert view_c["can_reply"] is False
    assert len(view_c["messages"]) == 3

    _, failure = NegotiationEngine.reply(tid_c, c.id, "Still interested?")
    assert failure.kind == FailureKind.THREAD_VOID
    _, failure = NegotiationEngine.award(tid_c, a.id)
    assert failure.kind == FailureKind.ALREADY_RESERVED
    assert DisclosureLedger.counterpart_real_contact(tid_c, a.id) is None
    # The failed award marked nothing read on C's thread
    unread = Message.query.filter_by(thread_id=tid_c, recipient_org_id=a.id).all()
    assert unread and all(m.read_at is None for m in unread)

    # The awarded pair can keep talking
    msg, failure = NegotiationEngine.reply(tid_b, b.id, "See you Monday")
    assert failure is None
    assert msg.recipient_org_id == a.id

    # Marketplace no longer shows the listing
    assert ListingStore.list_open_for_marketplace(_today()) == []
    assert [l.id for l in ListingStore.list_by_reserver(b.id)] == [listing.id]


# ── Concurrent awards ───────────────────────────────────────────────────────


def test_concurrent_awards_reserve_exactly_once(make_org, make_listing, monkeypatch, tmp_path):
    """Six threads award six contenders on one listing; one wins, five lose cleanly."""
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'race.db'}")
    race_app = create_app("testing")
    contenders = 6

    with race_app.app_context():
        owner = make_org("Owner")
        listing = make_listing(owner, descriptor="One crane operator")
        thread_ids = [_open(listing, make_org()) for _ in range(contenders)]
        owner_id, listing_id = owner.id, listing.id
        db.session.remove()

    barrier = threading.Barrier(contenders)
    results = []
    lock = threading.Lock()

    def _award(thread_id):
        with race_app.app_context():
            barrier.wait()
            try:
                _, failure = NegotiationEngine.award(thread_id, owner_id, notify=False)
                outcome = "ok" if failure is None else failure.kind
            except Exception as exc:
                outcome = type(exc).__name__
            finally:
                db.session.remove()
            with lock:
                results.append(outcome)

    workers = [threading.Thread(target=_award, args=(tid,)) for tid in thread_ids]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert sorted(results) == ["already_reserved"] * (contenders - 1) + ["ok"]
    with race_app.app_context():
        reserved = db.session.get(Listing, listing_id)
        assert reserved.state == STATE_RESERVED
        assert reserved.reserved_by_org_id in {
            db.session.get(ThreadIndex, tid).initiator_org_id for tid in thread_ids
        }
        assert DisclosureGrant.query.count() == 1
        db.session.remove()
        db.engine.dispose()


# ── Read views ──────────────────────────────────────────────────────────────


class TestReadViews:
    def test_get_thread_orders_messages_and_hides_from_outsiders(self, abc):
        tid = _open(abc["listing"], abc["b"], "one")
        NegotiationEngine.reply(tid, abc["a"].id, "two")

        view, failure = NegotiationEngine.get_thread(tid, abc["a"].id)
        assert failure is None
        assert [m["body"] for m in view["messages"]] == ["one", "two"]
        assert view["state"] == THREAD_OPEN
        assert view["can_award"] is True
        assert view["counterpart"] == {
            "id": abc["b"].id, "handle": abc["b"].handle, "contact": None,
        }

        _, failure = NegotiationEngine.get_thread(tid, abc["c"].id)
        assert failure.kind == FailureKind.NOT_PARTICIPANT

    def test_initiator_cannot_award_in_view(self, abc):
        tid = _open(abc["listing"], abc["b"])
        view, _ = NegotiationEngine.get_thread(tid, abc["b"].id)
        assert view["can_award"] is False

    def test_inbox_latest_message_per_thread(self, abc, make_listing):
        second = make_listing(abc["a"], descriptor="Scaffolding")
        tid_1 = _open(abc["listing"], abc["b"], "about electricians")
        tid_2 = _open(second, abc["b"], "about scaffolding")
        NegotiationEngine.reply(tid_1, abc["a"].id, "latest on electricians")

        entries, failure = NegotiationEngine.inbox(abc["b"].id)
        assert failure is None
        assert [e["thread_id"] for e in entries] == [tid_1, tid_2]
        assert entries[0]["latest_message"]["body"] == "latest on electricians"
        assert entries[0]["unread"] is True
        assert entries[1]["unread"] is False
        assert entries[0]["counterpart"]["display_name"] == abc["a"].handle

        owner_entries, _ = NegotiationEngine.inbox(abc["a"].id)
        assert {e["thread_id"] for e in owner_entries} == {tid_1, tid_2}
        assert next(e for e in owner_entries if e["thread_id"] == tid_2)["unread"] is True

    def test_inbox_shows_company_name_after_award(self, abc):
        tid = _open(abc["listing"], abc["b"])
        NegotiationEngine.award(tid, abc["a"].id)

        entries, _ = NegotiationEngine.inbox(abc["b"].id)
        assert entries[0]["counterpart"]["display_name"] == "Alpha AS"
        assert entries[0]["state"] == THREAD_AWARDED

    def test_inbox_empty_for_new_org(self, make_org):
        entries, failure = NegotiationEngine.inbox(make_org().id)
        assert failure is None
        assert entries == []
