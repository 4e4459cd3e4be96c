"""
Member Resource Marketplace
Negotiation Engine — thread protocol and award transition.

States of a (listing, organization pair) negotiation, observed through its
thread:

    uninitiated ──open_thread──▶ open ──award──▶ awarded
                                  │
                                  ├── listing awarded to another pair ──▶ void
                                  └── validity window elapsed ──────────▶ expired

Rules enforced here (not in blueprints):
    - An organization may not contact its own listing.
    - One thread per (listing, initiator); a second open_thread is rejected
      and the caller is expected to reply instead.
    - Only the two parties of a thread may reply; only the recipient may
      mark a message read.
    - Only the listing owner may award, and only from the open state.
    - Replies on void or expired threads are rejected so a losing thread
      cannot keep implying an active negotiation. History stays readable.

Award is one transaction whose commit point is the listing's atomic
conditional reservation. If the reservation loses, the transaction is
rolled back: no read marks, no disclosure grant, no email.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from marketplace.core.failures import Failure, FailureKind
from marketplace.models import db
from marketplace.models.listing import CATEGORY_LABELS, STATE_CLOSED, STATE_OPEN, STATE_RESERVED, Listing
from marketplace.models.message import Message, ThreadIndex
from marketplace.models.organization import Organization
from marketplace.services import relay
from marketplace.services.disclosure_service import DisclosureLedger
from marketplace.services.email_service import EmailService
from marketplace.services.helpers.store_guard import TRANSIENT_ERRORS, store_operation
from marketplace.services.listing_service import ListingStore

logger = logging.getLogger(__name__)

THREAD_OPEN = "open"
THREAD_AWARDED = "awarded"
THREAD_VOID = "void"
THREAD_EXPIRED = "expired"


def _now(now=None):
    return now or datetime.now(timezone.utc)


def thread_state(index: ThreadIndex, listing: Listing, now=None) -> str:
    """Derive the negotiation state of a thread from its listing."""
    if listing.state == STATE_RESERVED:
        return THREAD_AWARDED if listing.reserved_by_org_id == index.initiator_org_id else THREAD_VOID
    if listing.state == STATE_CLOSED:
        return THREAD_VOID
    if listing.is_expired(_now(now)):
        return THREAD_EXPIRED
    return THREAD_OPEN


def _void_failure(state, thread_id):
    if state == THREAD_EXPIRED:
        msg = "The listing's validity window has elapsed"
    else:
        msg = "The listing was awarded to another organization"
    return Failure(FailureKind.THREAD_VOID, msg, {"thread_id": thread_id, "state": state})


def _clean_body(body):
    """Return ``(text, None)`` or ``(None, Failure)`` for a message body payload."""
    if body is not None and not isinstance(body, str):
        return None, Failure.validation("Message body must be a string", {"body": "must be a string"})
    body = (body or "").strip()
    if not body:
        return None, Failure.validation("Message body is required", {"body": "is required"})
    return body, None


def _message_event(action, msg: Message):
    return relay.make_event(
        relay.ENTITY_MESSAGE, action,
        org_ids=[msg.sender_org_id, msg.recipient_org_id],
        listing_id=msg.listing_id, thread_id=msg.thread_id,
    )


def _latest_message_subquery(thread_ids_query):
    """Subquery returning max(message.id) per thread for the given threads."""
    return (
        select(func.max(Message.id).label("max_id"))
        .where(Message.thread_id.in_(thread_ids_query))
        .group_by(Message.thread_id)
        .subquery()
    )


class NegotiationEngine:
    """Stateless service class for negotiation threads."""

    # ── Thread lifecycle ──────────────────────────────────────────────────

    @staticmethod
    @store_operation("negotiation.open_thread")
    def open_thread(listing_id, from_org_id, body, *, subject=None, now=None):
        """
        Contact a listing owner: create the first message of a new thread.

        Returns:
            (Message, None): the first message; its id is the thread id.
            (None, Failure): NOT_FOUND, SELF_CONTACT, VALIDATION,
            DUPLICATE_THREAD, ALREADY_RESERVED or THREAD_VOID.
        """
        listing = db.session.get(Listing, listing_id)
        if listing is None:
            return None, Failure.not_found("Listing", listing_id)
        if db.session.get(Organization, from_org_id) is None:
            return None, Failure.not_found("Organization", from_org_id)
        if from_org_id == listing.owner_org_id:
            return None, Failure(
                FailureKind.SELF_CONTACT, "An organization cannot contact its own listing",
                {"listing_id": listing_id},
            )

        body, failure = _clean_body(body)
        if failure:
            return None, failure
        if subject is not None and not isinstance(subject, str):
            return None, Failure.validation("Subject must be a string", {"subject": "must be a string"})

        existing = ThreadIndex.query.filter_by(
            listing_id=listing_id, initiator_org_id=from_org_id,
        ).first()
        if existing is not None:
            return None, Failure(
                FailureKind.DUPLICATE_THREAD,
                "A thread already exists for this listing; reply to it instead",
                {"thread_id": existing.thread_id},
            )

        if listing.state != STATE_OPEN:
            return None, Failure(
                FailureKind.ALREADY_RESERVED, "The listing is no longer open",
                {"listing_id": listing_id, "state": listing.state},
            )
        if listing.is_expired(_now(now)):
            return None, Failure(
                FailureKind.THREAD_VOID, "The listing's validity window has elapsed",
                {"listing_id": listing_id, "state": THREAD_EXPIRED},
            )

        if not (subject or "").strip():
            label = CATEGORY_LABELS.get(listing.category, listing.category)
            subject = f"Interested in {label}: {listing.descriptor}"

        msg = Message(
            listing_id=listing_id,
            sender_org_id=from_org_id,
            recipient_org_id=listing.owner_org_id,
            subject=subject.strip()[:400],
            body=body,
            created_at=_now(now),
        )
        try:
            db.session.add(msg)
            db.session.flush()
            msg.thread_id = msg.id
            db.session.add(ThreadIndex(
                thread_id=msg.id,
                listing_id=listing_id,
                initiator_org_id=from_org_id,
                recipient_org_id=listing.owner_org_id,
            ))
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            existing = ThreadIndex.query.filter_by(
                listing_id=listing_id, initiator_org_id=from_org_id,
            ).first()
            return None, Failure(
                FailureKind.DUPLICATE_THREAD,
                "A thread already exists for this listing; reply to it instead",
                {"thread_id": existing.thread_id if existing else None},
            )

        relay.stage(db.session, _message_event("created", msg))
        db.session.commit()

        logger.info(
            "Thread opened",
            extra={"thread_id": msg.id, "listing_id": listing_id, "org_id": from_org_id},
        )
        return msg, None

    @staticmethod
    @store_operation("negotiation.reply")
    def reply(thread_id, from_org_id, body, *, now=None):
        """
        Append a message to an existing thread.

        Sender and recipient are derived from which side is replying.
        Replying does not mark earlier messages read.

        Returns:
            (Message, None) on success.
            (None, Failure): NOT_FOUND, NOT_PARTICIPANT, VALIDATION or THREAD_VOID.
        """
        index = db.session.get(ThreadIndex, thread_id)
        if index is None:
            return None, Failure.not_found("Thread", thread_id)
        if from_org_id not in index.participants():
            return None, Failure(
                FailureKind.NOT_PARTICIPANT, "Only the two parties of a thread may reply",
                {"thread_id": thread_id},
            )

        body, failure = _clean_body(body)
        if failure:
            return None, failure

        listing = db.session.get(Listing, index.listing_id)
        state = thread_state(index, listing, now)
        if state in (THREAD_VOID, THREAD_EXPIRED):
            logger.info(
                "Reply rejected on %s thread", state,
                extra={"thread_id": thread_id, "org_id": from_org_id},
            )
            return None, _void_failure(state, thread_id)

        first = db.session.get(Message, thread_id)
        subject = first.subject if first.subject.startswith("Re: ") else f"Re: {first.subject}"
        msg = Message(
            thread_id=thread_id,
            listing_id=index.listing_id,
            sender_org_id=from_org_id,
            recipient_org_id=index.counterpart_of(from_org_id),
            subject=subject[:400],
            body=body,
            created_at=_now(now),
        )
        db.session.add(msg)
        db.session.flush()
        relay.stage(db.session, _message_event("created", msg))
        db.session.commit()
        return msg, None

    @staticmethod
    @store_operation("negotiation.mark_read")
    def mark_read(message_id, reader_org_id, *, now=None):
        """
        Set ``read_at`` once. Idempotent for the recipient.

        Returns:
            (Message, None) on success or when already read.
            (None, Failure): NOT_FOUND or FORBIDDEN (reader is not the recipient).
        """
        msg = db.session.get(Message, message_id)
        if msg is None:
            return None, Failure.not_found("Message", message_id)
        if msg.recipient_org_id != reader_org_id:
            return None, Failure(
                FailureKind.FORBIDDEN, "Only the recipient may mark a message read",
                {"message_id": message_id},
            )
        if msg.read_at is not None:
            return msg, None

        if _set_read(message_id, _now(now)):
            relay.stage(db.session, _message_event("read", msg))
        db.session.commit()
        return db.session.get(Message, message_id, populate_existing=True), None

    # ── Award ─────────────────────────────────────────────────────────────

    @staticmethod
    @store_operation("negotiation.award")
    def award(thread_id, awarding_org_id, *, now=None, notify=True):
        """
        Reserve the listing to this thread's counterpart and disclose contacts.

        Steps, in one transaction:
            1. Listing reservation (atomic compare-and-set, the commit point).
            2. Mark the latest unread message addressed to the owner as read.
            3. Disclosure grant for the thread.
        After commit, best-effort award email to the counterpart.

        Returns:
            (Listing, None): the reserved listing.
            (None, Failure): NOT_FOUND, NOT_PARTICIPANT, FORBIDDEN,
            THREAD_VOID (expired) or ALREADY_RESERVED.
        """
        now = _now(now)
        index = db.session.get(ThreadIndex, thread_id)
        if index is None:
            return None, Failure.not_found("Thread", thread_id)
        if awarding_org_id not in index.participants():
            return None, Failure(
                FailureKind.NOT_PARTICIPANT, "Only a party to the thread may act on it",
                {"thread_id": thread_id},
            )

        listing = db.session.get(Listing, index.listing_id)
        if awarding_org_id != listing.owner_org_id:
            return None, Failure(
                FailureKind.FORBIDDEN, "Only the listing owner may award",
                {"thread_id": thread_id, "listing_id": listing.id},
            )
        if listing.state == STATE_OPEN and listing.is_expired(now):
            return None, _void_failure(THREAD_EXPIRED, thread_id)

        counterpart_id = index.initiator_org_id
        reserved, conflict = ListingStore.reserve(listing.id, counterpart_id, now=now)
        if conflict:
            db.session.rollback()
            logger.info(
                "Award lost reservation",
                extra={"thread_id": thread_id, "listing_id": listing.id, "org_id": awarding_org_id},
            )
            return None, Failure(
                FailureKind.ALREADY_RESERVED, "The listing was already reserved",
                {"thread_id": thread_id, "listing_id": listing.id},
            )

        incoming = (
            Message.query
            .filter(
                Message.thread_id == thread_id,
                Message.recipient_org_id == awarding_org_id,
                Message.read_at.is_(None),
            )
            .order_by(Message.id.desc())
            .first()
        )
        if incoming is not None and _set_read(incoming.id, now):
            relay.stage(db.session, _message_event("read", incoming))

        DisclosureLedger.grant(thread_id, awarding_org_id, counterpart_id)
        db.session.commit()

        logger.info(
            "Listing awarded",
            extra={"thread_id": thread_id, "listing_id": listing.id, "org_id": awarding_org_id},
        )

        if notify:
            try:
                _send_award_email(thread_id, reserved, awarding_org_id, counterpart_id)
            except TRANSIENT_ERRORS as exc:
                db.session.rollback()
                logger.error("Award email not recorded: %s", exc, extra={"thread_id": thread_id})
        return reserved, None

    # ── Read views ────────────────────────────────────────────────────────

    @staticmethod
    @store_operation("negotiation.get_thread")
    def get_thread(thread_id, viewer_org_id, *, now=None):
        """
        Thread history plus negotiation state for one of its parties.

        Counterpart identity is the pseudonymous handle; real contact data
        is included only through the disclosure ledger.
        """
        index = db.session.get(ThreadIndex, thread_id)
        if index is None:
            return None, Failure.not_found("Thread", thread_id)
        if viewer_org_id not in index.participants():
            return None, Failure(
                FailureKind.NOT_PARTICIPANT, "Only the two parties of a thread may read it",
                {"thread_id": thread_id},
            )

        listing = db.session.get(Listing, index.listing_id)
        state = thread_state(index, listing, now)
        counterpart = db.session.get(Organization, index.counterpart_of(viewer_org_id))
        messages = (
            Message.query.filter(Message.thread_id == thread_id).order_by(Message.id).all()
        )
        is_owner = viewer_org_id == listing.owner_org_id
        return {
            "thread_id": thread_id,
            "state": state,
            "listing": listing.to_dict(viewer_org_id),
            "counterpart": {
                **counterpart.to_public_dict(),
                "contact": DisclosureLedger.counterpart_real_contact(thread_id, viewer_org_id),
            },
            "messages": [m.to_dict() for m in messages],
            "can_reply": state in (THREAD_OPEN, THREAD_AWARDED),
            "can_award": is_owner and state == THREAD_OPEN,
        }, None

    @staticmethod
    @store_operation("negotiation.inbox")
    def inbox(org_id, *, now=None):
        """
        Latest message per thread the organization is party to, newest first.

        Each entry carries the counterpart's display name (handle, or the
        disclosed company name), an unread flag and the thread state.
        """
        thread_ids = select(ThreadIndex.thread_id).where(
            or_(ThreadIndex.initiator_org_id == org_id, ThreadIndex.recipient_org_id == org_id)
        )
        latest = _latest_message_subquery(thread_ids)
        latest_messages = (
            Message.query
            .filter(Message.id.in_(select(latest.c.max_id)))
            .order_by(Message.id.desc())
            .all()
        )
        unread_threads = {
            row[0] for row in db.session.execute(
                select(Message.thread_id).where(
                    Message.recipient_org_id == org_id,
                    Message.read_at.is_(None),
                    Message.thread_id.in_(thread_ids),
                ).distinct()
            )
        }

        entries = []
        for msg in latest_messages:
            index = db.session.get(ThreadIndex, msg.thread_id)
            listing = db.session.get(Listing, index.listing_id)
            counterpart = db.session.get(Organization, index.counterpart_of(org_id))
            contact = DisclosureLedger.counterpart_real_contact(msg.thread_id, org_id)
            entries.append({
                "thread_id": msg.thread_id,
                "listing_id": listing.id,
                "listing_descriptor": listing.descriptor,
                "state": thread_state(index, listing, now),
                "counterpart": {
                    **counterpart.to_public_dict(),
                    "display_name": contact["company_name"] if contact else counterpart.handle,
                },
                "latest_message": msg.to_dict(),
                "unread": msg.thread_id in unread_threads,
            })
        return entries, None


def _set_read(message_id, now) -> bool:
    """Conditional ``read_at`` update; True only for the call that set it."""
    result = db.session.execute(
        update(Message)
        .where(Message.id == message_id, Message.read_at.is_(None))
        .values(read_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _send_award_email(thread_id, listing, owner_org_id, counterpart_org_id):
    """Email the awarded counterpart the owner's now-disclosed contact record.

    Both addresses come from the disclosure ledger. Failures are recorded in
    EmailLog and logged; the award itself is already committed.
    """
    recipient = DisclosureLedger.counterpart_real_contact(thread_id, owner_org_id)
    owner = DisclosureLedger.counterpart_real_contact(thread_id, counterpart_org_id)
    if not recipient or not owner or not recipient.get("email"):
        logger.warning("Award email skipped: no disclosed contact", extra={"thread_id": thread_id})
        return None

    first = db.session.get(Message, thread_id)
    log = EmailService.send_from_template(
        to_email=recipient["email"],
        to_name=recipient["company_name"],
        template_name="offer_awarded",
        context={
            "recipient_name": recipient["company_name"] or "there",
            "subject": first.subject,
            "descriptor": listing.descriptor,
            "valid_from": listing.valid_from.isoformat(),
            "valid_to": listing.valid_to.isoformat(),
            "owner_company_name": owner["company_name"],
            "owner_email": owner["email"],
            "owner_phone": owner["phone"],
            "owner_address": owner["address"],
        },
        category="award",
        organization_id=counterpart_org_id,
        thread_id=thread_id,
    )
    db.session.commit()
    return log
