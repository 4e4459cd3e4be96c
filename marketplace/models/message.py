"""
Member Resource Marketplace
Negotiation thread models.

Models:
    - Message: one immutable message between two organizations about a listing
    - ThreadIndex: one row per (listing, initiator) so a second initial
      contact on the same listing by the same organization is rejected by
      the database, not just by a lookup
"""

from datetime import datetime, timezone

from marketplace.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Message(db.Model):
    """
    Message in a negotiation thread.

    A thread is identified by the id of its first message; that message
    carries its own id as ``thread_id``. Messages are never edited or
    deleted; ``read_at`` is set once by the recipient (or by an award).
    """

    __tablename__ = "messages"

    id = db.Column(db.Integer, primary_key=True)
    thread_id = db.Column(db.Integer, db.ForeignKey("messages.id"), nullable=True, index=True)
    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id"), nullable=False, index=True)
    sender_org_id = db.Column(
        db.String(36), db.ForeignKey("organizations.id"), nullable=False, index=True,
    )
    recipient_org_id = db.Column(
        db.String(36), db.ForeignKey("organizations.id"), nullable=False, index=True,
    )
    subject = db.Column(db.String(400), nullable=False)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_first(self):
        return self.thread_id == self.id

    @property
    def is_read(self):
        return self.read_at is not None

    def participants(self):
        return frozenset((self.sender_org_id, self.recipient_org_id))

    def to_dict(self):
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "listing_id": self.listing_id,
            "sender_org_id": self.sender_org_id,
            "recipient_org_id": self.recipient_org_id,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }

    def __repr__(self):
        return f"<Message {self.id} thread={self.thread_id}>"


class ThreadIndex(db.Model):
    """
    Uniqueness anchor for threads.

    ``(listing_id, initiator_org_id)`` is unique: the recipient is always the
    listing owner, so this pins the (listing, pair) to a single thread.
    """

    __tablename__ = "thread_index"
    __table_args__ = (
        db.UniqueConstraint("listing_id", "initiator_org_id", name="uq_thread_listing_initiator"),
    )

    thread_id = db.Column(db.Integer, db.ForeignKey("messages.id"), primary_key=True)
    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id"), nullable=False, index=True)
    initiator_org_id = db.Column(db.String(36), db.ForeignKey("organizations.id"), nullable=False)
    recipient_org_id = db.Column(db.String(36), db.ForeignKey("organizations.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def participants(self):
        return frozenset((self.initiator_org_id, self.recipient_org_id))

    def counterpart_of(self, org_id):
        if org_id == self.initiator_org_id:
            return self.recipient_org_id
        if org_id == self.recipient_org_id:
            return self.initiator_org_id
        return None
