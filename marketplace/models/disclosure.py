"""
Member Resource Marketplace
Disclosure ledger model.

Models:
    - DisclosureGrant: durable, symmetric fact that two organizations' real
      contact records are visible to each other within one thread
"""

from datetime import datetime, timezone

from marketplace.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class DisclosureGrant(db.Model):
    """
    Mutual disclosure grant for a thread.

    Business rules:
    - At most one grant per thread (unique ``thread_id``).
    - The pair is stored in canonical order (``org_low_id < org_high_id``)
      so (A, B) and (B, A) are the same fact.
    - Never revoked, never expires, never updated.
    """

    __tablename__ = "disclosure_grants"
    __table_args__ = (
        db.UniqueConstraint("thread_id", name="uq_disclosure_thread"),
    )

    id = db.Column(db.Integer, primary_key=True)
    thread_id = db.Column(db.Integer, db.ForeignKey("messages.id"), nullable=False)
    org_low_id = db.Column(db.String(36), db.ForeignKey("organizations.id"), nullable=False)
    org_high_id = db.Column(db.String(36), db.ForeignKey("organizations.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @staticmethod
    def canonical_pair(org_a, org_b):
        return (org_a, org_b) if org_a <= org_b else (org_b, org_a)

    def involves(self, org_id):
        return org_id in (self.org_low_id, self.org_high_id)

    def counterpart_of(self, org_id):
        if org_id == self.org_low_id:
            return self.org_high_id
        if org_id == self.org_high_id:
            return self.org_low_id
        return None

    def to_dict(self):
        return {
            "thread_id": self.thread_id,
            "org_ids": [self.org_low_id, self.org_high_id],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
