"""
Member Resource Marketplace
Listing domain model.

Models:
    - Listing: an offer or request for staff, special skills or tools, with
      a validity window and a reservation state

State machine:
    open ──award──▶ reserved        (once, via atomic conditional update)
    closed                          (retained for audit; never re-opened)
"""

import uuid
from datetime import datetime, timezone

from marketplace.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

CATEGORY_OFFERING_STAFF = "offering_staff"
CATEGORY_REQUESTING_STAFF = "requesting_staff"
CATEGORY_OFFERING_SPECIAL_SKILL = "offering_special_skill"
CATEGORY_OFFERING_TOOL = "offering_tool"

LISTING_CATEGORIES = (
    CATEGORY_OFFERING_STAFF,
    CATEGORY_REQUESTING_STAFF,
    CATEGORY_OFFERING_SPECIAL_SKILL,
    CATEGORY_OFFERING_TOOL,
)

CATEGORY_LABELS = {
    CATEGORY_OFFERING_STAFF: "available staffing",
    CATEGORY_REQUESTING_STAFF: "staffing request",
    CATEGORY_OFFERING_SPECIAL_SKILL: "special skill",
    CATEGORY_OFFERING_TOOL: "special tooling",
}

PRICE_KINDS = frozenset({"hourly", "fixed", "negotiable"})

STATE_OPEN = "open"
STATE_RESERVED = "reserved"
STATE_CLOSED = "closed"
LISTING_STATES = frozenset({STATE_OPEN, STATE_RESERVED, STATE_CLOSED})

CURRENT_SCHEMA_VERSION = 2


class Listing(db.Model):
    """
    Resource listing posted by an organization.

    Business rules:
    - ``valid_from <= valid_to`` (checked by the store and by a DB constraint).
    - ``state`` moves ``open → reserved`` at most once, only through
      ``ListingStore.reserve``; ``reserved_by_org_id`` is set in the same
      statement.
    - Core terms are not editable after creation and rows are never deleted.
    - ``skill_tags`` only carries values for ``offering_special_skill``.
    """

    __tablename__ = "listings"
    __table_args__ = (
        db.CheckConstraint("valid_from <= valid_to", name="ck_listing_window"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    owner_org_id = db.Column(
        db.String(36), db.ForeignKey("organizations.id"), nullable=False, index=True,
    )
    category = db.Column(db.String(40), nullable=False, index=True)
    descriptor = db.Column(db.String(300), nullable=False)
    valid_from = db.Column(db.Date, nullable=False)
    valid_to = db.Column(db.Date, nullable=False, index=True)
    location = db.Column(db.String(200), default="")
    notes = db.Column(db.Text, default="")
    contact_info = db.Column(db.Text, default="", comment="Free text used for anonymized outreach")
    skill_tags = db.Column(db.JSON, default=list)

    # Legacy pricing attributes (optional)
    price = db.Column(db.Numeric(12, 2), nullable=True)
    price_kind = db.Column(db.String(20), nullable=True)

    # Reservation
    state = db.Column(db.String(20), nullable=False, default=STATE_OPEN, index=True)
    reserved_by_org_id = db.Column(
        db.String(36), db.ForeignKey("organizations.id"), nullable=True, index=True,
    )
    reserved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    schema_version = db.Column(db.Integer, nullable=False, default=CURRENT_SCHEMA_VERSION)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    owner = db.relationship("Organization", foreign_keys=[owner_org_id], lazy="joined")

    def is_expired(self, as_of):
        """True once the validity window has fully elapsed at ``as_of``."""
        day = as_of.date() if isinstance(as_of, datetime) else as_of
        return self.valid_to < day

    def to_dict(self, viewer_org_id=None):
        """Public projection. Carries the owner's handle, never contact data."""
        return {
            "id": self.id,
            "owner": self.owner.to_public_dict() if self.owner else {"id": self.owner_org_id},
            "category": self.category,
            "category_label": CATEGORY_LABELS.get(self.category, self.category),
            "descriptor": self.descriptor,
            "valid_from": self.valid_from.isoformat(),
            "valid_to": self.valid_to.isoformat(),
            "location": self.location or "",
            "notes": self.notes or "",
            "contact_info": self.contact_info or "",
            "skill_tags": list(self.skill_tags or []),
            "price": float(self.price) if self.price is not None else None,
            "price_kind": self.price_kind,
            "state": self.state,
            "reserved_by_org_id": (
                self.reserved_by_org_id
                if viewer_org_id is not None and viewer_org_id in (self.owner_org_id, self.reserved_by_org_id)
                else None
            ),
            "is_mine": viewer_org_id is not None and viewer_org_id == self.owner_org_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Listing {self.id[:8]} {self.category} {self.state}>"
