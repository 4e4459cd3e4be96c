"""
Member Resource Marketplace
Organization directory model.

Models:
    - Organization: one registered member entity per user identity, with a
      public pseudonymous handle and a private real contact record
"""

import uuid
from datetime import datetime, timezone

from marketplace.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


CONTACT_FIELDS = ("company_name", "email", "phone", "address")


class Organization(db.Model):
    """
    Registered member organization.

    Business rules:
    - ``handle`` is assigned at registration, unique and never reused.
    - ``user_id`` is the stable id from the external identity provider (1:1).
    - Rows are never deleted; historical threads keep referencing them.
    - The contact columns are private. Outside the owner's own profile they
      are only read through the disclosure ledger.
    """

    __tablename__ = "organizations"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    handle = db.Column(db.String(40), nullable=False, unique=True, index=True)
    name = db.Column(db.String(200), nullable=False)

    # Real contact record
    contact_company_name = db.Column(db.String(200), nullable=False)
    contact_email = db.Column(db.String(255), nullable=False)
    contact_phone = db.Column(db.String(50), default="")
    contact_address = db.Column(db.String(500), default="")

    verification_code = db.Column(db.String(12), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_verified(self):
        return self.verified_at is not None

    def contact_record(self):
        """Real contact record as a plain dict."""
        return {
            "company_name": self.contact_company_name,
            "email": self.contact_email,
            "phone": self.contact_phone or "",
            "address": self.contact_address or "",
        }

    def to_public_dict(self):
        return {"id": self.id, "handle": self.handle}

    def to_profile_dict(self):
        """Owner-only view: includes the real contact record."""
        return {
            "id": self.id,
            "handle": self.handle,
            "name": self.name,
            "contact": self.contact_record(),
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization {self.handle}>"
