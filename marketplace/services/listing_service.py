"""
Member Resource Marketplace
Listing Store.

Holds resource listings (offers and requests) and owns the one
concurrency-critical transition in the system: ``open → reserved``.

Design decisions:
    - ``reserve`` is a single conditional UPDATE keyed on ``state = 'open'``.
      The row count decides the winner; there is no read-then-write.
    - ``reserve`` does not commit. The negotiation engine uses it as the
      commit point of an award and decides whether the transaction lands.
    - Marketplace queries return every qualifying listing, including the
      caller's own. "Is this mine" is an annotation added at serialisation
      time (``Listing.to_dict(viewer_org_id)``), not an access rule.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import update

from marketplace.core.failures import Failure, FailureKind
from marketplace.models import db
from marketplace.models.listing import (
    CATEGORY_OFFERING_SPECIAL_SKILL,
    LISTING_CATEGORIES,
    PRICE_KINDS,
    STATE_OPEN,
    STATE_RESERVED,
    Listing,
)
from marketplace.models.organization import Organization
from marketplace.services import relay
from marketplace.services.helpers.store_guard import store_operation

logger = logging.getLogger(__name__)


def _as_day(as_of) -> date:
    if isinstance(as_of, datetime):
        return as_of.date()
    return as_of


def _clean_tags(tags) -> list[str]:
    seen: list[str] = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class ListingStore:
    """Stateless service class for listing operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    @store_operation("listing.create")
    def create(*, owner_org_id, category, descriptor, valid_from, valid_to,
               location="", notes="", contact_info="", skill_tags=None,
               price=None, price_kind=None):
        """
        Validate and persist a new open listing.

        Returns:
            (Listing, None) on success, (None, Failure) on validation failure.
        """
        errors = {}
        valid_from, valid_to = _as_day(valid_from), _as_day(valid_to)
        if not isinstance(category, str) or category not in LISTING_CATEGORIES:
            errors["category"] = f"must be one of: {', '.join(LISTING_CATEGORIES)}"
        texts = {"descriptor": descriptor, "location": location, "notes": notes, "contact_info": contact_info}
        for field, value in texts.items():
            if value is not None and not isinstance(value, str):
                errors[field] = "must be a string"
        descriptor = descriptor.strip() if isinstance(descriptor, str) else ""
        if not descriptor and "descriptor" not in errors:
            errors["descriptor"] = "is required"
        if not isinstance(valid_from, date):
            errors["valid_from"] = "must be a date"
        if not isinstance(valid_to, date):
            errors["valid_to"] = "must be a date"
        if skill_tags is not None and not isinstance(skill_tags, (list, tuple)):
            errors["skill_tags"] = "must be a list"
        if price_kind is not None and (not isinstance(price_kind, str) or price_kind not in PRICE_KINDS):
            errors["price_kind"] = f"must be one of: {', '.join(sorted(PRICE_KINDS))}"
        if price is not None:
            try:
                price = Decimal(str(price))
                if not price.is_finite():
                    raise InvalidOperation(price)
            except (InvalidOperation, ValueError):
                errors["price"] = "must be a number"
            else:
                if price < 0:
                    errors["price"] = "must not be negative"
        if errors:
            return None, Failure.validation("Invalid listing", errors)

        if valid_from > valid_to:
            return None, Failure.validation(
                "valid_from must be on or before valid_to",
                {"valid_from": valid_from.isoformat(), "valid_to": valid_to.isoformat()},
            )

        if db.session.get(Organization, owner_org_id) is None:
            return None, Failure.not_found("Organization", owner_org_id)

        listing = Listing(
            owner_org_id=owner_org_id,
            category=category,
            descriptor=descriptor,
            valid_from=valid_from,
            valid_to=valid_to,
            location=(location or "").strip(),
            notes=(notes or "").strip(),
            contact_info=(contact_info or "").strip(),
            skill_tags=_clean_tags(skill_tags) if category == CATEGORY_OFFERING_SPECIAL_SKILL else [],
            price=price,
            price_kind=price_kind,
            state=STATE_OPEN,
        )
        db.session.add(listing)
        db.session.flush()
        relay.stage(db.session, relay.make_event(
            relay.ENTITY_LISTING, "created",
            org_ids=[owner_org_id], listing_id=listing.id, public=True,
        ))
        db.session.commit()

        logger.info(
            "Listing created",
            extra={"listing_id": listing.id, "org_id": owner_org_id, "category": category},
        )
        return listing, None

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def get(listing_id):
        return db.session.get(Listing, listing_id)

    @staticmethod
    @store_operation("listing.list_open")
    def list_open_for_marketplace(as_of=None):
        """
        Open listings whose window ends at or after ``as_of``, newest first.

        Reserved and closed listings are excluded; elapsed listings are
        excluded without being mutated.
        """
        day = _as_day(as_of or datetime.now(timezone.utc))
        return (
            Listing.query
            .filter(Listing.state == STATE_OPEN, Listing.valid_to >= day)
            .order_by(Listing.created_at.desc(), Listing.id)
            .all()
        )

    @staticmethod
    @store_operation("listing.list_by_owner")
    def list_by_owner(org_id):
        return (
            Listing.query
            .filter(Listing.owner_org_id == org_id)
            .order_by(Listing.created_at.desc(), Listing.id)
            .all()
        )

    @staticmethod
    @store_operation("listing.list_by_reserver")
    def list_by_reserver(org_id):
        return (
            Listing.query
            .filter(Listing.reserved_by_org_id == org_id)
            .order_by(Listing.created_at.desc(), Listing.id)
            .all()
        )

    @staticmethod
    def group_by_category(listings):
        """Display projection: {category: [listing, ...]} in category order."""
        grouped = {category: [] for category in LISTING_CATEGORIES}
        for listing in listings:
            grouped.setdefault(listing.category, []).append(listing)
        return grouped

    # ── Reservation ───────────────────────────────────────────────────────

    @staticmethod
    @store_operation("listing.reserve")
    def reserve(listing_id, reserving_org_id, now=None):
        """
        Atomically move a listing from ``open`` to ``reserved``.

        Issues ``UPDATE listings SET state='reserved' ... WHERE id=:id AND
        state='open'``; exactly one concurrent caller sees rowcount 1.
        Does not commit.

        Returns:
            (Listing, None) when this call won the reservation.
            (None, Failure(CONFLICT)) when the listing was not open.
            (None, Failure(NOT_FOUND)) when the listing does not exist.
        """
        now = now or datetime.now(timezone.utc)
        result = db.session.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.state == STATE_OPEN)
            .values(state=STATE_RESERVED, reserved_by_org_id=reserving_org_id, reserved_at=now)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            listing = db.session.get(Listing, listing_id, populate_existing=True)
            if listing is None:
                return None, Failure.not_found("Listing", listing_id)
            logger.info(
                "Reservation conflict",
                extra={"listing_id": listing_id, "org_id": reserving_org_id, "state": listing.state},
            )
            return None, Failure(
                FailureKind.CONFLICT,
                f"Listing {listing_id} is {listing.state}, not open",
                {"listing_id": listing_id, "state": listing.state},
            )

        listing = db.session.get(Listing, listing_id, populate_existing=True)
        relay.stage(db.session, relay.make_event(
            relay.ENTITY_LISTING, "reserved",
            org_ids=[listing.owner_org_id, reserving_org_id], listing_id=listing_id, public=True,
        ))
        return listing, None
