"""
Legacy Listing Migration — schema version 1 → 2.

Version 1 rows live in the legacy ``resources`` table written by the
previous marketplace. They differ from the current ``listings`` schema:

Field Mapping:
    resources.id                      → listings.id (preserved)
    resources.company_id              → listings.owner_org_id
    resources.resource_type           → listings.category (renamed variants)
    resources.is_special              → listings.category when resource_type is missing
    resources.competence              → listings.descriptor
    resources.period_from/period_to   → listings.valid_from/valid_to (dates)
    resources.location                → listings.location
    resources.comments                → listings.notes
    resources.contact_info            → listings.contact_info
    resources.special_competencies    → listings.skill_tags (special skill only)
    resources.price / price_type      → listings.price / price_kind
    resources.is_taken                → listings.state ('reserved' or 'closed')
    resources.accepted_by_company_id  → listings.reserved_by_org_id
    resources.created_at              → listings.created_at

Idempotency:
    Rows whose id already exists in ``listings`` are skipped, so the
    migration is safe to re-run after a partial failure.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select, text

from marketplace.models import db
from marketplace.models.listing import (
    CATEGORY_OFFERING_SPECIAL_SKILL,
    CATEGORY_OFFERING_STAFF,
    CATEGORY_OFFERING_TOOL,
    CATEGORY_REQUESTING_STAFF,
    CURRENT_SCHEMA_VERSION,
    PRICE_KINDS,
    STATE_CLOSED,
    STATE_OPEN,
    STATE_RESERVED,
    Listing,
)
from marketplace.models.organization import Organization

logger = logging.getLogger(__name__)

LEGACY_TABLE = "resources"
_TABLE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# Legacy resource_type → category
_CATEGORY_MAP: dict[str, str] = {
    "available_staffing": CATEGORY_OFFERING_STAFF,
    "want_staffing": CATEGORY_REQUESTING_STAFF,
    "special_competence": CATEGORY_OFFERING_SPECIAL_SKILL,
    "special_tools": CATEGORY_OFFERING_TOOL,
}


class LegacyRecordError(ValueError):
    """A legacy row that cannot be expressed in the current schema."""


def _parse_day(value) -> date:
    """Coerce a legacy timestamp (ISO string or datetime) into a date."""
    if value is None or value == "":
        raise LegacyRecordError("missing period date")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip().replace(" ", "T").replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        try:
            return date.fromisoformat(raw[:10])
        except ValueError as exc:
            raise LegacyRecordError(f"unparseable date {value!r}") from exc


def _parse_dt(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        try:
            return datetime.fromisoformat(str(value).replace(" ", "T").replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def _parse_tags(value) -> list[str]:
    # SQLite/JSON exports store arrays as JSON text
    if isinstance(value, str):
        try:
            value = json.loads(value) if value.strip() else []
        except json.JSONDecodeError:
            value = value.split(",")
    tags = []
    for tag in value or []:
        tag = str(tag).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes")
    return bool(value)


def normalize_legacy_record(raw: dict) -> dict:
    """
    Translate one version-1 resource row into version-2 listing fields.

    Pure function: no database access.

    Raises:
        LegacyRecordError: required data is missing or malformed.
    """
    legacy_id = raw.get("id")
    if not legacy_id:
        raise LegacyRecordError("missing id")
    owner = raw.get("company_id")
    if not owner:
        raise LegacyRecordError("missing company_id")

    resource_type = raw.get("resource_type")
    if resource_type:
        category = _CATEGORY_MAP.get(resource_type)
        if category is None:
            raise LegacyRecordError(f"unknown resource_type {resource_type!r}")
    else:
        category = CATEGORY_OFFERING_SPECIAL_SKILL if _truthy(raw.get("is_special")) else CATEGORY_OFFERING_STAFF

    descriptor = str(raw.get("competence") or "").strip()
    if not descriptor:
        raise LegacyRecordError("missing competence")

    valid_from = _parse_day(raw.get("period_from"))
    valid_to = _parse_day(raw.get("period_to"))
    if valid_from > valid_to:
        raise LegacyRecordError("period_from is after period_to")

    price = raw.get("price")
    if price is not None and price != "":
        try:
            price = Decimal(str(price))
            if not price.is_finite():
                raise InvalidOperation(price)
        except InvalidOperation as exc:
            raise LegacyRecordError(f"invalid price {raw.get('price')!r}") from exc
    else:
        price = None
    price_kind = raw.get("price_type") or raw.get("price_kind")
    if price_kind not in PRICE_KINDS:
        price_kind = None

    state, reserved_by = STATE_OPEN, None
    if _truthy(raw.get("is_taken")):
        reserved_by = raw.get("accepted_by_company_id") or None
        # Taken without a recorded taker cannot be attributed to a pair
        state = STATE_RESERVED if reserved_by else STATE_CLOSED

    return {
        "id": str(legacy_id),
        "owner_org_id": str(owner),
        "category": category,
        "descriptor": descriptor[:300],
        "valid_from": valid_from,
        "valid_to": valid_to,
        "location": str(raw.get("location") or "").strip(),
        "notes": str(raw.get("comments") or "").strip(),
        "contact_info": str(raw.get("contact_info") or "").strip(),
        "skill_tags": (
            _parse_tags(raw.get("special_competencies"))
            if category == CATEGORY_OFFERING_SPECIAL_SKILL else []
        ),
        "price": price,
        "price_kind": price_kind,
        "state": state,
        "reserved_by_org_id": str(reserved_by) if reserved_by else None,
        "reserved_at": _parse_dt(raw.get("updated_at") or raw.get("created_at")) if reserved_by else None,
        "schema_version": CURRENT_SCHEMA_VERSION,
        "created_at": _parse_dt(raw.get("created_at")),
    }


def migrate_legacy_listings(dry_run: bool = False, table: str = LEGACY_TABLE) -> dict:
    """
    Copy every legacy row into ``listings``. Must run inside an app context.

    Args:
        dry_run: If True, roll back at the end instead of committing.
        table: Name of the legacy table.

    Returns:
        Stats dict: {"migrated": N, "skipped": N, "errors": N}

    Raises:
        ValueError: ``table`` is not a plain SQL identifier.
    """
    if not isinstance(table, str) or not _TABLE_NAME.fullmatch(table):
        raise ValueError(f"invalid legacy table name {table!r}")
    stats = {"migrated": 0, "skipped": 0, "errors": 0}

    conn = db.session.connection()
    if not sa_inspect(conn).has_table(table):
        logger.info("No legacy table %r found — nothing to migrate.", table)
        return stats

    quoted = conn.dialect.identifier_preparer.quote_identifier(table)
    legacy_rows = db.session.execute(text(f"SELECT * FROM {quoted}")).fetchall()
    if not legacy_rows:
        logger.info("No legacy listings found — nothing to migrate.")
        return stats
    logger.info("Found %d legacy listing(s) to process.", len(legacy_rows))

    already_migrated = set(db.session.scalars(select(Listing.id)))
    known_orgs = set(db.session.scalars(select(Organization.id)))

    for row in legacy_rows:
        row_dict = dict(row._mapping)
        if str(row_dict.get("id")) in already_migrated:
            stats["skipped"] += 1
            continue

        try:
            fields = normalize_legacy_record(row_dict)
        except LegacyRecordError as exc:
            logger.warning("Legacy listing %s not migrated: %s", row_dict.get("id"), exc)
            stats["errors"] += 1
            continue

        missing = [
            org_id for org_id in (fields["owner_org_id"], fields["reserved_by_org_id"])
            if org_id and org_id not in known_orgs
        ]
        if missing:
            logger.warning(
                "Legacy listing %s not migrated: unknown organization(s) %s",
                fields["id"], ", ".join(missing),
            )
            stats["errors"] += 1
            continue

        db.session.add(Listing(**fields))
        already_migrated.add(fields["id"])
        stats["migrated"] += 1

    if dry_run:
        db.session.rollback()
        logger.info("Dry run — rolled back %d listing(s).", stats["migrated"])
    else:
        db.session.commit()
        logger.info(
            "Legacy migration done: migrated=%d skipped=%d errors=%d",
            stats["migrated"], stats["skipped"], stats["errors"],
        )
    return stats
