"""
Member Resource Marketplace
Listing Blueprint.

Endpoints:
    POST /api/v1/listings                 create a listing (caller is owner)
    GET  /api/v1/listings/marketplace     open, unexpired listings (?as_of=, ?grouped=1)
    GET  /api/v1/listings/mine            listings the caller owns
    GET  /api/v1/listings/reserved        listings reserved to the caller
    GET  /api/v1/listings/<id>            one listing

Every listing carries the owner's handle and ``is_mine``; real contact data
never appears here.
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, g, jsonify, request

from marketplace.blueprints import flag_arg, json_object, parse_iso_date
from marketplace.middleware.identity import require_organization
from marketplace.models.listing import CATEGORY_LABELS
from marketplace.services.listing_service import ListingStore
from marketplace.utils.errors import E, api_error, failure_response

logger = logging.getLogger(__name__)

listing_bp = Blueprint("listing_bp", __name__, url_prefix="/api/v1/listings")


def _serialize(listings):
    viewer = g.organization.id
    return [listing.to_dict(viewer) for listing in listings]


@listing_bp.route("", methods=["POST"])
@require_organization
def create_listing():
    data = json_object()
    tags = data.get("skill_tags")
    if tags is not None and not isinstance(tags, list):
        return api_error(E.VALIDATION_INVALID, "skill_tags must be a list")

    listing, failure = ListingStore.create(
        owner_org_id=g.organization.id,
        category=data.get("category"),
        descriptor=data.get("descriptor"),
        valid_from=parse_iso_date(data.get("valid_from")),
        valid_to=parse_iso_date(data.get("valid_to")),
        location=data.get("location", ""),
        notes=data.get("notes", ""),
        contact_info=data.get("contact_info", ""),
        skill_tags=tags,
        price=data.get("price"),
        price_kind=data.get("price_kind"),
    )
    if failure:
        return failure_response(failure)
    return jsonify(listing.to_dict(g.organization.id)), 201


@listing_bp.route("/marketplace", methods=["GET"])
@require_organization
def marketplace():
    """Open listings valid at ``as_of`` (default: today), newest first."""
    as_of = request.args.get("as_of")
    if as_of:
        as_of = parse_iso_date(as_of)
        if isinstance(as_of, str):
            return api_error(E.VALIDATION_INVALID, "as_of must be YYYY-MM-DD")
    else:
        as_of = datetime.now(timezone.utc)

    listings = ListingStore.list_open_for_marketplace(as_of)
    if flag_arg("grouped"):
        groups = ListingStore.group_by_category(listings)
        return jsonify({
            "groups": [
                {
                    "category": category,
                    "label": CATEGORY_LABELS.get(category, category),
                    "items": _serialize(items),
                }
                for category, items in groups.items()
            ],
            "total": len(listings),
        })
    return jsonify({"items": _serialize(listings), "total": len(listings)})


@listing_bp.route("/mine", methods=["GET"])
@require_organization
def my_listings():
    listings = ListingStore.list_by_owner(g.organization.id)
    return jsonify({"items": _serialize(listings), "total": len(listings)})


@listing_bp.route("/reserved", methods=["GET"])
@require_organization
def reserved_listings():
    listings = ListingStore.list_by_reserver(g.organization.id)
    return jsonify({"items": _serialize(listings), "total": len(listings)})


@listing_bp.route("/<listing_id>", methods=["GET"])
@require_organization
def get_listing(listing_id):
    listing = ListingStore.get(listing_id)
    if listing is None:
        return api_error(E.NOT_FOUND, "Listing not found")
    return jsonify(listing.to_dict(g.organization.id))
