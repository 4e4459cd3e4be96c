"""
Member Resource Marketplace
Negotiation Blueprint — threads, messages, award and disclosure.

Endpoints:
    POST /api/v1/listings/<listing_id>/threads    contact a listing owner
    GET  /api/v1/threads/<thread_id>              history + state for a party
    POST /api/v1/threads/<thread_id>/messages     reply
    POST /api/v1/threads/<thread_id>/award        owner awards the listing
    GET  /api/v1/threads/<thread_id>/contact      counterpart contact (after award)
    POST /api/v1/messages/<message_id>/read       recipient marks read
    GET  /api/v1/inbox                            latest message per thread

All protocol rules live in NegotiationEngine; this module only maps
request payloads in and ``Failure`` values out.
"""

import logging

from flask import Blueprint, g, jsonify, request

from marketplace.blueprints import json_object
from marketplace.middleware.identity import require_organization
from marketplace.models import db
from marketplace.models.message import ThreadIndex
from marketplace.services.disclosure_service import DisclosureLedger
from marketplace.services.negotiation_service import NegotiationEngine
from marketplace.utils.errors import E, api_error, failure_response

logger = logging.getLogger(__name__)

thread_bp = Blueprint("thread_bp", __name__, url_prefix="/api/v1")


@thread_bp.route("/listings/<listing_id>/threads", methods=["POST"])
@require_organization
def open_thread(listing_id):
    data = json_object()
    msg, failure = NegotiationEngine.open_thread(
        listing_id, g.organization.id, data.get("body"), subject=data.get("subject"),
    )
    if failure:
        return failure_response(failure)
    return jsonify(msg.to_dict()), 201


@thread_bp.route("/threads/<int:thread_id>", methods=["GET"])
@require_organization
def get_thread(thread_id):
    view, failure = NegotiationEngine.get_thread(thread_id, g.organization.id)
    if failure:
        return failure_response(failure)
    return jsonify(view)


@thread_bp.route("/threads/<int:thread_id>/messages", methods=["POST"])
@require_organization
def reply(thread_id):
    data = json_object()
    msg, failure = NegotiationEngine.reply(thread_id, g.organization.id, data.get("body"))
    if failure:
        return failure_response(failure)
    return jsonify(msg.to_dict()), 201


@thread_bp.route("/threads/<int:thread_id>/award", methods=["POST"])
@require_organization
def award(thread_id):
    listing, failure = NegotiationEngine.award(thread_id, g.organization.id)
    if failure:
        return failure_response(failure)
    return jsonify({
        "listing": listing.to_dict(g.organization.id),
        "contact": DisclosureLedger.counterpart_real_contact(thread_id, g.organization.id),
    })


@thread_bp.route("/threads/<int:thread_id>/contact", methods=["GET"])
@require_organization
def counterpart_contact(thread_id):
    """Counterpart's real contact record; ``null`` until the thread is awarded."""
    index = db.session.get(ThreadIndex, thread_id)
    if index is None:
        return api_error(E.NOT_FOUND, "Thread not found")
    if g.organization.id not in index.participants():
        return api_error(E.NEGOTIATION_NOT_PARTICIPANT, "Only the two parties of a thread may read it")
    contact = DisclosureLedger.counterpart_real_contact(thread_id, g.organization.id)
    return jsonify({"thread_id": thread_id, "disclosed": contact is not None, "contact": contact})


@thread_bp.route("/messages/<int:message_id>/read", methods=["POST"])
@require_organization
def mark_read(message_id):
    msg, failure = NegotiationEngine.mark_read(message_id, g.organization.id)
    if failure:
        return failure_response(failure)
    return jsonify(msg.to_dict())


@thread_bp.route("/inbox", methods=["GET"])
@require_organization
def inbox():
    entries, failure = NegotiationEngine.inbox(g.organization.id)
    if failure:
        return failure_response(failure)
    return jsonify({
        "items": entries,
        "total": len(entries),
        "unread": sum(1 for entry in entries if entry["unread"]),
    })
