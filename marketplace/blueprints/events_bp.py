"""
Member Resource Marketplace
Event Stream Blueprint — server-sent events for the change relay.

Endpoint:
    GET /api/v1/events/stream    text/event-stream for the caller's organization

One subscription per connection multiplexes listing, message and disclosure
invalidations for the organization plus the public marketplace topic.
Each event is an invalidation (refetch the named entity); comments are sent
every RELAY_KEEPALIVE_SECONDS so proxies keep the connection open.
"""

import json
import logging

from flask import Blueprint, Response, current_app, g

from marketplace.middleware.identity import require_organization
from marketplace.services import relay

logger = logging.getLogger(__name__)

events_bp = Blueprint("events_bp", __name__, url_prefix="/api/v1/events")


def _format_event(evt):
    return f"id: {evt['event_id']}\nevent: {evt['entity']}\ndata: {json.dumps(evt)}\n\n"


def _stream(subscription, org_id, keepalive):
    logger.info("Event stream opened", extra={"org_id": org_id})
    try:
        yield ": connected\n\n"
        while True:
            evt = subscription.get(timeout=keepalive)
            if evt is None:
                yield ": keepalive\n\n"
                continue
            yield _format_event(evt)
    finally:
        subscription.close()
        logger.info("Event stream closed", extra={"org_id": org_id})


@events_bp.route("/stream", methods=["GET"])
@require_organization
def stream():
    org_id = g.organization.id
    keepalive = current_app.config.get("RELAY_KEEPALIVE_SECONDS", 15)
    subscription = relay.subscribe(org_id)
    return Response(
        _stream(subscription, org_id, keepalive),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
