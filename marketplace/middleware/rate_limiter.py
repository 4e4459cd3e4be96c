"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in marketplace/__init__.py with no default
limits; this module applies granular limits per route category, keyed by
the authenticated user where there is one.

Usage:
    from marketplace.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "300/minute"


def rate_limit_key():
    """Dynamic rate limit key: user id if authenticated, else remote IP."""
    user_id = getattr(g, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per user, else per remote IP):
        - Negotiation (threads / messages / award):  60/minute
        - Organizations:                              60/minute
        - Listings:                                  300/minute
        - Health check, event stream:                exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("thread_bp", "organization_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("listing_bp")
    if bp:
        limiter.limit(READ_LIMIT, key_func=rate_limit_key)(bp)

    for bp_name in ("health_bp", "events_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — negotiation: %s, listings: %s", WRITE_LIMIT, READ_LIMIT
    )
