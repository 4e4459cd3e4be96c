"""
Identity middleware — parses the Bearer token and resolves the caller.

Sets on ``flask.g`` for every API request:
    g.user_id       subject of a valid access token, else None
    g.organization  set by ``require_organization`` only

Route decorators:
    @require_user           401 unless a valid token was presented
    @require_organization   additionally 403 unless the user owns an organization
"""

import logging
from functools import wraps

import jwt as pyjwt
from flask import g, request

from marketplace.services.directory_service import OrganizationDirectory
from marketplace.services.token_service import decode_access_token
from marketplace.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip token parsing entirely
SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)

STREAM_PREFIX = "/api/v1/events/"


def init_identity_middleware(app):
    """Register identity middleware as a before_request hook."""

    @app.before_request
    def _parse_identity():
        g.user_id = None
        g.organization = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
        elif path.startswith(STREAM_PREFIX):
            # EventSource cannot send headers
            token = request.args.get("access_token", "")
        else:
            return
        if not token:
            return

        try:
            payload = decode_access_token(token)
            g.user_id = str(payload["sub"])
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token", extra={"path": path})
        except pyjwt.InvalidTokenError:
            logger.info("Invalid access token", extra={"path": path})


def require_user(fn):
    """Reject the request with 401 unless the caller is authenticated."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not getattr(g, "user_id", None):
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        return fn(*args, **kwargs)

    return wrapper


def require_organization(fn):
    """Resolve the caller's organization into ``g.organization`` or reject."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not getattr(g, "user_id", None):
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        org = OrganizationDirectory.resolve_user(g.user_id)
        if org is None:
            return api_error(
                E.FORBIDDEN, "Register an organization before using the marketplace",
                details={"register": "/api/v1/organizations"},
            )
        g.organization = org
        return fn(*args, **kwargs)

    return wrapper
