"""Standardised API error responses.

Usage
-----
    from marketplace.utils.errors import api_error, failure_response, E

    return api_error(E.NOT_FOUND, "Listing not found")
    return api_error(E.VALIDATION_REQUIRED, "body is required")
    return failure_response(failure)
"""

from __future__ import annotations

from flask import jsonify

from marketplace.core.failures import Failure, FailureKind


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • NEGOTIATION_ prefix for negotiation-protocol outcomes
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Authentication – HTTP 401
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500 / 503
    STORE_UNAVAILABLE = "ERR_STORE_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"

    # Negotiation protocol
    NEGOTIATION_NOT_PARTICIPANT = "NEGOTIATION_NOT_PARTICIPANT"
    NEGOTIATION_SELF_CONTACT = "NEGOTIATION_SELF_CONTACT"
    NEGOTIATION_DUPLICATE_THREAD = "NEGOTIATION_DUPLICATE_THREAD"
    NEGOTIATION_THREAD_VOID = "NEGOTIATION_THREAD_VOID"
    NEGOTIATION_ALREADY_RESERVED = "NEGOTIATION_ALREADY_RESERVED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHENTICATED: 401,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.STORE_UNAVAILABLE: 503,
    E.INTERNAL: 500,
    E.NEGOTIATION_NOT_PARTICIPANT: 403,
    E.NEGOTIATION_SELF_CONTACT: 422,
    E.NEGOTIATION_DUPLICATE_THREAD: 409,
    E.NEGOTIATION_THREAD_VOID: 409,
    E.NEGOTIATION_ALREADY_RESERVED: 409,
}

# FailureKind → error code
_FAILURE_CODES: dict[str, str] = {
    FailureKind.NOT_FOUND: E.NOT_FOUND,
    FailureKind.FORBIDDEN: E.FORBIDDEN,
    FailureKind.NOT_PARTICIPANT: E.NEGOTIATION_NOT_PARTICIPANT,
    FailureKind.SELF_CONTACT: E.NEGOTIATION_SELF_CONTACT,
    FailureKind.DUPLICATE_THREAD: E.NEGOTIATION_DUPLICATE_THREAD,
    FailureKind.THREAD_VOID: E.NEGOTIATION_THREAD_VOID,
    FailureKind.ALREADY_RESERVED: E.NEGOTIATION_ALREADY_RESERVED,
    FailureKind.CONFLICT: E.CONFLICT_STATE,
    FailureKind.VALIDATION: E.VALIDATION_INVALID,
}

# Copy shown instead of an error banner for informational outcomes
_NOTICES: dict[str, str] = {
    FailureKind.ALREADY_RESERVED: "This opportunity was already filled.",
    FailureKind.THREAD_VOID: "This opportunity is no longer available.",
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    extra: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, ids).
    extra : dict, optional
        Additional top-level keys merged into the body.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details
    if extra:
        body.update(extra)

    return jsonify(body), http_status


def failure_response(failure: Failure):
    """Translate a service ``Failure`` into a JSON response.

    ``already_reserved`` and ``thread_void`` are flagged ``informational``
    so the UI renders a neutral "already filled" state.
    """
    code = _FAILURE_CODES[failure.kind]
    extra = {"kind": failure.kind, "informational": failure.informational}
    if failure.informational:
        extra["notice"] = _NOTICES[failure.kind]
    return api_error(code, str(failure.message), details=failure.details, extra=extra)
