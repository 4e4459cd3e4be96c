"""
Typed outcomes for marketplace operations.

Why this module exists:
  Losing a reservation race, replying on a thread whose listing went to
  someone else, or contacting your own listing are expected, frequent
  outcomes of the negotiation protocol. Services return them as values:

      listing, failure = ListingStore.create(...)
      if failure:
          return failure_response(failure)

  Exceptions are reserved for infrastructure faults. ``StoreUnavailableError``
  is the only one the service layer raises on purpose; the app factory maps
  it to HTTP 503 so callers can retry with backoff.
"""

from __future__ import annotations

from dataclasses import dataclass, field


class FailureKind:
    """Closed set of recoverable failure kinds."""

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    NOT_PARTICIPANT = "not_participant"
    SELF_CONTACT = "self_contact"
    DUPLICATE_THREAD = "duplicate_thread"
    THREAD_VOID = "thread_void"
    ALREADY_RESERVED = "already_reserved"
    CONFLICT = "conflict"
    VALIDATION = "validation"

    ALL = frozenset({
        NOT_FOUND, FORBIDDEN, NOT_PARTICIPANT, SELF_CONTACT, DUPLICATE_THREAD,
        THREAD_VOID, ALREADY_RESERVED, CONFLICT, VALIDATION,
    })

    # Rendered as "this opportunity was already filled", not as an error
    INFORMATIONAL = frozenset({THREAD_VOID, ALREADY_RESERVED})


@dataclass(frozen=True)
class Failure:
    """A recoverable, typed failure returned by a service operation.

    Args:
        kind: One of the ``FailureKind`` constants.
        message: Human-readable explanation for developers / UI.
        details: Optional field-level breakdown (validation) or context ids.
    """

    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in FailureKind.ALL:
            raise ValueError(f"Unknown failure kind: {self.kind!r}")

    @property
    def informational(self) -> bool:
        return self.kind in FailureKind.INFORMATIONAL

    # ── Constructors ──────────────────────────────────────────────────

    @classmethod
    def not_found(cls, resource: str, resource_id=None) -> "Failure":
        msg = resource
        if resource_id is not None:
            msg += f" id={resource_id}"
        return cls(FailureKind.NOT_FOUND, f"{msg} not found")

    @classmethod
    def validation(cls, message: str, details: dict | None = None) -> "Failure":
        return cls(FailureKind.VALIDATION, message, details or {})


class StoreUnavailableError(Exception):
    """Raised when the datastore is unreachable or a statement timed out.

    This is the only transient failure in the system; callers may retry the
    whole request with backoff. Maps to HTTP 503.
    """

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        msg = f"Datastore unavailable during {operation}"
        if cause is not None:
            msg += f": {cause.__class__.__name__}"
        super().__init__(msg)
