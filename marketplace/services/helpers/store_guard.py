"""
Datastore fault boundary for service functions.

Why this module exists:
  Connection loss, pool exhaustion and statement timeouts are the only
  transient failures in the marketplace. Every service entry point that
  touches the database is wrapped with ``@store_operation(...)`` so those
  faults surface uniformly as ``StoreUnavailableError`` (HTTP 503, retryable)
  after the session is rolled back. Business outcomes never pass through
  here; they are returned as ``Failure`` values.

Usage:
    @staticmethod
    @store_operation("listing.reserve")
    def reserve(listing_id, org_id):
        ...
"""

import functools
import logging

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from marketplace.core.failures import StoreUnavailableError
from marketplace.models import db

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def store_operation(name):
    """Decorator: convert transient datastore faults into StoreUnavailableError."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except TRANSIENT_ERRORS as exc:
                db.session.rollback()
                logger.error("Datastore unavailable during %s: %s", name, exc)
                raise StoreUnavailableError(name, exc) from exc

        return wrapper

    return decorator
