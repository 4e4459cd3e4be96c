"""
Member Resource Marketplace
Disclosure Ledger.

Records, per thread, that two organizations' real contact records are
mutually visible, and is the single chokepoint through which a
counterpart's real contact record may leave the system.

Presentation code never reads ``Organization`` contact columns for a
counterpart directly; it calls ``DisclosureLedger.counterpart_real_contact``.
"""

import logging

from sqlalchemy.exc import IntegrityError

from marketplace.models import db
from marketplace.models.disclosure import DisclosureGrant
from marketplace.models.organization import Organization
from marketplace.services import relay
from marketplace.services.helpers.store_guard import store_operation

logger = logging.getLogger(__name__)


def _grant_for(thread_id):
    return DisclosureGrant.query.filter_by(thread_id=thread_id).first()


class DisclosureLedger:
    """Stateless service class for disclosure grants."""

    @staticmethod
    @store_operation("disclosure.grant")
    def grant(thread_id, org_a, org_b):
        """
        Record mutual disclosure for ``thread_id``. Idempotent.

        An existing grant for the thread is returned unchanged; a concurrent
        insert that loses on the unique constraint is treated the same way.
        Does not commit; the caller owns the transaction.

        Returns:
            The DisclosureGrant for the thread.
        """
        if org_a == org_b:
            raise ValueError("A disclosure grant needs two distinct organizations")

        existing = _grant_for(thread_id)
        if existing is not None:
            if {existing.org_low_id, existing.org_high_id} != {org_a, org_b}:
                logger.warning(
                    "Disclosure grant for thread %s already exists for a different pair",
                    thread_id, extra={"thread_id": thread_id},
                )
            return existing

        low, high = DisclosureGrant.canonical_pair(org_a, org_b)
        grant = DisclosureGrant(thread_id=thread_id, org_low_id=low, org_high_id=high)
        try:
            with db.session.begin_nested():
                db.session.add(grant)
        except IntegrityError:
            logger.info("Disclosure grant raced for thread %s; keeping existing", thread_id)
            return _grant_for(thread_id)

        relay.stage(db.session, relay.make_event(
            relay.ENTITY_DISCLOSURE, "granted", org_ids=[low, high], thread_id=thread_id,
        ))
        logger.info("Disclosure granted", extra={"thread_id": thread_id})
        return grant

    @staticmethod
    @store_operation("disclosure.is_disclosed")
    def is_disclosed(thread_id, org_id):
        """True if a grant exists for the thread and ``org_id`` is a party to it."""
        grant = _grant_for(thread_id)
        return grant is not None and grant.involves(org_id)

    @staticmethod
    @store_operation("disclosure.counterpart_real_contact")
    def counterpart_real_contact(thread_id, viewer_org_id):
        """
        The other party's real contact record, or None before disclosure.

        Returns:
            dict with ``organization_id``, ``handle`` and the contact fields,
            or None when no grant covers this viewer on this thread.
        """
        grant = _grant_for(thread_id)
        if grant is None or not grant.involves(viewer_org_id):
            return None

        counterpart = db.session.get(Organization, grant.counterpart_of(viewer_org_id))
        if counterpart is None:
            return None
        return {
            "organization_id": counterpart.id,
            "handle": counterpart.handle,
            **counterpart.contact_record(),
        }
