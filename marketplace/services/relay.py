"""
Change Notification Relay.

Fans out invalidation events for listing, message and disclosure mutations
to live organization sessions.

Delivery contract:
  - Events say "refresh your view", never "apply this state". They carry
    entity keys only (listing id, thread id, org ids), no payload.
  - Mutations stage events on the SQLAlchemy session; they are published
    after the transaction commits. A rolled-back mutation publishes nothing.
  - Publishing is fire-and-forget: a broker error is logged and never fails
    the mutation that triggered it.
  - Each session holds one subscription that multiplexes every entity class
    for its organization plus the public ``marketplace`` topic.

Uses Redis pub/sub in production (via REDIS_URL), falls back to an
in-process broker for development/testing.
"""

import json
import logging
import queue
import threading
import uuid
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ENTITY_LISTING = "listing"
ENTITY_MESSAGE = "message"
ENTITY_DISCLOSURE = "disclosure"

MARKETPLACE_TOPIC = "marketplace"

_PENDING_KEY = "relay_pending_events"
_QUEUE_SIZE = 256


def org_topic(org_id):
    return f"org:{org_id}"


def make_event(entity, action, *, org_ids, listing_id=None, thread_id=None, public=False):
    """Build an invalidation event.

    Args:
        entity: ``listing`` | ``message`` | ``disclosure``.
        action: Verb describing the mutation (created, reserved, read, granted).
        org_ids: Organizations that must refresh (owner, participants, parties).
        public: Also publish on the marketplace topic (listing id only).
    """
    return {
        "event_id": uuid.uuid4().hex,
        "entity": entity,
        "action": action,
        "listing_id": listing_id,
        "thread_id": thread_id,
        "org_ids": sorted({o for o in org_ids if o}),
        "public": public,
        "at": datetime.now(timezone.utc).isoformat(),
    }


# ── In-memory broker ─────────────────────────────────────────────────────


class _MemorySubscription:
    def __init__(self, broker, topics):
        self._broker = broker
        self.topics = tuple(topics)
        self.queue = queue.Queue(maxsize=_QUEUE_SIZE)

    def get(self, timeout=None):
        """Block up to ``timeout`` seconds; return an event dict or None."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        self._broker.unsubscribe(self)


class _MemoryBroker:
    """Thread-safe topic → subscriber-queue map for dev/testing."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, set] = {}

    def publish(self, topic, payload):
        with self._lock:
            targets = list(self._subscribers.get(topic, ()))
        for sub in targets:
            try:
                sub.queue.put_nowait(json.loads(payload))
            except queue.Full:
                logger.warning("Relay: subscriber queue full on %s, event dropped", topic)

    def subscribe(self, topics):
        sub = _MemorySubscription(self, topics)
        with self._lock:
            for topic in sub.topics:
                self._subscribers.setdefault(topic, set()).add(sub)
        return sub

    def unsubscribe(self, sub):
        with self._lock:
            for topic in sub.topics:
                subs = self._subscribers.get(topic)
                if subs:
                    subs.discard(sub)
                    if not subs:
                        self._subscribers.pop(topic, None)

    def subscriber_count(self, topic):
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def ping(self):
        return True


# ── Redis broker ─────────────────────────────────────────────────────────


class _RedisSubscription:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def get(self, timeout=None):
        msg = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout or 0)
        if not msg or msg.get("type") != "message":
            return None
        try:
            return json.loads(msg["data"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Relay: undecodable message on %s", msg.get("channel"))
            return None

    def close(self):
        self._pubsub.close()


class _RedisBroker:
    def __init__(self, client, prefix):
        self._client = client
        self._prefix = prefix

    def _channel(self, topic):
        return f"{self._prefix}:{topic}"

    def publish(self, topic, payload):
        self._client.publish(self._channel(topic), payload)

    def subscribe(self, topics):
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(*[self._channel(t) for t in topics])
        return _RedisSubscription(pubsub)

    def ping(self):
        return self._client.ping()


# ── Singleton broker ─────────────────────────────────────────────────────

_broker = None
_broker_lock = threading.Lock()


def _get_broker():
    """Lazy-initialise Redis or fall back to the in-memory broker."""
    global _broker
    if _broker is not None:
        return _broker

    with _broker_lock:
        if _broker is not None:
            return _broker
        redis_url = ""
        prefix = "marketplace"
        if has_app_context():
            redis_url = current_app.config.get("REDIS_URL", "") or ""
            prefix = current_app.config.get("RELAY_CHANNEL_PREFIX", prefix)
        if redis_url.startswith(("redis://", "rediss://")):
            try:
                import redis as _redis
                client = _redis.from_url(redis_url, decode_responses=True, socket_timeout=2)
                client.ping()
                _broker = _RedisBroker(client, prefix)
                logger.info("Relay: using Redis pub/sub at %s", redis_url.split("@")[-1])
            except Exception as exc:
                logger.warning("Redis unavailable (%s) — falling back to in-memory relay", exc)
                _broker = _MemoryBroker()
        else:
            _broker = _MemoryBroker()
    return _broker


def reset_broker():
    """Drop the broker singleton (tests, config reload)."""
    global _broker
    with _broker_lock:
        _broker = None


# ── Public API ───────────────────────────────────────────────────────────


def _public_view(evt):
    """Marketplace-topic projection: listing key only, no organizations."""
    return {
        "event_id": evt["event_id"],
        "entity": evt["entity"],
        "action": evt["action"],
        "listing_id": evt["listing_id"],
        "thread_id": None,
        "org_ids": [],
        "public": True,
        "at": evt["at"],
    }


def publish(evt):
    """Deliver one event to every interested topic. Never raises."""
    payload = json.dumps(evt)
    try:
        broker = _get_broker()
        for org_id in evt["org_ids"]:
            broker.publish(org_topic(org_id), payload)
        if evt.get("public"):
            broker.publish(MARKETPLACE_TOPIC, json.dumps(_public_view(evt)))
    except Exception:
        logger.warning(
            "Relay publish failed for %s/%s", evt["entity"], evt["action"],
            exc_info=True,
            extra={"listing_id": evt.get("listing_id"), "thread_id": evt.get("thread_id")},
        )


def subscribe(org_id):
    """Open one multiplexed subscription for an organization session."""
    return _get_broker().subscribe([org_topic(org_id), MARKETPLACE_TOPIC])


def stage(session, evt):
    """Queue ``evt`` on ``session``; it is published after the next commit."""
    session.info.setdefault(_PENDING_KEY, []).append(evt)


def broker_status():
    """Return ``(backend_name, ok)`` for health checks."""
    broker = _get_broker()
    name = "redis" if isinstance(broker, _RedisBroker) else "memory"
    try:
        return name, bool(broker.ping())
    except Exception as exc:
        logger.warning("Relay broker ping failed: %s", exc)
        return name, False


# ── Session hooks ────────────────────────────────────────────────────────


@event.listens_for(Session, "after_commit")
def _publish_staged(session):
    # Savepoint releases fire after_commit too; wait for the outermost commit
    if session.in_nested_transaction():
        return
    pending = session.info.pop(_PENDING_KEY, None)
    for evt in pending or ():
        publish(evt)


@event.listens_for(Session, "after_soft_rollback")
def _discard_staged(session, previous_transaction):
    # Savepoint rollbacks leave the outer transaction's events in place
    if previous_transaction.nested:
        return
    session.info.pop(_PENDING_KEY, None)
