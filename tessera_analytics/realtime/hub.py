"""
In-memory analytics broadcaster.

Subscriptions are keyed by id and each owns a bounded SubscriptionChannel.
Published updates are queued, invalidate the matching cache namespace right
away, and are fanned out on the next drain with role-based redaction.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from tessera_analytics.core.errors import (
    PrivacyViolationError,
    handle_privacy_violation,
    handle_role_access_denied,
)
from tessera_analytics.core.logging import log_event
from tessera_analytics.core.metrics import (
    realtime_messages_delivered_total,
    realtime_subscriptions_active,
    realtime_subscriptions_dropped_total,
    realtime_updates_queued_total,
)
from tessera_analytics.realtime.models import (
    FULL_VIEW_ROLES,
    ROLE_PERMISSIONS,
    AnalyticsUpdate,
    InitialSnapshotData,
    Role,
    UpdateType,
    analytics_message,
)

logger = logging.getLogger(__name__)

RESTRICTED_WIRE_FIELDS = ("affectedUsers", "metadata")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChannelError(Exception):
    pass


class ChannelClosedError(ChannelError):
    pass


class ChannelFullError(ChannelError):
    pass


class SubscriptionChannel:
    """Bounded per-subscription message queue; the consumer side is the push endpoint."""

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ChannelClosedError("channel closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise ChannelFullError("channel full") from None

    def receive_nowait(self) -> Optional[Dict[str, Any]]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Next message, or None once the channel is closed and drained."""
        message = self.receive_nowait()
        if message is not None or self.closed:
            return message
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        done, pending = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if getter in done:
            return getter.result()
        return None

    def close(self) -> None:
        self._closed.set()


@dataclass
class Subscription:
    id: str
    organization_id: str
    user_id: str
    role: Role
    filters: List[UpdateType]
    channel: SubscriptionChannel
    last_ping: float
    created_at: datetime = field(default_factory=_utcnow)

    def wants(self, update_type: UpdateType) -> bool:
        return not self.filters or update_type in self.filters


def has_access(role: Role, update_type: UpdateType) -> bool:
    return update_type in ROLE_PERMISSIONS.get(role, frozenset())


def invalidation_prefix(update: AnalyticsUpdate) -> str:
    org = update.organization_id
    return {
        UpdateType.BEHAVIOR_PATTERN_CHANGE: f"org:{org}:patterns:",
        UpdateType.INTERVENTION_UPDATE: f"org:{org}:interventions",
        UpdateType.HEALTH_SCORE_CHANGE: f"org:{org}:health:",
        UpdateType.NEW_INTERACTION: f"org:{org}:",
    }[update.type]


class AnalyticsBroadcaster:
    """
    Subscription registry, update queue and role-filtered fan-out.

    Delivery never blocks: a full or closed channel drops the subscription.
    Liveness is refreshed only by `ping`.
    """

    def __init__(
        self,
        cache=None,
        *,
        time_fn: Callable[[], float] = time.monotonic,
        now_fn: Callable[[], datetime] = _utcnow,
        stale_after: float = 300.0,
        channel_size: int = 100,
    ):
        self.cache = cache
        self.time_fn = time_fn
        self.now_fn = now_fn
        self.stale_after = stale_after
        self.channel_size = channel_size
        self._subscriptions: Dict[str, Subscription] = {}
        self._queue: Deque[AnalyticsUpdate] = deque()
        self._draining = False

    # ---- registry -------------------------------------------------------------

    def has_access(self, role: Role, update_type: UpdateType) -> bool:
        return has_access(role, update_type)

    def _check_filters(self, user_id: str, role: Role, filters: Iterable[UpdateType]) -> List[UpdateType]:
        checked = [UpdateType(f) for f in filters]
        for update_type in checked:
            if not has_access(role, update_type):
                handle_role_access_denied(user_id, role.value, update_type.value)
        return checked

    def _new_id(self, organization_id: str, user_id: str) -> str:
        base = f"{organization_id}_{user_id}_{int(self.now_fn().timestamp() * 1000)}"
        candidate, suffix = base, 1
        while candidate in self._subscriptions:
            suffix += 1
            candidate = f"{base}_{suffix}"
        return candidate

    def subscribe(
        self,
        organization_id: str,
        user_id: str,
        role: Role,
        filters: Optional[Iterable[UpdateType]] = None,
    ) -> Subscription:
        """Register a subscriber and push it the initial snapshot."""
        role = Role(role)
        subscription = Subscription(
            id=self._new_id(organization_id, user_id),
            organization_id=organization_id,
            user_id=user_id,
            role=role,
            filters=self._check_filters(user_id, role, filters or []),
            channel=SubscriptionChannel(self.channel_size),
            last_ping=self.time_fn(),
            created_at=self.now_fn(),
        )
        self._subscriptions[subscription.id] = subscription
        realtime_subscriptions_active.set(len(self._subscriptions))
        log_event(
            "info",
            "realtime.subscribed",
            organization_id=organization_id,
            user_id=user_id,
            subscription_id=subscription.id,
            event_type="realtime.subscribed",
            extra={"role": role.value},
        )

        now = self.now_fn()
        snapshot = AnalyticsUpdate(
            type=UpdateType.BEHAVIOR_PATTERN_CHANGE,
            organization_id=organization_id,
            data=InitialSnapshotData(timestamp=now),
            timestamp=now,
        )
        try:
            self._deliver(subscription, snapshot)
        except ChannelError:
            self._drop(subscription.id, "delivery_failed")
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._drop(subscription_id, "unsubscribed")

    def _drop(self, subscription_id: str, reason: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        subscription.channel.close()
        realtime_subscriptions_active.set(len(self._subscriptions))
        realtime_subscriptions_dropped_total.inc(labels={"reason": reason})
        log_event(
            "info",
            "realtime.unsubscribed",
            organization_id=subscription.organization_id,
            user_id=subscription.user_id,
            subscription_id=subscription_id,
            event_type=f"realtime.{reason}",
        )
        return True

    def ping(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.last_ping = self.time_fn()
        return True

    def set_filters(self, subscription_id: str, filters: Iterable[UpdateType]) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.filters = self._check_filters(subscription.user_id, subscription.role, filters)
        return True

    def get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return None
        return {
            "id": subscription.id,
            "organization_id": subscription.organization_id,
            "user_id": subscription.user_id,
            "role": subscription.role.value,
            "filters": [f.value for f in subscription.filters],
            "last_ping": subscription.last_ping,
            "pending_messages": subscription.channel.pending,
        }

    # ---- publishing -------------------------------------------------------------

    async def broadcast_update(self, update: AnalyticsUpdate) -> None:
        """Queue the update and invalidate the cache namespace it affects."""
        self._queue.append(update)
        realtime_updates_queued_total.inc(labels={"type": update.type.value})
        if self.cache is not None:
            await self.cache.invalidate_prefix(invalidation_prefix(update))
        logger.debug(
            "realtime.queued",
            extra={"organization_id": update.organization_id, "event_type": update.type.value},
        )

    async def process_update_queue(self) -> int:
        """
        Drain everything queued so far; returns the number of deliveries.

        A drain already in progress makes this a no-op, so updates arriving
        mid-drain wait for the next call. A privacy violation aborts the drain
        and puts the updates it had not reached back at the head of the queue.
        """
        if self._draining or not self._queue:
            return 0
        self._draining = True
        delivered = 0
        batch = list(self._queue)
        self._queue.clear()
        try:
            for index, update in enumerate(batch):
                try:
                    delivered += self._fan_out(update)
                except PrivacyViolationError:
                    self._queue.extendleft(reversed(batch[index + 1:]))
                    raise
        finally:
            self._draining = False
        return delivered

    def _relevant(self, update: AnalyticsUpdate) -> List[Subscription]:
        return [
            sub for sub in self._subscriptions.values()
            if sub.organization_id == update.organization_id
            and has_access(sub.role, update.type)
            and sub.wants(update.type)
        ]

    def _fan_out(self, update: AnalyticsUpdate) -> int:
        delivered = 0
        for subscription in self._relevant(update):
            try:
                self._deliver(subscription, update)
            except ChannelError as exc:
                logger.warning(
                    "realtime.delivery_failed",
                    extra={"subscription_id": subscription.id, "error_code": type(exc).__name__},
                )
                self._drop(subscription.id, "delivery_failed")
                continue
            delivered += 1
        return delivered

    def _deliver(self, subscription: Subscription, update: AnalyticsUpdate) -> None:
        visible = update if subscription.role in FULL_VIEW_ROLES else update.redacted()
        message = analytics_message(visible)
        if subscription.role not in FULL_VIEW_ROLES:
            leaked = [f for f in RESTRICTED_WIRE_FIELDS if f in message["data"]]
            if leaked:
                handle_privacy_violation(
                    f"{', '.join(leaked)} present in update for role {subscription.role.value}",
                    "realtime_delivery",
                )
        subscription.channel.send(message)
        realtime_messages_delivered_total.inc(labels={"type": update.type.value})

    # ---- maintenance ------------------------------------------------------------

    def cleanup_subscriptions(self, now: Optional[float] = None) -> List[str]:
        """Drop subscriptions whose last ping is more than `stale_after` seconds old."""
        current = self.time_fn() if now is None else now
        stale = [
            sub.id for sub in self._subscriptions.values()
            if current - sub.last_ping > self.stale_after
        ]
        for subscription_id in stale:
            self._drop(subscription_id, "stale")
        return stale

    def get_subscription_stats(self) -> Dict[str, Any]:
        by_org: Dict[str, int] = {}
        by_role: Dict[str, int] = {}
        for subscription in self._subscriptions.values():
            by_org[subscription.organization_id] = by_org.get(subscription.organization_id, 0) + 1
            by_role[subscription.role.value] = by_role.get(subscription.role.value, 0) + 1
        return {
            "total_subscriptions": len(self._subscriptions),
            "subscriptions_by_org": by_org,
            "subscriptions_by_role": by_role,
            "queued_updates": len(self._queue),
        }
