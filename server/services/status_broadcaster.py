"""Status Broadcaster Service.

In-process publish/subscribe keyed by channel. Dashboard events for an
organization flow through the `dashboard:<organizationId>` channel and are
relayed to live stream clients by the dashboard router.

Delivery is best-effort: no persistence, no replay, and a failing subscriber
never affects the publisher or the other subscribers.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.logging import get_logger
from constants import (
    dashboard_channel,
    DASHBOARD_EVENT_TYPES,
    EVENT_NOTIFICATION,
    EVENT_NODE_STATUS,
)

logger = get_logger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]


class _Subscription:
    """Wraps a callback so the same function can subscribe more than once."""

    __slots__ = ("callback",)

    def __init__(self, callback: Subscriber):
        self.callback = callback


class StatusBroadcaster:
    """Channel-keyed subscriber registry with synchronous fan-out."""

    def __init__(self):
        self._channels: Dict[str, List[_Subscription]] = {}

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns an idempotent unsubscribe function."""
        subscription = _Subscription(callback)
        self._channels.setdefault(channel, []).append(subscription)
        logger.debug("Subscriber added", channel=channel, total=self.subscriber_count(channel))

        def unsubscribe() -> None:
            subscribers = self._channels.get(channel)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
                if not subscribers:
                    del self._channels[channel]
                logger.debug("Subscriber removed", channel=channel,
                             total=self.subscriber_count(channel))

        return unsubscribe

    def broadcast(self, channel: str, event: Dict[str, Any]) -> int:
        """Invoke each current subscriber of channel in subscription order.

        Iterates over a snapshot so callbacks may (un)subscribe freely; a
        subscriber removed during this broadcast is skipped. Returns the
        number of callbacks invoked.
        """
        subscribers = self._channels.get(channel)
        if not subscribers:
            return 0

        delivered = 0
        for subscription in list(subscribers):
            if subscription not in self._channels.get(channel, ()):
                continue
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error("Subscriber callback failed", channel=channel,
                             event_type=event.get("type"), error=str(e))
        return delivered

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    # =========================================================================
    # Dashboard Events
    # =========================================================================

    def emit_dashboard_event(self, organization_id: str, event_type: str,
                             data: Optional[Dict[str, Any]] = None) -> int:
        """Broadcast a {type, data, timestamp} envelope to an organization."""
        if event_type not in DASHBOARD_EVENT_TYPES:
            logger.warning("Unknown dashboard event type", event_type=event_type)

        event = {
            "type": event_type,
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return self.broadcast(dashboard_channel(organization_id), event)

    def emit_notification(self, organization_id: str, title: str, message: str,
                          level: str = "info", category: Optional[str] = None) -> int:
        """Broadcast a user-facing notification."""
        return self.emit_dashboard_event(organization_id, EVENT_NOTIFICATION, {
            "title": title,
            "message": message,
            "level": level,
            "category": category,
        })

    def emit_node_status(self, organization_id: str, run_id: str, node_id: str,
                         status: str, error: Optional[str] = None,
                         workflow_id: Optional[str] = None) -> int:
        """Broadcast a node-status transition (running, success, error)."""
        data = {"runId": run_id, "nodeId": node_id, "status": status}
        if workflow_id:
            data["workflowId"] = workflow_id
        if error is not None:
            data["error"] = error
        return self.emit_dashboard_event(organization_id, EVENT_NODE_STATUS, data)
