"""Outbound state-change events.

Core services describe what happened as ``GroupEvent`` values and publish
them only after the aggregate has been persisted, so clients never see an
event for a change that was rolled back.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .ports import NotificationPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupEvent:
    """One event addressed to a group's watchers, or to a single user."""

    group_id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None


class EventPublisher:
    """Fire-and-forget wrapper around a NotificationPort.

    Delivery failures are logged and dropped: a broken realtime transport
    must never fail a domain operation that has already been committed.
    """

    def __init__(self, notifications: NotificationPort):
        self.notifications = notifications

    async def publish(self, event: GroupEvent) -> None:
        try:
            if event.user_id is not None:
                await self.notifications.notify_user(
                    event.user_id, event.name, event.payload
                )
            else:
                await self.notifications.publish(
                    event.group_id, event.name, event.payload
                )
        except Exception as e:
            logger.warning(
                f"Failed to deliver event {event.name} for group {event.group_id}: {e}",
                extra={"group_id": event.group_id, "event_name": event.name},
                exc_info=True,
            )

    async def publish_all(self, events: Iterable[GroupEvent]) -> None:
        for event in events:
            await self.publish(event)
