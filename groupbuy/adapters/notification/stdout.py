"""Stdout notification adapter.

Implements NotificationPort by printing group events to the terminal,
one line per event. Useful for local development and the CLI run mode.
"""

import asyncio
import json
import logging
from typing import Any

from groupbuy.core.ports import NotificationPort

logger = logging.getLogger(__name__)


class StdoutNotificationAdapter(NotificationPort):
    """Prints group events to stdout."""

    def __init__(self, verbose: bool = False):
        """Initialize stdout notification adapter.

        Args:
            verbose: If True, print the full event payload.
        """
        self.verbose = verbose

    async def publish(
        self, group_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        """Print an event broadcast to a group's watchers."""
        await asyncio.to_thread(print, self._format("group", group_id, event_name, payload))

    async def notify_user(
        self, user_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        """Print an event addressed to one user."""
        await asyncio.to_thread(print, self._format("user", user_id, event_name, payload))

    def _format(
        self, audience: str, target_id: str, event_name: str, payload: dict[str, Any]
    ) -> str:
        line = f"[{audience}:{target_id}] {event_name}"
        if self.verbose and payload:
            line += " " + json.dumps(payload, sort_keys=True, default=str)
        return line
