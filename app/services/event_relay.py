"""
Event Relay - delivers job status and progress events to connected clients.

Each live connection is registered under a subscriber id that the client
passes back when it creates a job. Events for that job are sent to that
connection only; when the subscriber is unknown or its connection has gone
away, the event is broadcast to every subscriber and clients filter by the
correlation id they are interested in.

Delivery is best-effort and at most once. Nothing is queued for clients that
are not connected; they reconcile by querying the job store.
"""

import logging
import uuid
from typing import Any, Optional, Protocol

from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Anything that can push a JSON message to one client."""

    async def send_json(self, data: Any) -> None: ...


def _is_open(connection: Connection) -> bool:
    for attr in ("client_state", "application_state"):
        state = getattr(connection, attr, None)
        if state == WebSocketState.DISCONNECTED:
            return False
    return True


class EventRelay:
    """Registry of subscriber connections and event fan-out."""

    def __init__(self) -> None:
        self._subscribers: dict[str, Connection] = {}

    @property
    def subscriber_ids(self) -> list[str]:
        return list(self._subscribers)

    def register(self, connection: Connection, subscriber_id: Optional[str] = None) -> str:
        subscriber_id = subscriber_id or uuid.uuid4().hex
        self._subscribers[subscriber_id] = connection
        logger.info(f"Subscriber connected: {subscriber_id} ({len(self._subscribers)} total)")
        return subscriber_id

    def unregister(self, subscriber_id: str) -> None:
        if self._subscribers.pop(subscriber_id, None) is not None:
            logger.info(f"Subscriber disconnected: {subscriber_id} ({len(self._subscribers)} total)")

    def is_connected(self, subscriber_id: Optional[str]) -> bool:
        if not subscriber_id:
            return False
        connection = self._subscribers.get(subscriber_id)
        return connection is not None and _is_open(connection)

    async def publish(
        self,
        correlation_id: str,
        event_type: str,
        payload: dict[str, Any],
        subscriber_id: Optional[str] = None,
    ) -> int:
        """
        Send one event.

        Args:
            correlation_id: Job correlation id, copied into the payload as ``id``
            event_type: Event name, e.g. ``download_progress``
            payload: Event body
            subscriber_id: Connection captured when the job was requested

        Returns:
            Number of connections the event was delivered to
        """
        message = {"event": event_type, "data": {"id": correlation_id, **payload}}

        if self.is_connected(subscriber_id):
            targets = [(subscriber_id, self._subscribers[subscriber_id])]
        else:
            if subscriber_id:
                logger.debug(f"Subscriber {subscriber_id} not connected, broadcasting {event_type}")
            targets = list(self._subscribers.items())

        delivered = 0
        for target_id, connection in targets:
            if await self._send(target_id, connection, message):
                delivered += 1
        return delivered

    async def _send(self, subscriber_id: str, connection: Connection, message: dict[str, Any]) -> bool:
        if not _is_open(connection):
            self.unregister(subscriber_id)
            return False
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            # A broken connection must not fail the job that produced the event.
            logger.warning(f"Dropping subscriber {subscriber_id}: {e}")
            self.unregister(subscriber_id)
            return False
