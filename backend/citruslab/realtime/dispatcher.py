"""Fan-out of live events to room members and individual users.

Delivery is concurrent and fire-and-forget: ``asyncio.gather`` sends to
every target at once, a failed send is logged and never raised, and the
connection that failed is pruned from the room it was being sent to.
"""
import asyncio
import logging
from typing import Any, List, Optional

from .connection import Connection
from .registry import ConnectionIdentityTable, RoomRegistry

logger = logging.getLogger(__name__)


class BroadcastDispatcher:
    def __init__(self, registry: RoomRegistry, identities: ConnectionIdentityTable) -> None:
        self.registry = registry
        self.identities = identities

    async def broadcast(
        self,
        room_id: str,
        event: str,
        payload: Any,
        excluding: Optional[Connection] = None,
    ) -> int:
        """Send ``event`` to every member of ``room_id`` except ``excluding``.

        Args:
            room_id: Target room; an unknown or empty room is a no-op.
            event: Outbound event name.
            payload: JSON-serializable event data.
            excluding: Connection to skip (usually the sender).

        Returns:
            Number of connections the event was delivered to.
        """
        targets = [c for c in self.registry.members_of(room_id) if c != excluding]
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, event, payload) for conn in targets],
            return_exceptions=True,
        )

        failed = [conn for conn, ok in zip(targets, results) if ok is not True]
        self._cleanup_connections(room_id, failed)
        return len(targets) - len(failed)

    async def send_to(self, email: str, event: str, payload: Any) -> bool:
        """Direct message to the connection identified as ``email``.

        An offline user is a normal outcome and returns False.
        """
        connection = self.identities.resolve(email)
        if connection is None:
            logger.debug(f"[Dispatch] {email} is offline, dropping {event}")
            return False
        return await self._safe_send(connection, event, payload)

    async def send(self, connection: Connection, event: str, payload: Any) -> bool:
        return await self._safe_send(connection, event, payload)

    async def _safe_send(self, connection: Connection, event: str, payload: Any) -> bool:
        if connection.closed:
            return False
        try:
            await connection.send_event(event, payload)
            return True
        except Exception as e:
            logger.debug(f"[Dispatch] Failed to send {event} to {connection}: {e}")
            return False

    def _cleanup_connections(self, room_id: str, failed: List[Connection]) -> None:
        for conn in failed:
            self.registry.leave(room_id, conn)
        if failed:
            logger.info(f"[Dispatch] Pruned {len(failed)} dead connection(s) from {room_id}")
