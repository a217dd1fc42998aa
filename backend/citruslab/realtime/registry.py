"""In-memory room membership and identity lookup.

Both tables are process local and synchronous: no method here suspends, so
a handler that mutates them cannot interleave with another handler on the
same event loop. Running several server processes needs sticky routing or
an external fan-out; nothing here is shared between processes.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set

from .connection import Connection

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Room id -> set of connections, plus the reverse index."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Connection]] = defaultdict(set)
        self._memberships: Dict[Connection, Set[str]] = defaultdict(set)

    def join(self, room_id: str, connection: Connection) -> bool:
        """Add ``connection`` to the room. Returns False if it was already a member."""
        members = self._rooms[room_id]
        if connection in members:
            return False
        members.add(connection)
        self._memberships[connection].add(room_id)
        logger.debug(f"[Registry] {connection} joined {room_id} ({len(members)} members)")
        return True

    def leave(self, room_id: str, connection: Connection) -> bool:
        members = self._rooms.get(room_id)
        if not members or connection not in members:
            return False
        members.discard(connection)
        if not members:
            del self._rooms[room_id]

        rooms = self._memberships.get(connection)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._memberships[connection]
        return True

    def members_of(self, room_id: str) -> Set[Connection]:
        """Snapshot of the room's members; empty for an unknown room."""
        return set(self._rooms.get(room_id, ()))

    def rooms_of(self, connection: Connection) -> List[str]:
        return sorted(self._memberships.get(connection, ()))

    def room_count(self) -> int:
        return len(self._rooms)


class ConnectionIdentityTable:
    """Email -> the most recently identified connection for that email.

    A second connection for the same email overwrites the first; direct
    messages go to the newest one.
    """

    def __init__(self) -> None:
        self._by_email: Dict[str, Connection] = {}

    def identify(self, email: str, connection: Connection) -> None:
        previous = self._by_email.get(email)
        if previous is not None and previous != connection:
            logger.debug(f"[Identity] {email} moved from {previous} to {connection}")
        self._by_email[email] = connection

    def resolve(self, email: str) -> Optional[Connection]:
        return self._by_email.get(email)

    def forget(self, connection: Connection) -> None:
        """Drop every entry that points at ``connection``."""
        stale = [email for email, conn in self._by_email.items() if conn == connection]
        for email in stale:
            del self._by_email[email]

    def is_online(self, email: str) -> bool:
        return email in self._by_email
