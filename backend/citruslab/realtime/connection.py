"""Handle for one live WebSocket connection."""
import json
import uuid
from typing import Any, Optional

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from citruslab.collaboration.schemas import UserRef


class Connection:
    """One accepted WebSocket plus the identity it announced.

    Attributes:
        id: Opaque handle, unique per accepted socket.
        websocket: The underlying transport.
        user: Set by ``identify`` or the first ``join-chat``; None until then.
    """

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.user: Optional[UserRef] = None
        self.closed = False

    @property
    def email(self) -> Optional[str]:
        return self.user.email if self.user else None

    async def send_event(self, event: str, data: Any) -> None:
        """Send one ``{"event", "data"}`` frame. Raises if the socket is gone."""
        frame = {"event": event, "data": jsonable_encoder(data)}
        await self.websocket.send_text(json.dumps(frame))

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Connection) and other.id == self.id

    def __repr__(self) -> str:
        return f"Connection(id={self.id[:8]}, email={self.email})"
