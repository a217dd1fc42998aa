"""Live presence hub: inbound event handling for collaboration sockets.

Frames are JSON objects ``{"event": str, "data": object}`` in both
directions. Each inbound event name maps to a payload model and a handler
in one dispatch table; a handler receives the connection handle and the
validated payload.

Inbound events:
    identify            register the socket's identity for direct messages
    join-chat           join the room, refresh presence, announce
    leave-chat          leave the room, drop presence, announce
    send-message        persist and broadcast a chat message
    typing/stop-typing  typing indicators (sender excluded)
    presence-update     refresh presence with a cursor (sender excluded)
    invitation-accepted mark the invite accepted and announce

No handler lets an exception escape: failures become an ``error`` event on
the offending connection, or are only logged where the client has nothing
to act on (presence-update, leave, disconnect).
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from citruslab.collaboration.errors import CollaborationError
from citruslab.collaboration.schemas import Cursor, UserRef, utcnow
from citruslab.collaboration.service import CollaborationService

from .connection import Connection
from .dispatcher import BroadcastDispatcher
from .registry import ConnectionIdentityTable, RoomRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Inbound payloads
# =============================================================================


class IdentifyPayload(BaseModel):
    email: str
    name: str = ""

    def as_user(self) -> UserRef:
        return UserRef(email=self.email, name=self.name)


class RoomPayload(BaseModel):
    chatId: str
    user: UserRef


class SendMessagePayload(RoomPayload):
    message: str


class PresenceUpdatePayload(RoomPayload):
    cursor: Optional[Cursor] = None


Handler = Callable[[Connection, Any], Awaitable[None]]


# =============================================================================
# Hub
# =============================================================================


class PresenceHub:
    """Owns the room registry and identity table for one process.

    Attributes:
        service: Shared with the HTTP routes; every roster write goes through it.
        registry: Room membership.
        identities: Email -> connection for direct messages.
        dispatcher: Fan-out over ``registry`` and ``identities``.
    """

    def __init__(self, service: CollaborationService) -> None:
        self.service = service
        self.registry = RoomRegistry()
        self.identities = ConnectionIdentityTable()
        self.dispatcher = BroadcastDispatcher(self.registry, self.identities)

        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            "identify": (IdentifyPayload, self._on_identify),
            "join-chat": (RoomPayload, self._on_join),
            "leave-chat": (RoomPayload, self._on_leave),
            "send-message": (SendMessagePayload, self._on_send_message),
            "typing": (RoomPayload, self._on_typing),
            "stop-typing": (RoomPayload, self._on_stop_typing),
            "presence-update": (PresenceUpdatePayload, self._on_presence_update),
            "invitation-accepted": (RoomPayload, self._on_invitation_accepted),
        }

    @property
    def events(self) -> List[str]:
        return sorted(self._handlers)

    # -------------------------------------------------------------------------
    # Frame entry point
    # -------------------------------------------------------------------------

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """Decode one text frame and run its handler."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self._error(connection, "Malformed frame: expected JSON")
            return

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self._error(connection, "Malformed frame: missing event name")
            return

        await self.dispatch(connection, frame["event"], frame.get("data") or {})

    async def dispatch(self, connection: Connection, event: str, data: Any) -> None:
        entry = self._handlers.get(event)
        if entry is None:
            logger.warning(f"[Hub] Unknown event '{event}' from {connection}")
            await self._error(connection, f"Unknown event: {event}")
            return

        model, handler = entry
        try:
            payload = model.model_validate(data)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            await self._error(connection, f"Invalid payload for {event}", errors)
            return

        try:
            await handler(connection, payload)
        except Exception:
            logger.exception(f"[Hub] Handler for '{event}' failed on {connection}")
            await self._error(connection, f"Failed to handle {event}")

    async def _error(
        self, connection: Connection, message: str, errors: Optional[List[dict]] = None
    ) -> None:
        data: Dict[str, Any] = {"message": message}
        if errors:
            data["errors"] = errors
        await self.dispatcher.send(connection, "error", data)

    def _adopt_identity(self, connection: Connection, user: UserRef) -> None:
        # First announced identity sticks to the connection
        if connection.user is None:
            connection.user = user
            self.identities.identify(user.email, connection)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _on_identify(self, connection: Connection, payload: IdentifyPayload) -> None:
        user = payload.as_user()
        if connection.user is not None and connection.user.email != user.email:
            self.identities.forget(connection)
        connection.user = user
        self.identities.identify(connection.user.email, connection)
        logger.info(f"[Hub] {connection} identified as {connection.user.email}")

    async def _on_join(self, connection: Connection, payload: RoomPayload) -> None:
        chat_id, user = payload.chatId, payload.user
        self._adopt_identity(connection, user)
        newly_joined = self.registry.join(chat_id, connection)

        try:
            active_users = await self.service.upsert_presence(chat_id, user)
        except CollaborationError as e:
            logger.error(f"[Hub] join-chat {chat_id} failed for {user.email}: {e.message}")
            if newly_joined:
                self.registry.leave(chat_id, connection)
            await self._error(connection, "Failed to join chat")
            return

        if newly_joined:
            await self.dispatcher.broadcast(
                chat_id,
                "user-joined",
                {"user": user, "timestamp": utcnow()},
                excluding=connection,
            )
        await self.dispatcher.send(connection, "active-users", active_users)
        logger.info(
            f"[Hub] {user.email} joined chat {chat_id} "
            f"({len(self.registry.members_of(chat_id))} connections)"
        )

    async def _on_leave(self, connection: Connection, payload: RoomPayload) -> None:
        chat_id, user = payload.chatId, payload.user
        if not self.registry.leave(chat_id, connection):
            return
        await self._drop_presence(chat_id, user.email)
        await self.dispatcher.broadcast(chat_id, "user-left", {"user": user, "timestamp": utcnow()})
        logger.info(f"[Hub] {user.email} left chat {chat_id}")

    async def _on_send_message(self, connection: Connection, payload: SendMessagePayload) -> None:
        try:
            message = await self.service.record_message(payload.chatId, payload.user, payload.message)
        except CollaborationError as e:
            logger.error(f"[Hub] send-message in {payload.chatId} failed: {e.message}")
            await self._error(connection, "Failed to send message")
            return

        delivered = await self.dispatcher.broadcast(payload.chatId, "new-message", message)
        logger.info(
            f"[Hub] Message in chat {payload.chatId} from {payload.user.email} "
            f"delivered to {delivered} connection(s)"
        )

    async def _on_typing(self, connection: Connection, payload: RoomPayload) -> None:
        await self.dispatcher.broadcast(
            payload.chatId,
            "user-typing",
            {"user": payload.user, "timestamp": utcnow()},
            excluding=connection,
        )

    async def _on_stop_typing(self, connection: Connection, payload: RoomPayload) -> None:
        await self.dispatcher.broadcast(
            payload.chatId, "user-stop-typing", {"user": payload.user}, excluding=connection
        )

    async def _on_presence_update(
        self, connection: Connection, payload: PresenceUpdatePayload
    ) -> None:
        try:
            await self.service.upsert_presence(payload.chatId, payload.user, payload.cursor)
        except CollaborationError as e:
            logger.error(f"[Hub] presence-update in {payload.chatId} not persisted: {e.message}")

        await self.dispatcher.broadcast(
            payload.chatId,
            "presence-changed",
            {"user": payload.user, "cursor": payload.cursor, "timestamp": utcnow()},
            excluding=connection,
        )

    async def _on_invitation_accepted(self, connection: Connection, payload: RoomPayload) -> None:
        try:
            await self.service.mark_invitation_accepted(payload.chatId, payload.user.email)
        except CollaborationError as e:
            logger.error(f"[Hub] Could not record acceptance in {payload.chatId}: {e.message}")

        await self.announce_collaborator_joined(payload.chatId, payload.user)
        logger.info(f"[Hub] {payload.user.email} accepted invitation to chat {payload.chatId}")

    # -------------------------------------------------------------------------
    # Used by the HTTP routes
    # -------------------------------------------------------------------------

    async def announce_collaborator_joined(self, chat_id: str, user: UserRef) -> None:
        await self.dispatcher.broadcast(
            chat_id, "collaborator-joined", {"user": user, "timestamp": utcnow()}
        )

    async def notify_invitation(self, email: str, payload: dict) -> bool:
        return await self.dispatcher.send_to(email, "invitation-received", payload)

    def online_users(self, chat_id: str) -> List[UserRef]:
        """Identities with at least one live connection in the room."""
        seen: Dict[str, UserRef] = {}
        for conn in self.registry.members_of(chat_id):
            if conn.user is not None:
                seen.setdefault(conn.user.email, conn.user)
        return sorted(seen.values(), key=lambda u: u.email)

    # -------------------------------------------------------------------------
    # Disconnect
    # -------------------------------------------------------------------------

    async def disconnect(self, connection: Connection) -> None:
        """Leave every joined room, forget the identity, announce departures.

        Runs once per connection; later calls are no-ops.
        """
        if connection.closed:
            return
        connection.closed = True

        rooms = self.registry.rooms_of(connection)
        for chat_id in rooms:
            self.registry.leave(chat_id, connection)
        self.identities.forget(connection)

        user = connection.user
        if user is None:
            logger.info(f"[Hub] Anonymous {connection} disconnected")
            return

        for chat_id in rooms:
            await self._drop_presence(chat_id, user.email)
            await self.dispatcher.broadcast(
                chat_id, "user-left", {"user": user, "timestamp": utcnow()}
            )
        logger.info(f"[Hub] {user.email} disconnected from {len(rooms)} room(s)")

    async def _drop_presence(self, chat_id: str, email: str) -> None:
        # Another tab of the same user keeps the roster entry
        if any(c.email == email for c in self.registry.members_of(chat_id)):
            return
        try:
            await self.service.remove_presence(chat_id, email)
        except CollaborationError as e:
            logger.error(f"[Hub] Could not drop presence of {email} in {chat_id}: {e.message}")
