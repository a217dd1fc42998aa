"""Collaboration service: owner-gated collaborator management and presence.

Both the HTTP routes and the live WebSocket handlers go through this
service, so the presence roster has exactly one mutation path regardless of
who triggered it. Mutations for one chat id are serialized in-process by a
per-chat ``asyncio.Lock``; across processes the last write wins.
"""
import asyncio
import logging
import secrets
import weakref
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from citruslab.mail.service import MailSender

from . import roster
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from .schemas import (
    ChatMessage,
    Collaboration,
    Collaborator,
    CollaboratorRole,
    CollaboratorStatus,
    Cursor,
    EmailStatus,
    InviteRequest,
    PresenceEntry,
    UserRef,
    default_name,
    utcnow,
)
from .store import CollaborationStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class CollaborationService:
    """Reads and mutates Collaboration aggregates through the store.

    Attributes:
        store: Persistent aggregate storage.
        mailer: Sends invitation emails; never raises.
        ttl: Presence time-to-live.
        frontend_url: Base URL used to build invitation links.
    """

    def __init__(
        self,
        store: CollaborationStore,
        mailer: MailSender,
        ttl: timedelta = roster.DEFAULT_TTL,
        frontend_url: str = "http://localhost:3000",
        share_token_bytes: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.ttl = ttl
        self.frontend_url = frontend_url
        self.share_token_bytes = share_token_bytes
        self.clock = clock
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    # =========================================================================
    # Aggregate access
    # =========================================================================

    async def get(self, chat_id: str) -> Collaboration:
        collaboration = await self.store.load(chat_id)
        if collaboration is None:
            raise NotFoundError("Collaboration not found")
        return collaboration

    async def get_or_create(self, chat_id: str, actor: UserRef) -> Collaboration:
        """Load the aggregate, creating it with ``actor`` as owner if absent."""
        existing = await self.store.load(chat_id)
        if existing is not None:
            return existing

        now = self.clock()
        fresh = Collaboration(
            chatId=chat_id,
            owner=actor.email,
            collaborators=[
                Collaborator(
                    email=actor.email,
                    name=actor.name or default_name(actor.email),
                    role=CollaboratorRole.OWNER,
                    status=CollaboratorStatus.ACCEPTED,
                    invitedAt=now,
                    joinedAt=now,
                )
            ],
            createdAt=now,
            updatedAt=now,
        )
        stored = await self.store.create_if_absent(fresh)
        if stored.createdAt == fresh.createdAt:
            logger.info("Created collaboration for chat %s (owner=%s)", chat_id, actor.email)
        return stored

    def _require_owner(self, collaboration: Collaboration, actor_email: str) -> None:
        if collaboration.owner != actor_email:
            logger.warning(
                "Owner-gated operation on chat %s rejected for %s",
                collaboration.chatId,
                actor_email,
            )
            raise ForbiddenError("Only the owner can manage collaborators and share links")

    async def _save(self, collaboration: Collaboration) -> Collaboration:
        collaboration.updatedAt = self.clock()
        return await self.store.save(collaboration)

    # =========================================================================
    # Collaborators (owner-gated)
    # =========================================================================

    async def invite(
        self, chat_id: str, actor: UserRef, request: InviteRequest
    ) -> Tuple[Collaborator, Collaboration, EmailStatus]:
        """Append a pending collaborator and email them the invitation link.

        The invitation link is the chat's share link; a new token is issued
        when the chat has none, or its link is disabled or expired. The email
        is a side effect: a send failure is reported in the returned
        ``EmailStatus`` and never undoes the invite.

        Raises:
            ForbiddenError: ``actor`` is not the owner.
            ConflictError: ``request.email`` is already a collaborator.
        """
        async with self._lock_for(chat_id):
            collaboration = await self.get_or_create(chat_id, actor)
            self._require_owner(collaboration, actor.email)

            if collaboration.find_collaborator_by_email(request.email):
                raise ConflictError("User already invited")

            collaborator = Collaborator(
                email=request.email,
                name=request.name or default_name(request.email),
                role=CollaboratorRole(request.role),
                status=CollaboratorStatus.PENDING,
                invitedAt=self.clock(),
            )
            collaboration.collaborators.append(collaborator)

            if not self._share_link_usable(collaboration):
                self._issue_share_token(collaboration, expires_in_hours=None)

            collaboration = await self._save(collaboration)

        logger.info("Invited %s to chat %s as %s", request.email, chat_id, request.role)
        email_status = await self.mailer.send_invitation(
            to=request.email,
            inviter_name=actor.name or default_name(actor.email),
            chat_title=request.chatTitle or "Untitled chat",
            invitation_link=self.invitation_link(collaboration.shareLink),
            role=request.role,
        )
        return collaborator, collaboration, email_status

    async def update_role(
        self, chat_id: str, actor_email: str, collaborator_id: str, role: str
    ) -> Collaborator:
        async with self._lock_for(chat_id):
            collaboration = await self.get(chat_id)
            self._require_owner(collaboration, actor_email)

            collaborator = collaboration.find_collaborator(collaborator_id)
            if collaborator is None:
                raise NotFoundError("Collaborator not found")
            if collaborator.role == CollaboratorRole.OWNER:
                raise ValidationFailedError(
                    "The owner's role cannot be changed",
                    errors=[{"field": "role", "message": "owner role is fixed"}],
                )

            collaborator.role = CollaboratorRole(role)
            await self._save(collaboration)

        logger.info("Role of %s in chat %s set to %s", collaborator.email, chat_id, role)
        return collaborator

    async def remove_collaborator(
        self, chat_id: str, actor_email: str, collaborator_id: str
    ) -> Collaborator:
        async with self._lock_for(chat_id):
            collaboration = await self.get(chat_id)
            self._require_owner(collaboration, actor_email)

            collaborator = collaboration.find_collaborator(collaborator_id)
            if collaborator is None:
                raise NotFoundError("Collaborator not found")
            if collaborator.role == CollaboratorRole.OWNER:
                raise ValidationFailedError("The owner cannot be removed")

            collaboration.collaborators = [
                c for c in collaboration.collaborators if c.id != collaborator_id
            ]
            await self._save(collaboration)

        logger.info("Removed %s from chat %s", collaborator.email, chat_id)
        return collaborator

    # =========================================================================
    # Share links
    # =========================================================================

    def invitation_link(self, token: Optional[str]) -> str:
        return f"{self.frontend_url}/invitation/{token}"

    def _share_link_usable(self, collaboration: Collaboration) -> bool:
        if not collaboration.shareLink or not collaboration.shareLinkEnabled:
            return False
        expiry = collaboration.shareLinkExpiry
        return expiry is None or expiry > self.clock()

    def _issue_share_token(
        self,
        collaboration: Collaboration,
        expires_in_hours: Optional[int],
        role: Optional[str] = None,
    ) -> None:
        collaboration.shareLink = secrets.token_urlsafe(self.share_token_bytes)
        collaboration.shareLinkEnabled = True
        collaboration.shareLinkExpiry = (
            self.clock() + timedelta(hours=expires_in_hours) if expires_in_hours else None
        )
        if role:
            collaboration.shareLinkRole = role

    async def generate_share_link(
        self,
        chat_id: str,
        actor_email: str,
        expires_in_hours: Optional[int] = None,
        role: str = "viewer",
    ) -> Collaboration:
        """Issue a fresh share token, invalidating the previous one."""
        async with self._lock_for(chat_id):
            collaboration = await self.get(chat_id)
            self._require_owner(collaboration, actor_email)
            self._issue_share_token(collaboration, expires_in_hours, role)
            collaboration = await self._save(collaboration)

        logger.info(
            "Share link regenerated for chat %s (expiry=%s, role=%s)",
            chat_id,
            collaboration.shareLinkExpiry,
            role,
        )
        return collaboration

    async def disable_share_link(self, chat_id: str, actor_email: str) -> Collaboration:
        async with self._lock_for(chat_id):
            collaboration = await self.get(chat_id)
            self._require_owner(collaboration, actor_email)
            collaboration.shareLinkEnabled = False
            collaboration = await self._save(collaboration)

        logger.info("Share link disabled for chat %s", chat_id)
        return collaboration

    async def _load_by_share_token(self, token: str) -> Collaboration:
        collaboration = await self.store.find_by_share_token(token)
        if collaboration is None:
            raise NotFoundError("Invalid share link")
        if not collaboration.shareLinkEnabled:
            raise ForbiddenError("Share link is disabled")
        expiry = collaboration.shareLinkExpiry
        if expiry is not None and expiry <= self.clock():
            raise ForbiddenError("Share link has expired")
        return collaboration

    async def resolve_share_token(self, token: str, caller_email: Optional[str] = None) -> dict:
        """Resolve an enabled, unexpired share token to chat and role info.

        Listed collaborators get their own role; anyone else holding the
        link gets the link's role.
        """
        collaboration = await self._load_by_share_token(token)
        collaborator = (
            collaboration.find_collaborator_by_email(caller_email) if caller_email else None
        )
        return {
            "chatId": collaboration.chatId,
            "owner": collaboration.owner,
            "role": collaborator.role.value if collaborator else collaboration.shareLinkRole,
            "isCollaborator": collaborator is not None,
            "invitationStatus": collaborator.status.value if collaborator else None,
            "shareLinkExpiry": collaboration.shareLinkExpiry,
        }

    async def respond_to_invitation(
        self, token: str, actor: UserRef, accept: bool
    ) -> Tuple[Collaborator, Collaboration]:
        collaboration = await self._load_by_share_token(token)
        chat_id = collaboration.chatId
        async with self._lock_for(chat_id):
            collaboration = await self.get(chat_id)
            collaborator = collaboration.find_collaborator_by_email(actor.email)
            if collaborator is None:
                raise NotFoundError("No invitation found for this user")

            if collaborator.role != CollaboratorRole.OWNER:
                if accept:
                    collaborator.status = CollaboratorStatus.ACCEPTED
                    collaborator.joinedAt = self.clock()
                else:
                    collaborator.status = CollaboratorStatus.REJECTED
                await self._save(collaboration)

        logger.info(
            "%s %s the invitation to chat %s",
            actor.email,
            "accepted" if accept else "rejected",
            chat_id,
        )
        return collaborator, collaboration

    async def mark_invitation_accepted(self, chat_id: str, email: str) -> bool:
        """Flip a pending collaborator to accepted. Returns False if nothing changed."""
        async with self._lock_for(chat_id):
            collaboration = await self.store.load(chat_id)
            if collaboration is None:
                return False
            collaborator = collaboration.find_collaborator_by_email(email)
            if collaborator is None or collaborator.status != CollaboratorStatus.PENDING:
                return False
            collaborator.status = CollaboratorStatus.ACCEPTED
            collaborator.joinedAt = self.clock()
            await self._save(collaboration)
        return True

    # =========================================================================
    # Presence roster (no owner gate; keyed by the caller's own identity)
    # =========================================================================

    async def upsert_presence(
        self, chat_id: str, user: UserRef, cursor: Optional[Cursor] = None
    ) -> List[PresenceEntry]:
        """Refresh ``user``'s roster entry and return the non-stale roster."""
        async with self._lock_for(chat_id):
            collaboration = await self.get_or_create(chat_id, user)
            now = self.clock()
            collaboration.activeUsers = roster.upsert_entry(
                collaboration.activeUsers,
                email=user.email,
                name=user.name or default_name(user.email),
                now=now,
                cursor=cursor,
                ttl=self.ttl,
            )
            await self._save(collaboration)
        return collaboration.activeUsers

    async def read_presence(self, chat_id: str) -> List[PresenceEntry]:
        """Non-stale roster; an unknown chat has an empty roster.

        Stale entries found on read are pruned from the stored aggregate too.
        """
        async with self._lock_for(chat_id):
            collaboration = await self.store.load(chat_id)
            if collaboration is None:
                return []
            active = roster.evict_stale(collaboration.activeUsers, self.clock(), self.ttl)
            if len(active) != len(collaboration.activeUsers):
                collaboration.activeUsers = active
                await self._save(collaboration)
        return active

    async def remove_presence(self, chat_id: str, email: str) -> List[PresenceEntry]:
        async with self._lock_for(chat_id):
            collaboration = await self.store.load(chat_id)
            if collaboration is None:
                return []
            before = len(collaboration.activeUsers)
            remaining = roster.evict_stale(
                roster.remove_entry(collaboration.activeUsers, email), self.clock(), self.ttl
            )
            if len(remaining) != before:
                collaboration.activeUsers = remaining
                await self._save(collaboration)
        return remaining

    # =========================================================================
    # Live chat messages
    # =========================================================================

    async def record_message(self, chat_id: str, sender: UserRef, text: str) -> ChatMessage:
        message = ChatMessage(chatId=chat_id, sender=sender, text=text, timestamp=self.clock())
        return await self.store.append_message(message)

    async def list_messages(
        self, chat_id: str, before: Optional[datetime] = None, limit: int = DEFAULT_PAGE_SIZE
    ) -> List[ChatMessage]:
        limit = min(limit, MAX_PAGE_SIZE)
        return await self.store.list_messages(chat_id, before, limit)
