"""Pydantic schemas for the collaboration module.

Field names follow the JSON the web client already speaks (camelCase), the
same way the chat room models do.
"""
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str) -> str:
    """Lower-case and validate an email address used as an identity key."""
    email = (value or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValueError("must be a valid email address")
    return email


def default_name(email: str) -> str:
    """Derive a display name from the local part: ``ana@x.com`` -> ``Ana``."""
    local = email.split("@")[0]
    return local[:1].upper() + local[1:]


class CollaboratorRole(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


class CollaboratorStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Roles that can be granted by invite, role change, or share link
GrantableRole = Literal["editor", "viewer"]


class Cursor(BaseModel):
    position: int = 0
    color: str = ""


class UserRef(BaseModel):
    """Minimal user identity carried by live events and message senders."""
    email: str
    name: str = ""

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)


class PresenceEntry(BaseModel):
    """One participant in a chat's active-users roster.

    Attributes:
        email: Identity key; at most one entry per email per roster.
        name: Display name.
        lastActive: Refreshed on every upsert; drives TTL eviction.
        cursor: Editor cursor position and the user's highlight color.
    """
    email: str
    name: str = ""
    lastActive: datetime = Field(default_factory=utcnow)
    cursor: Cursor = Field(default_factory=Cursor)


class Collaborator(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    email: str
    name: str = ""
    role: CollaboratorRole = CollaboratorRole.VIEWER
    status: CollaboratorStatus = CollaboratorStatus.PENDING
    invitedAt: datetime = Field(default_factory=utcnow)
    joinedAt: Optional[datetime] = None


class Collaboration(BaseModel):
    """Persisted collaboration aggregate for one chat."""
    chatId: str
    owner: str
    collaborators: List[Collaborator] = Field(default_factory=list)
    shareLink: Optional[str] = None
    shareLinkEnabled: bool = False
    shareLinkExpiry: Optional[datetime] = None
    shareLinkRole: GrantableRole = "viewer"
    activeUsers: List[PresenceEntry] = Field(default_factory=list)
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    def find_collaborator(self, collaborator_id: str) -> Optional[Collaborator]:
        return next((c for c in self.collaborators if c.id == collaborator_id), None)

    def find_collaborator_by_email(self, email: str) -> Optional[Collaborator]:
        return next((c for c in self.collaborators if c.email == email), None)


class ChatMessage(BaseModel):
    """A message sent over the live connection, kept for history."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    chatId: str
    text: str
    sender: UserRef
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Request bodies
# =============================================================================


class InviteRequest(BaseModel):
    email: str
    role: GrantableRole = "viewer"
    name: Optional[str] = Field(default=None, max_length=100)
    chatTitle: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)


class RoleUpdateRequest(BaseModel):
    role: GrantableRole


class ShareLinkRequest(BaseModel):
    expiresInHours: Optional[int] = Field(default=None, ge=1, le=24 * 365)
    role: GrantableRole = "viewer"


class PresenceUpdateRequest(BaseModel):
    """Stateless presence update; identity comes from the bearer token."""
    name: Optional[str] = Field(default=None, max_length=100)
    cursor: Optional[Cursor] = None


class InvitationResponseRequest(BaseModel):
    accept: bool = True


class EmailStatus(BaseModel):
    sent: bool
    provider: str
    error: Optional[str] = None
