"""Collaboration router.

Endpoints:
    GET  /collaboration/shared/{token}              - Resolve a share link
    GET  /collaboration/invitation/{token}          - Same, for invitation links
    POST /collaboration/invitation/{token}/respond  - Accept or reject an invite
    GET  /collaboration/{chatId}                    - Get or create the aggregate
    POST /collaboration/{chatId}                    - Get or create the aggregate
    POST /collaboration/{chatId}/invite             - Invite a collaborator (owner)
    PATCH  /collaboration/{chatId}/collaborators/{id} - Change role (owner)
    DELETE /collaboration/{chatId}/collaborators/{id} - Remove (owner)
    POST   /collaboration/{chatId}/share-link       - Regenerate share link (owner)
    DELETE /collaboration/{chatId}/share-link       - Disable share link (owner)
    POST /collaboration/{chatId}/active-users       - Stateless presence update
    GET  /collaboration/{chatId}/active-users       - Presence roster
    GET  /collaboration/{chatId}/online             - Users with a live socket
    GET  /collaboration/{chatId}/messages           - Live message history

Share and invitation lookups are declared first so ``shared`` and
``invitation`` are never captured as a chat id.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from citruslab.auth.deps import get_current_user, get_optional_user
from citruslab.auth.tokens import CurrentUser
from citruslab.realtime.hub import PresenceHub

from .schemas import (
    InvitationResponseRequest,
    InviteRequest,
    PresenceUpdateRequest,
    RoleUpdateRequest,
    ShareLinkRequest,
    UserRef,
)
from .service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, CollaborationService
from .store import document_of

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/collaboration", tags=["collaboration"])


def get_service(request: Request) -> CollaborationService:
    return request.app.state.service


def get_hub(request: Request) -> PresenceHub:
    return request.app.state.hub


def _actor(user: CurrentUser) -> UserRef:
    return UserRef(email=user.email, name=user.name)


# =============================================================================
# Share / invitation tokens (bearer optional)
# =============================================================================


@router.get("/shared/{token}")
@router.get("/invitation/{token}")
async def access_shared_chat(
    token: str,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    info = await service.resolve_share_token(token, user.email if user else None)
    return {"success": True, **info}


@router.post("/invitation/{token}/respond")
async def respond_to_invitation(
    token: str,
    body: InvitationResponseRequest,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
    hub: PresenceHub = Depends(get_hub),
) -> dict:
    actor = _actor(user)
    collaborator, collaboration = await service.respond_to_invitation(token, actor, body.accept)
    if body.accept:
        await hub.announce_collaborator_joined(collaboration.chatId, actor)
    return {
        "success": True,
        "chatId": collaboration.chatId,
        "collaborator": collaborator,
        "message": "Invitation accepted" if body.accept else "Invitation rejected",
    }


# =============================================================================
# Aggregate
# =============================================================================


@router.get("/{chat_id}")
@router.post("/{chat_id}")
async def get_or_create_collaboration(
    chat_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    collaboration = await service.get_or_create(chat_id, _actor(user))
    return {
        "success": True,
        "collaboration": document_of(collaboration),
        "isOwner": collaboration.owner == user.email,
    }


# =============================================================================
# Collaborators (owner-gated)
# =============================================================================


@router.post("/{chat_id}/invite")
async def invite_collaborator(
    chat_id: str,
    body: InviteRequest,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
    hub: PresenceHub = Depends(get_hub),
) -> dict:
    actor = _actor(user)
    collaborator, collaboration, email_status = await service.invite(chat_id, actor, body)
    invitation_link = service.invitation_link(collaboration.shareLink)

    notified = await hub.notify_invitation(
        collaborator.email,
        {
            "chatId": chat_id,
            "chatTitle": body.chatTitle,
            "invitedBy": actor,
            "role": collaborator.role.value,
            "invitationLink": invitation_link,
        },
    )
    if not email_status.sent:
        logger.warning(
            f"Invite to {collaborator.email} saved but email not sent: {email_status.error}"
        )

    return {
        "success": True,
        "message": "User invited successfully",
        "collaborator": collaborator,
        "shareLink": collaboration.shareLink,
        "invitationLink": invitation_link,
        "emailStatus": email_status,
        "notifiedOnline": notified,
    }


@router.patch("/{chat_id}/collaborators/{collaborator_id}")
async def update_collaborator_role(
    chat_id: str,
    collaborator_id: str,
    body: RoleUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    collaborator = await service.update_role(chat_id, user.email, collaborator_id, body.role)
    return {"success": True, "message": "Role updated successfully", "collaborator": collaborator}


@router.delete("/{chat_id}/collaborators/{collaborator_id}")
async def remove_collaborator(
    chat_id: str,
    collaborator_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    removed = await service.remove_collaborator(chat_id, user.email, collaborator_id)
    return {"success": True, "message": "User removed successfully", "collaborator": removed}


# =============================================================================
# Share link (owner-gated)
# =============================================================================


@router.post("/{chat_id}/share-link")
async def generate_share_link(
    chat_id: str,
    body: Optional[ShareLinkRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    body = body or ShareLinkRequest()
    collaboration = await service.generate_share_link(
        chat_id, user.email, body.expiresInHours, body.role
    )
    return {
        "success": True,
        "shareLink": collaboration.shareLink,
        "shareLinkUrl": service.invitation_link(collaboration.shareLink),
        "expiresAt": collaboration.shareLinkExpiry,
        "role": collaboration.shareLinkRole,
    }


@router.delete("/{chat_id}/share-link")
async def disable_share_link(
    chat_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    await service.disable_share_link(chat_id, user.email)
    return {"success": True, "message": "Share link disabled"}


# =============================================================================
# Presence (stateless path) and live-session views
# =============================================================================


@router.post("/{chat_id}/active-users")
async def update_active_user(
    chat_id: str,
    body: Optional[PresenceUpdateRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    body = body or PresenceUpdateRequest()
    actor = UserRef(email=user.email, name=body.name or user.name)
    active_users = await service.upsert_presence(chat_id, actor, body.cursor)
    return {
        "success": True,
        "message": "Presence updated successfully",
        "activeUsers": active_users,
    }


@router.get("/{chat_id}/active-users")
async def get_active_users(
    chat_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    active_users = await service.read_presence(chat_id)
    return {"success": True, "activeUsers": active_users}


@router.get("/{chat_id}/online")
async def get_online_users(
    chat_id: str,
    user: CurrentUser = Depends(get_current_user),
    hub: PresenceHub = Depends(get_hub),
) -> dict:
    return {"success": True, "users": hub.online_users(chat_id)}


@router.get("/{chat_id}/messages")
async def get_messages(
    chat_id: str,
    before: Optional[datetime] = Query(default=None, description="Only messages older than this"),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: CurrentUser = Depends(get_current_user),
    service: CollaborationService = Depends(get_service),
) -> dict:
    messages = await service.list_messages(chat_id, before, limit)
    return {
        "success": True,
        "messages": messages,
        "hasMore": len(messages) == limit,
    }
