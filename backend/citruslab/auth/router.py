"""Auth router.

Endpoints:
    POST /auth/token  - Issue a bearer token for an email (when enabled)
    GET  /auth/me     - Echo the caller resolved from the bearer token
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from citruslab.collaboration.schemas import normalize_email
from citruslab.config import AppConfig

from .deps import get_current_user
from .tokens import CurrentUser, issue_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class TokenRequest(BaseModel):
    email: str
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)


@router.post("/token")
async def create_token(request: Request, body: TokenRequest) -> dict:
    config: AppConfig = request.app.state.config
    if not config.auth.allow_token_issuance:
        raise HTTPException(status_code=403, detail="Token issuance is disabled")

    token = issue_token(
        body.email,
        body.name,
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.auth.algorithm,
        expire_minutes=config.auth.token_expire_minutes,
    )
    logger.info(f"Issued token for {body.email}")
    return {
        "success": True,
        "accessToken": token,
        "tokenType": "bearer",
        "expiresIn": config.auth.token_expire_minutes * 60,
    }


@router.get("/me")
async def me(user: CurrentUser = Depends(get_current_user)) -> dict:
    return {"success": True, "user": user}
