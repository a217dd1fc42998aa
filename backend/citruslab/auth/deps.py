"""FastAPI dependencies resolving the caller from ``Authorization: Bearer``."""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from citruslab.config import AppConfig

from .tokens import CurrentUser, TokenError, decode_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _decode(request: Request, token: str) -> CurrentUser:
    config: AppConfig = request.app.state.config
    return decode_token(token, config.secrets.jwt.secret_key, config.auth.algorithm)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    """Require a valid bearer token.

    Raises:
        HTTPException 401: Header missing, token expired or invalid.
    """
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return _decode(request, credentials.credentials)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[CurrentUser]:
    """Caller if a valid token was sent; None for anonymous or bad tokens."""
    if not credentials or not credentials.credentials:
        return None
    try:
        return _decode(request, credentials.credentials)
    except TokenError:
        logger.debug("Ignoring invalid bearer token on a public route")
        return None
