"""JWT issuance and verification (python-jose)."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from pydantic import BaseModel

from citruslab.collaboration.schemas import default_name, normalize_email

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a bearer token is missing claims, expired, or forged."""


class CurrentUser(BaseModel):
    """Authenticated caller, taken from the token claims."""
    email: str
    name: str


def issue_token(
    email: str,
    name: Optional[str],
    secret_key: str,
    algorithm: str = "HS256",
    expire_minutes: int = 60 * 24 * 7,
) -> str:
    """Sign a token whose subject is the normalized email.

    Raises:
        ValueError: ``email`` is not a valid address.
    """
    email = normalize_email(email)
    now = datetime.now(timezone.utc)
    claims = {
        "sub": email,
        "name": name or default_name(email),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expire_minutes)).timestamp()),
    }
    return jwt.encode(claims, secret_key, algorithm=algorithm)


def decode_token(token: str, secret_key: str, algorithm: str = "HS256") -> CurrentUser:
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
    except ExpiredSignatureError:
        raise TokenError("Token has expired")
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise TokenError("Token verification failed")

    subject = payload.get("sub")
    if not subject:
        raise TokenError("Missing required claim: 'sub'")
    try:
        email = normalize_email(subject)
    except ValueError:
        raise TokenError("Claim 'sub' is not an email address")

    return CurrentUser(email=email, name=payload.get("name") or default_name(email))
