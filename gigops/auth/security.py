import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..errors import NotAuthenticated


http_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ActingIdentity:
    """The user on whose behalf a core operation runs. Passed explicitly, never read from ambient state."""
    user_id: uuid.UUID


def create_access_token(user_id: str, ttl_seconds: int = 3600, extra: Optional[dict] = None) -> str:
    # Tokens are normally minted by the auth service; kept here for tooling and tests.
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise NotAuthenticated("Invalid token")


def get_acting_identity(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Optional[ActingIdentity]:
    """
    Resolve the bearer token to an identity.

    Returns None when no credentials were sent; the core operations decide
    whether that is acceptable and raise NotAuthenticated themselves.
    """
    if creds is None:
        return None
    payload = decode_token(creds.credentials)
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except (TypeError, ValueError):
        raise NotAuthenticated("Invalid subject")
    return ActingIdentity(user_id=user_uuid)


def require_identity(identity: Optional[ActingIdentity]) -> ActingIdentity:
    if identity is None or identity.user_id is None:
        raise NotAuthenticated()
    return identity
