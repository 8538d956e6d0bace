"""
Identity mapping.

Session tokens are issued by Clerk. We only verify them (RS256, against the
instance JWKS or a configured PEM key) and map the ``sub`` claim to an
internal user, creating it on first sight.
"""
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional

import requests
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from . import crud
from .config import Settings, get_settings
from .database import get_db
from .errors import AuthorizationError, DependencyError
from .models import User

logger = logging.getLogger(__name__)

ALGORITHMS = ["RS256"]

# Security scheme for Bearer token; missing credentials are reported as our own 401
security = HTTPBearer(auto_error=False)


@dataclass
class Identity:
    subject: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None

    def profile(self) -> Dict[str, Optional[str]]:
        return {
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "image_url": self.image_url,
        }


class JWKSClient:
    """Fetches and caches the identity provider's signing keys."""

    def __init__(self, url: str, ttl_seconds: int = 3600):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._keys: Dict[str, dict] = {}
        self._fetched_at = 0.0

    def _refresh(self) -> None:
        try:
            response = requests.get(self.url, timeout=5)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error("Failed to fetch JWKS from %s: %s", self.url, e)
            raise DependencyError("Identity provider is unavailable") from e
        self._keys = {key["kid"]: key for key in response.json().get("keys", []) if "kid" in key}
        self._fetched_at = time.monotonic()

    def get_key(self, kid: Optional[str]) -> dict:
        expired = time.monotonic() - self._fetched_at > self.ttl_seconds
        if expired or kid not in self._keys:
            # unknown kid may mean the provider rotated its keys
            self._refresh()
        key = self._keys.get(kid)
        if key is None:
            raise AuthorizationError.unauthenticated("Unknown token signing key")
        return key


@lru_cache
def _jwks_client(url: str) -> JWKSClient:
    return JWKSClient(url)


def decode_session_token(token: str, settings: Settings) -> dict:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise AuthorizationError.unauthenticated("Invalid session token") from e

    if settings.clerk_jwt_key:
        key = settings.clerk_jwt_key
    elif settings.clerk_jwks_url:
        key = _jwks_client(settings.clerk_jwks_url).get_key(header.get("kid"))
    else:
        raise DependencyError("Identity provider is not configured. Set CLERK_JWKS_URL or CLERK_JWT_KEY.")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=ALGORITHMS,
            issuer=settings.clerk_issuer or None,
            options={"verify_aud": False},
        )
    except ExpiredSignatureError as e:
        raise AuthorizationError.unauthenticated("Session expired") from e
    except JWTError as e:
        raise AuthorizationError.unauthenticated("Invalid session token") from e


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise AuthorizationError.unauthenticated()

    claims = decode_session_token(credentials.credentials, settings)
    subject = claims.get("sub")
    if not subject:
        raise AuthorizationError.unauthenticated("Session token has no subject")
    return Identity(
        subject=subject,
        email=claims.get("email"),
        first_name=claims.get("first_name"),
        last_name=claims.get("last_name"),
        image_url=claims.get("image_url"),
    )


def get_current_user(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> User:
    return crud.upsert_user_from_identity(db, identity.subject, identity.profile())


def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise AuthorizationError("Not enough permissions. Admin access required.")
    return current_user
