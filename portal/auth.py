"""
Auth:
- BootstrapCredentials: the static token / master PIN / fixed login used to
  bootstrap and test the admin path; gated by BOOTSTRAP_ENABLED
- TokenIssuer: signs and verifies bearer tokens
- get_current_identity / get_optional_identity / require_admin: FastAPI dependencies
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from portal.config import Settings
from portal.errors import AuthError

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"

_auth_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    email: str
    role: str = ROLE_MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class BootstrapCredentials:
    """Hardcoded credentials for bootstrapping; never consulted when disabled."""

    def __init__(self, enabled: bool, token: str, pin: str, email: str, password: str):
        self.enabled = enabled
        self.token = token
        self.pin = pin
        self.email = email
        self.password = password

    @classmethod
    def from_settings(cls, settings: Settings) -> "BootstrapCredentials":
        return cls(
            enabled=settings.bootstrap_enabled,
            token=settings.bootstrap_token,
            pin=settings.bootstrap_pin,
            email=settings.bootstrap_email,
            password=settings.bootstrap_password,
        )

    @property
    def identity(self) -> Identity:
        return Identity(email=self.email, role=ROLE_ADMIN)

    def _matches(self, expected: str, given: Optional[str]) -> bool:
        return (
            self.enabled
            and bool(expected)
            and given is not None
            and secrets.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))
        )

    def match_token(self, token: str) -> Optional[Identity]:
        if self._matches(self.token, token):
            logger.warning("Request authenticated with the bootstrap bearer token")
            return self.identity
        return None

    def match_pin(self, pin: str) -> Optional[Identity]:
        if self._matches(self.pin, pin):
            logger.warning("PIN login with the bootstrap master PIN")
            return self.identity
        return None

    def match_login(self, email: str, password: str) -> Optional[Identity]:
        if self._matches(self.email, email) and self._matches(self.password, password):
            logger.warning(f"Password login with bootstrap credentials for {email}")
            return self.identity
        return None

    def is_reserved_pin(self, pin: str) -> bool:
        return self.enabled and pin == self.pin


class TokenIssuer:
    """HS256 bearer tokens carrying the identity's email and role."""

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_minutes: int = 720):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl = timedelta(minutes=ttl_minutes)

    def issue(self, identity: Identity) -> str:
        now = datetime.now(timezone.utc)
        claims = {"sub": identity.email, "role": identity.role, "iat": now, "exp": now + self.ttl}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Identity:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.PyJWTError as exc:
            raise AuthError("Invalid or expired token") from exc
        return Identity(email=claims["sub"], role=claims.get("role", ROLE_MEMBER))


def role_for(email: str, settings: Settings) -> str:
    admins = {e.strip().lower() for e in settings.admin_emails}
    return ROLE_ADMIN if email.strip().lower() in admins else ROLE_MEMBER


def authenticate_token(request: Request, token: str) -> Identity:
    bootstrap: BootstrapCredentials = request.app.state.bootstrap
    identity = bootstrap.match_token(token)
    if identity is not None:
        return identity
    issuer: TokenIssuer = request.app.state.token_issuer
    return issuer.verify(token)


def get_current_identity(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_auth_scheme),
) -> Identity:
    """Resolve ``Authorization: Bearer <token>`` into an Identity or fail with 401."""
    if not creds or creds.scheme.lower() != "bearer" or not creds.credentials:
        raise AuthError("Unauthorized")
    return authenticate_token(request, creds.credentials)


def get_optional_identity(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_auth_scheme),
) -> Optional[Identity]:
    """Like get_current_identity, but anonymous callers get None."""
    if not creds or creds.scheme.lower() != "bearer" or not creds.credentials:
        return None
    try:
        return authenticate_token(request, creds.credentials)
    except AuthError:
        return None


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise AuthError("Unauthorized")
    return identity
