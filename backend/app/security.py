"""Administrator authentication for the gift card back-office.

A single admin account is configured through the environment:

* ``ADMIN_USERNAME``: login name, also matched to a customer email so ledger
  entries record who made them.
* ``ADMIN_PASSWORD_HASH``: output of :func:`generate_password_hash`.
* ``ADMIN_JWT_SECRET``: HMAC key for bearer tokens (base64 or raw text).
* ``ACCESS_TOKEN_EXPIRE_MINUTES``: optional token lifetime, default 30.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

ADMIN_USERNAME_ENV = "ADMIN_USERNAME"
ADMIN_PASSWORD_HASH_ENV = "ADMIN_PASSWORD_HASH"
ADMIN_JWT_SECRET_ENV = "ADMIN_JWT_SECRET"
ACCESS_TOKEN_EXPIRE_MINUTES_ENV = "ACCESS_TOKEN_EXPIRE_MINUTES"

PBKDF2_DEFAULT_ITERATIONS = 390_000
DEFAULT_TOKEN_MINUTES = 30
TOKEN_SCOPE = "gift-cards:admin"
_TOKEN_HEADER = {"alg": "HS256", "typ": "JWT"}

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class SecurityConfigurationError(RuntimeError):
    """Raised when mandatory security settings are missing or invalid."""


class TokenError(RuntimeError):
    """A bearer token that is malformed, forged, expired or out of scope."""


@dataclass
class AdminIdentity:
    username: str


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise SecurityConfigurationError(f"Environment variable '{name}' is required")
    return value


def _credentials_error(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


# ----------------------------------------------------------------------
# Passwords
# ----------------------------------------------------------------------
def generate_password_hash(password: str, *, iterations: int = PBKDF2_DEFAULT_ITERATIONS) -> str:
    """Return ``iterations$salt$digest`` (PBKDF2-SHA256) for ``ADMIN_PASSWORD_HASH``."""

    if not password:
        raise ValueError("password must not be empty")
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{iterations}${_b64encode(salt)}${_b64encode(digest)}"


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        iterations, salt, digest = stored_hash.split("$")
        rounds = int(iterations)
        expected = _b64decode(digest)
        candidate = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), _b64decode(salt), rounds)
    except (ValueError, binascii.Error) as exc:
        raise SecurityConfigurationError("Stored admin password hash is invalid") from exc
    return hmac.compare_digest(candidate, expected)


# ----------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------
@lru_cache(maxsize=1)
def signing_key() -> bytes:
    secret = _required_env(ADMIN_JWT_SECRET_ENV)
    try:
        return base64.urlsafe_b64decode(secret)
    except (ValueError, binascii.Error):
        return secret.encode("utf-8")


def _signature(key: bytes, signing_input: str) -> bytes:
    return hmac.new(key, signing_input.encode("ascii"), hashlib.sha256).digest()


def encode_token(claims: dict[str, Any], key: bytes) -> str:
    """Serialise ``claims`` as a compact HS256 JWT."""

    segments = [
        _b64encode(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (_TOKEN_HEADER, claims)
    ]
    signing_input = ".".join(segments)
    return f"{signing_input}.{_b64encode(_signature(key, signing_input))}"


def decode_token(token: str, key: bytes, *, now: datetime | None = None) -> dict[str, Any]:
    """Verify signature, expiry and scope of ``token`` and return its claims."""

    try:
        header_b64, claims_b64, signature_b64 = token.split(".")
        signature = _b64decode(signature_b64)
    except (ValueError, binascii.Error) as exc:
        raise TokenError("Invalid token") from exc
    if not hmac.compare_digest(signature, _signature(key, f"{header_b64}.{claims_b64}")):
        raise TokenError("Invalid token")

    try:
        claims = json.loads(_b64decode(claims_b64))
        expires = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (ValueError, KeyError, TypeError, binascii.Error) as exc:
        raise TokenError("Invalid token") from exc
    if (now or datetime.now(timezone.utc)) >= expires:
        raise TokenError("Token expired")
    if claims.get("scope") != TOKEN_SCOPE:
        raise TokenError("Invalid token")
    return claims


def _token_lifetime() -> timedelta:
    raw = os.getenv(ACCESS_TOKEN_EXPIRE_MINUTES_ENV)
    if not raw:
        return timedelta(minutes=DEFAULT_TOKEN_MINUTES)
    try:
        minutes = int(raw)
    except ValueError as exc:
        raise SecurityConfigurationError(
            f"{ACCESS_TOKEN_EXPIRE_MINUTES_ENV} must be an integer"
        ) from exc
    if minutes <= 0:
        raise SecurityConfigurationError(f"{ACCESS_TOKEN_EXPIRE_MINUTES_ENV} must be positive")
    return timedelta(minutes=minutes)


# ----------------------------------------------------------------------
# Admin account
# ----------------------------------------------------------------------
def _matches_admin(username: str) -> bool:
    return username.strip().lower() == _required_env(ADMIN_USERNAME_ENV).strip().lower()


def authenticate_admin(username: str, password: str) -> AdminIdentity:
    if not _matches_admin(username):
        raise _credentials_error("Invalid credentials")
    if not verify_password(password, _required_env(ADMIN_PASSWORD_HASH_ENV)):
        raise _credentials_error("Invalid credentials")
    return AdminIdentity(username=_required_env(ADMIN_USERNAME_ENV))


def create_access_token(identity: AdminIdentity) -> str:
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": identity.username,
        "scope": TOKEN_SCOPE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + _token_lifetime()).timestamp()),
    }
    return encode_token(claims, signing_key())


def get_current_admin(token: str = Depends(oauth2_scheme)) -> AdminIdentity:
    try:
        claims = decode_token(token, signing_key())
    except TokenError as exc:
        raise _credentials_error(str(exc)) from exc
    subject = claims.get("sub")
    if not isinstance(subject, str) or not _matches_admin(subject):
        raise _credentials_error("Invalid token")
    return AdminIdentity(username=_required_env(ADMIN_USERNAME_ENV))


def require_admin(identity: AdminIdentity = Depends(get_current_admin)) -> AdminIdentity:
    """FastAPI dependency that ensures the request is authenticated as an admin."""

    return identity
