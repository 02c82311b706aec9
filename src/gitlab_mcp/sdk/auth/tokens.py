"""Credential codec: PKCE, gateway access tokens and random identifiers.

Gateway access tokens are HS256 JWTs. Refresh tokens, authorization codes and
flow correlators are opaque random strings from ``secrets``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
import uuid
from collections.abc import Mapping
from typing import Any

import jwt

from .records import OAuthSession

TOKEN_ALGORITHM = "HS256"
PKCE_METHOD_S256 = "S256"

# Refresh provider tokens this long before they actually expire.
TOKEN_REFRESH_BUFFER_MS = 5 * 60 * 1000

USERNAME_CLAIM = "gitlab_username"
REQUIRED_CLAIMS = ("iss", "sub", "aud", "sid", "scope", USERNAME_CLAIM, "iat", "exp")


def now_ms() -> int:
    return int(time.time() * 1000)


def issue_token(
    claims: Mapping[str, Any],
    secret: str,
    ttl_seconds: int,
    *,
    issued_at: int | None = None,
) -> str:
    """Sign ``claims`` with ``iat``/``exp`` added.

    Args:
        claims: Claims to bind into the token
        secret: HMAC signing secret
        ttl_seconds: Lifetime of the token
        issued_at: Override for ``iat`` in seconds (defaults to now)
    """
    iat = int(time.time()) if issued_at is None else issued_at
    payload = {**claims, "iat": iat, "exp": iat + ttl_seconds}
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def verify_token(token: str, secret: str) -> dict[str, Any] | None:
    """Return the token's claims, or None if it is invalid.

    Invalid covers a bad signature, a malformed token, an ``exp`` in the past and
    any missing required claim. The audience is the client id and is not pinned here.
    """
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": list(REQUIRED_CLAIMS), "verify_aud": False},
        )
    except jwt.PyJWTError:
        return None


def create_access_token(
    session: OAuthSession, *, secret: str, issuer: str, ttl_seconds: int
) -> str:
    """Mint a gateway access token carrying the session's identity and scopes."""
    claims = {
        "iss": issuer,
        "sub": session.provider_user_id,
        "aud": session.client_id,
        "sid": session.session_id,
        "scope": " ".join(session.scopes),
        USERNAME_CLAIM: session.provider_username,
        # Unique per issue so rotation always yields a new token.
        "jti": secrets.token_hex(8),
    }
    return issue_token(claims, secret, ttl_seconds)


# ── PKCE ───────────────────────────────────────────────────────────────────────
def generate_code_verifier() -> str:
    return secrets.token_urlsafe(48)


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(verifier: str, challenge: str, method: str | None) -> bool:
    """Check a PKCE pair. Only S256 is accepted; anything else fails closed."""
    if method != PKCE_METHOD_S256 or not verifier or not challenge:
        return False
    return hmac.compare_digest(generate_code_challenge(verifier), challenge)


# ── Expiry ─────────────────────────────────────────────────────────────────────
def is_expiring_soon(expiry_ms: int, buffer_ms: int = TOKEN_REFRESH_BUFFER_MS) -> bool:
    """True when the token expires within ``buffer_ms`` (or already has)."""
    return now_ms() + buffer_ms >= expiry_ms


def is_expired(expires_at_ms: int) -> bool:
    return now_ms() > expires_at_ms


# ── Identifiers ────────────────────────────────────────────────────────────────
def generate_session_id() -> str:
    return str(uuid.uuid4())


def generate_authorization_code() -> str:
    return secrets.token_urlsafe(24)


def generate_refresh_token() -> str:
    return secrets.token_hex(32)


def generate_state() -> str:
    return secrets.token_hex(16)


def generate_client_secret() -> str:
    return secrets.token_urlsafe(32)


__all__ = [
    "PKCE_METHOD_S256",
    "REQUIRED_CLAIMS",
    "TOKEN_REFRESH_BUFFER_MS",
    "USERNAME_CLAIM",
    "create_access_token",
    "generate_authorization_code",
    "generate_client_secret",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_refresh_token",
    "generate_session_id",
    "generate_state",
    "is_expired",
    "is_expiring_soon",
    "issue_token",
    "now_ms",
    "verify_code_challenge",
    "verify_token",
]
