import base64
import hashlib
import time

import jwt

from gitlab_mcp.sdk.auth.records import OAuthSession
from gitlab_mcp.sdk.auth.tokens import (
    TOKEN_REFRESH_BUFFER_MS,
    create_access_token,
    generate_authorization_code,
    generate_code_challenge,
    generate_code_verifier,
    generate_refresh_token,
    generate_session_id,
    generate_state,
    is_expired,
    is_expiring_soon,
    issue_token,
    now_ms,
    verify_code_challenge,
    verify_token,
)

SECRET = "s" * 32
OTHER_SECRET = "o" * 32


def _session() -> OAuthSession:
    now = now_ms()
    return OAuthSession(
        session_id="sess-1",
        provider_access_token="glpat",
        provider_token_expiry=now + 3_600_000,
        provider_user_id="42",
        provider_username="alice",
        client_id="client-1",
        scopes=["mcp:tools", "mcp:resources"],
        created_at=now,
        updated_at=now,
    )


def test_generate_code_challenge_matches_rfc7636_example() -> None:
    # Appendix B of RFC 7636.
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_verify_code_challenge_accepts_matching_s256() -> None:
    verifier = generate_code_verifier()
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    assert verify_code_challenge(verifier, challenge, "S256")


def test_verify_code_challenge_rejects_mismatch_and_other_methods() -> None:
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)

    assert not verify_code_challenge("something-else", challenge, "S256")
    # plain is not accepted even when verifier == challenge
    assert not verify_code_challenge(verifier, verifier, "plain")
    assert not verify_code_challenge(verifier, challenge, None)


def test_access_token_round_trip_carries_session_claims() -> None:
    token = create_access_token(_session(), secret=SECRET, issuer="https://gw", ttl_seconds=3600)

    claims = verify_token(token, SECRET)

    assert claims is not None
    assert claims["iss"] == "https://gw"
    assert claims["sub"] == "42"
    assert claims["aud"] == "client-1"
    assert claims["sid"] == "sess-1"
    assert claims["scope"] == "mcp:tools mcp:resources"
    assert claims["gitlab_username"] == "alice"
    assert claims["exp"] - claims["iat"] == 3600


def test_verify_token_rejects_wrong_secret() -> None:
    token = create_access_token(_session(), secret=SECRET, issuer="https://gw", ttl_seconds=3600)
    assert verify_token(token, OTHER_SECRET) is None


def test_verify_token_rejects_expired_token() -> None:
    claims = {
        "iss": "https://gw",
        "sub": "42",
        "aud": "client-1",
        "sid": "sess-1",
        "scope": "mcp:tools",
        "gitlab_username": "alice",
    }
    token = issue_token(claims, SECRET, 60, issued_at=int(time.time()) - 3600)
    assert verify_token(token, SECRET) is None


def test_verify_token_rejects_missing_required_claim() -> None:
    token = jwt.encode(
        {"iss": "https://gw", "sub": "42", "iat": int(time.time()), "exp": int(time.time()) + 60},
        SECRET,
        algorithm="HS256",
    )
    assert verify_token(token, SECRET) is None


def test_verify_token_rejects_garbage() -> None:
    assert verify_token("not-a-token", SECRET) is None


def test_expiry_helpers() -> None:
    now = now_ms()
    assert is_expired(now - 1)
    assert not is_expired(now + 60_000)
    assert is_expiring_soon(now + TOKEN_REFRESH_BUFFER_MS - 1_000)
    assert not is_expiring_soon(now + TOKEN_REFRESH_BUFFER_MS + 60_000)


def test_identifier_shapes() -> None:
    assert len(generate_authorization_code()) == 32
    assert len(generate_refresh_token()) == 64
    assert len(generate_state()) == 32
    assert len(generate_session_id()) == 36
    assert generate_refresh_token() != generate_refresh_token()
