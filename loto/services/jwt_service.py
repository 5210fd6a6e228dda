"""
JWT Service — bearer token generation and verification.

Tokens are issued by the plant's login service; this module only needs to
verify them. ``generate_access_token`` exists for the ``issue-token`` CLI
command and for tests.

Access token:  15 minutes (configurable via JWT_ACCESS_EXPIRES)
Algorithm:     HS256

Token payload:
{
    "sub": <username>,
    "username": <username>,
    "role": "bay_manager" | "maintenance_incharge" | "safety_incharge" | "admin" | ...,
    "forms": ["LOTO Work Permit", ...],     # optional form-access grants
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}

Tokens minted by the login service carry ``username``/``id`` and ``role``
without ``type``; they are accepted as access tokens.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app


# ─── Defaults ────────────────────────────────────────────────
DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes
ALGORITHM = "HS256"


def _get_secret():
    """Get the JWT secret key from app config."""
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


# ═══════════════════════════════════════════════════════════════
# Token Generation
# ═══════════════════════════════════════════════════════════════
def generate_access_token(
    username: str,
    role: str,
    forms: list[str] | None = None,
    expires_in: int | None = None,
) -> str:
    """Generate a signed access token for *username* acting as *role*."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "username": username,
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=expires_in or _get_access_expires()),
        "jti": str(uuid.uuid4()),
    }
    if forms:
        payload["forms"] = list(forms)
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


# ═══════════════════════════════════════════════════════════════
# Token Verification
# ═══════════════════════════════════════════════════════════════
def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Returns the payload dict on success.
    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])

    token_type = payload.get("type")
    if token_type is not None and token_type != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {token_type}")

    return payload
