"""
Identity Resolver — caller identity and role from a bearer credential.

Fail-open to anonymous: a missing, malformed, expired or badly signed
token resolves to ``Identity("unknown", "user")`` instead of failing the
request. Authorization happens later, in the permit service's role checks
and the form-access gate, which reject the unprivileged ``user`` role.

Usage:
    from loto.services.identity import current_identity

    caller = current_identity()
    caller.identity, caller.role
"""

import logging
from dataclasses import dataclass

import jwt as pyjwt
from flask import g, has_request_context, request

from loto.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

ANONYMOUS_IDENTITY = "unknown"
ANONYMOUS_ROLE = "user"


@dataclass(frozen=True)
class Identity:
    """Who is calling, as far as the permit workflow is concerned."""

    identity: str
    role: str
    forms: tuple[str, ...] = ()

    @property
    def is_anonymous(self) -> bool:
        return self.identity == ANONYMOUS_IDENTITY and self.role == ANONYMOUS_ROLE


ANONYMOUS = Identity(ANONYMOUS_IDENTITY, ANONYMOUS_ROLE)


def _identity_from_payload(payload: dict) -> Identity:
    name = payload.get("username") or payload.get("sub") or payload.get("id")
    role = payload.get("role")
    if not role:
        roles = payload.get("roles") or []
        role = roles[0] if isinstance(roles, list) and roles else ANONYMOUS_ROLE
    forms = payload.get("forms") or []
    if not isinstance(forms, list):
        forms = []
    return Identity(
        identity=str(name) if name not in (None, "") else ANONYMOUS_IDENTITY,
        role=str(role),
        forms=tuple(str(f) for f in forms),
    )


def resolve_identity(authorization: str | None) -> Identity:
    """Resolve an ``Authorization`` header value to an Identity.

    Never raises; anything unverifiable yields ANONYMOUS.
    """
    if not authorization:
        return ANONYMOUS

    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        logger.debug("Ignoring non-bearer Authorization header")
        return ANONYMOUS

    try:
        payload = decode_access_token(token)
    except pyjwt.ExpiredSignatureError:
        logger.debug("Bearer token expired — treating caller as anonymous")
        return ANONYMOUS
    except pyjwt.InvalidTokenError as exc:
        logger.debug("Bearer token rejected (%s) — treating caller as anonymous", exc)
        return ANONYMOUS

    return _identity_from_payload(payload)


def current_identity() -> Identity:
    """Identity of the caller of the current request.

    The JWT middleware stores it on ``g.identity``; outside that hook the
    header is resolved on demand.
    """
    if not has_request_context():
        return ANONYMOUS
    caller = getattr(g, "identity", None)
    if caller is None:
        caller = resolve_identity(request.headers.get("Authorization"))
        g.identity = caller
    return caller
