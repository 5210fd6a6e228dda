"""
JWT Auth Middleware — resolves the caller of every /api/ request.

Stores an ``Identity`` on ``g.identity``. The resolver fails open: no token,
or a token that does not verify, yields the anonymous ``unknown``/``user``
identity. Nothing is rejected here; the permit service and the form-access
gate decide what that identity may do.
"""

from flask import g, request

from loto.services.identity import ANONYMOUS, resolve_identity

# Paths that skip identity resolution entirely
JWT_SKIP_PREFIXES = (
    "/api/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.identity = ANONYMOUS

        path = request.path
        if not path.startswith("/api/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        g.identity = resolve_identity(request.headers.get("Authorization"))
