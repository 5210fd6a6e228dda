"""Standardised API error responses.

Usage
-----
    from loto.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Not found")
    return api_error(E.ALREADY_FINALIZED, "Already finalized")
    return api_error(E.VALIDATION_INVALID, "Invalid field values", details={...})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Workflow state – HTTP 400
    ALREADY_FINALIZED = "ERR_ALREADY_FINALIZED"
    INVALID_STATE = "ERR_INVALID_STATE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Content type – HTTP 415
    UNSUPPORTED_MEDIA = "ERR_UNSUPPORTED_MEDIA"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_INVALID: 400,
    E.ALREADY_FINALIZED: 400,
    E.INVALID_STATE: 400,
    E.NOT_FOUND: 404,
    E.FORBIDDEN: 403,
    E.UNSUPPORTED_MEDIA: 415,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, required roles).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
