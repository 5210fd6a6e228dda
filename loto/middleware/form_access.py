"""
Form-access gate — capability check for submitting a form.

Usage:
    @bp.route("/api/loto-work-permit", methods=["POST"])
    @require_form_access(FORM_NAME)
    def create_permit():
        ...

When FORM_ACCESS_ENABLED is false the decorator passes every request
through. When enabled, the caller must be admin, hold one of the approver
roles, or carry the form name in the token's ``forms`` claim.
"""

import functools
import logging

from flask import current_app

from loto.models.permit import APPROVER_ROLES, Role
from loto.services.identity import Identity, current_identity
from loto.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def has_form_access(caller: Identity, form_name: str) -> bool:
    if caller.role == Role.ADMIN.value or caller.role in APPROVER_ROLES:
        return True
    return form_name in caller.forms


def require_form_access(form_name: str):
    """
    Decorator: require the caller to be allowed to submit *form_name*.

    Args:
        form_name: Display name of the form, e.g. "LOTO Work Permit"
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if not current_app.config.get("FORM_ACCESS_ENABLED", True):
                return f(*args, **kwargs)

            caller = current_identity()
            if not has_form_access(caller, form_name):
                logger.warning(
                    "Form access denied: %s (%s) on %r via %s",
                    caller.identity, caller.role, form_name, f.__name__,
                    extra={"identity": caller.identity, "role": caller.role},
                )
                return api_error(
                    E.FORBIDDEN,
                    f"No access to form {form_name!r}",
                    details={"form": form_name},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator
