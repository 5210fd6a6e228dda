"""LOTO Work Permit blueprint.

REST API for submitting permits and moving them through the approval chain.

Endpoints:
    GET   /api/loto-work-permit                 list (status, plant, date_from, date_to)
    POST  /api/loto-work-permit                 submit a new permit (form-access gate)
    GET   /api/loto-work-permit/pending         the caller's approval queue
    GET   /api/loto-work-permit/summary         status counts for dashboards
    GET   /api/loto-work-permit/<id>            one permit
    POST  /api/loto-work-permit/<id>/approve    advance one stage
    POST  /api/loto-work-permit/<id>/reject     reject; body {"reason": "..."}
    PUT   /api/loto-work-permit/<id>            partial update of form fields

Layer contract:
    - Blueprint: read the caller and JSON body, call the service, shape the
      response.  Service exceptions are mapped by the handlers below.
    - NO db.session writes here; permit_service owns every transaction.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from loto.core.exceptions import (
    AlreadyFinalizedError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from loto.middleware.form_access import require_form_access
from loto.models import db
from loto.models.permit import FORM_NAME
from loto.services import permit_service
from loto.services.identity import current_identity
from loto.utils.errors import E, api_error

logger = logging.getLogger(__name__)

permit_bp = Blueprint("loto_work_permit", __name__, url_prefix="/api/loto-work-permit")

# Client-facing message for unexpected failures, per endpoint.
_FAILURE_MESSAGES = {
    "list_permits": "Failed to fetch records",
    "pending_permits": "Failed to fetch records",
    "permit_summary": "Failed to fetch records",
    "get_permit": "Failed to fetch records",
    "create_permit": "Failed to create record",
    "approve_permit": "Approval failed",
    "reject_permit": "Reject failed",
    "edit_permit": "Update failed",
}


def _failure_message() -> str:
    endpoint = (request.endpoint or "").rpartition(".")[2]
    return _FAILURE_MESSAGES.get(endpoint, "Internal server error")


def _json_body() -> dict:
    """Request body as a dict; an absent body is an empty dict."""
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True):
            raise ValidationError("Malformed JSON body")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Error handlers ────────────────────────────────────────────────────────────


@permit_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    logger.info("%s", error)
    return api_error(E.NOT_FOUND, "Not found")


@permit_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@permit_bp.errorhandler(AlreadyFinalizedError)
def _handle_finalized(error: AlreadyFinalizedError):
    logger.info("Permit %s is %s: %s", error.permit_id, error.status, error)
    return api_error(E.ALREADY_FINALIZED, str(error))


@permit_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    logger.warning("Permit %s in unexpected state %r: %s", error.permit_id, error.status, error)
    return api_error(E.INVALID_STATE, str(error))


@permit_bp.errorhandler(PermissionDeniedError)
def _handle_forbidden(error: PermissionDeniedError):
    details = {"role": error.role, "required": error.required} if error.required else None
    return api_error(E.FORBIDDEN, str(error), details=details)


@permit_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in permit endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, _failure_message())


@permit_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in permit endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, _failure_message())


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════


@permit_bp.route("", methods=["GET"])
def list_permits():
    """All permits, newest permit date first.

    Query params: status, plant (substring), date_from, date_to (YYYY-MM-DD)
    """
    filters = permit_service.parse_filters(request.args)
    return jsonify(permit_service.list_permits(filters)), 200


@permit_bp.route("/pending", methods=["GET"])
def pending_permits():
    """Permits waiting on the caller's role; admin sees all pending."""
    caller = current_identity()
    return jsonify(permit_service.pending_for_role(caller.role)), 200


@permit_bp.route("/summary", methods=["GET"])
def permit_summary():
    filters = permit_service.parse_filters(request.args)
    return jsonify(permit_service.summarize_permits(filters)), 200


@permit_bp.route("/<int:permit_id>", methods=["GET"])
def get_permit(permit_id: int):
    return jsonify(permit_service.get_permit(permit_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════


@permit_bp.route("", methods=["POST"])
@require_form_access(FORM_NAME)
def create_permit():
    """Submit a permit.  It always starts at PENDING_BAY.

    Body: form fields only; workflow fields are ignored.
    Returns: 201 {"message", "record"}.
    """
    record = permit_service.create_permit(_json_body(), current_identity())
    return jsonify({"message": "LOTO Work Permit submitted successfully", "record": record}), 201


@permit_bp.route("/<int:permit_id>/approve", methods=["POST"])
def approve_permit(permit_id: int):
    """Approve the current stage.

    Returns 200 on success, 400 if finalized, 403 if it is not the
    caller's turn, 404 if the permit does not exist.
    """
    record = permit_service.approve_permit(permit_id, current_identity())
    return jsonify({"message": "Approved", "record": record}), 200


@permit_bp.route("/<int:permit_id>/reject", methods=["POST"])
def reject_permit(permit_id: int):
    """Reject the permit at its current stage.  Body: {"reason": "..."} (optional)."""
    reason = _json_body().get("reason")
    record = permit_service.reject_permit(permit_id, current_identity(), reason)
    return jsonify({"message": "Rejected", "record": record}), 200


@permit_bp.route("/<int:permit_id>", methods=["PUT"])
def edit_permit(permit_id: int):
    """Update form fields of a permit that is not yet finalized.

    The role check runs before the body is looked at, so a caller without
    edit rights gets 403 even for a malformed body.
    """
    # A malformed body reaches the service as None and fails field parsing.
    data = request.get_json(silent=True) if request.get_data(cache=True) else {}
    record = permit_service.edit_permit(permit_id, current_identity(), data)
    return jsonify({"message": "Updated", "record": record}), 200
