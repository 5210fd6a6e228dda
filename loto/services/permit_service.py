"""
LOTO Work Permit Service — approval state machine and permit queries.

Every state-changing operation runs as one transaction:

    SELECT ... FOR UPDATE  →  read  →  validate  →  write  →  COMMIT

Validation failures raise before anything is written and the transaction
is rolled back. The row lock is held until commit or rollback, so two
approvals of the same permit serialize: the second one re-reads the
advanced status and fails with AlreadyFinalizedError or
PermissionDeniedError. There is no version column and no lock across
permits.

Business rules (roles, stage order, terminal states) live in
``loto.models.permit``; this module applies them under the lock and writes
the audit stamps.

Usage:
    from loto.services import permit_service

    record = permit_service.approve_permit(42, current_identity())
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy import and_, func, or_, select

from loto.core.exceptions import (
    AlreadyFinalizedError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from loto.models import db
from loto.models.permit import (
    APPROVER_ROLES,
    EDIT_ROLES,
    FORM_FIELDS,
    PENDING_STATUSES,
    PERMIT_STATUSES,
    PERMIT_TABLE,
    LotoWorkPermit,
    PermitStatus,
    Role,
    can_act,
    can_edit,
    expected_approver,
    is_finalized,
    next_approver_for,
    stage_for,
    status_awaiting,
)
from loto.services.identity import Identity
from loto.services.schema_guard import ensure_schema

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tag_transaction(caller: Identity) -> None:
    """Expose the caller to database-side audit triggers (PostgreSQL only).

    ``set_config(..., true)`` scopes the setting to the current transaction.
    """
    if db.session.get_bind().dialect.name != "postgresql":
        return
    db.session.execute(
        db.text("SELECT set_config('app.current_user', :user, true)"),
        {"user": caller.identity},
    )


@contextmanager
def _transaction(caller: Identity):
    """Run the block in a single transaction; roll back on any exception."""
    ensure_schema()
    try:
        _tag_transaction(caller)
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def lock_statement(permit_id: int):
    """SELECT of one permit row under an exclusive row lock.

    populate_existing makes the ORM overwrite any copy already in the
    session identity map with the row as read under the lock.
    """
    return (
        select(LotoWorkPermit)
        .where(LotoWorkPermit.id == permit_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _lock_permit(permit_id: int) -> LotoWorkPermit:
    permit = db.session.execute(lock_statement(permit_id)).scalar_one_or_none()
    if permit is None:
        raise NotFoundError(resource=PERMIT_TABLE, resource_id=permit_id)
    return permit


def _check_actionable(permit: LotoWorkPermit, caller: Identity) -> str:
    """Shared guard for approve and reject.  Returns the expected role."""
    if is_finalized(permit.status):
        raise AlreadyFinalizedError(permit.id, permit.status)
    if stage_for(permit.status) is None:
        raise InvalidStateError(permit.id, permit.status)

    expected = expected_approver(permit)
    if not can_act(caller.role, expected):
        logger.warning(
            "Permit %s: role %r may not act on %s (expected %r)",
            permit.id, caller.role, permit.status, expected,
            extra={"permit_id": permit.id, "identity": caller.identity, "role": caller.role},
        )
        raise PermissionDeniedError(
            "Not permitted for this step", role=caller.role, required=expected,
        )
    return expected


def parse_form_fields(payload) -> dict:
    """Pick the recognised form fields out of *payload* and coerce them.

    Unknown keys (including workflow columns such as ``status``) are
    ignored. Raises ValidationError listing every field that failed to
    convert.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    values: dict = {}
    errors: dict[str, str] = {}
    for name, field in FORM_FIELDS.items():
        if name not in payload:
            continue
        try:
            values[name] = field.coerce(payload[name])
        except (TypeError, ValueError) as exc:
            errors[name] = str(exc)
    if errors:
        raise ValidationError("Invalid permit field values", details=errors)
    return values


def _log_transition(record: dict, caller: Identity, from_status: str, action: str) -> None:
    logger.info(
        "Permit %s %s by %s (%s): %s -> %s",
        record["id"], action, caller.identity, caller.role, from_status, record["status"],
        extra={
            "permit_id": record["id"],
            "identity": caller.identity,
            "role": caller.role,
            "from_status": from_status,
            "to_status": record["status"],
        },
    )


# ── Public API: workflow ───────────────────────────────────────────────────────


def create_permit(payload, caller: Identity) -> dict:
    """Insert a new permit at the start of the approval chain.

    Any workflow values in *payload* are ignored: the permit always starts
    as PENDING_BAY awaiting the bay manager, with no approval stamps.
    """
    fields = parse_form_fields(payload)
    with _transaction(caller):
        permit = LotoWorkPermit(**fields)
        permit.status = PermitStatus.PENDING_BAY.value
        permit.current_approver_role = Role.BAY_MANAGER.value
        db.session.add(permit)
        db.session.flush()
        record = permit.to_dict()

    logger.info(
        "Permit %s submitted by %s",
        record["id"], caller.identity,
        extra={
            "permit_id": record["id"],
            "identity": caller.identity,
            "role": caller.role,
            "to_status": record["status"],
        },
    )
    return record


def approve_permit(permit_id: int, caller: Identity) -> dict:
    """Advance a permit one stage along the approval chain.

    Raises:
        NotFoundError, AlreadyFinalizedError, InvalidStateError,
        PermissionDeniedError
    """
    with _transaction(caller):
        permit = _lock_permit(permit_id)
        _check_actionable(permit, caller)

        stage = stage_for(permit.status)
        signed_by, signed_at = permit.stage_signature(stage.role)
        if signed_by is not None or signed_at is not None:
            raise InvalidStateError(permit.id, permit.status, "Stage already signed")

        from_status = permit.status
        permit.status = stage.next_status
        permit.current_approver_role = next_approver_for(from_status)
        permit.sign_stage(stage.role, caller.identity, _utcnow())
        db.session.flush()
        record = permit.to_dict()

    _log_transition(record, caller, from_status, "approved")
    return record


def reject_permit(permit_id: int, caller: Identity, reason: str | None = None) -> dict:
    """Terminate a pending permit as REJECTED.

    *reason* is optional; blank reasons are stored as NULL.

    Raises:
        NotFoundError, AlreadyFinalizedError, InvalidStateError,
        PermissionDeniedError
    """
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("reason must be a string")

    with _transaction(caller):
        permit = _lock_permit(permit_id)
        _check_actionable(permit, caller)

        from_status = permit.status
        permit.status = PermitStatus.REJECTED.value
        permit.current_approver_role = None
        permit.rejected_by = caller.identity
        permit.rejected_at = _utcnow()
        permit.rejection_reason = reason if reason and reason.strip() else None
        db.session.flush()
        record = permit.to_dict()

    _log_transition(record, caller, from_status, "rejected")
    return record


def edit_permit(permit_id: int, caller: Identity, payload) -> dict:
    """Partially update the form fields of a permit that is still pending.

    Any approver role (or admin) may edit, regardless of whose turn it is.
    Only recognised form fields present in *payload* are written; workflow
    columns are never touched.

    Raises:
        PermissionDeniedError, NotFoundError, AlreadyFinalizedError,
        ValidationError
    """
    if not can_edit(caller.role):
        logger.warning(
            "Edit of permit %s denied for role %r", permit_id, caller.role,
            extra={"permit_id": permit_id, "identity": caller.identity, "role": caller.role},
        )
        raise PermissionDeniedError(
            "Not permitted to edit LOTO permit", role=caller.role, required=sorted(EDIT_ROLES),
        )

    with _transaction(caller):
        permit = _lock_permit(permit_id)
        if is_finalized(permit.status):
            raise AlreadyFinalizedError(permit.id, permit.status, "Cannot edit finalized permit")

        fields = parse_form_fields(payload)
        if not fields:
            raise ValidationError("No fields to update")

        for name, value in fields.items():
            setattr(permit, name, value)
        db.session.flush()
        record = permit.to_dict()

    logger.info(
        "Permit %s edited by %s (%s): %s",
        permit_id, caller.identity, caller.role, ", ".join(sorted(fields)),
        extra={"permit_id": permit_id, "identity": caller.identity, "role": caller.role},
    )
    return record


# ── Public API: queries ────────────────────────────────────────────────────────


def _parse_filter_date(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(
            f"{name} must be an ISO date (YYYY-MM-DD)", details={name: value},
        ) from None


def parse_filters(args) -> dict:
    """Validate list/summary query parameters.

    Accepted keys: status, plant, date_from, date_to. Blank values are
    treated as absent.
    """
    filters: dict = {}

    status = (args.get("status") or "").strip()
    if status:
        if status not in PERMIT_STATUSES:
            raise ValidationError(
                f"status must be one of {sorted(PERMIT_STATUSES)}", details={"status": status},
            )
        filters["status"] = status

    plant = (args.get("plant") or "").strip()
    if plant:
        filters["plant"] = plant

    for name in ("date_from", "date_to"):
        raw = (args.get(name) or "").strip()
        if raw:
            filters[name] = _parse_filter_date(raw, name)

    if "date_from" in filters and "date_to" in filters and filters["date_from"] > filters["date_to"]:
        raise ValidationError("date_from must not be after date_to")
    return filters


def _apply_filters(stmt, filters: dict):
    if "status" in filters:
        stmt = stmt.where(LotoWorkPermit.status == filters["status"])
    if "plant" in filters:
        pattern = f"%{filters['plant'].lower()}%"
        stmt = stmt.where(func.lower(LotoWorkPermit.plant).like(pattern))
    if "date_from" in filters:
        stmt = stmt.where(LotoWorkPermit.permit_date >= filters["date_from"])
    if "date_to" in filters:
        stmt = stmt.where(LotoWorkPermit.permit_date <= filters["date_to"])
    return stmt


def _newest_first(stmt):
    return stmt.order_by(LotoWorkPermit.permit_date.desc().nulls_last(), LotoWorkPermit.id.desc())


def list_permits(filters: dict | None = None) -> list[dict]:
    """All permits matching *filters*, newest permit date first."""
    ensure_schema()
    stmt = _newest_first(_apply_filters(select(LotoWorkPermit), filters or {}))
    return [p.to_dict() for p in db.session.execute(stmt).scalars().all()]


def get_permit(permit_id: int) -> dict:
    ensure_schema()
    permit = db.session.get(LotoWorkPermit, permit_id)
    if permit is None:
        raise NotFoundError(resource=PERMIT_TABLE, resource_id=permit_id)
    return permit.to_dict()


def pending_for_role(role: str) -> list[dict]:
    """Permits waiting on *role* — the approver's work queue.

    Rows with a NULL current_approver_role are matched by status, the same
    fallback approve/reject use. Admin sees every pending permit; roles
    outside the approval chain get an empty queue.
    """
    ensure_schema()
    stmt = select(LotoWorkPermit).where(LotoWorkPermit.status.in_(PENDING_STATUSES))
    if role == Role.ADMIN.value:
        pass
    elif role in APPROVER_ROLES:
        stmt = stmt.where(or_(
            LotoWorkPermit.current_approver_role == role,
            and_(
                LotoWorkPermit.current_approver_role.is_(None),
                LotoWorkPermit.status == status_awaiting(role),
            ),
        ))
    else:
        return []
    return [p.to_dict() for p in db.session.execute(_newest_first(stmt)).scalars().all()]


def summarize_permits(filters: dict | None = None) -> dict:
    """Status counts for the tracking dashboard.

    Returns:
        {
            "total": 12, "approved": 5, "rejected": 1, "pending": 6,
            "by_status": {"PENDING_BAY": 2, "PENDING_MAINTENANCE": 3, ...},
        }
    """
    ensure_schema()
    stmt = _apply_filters(
        select(LotoWorkPermit.status, func.count(LotoWorkPermit.id)),
        filters or {},
    ).group_by(LotoWorkPermit.status)

    by_status = {status.value: 0 for status in PermitStatus}
    for status, count in db.session.execute(stmt).all():
        by_status[status] = by_status.get(status, 0) + count

    return {
        "total": sum(by_status.values()),
        "approved": by_status[PermitStatus.APPROVED.value],
        "rejected": by_status[PermitStatus.REJECTED.value],
        "pending": sum(by_status[s] for s in PENDING_STATUSES),
        "by_status": by_status,
    }
