"""
LOTO Work Permit — model, form-field schema and approval rules.

One row per Lockout-Tagout work permit submission. The row carries the
submitted form (header + shift checklist) and the workflow columns that
track it through the sequential approval chain:

    PENDING_BAY          ──bay_manager──────────▶ PENDING_MAINTENANCE
    PENDING_MAINTENANCE  ──maintenance_incharge─▶ PENDING_SAFETY
    PENDING_SAFETY       ──safety_incharge──────▶ APPROVED

Any PENDING_* permit may be moved to REJECTED by the role that owns its
current stage. APPROVED and REJECTED are terminal.

Workflow columns are flagged with ``info={"workflow": True}``; older
deployments created the table without them and the schema guard
(``loto.services.schema_guard``) adds them on startup.

The rules at the bottom of this module are pure functions over status and
role strings so they can be tested without a database.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import NamedTuple

from loto.models import db

PERMIT_TABLE = "LOTO Work Permit"
FORM_NAME = "LOTO Work Permit"


class PermitStatus(str, Enum):
    PENDING_BAY = "PENDING_BAY"
    PENDING_MAINTENANCE = "PENDING_MAINTENANCE"
    PENDING_SAFETY = "PENDING_SAFETY"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Role(str, Enum):
    BAY_MANAGER = "bay_manager"
    MAINTENANCE_INCHARGE = "maintenance_incharge"
    SAFETY_INCHARGE = "safety_incharge"
    ADMIN = "admin"
    USER = "user"


PERMIT_STATUSES = frozenset(s.value for s in PermitStatus)

PENDING_STATUSES = frozenset({
    PermitStatus.PENDING_BAY.value,
    PermitStatus.PENDING_MAINTENANCE.value,
    PermitStatus.PENDING_SAFETY.value,
})

TERMINAL_STATUSES = frozenset({
    PermitStatus.APPROVED.value,
    PermitStatus.REJECTED.value,
})

APPROVER_ROLES = frozenset({
    Role.BAY_MANAGER.value,
    Role.MAINTENANCE_INCHARGE.value,
    Role.SAFETY_INCHARGE.value,
})

# Any approver may correct data entry at any stage, not only the role whose
# turn it is.
EDIT_ROLES = APPROVER_ROLES | {Role.ADMIN.value}


# ── Column helpers ───────────────────────────────────────────────────────────


def _text(length, kind="text"):
    return db.Column(db.String(length), nullable=True, info={"form": kind})


def _check():
    """One checklist tick for one shift."""
    return db.Column(db.Boolean, nullable=True, info={"form": "bool"})


def _headcount():
    return db.Column(db.Integer, nullable=True, info={"form": "int"})


def _workflow(column_type, **kwargs):
    kwargs.setdefault("nullable", True)
    return db.Column(column_type, info={"workflow": True}, **kwargs)


class LotoWorkPermit(db.Model):
    """A LOTO work permit and its approval trail.

    Audit columns follow the ``<stage>_approved_by`` / ``<stage>_approved_at``
    naming, where ``<stage>`` is the approver role of that stage. Each pair
    is written exactly once, in the transaction that moves the permit past
    the stage.
    """

    __tablename__ = PERMIT_TABLE

    id = db.Column(db.Integer, primary_key=True)

    # ── Header ───────────────────────────────────────────────────────────
    bd_slip_no = _text(50)
    permit_date = db.Column(db.Date, nullable=True, index=True, info={"form": "date"})
    permit_issuing_time = db.Column(db.Time, nullable=True, info={"form": "time"})
    permit_closing_time = db.Column(db.Time, nullable=True, info={"form": "time"})
    shift = _text(20)
    plant = _text(100)
    department = _text(100)
    bay_no = _text(50)
    line_name = _text(100)
    machine_no = _text(50)

    # ── Shift checklist ──────────────────────────────────────────────────
    presence_of_bay_manager_shift1 = _check()
    presence_of_bay_manager_shift2 = _check()
    presence_of_bay_manager_shift3 = _check()

    presence_of_maintenance_incharge_shift1 = _check()
    presence_of_maintenance_incharge_shift2 = _check()
    presence_of_maintenance_incharge_shift3 = _check()

    no_of_persons_working_in_machine_shift1 = _headcount()
    no_of_persons_working_in_machine_shift2 = _headcount()
    no_of_persons_working_in_machine_shift3 = _headcount()

    emergency_switch_operator_panel_off_condition_shift1 = _check()
    emergency_switch_operator_panel_off_condition_shift2 = _check()
    emergency_switch_operator_panel_off_condition_shift3 = _check()

    emergency_switch_cycle_start_panel_off_condition_shift1 = _check()
    emergency_switch_cycle_start_panel_off_condition_shift2 = _check()
    emergency_switch_cycle_start_panel_off_condition_shift3 = _check()

    emergency_switch_conveyor_panel_off_condition_shift1 = _check()
    emergency_switch_conveyor_panel_off_condition_shift2 = _check()
    emergency_switch_conveyor_panel_off_condition_shift3 = _check()

    mcb_off_lock_condition_shift1 = _check()
    mcb_off_lock_condition_shift2 = _check()
    mcb_off_lock_condition_shift3 = _check()

    air_line_close_condition_shift1 = _check()
    air_line_close_condition_shift2 = _check()
    air_line_close_condition_shift3 = _check()

    men_at_work_board_mcb_panel_shift1 = _check()
    men_at_work_board_mcb_panel_shift2 = _check()
    men_at_work_board_mcb_panel_shift3 = _check()

    men_at_work_do_not_operate_machine_board_operator_panel_shift1 = _check()
    men_at_work_do_not_operate_machine_board_operator_panel_shift2 = _check()
    men_at_work_do_not_operate_machine_board_operator_panel_shift3 = _check()

    men_at_work_board_air_valve_shift1 = _check()
    men_at_work_board_air_valve_shift2 = _check()
    men_at_work_board_air_valve_shift3 = _check()

    # ── Workflow ─────────────────────────────────────────────────────────
    status = _workflow(
        db.String(30),
        nullable=False,
        default=PermitStatus.PENDING_BAY.value,
        server_default=db.text("'PENDING_BAY'"),
        index=True,
    )
    current_approver_role = _workflow(
        db.String(50),
        default=Role.BAY_MANAGER.value,
        server_default=db.text("'bay_manager'"),
    )
    bay_manager_approved_by = _workflow(db.Text)
    bay_manager_approved_at = _workflow(db.DateTime(timezone=True))
    maintenance_incharge_approved_by = _workflow(db.Text)
    maintenance_incharge_approved_at = _workflow(db.DateTime(timezone=True))
    safety_incharge_approved_by = _workflow(db.Text)
    safety_incharge_approved_at = _workflow(db.DateTime(timezone=True))
    rejected_by = _workflow(db.Text)
    rejected_at = _workflow(db.DateTime(timezone=True))
    rejection_reason = _workflow(db.Text)

    def stage_signature(self, role: str) -> tuple[str | None, datetime | None]:
        """Return the ``(approved_by, approved_at)`` pair for a stage role."""
        return (
            getattr(self, f"{role}_approved_by"),
            getattr(self, f"{role}_approved_at"),
        )

    def sign_stage(self, role: str, identity: str, at: datetime) -> None:
        setattr(self, f"{role}_approved_by", identity)
        setattr(self, f"{role}_approved_at", at)

    def to_dict(self) -> dict:
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            # datetime is a date subclass
            if isinstance(value, (date, time)):
                value = value.isoformat()
            data[column.key] = value
        return data

    def __repr__(self) -> str:
        return f"<LotoWorkPermit #{self.id} {self.status}>"


WORKFLOW_COLUMNS = tuple(
    c for c in LotoWorkPermit.__table__.columns if c.info.get("workflow")
)


# ═════════════════════════════════════════════════════════════════════════════
# Form-field schema
# ═════════════════════════════════════════════════════════════════════════════

_TRUE_WORDS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "n", "off"})


def _to_text(value, max_length):
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError("must be a string")
    text = str(value)
    if max_length and len(text) > max_length:
        raise ValueError(f"must be at most {max_length} characters")
    return text


def _to_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValueError("must be a boolean")


def _to_int(value):
    if isinstance(value, bool):
        raise ValueError("must be a whole number")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("must be a whole number")
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise ValueError("must be a whole number") from None
    elif not isinstance(value, int):
        raise ValueError("must be a whole number")
    if value < 0:
        raise ValueError("must not be negative")
    return value


def _to_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) > 10 and text[10] in "T ":
                # full ISO timestamp echoed back by a client
                return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
            return date.fromisoformat(text)
        except ValueError:
            pass
    raise ValueError("must be an ISO date (YYYY-MM-DD)")


def _to_time(value):
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValueError("must be a time (HH:MM or HH:MM:SS)")


class FormField(NamedTuple):
    name: str
    kind: str
    max_length: int | None = None

    def coerce(self, value):
        """Convert a submitted JSON value to the column's Python type.

        ``None`` clears the field. Text is kept as sent; a blank string
        clears any other kind. Raises ValueError with a short reason when
        the value cannot be converted.
        """
        if value is None:
            return None
        if self.kind == "text":
            return _to_text(value, self.max_length)
        if isinstance(value, str) and not value.strip():
            return None
        if self.kind == "bool":
            return _to_bool(value)
        if self.kind == "int":
            return _to_int(value)
        if self.kind == "date":
            return _to_date(value)
        if self.kind == "time":
            return _to_time(value)
        raise ValueError(f"unsupported field kind {self.kind!r}")


# Closed set of fields a client may submit on create or edit. Workflow
# columns are deliberately absent.
FORM_FIELDS: dict[str, FormField] = {
    c.name: FormField(c.name, c.info["form"], getattr(c.type, "length", None))
    for c in LotoWorkPermit.__table__.columns
    if "form" in c.info
}


# ═════════════════════════════════════════════════════════════════════════════
# Approval rules
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalStage(NamedTuple):
    status: str
    role: str
    next_status: str


APPROVAL_CHAIN = (
    ApprovalStage(
        PermitStatus.PENDING_BAY.value,
        Role.BAY_MANAGER.value,
        PermitStatus.PENDING_MAINTENANCE.value,
    ),
    ApprovalStage(
        PermitStatus.PENDING_MAINTENANCE.value,
        Role.MAINTENANCE_INCHARGE.value,
        PermitStatus.PENDING_SAFETY.value,
    ),
    ApprovalStage(
        PermitStatus.PENDING_SAFETY.value,
        Role.SAFETY_INCHARGE.value,
        PermitStatus.APPROVED.value,
    ),
)

_STAGE_BY_STATUS = {stage.status: stage for stage in APPROVAL_CHAIN}
_STATUS_BY_ROLE = {stage.role: stage.status for stage in APPROVAL_CHAIN}


def stage_for(status: str | None) -> ApprovalStage | None:
    """Return the approval stage a permit in *status* is waiting on."""
    return _STAGE_BY_STATUS.get(status)


def required_role_for(status: str | None) -> str | None:
    """Role that must act on a permit in *status*; None once finalized."""
    stage = stage_for(status)
    return stage.role if stage else None


def next_approver_for(status: str | None) -> str | None:
    """Role owning the permit after the stage at *status* is approved."""
    stage = stage_for(status)
    return required_role_for(stage.next_status) if stage else None


def status_awaiting(role: str) -> str | None:
    """Inverse of required_role_for: the status waiting on *role*."""
    return _STATUS_BY_ROLE.get(role)


def is_finalized(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


def expected_approver(permit: LotoWorkPermit) -> str | None:
    """Role allowed to approve or reject *permit* right now.

    Permits written before the workflow columns existed may carry a NULL
    current_approver_role; those are routed by their status instead.
    """
    return permit.current_approver_role or required_role_for(permit.status)


def can_act(role: str, expected_role: str | None) -> bool:
    if role == Role.ADMIN.value:
        return True
    return expected_role is not None and role == expected_role


def can_edit(role: str) -> bool:
    return role in EDIT_ROLES
