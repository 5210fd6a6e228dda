"""
Permit service — approval transitions, audit stamps and rollback behaviour.
"""

from datetime import date

import pytest
from sqlalchemy.dialects import postgresql

from loto.core.exceptions import (
    AlreadyFinalizedError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from loto.models import db
from loto.models.permit import LotoWorkPermit
from loto.services import permit_service


def _reload(permit_id):
    db.session.expire_all()
    return db.session.get(LotoWorkPermit, permit_id)


# ═════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_starts_at_first_stage(self, caller, permit_form):
        record = permit_service.create_permit(permit_form, caller("user", "op1"))
        assert record["id"] is not None
        assert record["status"] == "PENDING_BAY"
        assert record["current_approver_role"] == "bay_manager"
        assert record["permit_date"] == "2024-03-05"
        assert record["permit_issuing_time"] == "08:30:00"
        assert record["mcb_off_lock_condition_shift1"] is True
        assert record["no_of_persons_working_in_machine_shift1"] == 3

    def test_workflow_fields_in_body_are_ignored(self, caller, permit_form):
        payload = {
            **permit_form,
            "status": "APPROVED",
            "current_approver_role": "safety_incharge",
            "bay_manager_approved_by": "forged",
            "id": 999,
            "not_a_field": "x",
        }
        record = permit_service.create_permit(payload, caller("admin"))
        assert record["status"] == "PENDING_BAY"
        assert record["current_approver_role"] == "bay_manager"
        assert record["bay_manager_approved_by"] is None
        assert record["id"] != 999

    def test_invalid_value_writes_nothing(self, caller, permit_form):
        with pytest.raises(ValidationError) as exc:
            permit_service.create_permit(
                {**permit_form, "permit_date": "yesterday"}, caller("user"),
            )
        assert "permit_date" in exc.value.details
        assert db.session.query(LotoWorkPermit).count() == 0

    def test_non_object_body(self, caller):
        with pytest.raises(ValidationError):
            permit_service.create_permit(["not", "a", "dict"], caller("user"))


# ═════════════════════════════════════════════════════════════════════════
# Approve
# ═════════════════════════════════════════════════════════════════════════


class TestApprove:
    def test_full_chain(self, caller, make_permit):
        pid = make_permit()

        r1 = permit_service.approve_permit(pid, caller("bay_manager", "bm1"))
        assert r1["status"] == "PENDING_MAINTENANCE"
        assert r1["current_approver_role"] == "maintenance_incharge"
        assert r1["bay_manager_approved_by"] == "bm1"
        assert r1["bay_manager_approved_at"] is not None

        r2 = permit_service.approve_permit(pid, caller("maintenance_incharge", "mi1"))
        assert r2["status"] == "PENDING_SAFETY"
        assert r2["current_approver_role"] == "safety_incharge"
        assert r2["bay_manager_approved_by"] == "bm1"
        assert r2["bay_manager_approved_at"][:19] == r1["bay_manager_approved_at"][:19]

        r3 = permit_service.approve_permit(pid, caller("safety_incharge", "si1"))
        assert r3["status"] == "APPROVED"
        assert r3["current_approver_role"] is None
        assert r3["maintenance_incharge_approved_by"] == "mi1"
        assert r3["safety_incharge_approved_by"] == "si1"

    def test_admin_can_approve_any_stage(self, caller, make_permit):
        pid = make_permit("PENDING_SAFETY")
        record = permit_service.approve_permit(pid, caller("admin", "root"))
        assert record["status"] == "APPROVED"
        assert record["safety_incharge_approved_by"] == "root"

    def test_wrong_role_is_denied_without_writes(self, caller, make_permit):
        pid = make_permit("PENDING_MAINTENANCE")
        with pytest.raises(PermissionDeniedError) as exc:
            permit_service.approve_permit(pid, caller("bay_manager"))
        assert str(exc.value) == "Not permitted for this step"
        assert exc.value.required == "maintenance_incharge"

        permit = _reload(pid)
        assert permit.status == "PENDING_MAINTENANCE"
        assert permit.maintenance_incharge_approved_by is None

    def test_anonymous_is_denied(self, caller, make_permit):
        pid = make_permit()
        with pytest.raises(PermissionDeniedError):
            permit_service.approve_permit(pid, caller("user", "unknown"))

    @pytest.mark.parametrize("status", ["APPROVED", "REJECTED"])
    def test_finalized(self, caller, make_permit, status):
        pid = make_permit(status)
        with pytest.raises(AlreadyFinalizedError):
            permit_service.approve_permit(pid, caller("admin"))

    def test_not_found(self, caller):
        with pytest.raises(NotFoundError):
            permit_service.approve_permit(12345, caller("admin"))

    def test_null_role_falls_back_to_status(self, caller, make_permit):
        pid = make_permit("PENDING_MAINTENANCE", current_approver_role=None)

        with pytest.raises(PermissionDeniedError):
            permit_service.approve_permit(pid, caller("bay_manager"))

        record = permit_service.approve_permit(pid, caller("maintenance_incharge", "mi9"))
        assert record["status"] == "PENDING_SAFETY"
        assert record["maintenance_incharge_approved_by"] == "mi9"

    def test_unknown_status_is_invalid_state(self, caller, make_permit):
        pid = make_permit("ON_HOLD", current_approver_role="bay_manager")
        with pytest.raises(InvalidStateError):
            permit_service.approve_permit(pid, caller("admin"))
        assert _reload(pid).status == "ON_HOLD"

    def test_already_signed_stage_is_not_overwritten(self, caller, make_permit):
        pid = make_permit("PENDING_BAY", bay_manager_approved_by="earlier")
        with pytest.raises(InvalidStateError):
            permit_service.approve_permit(pid, caller("bay_manager", "bm2"))
        permit = _reload(pid)
        assert permit.bay_manager_approved_by == "earlier"
        assert permit.status == "PENDING_BAY"

    def test_sequential_double_approve(self, caller, make_permit):
        pid = make_permit()
        permit_service.approve_permit(pid, caller("bay_manager", "bm1"))

        with pytest.raises(PermissionDeniedError):
            permit_service.approve_permit(pid, caller("bay_manager", "bm2"))

        permit = _reload(pid)
        assert permit.status == "PENDING_MAINTENANCE"
        assert permit.bay_manager_approved_by == "bm1"

    def test_stale_session_copy_is_refreshed_under_lock(self, caller, make_permit):
        pid = make_permit()
        stale = db.session.get(LotoWorkPermit, pid)
        assert stale.status == "PENDING_BAY"

        db.session.execute(
            LotoWorkPermit.__table__.update()
            .where(LotoWorkPermit.id == pid)
            .values(status="REJECTED", current_approver_role=None)
        )
        db.session.commit()

        with pytest.raises(AlreadyFinalizedError):
            permit_service.approve_permit(pid, caller("bay_manager"))

    def test_lock_statement_selects_for_update(self):
        stmt = permit_service.lock_statement(1)
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE" in sql
        assert stmt.get_execution_options().get("populate_existing") is True


# ═════════════════════════════════════════════════════════════════════════
# Reject
# ═════════════════════════════════════════════════════════════════════════


class TestReject:
    def test_reject_with_reason(self, caller, make_permit):
        pid = make_permit("PENDING_SAFETY")
        record = permit_service.reject_permit(pid, caller("safety_incharge", "si1"), "Air line open")
        assert record["status"] == "REJECTED"
        assert record["current_approver_role"] is None
        assert record["rejected_by"] == "si1"
        assert record["rejected_at"] is not None
        assert record["rejection_reason"] == "Air line open"

    def test_blank_reason_is_null(self, caller, make_permit):
        pid = make_permit()
        record = permit_service.reject_permit(pid, caller("bay_manager"), "   ")
        assert record["rejection_reason"] is None

    def test_reason_is_stored_as_sent(self, caller, make_permit):
        pid = make_permit()
        record = permit_service.reject_permit(pid, caller("bay_manager"), " guard missing ")
        assert record["rejection_reason"] == " guard missing "

    def test_wrong_role(self, caller, make_permit):
        pid = make_permit("PENDING_BAY")
        with pytest.raises(PermissionDeniedError):
            permit_service.reject_permit(pid, caller("safety_incharge"))
        assert _reload(pid).rejected_by is None

    def test_rejected_is_absorbing(self, caller, make_permit):
        pid = make_permit()
        permit_service.reject_permit(pid, caller("bay_manager"))
        with pytest.raises(AlreadyFinalizedError):
            permit_service.reject_permit(pid, caller("admin"))
        with pytest.raises(AlreadyFinalizedError):
            permit_service.approve_permit(pid, caller("admin"))

    def test_non_string_reason(self, caller, make_permit):
        pid = make_permit()
        with pytest.raises(ValidationError):
            permit_service.reject_permit(pid, caller("bay_manager"), {"why": "x"})


# ═════════════════════════════════════════════════════════════════════════
# Edit
# ═════════════════════════════════════════════════════════════════════════


class TestEdit:
    def test_any_approver_may_edit_at_any_stage(self, caller, make_permit):
        pid = make_permit("PENDING_BAY")
        record = permit_service.edit_permit(pid, caller("safety_incharge"), {"machine_no": "PR-99"})
        assert record["machine_no"] == "PR-99"
        assert record["status"] == "PENDING_BAY"

    def test_text_is_stored_as_sent(self, caller, make_permit):
        pid = make_permit()
        permit_service.edit_permit(pid, caller("admin"), {"line_name": "  Line 7 ", "bay_no": ""})
        permit = _reload(pid)
        assert permit.line_name == "  Line 7 "
        assert permit.bay_no == ""

    def test_workflow_fields_are_never_written(self, caller, make_permit):
        pid = make_permit()
        record = permit_service.edit_permit(
            pid, caller("admin"), {"plant": "Plant 2", "status": "APPROVED", "rejected_by": "x"},
        )
        assert record["plant"] == "Plant 2"
        assert record["status"] == "PENDING_BAY"
        assert record["rejected_by"] is None

    def test_user_role_is_denied(self, caller, make_permit):
        pid = make_permit()
        with pytest.raises(PermissionDeniedError) as exc:
            permit_service.edit_permit(pid, caller("user"), {"plant": "X"})
        assert str(exc.value) == "Not permitted to edit LOTO permit"

    def test_role_checked_before_existence(self, caller):
        with pytest.raises(PermissionDeniedError):
            permit_service.edit_permit(999, caller("user"), {"plant": "X"})

    @pytest.mark.parametrize("status", ["APPROVED", "REJECTED"])
    def test_finalized_cannot_be_edited(self, caller, make_permit, status):
        pid = make_permit(status, plant="Plant 1")
        with pytest.raises(AlreadyFinalizedError) as exc:
            permit_service.edit_permit(pid, caller("admin"), {"plant": "Plant 3"})
        assert str(exc.value) == "Cannot edit finalized permit"
        assert _reload(pid).plant == "Plant 1"

    def test_no_recognised_fields(self, caller, make_permit):
        pid = make_permit()
        with pytest.raises(ValidationError) as exc:
            permit_service.edit_permit(pid, caller("admin"), {"status": "APPROVED"})
        assert str(exc.value) == "No fields to update"

    def test_not_found(self, caller):
        with pytest.raises(NotFoundError):
            permit_service.edit_permit(999, caller("admin"), {"plant": "X"})

    def test_bad_value_leaves_row_untouched(self, caller, make_permit):
        pid = make_permit(plant="Plant 1")
        with pytest.raises(ValidationError):
            permit_service.edit_permit(
                pid, caller("admin"), {"plant": "Plant 5", "no_of_persons_working_in_machine_shift1": "many"},
            )
        assert _reload(pid).plant == "Plant 1"


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_list_newest_first(self, make_permit):
        older = make_permit(permit_date=date(2024, 1, 1))
        newer = make_permit(permit_date=date(2024, 2, 1))
        same_day = make_permit(permit_date=date(2024, 2, 1))
        undated = make_permit()

        ids = [p["id"] for p in permit_service.list_permits()]
        assert ids == [same_day, newer, older, undated]

    def test_filters(self, make_permit):
        make_permit("PENDING_BAY", plant="North Plant", permit_date=date(2024, 1, 10))
        keep = make_permit("APPROVED", plant="North Plant", permit_date=date(2024, 1, 20))
        make_permit("APPROVED", plant="South Plant", permit_date=date(2024, 1, 20))
        make_permit("APPROVED", plant="north plant", permit_date=date(2024, 3, 1))

        filters = permit_service.parse_filters({
            "status": "APPROVED", "plant": "NORTH", "date_from": "2024-01-15", "date_to": "2024-02-01",
        })
        assert [p["id"] for p in permit_service.list_permits(filters)] == [keep]

    def test_invalid_filters(self):
        with pytest.raises(ValidationError):
            permit_service.parse_filters({"status": "DONE"})
        with pytest.raises(ValidationError):
            permit_service.parse_filters({"date_from": "01/02/2024"})
        with pytest.raises(ValidationError):
            permit_service.parse_filters({"date_from": "2024-02-02", "date_to": "2024-02-01"})

    def test_blank_filters_ignored(self):
        assert permit_service.parse_filters({"status": "", "plant": "  "}) == {}

    def test_get_permit(self, make_permit):
        pid = make_permit(bd_slip_no="BD-77")
        assert permit_service.get_permit(pid)["bd_slip_no"] == "BD-77"
        with pytest.raises(NotFoundError):
            permit_service.get_permit(pid + 1)

    def test_pending_queue_per_role(self, make_permit):
        bay = make_permit("PENDING_BAY")
        maint = make_permit("PENDING_MAINTENANCE")
        legacy_maint = make_permit("PENDING_MAINTENANCE", current_approver_role=None)
        safety = make_permit("PENDING_SAFETY")
        make_permit("APPROVED")
        make_permit("REJECTED")

        def queue(role):
            return {p["id"] for p in permit_service.pending_for_role(role)}

        assert queue("bay_manager") == {bay}
        assert queue("maintenance_incharge") == {maint, legacy_maint}
        assert queue("safety_incharge") == {safety}
        assert queue("admin") == {bay, maint, legacy_maint, safety}
        assert queue("user") == set()

    def test_summary(self, make_permit):
        make_permit("PENDING_BAY", plant="A")
        make_permit("PENDING_SAFETY", plant="A")
        make_permit("APPROVED", plant="A")
        make_permit("APPROVED", plant="B")
        make_permit("REJECTED", plant="B")

        summary = permit_service.summarize_permits()
        assert summary["total"] == 5
        assert summary["approved"] == 2
        assert summary["rejected"] == 1
        assert summary["pending"] == 2
        assert summary["by_status"]["PENDING_MAINTENANCE"] == 0
        assert summary["total"] == sum(summary["by_status"].values())

        only_b = permit_service.summarize_permits({"plant": "B"})
        assert only_b["total"] == 2
        assert only_b["pending"] == 0
