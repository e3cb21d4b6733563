# tests/test_consistency.py
from decimal import Decimal

from app import crud, models

from conftest import book, make_patient


def force_overlap(db, doctor, patient):
    first = book(db, doctor, patient, time="10:00")
    other = make_patient(db, email="overlap@medconsult.io")
    second = book(db, doctor, other, time="10:30")
    # simulate a row written behind the allocator's back
    db.query(models.Appointment).filter(models.Appointment.id == second.id).update(
        {"start_minute": 615, "end_minute": 645}, synchronize_session=False
    )
    db.commit()
    return first, second


def test_clean_database_reports_nothing(db, doctor, patient):
    book(db, doctor, patient)
    report = crud.run_consistency_checks(db)
    assert report["overlapping_appointments"] == []
    assert report["consultation_mirror_mismatches"] == []
    assert report["payment_total_mismatches"] == []


def test_overlapping_appointments_are_reported(db, doctor, patient):
    first, second = force_overlap(db, doctor, patient)
    report = crud.run_consistency_checks(db)

    [issue] = report["overlapping_appointments"]
    assert {issue["resource_id"], *issue["related_ids"]} == {first.id, second.id}
    assert report["flagged_for_review"] == 0
    assert crud.get_audit_logs(db, action="INVARIANT_VIOLATION") == []


def test_flagging_marks_offenders_for_review(db, doctor, patient):
    first, second = force_overlap(db, doctor, patient)
    db.query(models.Payment).filter(models.Payment.id == first.payment_id).update(
        {"total_amount": Decimal("1.00")}, synchronize_session=False
    )
    db.commit()

    report = crud.run_consistency_checks(db, flag=True)

    assert len(report["payment_total_mismatches"]) == 1
    assert report["flagged_for_review"] == 3
    db.expire_all()
    assert crud.get_appointment(db, first.id).needs_review is True
    assert crud.get_appointment(db, second.id).needs_review is True
    assert crud.get_payment(db, first.payment_id).needs_review is True

    violations = crud.get_audit_logs(db, action="INVARIANT_VIOLATION")
    assert sorted(e.resource for e in violations) == ["appointment", "appointment", "payment"]
    assert {e.resource_id for e in violations} == {first.id, second.id, first.payment_id}
    assert all(e.status == models.AuditStatus.FAILED for e in violations)
    assert all(e.details["error"] == "INVARIANT_VIOLATION" for e in violations)
    assert all(e.user_role == "system" for e in violations)


def test_cancelled_rows_do_not_count_as_overlap(db, doctor, patient):
    first, second = force_overlap(db, doctor, patient)
    db.query(models.Appointment).filter(models.Appointment.id == second.id).update(
        {"status": models.AppointmentStatus.cancelled, "slot_key": None}, synchronize_session=False
    )
    db.commit()
    assert crud.run_consistency_checks(db)["overlapping_appointments"] == []
