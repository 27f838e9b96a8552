from datetime import timedelta

import pytest
from sqlalchemy import select, func

from library_service import circulation, fines
from library_service.errors import InvalidState, NotFound, ValidationError
from library_service.models import FineStatus, Payment, PaymentType

from conftest import NOW


def _payment_count(session):
    return session.execute(select(func.count(Payment.id))).scalar_one()


@pytest.fixture
def overdue_fine(session, make_book, make_member):
    loan = circulation.issue_loan(session, make_member().id, make_book().id, now=NOW)
    result = circulation.return_loan(session, loan.id, now=loan.due_date + timedelta(days=10))
    session.commit()
    return result.fine


@pytest.mark.parametrize(
    "days, grace, expected",
    [
        (0, 0, 0.0),
        (1, 0, 0.50),
        (10, 0, 5.00),
        (100, 0, 50.00),
        (200, 0, 50.00),
        (5, 2, 1.50),
        (2, 3, 0.0),
    ],
)
def test_compute_fine_amount(days, grace, expected):
    assert fines.compute_fine_amount(days, 0.50, 50.00, grace) == expected


def test_pay_fine_marks_paid_and_records_payment(session, overdue_fine):
    payment = fines.pay_fine(session, overdue_fine.id, reference="RCPT-1", now=NOW)
    session.commit()

    assert overdue_fine.status == FineStatus.PAID
    assert overdue_fine.paid_at == NOW
    assert payment.amount == 5.00
    assert payment.type == PaymentType.FINE
    assert payment.fine_id == overdue_fine.id
    assert payment.loan_id == overdue_fine.loan_id
    assert payment.member_id == overdue_fine.member_id
    assert payment.reference == "RCPT-1"
    assert _payment_count(session) == 1


def test_pay_fine_twice_fails(session, overdue_fine):
    fines.pay_fine(session, overdue_fine.id, now=NOW)
    session.commit()

    with pytest.raises(InvalidState):
        fines.pay_fine(session, overdue_fine.id, now=NOW)
    session.rollback()

    assert _payment_count(session) == 1


def test_pay_fine_with_matching_amount(session, overdue_fine):
    payment = fines.pay_fine(session, overdue_fine.id, amount="5.00", now=NOW)
    assert payment.amount == 5.00


def test_partial_payment_is_refused(session, overdue_fine):
    with pytest.raises(ValidationError):
        fines.pay_fine(session, overdue_fine.id, amount=2.00, now=NOW)
    session.rollback()

    fine = fines.get_fine(session, overdue_fine.id)
    assert fine.status == FineStatus.PENDING
    assert fine.paid_at is None
    assert _payment_count(session) == 0


def test_pay_missing_fine(session):
    with pytest.raises(NotFound):
        fines.pay_fine(session, 404, now=NOW)


def test_add_manual_fine(session, make_member):
    member = make_member()
    fine = fines.add_manual_fine(session, member.id, 12.5, now=NOW)
    session.commit()

    assert fine.status == FineStatus.PENDING
    assert fine.amount == 12.5
    assert fine.loan_id is None
    assert fine.rate == 0.50
    assert fine.max_fine == 50.00


def test_manual_fine_is_not_capped(session, make_member):
    fine = fines.add_manual_fine(session, make_member().id, 80, max_fine=50, now=NOW)
    assert fine.amount == 80


@pytest.mark.parametrize("amount", [0, -3, "abc", None])
def test_manual_fine_rejects_bad_amounts(session, make_member, amount):
    with pytest.raises(ValidationError):
        fines.add_manual_fine(session, make_member().id, amount, now=NOW)


def test_manual_fine_checks_member_and_loan(session, make_book, make_member):
    owner, other = make_member(), make_member()
    loan = circulation.issue_loan(session, owner.id, make_book().id, now=NOW)
    session.commit()

    with pytest.raises(NotFound):
        fines.add_manual_fine(session, 999, 5)
    with pytest.raises(NotFound):
        fines.add_manual_fine(session, owner.id, 5, loan_id=999)
    with pytest.raises(ValidationError):
        fines.add_manual_fine(session, other.id, 5, loan_id=loan.id)

    fine = fines.add_manual_fine(session, owner.id, 5, loan_id=loan.id)
    assert fine.loan_id == loan.id


def test_update_fine_only_while_pending(session, overdue_fine):
    fines.update_fine(session, overdue_fine.id, amount=7.25, max_fine=40)
    session.commit()
    assert overdue_fine.amount == 7.25
    assert overdue_fine.max_fine == 40

    fines.pay_fine(session, overdue_fine.id, now=NOW)
    session.commit()
    with pytest.raises(InvalidState):
        fines.update_fine(session, overdue_fine.id, amount=1)


def test_fine_summary(session, overdue_fine):
    member_id = overdue_fine.member_id
    fines.add_manual_fine(session, member_id, 3.0, now=NOW)
    fines.pay_fine(session, overdue_fine.id, now=NOW)
    session.commit()

    assert fines.fine_summary(session, member_id) == {
        "total_fees": 2,
        "pending_amount": 3.0,
        "paid_amount": 5.0,
        "total_amount": 8.0,
    }


def test_fine_summary_for_member_without_fines(session, make_member):
    summary = fines.fine_summary(session, make_member().id)
    assert summary["total_fees"] == 0
    assert summary["total_amount"] == 0.0


def test_pending_fines_listing(session, overdue_fine, make_member):
    manual = fines.add_manual_fine(session, make_member().id, 1.0, now=NOW + timedelta(days=60))
    fines.pay_fine(session, overdue_fine.id, now=NOW)
    session.commit()

    assert [f.id for f in fines.list_pending_fines(session)] == [manual.id]


def test_record_manual_payment(session, make_member):
    member = make_member()
    payment = fines.record_payment(session, member.id, 20, reference="lost book", now=NOW)
    session.commit()

    assert payment.type == PaymentType.MANUAL
    assert payment.fine_id is None
    assert [p.id for p in fines.list_member_payments(session, member.id)] == [payment.id]

    with pytest.raises(ValidationError):
        fines.record_payment(session, member.id, 0)
    with pytest.raises(NotFound):
        fines.record_payment(session, 999, 5)
