"""
Fines and the payment ledger.

A fine moves ``pending -> paid`` exactly once, through ``pay_fine``; the
payment row written alongside it is never updated or deleted.
"""
import logging

from sqlalchemy import select, func, case

from .errors import InvalidState, NotFound, ValidationError
from .models import (
    Fine,
    FineStatus,
    Loan,
    Member,
    Payment,
    PaymentType,
    utcnow,
)

logger = logging.getLogger(__name__)


def compute_fine_amount(days_overdue, rate, max_fine, grace_days=0):
    chargeable = max(days_overdue - grace_days, 0)
    return round(min(chargeable * rate, max_fine), 2)


def assess_overdue_fine(session, loan, days_overdue, policy, now=None):
    """
    Create the pending fine for an overdue return. Returns None when the
    grace period absorbs every overdue day.
    """
    amount = compute_fine_amount(
        days_overdue, policy.fine_rate, policy.max_fine, policy.fine_grace_days
    )
    if amount <= 0:
        return None

    fine = Fine(
        loan_id=loan.id,
        member_id=loan.member_id,
        amount=amount,
        rate=policy.fine_rate,
        grace_days=policy.fine_grace_days,
        max_fine=policy.max_fine,
        status=FineStatus.PENDING,
        created_at=now or utcnow(),
    )
    session.add(fine)
    session.flush()
    logger.info(
        "Assessed fine %s of %.2f on loan %s (%s days overdue)",
        fine.id,
        amount,
        loan.id,
        days_overdue,
    )
    return fine


def get_fine(session, fine_id, for_update=False):
    q = select(Fine).where(Fine.id == fine_id)
    if for_update:
        q = q.with_for_update()
    fine = session.execute(q).scalar_one_or_none()
    if not fine:
        raise NotFound("Fee not found")
    return fine


def list_member_fines(session, member_id):
    q = (
        select(Fine)
        .where(Fine.member_id == member_id)
        .order_by(Fine.created_at.desc(), Fine.id.desc())
    )
    return session.execute(q).scalars().all()


def list_pending_fines(session):
    q = (
        select(Fine)
        .where(Fine.status == FineStatus.PENDING)
        .order_by(Fine.created_at.desc(), Fine.id.desc())
    )
    return session.execute(q).scalars().all()


def fine_summary(session, member_id):
    pending = case((Fine.status == FineStatus.PENDING, Fine.amount), else_=0)
    paid = case((Fine.status == FineStatus.PAID, Fine.amount), else_=0)
    row = session.execute(
        select(
            func.count(Fine.id),
            func.coalesce(func.sum(pending), 0),
            func.coalesce(func.sum(paid), 0),
            func.coalesce(func.sum(Fine.amount), 0),
        ).where(Fine.member_id == member_id)
    ).one()
    return {
        "total_fees": row[0],
        "pending_amount": round(float(row[1]), 2),
        "paid_amount": round(float(row[2]), 2),
        "total_amount": round(float(row[3]), 2),
    }


def pay_fine(session, fine_id, amount=None, reference=None, now=None):
    """
    Settle a pending fine in full and record the payment.

    Partial payments are refused: an explicit ``amount`` has to match the
    fine, otherwise the fine would read as settled while money is owed.
    """
    now = now or utcnow()
    fine = get_fine(session, fine_id, for_update=True)
    if fine.status != FineStatus.PENDING:
        raise InvalidState("Fee already paid")

    if amount is None:
        amount = fine.amount
    else:
        amount = _money(amount)
        if round(amount, 2) != round(fine.amount, 2):
            raise ValidationError(
                f"Payment of {amount:.2f} does not match the fee of {fine.amount:.2f}"
            )

    fine.status = FineStatus.PAID
    fine.paid_at = now

    payment = Payment(
        member_id=fine.member_id,
        loan_id=fine.loan_id,
        fine_id=fine.id,
        amount=amount,
        type=PaymentType.FINE,
        reference=reference,
        timestamp=now,
    )
    session.add(payment)
    session.flush()
    logger.info("Fine %s paid (%.2f), payment %s", fine.id, amount, payment.id)
    return payment


def add_manual_fine(
    session, member_id, amount, loan_id=None, rate=None, max_fine=None, now=None
):
    """Staff-assessed fine; no overdue computation and no cap on ``amount``."""
    amount = _money(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")

    member = session.execute(
        select(Member).where(Member.id == member_id)
    ).scalar_one_or_none()
    if not member:
        raise NotFound("Member not found")

    if loan_id is not None:
        loan = session.execute(select(Loan).where(Loan.id == loan_id)).scalar_one_or_none()
        if not loan:
            raise NotFound("Loan not found")
        if loan.member_id != member.id:
            raise ValidationError("Loan does not belong to this member")

    fine = Fine(
        member_id=member.id,
        loan_id=loan_id,
        amount=amount,
        rate=_money(rate) if rate is not None else 0.50,
        max_fine=_money(max_fine) if max_fine is not None else 50.00,
        status=FineStatus.PENDING,
        created_at=now or utcnow(),
    )
    session.add(fine)
    session.flush()
    logger.info("Manual fine %s of %.2f added for member %s", fine.id, amount, member.id)
    return fine


def update_fine(session, fine_id, amount=None, rate=None, max_fine=None):
    fine = get_fine(session, fine_id, for_update=True)
    if fine.status != FineStatus.PENDING:
        raise InvalidState("Paid fees cannot be changed")
    if amount is not None:
        amount = _money(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        fine.amount = amount
    if rate is not None:
        fine.rate = _money(rate)
    if max_fine is not None:
        fine.max_fine = _money(max_fine)
    return fine


def record_payment(session, member_id, amount, reference=None, loan_id=None, now=None):
    """Ledger entry for money received outside a fine, e.g. a lost-book charge."""
    amount = _money(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")

    member = session.execute(
        select(Member).where(Member.id == member_id)
    ).scalar_one_or_none()
    if not member:
        raise NotFound("Member not found")
    if loan_id is not None:
        loan = session.execute(select(Loan).where(Loan.id == loan_id)).scalar_one_or_none()
        if not loan:
            raise NotFound("Loan not found")

    payment = Payment(
        member_id=member.id,
        loan_id=loan_id,
        amount=amount,
        type=PaymentType.MANUAL,
        reference=reference,
        timestamp=now or utcnow(),
    )
    session.add(payment)
    session.flush()
    logger.info("Recorded manual payment %s of %.2f for member %s", payment.id, amount, member.id)
    return payment


def list_member_payments(session, member_id):
    q = (
        select(Payment)
        .where(Payment.member_id == member_id)
        .order_by(Payment.timestamp.desc(), Payment.id.desc())
    )
    return session.execute(q).scalars().all()


def _money(value):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if amount < 0:
        raise ValidationError("Amounts cannot be negative")
    return amount
