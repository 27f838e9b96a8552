"""
Loan lifecycle: issue, return, renewal and overdue detection.

Every function here expects to run inside a single transaction owned by the
caller (one per HTTP request), so a loan and the book it moves are always
committed or rolled back together.
"""
import logging
import math
from collections import namedtuple
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError

from . import catalog
from .errors import Conflict, InvalidState, NotFound, ValidationError
from .fines import assess_overdue_fine
from .models import (
    AvailabilityStatus,
    Book,
    InventoryAction,
    Loan,
    LoanStatus,
    Member,
    MemberStatus,
    Role,
    utcnow,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

OverdueStatus = namedtuple("OverdueStatus", ["is_overdue", "days_overdue"])

ReturnResult = namedtuple(
    "ReturnResult", ["loan", "is_overdue", "days_overdue", "fine_amount", "fine"]
)


@dataclass(frozen=True)
class LoanPolicy:
    loan_period_days: int = 14
    renewal_period_days: int = 14
    max_renewals: Optional[int] = None
    fine_rate: float = 0.50
    fine_grace_days: int = 0
    max_fine: float = 50.00

    @classmethod
    def from_config(cls, config):
        return cls(
            loan_period_days=config["LOAN_PERIOD_DAYS"],
            renewal_period_days=config["RENEWAL_PERIOD_DAYS"],
            max_renewals=config.get("MAX_RENEWALS"),
            fine_rate=config["FINE_RATE"],
            fine_grace_days=config["FINE_GRACE_DAYS"],
            max_fine=config["MAX_FINE"],
        )


DEFAULT_POLICY = LoanPolicy()


def compute_overdue_status(loan, now):
    if now > loan.due_date:
        days = math.ceil((now - loan.due_date).total_seconds() / SECONDS_PER_DAY)
        return OverdueStatus(True, days)
    return OverdueStatus(False, 0)


def get_loan(session, loan_id, for_update=False):
    q = select(Loan).where(Loan.id == loan_id)
    if for_update:
        q = q.with_for_update()
    loan = session.execute(q).scalar_one_or_none()
    if not loan:
        raise NotFound("Loan not found")
    return loan


def list_loans(session, status=None, member_id=None):
    q = select(Loan)
    if status:
        try:
            q = q.where(Loan.status == LoanStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown loan status: {status}")
    if member_id is not None:
        q = q.where(Loan.member_id == member_id)
    q = q.order_by(Loan.borrow_date.desc(), Loan.id.desc())
    return session.execute(q).scalars().all()


def search_loans(session, term, limit=50, offset=0):
    """
    Loans of any status whose book title or author, or borrower name,
    contains ``term``. Newest borrow first.
    """
    like = f"%{term}%"
    q = (
        select(Loan)
        .join(Member, Loan.member_id == Member.id)
        .outerjoin(Book, Loan.book_id == Book.id)
        .where(
            or_(
                Book.title.ilike(like),
                Book.author.ilike(like),
                Member.first_name.ilike(like),
                Member.last_name.ilike(like),
            )
        )
        .order_by(Loan.borrow_date.desc(), Loan.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return session.execute(q).scalars().all()


def current_loans(session, member_id, now=None):
    """Active loans for a member, soonest due first, with overdue status."""
    now = now or utcnow()
    q = (
        select(Loan)
        .where(Loan.member_id == member_id, Loan.status == LoanStatus.ACTIVE)
        .order_by(Loan.due_date.asc(), Loan.id.asc())
    )
    loans = session.execute(q).scalars().all()
    return [(loan, compute_overdue_status(loan, now)) for loan in loans]


def list_overdue_loans(session, now=None):
    now = now or utcnow()
    q = (
        select(Loan)
        .where(Loan.status == LoanStatus.ACTIVE, Loan.due_date < now)
        .order_by(Loan.due_date.asc(), Loan.id.asc())
    )
    loans = session.execute(q).scalars().all()
    return [(loan, compute_overdue_status(loan, now)) for loan in loans]


def issue_loan(session, member_id, book_id, due_date=None, now=None, policy=DEFAULT_POLICY):
    now = now or utcnow()

    book = catalog.find_book(session, book_id)
    if book.availability_status != AvailabilityStatus.AVAILABLE:
        raise Conflict("Book is not available")

    member = session.execute(
        select(Member).where(Member.id == member_id, Member.role == Role.MEMBER)
    ).scalar_one_or_none()
    if not member:
        raise NotFound("Member not found")
    if member.status != MemberStatus.APPROVED:
        raise InvalidState("Member account is not active")

    if due_date is None:
        due_date = now + timedelta(days=policy.loan_period_days)
    elif due_date < now:
        raise ValidationError("Due date cannot be before the borrow date")

    book = catalog.claim_for_loan(session, book_id)

    loan = Loan(
        member_id=member.id,
        book_id=book.id,
        borrow_date=now,
        due_date=due_date,
        status=LoanStatus.ACTIVE,
        renewal_count=0,
    )
    session.add(loan)
    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Book already has an active loan")

    catalog.log_inventory(
        session, book.id, InventoryAction.CHECKOUT, book.quantity, book.quantity, member.id
    )
    logger.info(
        "Issued loan %s: book %s to member %s, due %s",
        loan.id,
        book.id,
        member.membership_id,
        due_date.isoformat(),
    )
    return loan


def return_loan(session, loan_id, now=None, policy=DEFAULT_POLICY):
    now = now or utcnow()
    loan = get_loan(session, loan_id, for_update=True)
    if loan.status != LoanStatus.ACTIVE:
        raise InvalidState("Book already returned")

    loan.return_date = now
    loan.status = LoanStatus.RETURNED

    book = session.execute(
        select(Book).where(Book.id == loan.book_id).with_for_update()
    ).scalar_one()
    catalog.release_from_loan(session, book)
    catalog.log_inventory(
        session, book.id, InventoryAction.RETURN, book.quantity, book.quantity, loan.member_id
    )

    overdue = compute_overdue_status(loan, now)
    fine = None
    fine_amount = 0.0
    if overdue.is_overdue:
        fine = assess_overdue_fine(session, loan, overdue.days_overdue, policy, now)
        fine_amount = fine.amount if fine else 0.0

    session.flush()
    logger.info(
        "Returned loan %s (book %s), overdue=%s days=%s fine=%.2f",
        loan.id,
        book.id,
        overdue.is_overdue,
        overdue.days_overdue,
        fine_amount,
    )
    return ReturnResult(loan, overdue.is_overdue, overdue.days_overdue, fine_amount, fine)


def renew_loan(session, loan_id, now=None, policy=DEFAULT_POLICY):
    now = now or utcnow()
    loan = get_loan(session, loan_id, for_update=True)
    if loan.status != LoanStatus.ACTIVE:
        raise InvalidState("Only active loans can be renewed")

    book = session.execute(select(Book).where(Book.id == loan.book_id)).scalar_one()
    if book.availability_status == AvailabilityStatus.ON_HOLD:
        raise InvalidState("Book is on hold and cannot be renewed")

    if now > loan.due_date:
        raise InvalidState("Overdue books cannot be renewed")

    if policy.max_renewals is not None and loan.renewal_count >= policy.max_renewals:
        raise InvalidState(f"Renewal limit of {policy.max_renewals} reached")

    loan.due_date = loan.due_date + timedelta(days=policy.renewal_period_days)
    loan.renewal_count += 1
    logger.info(
        "Renewed loan %s until %s (renewal %s)",
        loan.id,
        loan.due_date.isoformat(),
        loan.renewal_count,
    )
    return loan
