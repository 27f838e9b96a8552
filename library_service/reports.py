"""
Read-only aggregations over loans, fines, books and members.
"""
from datetime import timedelta

from sqlalchemy import select, func

from .models import (
    Book,
    Fine,
    FineStatus,
    Loan,
    LoanStatus,
    Member,
    MemberStatus,
    Role,
    utcnow,
)


def _since(days, now):
    return (now or utcnow()) - timedelta(days=days)


def dashboard(session, days=30, now=None):
    now = now or utcnow()
    since = _since(days, now)

    total_checkouts = session.execute(
        select(func.count(Loan.id)).where(Loan.borrow_date >= since)
    ).scalar_one()
    active_members = session.execute(
        select(func.count(Member.id)).where(
            Member.role == Role.MEMBER, Member.status == MemberStatus.APPROVED
        )
    ).scalar_one()
    overdue_items = session.execute(
        select(func.count(Loan.id)).where(
            Loan.status == LoanStatus.ACTIVE, Loan.due_date < now
        )
    ).scalar_one()
    new_acquisitions = session.execute(
        select(func.count(Book.id)).where(Book.created_at >= since)
    ).scalar_one()

    return {
        "total_checkouts": total_checkouts,
        "active_members": active_members,
        "overdue_items": overdue_items,
        "new_acquisitions": new_acquisitions,
    }


def borrowing_trends(session, days=30, now=None):
    day = func.date(Loan.borrow_date)
    q = (
        select(day.label("date"), func.count(Loan.id).label("count"))
        .where(Loan.borrow_date >= _since(days, now))
        .group_by(day)
        .order_by(day)
    )
    return [{"date": str(row.date), "count": row.count} for row in session.execute(q)]


def popular_books(session, days=30, limit=10, now=None):
    borrow_count = func.count(Loan.id).label("borrow_count")
    q = (
        select(Book.id, Book.title, Book.author, borrow_count)
        .join(Loan, Loan.book_id == Book.id)
        .where(Loan.borrow_date >= _since(days, now))
        .group_by(Book.id, Book.title, Book.author)
        .order_by(borrow_count.desc(), Book.title)
        .limit(limit)
    )
    return [
        {
            "book_id": row.id,
            "title": row.title,
            "author": row.author,
            "borrow_count": row.borrow_count,
        }
        for row in session.execute(q)
    ]


def active_members(session, days=30, limit=10, now=None):
    borrow_count = func.count(Loan.id).label("borrow_count")
    q = (
        select(
            Member.id,
            Member.first_name,
            Member.last_name,
            Member.membership_id,
            borrow_count,
        )
        .join(Loan, Loan.member_id == Member.id)
        .where(Loan.borrow_date >= _since(days, now))
        .group_by(Member.id, Member.first_name, Member.last_name, Member.membership_id)
        .order_by(borrow_count.desc(), Member.membership_id)
        .limit(limit)
    )
    return [
        {
            "member_id": row.id,
            "member_name": f"{row.first_name} {row.last_name}",
            "membership_id": row.membership_id,
            "borrow_count": row.borrow_count,
        }
        for row in session.execute(q)
    ]


def outstanding_fines(session):
    """Pending fines with member and (when linked) book details."""
    q = (
        select(Fine, Member, Book)
        .join(Member, Fine.member_id == Member.id)
        .outerjoin(Loan, Fine.loan_id == Loan.id)
        .outerjoin(Book, Loan.book_id == Book.id)
        .where(Fine.status == FineStatus.PENDING)
        .order_by(Fine.created_at.desc(), Fine.id.desc())
    )
    return [
        {
            "fine_id": fine.id,
            "amount": fine.amount,
            "created_at": fine.created_at.isoformat(),
            "member_name": member.full_name,
            "membership_id": member.membership_id,
            "title": book.title if book else None,
            "author": book.author if book else None,
        }
        for fine, member, book in session.execute(q)
    ]
