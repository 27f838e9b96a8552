from datetime import timedelta

from library_service import circulation, fines, reports

from conftest import NOW


def _borrow_and_return(session, member, book, when):
    loan = circulation.issue_loan(session, member.id, book.id, now=when)
    circulation.return_loan(session, loan.id, now=when + timedelta(days=1))
    return loan


def test_dashboard_counts(session, make_book, make_member):
    alice, bob = make_member(), make_member()
    make_member(role="librarian")
    book_a, book_b, book_c = make_book(), make_book(), make_book()

    _borrow_and_return(session, alice, book_a, NOW - timedelta(days=40))
    circulation.issue_loan(session, alice.id, book_b.id, now=NOW - timedelta(days=20))
    circulation.issue_loan(session, bob.id, book_c.id, now=NOW - timedelta(days=2))
    session.commit()

    stats = reports.dashboard(session, days=30, now=NOW)

    assert stats["total_checkouts"] == 2
    assert stats["active_members"] == 2
    # book_b was due 6 days ago
    assert stats["overdue_items"] == 1


def test_popular_books_and_active_members(session, make_book, make_member):
    alice, bob = make_member(), make_member()
    dune = make_book(title="Dune")
    emma = make_book(title="Emma")

    for offset in (10, 8, 6):
        _borrow_and_return(session, alice, dune, NOW - timedelta(days=offset))
    _borrow_and_return(session, bob, emma, NOW - timedelta(days=5))
    session.commit()

    popular = reports.popular_books(session, days=30, limit=10, now=NOW)
    assert [(row["title"], row["borrow_count"]) for row in popular] == [("Dune", 3), ("Emma", 1)]

    top = reports.active_members(session, days=30, limit=1, now=NOW)
    assert len(top) == 1
    assert top[0]["membership_id"] == alice.membership_id
    assert top[0]["borrow_count"] == 3


def test_borrowing_trends_groups_by_day(session, make_book, make_member):
    member = make_member()
    day = NOW - timedelta(days=3)
    _borrow_and_return(session, member, make_book(), day)
    _borrow_and_return(session, member, make_book(), day + timedelta(hours=2))
    session.commit()

    trends = reports.borrowing_trends(session, days=30, now=NOW)
    assert trends == [{"date": day.date().isoformat(), "count": 2}]


def test_outstanding_fines_include_manual_fines(session, make_book, make_member):
    member = make_member()
    loan = circulation.issue_loan(session, member.id, make_book(title="Late").id, now=NOW)
    circulation.return_loan(session, loan.id, now=loan.due_date + timedelta(days=2))
    fines.add_manual_fine(session, member.id, 4.0, now=NOW + timedelta(days=30))
    session.commit()

    rows = reports.outstanding_fines(session)
    assert [(row["amount"], row["title"]) for row in rows] == [(4.0, None), (1.0, "Late")]
    assert rows[0]["membership_id"] == member.membership_id
