from datetime import datetime, timedelta

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from library_service import circulation, members
from library_service.errors import Conflict, InvalidState, NotFound, ValidationError
from library_service.models import MembershipSequence, MemberStatus, Role

from conftest import NOW


def _register(session, email, **extra):
    data = {"first_name": "Reg", "last_name": "User", "email": email}
    data.update(extra)
    member = members.register_member(session, data, now=NOW)
    session.commit()
    return member


def test_register_is_pending_with_sequential_membership_ids(session):
    first = _register(session, "one@example.com")
    second = _register(session, "two@example.com")

    assert first.status == MemberStatus.PENDING
    assert first.role == Role.MEMBER
    assert first.membership_expiration is None
    assert first.membership_id == "LIB-00001"
    assert second.membership_id == "LIB-00002"


def test_membership_ids_continue_after_staff_accounts(session, make_member):
    make_member(role="admin")
    member = _register(session, "after@example.com")
    assert member.membership_id == "LIB-00002"


def test_register_requires_names_and_email(session):
    with pytest.raises(ValidationError):
        members.register_member(session, {"first_name": "No", "email": "x@example.com"})


def test_register_rejects_unknown_membership_type(session):
    with pytest.raises(ValidationError):
        _register(session, "vip@example.com", membership_type="Platinum")


def test_duplicate_email_conflicts(session):
    _register(session, "dup@example.com")
    with pytest.raises(Conflict):
        _register(session, "dup@example.com")


def test_approve_sets_one_year_expiration(session):
    member = _register(session, "approve@example.com")

    members.approve_member(session, member.id, now=NOW)
    session.commit()

    assert member.status == MemberStatus.APPROVED
    assert member.membership_expiration == datetime(2026, 3, 1, 12, 0, 0)


def test_approve_twice_fails(session):
    member = _register(session, "twice@example.com")
    members.approve_member(session, member.id, now=NOW)
    session.commit()

    with pytest.raises(InvalidState):
        members.approve_member(session, member.id, now=NOW)


def test_approve_missing_member(session):
    with pytest.raises(NotFound):
        members.approve_member(session, 77, now=NOW)


def test_direct_member_is_preapproved(session, make_member):
    member = make_member(membership_type="Student")
    assert member.status == MemberStatus.APPROVED
    assert member.membership_type == "Student"
    assert member.membership_expiration == datetime(2026, 3, 1, 12, 0, 0)


def test_staff_accounts_are_hidden_from_member_listing(session, make_member):
    staff = make_member(role="librarian")
    member = make_member()

    assert staff.membership_type == members.STAFF_MEMBERSHIP_TYPE
    assert [m.id for m in members.list_members(session)] == [member.id]


def test_list_members_search_and_status(session, make_member):
    make_member(first_name="Grace", last_name="Hopper", email="grace@example.com")
    make_member(first_name="Alan", last_name="Turing", email="alan@example.com")
    pending = _register(session, "pending@example.com")

    assert [m.first_name for m in members.list_members(session, search="hop")] == ["Grace"]
    assert [m.id for m in members.list_members(session, status="pending")] == [pending.id]
    with pytest.raises(ValidationError):
        members.list_members(session, status="banned")


def test_deactivate_then_reactivate_extends_lapsed_membership(session, make_member):
    member = make_member()
    members.deactivate_member(session, member.id)
    session.commit()
    assert member.status == MemberStatus.SUSPENDED

    later = NOW + timedelta(days=500)
    members.reactivate_member(session, member.id, now=later)
    session.commit()

    assert member.status == MemberStatus.APPROVED
    assert member.membership_expiration == members.add_years(later, 1)


def test_reactivate_keeps_unexpired_membership(session, make_member):
    member = make_member()
    expiration = member.membership_expiration
    members.deactivate_member(session, member.id)
    members.reactivate_member(session, member.id, now=NOW + timedelta(days=10))
    session.commit()

    assert member.membership_expiration == expiration


def test_expire_lapsed_members(session, make_member):
    lapsed = make_member()
    suspended = make_member()
    members.deactivate_member(session, suspended.id)
    session.commit()

    expired = members.expire_lapsed_members(session, now=NOW + timedelta(days=400))
    session.commit()

    assert [m.id for m in expired] == [lapsed.id]
    assert lapsed.status == MemberStatus.EXPIRED
    assert suspended.status == MemberStatus.SUSPENDED


def test_update_member_fields(session, make_member):
    member = make_member()
    other = make_member()

    members.update_member(session, member.id, {"phone": "555-0100", "membership_type": "Senior"})
    session.commit()
    assert member.phone == "555-0100"
    assert member.membership_type == "Senior"

    with pytest.raises(ValidationError):
        members.update_member(session, member.id, {"status": "approved"})
    with pytest.raises(Conflict):
        members.update_member(session, member.id, {"email": other.email})


def test_borrowing_history(session, make_book, make_member):
    member = make_member()
    first = circulation.issue_loan(session, member.id, make_book().id, now=NOW)
    second = circulation.issue_loan(
        session, member.id, make_book().id, now=NOW + timedelta(days=1)
    )
    session.commit()

    history = members.borrowing_history(session, member.id)
    assert [loan.id for loan, _book in history] == [second.id, first.id]


def test_add_years_handles_leap_day():
    assert members.add_years(datetime(2024, 2, 29), 1) == datetime(2025, 2, 28)


def test_update_member_rejects_unknown_membership_type(session, make_member):
    member = make_member()
    librarian = make_member(role="librarian")

    with pytest.raises(ValidationError):
        members.update_member(session, member.id, {"membership_type": "Platinum"})
    with pytest.raises(ValidationError):
        members.update_member(session, librarian.id, {"membership_type": "Adult"})
    session.rollback()

    members.update_member(session, librarian.id, {"membership_type": "Staff"})
    session.commit()
    assert member.membership_type == "Adult"


def test_membership_sequence_exists_at_startup(session):
    seq = session.get(MembershipSequence, 1)
    assert seq is not None
    assert seq.next_value == 1


def test_missing_sequence_row_is_recreated(session):
    session.execute(delete(MembershipSequence))
    session.commit()

    member = _register(session, "first@example.com")
    session.commit()
    assert member.membership_id == "LIB-00001"


def test_sequence_created_concurrently_is_a_conflict(session, monkeypatch):
    session.execute(delete(MembershipSequence))
    session.commit()

    def collide():
        raise IntegrityError("INSERT INTO membership_sequence", {}, Exception("UNIQUE"))

    monkeypatch.setattr(session, "flush", collide)
    with pytest.raises(Conflict):
        members.next_membership_id(session)
