import logging

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError

from .errors import Conflict, InvalidState, NotFound, ValidationError
from .models import (
    Book,
    Loan,
    Member,
    MemberStatus,
    MembershipSequence,
    Role,
    utcnow,
)

logger = logging.getLogger(__name__)

MEMBERSHIP_TYPES = ["Adult", "Student", "Child", "Senior"]
STAFF_MEMBERSHIP_TYPE = "Staff"

EDITABLE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "address",
    "membership_type",
    "membership_expiration",
)


def format_membership_id(number):
    return f"LIB-{number:05d}"


def ensure_membership_sequence(session):
    """Create the sequence row if the store has none yet (run at startup)."""
    seq = session.get(MembershipSequence, 1)
    if seq is None:
        seq = MembershipSequence(id=1, next_value=1)
        session.add(seq)
        try:
            session.flush()
        except IntegrityError:
            raise Conflict("Membership sequence is being initialised, retry")
    return seq


def next_membership_id(session):
    """
    Take the next value from the membership sequence row.

    The row is locked for the rest of the transaction, so concurrent
    registrations queue on it instead of racing a max-plus-one scan.
    """
    seq = session.execute(
        select(MembershipSequence).where(MembershipSequence.id == 1).with_for_update()
    ).scalar_one_or_none()
    if seq is None:
        seq = ensure_membership_sequence(session)
    number = seq.next_value
    seq.next_value = number + 1
    return format_membership_id(number)


def add_years(moment, years):
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def find_member(session, member_id, for_update=False):
    q = select(Member).where(Member.id == member_id)
    if for_update:
        q = q.with_for_update()
    member = session.execute(q).scalar_one_or_none()
    if not member:
        raise NotFound("Member not found")
    return member


def list_members(
    session, search=None, membership_type=None, status=None, limit=50, offset=0
):
    q = select(Member).where(Member.role == Role.MEMBER)
    if search:
        like = f"%{search}%"
        q = q.where(
            or_(
                Member.first_name.ilike(like),
                Member.last_name.ilike(like),
                Member.membership_id.ilike(like),
                Member.email.ilike(like),
            )
        )
    if membership_type:
        q = q.where(Member.membership_type == membership_type)
    if status:
        q = q.where(Member.status == _member_status(status))
    q = q.order_by(Member.join_date.desc(), Member.id.desc()).limit(limit).offset(offset)
    return session.execute(q).scalars().all()


def register_member(session, data, now=None):
    """Self-registration: the account waits in ``pending`` for staff approval."""
    return _create_member(session, data, MemberStatus.PENDING, Role.MEMBER, None, now)


def create_member_direct(session, data, years=1, now=None):
    """Staff-added account, approved immediately."""
    now = now or utcnow()
    role = _role(data.get("role", Role.MEMBER.value))
    return _create_member(
        session, data, MemberStatus.APPROVED, role, add_years(now, years), now
    )


def approve_member(session, member_id, years=1, now=None):
    now = now or utcnow()
    member = find_member(session, member_id, for_update=True)
    if member.status != MemberStatus.PENDING:
        raise InvalidState(f"Only pending members can be approved (status: {member.status.value})")
    member.status = MemberStatus.APPROVED
    member.membership_expiration = add_years(now, years)
    logger.info("Approved member %s (%s)", member.id, member.membership_id)
    return member


def deactivate_member(session, member_id):
    member = find_member(session, member_id, for_update=True)
    member.status = MemberStatus.SUSPENDED
    logger.info("Suspended member %s", member.id)
    return member


def reactivate_member(session, member_id, years=1, now=None):
    now = now or utcnow()
    member = find_member(session, member_id, for_update=True)
    if not member.membership_expiration or member.membership_expiration < now:
        member.membership_expiration = add_years(now, years)
    member.status = MemberStatus.APPROVED
    logger.info(
        "Reactivated member %s until %s", member.id, member.membership_expiration
    )
    return member


def update_member(session, member_id, patch):
    if "status" in patch or "role" in patch:
        raise ValidationError("Status and role change through the approval workflow")

    member = find_member(session, member_id, for_update=True)
    for field in EDITABLE_FIELDS:
        if field not in patch:
            continue
        value = patch[field]
        if field in ("first_name", "last_name", "email") and not value:
            raise ValidationError(f"{field} cannot be empty")
        if field == "membership_type":
            _check_membership_type(member, value)
        setattr(member, field, value)

    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Email already exists")
    return member


def expire_lapsed_members(session, now=None):
    """Move approved members whose membership has lapsed to ``expired``."""
    now = now or utcnow()
    q = (
        select(Member)
        .where(Member.status == MemberStatus.APPROVED)
        .where(Member.membership_expiration.is_not(None))
        .where(Member.membership_expiration < now)
        .with_for_update()
    )
    expired = session.execute(q).scalars().all()
    for member in expired:
        member.status = MemberStatus.EXPIRED
    if expired:
        logger.info("Expired %d lapsed memberships", len(expired))
    return expired


def borrowing_history(session, member_id):
    find_member(session, member_id)
    q = (
        select(Loan, Book)
        .outerjoin(Book, Loan.book_id == Book.id)
        .where(Loan.member_id == member_id)
        .order_by(Loan.borrow_date.desc(), Loan.id.desc())
    )
    return session.execute(q).all()


def _create_member(session, data, status, role, expiration, now):
    first_name = data.get("first_name")
    last_name = data.get("last_name")
    email = data.get("email")
    if not first_name or not last_name or not email:
        raise ValidationError("First name, last name, and email are required")

    existing = session.execute(
        select(Member.id).where(Member.email == email)
    ).first()
    if existing:
        raise Conflict("Email already exists")

    if role == Role.MEMBER:
        membership_type = data.get("membership_type") or "Adult"
        if membership_type not in MEMBERSHIP_TYPES:
            raise ValidationError(f"Unknown membership type: {membership_type}")
    else:
        membership_type = STAFF_MEMBERSHIP_TYPE

    member = Member(
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=data.get("phone"),
        address=data.get("address"),
        role=role,
        status=status,
        membership_id=next_membership_id(session),
        membership_type=membership_type,
        join_date=now or utcnow(),
        membership_expiration=expiration,
    )
    session.add(member)
    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Email or membership ID already exists")

    logger.info(
        "Created %s %s (%s) with status %s",
        role.value,
        member.id,
        member.membership_id,
        status.value,
    )
    return member


def _check_membership_type(member, value):
    allowed = MEMBERSHIP_TYPES if member.role == Role.MEMBER else [STAFF_MEMBERSHIP_TYPE]
    if value not in allowed:
        raise ValidationError(f"Unknown membership type: {value}")


def _role(value):
    try:
        return Role(value)
    except ValueError:
        raise ValidationError(f"Unknown role: {value}")


def _member_status(value):
    try:
        return MemberStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown member status: {value}")
