import enum
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Text,
    text,
)

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "available"
    CHECKED_OUT = "checked_out"
    ON_HOLD = "on_hold"


class Role(str, enum.Enum):
    MEMBER = "member"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


class MemberStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    RETURNED = "returned"


class FineStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class PaymentType(str, enum.Enum):
    FINE = "fine"
    MANUAL = "manual"


class InventoryAction(str, enum.Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    CHECKOUT = "checkout"
    RETURN = "return"


def _enum_column(enum_cls, name, **kwargs):
    # persist the lowercase values rather than the member names
    return Column(
        Enum(
            enum_cls,
            name=name,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        **kwargs,
    )


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    isbn = Column(String(20), unique=True, nullable=False)
    genre = Column(String(100))
    category = Column(String(100))
    publication_year = Column(Integer)
    availability_status = _enum_column(
        AvailabilityStatus,
        "availability_status",
        nullable=False,
        default=AvailabilityStatus.AVAILABLE,
    )
    quantity = Column(Integer, nullable=False, default=1)
    cover_image = Column(String(500))
    description = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Member(Base):
    __tablename__ = "member"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50))
    address = Column(String(500))
    role = _enum_column(Role, "member_role", nullable=False, default=Role.MEMBER)
    status = _enum_column(
        MemberStatus, "member_status", nullable=False, default=MemberStatus.PENDING
    )
    membership_id = Column(String(20), unique=True, nullable=False)
    membership_type = Column(String(50), nullable=False, default="Adult")
    join_date = Column(DateTime, nullable=False, default=utcnow)
    membership_expiration = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class MembershipSequence(Base):
    """
    Single-row counter backing LIB-NNNNN membership IDs.
    """
    __tablename__ = "membership_sequence"

    id = Column(Integer, primary_key=True)
    next_value = Column(Integer, nullable=False, default=1)


class Loan(Base):
    __tablename__ = "loan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("member.id"), nullable=False)
    # null once a returned book is deleted from the catalog
    book_id = Column(Integer, ForeignKey("book.id", ondelete="SET NULL"))
    borrow_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    status = _enum_column(
        LoanStatus, "loan_status", nullable=False, default=LoanStatus.ACTIVE
    )
    renewal_count = Column(Integer, nullable=False, default=0)

    member = relationship("Member")
    book = relationship("Book")

    __table_args__ = (
        # at most one active loan per book, enforced by the store
        Index(
            "uq_loan_active_book",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class Fine(Base):
    __tablename__ = "fine"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loan.id"))
    member_id = Column(Integer, ForeignKey("member.id"), nullable=False)
    amount = Column(Float, nullable=False)
    rate = Column(Float, nullable=False, default=0.50)
    grace_days = Column(Integer, nullable=False, default=0)
    max_fine = Column(Float, nullable=False, default=50.00)
    status = _enum_column(
        FineStatus, "fine_status", nullable=False, default=FineStatus.PENDING
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime)

    member = relationship("Member")
    loan = relationship("Loan")


class Payment(Base):
    """
    Append-only ledger entry.
    """
    __tablename__ = "payment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("member.id"), nullable=False)
    loan_id = Column(Integer, ForeignKey("loan.id"))
    fine_id = Column(Integer, ForeignKey("fine.id"))
    amount = Column(Float, nullable=False)
    type = _enum_column(PaymentType, "payment_type", nullable=False)
    reference = Column(String(255))
    timestamp = Column(DateTime, nullable=False, default=utcnow)


class InventoryUpdate(Base):
    """
    Audit trail of book quantity changes. book_id carries no foreign key:
    entries outlive a deleted book.
    """
    __tablename__ = "inventory_update"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, nullable=False, index=True)
    action = _enum_column(InventoryAction, "inventory_action", nullable=False)
    before_qty = Column(Integer)
    after_qty = Column(Integer)
    member_id = Column(Integer, ForeignKey("member.id"))
    timestamp = Column(DateTime, nullable=False, default=utcnow)
