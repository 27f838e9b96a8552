"""
Catalog service: book records, availability and the inventory audit log.

Loan state drives availability; the circulation module claims and releases
books through ``claim_for_loan`` / ``release_from_loan`` and nothing else
writes ``availability_status`` directly.
"""
import logging

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError

from .errors import Conflict, InvalidState, NotFound, ValidationError
from .models import (
    AvailabilityStatus,
    Book,
    InventoryAction,
    InventoryUpdate,
    Loan,
    LoanStatus,
)

logger = logging.getLogger(__name__)

COVER_URL_TEMPLATE = "https://covers.openlibrary.org/b/isbn/{isbn}-M.jpg"

EDITABLE_FIELDS = (
    "title",
    "author",
    "isbn",
    "genre",
    "category",
    "publication_year",
    "quantity",
    "description",
    "cover_image",
)


def cover_url_for(isbn):
    return COVER_URL_TEMPLATE.format(isbn=isbn.replace("-", ""))


def log_inventory(session, book_id, action, before_qty, after_qty, member_id=None):
    entry = InventoryUpdate(
        book_id=book_id,
        action=action,
        before_qty=before_qty,
        after_qty=after_qty,
        member_id=member_id,
    )
    session.add(entry)
    return entry


def find_book(session, book_id, for_update=False):
    q = select(Book).where(Book.id == book_id)
    if for_update:
        q = q.with_for_update()
    book = session.execute(q).scalar_one_or_none()
    if not book:
        raise NotFound("Book not found")
    return book


def list_books(session, search=None, genre=None, status=None, limit=50, offset=0):
    q = select(Book)
    if search:
        like = f"%{search}%"
        q = q.where(
            or_(
                Book.title.ilike(like),
                Book.author.ilike(like),
                Book.isbn.ilike(like),
                Book.genre.ilike(like),
            )
        )
    if genre:
        q = q.where(Book.genre == genre)
    if status:
        q = q.where(Book.availability_status == _availability(status))
    q = q.order_by(Book.title).limit(limit).offset(offset)
    return session.execute(q).scalars().all()


def list_genres(session):
    q = (
        select(Book.genre)
        .where(Book.genre.is_not(None))
        .distinct()
        .order_by(Book.genre)
    )
    return session.execute(q).scalars().all()


def create_book(session, data, actor_id=None):
    title = data.get("title")
    author = data.get("author")
    isbn = data.get("isbn")
    if not title or not author or not isbn:
        raise ValidationError("Title, author, and ISBN are required")

    quantity = _quantity(data.get("quantity", 1))
    book = Book(
        title=title,
        author=author,
        isbn=isbn,
        genre=data.get("genre"),
        category=data.get("category"),
        publication_year=data.get("publication_year"),
        quantity=quantity,
        description=data.get("description"),
        cover_image=data.get("cover_image") or cover_url_for(isbn),
        availability_status=AvailabilityStatus.AVAILABLE,
    )
    session.add(book)
    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Book with this ISBN already exists")

    log_inventory(session, book.id, InventoryAction.ADD, 0, quantity, actor_id)
    logger.info("Added book %s (%s), quantity %s", book.id, book.isbn, quantity)
    return book


def update_book(session, book_id, patch, actor_id=None):
    if "availability_status" in patch:
        raise ValidationError(
            "Availability is changed through loans or the availability endpoint"
        )

    book = find_book(session, book_id, for_update=True)
    before_qty = book.quantity

    for field in EDITABLE_FIELDS:
        if field not in patch:
            continue
        value = patch[field]
        if field in ("title", "author", "isbn") and not value:
            raise ValidationError(f"{field} cannot be empty")
        if field == "quantity":
            value = _quantity(value)
        setattr(book, field, value)

    if "isbn" in patch and "cover_image" not in patch:
        book.cover_image = cover_url_for(book.isbn)

    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Book with this ISBN already exists")

    if book.quantity != before_qty:
        log_inventory(
            session, book.id, InventoryAction.UPDATE, before_qty, book.quantity, actor_id
        )
        logger.info(
            "Book %s quantity changed %s -> %s", book.id, before_qty, book.quantity
        )
    return book


def delete_book(session, book_id, actor_id=None):
    book = find_book(session, book_id, for_update=True)
    if _has_active_loan(session, book.id):
        raise Conflict("Cannot delete book that is currently borrowed")

    log_inventory(session, book.id, InventoryAction.DELETE, book.quantity, 0, actor_id)
    # past loans keep their rows; the store nulls their book_id
    session.delete(book)
    session.flush()
    logger.info("Deleted book %s (%s)", book_id, book.isbn)


def set_availability(session, book_id, status):
    """
    Staff override of a book's lending state.

    ``on_hold`` may be set at any time. ``available`` is refused while a loan
    is active, and ``checked_out`` is only accepted while one is (releasing a
    hold on a borrowed book).
    """
    status = _availability(status)
    book = find_book(session, book_id, for_update=True)
    on_loan = _has_active_loan(session, book.id)

    if status == AvailabilityStatus.AVAILABLE and on_loan:
        raise Conflict("Book is currently borrowed")
    if status == AvailabilityStatus.CHECKED_OUT and not on_loan:
        raise InvalidState("Only a borrowed book can be marked checked out")

    book.availability_status = status
    logger.info("Book %s availability set to %s", book.id, status.value)
    return book


def list_inventory_updates(session, book_id):
    q = (
        select(InventoryUpdate)
        .where(InventoryUpdate.book_id == book_id)
        .order_by(InventoryUpdate.timestamp, InventoryUpdate.id)
    )
    return session.execute(q).scalars().all()


# ----------------- circulation hooks -----------------

def claim_for_loan(session, book_id):
    """
    Atomically flip an available book to checked_out.

    The conditional UPDATE is the check-and-set: two concurrent issuers can
    not both see a row count of one.
    """
    book = find_book(session, book_id)
    result = session.execute(
        update(Book)
        .where(Book.id == book_id)
        .where(Book.availability_status == AvailabilityStatus.AVAILABLE)
        .values(availability_status=AvailabilityStatus.CHECKED_OUT)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Book is not available")
    session.refresh(book)
    return book


def release_from_loan(session, book):
    # a hold placed during the loan survives the return
    if book.availability_status != AvailabilityStatus.ON_HOLD:
        book.availability_status = AvailabilityStatus.AVAILABLE
    return book


def _has_active_loan(session, book_id):
    q = select(Loan.id).where(
        Loan.book_id == book_id, Loan.status == LoanStatus.ACTIVE
    )
    return session.execute(q.limit(1)).first() is not None


def _availability(value):
    try:
        return AvailabilityStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown availability status: {value}")


def _quantity(value):
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be an integer")
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative")
    return quantity
