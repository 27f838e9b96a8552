import os
import re
import logging
from datetime import datetime, timezone
from functools import wraps

from flask import Blueprint, Flask, current_app, jsonify, request, abort
from flask_cors import CORS
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from werkzeug.exceptions import HTTPException

from . import catalog, circulation, fines, members, reports
from .circulation import LoanPolicy
from .config import Config
from .errors import LibraryError, Unavailable, ValidationError
from .models import Base

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


# ---------------------------------------------------------
# App factory
# ---------------------------------------------------------

def create_app(config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    logging.getLogger().setLevel(app.config["LOG_LEVEL"])
    CORS(app)

    engine = create_engine(
        app.config["SQLALCHEMY_DATABASE_URI"],
        echo=app.config["SQLALCHEMY_ECHO"],
        future=True,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    # Create tables if not present
    Base.metadata.create_all(engine)
    app.extensions["library_engine"] = engine
    app.extensions["library_sessions"] = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    with app.extensions["library_sessions"].begin() as session:
        members.ensure_membership_sequence(session)

    app.register_blueprint(api)
    _register_error_handlers(app)
    logger.info("Library service using %s", engine.url.render_as_string(hide_password=True))
    return app


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _register_error_handlers(app):
    @app.errorhandler(LibraryError)
    def handle_library_error(err):
        if err.status_code >= 500:
            logger.error("%s: %s", type(err).__name__, err.message)
        return jsonify({"error": err.message}), err.status_code

    @app.errorhandler(OperationalError)
    def handle_store_unavailable(err):
        logger.error("Store unavailable on %s: %s", request.path, err)
        return handle_library_error(Unavailable("Database unavailable, try again later"))

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        return jsonify({"error": err.description}), err.code


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def sessions():
    return current_app.extensions["library_sessions"]


def loan_policy():
    return LoanPolicy.from_config(current_app.config)


def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if expected and sent != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def _body():
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _to_snake(name):
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _to_camel(name):
    head, *rest = name.split("_")
    return head + "".join("ID" if part == "id" else part.title() for part in rest)


def _snake_keys(data):
    return {_to_snake(k): v for k, v in data.items()}


def _camel_keys(data):
    return {_to_camel(k): v for k, v in data.items()}


def _int(value, name, required=True):
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _parse_datetime(value, name):
    if value is None or value == "":
        return None
    try:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO 8601 date")
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _iso(moment):
    return moment.isoformat() if moment else None


def _paging():
    limit = _int(request.args.get("limit"), "limit", required=False) or 50
    offset = _int(request.args.get("offset"), "offset", required=False) or 0
    return limit, offset


def _date_range():
    return _int(request.args.get("dateRange"), "dateRange", required=False) or 30


def _book_json(b):
    return {
        "bookID": b.id,
        "title": b.title,
        "author": b.author,
        "isbn": b.isbn,
        "genre": b.genre,
        "category": b.category,
        "publicationYear": b.publication_year,
        "availabilityStatus": b.availability_status.value,
        "quantity": b.quantity,
        "coverImage": b.cover_image,
        "description": b.description,
        "createdAt": _iso(b.created_at),
    }


def _member_json(m):
    return {
        "userID": m.id,
        "firstName": m.first_name,
        "lastName": m.last_name,
        "email": m.email,
        "phone": m.phone,
        "address": m.address,
        "role": m.role.value,
        "status": m.status.value,
        "membershipID": m.membership_id,
        "membershipType": m.membership_type,
        "joinDate": _iso(m.join_date),
        "membershipExpiration": _iso(m.membership_expiration),
    }


def _book_ref(book):
    # a deleted book leaves its past loans and fees without one
    if book is None:
        return {"title": None, "author": None, "isbn": None}
    return {"title": book.title, "author": book.author, "isbn": book.isbn}


def _loan_json(loan, overdue=None):
    data = {
        "loanID": loan.id,
        "userID": loan.member_id,
        "bookID": loan.book_id,
        "borrowDate": _iso(loan.borrow_date),
        "dueDate": _iso(loan.due_date),
        "returnDate": _iso(loan.return_date),
        "status": loan.status.value,
        "renewalCount": loan.renewal_count,
        "memberName": loan.member.full_name,
        "membershipID": loan.member.membership_id,
    }
    data.update(_book_ref(loan.book))
    if overdue is not None:
        data["isOverdue"] = overdue.is_overdue
        data["daysOverdue"] = overdue.days_overdue
    return data


def _fine_json(f):
    data = {
        "fineID": f.id,
        "loanID": f.loan_id,
        "userID": f.member_id,
        "amount": f.amount,
        "rate": f.rate,
        "graceDays": f.grace_days,
        "maxFine": f.max_fine,
        "status": f.status.value,
        "createdAt": _iso(f.created_at),
        "paidAt": _iso(f.paid_at),
        "memberName": f.member.full_name,
        "membershipID": f.member.membership_id,
    }
    if f.loan is not None:
        data.update(
            {
                "borrowDate": _iso(f.loan.borrow_date),
                "dueDate": _iso(f.loan.due_date),
                "returnDate": _iso(f.loan.return_date),
            }
        )
        data.update(_book_ref(f.loan.book))
    return data


def _payment_json(p):
    return {
        "paymentID": p.id,
        "userID": p.member_id,
        "loanID": p.loan_id,
        "fineID": p.fine_id,
        "amount": p.amount,
        "type": p.type.value,
        "reference": p.reference,
        "timestamp": _iso(p.timestamp),
    }


def _inventory_json(e):
    return {
        "logID": e.id,
        "bookID": e.book_id,
        "action": e.action.value,
        "beforeQty": e.before_qty,
        "afterQty": e.after_qty,
        "userID": e.member_id,
        "timestamp": _iso(e.timestamp),
    }


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@api.get("/health")
def health_check():
    return jsonify({"status": "ok", "service": "library_service"}), 200


# ---------------------------------------------------------
# Loan endpoints
# ---------------------------------------------------------

@api.get("/loans")
def list_loans():
    status = request.args.get("status")
    member_id = _int(request.args.get("memberID") or request.args.get("userID"), "memberID", required=False)
    with sessions()() as session:
        loans = circulation.list_loans(session, status=status, member_id=member_id)
        return jsonify([_loan_json(loan) for loan in loans])


@api.get("/loans/<int:loan_id>")
def get_loan(loan_id):
    with sessions()() as session:
        return jsonify(_loan_json(circulation.get_loan(session, loan_id)))


@api.get("/loans/overdue")
def overdue_loans():
    with sessions()() as session:
        return jsonify(
            [_loan_json(loan, overdue) for loan, overdue in circulation.list_overdue_loans(session)]
        )


@api.get("/loans/member/<int:member_id>/current")
def current_member_loans(member_id):
    with sessions()() as session:
        return jsonify(
            [_loan_json(loan, overdue) for loan, overdue in circulation.current_loans(session, member_id)]
        )


@api.post("/loans/issue")
@require_api_key
def issue_loan():
    data = _body()
    member_id = _int(data.get("memberID", data.get("userID")), "memberID")
    book_id = _int(data.get("bookID"), "bookID")
    due_date = _parse_datetime(data.get("dueDate"), "dueDate")

    with sessions().begin() as session:
        loan = circulation.issue_loan(
            session, member_id, book_id, due_date=due_date, policy=loan_policy()
        )
        return jsonify(
            {
                "message": "Book issued successfully",
                "loanID": loan.id,
                "borrowDate": _iso(loan.borrow_date),
                "dueDate": _iso(loan.due_date),
            }
        ), 201


@api.post("/loans/return/<int:loan_id>")
@require_api_key
def return_loan(loan_id):
    with sessions().begin() as session:
        result = circulation.return_loan(session, loan_id, policy=loan_policy())
        return jsonify(
            {
                "message": "Book returned successfully",
                "isOverdue": result.is_overdue,
                "daysOverdue": result.days_overdue,
                "fineAmount": result.fine_amount,
                "fineID": result.fine.id if result.fine else None,
            }
        ), 200


@api.post("/loans/renew/<int:loan_id>")
@require_api_key
def renew_loan(loan_id):
    with sessions().begin() as session:
        loan = circulation.renew_loan(session, loan_id, policy=loan_policy())
        return jsonify(
            {
                "message": "Book renewed successfully",
                "newDueDate": _iso(loan.due_date),
                "renewalCount": loan.renewal_count,
            }
        ), 200


# ---------------------------------------------------------
# Fee endpoints
# ---------------------------------------------------------

@api.get("/fees/member/<int:member_id>")
def member_fees(member_id):
    with sessions()() as session:
        return jsonify([_fine_json(f) for f in fines.list_member_fines(session, member_id)])


@api.get("/fees/member/<int:member_id>/summary")
def member_fee_summary(member_id):
    with sessions()() as session:
        return jsonify(_camel_keys(fines.fine_summary(session, member_id)))


@api.get("/fees/pending")
def pending_fees():
    with sessions()() as session:
        return jsonify([_fine_json(f) for f in fines.list_pending_fines(session)])


@api.get("/fees/<int:fine_id>")
def get_fee(fine_id):
    with sessions()() as session:
        return jsonify(_fine_json(fines.get_fine(session, fine_id)))


@api.post("/fees/<int:fine_id>/pay")
@require_api_key
def pay_fee(fine_id):
    data = _body()
    with sessions().begin() as session:
        payment = fines.pay_fine(
            session,
            fine_id,
            amount=data.get("amount"),
            reference=data.get("reference"),
        )
        return jsonify({"message": "Fee paid successfully", "paymentID": payment.id}), 200


@api.post("/fees/add")
@require_api_key
def add_fee():
    data = _body()
    member_id = _int(data.get("memberID", data.get("userID")), "memberID")
    if data.get("amount") in (None, ""):
        raise ValidationError("User ID and amount are required")

    with sessions().begin() as session:
        fine = fines.add_manual_fine(
            session,
            member_id,
            data["amount"],
            loan_id=_int(data.get("loanID"), "loanID", required=False),
            rate=data.get("rate"),
            max_fine=data.get("maxFine"),
        )
        return jsonify({"message": "Fee added successfully", "fineID": fine.id}), 201


@api.put("/fees/<int:fine_id>")
@require_api_key
def update_fee(fine_id):
    data = _body()
    if "status" in data:
        raise ValidationError("Fee status changes only through payment")
    with sessions().begin() as session:
        fine = fines.update_fine(
            session,
            fine_id,
            amount=data.get("amount"),
            rate=data.get("rate"),
            max_fine=data.get("maxFine"),
        )
        return jsonify(_fine_json(fine)), 200


# ---------------------------------------------------------
# Payment endpoints
# ---------------------------------------------------------

@api.post("/payments")
@require_api_key
def record_payment():
    data = _body()
    member_id = _int(data.get("memberID", data.get("userID")), "memberID")
    if data.get("amount") in (None, ""):
        raise ValidationError("amount is required")

    with sessions().begin() as session:
        payment = fines.record_payment(
            session,
            member_id,
            data["amount"],
            reference=data.get("reference"),
            loan_id=_int(data.get("loanID"), "loanID", required=False),
        )
        return jsonify({"message": "Payment recorded", "paymentID": payment.id}), 201


@api.get("/payments/member/<int:member_id>")
def member_payments(member_id):
    with sessions()() as session:
        return jsonify([_payment_json(p) for p in fines.list_member_payments(session, member_id)])


# ---------------------------------------------------------
# Book endpoints
# ---------------------------------------------------------

@api.get("/books")
def list_books():
    limit, offset = _paging()
    with sessions()() as session:
        books = catalog.list_books(
            session,
            search=request.args.get("search"),
            genre=request.args.get("genre"),
            status=request.args.get("status"),
            limit=limit,
            offset=offset,
        )
        return jsonify([_book_json(b) for b in books])


@api.get("/books/data/genres")
def list_genres():
    with sessions()() as session:
        return jsonify(catalog.list_genres(session))


@api.get("/books/<int:book_id>")
def get_book(book_id):
    with sessions()() as session:
        return jsonify(_book_json(catalog.find_book(session, book_id)))


@api.post("/books")
@require_api_key
def create_book():
    data = _snake_keys(_body())
    with sessions().begin() as session:
        book = catalog.create_book(session, data)
        return jsonify({"message": "Book added successfully", "bookID": book.id}), 201


@api.put("/books/<int:book_id>")
@require_api_key
def update_book(book_id):
    patch = _snake_keys(_body())
    with sessions().begin() as session:
        book = catalog.update_book(session, book_id, patch)
        return jsonify(_book_json(book)), 200


@api.delete("/books/<int:book_id>")
@require_api_key
def delete_book(book_id):
    with sessions().begin() as session:
        catalog.delete_book(session, book_id)
    return jsonify({"message": "Book deleted successfully"}), 200


@api.put("/books/<int:book_id>/availability")
@require_api_key
def set_book_availability(book_id):
    status = _body().get("availabilityStatus")
    if not status:
        raise ValidationError("availabilityStatus is required")
    with sessions().begin() as session:
        book = catalog.set_availability(session, book_id, status)
        return jsonify(_book_json(book)), 200


@api.get("/books/<int:book_id>/inventory")
def book_inventory(book_id):
    with sessions()() as session:
        entries = catalog.list_inventory_updates(session, book_id)
        return jsonify([_inventory_json(e) for e in entries])


# ---------------------------------------------------------
# Member endpoints
# ---------------------------------------------------------

@api.get("/members")
def list_members():
    limit, offset = _paging()
    with sessions()() as session:
        found = members.list_members(
            session,
            search=request.args.get("search"),
            membership_type=request.args.get("membershipType"),
            status=request.args.get("status"),
            limit=limit,
            offset=offset,
        )
        return jsonify([_member_json(m) for m in found])


@api.get("/members/data/membership-types")
def membership_types():
    return jsonify(members.MEMBERSHIP_TYPES)


@api.get("/members/<int:member_id>")
def get_member(member_id):
    with sessions()() as session:
        return jsonify(_member_json(members.find_member(session, member_id)))


@api.get("/members/<int:member_id>/borrowing-history")
def member_borrowing_history(member_id):
    with sessions()() as session:
        history = members.borrowing_history(session, member_id)
        return jsonify([_loan_json(loan) for loan, _book in history])


@api.post("/members/register")
def register_member():
    data = _snake_keys(_body())
    with sessions().begin() as session:
        member = members.register_member(session, data)
        return jsonify(
            {
                "message": "Registration received, pending approval",
                "userID": member.id,
                "membershipID": member.membership_id,
                "status": member.status.value,
            }
        ), 201


@api.post("/members")
@require_api_key
def create_member():
    data = _snake_keys(_body())
    years = current_app.config["MEMBERSHIP_YEARS"]
    with sessions().begin() as session:
        member = members.create_member_direct(session, data, years=years)
        return jsonify(
            {
                "message": "Member added successfully",
                "userID": member.id,
                "membershipID": member.membership_id,
            }
        ), 201


@api.put("/members/<int:member_id>")
@require_api_key
def update_member(member_id):
    patch = _snake_keys(_body())
    if "membership_expiration" in patch:
        patch["membership_expiration"] = _parse_datetime(
            patch["membership_expiration"], "membershipExpiration"
        )
    with sessions().begin() as session:
        member = members.update_member(session, member_id, patch)
        return jsonify(_member_json(member)), 200


@api.post("/members/<int:member_id>/approve")
@require_api_key
def approve_member(member_id):
    years = current_app.config["MEMBERSHIP_YEARS"]
    with sessions().begin() as session:
        member = members.approve_member(session, member_id, years=years)
        return jsonify(_member_json(member)), 200


@api.post("/members/<int:member_id>/deactivate")
@require_api_key
def deactivate_member(member_id):
    with sessions().begin() as session:
        member = members.deactivate_member(session, member_id)
        return jsonify(_member_json(member)), 200


@api.post("/members/<int:member_id>/reactivate")
@require_api_key
def reactivate_member(member_id):
    years = current_app.config["MEMBERSHIP_YEARS"]
    with sessions().begin() as session:
        member = members.reactivate_member(session, member_id, years=years)
        return jsonify(_member_json(member)), 200


@api.post("/members/expire-lapsed")
@require_api_key
def expire_lapsed_members():
    with sessions().begin() as session:
        expired = members.expire_lapsed_members(session)
        return jsonify({"expired": [m.membership_id for m in expired]}), 200


# ---------------------------------------------------------
# Search
# ---------------------------------------------------------

@api.get("/search")
def search():
    term = request.args.get("q")
    kind = request.args.get("type", "books")
    if not term:
        raise ValidationError("Search query is required")
    limit, offset = _paging()

    with sessions()() as session:
        if kind == "books":
            books = catalog.list_books(session, search=term, limit=limit, offset=offset)
            return jsonify([_book_json(b) for b in books])
        if kind == "members":
            found = members.list_members(session, search=term, limit=limit, offset=offset)
            return jsonify([_member_json(m) for m in found])
        if kind == "transactions":
            loans = circulation.search_loans(session, term, limit=limit, offset=offset)
            return jsonify([_loan_json(loan) for loan in loans])
    raise ValidationError(f"Invalid search type: {kind}")


# ---------------------------------------------------------
# Reports
# ---------------------------------------------------------

@api.get("/reports/dashboard")
def report_dashboard():
    with sessions()() as session:
        return jsonify(_camel_keys(reports.dashboard(session, days=_date_range())))


@api.get("/reports/borrowing-trends")
def report_borrowing_trends():
    with sessions()() as session:
        return jsonify(reports.borrowing_trends(session, days=_date_range()))


@api.get("/reports/popular-books")
def report_popular_books():
    limit = _int(request.args.get("limit"), "limit", required=False) or 10
    with sessions()() as session:
        rows = reports.popular_books(session, days=_date_range(), limit=limit)
        return jsonify([_camel_keys(row) for row in rows])


@api.get("/reports/active-members")
def report_active_members():
    limit = _int(request.args.get("limit"), "limit", required=False) or 10
    with sessions()() as session:
        rows = reports.active_members(session, days=_date_range(), limit=limit)
        return jsonify([_camel_keys(row) for row in rows])


@api.get("/reports/fines")
def report_fines():
    with sessions()() as session:
        return jsonify([_camel_keys(row) for row in reports.outstanding_fines(session)])


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
