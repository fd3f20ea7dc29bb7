from sqlalchemy.orm import Session
from sqlalchemy import func, or_
from library_portal import models, schemas, fines
from library_portal.events import ChangeFeed, INSERT, UPDATE, DELETE
from library_portal.mailer import MailerError, ReminderMailer
from library_portal.models import RequestStatus, Role, BookStatus
from library_portal.security import hash_password, verify_password
from library_portal.settings import Settings
from datetime import datetime, timedelta, timezone
from fastapi import HTTPException
from decimal import Decimal
from typing import Dict, Optional
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
import csv
import io
import logging

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


def _publish(feed: Optional[ChangeFeed], table: str, event: str, row_id: int):
    if feed is not None:
        feed.publish(table, event, row_id)


# Accounts

def get_profile_by_email(db: Session, email: str):
    return db.query(models.Profile).filter(func.lower(models.Profile.email) == email.strip().lower()).first()


def create_profile(db: Session, profile_data: schemas.ProfileCreate, role: Role = Role.STUDENT):
    new_profile = models.Profile(
        full_name=profile_data.full_name,
        email=profile_data.email.strip().lower(),
        hashed_password=hash_password(profile_data.password),
        role=role.value,
    )
    db.add(new_profile)
    db.commit()
    db.refresh(new_profile)
    logger.info("Profile %s created with role %s", new_profile.email, new_profile.role)
    return new_profile


def authenticate_user(db: Session, email: str, password: str):
    user = get_profile_by_email(db, email)
    if not user:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def ensure_admin(db: Session, email: str, password: str):
    """Create the configured administrator account, or promote it if it already exists."""
    admin = get_profile_by_email(db, email)
    if admin is None:
        admin = models.Profile(
            full_name="Admin",
            email=email.strip().lower(),
            hashed_password=hash_password(password),
            role=Role.ADMIN.value,
        )
        db.add(admin)
        db.commit()
        db.refresh(admin)
        logger.info("Admin profile %s created", admin.email)
        return admin

    if not admin.is_admin or not verify_password(password, admin.hashed_password):
        admin.role = Role.ADMIN.value
        admin.hashed_password = hash_password(password)
        db.commit()
        db.refresh(admin)
        logger.info("Profile %s promoted to admin", admin.email)
    return admin


def get_profiles(db: Session):
    return db.query(models.Profile).order_by(models.Profile.created_at.desc(), models.Profile.id.desc()).all()


# Categories

def get_categories(db: Session):
    return db.query(models.Category).order_by(models.Category.name).all()


def create_category(db: Session, category_data: schemas.CategoryCreate):
    name = category_data.name.strip()
    if db.query(models.Category).filter(func.lower(models.Category.name) == name.lower()).first():
        raise HTTPException(status_code=400, detail="Category already exists.")

    category = models.Category(name=name)
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def delete_category(db: Session, category_id: int):
    category = db.query(models.Category).filter(models.Category.id == category_id).first()
    if not category:
        raise HTTPException(status_code=404, detail="Category not found.")
    db.query(models.Book).filter(models.Book.category_id == category_id).update({models.Book.category_id: None})
    db.delete(category)
    db.commit()
    return {"message": "Category deleted successfully"}


# Books and availability

def active_loan_counts(db: Session) -> Dict[int, int]:
    rows = (
        db.query(models.BorrowedBook.book_id, func.count(models.BorrowedBook.id))
        .filter(models.BorrowedBook.return_date.is_(None))
        .group_by(models.BorrowedBook.book_id)
        .all()
    )
    return {book_id: count for book_id, count in rows}


def count_active_loans(db: Session, book_id: int) -> int:
    return (
        db.query(func.count(models.BorrowedBook.id))
        .filter(models.BorrowedBook.book_id == book_id, models.BorrowedBook.return_date.is_(None))
        .scalar()
    )


def available_copies(db: Session, book: models.Book) -> int:
    return book.total_copies - count_active_loans(db, book.id)


def with_availability(book: models.Book, borrowed_count: int) -> schemas.BookWithAvailability:
    data = schemas.BookConfig.model_validate(book).model_dump()
    return schemas.BookWithAvailability(
        **data,
        borrowed_count=borrowed_count,
        available_copies=max(0, book.total_copies - borrowed_count),
    )


def refresh_book_status(db: Session, book: models.Book, feed: Optional[ChangeFeed] = None):
    status = BookStatus.AVAILABLE if available_copies(db, book) > 0 else BookStatus.UNAVAILABLE
    if book.status != status.value:
        book.status = status.value
        db.commit()
        _publish(feed, "books", UPDATE, book.id)
    return book


def get_books(db: Session, search: Optional[str] = None, category_id: Optional[int] = None):
    query = db.query(models.Book)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(models.Book.title.ilike(pattern), models.Book.author.ilike(pattern)))
    if category_id is not None:
        query = query.filter(models.Book.category_id == category_id)

    counts = active_loan_counts(db)
    return [with_availability(book, counts.get(book.id, 0)) for book in query.order_by(models.Book.title).all()]


def get_book(db: Session, book_id: int):
    book = db.query(models.Book).filter(models.Book.id == book_id).first()
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book


def _check_category(db: Session, category_id: Optional[int]):
    if category_id is not None and not db.query(models.Category).filter(models.Category.id == category_id).first():
        raise HTTPException(status_code=400, detail="Unknown category.")


def create_book(db: Session, book_data: schemas.BookCreate, feed: Optional[ChangeFeed] = None):
    _check_category(db, book_data.category_id)
    new_book = models.Book(**book_data.model_dump())
    db.add(new_book)
    db.commit()
    db.refresh(new_book)
    _publish(feed, "books", INSERT, new_book.id)
    return with_availability(new_book, 0)


def partial_update_book(
        db: Session,
        book_id: int,
        book_data: schemas.BookUpdate,
        feed: Optional[ChangeFeed] = None,
):
    book = get_book(db, book_id)
    changes = book_data.model_dump(exclude_unset=True)
    if "category_id" in changes:
        _check_category(db, changes["category_id"])

    for key, value in changes.items():
        setattr(book, key, value)

    db.commit()
    db.refresh(book)
    refresh_book_status(db, book)
    _publish(feed, "books", UPDATE, book.id)

    return with_availability(book, count_active_loans(db, book.id))


def delete_book(db: Session, book_id: int, feed: Optional[ChangeFeed] = None):
    book = get_book(db, book_id)
    # loan rows outlive their book
    if count_active_loans(db, book_id) > 0:
        raise HTTPException(status_code=400, detail="Book is currently on loan and cannot be deleted")
    if db.query(models.BorrowedBook).filter(models.BorrowedBook.book_id == book_id).first():
        raise HTTPException(status_code=400, detail="Book has loan history and cannot be deleted")
    db.delete(book)
    db.commit()
    _publish(feed, "books", DELETE, book_id)
    return {"message": "Book deleted successfully"}


# Borrow requests

def _active_loan_count_for_user(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(models.BorrowedBook.id))
        .filter(models.BorrowedBook.user_id == user_id, models.BorrowedBook.return_date.is_(None))
        .scalar()
    )


def create_book_request(
        db: Session,
        user: models.Profile,
        book_id: int,
        settings: Settings,
        feed: Optional[ChangeFeed] = None,
):
    book = get_book(db, book_id)

    if _active_loan_count_for_user(db, user.id) >= settings.max_active_loans:
        raise HTTPException(
            status_code=400,
            detail=f"You can only borrow maximum {settings.max_active_loans} books at a time",
        )

    if available_copies(db, book) <= 0:
        raise HTTPException(status_code=400, detail="No copies available for this book")

    pending = (
        db.query(models.BookRequest)
        .filter(
            models.BookRequest.user_id == user.id,
            models.BookRequest.book_id == book_id,
            models.BookRequest.status == RequestStatus.PENDING.value,
        )
        .first()
    )
    if pending:
        raise HTTPException(status_code=400, detail="You already have a pending request for this book")

    request = models.BookRequest(user_id=user.id, book_id=book_id, status=RequestStatus.PENDING.value)
    db.add(request)
    db.commit()
    db.refresh(request)
    _publish(feed, "book_requests", INSERT, request.id)
    logger.info("Book request %s: user %s asked for book %s", request.id, user.id, book_id)
    return request


def get_requests_by_user(db: Session, user_id: int):
    return (
        db.query(models.BookRequest)
        .filter(models.BookRequest.user_id == user_id)
        .order_by(models.BookRequest.requested_at.desc(), models.BookRequest.id.desc())
        .all()
    )


def get_requests(db: Session, status: Optional[RequestStatus] = RequestStatus.PENDING):
    query = db.query(models.BookRequest)
    if status is not None:
        query = query.filter(models.BookRequest.status == status.value)
    return query.order_by(models.BookRequest.requested_at.desc(), models.BookRequest.id.desc()).all()


def _get_pending(db: Session, model, request_id: int, label: str):
    request = db.query(model).filter(model.id == request_id).first()
    if request is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    if request.status != RequestStatus.PENDING.value:
        raise HTTPException(status_code=409, detail=f"{label} has already been {request.status.lower()}")
    return request


def approve_book_request(
        db: Session,
        request_id: int,
        admin: models.Profile,
        settings: Settings,
        due_date: Optional[datetime] = None,
        feed: Optional[ChangeFeed] = None,
):
    request = _get_pending(db, models.BookRequest, request_id, "Request")
    book = get_book(db, request.book_id)

    # Counted, not locked: concurrent approvals can both pass this check.
    if available_copies(db, book) <= 0:
        raise HTTPException(status_code=400, detail="No copies available to approve this request")

    now = _now()
    due = fines.as_utc(due_date) if due_date else now + timedelta(days=settings.loan_days)

    request.status = RequestStatus.APPROVED.value
    request.reviewed_at = now
    request.reviewed_by = admin.id

    loan = models.BorrowedBook(
        user_id=request.user_id,
        book_id=request.book_id,
        request_id=request.id,
        issue_date=now,
        due_date=due,
        daily_fine_rate=settings.daily_fine_rate,
        total_fine=Decimal("0"),
        due_fee=Decimal("0"),
        fee_paid=False,
    )
    db.add(loan)
    db.commit()
    db.refresh(loan)

    _publish(feed, "book_requests", UPDATE, request.id)
    _publish(feed, "borrowed_books", INSERT, loan.id)
    refresh_book_status(db, book, feed)
    logger.info("Request %s approved by %s, loan %s due %s", request.id, admin.id, loan.id, due.date())
    return loan


def decline_book_request(db: Session, request_id: int, admin: models.Profile, feed: Optional[ChangeFeed] = None):
    request = _get_pending(db, models.BookRequest, request_id, "Request")
    request.status = RequestStatus.DECLINED.value
    request.reviewed_at = _now()
    request.reviewed_by = admin.id
    db.commit()
    db.refresh(request)
    _publish(feed, "book_requests", UPDATE, request.id)
    logger.info("Request %s declined by %s", request.id, admin.id)
    return request


# Loans

def loan_status(loan: models.BorrowedBook, as_of=None, with_user: bool = False):
    """Attach the fine as of ``as_of`` (or as of the return, for returned loans)."""
    moment = loan.return_date or as_of
    fine = fines.calculate_fine(loan.due_date, moment, loan.daily_fine_rate)

    data = schemas.BorrowedBookConfig.model_validate(loan).model_dump()
    data.update(
        current_fine=fine.total_fine,
        days_overdue=fine.days_overdue,
        days_remaining=fines.days_remaining(loan.due_date, moment),
        is_overdue=fine.is_overdue,
    )
    if with_user:
        data["user"] = schemas.RequesterSummary.model_validate(loan.user).model_dump()
        return schemas.LoanStatusWithUser(**data)
    return schemas.LoanStatus(**data)


def get_loan(db: Session, borrowed_id: int):
    loan = db.query(models.BorrowedBook).filter(models.BorrowedBook.id == borrowed_id).first()
    if loan is None:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan


def get_active_loans_by_user(db: Session, user_id: int):
    return (
        db.query(models.BorrowedBook)
        .filter(models.BorrowedBook.user_id == user_id, models.BorrowedBook.return_date.is_(None))
        .order_by(models.BorrowedBook.issue_date.desc(), models.BorrowedBook.id.desc())
        .all()
    )


def get_loan_history(db: Session, user_id: int):
    return (
        db.query(models.BorrowedBook)
        .filter(models.BorrowedBook.user_id == user_id)
        .order_by(models.BorrowedBook.issue_date.desc(), models.BorrowedBook.id.desc())
        .all()
    )


def get_active_loans(db: Session):
    return (
        db.query(models.BorrowedBook)
        .filter(models.BorrowedBook.return_date.is_(None))
        .order_by(models.BorrowedBook.due_date.asc())
        .all()
    )


def get_overdue_loans(db: Session, as_of=None):
    return [loan for loan in get_active_loans(db) if fines.calculate_fine(loan.due_date, as_of).is_overdue]


def get_loans_due_soon(db: Session, days_ahead: int = 3, as_of=None):
    now = fines.as_utc(as_of) if as_of is not None else _now()
    upcoming = now + timedelta(days=days_ahead)
    return [
        loan for loan in get_active_loans(db)
        if now <= fines.as_utc(loan.due_date) <= upcoming
    ]


# Return requests

def create_return_request(
        db: Session,
        user: models.Profile,
        borrowed_id: int,
        feed: Optional[ChangeFeed] = None,
):
    loan = get_loan(db, borrowed_id)
    if loan.user_id != user.id:
        raise HTTPException(status_code=403, detail="You can't return another user's loan.")
    if loan.return_date is not None:
        raise HTTPException(status_code=400, detail="Book already returned")

    pending = (
        db.query(models.ReturnRequest)
        .filter(
            models.ReturnRequest.borrowed_book_id == borrowed_id,
            models.ReturnRequest.status == RequestStatus.PENDING.value,
        )
        .first()
    )
    if pending:
        raise HTTPException(status_code=400, detail="Return request already pending for this book")

    request = models.ReturnRequest(borrowed_book_id=borrowed_id, user_id=user.id, status=RequestStatus.PENDING.value)
    db.add(request)
    db.commit()
    db.refresh(request)
    _publish(feed, "return_requests", INSERT, request.id)
    logger.info("Return request %s for loan %s", request.id, borrowed_id)
    return request


def get_return_requests_by_user(db: Session, user_id: int):
    return (
        db.query(models.ReturnRequest)
        .filter(models.ReturnRequest.user_id == user_id)
        .order_by(models.ReturnRequest.requested_at.desc(), models.ReturnRequest.id.desc())
        .all()
    )


def get_return_requests(db: Session, status: Optional[RequestStatus] = RequestStatus.PENDING):
    query = db.query(models.ReturnRequest)
    if status is not None:
        query = query.filter(models.ReturnRequest.status == status.value)
    return query.order_by(models.ReturnRequest.requested_at.desc(), models.ReturnRequest.id.desc()).all()


def approve_return_request(
        db: Session,
        request_id: int,
        admin: models.Profile,
        feed: Optional[ChangeFeed] = None,
        processed_at: Optional[datetime] = None,
):
    request = _get_pending(db, models.ReturnRequest, request_id, "Return request")
    loan = request.borrowed_book
    if loan is None:
        raise HTTPException(status_code=404, detail="Borrowed book details unavailable")
    if loan.return_date is not None:
        raise HTTPException(status_code=400, detail="Book already returned")

    processed_at = fines.as_utc(processed_at) if processed_at else _now()
    fine = fines.calculate_fine(loan.due_date, processed_at, loan.daily_fine_rate)

    loan.return_date = processed_at
    loan.total_fine = fine.total_fine
    loan.due_fee = fine.total_fine
    loan.last_fine_update = processed_at
    loan.fee_paid = fine.total_fine == 0

    request.status = RequestStatus.APPROVED.value
    request.processed_at = processed_at
    request.processed_by = admin.id

    db.commit()
    db.refresh(request)

    _publish(feed, "borrowed_books", UPDATE, loan.id)
    _publish(feed, "return_requests", UPDATE, request.id)
    refresh_book_status(db, loan.book, feed)
    logger.info("Return %s approved by %s with fine %s", request.id, admin.id, fine.total_fine)
    return request


def decline_return_request(db: Session, request_id: int, admin: models.Profile, feed: Optional[ChangeFeed] = None):
    request = _get_pending(db, models.ReturnRequest, request_id, "Return request")
    request.status = RequestStatus.DECLINED.value
    request.processed_at = _now()
    request.processed_by = admin.id
    db.commit()
    db.refresh(request)
    _publish(feed, "return_requests", UPDATE, request.id)
    logger.info("Return request %s declined by %s", request.id, admin.id)
    return request


# Exports

def generate_user_loans_csv(db: Session, user_id: int) -> str:
    loans = [loan_status(loan) for loan in get_loan_history(db, user_id)]

    output = io.StringIO()
    writer = csv.writer(output)

    # Header
    writer.writerow(["Loan ID", "Book Title", "Issue Date", "Due Date", "Return Date", "Fine"])

    # Rows
    for loan in loans:
        writer.writerow([
            loan.id,
            loan.book.title,
            loan.issue_date.date(),
            loan.due_date.date(),
            loan.return_date.date() if loan.return_date else "",
            str(loan.current_fine),
        ])

    return output.getvalue()


def generate_user_loans_pdf(db: Session, user_id: int) -> bytes:
    loans = [loan_status(loan) for loan in get_loan_history(db, user_id)]

    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    y = height - 40
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(40, y, "Loan History")
    y -= 30

    pdf.setFont("Helvetica", 10)
    for loan in loans:
        due = str(loan.due_date.date())
        returned = str(loan.return_date.date()) if loan.return_date else "-"
        line = f"{loan.id}: {loan.book.title} | Due: {due} | Returned: {returned} | Fine: {loan.current_fine}"
        pdf.drawString(40, y, line)
        y -= 18
        if y < 50:
            pdf.showPage()
            y = height - 40
            pdf.setFont("Helvetica", 10)

    pdf.save()
    buffer.seek(0)
    return buffer.read()


# Admin dashboard

def get_admin_dashboard_stats(db: Session, as_of=None):
    total_books = db.query(func.count(models.Book.id)).scalar()
    total_categories = db.query(func.count(models.Category.id)).scalar()
    total_users = db.query(func.count(models.Profile.id)).scalar()

    active = get_active_loans(db)
    total_fees = sum(
        (fines.calculate_fine(loan.due_date, as_of, loan.daily_fine_rate).total_fine for loan in active),
        Decimal("0"),
    )

    return {
        "total_books": total_books,
        "total_categories": total_categories,
        "total_users": total_users,
        "borrowed_count": len(active),
        "total_fees": total_fees,
    }


def send_due_soon_reminders(db: Session, mailer: ReminderMailer, days_ahead: int = 3, as_of=None):
    sent = failed = 0
    for loan in get_loans_due_soon(db, days_ahead, as_of):
        try:
            mailer.send_due_reminder(
                email=loan.user.email,
                user_name=loan.user.full_name,
                book_title=loan.book.title,
                due_date=loan.due_date,
                days_remaining=fines.days_remaining(loan.due_date, as_of),
            )
            sent += 1
        except MailerError as e:
            logger.warning("Reminder for loan %s not sent: %s", loan.id, e)
            failed += 1
    return {"sent": sent, "failed": failed}
