from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from library_portal import schemas, crud, fines
from fastapi import HTTPException
from typing import List, Optional
from library_portal.database import get_db
from fastapi.security import OAuth2PasswordRequestForm
from library_portal.auth import create_access_token
from library_portal.crud import authenticate_user
from datetime import timedelta
from library_portal.dependencies import (
    get_change_feed,
    get_current_user,
    get_mailer,
    get_notifications,
    require_admin,
)
from library_portal.events import AdminNotifications, ChangeFeed
from library_portal.mailer import MailerError, ReminderMailer
from library_portal.models import Profile, RequestStatus
from library_portal.settings import Settings, get_settings
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


# Sign-up / sign-in

@router.post("/register", response_model=schemas.ProfileConfig)
def register_user(profile: schemas.ProfileCreate, db: Session = Depends(get_db)):
    if crud.get_profile_by_email(db, profile.email):
        raise HTTPException(
            status_code=400,
            detail="This email is already registered. Please sign in."
        )
    return crud.create_profile(db, profile)


@router.post("/token", response_model=schemas.Token)
def login_for_access_token(
        form_data: OAuth2PasswordRequestForm = Depends(),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    if not settings.secret_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured. Set SECRET_KEY in the environment or a .env file.",
        )

    if (
        settings.admin_email
        and settings.admin_password
        and form_data.username.strip().lower() == settings.admin_email.strip().lower()
        and form_data.password == settings.admin_password
    ):
        crud.ensure_admin(db, settings.admin_email, settings.admin_password)

    user = authenticate_user(db, form_data.username, form_data.password)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"}
        )
    access_token_expires = timedelta(minutes=settings.access_token_expire_minutes)

    access_token = create_access_token(
        data={"sub": user.email},
        expires_delta=access_token_expires
    )

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "role": user.role,
        "redirect_to": "/admin" if user.is_admin else "/student",
    }


@router.get("/me", response_model=schemas.ProfileConfig)
def read_me(current_user: Profile = Depends(get_current_user)):
    return current_user


# Catalog

@router.get("/categories", response_model=List[schemas.CategoryConfig])
def read_categories(db: Session = Depends(get_db)):
    return crud.get_categories(db)


@router.post("/categories", response_model=schemas.CategoryConfig)
def create_category(
        category: schemas.CategoryCreate,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
):
    return crud.create_category(db, category)


@router.delete("/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return crud.delete_category(db, category_id)


@router.get("/books", response_model=List[schemas.BookWithAvailability])
def read_books(search: Optional[str] = None, category_id: Optional[int] = None, db: Session = Depends(get_db)):
    return crud.get_books(db, search, category_id)


@router.get("/books/{book_id}", response_model=schemas.BookWithAvailability)
def read_book(book_id: int, db: Session = Depends(get_db)):
    book = crud.get_book(db, book_id)
    return crud.with_availability(book, crud.count_active_loans(db, book.id))


@router.post("/books", response_model=schemas.BookWithAvailability)
def create_book(
        book: schemas.BookCreate,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.create_book(db, book, feed)


@router.patch("/books/{book_id}", response_model=schemas.BookWithAvailability)
def update_book(
        book_id: int,
        book_data: schemas.BookUpdate,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.partial_update_book(db, book_id, book_data, feed)


@router.delete("/books/{book_id}")
def delete_book(
        book_id: int,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.delete_book(db, book_id, feed)


# Student dashboard

@router.post("/requests", response_model=schemas.BookRequestConfig)
def request_book(
        book_request: schemas.BookRequestCreate,
        db: Session = Depends(get_db),
        current_user: Profile = Depends(get_current_user),
        settings: Settings = Depends(get_settings),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.create_book_request(db, current_user, book_request.book_id, settings, feed)


@router.get("/requests/me", response_model=List[schemas.BookRequestConfig])
def get_my_requests(db: Session = Depends(get_db), current_user: Profile = Depends(get_current_user)):
    return crud.get_requests_by_user(db, current_user.id)


@router.get("/loans/me", response_model=List[schemas.LoanStatus])
def get_my_loans(db: Session = Depends(get_db), current_user: Profile = Depends(get_current_user)):
    return [crud.loan_status(loan) for loan in crud.get_active_loans_by_user(db, current_user.id)]


@router.get("/loans/me/history", response_model=List[schemas.LoanStatus])
def get_my_loan_history(db: Session = Depends(get_db), current_user: Profile = Depends(get_current_user)):
    return [crud.loan_status(loan) for loan in crud.get_loan_history(db, current_user.id)]


@router.get("/loans/me/export")
def export_my_loans_csv(db: Session = Depends(get_db), current_user: Profile = Depends(get_current_user)):
    content = crud.generate_user_loans_csv(db, current_user.id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=loan_history.csv"},
    )


@router.get("/loans/me/export/pdf")
def export_my_loans_pdf(db: Session = Depends(get_db), current_user: Profile = Depends(get_current_user)):
    content = crud.generate_user_loans_pdf(db, current_user.id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=loan_history.pdf"},
    )


@router.post("/loans/{borrowed_id}/return-request", response_model=schemas.ReturnRequestConfig)
def request_return(
        borrowed_id: int,
        db: Session = Depends(get_db),
        current_user: Profile = Depends(get_current_user),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.create_return_request(db, current_user, borrowed_id, feed)


@router.get("/return-requests/me", response_model=List[schemas.ReturnRequestConfig])
def get_my_return_requests(db: Session = Depends(get_db), current_user: Profile = Depends(get_current_user)):
    return crud.get_return_requests_by_user(db, current_user.id)


# Admin dashboard

@router.get("/admin/requests", response_model=List[schemas.BookRequestWithUser])
def get_book_requests(
        status_filter: Optional[RequestStatus] = Query(RequestStatus.PENDING, alias="status"),
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
):
    return crud.get_requests(db, status_filter)


@router.post("/admin/requests/{request_id}/approve", response_model=schemas.LoanStatus)
def approve_book_request(
        request_id: int,
        approval: Optional[schemas.ApproveRequest] = None,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        settings: Settings = Depends(get_settings),
        feed: ChangeFeed = Depends(get_change_feed),
):
    due_date = approval.due_date if approval else None
    loan = crud.approve_book_request(db, request_id, admin, settings, due_date, feed)
    return crud.loan_status(loan)


@router.post("/admin/requests/{request_id}/decline", response_model=schemas.BookRequestWithUser)
def decline_book_request(
        request_id: int,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.decline_book_request(db, request_id, admin, feed)


@router.get("/admin/return-requests", response_model=List[schemas.ReturnRequestWithUser])
def get_return_requests(
        status_filter: Optional[RequestStatus] = Query(RequestStatus.PENDING, alias="status"),
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
):
    return crud.get_return_requests(db, status_filter)


@router.post("/admin/return-requests/{request_id}/approve", response_model=schemas.ReturnRequestWithUser)
def approve_return_request(
        request_id: int,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.approve_return_request(db, request_id, admin, feed)


@router.post("/admin/return-requests/{request_id}/decline", response_model=schemas.ReturnRequestWithUser)
def decline_return_request(
        request_id: int,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        feed: ChangeFeed = Depends(get_change_feed),
):
    return crud.decline_return_request(db, request_id, admin, feed)


@router.get("/admin/borrowed", response_model=List[schemas.LoanStatusWithUser])
def get_borrowed_books(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return [crud.loan_status(loan, with_user=True) for loan in crud.get_active_loans(db)]


@router.get("/admin/overdue", response_model=List[schemas.LoanStatusWithUser])
def get_overdue_loans(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return [crud.loan_status(loan, with_user=True) for loan in crud.get_overdue_loans(db)]


@router.get("/admin/users", response_model=List[schemas.ProfileConfig])
def get_users(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return crud.get_profiles(db)


@router.get("/admin/stats", response_model=schemas.AdminStats)
def get_admin_stats(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return crud.get_admin_dashboard_stats(db)


@router.post("/admin/fines/refresh")
def refresh_fines(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    return {"updated": fines.refresh_fines(db)}


@router.get("/admin/notifications", response_model=schemas.NotificationState)
def get_notification_state(
        admin: Profile = Depends(require_admin),
        notifications: AdminNotifications = Depends(get_notifications),
):
    latest = notifications.latest
    return {
        "unread": notifications.unread(admin.id),
        "latest": schemas.LatestChange.model_validate(latest) if latest else None,
    }


@router.post("/admin/notifications/read", response_model=schemas.NotificationState)
def mark_notifications_read(
        admin: Profile = Depends(require_admin),
        notifications: AdminNotifications = Depends(get_notifications),
):
    notifications.mark_read(admin.id)
    return {"unread": 0}


@router.post("/admin/reminders/due-soon")
def send_due_soon_reminders(
        days_ahead: int = 3,
        db: Session = Depends(get_db),
        admin: Profile = Depends(require_admin),
        mailer: ReminderMailer = Depends(get_mailer),
):
    return crud.send_due_soon_reminders(db, mailer, days_ahead)


# Reminder mail handler

@router.post("/api/send-reminder")
def send_reminder(reminder: schemas.ReminderRequest, mailer: ReminderMailer = Depends(get_mailer)):
    try:
        return mailer.send_due_reminder(
            email=reminder.email,
            user_name=reminder.user_name,
            book_title=reminder.book_title,
            due_date=reminder.due_date,
            days_remaining=reminder.days_remaining,
        )
    except MailerError as e:
        return JSONResponse(status_code=500, content={"error": e.error})


# Landing page contact form

@router.post("/feedback")
def submit_feedback(feedback: schemas.Feedback):
    logger.info("Feedback from %s <%s>: %d/5", feedback.name, feedback.email, feedback.rating)
    return {"message": "Thank you for your feedback!"}
