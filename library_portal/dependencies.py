from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from library_portal import models
from library_portal.auth import AuthNotConfigured, decode_access_token
from library_portal.database import get_db
from library_portal.events import AdminNotifications, ChangeFeed
from library_portal.mailer import ReminderMailer
from library_portal.settings import Settings, get_settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> models.Profile:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        email = decode_access_token(token)
    except AuthNotConfigured as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if email is None:
        raise credentials_exception

    user = db.query(models.Profile).filter(models.Profile.email == email).first()
    if user is None:
        raise credentials_exception
    return user


def require_admin(current_user: models.Profile = Depends(get_current_user)) -> models.Profile:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator users only.")
    return current_user


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


def get_notifications(request: Request) -> AdminNotifications:
    return request.app.state.notifications


def get_mailer(settings: Settings = Depends(get_settings)) -> ReminderMailer:
    return ReminderMailer(
        api_key=settings.resend_api_key,
        sender=settings.reminder_from,
        base_url=settings.resend_base_url,
    )
