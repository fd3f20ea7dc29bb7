"""Due-date reminder e-mails, delivered through the Resend HTTP API."""

from html import escape
from typing import Optional
import logging

import httpx

from library_portal.fines import as_utc

logger = logging.getLogger(__name__)


class MailerError(Exception):
    def __init__(self, error):
        super().__init__(str(error))
        self.error = error


def _display_date(value) -> str:
    try:
        moment = as_utc(value)
    except (TypeError, ValueError):
        return str(value)
    return f"{moment.month}/{moment.day}/{moment.year}"


def render_reminder(user_name: str, book_title: str, due_date, days_remaining: int) -> str:
    name = escape(user_name)
    title = escape(book_title)
    due = escape(_display_date(due_date))
    return f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h2 style="color: #2563eb;">Library Book Due Reminder</h2>
          <p>Hello {name},</p>
          <p>This is a friendly reminder that your borrowed book <strong>"{title}"</strong> is due in <strong>{days_remaining} day(s)</strong>.</p>
          <div style="background: #f3f4f6; padding: 16px; border-radius: 8px; margin: 16px 0;">
            <p><strong>Due Date:</strong> {due}</p>
            <p><strong>Days Remaining:</strong> {days_remaining}</p>
          </div>
          <p>Please return the book on or before the due date to avoid late fees.</p>
          <p>Thank you for using our library!</p>
          <hr style="margin: 24px 0;">
          <p style="color: #6b7280; font-size: 14px;">
            This is an automated message. Please do not reply to this email.
          </p>
        </div>
    """


class ReminderMailer:
    def __init__(
        self,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    def send_due_reminder(self, email: str, user_name: str, book_title: str, due_date, days_remaining: int) -> dict:
        if not self.api_key:
            raise MailerError({"message": "Email service is not configured. Set RESEND_API_KEY."})

        payload = {
            "from": self.sender,
            "to": [email],
            "subject": f"📚 Book Due Reminder: {book_title}",
            "html": render_reminder(user_name, book_title, due_date, days_remaining),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(base_url=self.base_url, transport=self.transport, timeout=self.timeout) as client:
                response = client.post("/emails", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Reminder to %s failed: %s", email, e)
            raise MailerError({"message": str(e)})

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}

        if response.is_error:
            logger.warning("Email provider rejected reminder to %s: %s", email, response.status_code)
            raise MailerError(body)

        logger.info("Reminder for '%s' sent to %s", book_title, email)
        return body
