"""
Notification dispatcher
=======================
Outbound email for the grievance portal:
- OTP codes during phone verification
- Email-verification links after registration
- Status updates when staff change a grievance
- Reminders filed by students

Delivery failures are logged and reported as ``False``; nothing here
retries or raises.
"""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

import aiosmtplib

from .config import (
    SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_STARTTLS,
    EMAIL_FROM, EMAIL_FROM_NAME, FRONTEND_URL, API_BASE_URL, OTP_EXPIRE_MINUTES,
)

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "pending": "received and is pending review",
    "in-progress": "assigned and is in progress",
    "resolved": "resolved successfully",
    "rejected": "reviewed and cannot be processed",
}


def status_message(status: str) -> str:
    return STATUS_MESSAGES.get(status, "updated")

def subject_tag(tracking_id: str) -> str:
    """Subject prefix that lets inbound replies find their grievance."""
    return f"[{tracking_id}]"


def _wrap(title: str, body_html: str, footer: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; '
        'padding: 20px; border: 1px solid #e0e0e0;">'
        f'<h2 style="color: #4a86e8;">{title}</h2>'
        f"{body_html}"
        '<hr style="border: none; border-top: 1px solid #e0e0e0; margin: 20px 0;">'
        f'<p style="font-size: 12px; color: #777;">{footer}</p>'
        "</div>"
    )


class Notifier:
    """Async email dispatcher over SMTP."""

    def __init__(self, host: str = SMTP_HOST, port: int = SMTP_PORT,
                 user: str = SMTP_USER, password: str = SMTP_PASSWORD,
                 start_tls: bool = SMTP_STARTTLS, from_email: str = EMAIL_FROM,
                 from_name: str = EMAIL_FROM_NAME):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.start_tls = start_tls
        self.from_email = from_email
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def build_message(self, to_email: str, subject: str, html_content: str,
                      text_content: Optional[str] = None) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message["Subject"] = subject
        if text_content:
            message.attach(MIMEText(text_content, "plain"))
        message.attach(MIMEText(html_content, "html"))
        return message

    async def send_email(self, to_email: str, subject: str, html_content: str,
                         text_content: Optional[str] = None) -> bool:
        if not to_email:
            logger.error("[Email] Missing recipient for %r", subject)
            return False
        if not self.is_configured:
            logger.warning("[Email] SMTP not configured, skipping email to %s: %s", to_email, subject)
            return False
        message = self.build_message(to_email, subject, html_content, text_content)
        try:
            await aiosmtplib.send(
                message, hostname=self.host, port=self.port,
                username=self.user, password=self.password, start_tls=self.start_tls)
        except Exception as e:
            logger.error("[Email] Failed to send %r to %s: %s", subject, to_email, e)
            return False
        logger.info("[Email] Sent %r to %s", subject, to_email)
        return True

    # -----------------------------------------------------------------------
    # Templates
    # -----------------------------------------------------------------------
    async def send_otp(self, to_email: str, code: str) -> bool:
        body = (
            "<p>Your One-Time Password (OTP) for verification is:</p>"
            '<div style="background-color: #f5f5f5; padding: 10px; text-align: center; '
            f'font-size: 24px; font-weight: bold; letter-spacing: 5px;">{escape(code)}</div>'
            f"<p>This OTP will expire in {OTP_EXPIRE_MINUTES} minutes.</p>"
            "<p>If you didn't request this OTP, please ignore this email.</p>"
        )
        html = _wrap("OTP Verification", body,
                     f"This is an automated message from {escape(self.from_name)}. Please do not reply.")
        text = f"Your OTP is {code}. It expires in {OTP_EXPIRE_MINUTES} minutes."
        return await self.send_email(to_email, f"{self.from_name} - OTP Verification", html, text)

    async def send_verification_email(self, to_email: str, token: str) -> bool:
        link = f"{API_BASE_URL}/api/auth/verify-email/{token}"
        body = (
            "<p>Thanks for registering. Confirm your email address to activate your account:</p>"
            f'<p style="text-align: center;"><a href="{escape(link)}">Verify my email</a></p>'
            "<p>The link expires in 24 hours.</p>"
        )
        html = _wrap("Verify your email", body,
                     f"This is an automated message from {escape(self.from_name)}.")
        text = f"Verify your email address: {link}"
        return await self.send_email(to_email, f"{self.from_name} - Verify your email", html, text)

    async def send_status_update(self, to_email: str, grievance: dict, status: str) -> bool:
        tracking_id = grievance["tracking_id"]
        track_url = f"{FRONTEND_URL}/track-grievance?id={tracking_id}"
        body = (
            f"<p>Your grievance <strong>{escape(tracking_id)}</strong> "
            f"(<em>{escape(grievance.get('subject', ''))}</em>) has been {status_message(status)}.</p>"
        )
        if grievance.get("admin_response"):
            body += f"<p><strong>Response:</strong> {escape(grievance['admin_response'])}</p>"
        body += (
            f'<p style="text-align: center;"><a href="{escape(track_url)}">Track Your Grievance</a></p>'
            "<p>If you have any questions, reply to this email and keep the subject line intact.</p>"
        )
        html = _wrap("Grievance Status Update", body,
                     f"This is an automated message from {escape(self.from_name)}.")
        text = f"Your grievance {tracking_id} has been {status_message(status)}. Track it at {track_url}"
        subject = f"{subject_tag(tracking_id)} Status Update - {grievance.get('subject', '')}"
        return await self.send_email(to_email, subject, html, text)

    async def send_reminder(self, to_email: str, grievance: dict, message: str = "") -> bool:
        tracking_id = grievance["tracking_id"]
        track_url = f"{FRONTEND_URL}/track-grievance?id={tracking_id}"
        body = (
            f"<p>This is a reminder that grievance <strong>{escape(tracking_id)}</strong> "
            f"(<em>{escape(grievance.get('subject', ''))}</em>) is still "
            f"{escape(grievance.get('status', 'pending'))}.</p>"
        )
        if message:
            body += f"<blockquote>{escape(message)}</blockquote>"
        body += f'<p style="text-align: center;"><a href="{escape(track_url)}">Track Your Grievance</a></p>'
        html = _wrap("Grievance Reminder", body,
                     f"This is an automated message from {escape(self.from_name)}.")
        text = f"Reminder: grievance {tracking_id} is still {grievance.get('status', 'pending')}.\n\n{message}"
        subject = f"{subject_tag(tracking_id)} Reminder: Pending Grievance - {grievance.get('subject', '')}"
        return await self.send_email(to_email, subject, html, text)


notifier = Notifier()

async def get_notifier() -> Notifier:
    return notifier
