from __future__ import annotations
"""
Concierge — Email Utilities
===========================
SMTP delivery of one-time sign-in codes.

Configuration via environment variables:
    SMTP_HOST         SMTP server hostname (default: smtp.gmail.com)
    SMTP_PORT         SMTP server port (default: 587)
    SMTP_USER         SMTP username / email
    SMTP_PASSWORD     SMTP password or app password
    SMTP_FROM_ADDRESS "From" address (defaults to SMTP_USER)
    PRODUCT_NAME      Name shown in the email (default: Concierge)
"""

import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM_ADDRESS = os.getenv("SMTP_FROM_ADDRESS", "") or SMTP_USER
PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Concierge")


def is_email_configured() -> bool:
    """Check if SMTP credentials are configured."""
    return bool(SMTP_USER and SMTP_PASSWORD)


def _send_email(to: str, subject: str, html_body: str, text_body: str = "") -> bool:
    """Send an email via SMTP. Returns True on success, False on failure."""
    if not is_email_configured():
        logger.warning("[email] SMTP not configured, skipping email send")
        return False

    msg = MIMEMultipart("alternative")
    msg["From"] = SMTP_FROM_ADDRESS
    msg["To"] = to
    msg["Subject"] = subject

    if text_body:
        msg.attach(MIMEText(text_body, "plain"))
    msg.attach(MIMEText(html_body, "html"))

    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30) as server:
            server.starttls()
            server.login(SMTP_USER, SMTP_PASSWORD)
            server.sendmail(SMTP_FROM_ADDRESS, to, msg.as_string())
        logger.info(f"[email] Sent to {to}: {subject}")
        return True
    except Exception as e:
        logger.error(f"[email] Failed to send to {to}: {e}")
        return False


def send_auth_code(email: str, code: str, name: str | None = None) -> bool:
    """Send a 6-digit sign-in code."""
    greeting = f"Hi {name}," if name else "Hi,"
    subject = f"Your {PRODUCT_NAME} sign-in code"

    html_body = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 500px; margin: 0 auto; padding: 20px;">
        <p style="color: #555; font-size: 14px;">{greeting}</p>
        <p style="color: #555; font-size: 14px;">Your {PRODUCT_NAME} sign-in code is:</p>
        <div style="text-align: center; margin: 24px 0;">
            <span style="font-size: 32px; font-weight: bold; letter-spacing: 8px; color: #1f2937;
                         background: #f1f5f9; padding: 16px 32px; border-radius: 8px; display: inline-block;">
                {code}
            </span>
        </div>
        <p style="color: #555; font-size: 14px;">This code expires in 10 minutes.</p>
        <p style="color: #888; font-size: 12px; margin-top: 24px;">
            If you didn't request this code, you can safely ignore this email.
        </p>
    </div>
    """

    text_body = f"""{greeting}

Your {PRODUCT_NAME} sign-in code is: {code}

This code expires in 10 minutes.

If you didn't request this code, you can safely ignore this email.
"""

    return _send_email(email, subject, html_body, text_body)
