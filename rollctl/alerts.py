from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an alert email if SMTP settings are configured.

    Environment variables:
      - ROLLCTL_ENABLE_EMAIL=true
      - ROLLCTL_SMTP_HOST / ROLLCTL_SMTP_PORT
      - ROLLCTL_SMTP_USER / ROLLCTL_SMTP_PASSWORD
      - ROLLCTL_EMAIL_FROM / ROLLCTL_EMAIL_TO

    Returns False when alerting is off, incomplete, or the SMTP exchange fails;
    a broken mail relay must not fail a rollout.
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = f"[rollctl] {subject}"
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        try:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        finally:
            server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False
