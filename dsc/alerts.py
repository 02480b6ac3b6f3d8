from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - DSC_ENABLE_EMAIL=true
      - DSC_SMTP_HOST / DSC_SMTP_PORT
      - DSC_SMTP_USER / DSC_SMTP_PASSWORD
      - DSC_EMAIL_FROM / DSC_EMAIL_TO
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
    msg["Subject"] = subject
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
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert email failed: {type(e).__name__}: {e}")
        return False


def alert(kind: str, workload: str, detail: str, version: str | None = None) -> bool:
    """Record an alert in the event log and forward it by email when enabled."""
    db.log_event("ERROR", f"ALERT {kind}: {detail}", workload=workload, version=version)
    subject = f"[dsc] {kind}: {workload}" + (f" {version}" if version else "")
    body = f"Workload: {workload}\nVersion: {version or '-'}\nKind: {kind}\nDetail: {detail}"
    return send_email(subject, body)
