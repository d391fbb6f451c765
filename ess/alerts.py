from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import Settings

logger = logging.getLogger(__name__)


def send_email(settings: Settings, subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - ESS_ENABLE_EMAIL=true
      - ESS_SMTP_HOST / ESS_SMTP_PORT
      - ESS_SMTP_USER / ESS_SMTP_PASSWORD
      - ESS_EMAIL_FROM / ESS_EMAIL_TO
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
        logger.warning("Email alerting enabled but SMTP settings are incomplete")
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Alert email failed: %s", e)
        return False


def alert_cycle_failed(settings: Settings, error: str) -> bool:
    subject = f"DOWN: {settings.set_name} control loop failed"
    body = (
        f"Replica set: {settings.set_name}\n"
        f"Cluster: {settings.cluster}\n"
        f"Desired replicas: {settings.desired_replicas}\n"
        f"Error: {error}"
    )
    return send_email(settings, subject, body)
