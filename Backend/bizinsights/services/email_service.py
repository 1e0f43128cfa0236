import html
import logging
from email.message import EmailMessage

import aiosmtplib

from bizinsights.config import settings

logger = logging.getLogger(__name__)


async def send_email(to: str, subject: str, body_html: str) -> bool:
    """Send an email via SMTP. Returns True on success."""
    if not settings.SMTP_HOST:
        logger.warning("SMTP not configured, email not sent to %s", to)
        return False

    message = EmailMessage()
    message["From"] = settings.SMTP_FROM_EMAIL
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body_html, subtype="html")

    try:
        await aiosmtplib.send(
            message,
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME or None,
            password=settings.SMTP_PASSWORD or None,
            start_tls=True,
        )
        return True
    except (aiosmtplib.SMTPException, OSError):
        logger.exception("Failed to send email to %s", to)
        return False


async def send_alert_email(to: str, alert, organization_name: str) -> bool:
    """Notify an organization owner/admin about a new high-severity alert."""
    link = f"{settings.FRONTEND_URL}{alert.action_url or '/dashboard/alerts'}"
    html_body = f"""
    <h2>{html.escape(alert.severity.value)} alert for {html.escape(organization_name)}</h2>
    <p><strong>{html.escape(alert.title)}</strong></p>
    <p>{html.escape(alert.description)}</p>
    <p><a href="{html.escape(link)}">{html.escape(alert.action_label or "View Alert")}</a></p>
    """
    return await send_email(
        to, f"{alert.severity.value} Alert: {alert.title}", html_body
    )
