import html
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from pathlib import Path

from app.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

_PRIORITY_SUBJECT_PREFIX = {
    "urgent": "[Urgent] ",
    "high": "[Important] ",
}


def build_email_subject(title: str, priority: str) -> str:
    return f"{_PRIORITY_SUBJECT_PREFIX.get(priority, '')}{settings.from_name}: {title}"


def render_broadcast_email(title: str, content: str, priority: str) -> str:
    """Render the announcement template; plain text content becomes escaped HTML."""
    tpl = (TEMPLATE_DIR / "broadcast_email.html").read_text(encoding="utf-8")
    body_html = html.escape(content).replace("\n", "<br>\n")
    return (
        tpl.replace("{{title}}", html.escape(title))
        .replace("{{body}}", body_html)
        .replace("{{priority}}", html.escape(priority))
        .replace("{{app_url}}", settings.frontend_url)
    )


def _send_via_sendgrid(recipients: list[dict], subject: str, html_content: str) -> bool:
    """Send via SendGrid API, one personalization per recipient so addresses stay private."""
    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import Mail, To

    message = Mail(
        from_email=(settings.from_email, settings.from_name),
        to_emails=[To(r["email"], r.get("name") or r["email"]) for r in recipients],
        subject=subject,
        html_content=html_content,
        is_multiple=True,
    )
    sg = SendGridAPIClient(settings.sendgrid_api_key)
    response = sg.send(message)
    logger.info(f"Broadcast email sent via SendGrid | recipients={len(recipients)} | status={response.status_code}")
    return 200 <= response.status_code < 300


def _send_via_smtp(recipients: list[dict], subject: str, html_content: str) -> bool:
    """Send one SMTP message with every recipient on BCC."""
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((settings.from_name, settings.smtp_user))
    msg["To"] = formataddr((settings.from_name, settings.smtp_user))
    msg["Subject"] = subject
    msg.attach(MIMEText(html_content, "html"))

    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.send_message(msg, to_addrs=[r["email"] for r in recipients])

    logger.info(f"Broadcast email sent via SMTP | recipients={len(recipients)} | subject={subject}")
    return True


class BroadcastMailer:
    """Sends announcement emails for broadcasts.

    ``send_announcement_broadcast`` never raises; on failure it returns False
    and the reason is available from ``get_last_error``. Provider-level retry
    is left to the provider.
    """

    def __init__(self):
        self._last_error: str | None = None

    def get_last_error(self) -> str | None:
        return self._last_error

    def send_announcement_broadcast(
        self,
        recipients: list[dict],
        title: str,
        content: str,
        priority: str,
    ) -> bool:
        self._last_error = None
        recipients = [r for r in recipients if (r.get("email") or "").strip()]
        if not recipients:
            self._last_error = "No recipients with an email address"
            return False

        subject = build_email_subject(title, priority)
        try:
            html_content = render_broadcast_email(title, content, priority)
            if settings.email_simulation:
                logger.info(
                    "Simulated broadcast email | recipients=%d | subject=%s",
                    len(recipients), subject,
                )
                return True
            if settings.sendgrid_api_key:
                sent = _send_via_sendgrid(recipients, subject, html_content)
            elif settings.smtp_user and settings.smtp_password:
                sent = _send_via_smtp(recipients, subject, html_content)
            else:
                self._last_error = "No email provider configured (set SENDGRID_API_KEY or SMTP_USER+SMTP_PASSWORD)"
                logger.warning(self._last_error)
                return False
        except Exception as e:
            self._last_error = str(e) or type(e).__name__
            logger.error(f"Failed to send broadcast email | recipients={len(recipients)} | error={e}")
            return False

        if not sent:
            self._last_error = "Email provider rejected the broadcast"
        return sent
