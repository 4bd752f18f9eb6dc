import logging
import smtplib
from decimal import Decimal
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings
from errors import ExternalServiceFailure, ValidationFailed

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

EMAIL_TEMPLATES = {
    "monthly-report": "emails/monthly_report.html",
    "budget-alert": "emails/budget_alert.html",
}


def format_money(value: Any) -> str:
    amount = Decimal(str(value or 0))
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["money"] = format_money
    return env


class Mailer:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.env = _environment()

    def render(self, template_type: str, user_name: Optional[str], data: dict) -> str:
        template_name = EMAIL_TEMPLATES.get(template_type)
        if template_name is None:
            raise ValidationFailed(f"Unknown email template: {template_type}")
        template = self.env.get_template(template_name)
        return template.render(user_name=user_name, data=data)

    def send(
        self,
        to: str,
        subject: str,
        template_type: str,
        user_name: Optional[str],
        data: dict,
    ) -> None:
        html = self.render(template_type, user_name, data)

        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(f"{subject}\n\nOpen this message in an HTML-capable client.")
        message.add_alternative(html, subtype="html")

        if not self.settings.smtp_host:
            logger.info(f"email_skipped: to={to} template={template_type} reason=no_smtp_host")
            return
        try:
            with smtplib.SMTP(
                self.settings.smtp_host, self.settings.smtp_port, timeout=30
            ) as smtp:
                if self.settings.smtp_username:
                    smtp.starttls()
                    smtp.login(self.settings.smtp_username, self.settings.smtp_password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalServiceFailure(f"Failed to send email to {to}") from exc
        logger.info(f"email_sent: to={to} template={template_type}")
