import logging
from typing import Optional, Dict, Any

import jinja2
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from ..config import get_settings
from ..exceptions import UpstreamError

logger = logging.getLogger(__name__)


_BASE = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #333; line-height: 1.6;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background-color: #0B4D6B; color: white; padding: 20px; text-align: center;">
            <h1 style="margin: 0;">{{ app_name }}</h1>
            <p style="margin: 5px 0 0 0;">{{ subject }}</p>
        </div>
        <div style="padding: 30px 20px;">
            <h2 style="color: #0B4D6B;">Dear {{ recipient_name or "Patient" }},</h2>
            {% block body %}{% endblock %}
        </div>
        <div style="background-color: #F8F9FA; padding: 15px; text-align: center; font-size: 12px; color: #666;">
            <p style="margin: 0;">This is an automated message. Please do not reply to this email.</p>
        </div>
    </div>
</body>
</html>
"""

_APPOINTMENT_DETAILS = """
<div style="background-color: #E6F3F8; padding: 20px; border-left: 4px solid #2196F3; margin: 20px 0;">
    <p style="margin: 5px 0;"><strong>Appointment:</strong> {{ appointment_number }}</p>
    <p style="margin: 5px 0;"><strong>Date &amp; Time:</strong> {{ appointment_date }} {{ appointment_time }} ({{ timezone }})</p>
    <p style="margin: 5px 0;"><strong>Doctor:</strong> {{ doctor_name }}</p>
    {% if room_id %}<p style="margin: 5px 0;"><strong>Room:</strong> {{ room_id }}</p>{% endif %}
</div>
"""

# Built-in templates; files in EMAIL_TEMPLATE_DIR with the same name take precedence
DEFAULT_TEMPLATES = {
    "base.html": _BASE,
    "appointment_details.html": _APPOINTMENT_DETAILS,
    "appointment_booked.html": """{% extends "base.html" %}{% block body %}
<p>Your appointment has been booked.</p>{% include "appointment_details.html" %}
{% if amount_due %}<p>Amount due: {{ amount_due }} {{ currency }}. Your booking is confirmed once payment completes.</p>{% endif %}
{% endblock %}""",
    "appointment_confirmed.html": """{% extends "base.html" %}{% block body %}
<p>Your appointment is confirmed.</p>{% include "appointment_details.html" %}
{% endblock %}""",
    "appointment_cancelled.html": """{% extends "base.html" %}{% block body %}
<p>Your appointment has been cancelled{% if reason %} ({{ reason }}){% endif %}.</p>{% include "appointment_details.html" %}
{% if refund_amount %}<p>A refund of {{ refund_amount }} {{ currency }} has been issued.</p>{% endif %}
{% endblock %}""",
    "appointment_reminder.html": """{% extends "base.html" %}{% block body %}
<p>This is a friendly reminder about your upcoming appointment.</p>{% include "appointment_details.html" %}
<p>If you need to reschedule or cancel, please contact us as soon as possible.</p>
{% endblock %}""",
    "consultation_scheduled.html": """{% extends "base.html" %}{% block body %}
<p>A {{ consultation_type }} consultation ({{ consultation_number }}) has been set up.</p>
<p>Room: <strong>{{ room_id }}</strong></p>
{% endblock %}""",
    "notification.html": """{% extends "base.html" %}{% block body %}
<p>{{ message or subject }}</p>
{% endblock %}""",
}


class EmailService:
    """Templated transactional email over SendGrid."""

    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None, template_dir: Optional[str] = None):
        settings = get_settings()
        self.sendgrid_api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.sender_email = sender_email or settings.sender_email
        self.app_name = settings.app_name
        self.enabled = bool(self.sendgrid_api_key)

        if not self.enabled:
            logger.warning("SENDGRID_API_KEY not set - email delivery is simulated")

        self.sg = SendGridAPIClient(api_key=self.sendgrid_api_key) if self.enabled else None
        self.template_env = jinja2.Environment(
            loader=jinja2.ChoiceLoader([
                jinja2.FileSystemLoader(template_dir or settings.email_template_dir),
                jinja2.DictLoader(DEFAULT_TEMPLATES),
            ]),
            autoescape=jinja2.select_autoescape(["html"]),
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        template = self.template_env.select_template([f"{template_name}.html", "notification.html"])
        return template.render(app_name=self.app_name, **context)

    def send_templated_email(self, to_email: str, template_name: str, context: Dict[str, Any]) -> Dict[str, Any]:
        """Render and send one email. Raises UpstreamError when SendGrid rejects it."""
        subject = context.get("subject") or self.app_name
        html_content = self.render(template_name, {**context, "subject": subject})

        if not self.enabled:
            logger.info(f"Simulated email '{template_name}' to {to_email}")
            return {"success": True, "simulated": True}

        mail = Mail(
            from_email=self.sender_email,
            to_emails=to_email,
            subject=subject,
            html_content=html_content,
        )
        try:
            response = self.sg.send(mail)
        except Exception as e:
            logger.error(f"SendGrid send to {to_email} failed: {e}")
            raise UpstreamError(f"Failed to send email: {e}") from e

        if response.status_code not in (200, 202):
            raise UpstreamError(f"SendGrid error: {response.status_code}", {"body": str(response.body)})
        logger.info(f"Email '{template_name}' sent to {to_email}. Status: {response.status_code}")
        return {"success": True, "statusCode": response.status_code}
