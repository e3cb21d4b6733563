import logging
from typing import Optional, Dict, Any

import jinja2
from twilio.rest import Client
from twilio.base.exceptions import TwilioException, TwilioRestException

from ..config import get_settings
from ..exceptions import UpstreamError

logger = logging.getLogger(__name__)

SMS_TEMPLATES = {
    "appointment_booked": "{{ app_name }}: appointment {{ appointment_number }} booked for {{ appointment_date }} {{ appointment_time }}.",
    "appointment_confirmed": "{{ app_name }}: appointment {{ appointment_number }} on {{ appointment_date }} {{ appointment_time }} is confirmed.",
    "appointment_cancelled": "{{ app_name }}: appointment {{ appointment_number }} on {{ appointment_date }} was cancelled.",
    "appointment_reminder": "Reminder: your appointment with {{ doctor_name }} is on {{ appointment_date }} at {{ appointment_time }} ({{ timezone }}).",
    "notification": "{{ app_name }}: {{ message or subject }}",
}


class SMSService:
    """Text messages over Twilio; simulated when credentials are absent."""

    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None, from_number: Optional[str] = None):
        settings = get_settings()
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self.from_number = from_number or settings.twilio_from_number
        self.app_name = settings.app_name
        self.enabled = bool(self.account_sid and self.auth_token and self.from_number)
        self.client = Client(self.account_sid, self.auth_token) if self.enabled else None
        self.env = jinja2.Environment(loader=jinja2.DictLoader(SMS_TEMPLATES))

        if not self.enabled:
            logger.warning("Twilio credentials not set - SMS delivery is simulated")

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        name = template_name if template_name in SMS_TEMPLATES else "notification"
        return self.env.get_template(name).render(app_name=self.app_name, **context)

    def send_sms(self, to_number: str, template_name: str, context: Dict[str, Any]) -> Dict[str, Any]:
        body = self.render(template_name, context)
        if not self.enabled:
            logger.info(f"Simulated SMS '{template_name}' to {to_number}")
            return {"success": True, "simulated": True}
        try:
            message = self.client.messages.create(body=body, from_=self.from_number, to=to_number)
        except TwilioRestException as e:
            logger.error(f"Twilio send to {to_number} failed: {e.msg}")
            raise UpstreamError(f"Failed to send SMS: {e.msg}", {"twilioCode": e.code}) from e
        except (TwilioException, OSError) as e:
            logger.error(f"Twilio send to {to_number} failed: {e}")
            raise UpstreamError(f"Failed to send SMS: {e}") from e
        logger.info(f"SMS '{template_name}' sent to {to_number}: {message.sid}")
        return {"success": True, "sid": message.sid}
