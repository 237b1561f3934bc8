"""
Email notifications for Jetsetters - template messages via a transactional email API
Fire-and-forget: a failed notification never fails the operation that triggered it
"""

import os
import logging
import httpx
from typing import Dict, Optional, Any
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)


# Template definitions
TEMPLATES = {
    "quote_sent": {
        "subject": "Your Jetsetters quote: {quote_title}",
        "params": ["customer_name", "quote_title", "amount", "expires_at"]
    },
    "quote_expiring": {
        "subject": "Your quote expires in {days_left} days",
        "params": ["customer_name", "quote_title", "amount", "days_left"]
    },
    "quote_expired": {
        "subject": "Your quote has expired",
        "params": ["customer_name", "quote_title", "amount"]
    },
    "payment_received": {
        "subject": "Payment received - booking {booking_reference}",
        "params": ["customer_name", "amount", "booking_reference"]
    },
    "booking_cancelled": {
        "subject": "Booking {booking_reference} cancelled",
        "params": ["customer_name", "booking_reference", "reason", "refund_amount", "payment_action"]
    },
    "refund_pending": {
        "subject": "ACTION REQUIRED: refund pending for {booking_reference}",
        "params": ["booking_reference", "payment_id", "amount", "error"]
    },
}


class EmailNotifier:
    """Transactional email sender."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_url = os.getenv("EMAIL_API_URL", "https://api.resend.com/emails")
        self.api_token = os.getenv("EMAIL_API_TOKEN")
        self.sender = os.getenv("EMAIL_FROM", "Jetsetters <bookings@jetsetters.travel>")
        self.staff_email = os.getenv("STAFF_EMAIL")
        self.enabled = os.getenv("EMAIL_ENABLED", "false").lower() == "true"
        self.transport = transport

        if not self.api_token and self.enabled:
            logger.warning("⚠️ Email enabled but EMAIL_API_TOKEN not configured")

    def render_subject(self, template: str, params: Dict[str, Any]) -> str:
        definition = TEMPLATES.get(template)
        if not definition:
            return template.replace("_", " ").capitalize()
        values = {name: params.get(name, "") for name in definition["params"]}
        return definition["subject"].format(**values)

    async def send_template(
        self,
        template: str,
        to: Optional[str],
        params: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Send a template email.

        Args:
            template: Template name (quote_sent, payment_received, etc.)
            to: Recipient address
            params: Template parameters
        """

        if not to:
            logger.warning(f"📧 No recipient for {template}, skipping")
            return {"status": "skipped", "template": template}

        if not self.enabled:
            logger.info(f"📧 Email disabled - would send {template} to {to}")
            return {"status": "disabled", "template": template, "to": to}

        if not self.api_token:
            logger.error("❌ EMAIL_API_TOKEN not configured")
            return {"status": "error", "message": "Email not configured"}

        message_data = {
            "from": self.sender,
            "to": [to],
            "subject": self.render_subject(template, params),
            "template": template,
            "data": {k: str(v) for k, v in params.items()},
        }

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    self.api_url,
                    headers={
                        "Authorization": f"Bearer {self.api_token}",
                        "Content-Type": "application/json"
                    },
                    json=message_data,
                    timeout=30.0
                )

            result = {
                "status": "sent" if response.status_code < 300 else "failed",
                "status_code": response.status_code,
                "template": template,
                "to": to
            }
            logger.info(f"📧 Email {template} → {to}: {result['status']}")
            return result

        except httpx.HTTPError as e:
            logger.error(f"❌ Email error: {e}")
            return {"status": "error", "error": str(e), "template": template, "to": to}

    async def notify_staff(self, template: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Send an operational alert to the staff mailbox."""
        if not self.staff_email:
            logger.warning(f"⚠️ STAFF_EMAIL not configured, staff alert {template}: {params}")
            return {"status": "skipped", "template": template}
        return await self.send_template(template, to=self.staff_email, params=params)


# Global notifier instance
email_notifier: Optional[EmailNotifier] = None


def get_notifier() -> EmailNotifier:
    """Dependency for FastAPI to get the notifier"""
    global email_notifier
    if email_notifier is None:
        email_notifier = EmailNotifier()
    return email_notifier
