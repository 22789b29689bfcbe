from typing import Optional, Dict, Any
import asyncio
import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from telemed.config import get_settings

logger = logging.getLogger(__name__)


class PaymentEmailService:
    """Patient-facing emails of the payment workflow, delivered through SendGrid.

    Without SENDGRID_API_KEY every send is logged as a simulated delivery and
    reported as successful.
    """

    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None):
        settings = get_settings()
        self.sendgrid_api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.sender_email = sender_email or settings.sender_email
        self.enabled = bool(self.sendgrid_api_key)
        self.sg = SendGridAPIClient(api_key=self.sendgrid_api_key) if self.enabled else None

        if not self.enabled:
            logger.warning("SENDGRID_API_KEY not found - emails will be simulated")

    async def send_email(self, to_email: Optional[str], subject: str, plain_content: str) -> Dict[str, Any]:
        if not to_email:
            return {"success": False, "status": "failed", "message": "No recipient address"}

        if not self.enabled:
            logger.info(f"[simulated email] to={to_email} subject={subject!r}")
            return {"success": True, "status": "simulated", "message": "Email sent successfully (simulated)"}

        mail = Mail(
            from_email=self.sender_email,
            to_emails=to_email,
            subject=subject,
            plain_text_content=plain_content,
        )
        try:
            response = await asyncio.to_thread(self.sg.send, mail)
        except Exception as e:
            # SendGrid raises python_http_client errors as well as transport errors
            logger.error(f"Failed to send email to {to_email}: {e}")
            return {"success": False, "status": "failed", "message": f"Failed to send email: {str(e)}"}

        if response.status_code >= 300:
            logger.error(f"SendGrid rejected email to {to_email}: HTTP {response.status_code}")
            return {"success": False, "status": "failed", "message": f"SendGrid returned {response.status_code}"}
        return {"success": True, "status": "sent", "message": "Email sent successfully"}

    async def send_payment_link(self, to_email, patient_name, doctor_name, scheduled_at, amount, currency, payment_url, expires_at):
        subject = "Appointment confirmation - payment required"
        body = (
            f"Dear {patient_name},\n\n"
            f"An appointment with {doctor_name} has been booked for you on "
            f"{scheduled_at:%Y-%m-%d at %H:%M} UTC.\n\n"
            f"To confirm it, please pay {amount} {currency} using the link below:\n"
            f"{payment_url}\n\n"
            f"The link expires on {expires_at:%Y-%m-%d at %H:%M} UTC. "
            f"Unpaid appointments are cancelled automatically after that time.\n"
        )
        return await self.send_email(to_email, subject, body)

    async def send_payment_reminder(self, to_email, patient_name, doctor_name, scheduled_at, amount, currency, payment_url, expires_at, hours_elapsed):
        subject = "Reminder - appointment awaiting confirmation"
        body = (
            f"Dear {patient_name},\n\n"
            f"Your appointment with {doctor_name} on {scheduled_at:%Y-%m-%d at %H:%M} UTC "
            f"is still waiting for payment ({hours_elapsed}h since booking).\n\n"
            f"Amount due: {amount} {currency}\n"
            f"Pay here: {payment_url}\n\n"
            f"Without payment the appointment is cancelled on {expires_at:%Y-%m-%d at %H:%M} UTC.\n"
        )
        return await self.send_email(to_email, subject, body)

    async def send_payment_confirmation(self, to_email, patient_name, doctor_name, scheduled_at, amount, currency):
        subject = "Appointment confirmed - payment received"
        body = (
            f"Dear {patient_name},\n\n"
            f"We received your payment of {amount} {currency}. Your appointment with "
            f"{doctor_name} on {scheduled_at:%Y-%m-%d at %H:%M} UTC is confirmed.\n"
        )
        return await self.send_email(to_email, subject, body)

    async def send_payment_expired(self, to_email, patient_name, doctor_name, scheduled_at):
        subject = "Appointment cancelled - payment not received"
        body = (
            f"Dear {patient_name},\n\n"
            f"Your appointment with {doctor_name} on {scheduled_at:%Y-%m-%d at %H:%M} UTC "
            f"was cancelled because the payment was not completed in time.\n"
        )
        return await self.send_email(to_email, subject, body)


# Singleton instance for global import
email_service = PaymentEmailService()
