"""Message transport — outbound SMS / WhatsApp via Aircall, email via SendGrid.

Uses Aircall's Public API with Basic Auth for text channels and wraps the
synchronous SendGrid client with asyncio.to_thread for email.

Endpoints used:
- POST /v1/numbers/{number_id}/messages/send — send outbound message (Public API mode)

Failures are returned as ``DeliveryResult(success=False, error=...)``,
never raised: the agents decide what a failed send means for their record.
"""

import asyncio
import base64
import logging
import uuid

import httpx
import sendgrid
from sendgrid.helpers.mail import Email, Mail, To

from outreach_engine.app.config import get_settings
from outreach_engine.domain.contracts import DeliveryResult
from outreach_engine.domain.enums import DeliveryMethod

logger = logging.getLogger(__name__)

EMAIL_SUBJECT = "A quick note from us"


class MessageTransport:
    """Send one message over the requested channel."""

    retry_backoff_seconds = 5

    def __init__(self, settings=None):
        self.settings = settings or get_settings()
        self.base_url = "https://api.aircall.io/v1"

    def _basic_auth(self) -> str:
        """Build Basic Auth base64 string."""
        credentials = f"{self.settings.aircall_api_id}:{self.settings.aircall_api_token}"
        return base64.b64encode(credentials.encode()).decode()

    def _number_id(self, method: DeliveryMethod) -> str:
        if method == DeliveryMethod.WHATSAPP:
            return self.settings.aircall_whatsapp_number_id
        return self.settings.aircall_number_id

    def _aircall_configured(self, method: DeliveryMethod) -> bool:
        return bool(
            self.settings.aircall_api_id
            and self.settings.aircall_api_token
            and self._number_id(method)
        )

    async def send(self, to: str, text: str, method: DeliveryMethod | str = DeliveryMethod.SMS) -> DeliveryResult:
        method = DeliveryMethod(method)

        if self.settings.transport_dry_run:
            logger.info("[dry-run] %s to %s: %s", method.value, to, text[:200])
            return DeliveryResult(success=True, provider_message_id=f"dry-run-{uuid.uuid4()}")

        if method == DeliveryMethod.EMAIL:
            return await self._send_email(to, text)
        return await self._send_aircall(to, text, method)

    # ------------------------------------------------------------------
    # Aircall (sms / whatsapp)
    # ------------------------------------------------------------------

    async def _send_aircall(self, to_number: str, message: str, method: DeliveryMethod) -> DeliveryResult:
        if not self._aircall_configured(method):
            logger.warning("Aircall %s not configured — message not sent to %s", method.value, to_number)
            return DeliveryResult(success=False, error=f"aircall_{method.value}_not_configured")

        url = f"{self.base_url}/numbers/{self._number_id(method)}/messages/send"
        auth = self._basic_auth()
        payload = {"to": to_number, "body": message}

        logger.info("Aircall send: url=%s to=%s msg_len=%d", url, to_number, len(message))

        for attempt in range(3):
            try:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    resp = await client.post(
                        url,
                        json=payload,
                        headers={
                            "Authorization": f"Basic {auth}",
                            "Accept": "application/json",
                        },
                    )

                if 200 <= resp.status_code < 300:
                    try:
                        data = resp.json()
                    except ValueError:
                        data = {}
                    message_id = data.get("id") if isinstance(data, dict) else None
                    logger.info("%s sent to %s via Aircall (status=%d)", method.value, to_number, resp.status_code)
                    return DeliveryResult(
                        success=True,
                        provider_message_id=str(message_id) if message_id is not None else None,
                    )

                # Retry on 403 (CloudFront intermittent block)
                if resp.status_code == 403 and attempt < 2:
                    wait = self.retry_backoff_seconds * (attempt + 1)
                    logger.warning(
                        "Aircall 403 — retrying in %ds (attempt %d/3): %s",
                        wait, attempt + 1, resp.text[:300],
                    )
                    await asyncio.sleep(wait)
                    continue

                logger.error("Aircall send failed (%d): %s", resp.status_code, resp.text[:300])
                return DeliveryResult(success=False, error=f"http_{resp.status_code}")

            except httpx.TimeoutException:
                logger.error("Aircall timed out for %s", to_number)
                return DeliveryResult(success=False, error="timeout")
            except httpx.HTTPError as e:
                logger.error("Aircall httpx error: %s", e)
                return DeliveryResult(success=False, error=str(e))

        return DeliveryResult(success=False, error="max_retries")

    # ------------------------------------------------------------------
    # SendGrid (email)
    # ------------------------------------------------------------------

    def _send_mail(self, mail: Mail) -> DeliveryResult:
        """Synchronous send via SendGrid."""
        client = sendgrid.SendGridAPIClient(api_key=self.settings.sendgrid_api_key)
        response = client.send(mail)
        if response.status_code in (200, 201, 202):
            headers = response.headers or {}
            return DeliveryResult(success=True, provider_message_id=headers.get("X-Message-Id"))
        logger.error("SendGrid returned status %s: %s", response.status_code, response.body)
        return DeliveryResult(success=False, error=f"http_{response.status_code}")

    async def _send_email(self, to_email: str, message: str) -> DeliveryResult:
        if not (self.settings.sendgrid_api_key and self.settings.email_from):
            logger.warning("SENDGRID_API_KEY / EMAIL_FROM not set — email not sent to %s", to_email)
            return DeliveryResult(success=False, error="sendgrid_not_configured")

        mail = Mail(
            from_email=Email(self.settings.email_from),
            to_emails=To(to_email),
            subject=EMAIL_SUBJECT,
            plain_text_content=message,
        )
        try:
            result = await asyncio.to_thread(self._send_mail, mail)
        except Exception as e:
            logger.exception("Failed to send email to %s", to_email)
            return DeliveryResult(success=False, error=str(e))
        if result.success:
            logger.info("Email sent to %s", to_email)
        return result
