"""
SMS delivery providers.

Supports Twilio for production and a console provider for development.
Providers never raise for delivery problems; they return a SendResult the
outbox engine records on the message row.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from waitline.lib.logging import get_logger
from waitline.lib.settings import settings


logger = get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    """Outcome of one provider send attempt."""
    ok: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class SmsProvider(ABC):
    """
    Abstract base class for SMS delivery providers.
    """

    @abstractmethod
    def send(self, to: str, body: str) -> SendResult:
        """
        Send one text message.

        Args:
            to: Phone number in E.164 format
            body: SMS text content

        Returns:
            SendResult with the provider's message id on success
        """


class TwilioSmsProvider(SmsProvider):
    """
    Twilio SMS provider.

    Authenticates with an API key pair when configured, otherwise with the
    account auth token. Sends through the messaging service when one is
    configured, otherwise from the configured number.
    """

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            if not settings.twilio_account_sid:
                raise ValueError(
                    "Twilio credentials not configured. "
                    "Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN (or an API key pair)."
                )
            if settings.twilio_api_key_sid and settings.twilio_api_key_secret:
                client = Client(
                    settings.twilio_api_key_sid,
                    settings.twilio_api_key_secret,
                    settings.twilio_account_sid,
                )
            else:
                client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        self.client = client
        self.messaging_service_sid = settings.twilio_messaging_service_sid
        self.from_number = settings.twilio_from_number
        logger.info("Twilio SMS provider initialized")

    def send(self, to: str, body: str) -> SendResult:
        sender: dict[str, str] = {}
        if self.messaging_service_sid:
            sender["messaging_service_sid"] = self.messaging_service_sid
        elif self.from_number:
            sender["from_"] = self.from_number
        else:
            return SendResult(
                ok=False,
                error="Missing TWILIO_MESSAGING_SERVICE_SID or TWILIO_FROM_NUMBER",
            )

        try:
            message = self.client.messages.create(to=to, body=body, **sender)
        except TwilioRestException as e:
            logger.warning(
                f"Twilio rejected SMS: {e.msg}",
                extra={"to": to, "twilio_code": e.code, "http_status": e.status},
            )
            return SendResult(ok=False, error=f"twilio_error_{e.code or e.status}: {e.msg}")
        except TwilioException as e:
            logger.error(f"Failed to send SMS via Twilio: {e}", extra={"to": to})
            return SendResult(ok=False, error=str(e) or "twilio_send_failed")

        if not message.sid:
            return SendResult(ok=False, error="twilio_send_failed")

        logger.info(f"SMS sent via Twilio: {message.sid}", extra={"to": to})
        return SendResult(ok=True, provider_message_id=message.sid)


class ConsoleSmsProvider(SmsProvider):
    """
    Console SMS provider for development/testing.
    Logs messages instead of sending.
    """

    def send(self, to: str, body: str) -> SendResult:
        logger.info("SMS logged to console", extra={"to": to, "body": body})
        return SendResult(ok=True, provider_message_id=None)


def get_sms_provider() -> SmsProvider:
    """Provider selected by settings.sms_provider."""
    if settings.sms_provider == "twilio":
        return TwilioSmsProvider()
    logger.info("Using console SMS provider (dev mode)")
    return ConsoleSmsProvider()
