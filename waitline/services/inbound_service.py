"""
Inbound SMS command processing for the Twilio webhook.

Every signed callback is stored verbatim; the trimmed body is then matched
case-insensitively against STOP, START and CANCEL. Anything else is only
recorded. A callback redelivered with an already recorded MessageSid is not
applied again.
"""
import enum
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional
from urllib.parse import urlsplit

from sqlalchemy import delete
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator

from waitline.lib.datetime_utils import utcnow
from waitline.lib.db import upsert
from waitline.lib.logging import get_logger
from waitline.lib.phone import normalize_phone
from waitline.lib.settings import settings
from waitline.models.sms import SmsInbound, SmsOptOut
from waitline.services.queue_engine import QueueEngine


logger = get_logger(__name__)

OPT_OUT_SOURCE = "twilio_webhook"
DEFAULT_PORTS = ("80", "443")


class InboundCommand(str, enum.Enum):
    STOP = "STOP"
    START = "START"
    CANCEL = "CANCEL"


def parse_command(body: Optional[str]) -> Optional[InboundCommand]:
    """Exact match on the trimmed, upper-cased body."""
    try:
        return InboundCommand((body or "").strip().upper())
    except ValueError:
        return None


@dataclass
class InboundResult:
    """What the webhook did with one callback."""
    phone: Optional[str]
    command: Optional[InboundCommand] = None
    applied: bool = False
    ignored: bool = False


# Signature verification

def build_signature_urls(
    url: str,
    headers: Mapping[str, str],
    public_base_url: Optional[str] = None,
) -> list[str]:
    """
    URLs Twilio may have signed for this request.

    Proxies rewrite scheme, host and path, so the request URL as seen here
    is only one candidate; forwarded headers, the Host header and the
    configured public base URL each contribute more. Every candidate is
    tried with and without a trailing slash.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    parts = urlsplit(url)
    path = parts.path or "/"
    query = f"?{parts.query}" if parts.query else ""

    candidates: list[str] = []

    def add(value: str) -> None:
        if not value:
            return
        variants = [value, value[:-1] if value.endswith("/") else f"{value}/"]
        for variant in variants:
            if variant and variant not in candidates:
                candidates.append(variant)

    add(url)
    add(f"{parts.scheme}://{parts.netloc}{path}")

    forwarded_proto = lowered.get("x-forwarded-proto")
    forwarded_host = lowered.get("x-forwarded-host")
    if forwarded_proto and forwarded_host:
        forwarded_port = lowered.get("x-forwarded-port")
        host = forwarded_host
        if forwarded_port and forwarded_port not in DEFAULT_PORTS:
            host = f"{forwarded_host}:{forwarded_port}"
        forwarded_path = lowered.get("x-forwarded-uri") or f"{path}{query}"
        add(f"{forwarded_proto}://{host}{forwarded_path}")

    host_header = lowered.get("host")
    if host_header:
        proto = forwarded_proto or parts.scheme or "https"
        add(f"{proto}://{host_header}{path}{query}")

    if public_base_url:
        base = public_base_url.rstrip("/")
        add(f"{base}{path}{query}")
        add(f"{base}{path}")

    return candidates


def verify_signature(
    urls: list[str],
    params: Mapping[str, str],
    signature: Optional[str],
    raw_body: Optional[str] = None,
    auth_token: Optional[str] = None,
) -> bool:
    """
    Check an X-Twilio-Signature against every candidate URL.

    Form-encoded callbacks are signed over URL + sorted params; some
    integrations sign URL + raw body instead, which is tried last.
    """
    if not signature:
        return False
    token = auth_token if auth_token is not None else settings.twilio_auth_token
    if not token:
        logger.error("TWILIO_AUTH_TOKEN is not configured; rejecting webhook")
        return False

    validator = RequestValidator(token)
    for url in urls:
        if validator.validate(url, dict(params), signature):
            return True

    if raw_body:
        for url in urls:
            expected = validator.compute_signature(url + raw_body, {})
            if hmac.compare_digest(expected, signature):
                return True

    return False


class InboundCommandProcessor:
    """
    Applies verified inbound messages.

    Usage:
        processor = InboundCommandProcessor(db)
        result = processor.process(form)
    """

    def __init__(
        self,
        session: Session,
        engine: Optional[QueueEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.clock = clock
        self.engine = engine or QueueEngine(session, clock=clock)

    def process(self, form: Mapping[str, str]) -> InboundResult:
        phone = normalize_phone(form.get("From"))
        if not phone:
            logger.warning(
                "Ignoring inbound SMS with unusable sender",
                extra={"from": form.get("From"), "message_sid": form.get("MessageSid")},
            )
            return InboundResult(phone=None, ignored=True)

        body = form.get("Body") or ""
        command = parse_command(body)
        if not self._record(phone, form, body):
            logger.info(
                "Ignoring redelivered inbound SMS",
                extra={"phone": phone, "message_sid": form.get("MessageSid")},
            )
            return InboundResult(phone=phone, command=command, ignored=True)

        if command is None:
            return InboundResult(phone=phone)

        if command == InboundCommand.STOP:
            self._opt_out(phone)
            applied = True
        elif command == InboundCommand.START:
            self._opt_in(phone)
            applied = True
        else:
            applied = self.engine.cancel_latest_for_phone(phone) is not None

        logger.info(
            f"Inbound {command.value} processed",
            extra={"phone": phone, "applied": applied},
        )
        return InboundResult(phone=phone, command=command, applied=applied)

    def _record(self, phone: str, form: Mapping[str, str], body: str) -> bool:
        """
        Store the callback once per provider message id.

        Returns:
            False when this MessageSid was already recorded
        """
        stmt = upsert(self.session, SmsInbound).values(
            from_phone=phone,
            to_phone=form.get("To"),
            body=body,
            provider_message_id=form.get("MessageSid") or None,
            raw=dict(form),
            received_at=self.clock(),
        )
        if form.get("MessageSid"):
            stmt = stmt.on_conflict_do_nothing(index_elements=["provider_message_id"])
        inserted_id = self.session.execute(stmt.returning(SmsInbound.id)).scalar_one_or_none()
        self.session.commit()
        return inserted_id is not None

    def _opt_out(self, phone: str) -> None:
        now = self.clock()
        stmt = upsert(self.session, SmsOptOut).values(
            phone_e164=phone,
            source=OPT_OUT_SOURCE,
            opted_out_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["phone_e164"],
            set_={"source": OPT_OUT_SOURCE, "opted_out_at": now},
        )
        self.session.execute(stmt)
        self.session.commit()

    def _opt_in(self, phone: str) -> None:
        self.session.execute(delete(SmsOptOut).where(SmsOptOut.phone_e164 == phone))
        self.session.commit()
