"""
Messaging provider webhooks.

Endpoints:
- POST /webhooks/twilio: Inbound SMS (STOP / START / CANCEL)

Twilio only needs the status code: 204 for anything accepted or ignored,
403 for a bad signature, 429 when rate limited.
"""
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from waitline.api.dependencies import get_client_ip, get_db, get_queue_engine
from waitline.lib.errors import ForbiddenError
from waitline.lib.logging import get_logger
from waitline.lib.settings import settings
from waitline.services.inbound_service import (
    InboundCommandProcessor,
    build_signature_urls,
    verify_signature,
)
from waitline.services.queue_engine import QueueEngine
from waitline.services.rate_limiter import RateLimiter, webhook_rules

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Twilio-Signature"


async def raw_body(request: Request) -> bytes:
    """Body bytes as received; signatures may be computed over them."""
    return await request.body()


@router.post("/twilio", status_code=status.HTTP_204_NO_CONTENT)
def twilio_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    engine: QueueEngine = Depends(get_queue_engine),
) -> Response:
    """Verify, record and apply one inbound SMS."""
    ip = get_client_ip(request)
    RateLimiter(db).enforce(
        webhook_rules(ip),
        endpoint="twilio_webhook",
        fail_open=True,
        context={"ip": ip},
    )

    raw = body.decode("utf-8", errors="replace")
    form = dict(parse_qsl(raw, keep_blank_values=True))

    urls = build_signature_urls(str(request.url), request.headers, settings.public_base_url)
    if not verify_signature(urls, form, request.headers.get(SIGNATURE_HEADER), raw):
        logger.warning(
            "Rejected webhook with invalid signature",
            extra={"ip": ip, "candidate_urls": urls},
        )
        raise ForbiddenError("Invalid signature")

    # Verified payloads are always acknowledged, even if applying them fails
    try:
        InboundCommandProcessor(db, engine=engine).process(form)
    except Exception as e:
        db.rollback()
        logger.error(
            f"Inbound SMS processing failed: {e}",
            extra={"ip": ip, "message_sid": form.get("MessageSid")},
            exc_info=True,
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
