"""
Internal API routes for scheduled triggers.

Intended for cron-style callers outside the API process; protected by the
shared X-Internal-Secret header.

Endpoints:
- POST /internal/outbox/sweep: Deliver due outbox messages
"""
import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from waitline.api.dependencies import get_client_ip, get_db, get_outbox
from waitline.lib.errors import UnauthorizedError
from waitline.lib.logging import get_logger
from waitline.lib.settings import settings
from waitline.services.outbox_service import DeliveryStatus, OutboxService
from waitline.services.rate_limiter import RateLimiter, sweep_rules

logger = get_logger(__name__)

router = APIRouter(prefix="/internal", tags=["Internal"])


class SweepResult(BaseModel):
    id: str
    status: str
    error: Optional[str] = None


class SweepResponse(BaseModel):
    processed: int
    results: List[SweepResult]


def require_internal_secret(x_internal_secret: Optional[str] = Header(default=None)) -> None:
    expected = settings.internal_secret
    if not expected or not x_internal_secret or not hmac.compare_digest(x_internal_secret, expected):
        raise UnauthorizedError()


@router.post(
    "/outbox/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(require_internal_secret)],
)
def sweep_outbox(
    request: Request,
    limit: Optional[int] = Query(default=None, description="Clamped to 1..100"),
    db: Session = Depends(get_db),
    outbox: OutboxService = Depends(get_outbox),
) -> SweepResponse:
    """Claim and send due messages; safe to call concurrently."""
    ip = get_client_ip(request)
    RateLimiter(db).enforce(sweep_rules(ip), endpoint="send_sms", fail_open=True, context={"ip": ip})

    results = outbox.sweep(limit)
    logger.info(f"Sweep processed {len(results)} message(s)")
    return SweepResponse(
        processed=len(results),
        results=[
            SweepResult(
                id=str(result.message_id),
                status=result.status.value,
                error=result.error if result.status != DeliveryStatus.SENT else None,
            )
            for result in results
        ],
    )
