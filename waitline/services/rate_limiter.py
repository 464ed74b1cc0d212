"""
Multi-bucket, multi-window rate limiter backed by the shared datastore.

Every rule is one atomic upsert-and-increment on its (bucket, window) row,
so any number of stateless workers can enforce the same limits. A request is
allowed only when every bucket is still within its limit after counting the
request; rejected requests are counted too, so retrying does not reset
anything.

Backend failures are resolved by policy: fail open (allow, log) for ordinary
endpoints, fail closed (treat as limited) where a request can spend SMS.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from waitline.lib.datetime_utils import as_utc, utcnow
from waitline.lib.db import upsert
from waitline.lib.errors import RateLimitedError
from waitline.lib.logging import get_logger
from waitline.lib.settings import settings
from waitline.models.rate_limits import RateLimitBucket


logger = get_logger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR

# Retry hint handed out when the limiter itself is unavailable and fails closed
FAIL_CLOSED_RETRY_SECONDS = 30


@dataclass(frozen=True)
class RateLimitRule:
    """One bucket to count the request against."""
    bucket: str
    limit: int
    window_seconds: int

    @property
    def is_valid(self) -> bool:
        return bool(self.bucket) and self.limit > 0 and self.window_seconds > 0


@dataclass(frozen=True)
class BucketState:
    """Counter state of one bucket after this request was counted."""
    bucket_key: str
    count: int
    limit: int
    window_seconds: int
    reset_at: datetime

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass
class RateLimitResult:
    """Outcome of a multi-rule check."""
    allowed: bool
    retry_after_seconds: int = 0
    buckets: list[BucketState] = field(default_factory=list)


def window_bounds(now: datetime, window_seconds: int) -> tuple[int, datetime]:
    """Epoch-aligned start of the window containing `now`, and when it resets."""
    now_ts = int(as_utc(now).timestamp())
    window_start = now_ts - (now_ts % window_seconds)
    reset_at = datetime.fromtimestamp(window_start + window_seconds, tz=timezone.utc)
    return window_start, reset_at


class RateLimiter:
    """
    Datastore-backed rate limiter.

    Usage:
        limiter = RateLimiter(db)
        limiter.enforce(join_rules(ip, phone), endpoint="queue_join", fail_open=False)
    """

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    def check(
        self,
        rules: Iterable[RateLimitRule],
        *,
        endpoint: Optional[str] = None,
        fail_open: bool = True,
        context: Optional[dict] = None,
    ) -> RateLimitResult:
        """
        Count one request against every rule.

        Returns allowed=False with the time until the earliest blocked
        bucket resets when any bucket is over its limit.
        """
        normalized = [rule for rule in rules if rule.is_valid]
        if not normalized:
            return RateLimitResult(allowed=True)

        now = self.clock()
        try:
            buckets = [self._increment(rule, now) for rule in normalized]
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                f"Rate limit check failed for {endpoint}: {e}",
                extra={
                    "endpoint": endpoint,
                    "fail_open": fail_open,
                    "buckets": [rule.bucket for rule in normalized],
                },
            )
            if fail_open:
                return RateLimitResult(allowed=True)
            return RateLimitResult(allowed=False, retry_after_seconds=FAIL_CLOSED_RETRY_SECONDS)

        blocked = [bucket for bucket in buckets if not bucket.allowed]
        if not blocked:
            return RateLimitResult(allowed=True, buckets=buckets)

        retry_after = min(
            max(1, math.ceil((as_utc(bucket.reset_at) - as_utc(now)).total_seconds()))
            for bucket in blocked
        )

        logger.warning(
            f"Rate limit exceeded for {endpoint}",
            extra={
                "endpoint": endpoint,
                "retry_after_seconds": retry_after,
                "buckets": [
                    {
                        "bucket": bucket.bucket_key,
                        "limit": bucket.limit,
                        "count": bucket.count,
                        "reset_at": as_utc(bucket.reset_at).isoformat(),
                    }
                    for bucket in blocked
                ],
                "context": context or {},
            },
        )
        return RateLimitResult(allowed=False, retry_after_seconds=retry_after, buckets=buckets)

    def enforce(self, rules: Iterable[RateLimitRule], **kwargs) -> RateLimitResult:
        """Like check(), but raises RateLimitedError when blocked."""
        result = self.check(rules, **kwargs)
        if not result.allowed:
            raise RateLimitedError(result.retry_after_seconds)
        return result

    def cleanup_expired(self, grace_seconds: Optional[int] = None) -> int:
        """
        Delete buckets whose window closed more than `grace_seconds` ago.

        Returns:
            Number of rows removed
        """
        if grace_seconds is None:
            grace_seconds = settings.rate_limit_bucket_grace_seconds
        cutoff = self.clock() - timedelta(seconds=grace_seconds)
        result = self.session.execute(
            delete(RateLimitBucket).where(RateLimitBucket.reset_at < cutoff)
        )
        self.session.commit()
        return result.rowcount or 0

    def _increment(self, rule: RateLimitRule, now: datetime) -> BucketState:
        window_start, reset_at = window_bounds(now, rule.window_seconds)
        table = RateLimitBucket.__table__
        stmt = upsert(self.session, RateLimitBucket).values(
            id=uuid4(),
            bucket_key=rule.bucket,
            window_seconds=rule.window_seconds,
            window_start=window_start,
            count=1,
            reset_at=reset_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["bucket_key", "window_seconds", "window_start"],
            set_={"count": table.c.count + 1},
        ).returning(table.c.count, table.c.reset_at)

        count, stored_reset_at = self.session.execute(stmt).one()
        return BucketState(
            bucket_key=rule.bucket,
            count=count,
            limit=rule.limit,
            window_seconds=rule.window_seconds,
            reset_at=as_utc(stored_reset_at),
        )


# Rule sets per entry point

def join_rules(ip: str, phone_e164: str) -> list[RateLimitRule]:
    return [
        RateLimitRule(f"ip:{ip}", settings.rate_limit_queue_join_ip_per_min, MINUTE),
        RateLimitRule(f"phone:{phone_e164}:hour", settings.rate_limit_queue_join_phone_per_hour, HOUR),
        RateLimitRule(f"phone:{phone_e164}:day", settings.rate_limit_queue_join_phone_per_day, DAY),
    ]


def staff_rules(user_id: UUID, location_id: Optional[UUID]) -> list[RateLimitRule]:
    rules = [
        RateLimitRule(f"user:{user_id}", settings.rate_limit_employee_user_per_min, MINUTE),
    ]
    if location_id is not None:
        rules.append(
            RateLimitRule(
                f"location:{location_id}",
                settings.rate_limit_employee_location_per_min,
                MINUTE,
            )
        )
    return rules


def webhook_rules(ip: str) -> list[RateLimitRule]:
    return [RateLimitRule(f"ip:{ip}", settings.rate_limit_twilio_ip_per_min, MINUTE)]


def sweep_rules(ip: str) -> list[RateLimitRule]:
    return [RateLimitRule(f"ip:{ip}", settings.rate_limit_send_sms_ip_per_min, MINUTE)]


def delivery_rules(phone_e164: str, location_id: Optional[UUID]) -> list[RateLimitRule]:
    rules = [
        RateLimitRule(f"sms:phone:{phone_e164}:day", settings.rate_limit_sms_phone_per_day, DAY),
    ]
    if location_id is not None:
        rules.append(
            RateLimitRule(
                f"sms:location:{location_id}:day",
                settings.rate_limit_sms_location_per_day,
                DAY,
            )
        )
    return rules
