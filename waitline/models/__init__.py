"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from waitline.models.customers import Customer
from waitline.models.locations import Location, Queue
from waitline.models.consent_versions import ConsentVersion
from waitline.models.employees import EmployeeProfile, EmployeeRole
from waitline.models.queue_entries import QueueEntry, QueueEntryStatus, CustomerType
from waitline.models.queue_events import QueueEvent
from waitline.models.outbox import OutboxMessage, OutboxStatus, MessageType
from waitline.models.rate_limits import RateLimitBucket
from waitline.models.sms import SmsOptOut, SmsInbound

__all__ = [
    "Customer",
    "Location",
    "Queue",
    "ConsentVersion",
    "EmployeeProfile",
    "EmployeeRole",
    "QueueEntry",
    "QueueEntryStatus",
    "CustomerType",
    "QueueEvent",
    "OutboxMessage",
    "OutboxStatus",
    "MessageType",
    "RateLimitBucket",
    "SmsOptOut",
    "SmsInbound",
]
