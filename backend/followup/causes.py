"""
Typed causes recorded on queue items.

Every cancellation, reschedule, failure and orphan provenance is built as one
of the dataclasses below and flattened with to_metadata() right before being
merged into QueueItem.meta, so the stored JSON stays a flat map for the UI.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class CancelReason(Enum):
    """Why an item was cancelled. Cancellations never count as errors."""
    PAUSED = "conversation_paused"
    NO_AGENT = "no_agent"
    AGENT_PAUSED = "agent_paused"
    ASSIGNED_TO_HUMAN = "assigned_to_human"
    AGENT_INACTIVE = "agent_inactive"
    REASSIGNED = "reassigned"
    ALREADY_SENT = "already_sent"


class RescheduleReason(Enum):
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"


class FailureReason(Enum):
    MAX_ATTEMPTS = "max_attempts_reached"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    STALE = "stale_pending"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


@dataclass
class Cancellation:
    reason: CancelReason
    cancelled_at: datetime
    detail: Optional[str] = None

    def to_metadata(self) -> Dict[str, Any]:
        data = {
            "cancelled_reason": self.reason.value,
            "cancelled_at": _iso(self.cancelled_at),
        }
        if self.detail:
            data["cancelled_detail"] = self.detail
        return data


@dataclass
class Reschedule:
    reason: RescheduleReason
    timezone: str
    original_scheduled_at: datetime
    rescheduled_to: datetime

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "rescheduled_reason": self.reason.value,
            "company_timezone": self.timezone,
            "original_scheduled_at": _iso(self.original_scheduled_at),
            "rescheduled_to": _iso(self.rescheduled_to),
        }


@dataclass
class FailureNote:
    reason: FailureReason
    failed_at: datetime

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "failed_reason": self.reason.value,
            "failed_at": _iso(self.failed_at),
        }


@dataclass
class OrphanOrigin:
    minutes_late: int
    detected_at: datetime
    last_message_at: datetime

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "source": "orphan",
            "minutes_late": self.minutes_late,
            "detected_at": _iso(self.detected_at),
            "last_message_at": _iso(self.last_message_at),
        }


def merge_metadata(current: Optional[Dict[str, Any]], cause) -> Dict[str, Any]:
    """Return a new metadata dict with the cause's fields layered on top."""
    merged = dict(current or {})
    merged.update(cause.to_metadata())
    return merged
