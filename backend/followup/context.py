"""Read-only projections handed to the personalization chain."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional


@dataclass
class HistoryMessage:
    content: str
    sent_by_ai: bool
    sent_at: Optional[datetime] = None
    direction: str = "inbound"


@dataclass
class FollowUpContext:
    """Conversation snapshot: contact, recent history (chronological) and derived fields."""
    conversation_id: int
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    messages: List[HistoryMessage] = field(default_factory=list)
    last_message_at: Optional[datetime] = None
    thread_id: Optional[str] = None
    timezone: str = "America/Sao_Paulo"

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def has_contact_replied(self) -> bool:
        return any(not m.sent_by_ai for m in self.messages)

    def time_since_last_message(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if not self.last_message_at:
            return None
        return (now or datetime.utcnow()) - self.last_message_at


@dataclass
class ReminderContext:
    """Appointment facts for a reminder. start_time is naive UTC."""
    appointment_id: int
    appointment_title: str
    start_time: datetime
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    location: Optional[str] = None
    reminder_type: Optional[str] = None
    minutes_before: Optional[int] = None
    conversation_id: Optional[int] = None
    timezone: str = "America/Sao_Paulo"
