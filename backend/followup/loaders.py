"""Context and channel lookups used by the execution driver."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from followup.context import FollowUpContext, HistoryMessage, ReminderContext
from followup.errors import ContextLoadError
from models import Agent, Appointment, Contact, Conversation, Message, QueueItem, WhatsAppInstance, KIND_REMINDER

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10


def load_agent(db: Session, agent_id: Optional[int]) -> Optional[Agent]:
    if not agent_id:
        return None
    return db.query(Agent).filter(Agent.id == agent_id).first()


def load_follow_up_context(db: Session, item: QueueItem, timezone: str) -> FollowUpContext:
    """Conversation, contact and the last messages in chronological order."""
    conversation = db.query(Conversation).filter(Conversation.id == item.conversation_id).first()
    if not conversation:
        raise ContextLoadError(f"Conversation {item.conversation_id} not found")

    contact_id = conversation.contact_id or item.contact_id
    contact = db.query(Contact).filter(Contact.id == contact_id).first() if contact_id else None
    if not contact:
        raise ContextLoadError(f"Contact for conversation {conversation.id} not found")

    recent = db.query(Message).filter(
        Message.conversation_id == conversation.id
    ).order_by(Message.sent_at.desc()).limit(HISTORY_LIMIT).all()
    recent.reverse()

    return FollowUpContext(
        conversation_id=conversation.id,
        contact_name=contact.first_name,
        contact_phone=contact.phone,
        messages=[
            HistoryMessage(
                content=m.content or "",
                sent_by_ai=bool(m.sent_by_ai or m.direction == "outbound"),
                sent_at=m.sent_at,
                direction=m.direction,
            )
            for m in recent
        ],
        last_message_at=recent[-1].sent_at if recent else None,
        thread_id=conversation.openai_thread_id,
        timezone=timezone,
    )


def load_reminder_context(db: Session, item: QueueItem, timezone: str) -> ReminderContext:
    appointment = db.query(Appointment).filter(Appointment.id == item.appointment_id).first()
    if not appointment:
        raise ContextLoadError(f"Appointment {item.appointment_id} not found")

    contact_id = item.contact_id or appointment.contact_id
    contact = db.query(Contact).filter(Contact.id == contact_id).first() if contact_id else None
    if not contact:
        raise ContextLoadError(f"Contact for appointment {appointment.id} not found")

    return ReminderContext(
        appointment_id=appointment.id,
        appointment_title=appointment.title,
        start_time=appointment.start_time,
        contact_name=contact.first_name,
        contact_phone=contact.phone,
        location=appointment.location,
        reminder_type=item.reminder_type,
        minutes_before=item.minutes_before,
        conversation_id=item.conversation_id or appointment.conversation_id,
        timezone=timezone,
    )


def load_context(db: Session, item: QueueItem, timezone: str):
    if item.kind == KIND_REMINDER:
        return load_reminder_context(db, item, timezone)
    return load_follow_up_context(db, item, timezone)


def find_connected_instance(db: Session, company_id: Optional[int]) -> Optional[WhatsAppInstance]:
    if not company_id:
        return None
    return db.query(WhatsAppInstance).filter(
        WhatsAppInstance.company_id == company_id,
        WhatsAppInstance.status == "connected"
    ).order_by(WhatsAppInstance.id.asc()).first()


def record_outbound_message(
    db: Session,
    item: QueueItem,
    conversation_id: int,
    agent: Agent,
    text: str,
    instance_name: str,
    external_id: Optional[str],
    sent_at: Optional[datetime] = None
) -> Message:
    """Mirror a delivered queue message into the conversation history."""
    message = Message(
        conversation_id=conversation_id,
        direction="outbound",
        message_type="text",
        content=text,
        from_name=agent.name if agent else None,
        status="sent",
        sent_by_ai=True,
        is_follow_up=True,
        external_id=external_id,
        meta={
            "queue_item_id": item.id,
            "kind": item.kind,
            "rule_name": item.rule_name,
            "sent_via": "evolution_api",
            "instance_name": instance_name,
            "ai_agent_id": agent.id if agent else None,
            "agent_name": agent.name if agent else None,
        },
        sent_at=sent_at or datetime.utcnow()
    )
    db.add(message)
    db.commit()
    return message
