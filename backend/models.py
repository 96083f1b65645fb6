from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Float, ForeignKey, Index, text
from sqlalchemy.ext.declarative import declarative_base
from datetime import datetime

Base = declarative_base()

# Queue item kinds
KIND_FOLLOW_UP = "follow_up"
KIND_REMINDER = "reminder"

# Queue item statuses
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED, STATUS_CANCELLED)


class Company(Base):
    """Tenant. Owns agents, contacts, credits and channel instances."""
    __tablename__ = "company"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    timezone = Column(String(64), nullable=True)  # IANA name, NULL = owner's timezone

    created_at = Column(DateTime, default=datetime.utcnow)


class User(Base):
    """
    Operator account of a company.
    Only consulted for timezone fallback (the owner's timezone applies when the
    company has none).
    """
    __tablename__ = "app_user"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=False, index=True)
    name = Column(String(200), nullable=True)
    timezone = Column(String(64), nullable=True)
    is_owner = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)


class CompanyCredits(Base):
    """Prepaid credit balance, one row per company. 1 credit = 1 LLM token."""
    __tablename__ = "company_credits"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=False, unique=True)
    balance = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CreditTransaction(Base):
    """Append-only ledger of credit consumption."""
    __tablename__ = "credit_transaction"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # negative for consumption
    balance_after = Column(Integer, nullable=False)
    service_type = Column(String(50), nullable=False)  # "llm_followup"
    description = Column(Text)
    reference_id = Column(String(100), nullable=True)  # conversation / appointment id
    tokens_used = Column(Integer, default=0)
    model_used = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)


class Agent(Base):
    """
    AI agent configuration.

    follow_up_rules: [{"id", "name", "delay_minutes", "message_template",
                       "max_attempts", "is_active", "conditions": {...}}]
    reminder_rules:  [{"id", "name", "minutes_before", "reminder_type",
                       "message_template", "max_attempts", "is_active"}]
    """
    __tablename__ = "ai_agent"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    status = Column(String(20), default="active")  # "active" | "error" | "paused" | "inactive"

    # Model configuration
    openai_assistant_id = Column(String(100), nullable=True)  # NULL = no attached assistant
    openai_model = Column(String(100), nullable=True)  # NULL = settings.OPENAI_DEFAULT_MODEL
    temperature = Column(Float, nullable=True)
    max_tokens = Column(Integer, nullable=True)

    # Personality
    tone = Column(String(50), nullable=True)  # "profissional", "amigável", ...
    language = Column(String(10), default="pt-BR")

    follow_up_rules = Column(JSON, default=list)
    reminder_rules = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Contact(Base):
    """End user reachable over WhatsApp."""
    __tablename__ = "contact"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True, index=True)  # digits with country code

    created_at = Column(DateTime, default=datetime.utcnow)


class Conversation(Base):
    """
    WhatsApp conversation between a contact and (optionally) an AI agent.
    metadata may carry {"follow_up_paused": true, "paused_by": ...} set by operators.
    """
    __tablename__ = "conversation"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=True, index=True)
    contact_id = Column(Integer, ForeignKey("contact.id"), nullable=True, index=True)
    ai_agent_id = Column(Integer, ForeignKey("ai_agent.id"), nullable=True, index=True)

    ai_enabled = Column(Boolean, default=True)
    ai_paused = Column(Boolean, default=False)  # agent paused for this conversation only
    assigned_user_id = Column(Integer, nullable=True)  # human operator

    openai_thread_id = Column(String(100), nullable=True)  # persistent LLM thread
    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Message(Base):
    """Conversation history. Outbound queue sends are mirrored here for the UI."""
    __tablename__ = "message"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversation.id"), nullable=False, index=True)
    direction = Column(String(10), nullable=False)  # "inbound" | "outbound"
    message_type = Column(String(20), default="text")
    content = Column(Text, nullable=True)
    from_number = Column(String(30), nullable=True)
    from_name = Column(String(100), nullable=True)
    status = Column(String(20), default="received")
    sent_by_ai = Column(Boolean, default=False)
    is_follow_up = Column(Boolean, default=False)
    external_id = Column(String(100), nullable=True)  # gateway message id
    meta = Column("metadata", JSON, default=dict)

    sent_at = Column(DateTime, default=datetime.utcnow, index=True)


class Appointment(Base):
    __tablename__ = "appointment"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=True, index=True)
    contact_id = Column(Integer, ForeignKey("contact.id"), nullable=True)
    conversation_id = Column(Integer, ForeignKey("conversation.id"), nullable=True)
    title = Column(String(200), nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)  # naive UTC
    location = Column(String(300), nullable=True)
    status = Column(String(20), default="scheduled")  # "scheduled" | "confirmed" | "cancelled" | "done"

    created_at = Column(DateTime, default=datetime.utcnow)


class WhatsAppInstance(Base):
    """Evolution API instance connected to a company's WhatsApp number."""
    __tablename__ = "whatsapp_instance"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)  # Evolution instance name
    status = Column(String(20), default="disconnected")  # "connected" | "disconnected"

    created_at = Column(DateTime, default=datetime.utcnow)


class QueueItem(Base):
    """
    Scheduled follow-up or appointment reminder.

    Both kinds share one table. Rows are never deleted, only moved to a
    terminal status (sent / failed / cancelled). claimed_at/claim_token form
    a lease taken by the executor before doing any work.
    """
    __tablename__ = "queue_item"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False, default=KIND_FOLLOW_UP)

    # Linkage
    agent_id = Column(Integer, ForeignKey("ai_agent.id"), nullable=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversation.id"), nullable=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointment.id"), nullable=True, index=True)
    contact_id = Column(Integer, ForeignKey("contact.id"), nullable=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=True, index=True)
    rule_id = Column(String(100), nullable=False)
    rule_name = Column(String(200), nullable=True)

    # Reminder details
    reminder_type = Column(String(50), nullable=True)
    minutes_before = Column(Integer, nullable=True)

    # Scheduling
    scheduled_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Execution state
    status = Column(String(20), nullable=False, default=STATUS_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    executed_at = Column(DateTime, nullable=True)
    execution_error = Column(Text, nullable=True)
    generated_message = Column(Text, nullable=True)

    # Payload
    message_template = Column(Text, nullable=False)
    meta = Column("metadata", JSON, default=dict)

    # Lease
    claimed_at = Column(DateTime, nullable=True)
    claim_token = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_queue_item_kind_status_scheduled", "kind", "status", "scheduled_at"),
        Index("idx_queue_item_conversation_rule", "conversation_id", "rule_id"),
        Index(
            "uq_queue_item_sent_follow_up",
            "conversation_id", "rule_id",
            unique=True,
            sqlite_where=text("status = 'sent' AND kind = 'follow_up'"),
            postgresql_where=text("status = 'sent' AND kind = 'follow_up'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionLog(Base):
    """One row per execution attempt of a queue item. Append-only."""
    __tablename__ = "execution_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_item_id = Column(Integer, nullable=True, index=True)
    kind = Column(String(20), nullable=False)
    agent_id = Column(Integer, nullable=True)
    conversation_id = Column(Integer, nullable=True)
    appointment_id = Column(Integer, nullable=True)
    contact_id = Column(Integer, nullable=True)
    company_id = Column(Integer, nullable=True, index=True)
    rule_name = Column(String(200), nullable=True)

    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    message_sent = Column(Text, default="")
    side_effect = Column(String(50), nullable=True)  # "conversation_reactivated" | "reminder_delivered"

    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class SystemNotification(Base):
    """Operator-facing notification (credits running out, LLM outage)."""
    __tablename__ = "system_notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("company.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)  # "credits_insufficient" | "llm_error"
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(20), default="medium")  # "low" | "medium" | "high"
    meta = Column("metadata", JSON, default=dict)
    is_read = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_company_type_created", "company_id", "type", "created_at"),
    )
