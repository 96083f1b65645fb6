"""
Pytest configuration and fixtures for the follow-up engine tests
"""
import pytest
import os
import tempfile
from datetime import datetime, timedelta
from types import SimpleNamespace
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from db import Base

from models import (
    Agent,
    Appointment,
    Company,
    CompanyCredits,
    Contact,
    Conversation,
    Message,
    QueueItem,
    User,
    WhatsAppInstance,
    KIND_FOLLOW_UP,
    KIND_REMINDER,
)

FOLLOW_UP_TEMPLATE = "Olá {nome}, ainda podemos ajudar?"


@pytest.fixture(scope="function")
def test_db():
    """Create a temporary test database for each test"""
    # Create temporary database file
    db_fd, db_path = tempfile.mkstemp(suffix='.db')

    # Create engine and tables
    engine = create_engine(f'sqlite:///{db_path}')
    Base.metadata.create_all(engine)

    # Create session
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    yield session

    # Cleanup
    session.close()
    engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture(scope="function")
def seeded(test_db):
    """
    One company with credits, an owner, an active agent with a 15-minute
    follow-up rule and a 60-minute reminder rule, a contact named Maria, an
    open conversation and a connected WhatsApp instance.
    """
    company = Company(id=1, name="Clínica Exemplo", timezone="America/Sao_Paulo")
    test_db.add(company)
    test_db.flush()

    owner = User(company_id=company.id, name="Dona", timezone="America/Sao_Paulo", is_owner=True)
    credits = CompanyCredits(company_id=company.id, balance=5000)

    agent = Agent(
        id=1,
        company_id=company.id,
        name="Sofia",
        status="active",
        tone="amigável",
        follow_up_rules=[{
            "id": "r1",
            "name": "Reativação 15min",
            "delay_minutes": 15,
            "message_template": FOLLOW_UP_TEMPLATE,
            "max_attempts": 3,
            "is_active": True,
        }],
        reminder_rules=[{
            "id": "rem60",
            "name": "Lembrete 1h",
            "minutes_before": 60,
            "reminder_type": "hours_before",
            "message_template": "Olá {nome}, lembrete: {appointment_title} em {data} às {horario}.",
            "max_attempts": 2,
            "is_active": True,
        }],
    )
    contact = Contact(id=1, company_id=company.id, first_name="Maria", phone="5511999990000")
    test_db.add_all([owner, credits, agent, contact])
    test_db.flush()

    conversation = Conversation(
        id=1,
        company_id=company.id,
        contact_id=contact.id,
        ai_agent_id=agent.id,
        ai_enabled=True,
        ai_paused=False,
        meta={},
    )
    instance = WhatsAppInstance(company_id=company.id, name="clinica-main", status="connected")
    test_db.add_all([conversation, instance])
    test_db.commit()

    return SimpleNamespace(
        db=test_db,
        company=company,
        owner=owner,
        credits=credits,
        agent=agent,
        contact=contact,
        conversation=conversation,
        instance=instance,
    )


@pytest.fixture
def make_follow_up(seeded):
    """Factory for pending follow-up items on the seeded conversation."""
    def _make(**overrides):
        fields = dict(
            kind=KIND_FOLLOW_UP,
            agent_id=seeded.agent.id,
            conversation_id=seeded.conversation.id,
            contact_id=seeded.contact.id,
            company_id=seeded.company.id,
            rule_id="r1",
            rule_name="Reativação 15min",
            scheduled_at=datetime.utcnow() - timedelta(minutes=1),
            status="pending",
            attempts=0,
            max_attempts=3,
            message_template=FOLLOW_UP_TEMPLATE,
            meta={},
        )
        fields.update(overrides)
        item = QueueItem(**fields)
        seeded.db.add(item)
        seeded.db.commit()
        seeded.db.refresh(item)
        return item
    return _make


@pytest.fixture
def make_reminder(seeded):
    """Factory for an appointment plus a pending reminder item for it."""
    def _make(start_time=None, location=None, **overrides):
        appointment = Appointment(
            company_id=seeded.company.id,
            contact_id=seeded.contact.id,
            conversation_id=seeded.conversation.id,
            title="Consulta de avaliação",
            start_time=start_time or datetime.utcnow() + timedelta(hours=2),
            location=location,
            status="scheduled",
        )
        seeded.db.add(appointment)
        seeded.db.flush()

        fields = dict(
            kind=KIND_REMINDER,
            agent_id=seeded.agent.id,
            appointment_id=appointment.id,
            conversation_id=seeded.conversation.id,
            contact_id=seeded.contact.id,
            company_id=seeded.company.id,
            rule_id="rem60",
            rule_name="Lembrete 1h",
            reminder_type="hours_before",
            minutes_before=60,
            scheduled_at=datetime.utcnow() - timedelta(minutes=1),
            status="pending",
            attempts=0,
            max_attempts=2,
            message_template="Olá {nome}, lembrete: {appointment_title} em {data} às {horario}.",
            meta={},
        )
        fields.update(overrides)
        item = QueueItem(**fields)
        seeded.db.add(item)
        seeded.db.commit()
        seeded.db.refresh(item)
        return appointment, item
    return _make


@pytest.fixture
def add_message(seeded):
    """Append a message to the seeded conversation."""
    def _add(content, minutes_ago, sent_by_ai=False, is_follow_up=False):
        message = Message(
            conversation_id=seeded.conversation.id,
            direction="outbound" if sent_by_ai else "inbound",
            content=content,
            sent_by_ai=sent_by_ai,
            is_follow_up=is_follow_up,
            sent_at=datetime.utcnow() - timedelta(minutes=minutes_ago),
        )
        seeded.db.add(message)
        seeded.db.commit()
        return message
    return _add
