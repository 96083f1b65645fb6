"""Creates reminder queue items for upcoming appointments."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from followup.queue_service import QueueService
from followup.rules import parse_reminder_rules
from models import Agent, Appointment, KIND_REMINDER

logger = logging.getLogger(__name__)

ACTIVE_AGENT_STATUSES = ("active", "error")
REMINDABLE_APPOINTMENT_STATUSES = ("scheduled", "confirmed")


class ReminderPlanner:
    """One pending reminder per (appointment, reminder rule), created ahead of time."""

    DEFAULT_HOURS_AHEAD = 48

    def __init__(self, db: Session, queue: Optional[QueueService] = None, hours_ahead: Optional[int] = None):
        self.db = db
        self.queue = queue or QueueService(db)
        self.hours_ahead = hours_ahead or self.DEFAULT_HOURS_AHEAD

    def create_upcoming_reminders(self, now: Optional[datetime] = None) -> int:
        """
        Plan reminders for appointments starting within the horizon.

        Reminders whose send time has already passed are not created.

        Returns:
            Number of reminder items created
        """
        now = now or datetime.utcnow()
        horizon = now + timedelta(hours=self.hours_ahead)
        created = 0

        agents = self.db.query(Agent).filter(
            Agent.status.in_(ACTIVE_AGENT_STATUSES),
            Agent.company_id.isnot(None)
        ).all()

        for agent in agents:
            rules = [r for r in parse_reminder_rules(agent.reminder_rules) if r.is_active]
            if not rules:
                continue

            appointments = self.db.query(Appointment).filter(
                Appointment.company_id == agent.company_id,
                Appointment.status.in_(REMINDABLE_APPOINTMENT_STATUSES),
                Appointment.start_time > now,
                Appointment.start_time <= horizon
            ).order_by(Appointment.start_time.asc()).all()

            for appointment in appointments:
                for rule in rules:
                    scheduled_at = appointment.start_time - timedelta(minutes=rule.minutes_before)
                    if scheduled_at < now:
                        continue

                    try:
                        if self.queue.reminder_exists(appointment.id, rule.id):
                            continue

                        item = self.queue.create(
                            kind=KIND_REMINDER,
                            agent_id=agent.id,
                            appointment_id=appointment.id,
                            conversation_id=appointment.conversation_id,
                            contact_id=appointment.contact_id,
                            company_id=agent.company_id,
                            rule_id=rule.id,
                            rule_name=rule.name,
                            reminder_type=rule.reminder_type,
                            minutes_before=rule.minutes_before,
                            scheduled_at=scheduled_at,
                            max_attempts=rule.max_attempts,
                            message_template=rule.message_template,
                            meta={"source": "reminder_planner"},
                        )
                        created += 1
                        logger.info(
                            f"Reminder {item.id} planned for appointment {appointment.id} "
                            f"at {scheduled_at.isoformat()}Z (rule={rule.name})"
                        )
                    except Exception as e:
                        logger.error(f"Error planning reminder for appointment {appointment.id}: {e}")
                        self.db.rollback()

        if created:
            logger.info(f"Reminder planning created {created} item(s)")
        return created
