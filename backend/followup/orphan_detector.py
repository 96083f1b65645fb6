"""
Orphan & Cleanup Detector

1. Reaps pending items that have been waiting longer than the stale horizon
   (marked failed, never deleted).
2. Finds conversations that should already have a follow-up for a rule but
   have no queue item for it in any status, and creates the item
   retroactively with scheduled_at backdated to last_message + delay.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from followup.causes import FailureNote, FailureReason, OrphanOrigin
from followup.queue_service import QueueService
from followup.rules import parse_follow_up_rules
from models import Agent, Conversation, Message, QueueItem, KIND_FOLLOW_UP, STATUS_PENDING

logger = logging.getLogger(__name__)

ACTIVE_AGENT_STATUSES = ("active", "error")


class OrphanDetector:
    """Stale-item reaping and orphan follow-up backfill."""

    DEFAULT_STALE_HOURS = 6
    DEFAULT_LOOKBACK_DAYS = 7
    DEFAULT_LIMIT = 1000

    def __init__(
        self,
        db: Session,
        queue: Optional[QueueService] = None,
        stale_hours: Optional[int] = None,
        lookback_days: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        """
        Args:
            db: Database session
            queue: Queue access (defaults to one bound to db)
            stale_hours: Pending items older than this are failed
            lookback_days: Only conversations with a message in this window are scanned
            limit: Max orphans created per run
        """
        self.db = db
        self.queue = queue or QueueService(db)
        self.stale_hours = stale_hours or self.DEFAULT_STALE_HOURS
        self.lookback_days = lookback_days or self.DEFAULT_LOOKBACK_DAYS
        self.limit = limit or self.DEFAULT_LIMIT

        self._stats: Dict[str, Any] = {
            "stale_reaped": 0,
            "orphans_created": 0,
            "last_run": None
        }

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    def cleanup_stale_items(self, now: Optional[datetime] = None) -> int:
        """
        Fail pending items both scheduled and created before the stale cutoff.

        Items deferred to a later scheduled_at, or created recently as
        orphans, are left alone.

        Returns:
            Number of items reaped
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(hours=self.stale_hours)

        stale_items = self.db.query(QueueItem).filter(
            QueueItem.status == STATUS_PENDING,
            QueueItem.scheduled_at < cutoff,
            QueueItem.created_at < cutoff
        ).all()

        reaped = 0
        for item in stale_items:
            try:
                waited = (now - item.scheduled_at).total_seconds() / 3600
                logger.warning(
                    f"Reaping stale queue item {item.id} "
                    f"(kind={item.kind}, rule={item.rule_name}, pending for {waited:.1f}h)"
                )
                if self.queue.mark_failed(
                    item,
                    f"stale: still pending after {self.stale_hours}h",
                    FailureNote(FailureReason.STALE, now)
                ):
                    reaped += 1
            except Exception as e:
                logger.error(f"Error reaping stale queue item {item.id}: {e}")
                self.db.rollback()

        self._stats["stale_reaped"] += reaped
        if reaped:
            logger.info(f"Stale cleanup completed: {reaped} item(s) failed")
        return reaped

    def _candidate_conversations(self, agent: Agent, since: datetime):
        last_message = self.db.query(
            Message.conversation_id.label("conversation_id"),
            func.max(Message.sent_at).label("last_at")
        ).filter(
            Message.is_follow_up == False,  # noqa: E712
            Message.sent_at >= since
        ).group_by(Message.conversation_id).subquery()

        return self.db.query(Conversation, last_message.c.last_at).join(
            last_message, last_message.c.conversation_id == Conversation.id
        ).filter(
            Conversation.ai_agent_id == agent.id
        ).all()

    @staticmethod
    def _conversation_paused(conversation: Conversation) -> bool:
        if (conversation.meta or {}).get("follow_up_paused"):
            return True
        if conversation.ai_paused:
            return True
        return bool(conversation.assigned_user_id and not conversation.ai_enabled)

    def find_and_create_orphans(self, now: Optional[datetime] = None) -> List[QueueItem]:
        """
        Create the follow-ups that rules say should exist but do not.

        Returns:
            The created queue items
        """
        now = now or datetime.utcnow()
        since = now - timedelta(days=self.lookback_days)
        created: List[QueueItem] = []

        agents = self.db.query(Agent).filter(Agent.status.in_(ACTIVE_AGENT_STATUSES)).all()

        for agent in agents:
            rules = [r for r in parse_follow_up_rules(agent.follow_up_rules) if r.is_active]
            if not rules:
                continue

            for conversation, last_at in self._candidate_conversations(agent, since):
                if last_at is None or self._conversation_paused(conversation):
                    continue

                for rule in rules:
                    if len(created) >= self.limit:
                        logger.warning(f"Orphan limit reached ({self.limit}), remaining work deferred to next run")
                        self._finish(created, now)
                        return created

                    item = self._create_if_orphan(agent, conversation, rule, last_at, now)
                    if item is not None:
                        created.append(item)

        self._finish(created, now)
        return created

    def _create_if_orphan(self, agent: Agent, conversation: Conversation, rule, last_at: datetime,
                          now: datetime) -> Optional[QueueItem]:
        due_at = last_at + timedelta(minutes=rule.delay_minutes)
        if now < due_at:
            return None

        try:
            # Checked right before insert; sent rows included
            if self.queue.exists_for_rule(conversation.id, rule.id):
                return None

            minutes_late = int((now - due_at).total_seconds() // 60)
            item = self.queue.create(
                kind=KIND_FOLLOW_UP,
                agent_id=agent.id,
                conversation_id=conversation.id,
                contact_id=conversation.contact_id,
                company_id=conversation.company_id or agent.company_id,
                rule_id=rule.id,
                rule_name=rule.name,
                scheduled_at=due_at,
                max_attempts=rule.max_attempts,
                message_template=rule.message_template,
                meta=OrphanOrigin(minutes_late, now, last_at).to_metadata(),
            )
            logger.info(
                f"Orphan follow-up {item.id} created for conversation {conversation.id} "
                f"(rule={rule.name}, {minutes_late} min late)"
            )
            return item

        except Exception as e:
            logger.error(f"Error creating orphan for conversation {conversation.id} rule {rule.id}: {e}")
            self.db.rollback()
            return None

    def _finish(self, created: List[QueueItem], now: datetime):
        self._stats["orphans_created"] += len(created)
        self._stats["last_run"] = now.isoformat() + "Z"
        if created:
            logger.info(f"Orphan detection created {len(created)} follow-up(s)")
