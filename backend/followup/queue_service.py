"""
Queue table access.

All mutations are targeted UPDATE ... WHERE id = X statements (plus a
status = 'pending' guard where a terminal row must not be overwritten).
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from followup.causes import merge_metadata
from models import (
    ExecutionLog,
    KIND_FOLLOW_UP,
    QueueItem,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
)

logger = logging.getLogger(__name__)


class QueueService:
    """Reads and writes queue_item / execution_log rows."""

    def __init__(self, db: Session):
        self.db = db

    # Reads

    def list_pending(self, kind: str, limit: int, now: Optional[datetime] = None) -> List[QueueItem]:
        """Pending items of a kind that are due, oldest scheduled_at first."""
        now = now or datetime.utcnow()
        return self.db.query(QueueItem).filter(
            QueueItem.kind == kind,
            QueueItem.status == STATUS_PENDING,
            QueueItem.scheduled_at <= now
        ).order_by(QueueItem.scheduled_at.asc()).limit(limit).all()

    def get(self, item_id: int) -> Optional[QueueItem]:
        """Authoritative read; bypasses whatever the session already holds."""
        return self.db.query(QueueItem).populate_existing().filter(QueueItem.id == item_id).first()

    def has_sent(self, conversation_id: int, rule_id: str) -> bool:
        return self.db.query(QueueItem.id).filter(
            QueueItem.conversation_id == conversation_id,
            QueueItem.kind == KIND_FOLLOW_UP,
            QueueItem.rule_id == str(rule_id),
            QueueItem.status == STATUS_SENT
        ).first() is not None

    def exists_for_rule(self, conversation_id: int, rule_id: str) -> bool:
        """Any item, in any status, for (conversation, rule)."""
        return self.db.query(QueueItem.id).filter(
            QueueItem.conversation_id == conversation_id,
            QueueItem.kind == KIND_FOLLOW_UP,
            QueueItem.rule_id == str(rule_id)
        ).first() is not None

    def reminder_exists(self, appointment_id: int, rule_id: str) -> bool:
        return self.db.query(QueueItem.id).filter(
            QueueItem.appointment_id == appointment_id,
            QueueItem.rule_id == str(rule_id)
        ).first() is not None

    # Lease

    def claim(self, item_id: int, lease_seconds: int = 300, now: Optional[datetime] = None) -> Optional[str]:
        """
        Take the execution lease on a pending item.

        A single conditional UPDATE: succeeds only if the row is still pending
        and unclaimed (or its lease has expired).

        Returns:
            Claim token, or None if someone else holds the item or it is terminal
        """
        now = now or datetime.utcnow()
        token = uuid.uuid4().hex
        updated = self.db.query(QueueItem).filter(
            QueueItem.id == item_id,
            QueueItem.status == STATUS_PENDING,
            or_(
                QueueItem.claim_token.is_(None),
                QueueItem.claimed_at < now - timedelta(seconds=lease_seconds)
            )
        ).update(
            {QueueItem.claim_token: token, QueueItem.claimed_at: now},
            synchronize_session=False
        )
        self.db.commit()
        return token if updated == 1 else None

    def release(self, item_id: int, token: str):
        self.db.query(QueueItem).filter(
            QueueItem.id == item_id,
            QueueItem.claim_token == token
        ).update(
            {QueueItem.claim_token: None, QueueItem.claimed_at: None},
            synchronize_session=False
        )
        self.db.commit()

    # Transitions

    def _update_pending(self, item_id: int, values: Dict[Any, Any]) -> bool:
        values = dict(values)
        values[QueueItem.claim_token] = None
        values[QueueItem.claimed_at] = None
        updated = self.db.query(QueueItem).filter(
            QueueItem.id == item_id,
            QueueItem.status == STATUS_PENDING
        ).update(values, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def mark_sent(self, item: QueueItem, message: str, now: Optional[datetime] = None) -> bool:
        return self._update_pending(item.id, {
            QueueItem.status: STATUS_SENT,
            QueueItem.attempts: (item.attempts or 0) + 1,
            QueueItem.executed_at: now or datetime.utcnow(),
            QueueItem.generated_message: message,
            QueueItem.execution_error: None,
        })

    def mark_cancelled(self, item: QueueItem, cause) -> bool:
        return self._update_pending(item.id, {
            QueueItem.status: STATUS_CANCELLED,
            QueueItem.meta: merge_metadata(item.meta, cause),
        })

    def mark_failed(self, item: QueueItem, error: str, cause=None) -> bool:
        values = {
            QueueItem.status: STATUS_FAILED,
            QueueItem.execution_error: error,
        }
        if cause is not None:
            values[QueueItem.meta] = merge_metadata(item.meta, cause)
        return self._update_pending(item.id, values)

    def reschedule(self, item: QueueItem, scheduled_at: datetime, cause) -> bool:
        """Move scheduled_at forward; status and attempts untouched."""
        return self._update_pending(item.id, {
            QueueItem.scheduled_at: scheduled_at,
            QueueItem.meta: merge_metadata(item.meta, cause),
        })

    def record_attempt_failure(self, item: QueueItem, error: str) -> str:
        """
        Count a failed attempt. The item stays pending while attempts remain.

        Returns:
            The resulting status
        """
        attempts = min((item.attempts or 0) + 1, item.max_attempts)
        status = STATUS_FAILED if attempts >= item.max_attempts else STATUS_PENDING
        self._update_pending(item.id, {
            QueueItem.attempts: attempts,
            QueueItem.status: status,
            QueueItem.execution_error: error[:2000],
        })
        return status

    def backfill_company(self, item_id: int, company_id: int):
        self.db.query(QueueItem).filter(QueueItem.id == item_id).update(
            {QueueItem.company_id: company_id}, synchronize_session=False
        )
        self.db.commit()

    # Creation

    def create(self, **fields) -> QueueItem:
        fields.setdefault("status", STATUS_PENDING)
        fields.setdefault("attempts", 0)
        fields["rule_id"] = str(fields["rule_id"])
        item = QueueItem(**fields)
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        return item

    # Audit

    def write_execution_log(self, item: QueueItem, success: bool, error: Optional[str],
                            response_time_ms: int, message_sent: str, side_effect: Optional[str]):
        self.db.add(ExecutionLog(
            queue_item_id=item.id,
            kind=item.kind,
            agent_id=item.agent_id,
            conversation_id=item.conversation_id,
            appointment_id=item.appointment_id,
            contact_id=item.contact_id,
            company_id=item.company_id,
            rule_name=item.rule_name,
            success=success,
            error_message=error,
            response_time_ms=response_time_ms,
            message_sent=message_sent or "",
            side_effect=side_effect
        ))
        self.db.commit()
