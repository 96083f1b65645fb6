"""
Eligibility & Guard Evaluator

Re-validates a queue item against authoritative state right before any paid
work. Checks run in a fixed order and the first match wins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from followup.business_hours import BusinessHours
from followup.causes import (
    CancelReason,
    Cancellation,
    FailureNote,
    FailureReason,
    Reschedule,
    RescheduleReason,
)
from followup.credit_gate import CreditGate
from followup.loaders import load_agent
from followup.queue_service import QueueService
from followup.rules import find_rule
from models import Conversation, QueueItem, KIND_FOLLOW_UP, STATUS_PENDING

logger = logging.getLogger(__name__)

ACTIVE_AGENT_STATUSES = ("active", "error")


class GuardAction(Enum):
    PROCEED = "proceed"
    SKIP = "skip"
    CANCEL = "cancel"
    DEFER = "defer"
    FAIL = "fail"


@dataclass
class GuardDecision:
    action: GuardAction
    reason: Optional[str] = None
    error: Optional[str] = None
    cause: Any = None
    scheduled_at: Optional[datetime] = None
    item: Optional[QueueItem] = None
    agent: Any = None

    @property
    def proceed(self) -> bool:
        return self.action == GuardAction.PROCEED


class EligibilityEvaluator:
    """Decides proceed / skip / cancel / defer / fail for one queue item."""

    def __init__(
        self,
        db: Session,
        business_hours: Optional[BusinessHours] = None,
        credit_gate: Optional[CreditGate] = None,
        min_balance: int = 1000,
        queue: Optional[QueueService] = None,
    ):
        self.db = db
        self.business_hours = business_hours or BusinessHours()
        self.credit_gate = credit_gate or CreditGate(db)
        self.min_balance = min_balance
        self.queue = queue or QueueService(db)

    def evaluate(self, item: QueueItem, now: Optional[datetime] = None) -> GuardDecision:
        now = now or datetime.utcnow()
        fresh = self.queue.get(item.id)
        if fresh is None:
            return GuardDecision(GuardAction.SKIP, reason="not_found")

        if fresh.status != STATUS_PENDING:
            return GuardDecision(GuardAction.SKIP, reason="status_changed", item=fresh)

        if (fresh.attempts or 0) >= fresh.max_attempts:
            return GuardDecision(
                GuardAction.FAIL,
                reason=FailureReason.MAX_ATTEMPTS.value,
                error=f"max attempts reached ({fresh.max_attempts})",
                cause=FailureNote(FailureReason.MAX_ATTEMPTS, now),
                item=fresh,
            )

        if fresh.kind == KIND_FOLLOW_UP and fresh.conversation_id:
            decision = self._check_conversation(fresh, now)
            if decision is not None:
                return decision

        agent = load_agent(self.db, fresh.agent_id)
        if agent is None or agent.status not in ACTIVE_AGENT_STATUSES:
            return self._cancel(fresh, CancelReason.AGENT_INACTIVE, now,
                                detail=f"agent status: {agent.status if agent else 'missing'}")

        company_id = fresh.company_id or agent.company_id

        rule = find_rule(agent, fresh.kind, fresh.rule_id)
        requires_hours = (rule.business_hours_only if rule else False) or bool(
            (fresh.meta or {}).get("business_hours_only")
        )
        if requires_hours:
            tz_name = self.business_hours.resolve_timezone(self.db, company_id)
            if not self.business_hours.is_open(now, tz_name):
                next_open = self.business_hours.next_opening(now, tz_name)
                return GuardDecision(
                    GuardAction.DEFER,
                    reason=RescheduleReason.OUTSIDE_BUSINESS_HOURS.value,
                    cause=Reschedule(RescheduleReason.OUTSIDE_BUSINESS_HOURS, tz_name, fresh.scheduled_at, next_open),
                    scheduled_at=next_open,
                    item=fresh,
                    agent=agent,
                )

        if fresh.kind == KIND_FOLLOW_UP:
            check = self.credit_gate.check_balance(company_id, self.min_balance)
            if not check.sufficient:
                return GuardDecision(
                    GuardAction.FAIL,
                    reason=FailureReason.INSUFFICIENT_CREDITS.value,
                    error=(
                        f"insufficient credits: balance {check.current_balance}, "
                        f"minimum {self.min_balance}"
                    ),
                    cause=FailureNote(FailureReason.INSUFFICIENT_CREDITS, now),
                    item=fresh,
                    agent=agent,
                )

        return GuardDecision(GuardAction.PROCEED, item=fresh, agent=agent)

    def _check_conversation(self, item: QueueItem, now: datetime) -> Optional[GuardDecision]:
        conversation = self.db.query(Conversation).filter(Conversation.id == item.conversation_id).first()
        if conversation is None:
            # Missing conversation surfaces as a context load failure
            return None

        # At most one sent follow-up per (conversation, rule)
        if self.queue.has_sent(item.conversation_id, item.rule_id):
            return self._cancel(item, CancelReason.ALREADY_SENT, now)

        meta = conversation.meta or {}
        if meta.get("follow_up_paused"):
            return self._cancel(item, CancelReason.PAUSED, now, detail=meta.get("paused_by"))

        if conversation.ai_agent_id is None:
            return self._cancel(item, CancelReason.NO_AGENT, now)

        if item.agent_id and conversation.ai_agent_id != item.agent_id:
            return self._cancel(item, CancelReason.REASSIGNED, now,
                                detail=f"agent {conversation.ai_agent_id}")

        if conversation.ai_paused:
            return self._cancel(item, CancelReason.AGENT_PAUSED, now)

        if conversation.assigned_user_id and not conversation.ai_enabled:
            return self._cancel(item, CancelReason.ASSIGNED_TO_HUMAN, now,
                                detail=f"user {conversation.assigned_user_id}")

        return None

    @staticmethod
    def _cancel(item: QueueItem, reason: CancelReason, now: datetime, detail: Optional[str] = None) -> GuardDecision:
        return GuardDecision(
            GuardAction.CANCEL,
            reason=reason.value,
            cause=Cancellation(reason, now, detail=str(detail) if detail else None),
            item=item,
        )

    def apply(self, decision: GuardDecision) -> bool:
        """
        Persist a non-proceed decision on the item.

        Returns:
            True if the row was updated
        """
        item = decision.item
        if item is None or decision.action in (GuardAction.PROCEED, GuardAction.SKIP):
            return False

        try:
            if decision.action == GuardAction.CANCEL:
                updated = self.queue.mark_cancelled(item, decision.cause)
                logger.info(f"Queue item {item.id} cancelled: {decision.reason}")
            elif decision.action == GuardAction.FAIL:
                updated = self.queue.mark_failed(item, decision.error, decision.cause)
                logger.warning(f"Queue item {item.id} failed: {decision.error}")
            else:
                updated = self.queue.reschedule(item, decision.scheduled_at, decision.cause)
                logger.info(
                    f"Queue item {item.id} deferred to {decision.scheduled_at.isoformat()}Z "
                    f"({decision.reason})"
                )
            return updated
        except Exception as e:
            logger.error(f"Failed to persist {decision.action.value} for queue item {item.id}: {e}", exc_info=True)
            self.db.rollback()
            return False
