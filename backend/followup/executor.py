"""
Execution Driver

Runs one queue item end to end:
claim -> eligibility -> context -> personalization -> channel -> send ->
mark sent -> mirror message -> audit log.

Owns the attempt counter. Failures in the context/generation/channel/send
steps count one attempt; the item stays pending until max_attempts.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from evolution_sender import EvolutionSender, mask_phone
from followup.business_hours import BusinessHours
from followup.errors import ChannelUnavailableError, SendFailedError, StatePersistError
from followup.guards import EligibilityEvaluator, GuardAction
from followup.loaders import find_connected_instance, load_context, record_outbound_message
from followup.personalization import MessagePersonalizer
from followup.queue_service import QueueService
from models import QueueItem, KIND_REMINDER, STATUS_FAILED

logger = logging.getLogger(__name__)

SIDE_EFFECT_FOLLOW_UP = "conversation_reactivated"
SIDE_EFFECT_REMINDER = "reminder_delivered"


@dataclass
class ExecutionResult:
    item_id: int
    kind: str
    success: bool = False
    skipped: bool = False
    deferred: bool = False
    cancelled: bool = False
    failed: bool = False
    error: Optional[str] = None
    reason: Optional[str] = None
    message_id: Optional[str] = None


class ExecutionDriver:
    """Executes queue items one at a time."""

    DEFAULT_LEASE_SECONDS = 300

    def __init__(
        self,
        db: Session,
        personalizer: MessagePersonalizer,
        sender: EvolutionSender,
        evaluator: Optional[EligibilityEvaluator] = None,
        business_hours: Optional[BusinessHours] = None,
        queue: Optional[QueueService] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.db = db
        self.personalizer = personalizer
        self.sender = sender
        self.queue = queue or QueueService(db)
        self.business_hours = business_hours or BusinessHours()
        self.evaluator = evaluator or EligibilityEvaluator(db, business_hours=self.business_hours, queue=self.queue)
        self.lease_seconds = lease_seconds or self.DEFAULT_LEASE_SECONDS

    async def execute(self, item: QueueItem) -> ExecutionResult:
        """
        Execute a single queue item.

        Returns:
            ExecutionResult describing what happened

        Raises:
            StatePersistError: the message was delivered but the item could
                not be marked as sent
        """
        result = ExecutionResult(item_id=item.id, kind=item.kind)
        now = datetime.utcnow()

        token = self.queue.claim(item.id, self.lease_seconds, now)
        if not token:
            fresh = self.queue.get(item.id)
            result.skipped = True
            result.reason = "status_changed" if fresh is None or fresh.is_terminal else "claimed"
            logger.info(f"Queue item {item.id} skipped ({result.reason})")
            return result

        started = time.monotonic()
        log_item = item
        message_sent = ""

        try:
            try:
                decision = self.evaluator.evaluate(item, now)
            except Exception:
                self._release_quietly(item.id, token)
                raise

            log_item = decision.item or item

            if not decision.proceed:
                result.reason = decision.reason
                if decision.action == GuardAction.SKIP:
                    self._release_quietly(item.id, token)
                    result.skipped = True
                else:
                    self.evaluator.apply(decision)
                    result.cancelled = decision.action == GuardAction.CANCEL
                    result.deferred = decision.action == GuardAction.DEFER
                    result.failed = decision.action == GuardAction.FAIL
                    result.error = decision.error
                return result

            fresh = decision.item
            agent = decision.agent

            if not fresh.company_id and agent.company_id:
                logger.info(f"Backfilling company {agent.company_id} on queue item {fresh.id}")
                self.queue.backfill_company(fresh.id, agent.company_id)
                fresh.company_id = agent.company_id
            company_id = fresh.company_id

            try:
                timezone = self.business_hours.resolve_timezone(self.db, company_id)
                context = load_context(self.db, fresh, timezone)

                message = await self.personalizer.personalize(fresh.message_template, context, agent, company_id)

                instance = find_connected_instance(self.db, company_id)
                if instance is None:
                    raise ChannelUnavailableError(f"No connected WhatsApp instance for company {company_id}")

                sent = await self.sender.send_text(instance.name, context.contact_phone, message)
                if not sent.success:
                    raise SendFailedError(sent.error or "send failed")

            except Exception as e:
                self.db.rollback()
                result.error = str(e)
                attempt = min((fresh.attempts or 0) + 1, fresh.max_attempts)
                status = self.queue.record_attempt_failure(fresh, result.error)
                result.failed = status == STATUS_FAILED
                logger.warning(
                    f"Queue item {fresh.id} attempt {attempt}/{fresh.max_attempts} failed ({status}): {e}"
                )
                return result

            message_sent = message

            try:
                persisted = self.queue.mark_sent(fresh, message, datetime.utcnow())
            except Exception as e:
                self.db.rollback()
                logger.critical(
                    f"Message for queue item {fresh.id} was SENT to {mask_phone(context.contact_phone)} "
                    f"but the item could not be marked as sent: {e}",
                    exc_info=True
                )
                raise StatePersistError(f"sent but not persisted: {e}") from e

            if not persisted:
                logger.critical(
                    f"Message for queue item {fresh.id} was SENT but the item was no longer pending"
                )
                raise StatePersistError("sent but item was no longer pending")

            result.success = True
            result.message_id = sent.message_id
            logger.info(f"Queue item {fresh.id} ({fresh.kind}) sent to {mask_phone(context.contact_phone)}")

            if context.conversation_id:
                try:
                    record_outbound_message(
                        self.db, fresh, context.conversation_id, agent,
                        message, instance.name, sent.message_id
                    )
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"Failed to record outbound message for queue item {fresh.id}: {e}")

            return result

        except StatePersistError as e:
            result.error = str(e)
            raise

        finally:
            self._write_log(log_item, result, message_sent, started)

    def _release_quietly(self, item_id: int, token: str):
        try:
            self.queue.release(item_id, token)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to release claim on queue item {item_id}: {e}")

    def _write_log(self, item: QueueItem, result: ExecutionResult, message_sent: str, started: float):
        side_effect = None
        if result.success:
            side_effect = SIDE_EFFECT_REMINDER if item.kind == KIND_REMINDER else SIDE_EFFECT_FOLLOW_UP

        try:
            self.queue.write_execution_log(
                item,
                success=result.success,
                error=result.error or (None if result.success else result.reason),
                response_time_ms=int((time.monotonic() - started) * 1000),
                message_sent=message_sent,
                side_effect=side_effect,
            )
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to write execution log for queue item {item.id}: {e}")
