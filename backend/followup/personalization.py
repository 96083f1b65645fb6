"""
Message Personalization Chain

Turns a rule template into the final outbound text. Strategies, in order:

1. assistant run on the persistent thread (agent has an assistant attached)
2. raw chat completion over the same thread's history
3. stateless chat completion
4. template substitution (no network, cannot fail)

Strategies 1-3 are gated by the credit balance and debit the provider's
actual token count when they succeed. personalize() never raises.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from sqlalchemy.orm import Session

from agent.openai_client import OpenAIClient
from followup.context import FollowUpContext, ReminderContext
from followup.credit_gate import CreditGate, estimate_tokens
from followup.errors import GenerationError
from followup.notifications import NotificationService
from followup.prompts import (
    DEFAULT_FOLLOW_UP_TEMPLATE,
    DEFAULT_REMINDER_TEMPLATE,
    build_instruction,
    build_system_prompt,
    clean_response,
    render_template,
)
from models import Conversation

logger = logging.getLogger(__name__)

Context = Union[FollowUpContext, ReminderContext]


@dataclass
class _ThreadState:
    """Per-call thread bookkeeping shared by the two thread strategies."""
    thread_id: str
    instruction: str
    instruction_posted: bool = False


class MessagePersonalizer:
    """Runs the personalization cascade for one queue item at a time."""

    DEFAULT_THREAD_FLOOR = 300
    DEFAULT_MODEL = "gpt-4o-mini"
    DEFAULT_TEMPERATURE = 0.7
    DEFAULT_MAX_TOKENS = 200
    THREAD_HISTORY_LIMIT = 20

    def __init__(
        self,
        db: Session,
        llm_client: Optional[OpenAIClient],
        credit_gate: Optional[CreditGate] = None,
        notifications: Optional[NotificationService] = None,
        thread_floor: Optional[int] = None,
        default_model: Optional[str] = None,
        run_poll_attempts: int = 30,
        run_poll_interval: float = 1.0,
    ):
        """
        Args:
            db: Session used to cache conversation thread ids
            llm_client: OpenAI client, or None to always fall back to the template
            credit_gate: Balance check / debit (defaults to one bound to db)
            notifications: Operator notifications (defaults to one bound to db)
            thread_floor: Minimum credits required before any LLM strategy
            default_model: Model used when the agent has none configured
            run_poll_attempts: Max polls of an assistant run
            run_poll_interval: Seconds between run polls
        """
        self.db = db
        self.llm = llm_client
        self.credit_gate = credit_gate or CreditGate(db)
        self.notifications = notifications or NotificationService(db)
        self.thread_floor = thread_floor if thread_floor is not None else self.DEFAULT_THREAD_FLOOR
        self.default_model = default_model or self.DEFAULT_MODEL
        self.run_poll_attempts = run_poll_attempts
        self.run_poll_interval = run_poll_interval

    async def personalize(self, template: str, context: Context, agent, company_id: Optional[int]) -> str:
        """
        Produce the final message text.

        Args:
            template: Rule template with {placeholders}
            context: FollowUpContext or ReminderContext
            agent: Agent row (name, tone, model settings, assistant id)
            company_id: Company whose credits pay for the generation

        Returns:
            Non-empty message text
        """
        if not (template or "").strip():
            template = DEFAULT_REMINDER_TEMPLATE if isinstance(context, ReminderContext) else DEFAULT_FOLLOW_UP_TEMPLATE
        fallback = render_template(template, context) or template

        try:
            message = await self._generate(template, context, agent, company_id)
        except Exception as e:
            logger.error(f"Personalization chain crashed, using template: {e}", exc_info=True)
            message = None

        return message or fallback

    async def _generate(self, template: str, context: Context, agent, company_id: Optional[int]) -> Optional[str]:
        if self.llm is None:
            logger.info("No LLM client configured, using template substitution")
            return None

        required = max(estimate_tokens(template), self.thread_floor)
        check = self.credit_gate.check_balance(company_id, required)
        if not check.sufficient:
            logger.info(
                f"Insufficient credits for company {company_id} "
                f"({check.current_balance}/{required}), using template substitution"
            )
            if company_id:
                self.notifications.notify_credits_insufficient(company_id, check.current_balance, required)
            return None

        now = datetime.utcnow()
        errors = []

        state = None
        try:
            thread_id = await self._resolve_thread(context)
            state = _ThreadState(thread_id, build_instruction(template, context, now))
        except Exception as e:
            errors.append(f"thread: {e}")
            logger.warning(f"Could not resolve LLM thread, skipping thread strategies: {e}")

        strategies = []
        if state is not None:
            if getattr(agent, "openai_assistant_id", None):
                strategies.append(("assistant_thread", lambda: self._assistant_on_thread(state, agent)))
            strategies.append(("completion_thread", lambda: self._completion_on_thread(state, context, agent, now)))
        strategies.append(("stateless", lambda: self._stateless_completion(template, context, agent, now)))

        for name, strategy in strategies:
            try:
                answer, tokens, model = await strategy()
            except Exception as e:
                errors.append(f"{name}: {e}")
                logger.warning(f"Personalization strategy '{name}' failed: {e}")
                continue

            logger.info(f"Message personalized via '{name}' ({tokens} tokens)")
            self._charge(company_id, tokens, context, name, model)
            return answer

        if company_id:
            self.notifications.notify_llm_error(company_id, "; ".join(errors), mode=strategies[-1][0])
        return None

    def _model_settings(self, agent) -> Tuple[str, float, int]:
        model = getattr(agent, "openai_model", None) or self.default_model
        temperature = getattr(agent, "temperature", None)
        max_tokens = getattr(agent, "max_tokens", None)
        return (
            model,
            temperature if temperature is not None else self.DEFAULT_TEMPERATURE,
            max_tokens or self.DEFAULT_MAX_TOKENS,
        )

    async def _resolve_thread(self, context: Context) -> str:
        """Cached conversation thread for follow-ups; a fresh one for every reminder."""
        if isinstance(context, ReminderContext):
            return await self.llm.create_thread()

        if context.thread_id:
            return context.thread_id

        thread_id = await self.llm.create_thread()
        context.thread_id = thread_id
        try:
            self.db.query(Conversation).filter(
                Conversation.id == context.conversation_id
            ).update({Conversation.openai_thread_id: thread_id}, synchronize_session=False)
            self.db.commit()
            logger.info(f"Created thread {thread_id} for conversation {context.conversation_id}")
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Failed to cache thread {thread_id} on conversation {context.conversation_id}: {e}")
        return thread_id

    async def _post_instruction(self, state: _ThreadState):
        if not state.instruction_posted:
            await self.llm.add_message(state.thread_id, state.instruction)
            state.instruction_posted = True

    async def _assistant_on_thread(self, state: _ThreadState, agent) -> Tuple[str, int, Optional[str]]:
        await self._post_instruction(state)

        run = await self.llm.create_run(state.thread_id, agent.openai_assistant_id)
        run = await self.llm.wait_for_run(
            state.thread_id, run["id"],
            max_attempts=self.run_poll_attempts,
            interval=self.run_poll_interval,
        )
        status = run.get("status")
        if status != "completed":
            raise GenerationError(f"assistant run ended as {status}")

        answer = clean_response(await self.llm.latest_assistant_message(state.thread_id))
        if not answer:
            raise GenerationError("assistant returned an empty message")

        tokens = (run.get("usage") or {}).get("total_tokens", 0)
        return answer, tokens, run.get("model")

    async def _completion_on_thread(self, state: _ThreadState, context: Context, agent, now: datetime) -> Tuple[str, int, str]:
        await self._post_instruction(state)
        history = await self.llm.thread_history(state.thread_id, limit=self.THREAD_HISTORY_LIMIT)

        model, temperature, max_tokens = self._model_settings(agent)
        messages = [{"role": "system", "content": build_system_prompt(agent, context, now)}] + history
        answer, tokens = self._unpack(await self.llm.chat(messages, model, temperature, max_tokens))

        try:
            await self.llm.add_message(state.thread_id, answer, role="assistant")
        except Exception as e:
            logger.warning(f"Could not append answer to thread {state.thread_id}: {e}")

        return answer, tokens, model

    async def _stateless_completion(self, template: str, context: Context, agent, now: datetime) -> Tuple[str, int, str]:
        model, temperature, max_tokens = self._model_settings(agent)
        messages = [
            {"role": "system", "content": build_system_prompt(agent, context, now)},
            {"role": "user", "content": build_instruction(template, context, now)},
        ]
        answer, tokens = self._unpack(await self.llm.chat(messages, model, temperature, max_tokens))
        return answer, tokens, model

    @staticmethod
    def _unpack(result: dict) -> Tuple[str, int]:
        if result.get("error"):
            raise GenerationError(result["error"])
        answer = clean_response(result.get("answer"))
        if not answer:
            raise GenerationError("empty completion")
        return answer, (result.get("token_usage") or {}).get("total", 0)

    def _charge(self, company_id: Optional[int], tokens: int, context: Context, strategy: str, model: Optional[str]):
        if not tokens:
            logger.warning(f"Strategy '{strategy}' reported no token usage, nothing debited")
            return

        if isinstance(context, ReminderContext):
            reference = f"appointment:{context.appointment_id}"
            description = f"Appointment reminder personalization ({strategy})"
        else:
            reference = f"conversation:{context.conversation_id}"
            description = f"Follow-up personalization ({strategy})"

        if not self.credit_gate.debit(company_id, tokens, reference, description, model):
            logger.warning(f"Usage of {tokens} credits not fully covered for company {company_id}")
