"""
Credit Ledger Gate

Checks a company's prepaid balance before paid LLM work and debits the actual
token usage afterwards. One credit pays for one token.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from models import CompanyCredits, CreditTransaction

logger = logging.getLogger(__name__)

SERVICE_TYPE = "llm_followup"


def estimate_tokens(text: Optional[str]) -> int:
    """~0.25 tokens per character plus a 20% margin."""
    base = math.ceil(len(text or "") * 0.25)
    return math.ceil(base * 1.2)


@dataclass
class BalanceCheck:
    sufficient: bool
    current_balance: int
    required: int
    error: Optional[str] = None


class CreditGate:
    """Balance checks and debits against company_credits."""

    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, company_id: int) -> Optional[int]:
        row = self.db.query(CompanyCredits.balance).filter(
            CompanyCredits.company_id == company_id
        ).first()
        return row[0] if row else None

    def check_balance(self, company_id, required: int) -> BalanceCheck:
        """
        Check whether a company can afford `required` credits.

        Fails closed: a missing/invalid company id or a lookup error reports
        insufficient. Never raises.
        """
        if not isinstance(company_id, int) or isinstance(company_id, bool) or company_id <= 0:
            logger.warning(f"Credit check with invalid company id: {company_id!r}")
            return BalanceCheck(False, 0, required, error="invalid company id")

        try:
            balance = self.get_balance(company_id)
        except Exception as e:
            logger.error(f"Credit lookup failed for company {company_id}: {e}", exc_info=True)
            self.db.rollback()
            return BalanceCheck(False, 0, required, error=str(e))

        balance = balance or 0
        sufficient = balance >= required
        if not sufficient:
            logger.info(f"Company {company_id} has {balance} credits, {required} required")
        return BalanceCheck(sufficient, balance, required)

    def debit(
        self,
        company_id: int,
        tokens_used: int,
        reference_id: Optional[str] = None,
        description: str = "",
        model_used: Optional[str] = None
    ) -> bool:
        """
        Debit actual token usage atomically and append a ledger row.

        Usage above the remaining balance drains the balance to zero; the
        ledger row still carries the full token count so the spend is not
        lost. The before/after balance reads only feed a drift alert.

        Returns:
            True if the usage was fully covered by the balance
        """
        if not company_id or not tokens_used or tokens_used <= 0:
            return False

        try:
            before = self.get_balance(company_id)
            if before is None:
                logger.warning(f"Debit of {tokens_used} credits for company {company_id} without a credits row")
                return False

            charged = tokens_used
            updated = self._apply_debit(company_id, tokens_used, CompanyCredits.balance >= tokens_used)

            if not updated:
                # Usage exceeds the balance: take what is left
                charged = max(before, 0)
                updated = self._apply_debit(company_id, charged, CompanyCredits.balance == before)

            if not updated:
                self.db.rollback()
                logger.warning(
                    f"Debit of {tokens_used} credits refused for company {company_id} "
                    f"(balance changed from {before})"
                )
                return False

            uncovered = tokens_used - charged
            if uncovered:
                description = f"{description} (partial: {uncovered} uncovered)".strip()

            after = self.get_balance(company_id)
            self.db.add(CreditTransaction(
                company_id=company_id,
                amount=-charged,
                balance_after=after if after is not None else 0,
                service_type=SERVICE_TYPE,
                description=description,
                reference_id=reference_id,
                tokens_used=tokens_used,
                model_used=model_used
            ))
            self.db.commit()

        except Exception as e:
            logger.error(f"Credit debit failed for company {company_id}: {e}", exc_info=True)
            self.db.rollback()
            return False

        if after is not None and before - after != charged:
            logger.error(
                f"Credit drift for company {company_id}: expected -{charged}, "
                f"observed {before} -> {after} ({before - after})"
            )
        elif uncovered:
            logger.warning(
                f"Usage of {tokens_used} credits exceeded the balance of company {company_id}: "
                f"debited {charged}, {uncovered} uncovered"
            )
        else:
            logger.info(
                f"Debited {tokens_used} credits from company {company_id} ({before} -> {after})"
            )
        return not uncovered

    def _apply_debit(self, company_id: int, amount: int, condition) -> bool:
        updated = self.db.query(CompanyCredits).filter(
            CompanyCredits.company_id == company_id,
            condition
        ).update(
            {
                CompanyCredits.balance: CompanyCredits.balance - amount,
                CompanyCredits.updated_at: datetime.utcnow(),
            },
            synchronize_session=False
        )
        return updated == 1
