"""
Tests for the credit ledger gate and operator notifications.
"""

import logging
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from followup.credit_gate import CreditGate, estimate_tokens
from followup.notifications import NotificationService, TYPE_CREDITS_INSUFFICIENT
from models import CompanyCredits, CreditTransaction, SystemNotification


def _balance(db, company_id):
    db.expire_all()
    return db.query(CompanyCredits).filter(CompanyCredits.company_id == company_id).one().balance


class TestEstimateTokens:

    def test_quarter_token_per_char_plus_margin(self):
        # 100 chars -> 25 tokens -> 30 with 20% margin
        assert estimate_tokens("x" * 100) == 30

    def test_rounds_up(self):
        # 3 chars -> ceil(0.75) = 1 -> ceil(1.2) = 2
        assert estimate_tokens("abc") == 2

    def test_empty(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0


class TestCheckBalance:

    @pytest.mark.parametrize("company_id", [None, 0, -3, "1", True])
    def test_fails_closed_on_invalid_company(self, seeded, company_id):
        check = CreditGate(seeded.db).check_balance(company_id, 10)
        assert check.sufficient is False
        assert check.error == "invalid company id"

    def test_sufficient(self, seeded):
        check = CreditGate(seeded.db).check_balance(seeded.company.id, 1000)
        assert check.sufficient is True
        assert check.current_balance == 5000
        assert check.required == 1000

    def test_insufficient(self, seeded):
        check = CreditGate(seeded.db).check_balance(seeded.company.id, 6000)
        assert check.sufficient is False
        assert check.current_balance == 5000

    def test_company_without_credit_row_is_insufficient(self, seeded):
        check = CreditGate(seeded.db).check_balance(999, 1)
        assert check.sufficient is False
        assert check.current_balance == 0

    def test_fails_closed_on_lookup_error(self, seeded):
        gate = CreditGate(seeded.db)
        with patch.object(gate, "get_balance", side_effect=RuntimeError("db down")):
            check = gate.check_balance(seeded.company.id, 1)
        assert check.sufficient is False
        assert "db down" in check.error


class TestDebit:

    def test_debits_and_appends_ledger_row(self, seeded):
        gate = CreditGate(seeded.db)

        assert gate.debit(seeded.company.id, 120, "conversation:1", "Follow-up personalization", "gpt-4o-mini") is True

        assert _balance(seeded.db, seeded.company.id) == 4880
        tx = seeded.db.query(CreditTransaction).one()
        assert tx.amount == -120
        assert tx.balance_after == 4880
        assert tx.tokens_used == 120
        assert tx.reference_id == "conversation:1"
        assert tx.model_used == "gpt-4o-mini"

    def test_usage_above_balance_drains_to_zero_and_keeps_full_usage(self, seeded):
        gate = CreditGate(seeded.db)

        assert gate.debit(seeded.company.id, 5200, "conversation:1", "Follow-up personalization") is False

        assert _balance(seeded.db, seeded.company.id) == 0
        tx = seeded.db.query(CreditTransaction).one()
        assert tx.amount == -5000
        assert tx.balance_after == 0
        assert tx.tokens_used == 5200
        assert "200 uncovered" in tx.description

    def test_usage_on_empty_balance_is_still_recorded(self, seeded):
        seeded.db.query(CompanyCredits).update({"balance": 0})
        seeded.db.commit()
        gate = CreditGate(seeded.db)

        assert gate.debit(seeded.company.id, 80) is False

        assert _balance(seeded.db, seeded.company.id) == 0
        tx = seeded.db.query(CreditTransaction).one()
        assert tx.amount == 0
        assert tx.tokens_used == 80

    def test_company_without_credit_row_is_not_debited(self, seeded):
        assert CreditGate(seeded.db).debit(999, 10) is False
        assert seeded.db.query(CreditTransaction).count() == 0

    def test_zero_tokens_debits_nothing(self, seeded):
        gate = CreditGate(seeded.db)

        assert gate.debit(seeded.company.id, 0) is False
        assert _balance(seeded.db, seeded.company.id) == 5000

    def test_drift_is_logged_but_does_not_change_result(self, seeded, caplog):
        gate = CreditGate(seeded.db)

        with patch.object(gate, "get_balance", side_effect=[5000, 4000]):
            with caplog.at_level(logging.ERROR, logger="followup.credit_gate"):
                assert gate.debit(seeded.company.id, 50) is True

        assert "Credit drift" in caplog.text
        assert _balance(seeded.db, seeded.company.id) == 4950


class TestNotificationCooldown:

    def test_same_type_within_cooldown_is_suppressed(self, seeded):
        service = NotificationService(seeded.db, cooldown_minutes=60)

        assert service.notify_credits_insufficient(seeded.company.id, 10, 300) is True
        assert service.notify_credits_insufficient(seeded.company.id, 5, 300) is False

        rows = seeded.db.query(SystemNotification).all()
        assert len(rows) == 1
        assert rows[0].type == TYPE_CREDITS_INSUFFICIENT
        assert rows[0].meta["fallback_to_template"] is True

    def test_other_type_is_not_suppressed(self, seeded):
        service = NotificationService(seeded.db, cooldown_minutes=60)

        service.notify_credits_insufficient(seeded.company.id, 10, 300)
        assert service.notify_llm_error(seeded.company.id, "timeout", "stateless") is True
        assert seeded.db.query(SystemNotification).count() == 2

    def test_notifies_again_after_cooldown(self, seeded):
        service = NotificationService(seeded.db, cooldown_minutes=60)
        service.notify_credits_insufficient(seeded.company.id, 10, 300)

        old = seeded.db.query(SystemNotification).one()
        old.created_at = datetime.utcnow() - timedelta(minutes=61)
        seeded.db.commit()

        assert service.notify_credits_insufficient(seeded.company.id, 10, 300) is True
        assert seeded.db.query(SystemNotification).count() == 2

    def test_missing_company_is_ignored(self, seeded):
        assert NotificationService(seeded.db).notify_llm_error(None, "x", "stateless") is False
