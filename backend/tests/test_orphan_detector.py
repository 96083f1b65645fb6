"""
Tests for OrphanDetector - stale reaping and retroactive follow-up creation
"""

from datetime import datetime, timedelta
from unittest.mock import patch

from followup.guards import EligibilityEvaluator, GuardAction
from followup.orphan_detector import OrphanDetector
from models import QueueItem


def _items(db):
    db.expire_all()
    return db.query(QueueItem).order_by(QueueItem.id).all()


class TestOrphanDetection:

    def test_creates_backdated_item_for_overdue_conversation(self, seeded, add_message):
        message = add_message("Quanto custa?", minutes_ago=20)
        now = datetime.utcnow()

        created = OrphanDetector(seeded.db).find_and_create_orphans(now)

        assert len(created) == 1
        item = created[0]
        assert item.kind == "follow_up"
        assert item.status == "pending"
        assert item.rule_id == "r1"
        assert item.conversation_id == seeded.conversation.id
        assert item.contact_id == seeded.contact.id
        assert item.company_id == seeded.company.id
        assert item.max_attempts == 3
        assert item.scheduled_at == message.sent_at + timedelta(minutes=15)
        assert item.meta["source"] == "orphan"
        assert item.meta["minutes_late"] == 5

    def test_second_run_is_idempotent(self, seeded, add_message):
        add_message("Quanto custa?", minutes_ago=20)
        detector = OrphanDetector(seeded.db)

        first = detector.find_and_create_orphans()
        second = detector.find_and_create_orphans()

        assert len(first) == 1
        assert second == []
        assert len(_items(seeded.db)) == 1
        assert detector.get_stats()["orphans_created"] == 1

    def test_already_sent_rule_is_not_recreated(self, seeded, add_message, make_follow_up):
        add_message("Quanto custa?", minutes_ago=20)
        make_follow_up(status="sent", attempts=1)

        assert OrphanDetector(seeded.db).find_and_create_orphans() == []

    def test_cancelled_item_is_not_resurrected(self, seeded, add_message, make_follow_up):
        add_message("Quanto custa?", minutes_ago=20)
        make_follow_up(status="cancelled")

        assert OrphanDetector(seeded.db).find_and_create_orphans() == []
        assert len(_items(seeded.db)) == 1

    def test_delay_not_yet_elapsed(self, seeded, add_message):
        add_message("Quanto custa?", minutes_ago=5)

        assert OrphanDetector(seeded.db).find_and_create_orphans() == []

    def test_paused_conversation_is_skipped(self, seeded, add_message):
        seeded.conversation.meta = {"follow_up_paused": True}
        seeded.db.commit()
        add_message("Quanto custa?", minutes_ago=20)

        assert OrphanDetector(seeded.db).find_and_create_orphans() == []

    def test_follow_up_messages_do_not_reset_the_clock(self, seeded, add_message):
        customer = add_message("Quanto custa?", minutes_ago=30)
        add_message("Olá Maria, ainda podemos ajudar?", minutes_ago=2, sent_by_ai=True, is_follow_up=True)

        created = OrphanDetector(seeded.db).find_and_create_orphans()

        assert len(created) == 1
        assert created[0].scheduled_at == customer.sent_at + timedelta(minutes=15)

    def test_conversations_outside_lookback_are_ignored(self, seeded, add_message):
        add_message("Quanto custa?", minutes_ago=60 * 24 * 8)

        assert OrphanDetector(seeded.db, lookback_days=7).find_and_create_orphans() == []

    def test_inactive_agent_is_skipped(self, seeded, add_message):
        seeded.agent.status = "inactive"
        seeded.db.commit()
        add_message("Quanto custa?", minutes_ago=20)

        assert OrphanDetector(seeded.db).find_and_create_orphans() == []

    def test_duplicate_created_after_a_send_is_cancelled_before_sending(self, seeded, add_message, make_follow_up):
        add_message("Quanto custa?", minutes_ago=20)
        make_follow_up(status="sent", attempts=1)
        detector = OrphanDetector(seeded.db)

        # the existence check ran before the send committed
        with patch.object(detector.queue, "exists_for_rule", return_value=False):
            created = detector.find_and_create_orphans()

        assert len(created) == 1
        evaluator = EligibilityEvaluator(seeded.db)
        decision = evaluator.evaluate(created[0])
        evaluator.apply(decision)

        assert decision.action == GuardAction.CANCEL
        assert _items(seeded.db)[1].status == "cancelled"
        assert _items(seeded.db)[1].meta["cancelled_reason"] == "already_sent"

    def test_limit_caps_creation(self, seeded, add_message):
        seeded.agent.follow_up_rules = seeded.agent.follow_up_rules + [{
            "id": "r2",
            "name": "Reativação 10min",
            "delay_minutes": 10,
            "message_template": "Oi {nome}",
        }]
        seeded.db.commit()
        add_message("Quanto custa?", minutes_ago=20)

        created = OrphanDetector(seeded.db, limit=1).find_and_create_orphans()

        assert len(created) == 1


class TestStaleCleanup:

    def test_old_pending_item_is_failed(self, seeded, make_follow_up):
        old = datetime.utcnow() - timedelta(hours=7)
        item = make_follow_up(scheduled_at=old, created_at=old)
        detector = OrphanDetector(seeded.db)

        assert detector.cleanup_stale_items() == 1

        fresh = _items(seeded.db)[0]
        assert fresh.id == item.id
        assert fresh.status == "failed"
        assert fresh.meta["failed_reason"] == "stale_pending"
        assert "stale" in fresh.execution_error
        assert detector.get_stats()["stale_reaped"] == 1

    def test_recent_item_is_kept(self, seeded, make_follow_up):
        make_follow_up(scheduled_at=datetime.utcnow() - timedelta(hours=1))

        assert OrphanDetector(seeded.db).cleanup_stale_items() == 0

    def test_deferred_item_is_kept(self, seeded, make_follow_up):
        make_follow_up(
            scheduled_at=datetime.utcnow() + timedelta(hours=10),
            created_at=datetime.utcnow() - timedelta(hours=20),
        )

        assert OrphanDetector(seeded.db).cleanup_stale_items() == 0

    def test_freshly_created_orphan_is_kept(self, seeded, make_follow_up):
        # backdated scheduled_at, but created moments ago
        make_follow_up(scheduled_at=datetime.utcnow() - timedelta(hours=12))

        assert OrphanDetector(seeded.db).cleanup_stale_items() == 0

    def test_terminal_items_are_untouched(self, seeded, make_follow_up):
        old = datetime.utcnow() - timedelta(hours=7)
        make_follow_up(status="sent", attempts=1, scheduled_at=old, created_at=old)

        assert OrphanDetector(seeded.db).cleanup_stale_items() == 0
        assert _items(seeded.db)[0].status == "sent"
