"""
Operator notifications for credit and LLM problems.

Repeated conditions are rate-limited per (company_id, type): a notification is
only inserted when no notification of the same type was created for the
company within the cooldown window.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import SystemNotification

logger = logging.getLogger(__name__)

TYPE_CREDITS_INSUFFICIENT = "credits_insufficient"
TYPE_LLM_ERROR = "llm_error"


class NotificationService:
    """Writes system_notification rows with a per-type cooldown."""

    DEFAULT_COOLDOWN_MINUTES = 60

    def __init__(self, db: Session, cooldown_minutes: Optional[int] = None):
        self.db = db
        self.cooldown = timedelta(
            minutes=cooldown_minutes if cooldown_minutes is not None else self.DEFAULT_COOLDOWN_MINUTES
        )

    def _recently_notified(self, company_id: int, notification_type: str, now: datetime) -> bool:
        if self.cooldown.total_seconds() <= 0:
            return False
        recent = self.db.query(SystemNotification.id).filter(
            SystemNotification.company_id == company_id,
            SystemNotification.type == notification_type,
            SystemNotification.created_at >= now - self.cooldown
        ).first()
        return recent is not None

    def notify(
        self,
        company_id: Optional[int],
        notification_type: str,
        title: str,
        message: str,
        severity: str = "medium",
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Insert a notification unless one of the same type is inside the cooldown.

        Returns:
            True if a row was written
        """
        if not company_id:
            return False

        now = datetime.utcnow()
        try:
            if self._recently_notified(company_id, notification_type, now):
                logger.debug(
                    f"Notification {notification_type} for company {company_id} suppressed (cooldown)"
                )
                return False

            self.db.add(SystemNotification(
                company_id=company_id,
                type=notification_type,
                title=title,
                message=message,
                severity=severity,
                meta=metadata or {},
                is_read=False,
                created_at=now
            ))
            self.db.commit()
            logger.info(f"Notification {notification_type} created for company {company_id}")
            return True

        except Exception as e:
            logger.error(f"Failed to create notification {notification_type}: {e}", exc_info=True)
            self.db.rollback()
            return False

    def notify_credits_insufficient(self, company_id: int, current_balance: int, required: int) -> bool:
        return self.notify(
            company_id,
            TYPE_CREDITS_INSUFFICIENT,
            title="Créditos insuficientes para follow-ups com IA",
            message=(
                f"Seu saldo atual é de {current_balance} créditos. "
                f"São necessários pelo menos {required} créditos para personalizar follow-ups com IA. "
                f"As mensagens serão enviadas usando o template padrão."
            ),
            severity="medium",
            metadata={
                "current_balance": current_balance,
                "required_credits": required,
                "fallback_to_template": True,
            }
        )

    def notify_llm_error(self, company_id: int, error: str, mode: str) -> bool:
        return self.notify(
            company_id,
            TYPE_LLM_ERROR,
            title="Erro no sistema de IA",
            message="Erro temporário no sistema de IA. Follow-ups usarão templates simples até resolver.",
            severity="high",
            metadata={
                "error": error[:500],
                "mode": mode,
                "fallback_to_template": True,
            }
        )
