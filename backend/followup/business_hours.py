"""
Business-hours predicate in the company's timezone.

Timezone resolution: company.timezone, then the owner's timezone, then the
configured default.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import pytz
from sqlalchemy.orm import Session

from models import Company, User

logger = logging.getLogger(__name__)


def _valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        pytz.timezone(name)
        return True
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{name}' ignored")
        return False


class BusinessHours:
    """Hour window [start_hour, end_hour) evaluated in local time."""

    def __init__(self, start_hour: int = 8, end_hour: int = 18, default_timezone: str = "America/Sao_Paulo"):
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.default_timezone = default_timezone

    def resolve_timezone(self, db: Session, company_id: Optional[int]) -> str:
        if not company_id:
            return self.default_timezone

        try:
            company = db.query(Company).filter(Company.id == company_id).first()
            if company and _valid_timezone(company.timezone):
                return company.timezone

            owner = db.query(User).filter(
                User.company_id == company_id,
                User.is_owner == True  # noqa: E712
            ).first()
            if owner and _valid_timezone(owner.timezone):
                return owner.timezone
        except Exception as e:
            logger.error(f"Timezone lookup failed for company {company_id}: {e}")
            db.rollback()

        return self.default_timezone

    def _local(self, now_utc: datetime, tz_name: str) -> datetime:
        if now_utc.tzinfo is None:
            now_utc = pytz.utc.localize(now_utc)
        return now_utc.astimezone(pytz.timezone(tz_name))

    def is_open(self, now_utc: datetime, tz_name: str) -> bool:
        """True inside the window. Errors count as open so sends are not blocked."""
        try:
            local = self._local(now_utc, tz_name)
        except Exception as e:
            logger.error(f"Business hours check failed ({tz_name}): {e}")
            return True
        return self.start_hour <= local.hour < self.end_hour

    def next_opening(self, now_utc: datetime, tz_name: str) -> datetime:
        """
        Next window start strictly after now, as naive UTC.

        Before today's opening -> today's opening; otherwise tomorrow's.
        """
        tz = pytz.timezone(tz_name)
        local = self._local(now_utc, tz_name)

        day = local.date()
        if local.hour >= self.start_hour:
            day = day + timedelta(days=1)

        opening = tz.localize(datetime(day.year, day.month, day.day, self.start_hour))
        return opening.astimezone(pytz.utc).replace(tzinfo=None)
