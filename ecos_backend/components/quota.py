from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
import logging

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ecos_backend import config
from .database import Database, DailyCounter

logger = logging.getLogger(__name__)


@dataclass
class QuotaStatus:
    used: int
    limit: int
    # False when a reservation was refused (counter untouched)
    granted: bool = True

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def limit_reached(self) -> bool:
        return self.used >= self.limit

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "remaining": self.remaining,
            "limitReached": self.limit_reached,
        }


class QuotaTracker:
    """
    Per-user daily question counter.

    The day is the calendar date of `now` shifted by a fixed UTC offset, so
    the counter rolls over at local midnight of the service, not UTC midnight.
    A missing row for today means count = 0; rows are never decremented.
    """

    def __init__(
        self,
        database: Database,
        daily_limit: Optional[int] = None,
        utc_offset_hours: Optional[float] = None,
    ):
        self.database = database
        self.daily_limit = config.DAILY_QUESTION_LIMIT if daily_limit is None else daily_limit
        self.utc_offset = timedelta(
            hours=config.QUOTA_UTC_OFFSET_HOURS if utc_offset_hours is None else utc_offset_hours
        )

    def day_for(self, now: datetime) -> date:
        # naive datetimes are taken as UTC
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        return (now + self.utc_offset).date()

    def _upsert_increment(self, user_id: str, day: date, only_below_limit: bool):
        insert = pg_insert if self.database.dialect_name == "postgresql" else sqlite_insert
        stmt = insert(DailyCounter).values(user_id=user_id, day=day, count=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DailyCounter.user_id, DailyCounter.day],
            set_={"count": DailyCounter.count + 1},
            where=(DailyCounter.count < self.daily_limit) if only_below_limit else None,
        )
        return stmt.returning(DailyCounter.count)

    async def get_status(self, user_id: str, now: datetime) -> QuotaStatus:
        """Read-only view of today's usage"""
        day = self.day_for(now)
        async with self.database.session() as session:
            count = await session.scalar(
                select(DailyCounter.count).where(
                    DailyCounter.user_id == user_id,
                    DailyCounter.day == day,
                )
            )
        return QuotaStatus(used=count or 0, limit=self.daily_limit)

    async def check_and_reserve(self, user_id: str, now: datetime) -> QuotaStatus:
        """
        Reserve one question for today in a single statement:
        INSERT ... ON CONFLICT DO UPDATE SET count = count + 1 WHERE count < limit.

        When the row is already at the limit nothing is written and the
        returned status has granted=False and limit_reached=True.
        """
        day = self.day_for(now)
        if self.daily_limit <= 0:
            return QuotaStatus(used=0, limit=self.daily_limit, granted=False)

        async with self.database.session() as session:
            result = await session.execute(self._upsert_increment(user_id, day, only_below_limit=True))
            count = result.scalar_one_or_none()
            await session.commit()

        if count is None:
            logger.info("QuotaTracker: Limit reached for %s on %s", user_id, day)
            return QuotaStatus(used=self.daily_limit, limit=self.daily_limit, granted=False)

        logger.info("QuotaTracker: %s used %s/%s questions on %s", user_id, count, self.daily_limit, day)
        return QuotaStatus(used=count, limit=self.daily_limit)

    async def increment(self, user_id: str, now: datetime) -> int:
        """Unconditional atomic upsert-increment; returns the new count"""
        day = self.day_for(now)
        async with self.database.session() as session:
            result = await session.execute(self._upsert_increment(user_id, day, only_below_limit=False))
            count = result.scalar_one()
            await session.commit()

        logger.debug("QuotaTracker: Incremented %s on %s to %s", user_id, day, count)
        return count
