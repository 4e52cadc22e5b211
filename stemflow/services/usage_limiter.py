"""Per-identity daily usage limits."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.config import get_settings
from stemflow.db.models import UsageCounter
from stemflow.db.session import insert_ignoring_conflict

logger = logging.getLogger(__name__)

settings = get_settings()


class MissingIdentity(ValueError):
    """Neither a user id nor a fingerprint was provided."""


@dataclass(frozen=True)
class Identity:
    """Who a usage counter belongs to."""

    value: str
    registered: bool

    @classmethod
    def resolve(cls, user_id: Optional[str], fingerprint: Optional[str]) -> "Identity":
        """Pick the identity for a request; a user id wins over a fingerprint."""
        if user_id:
            return cls(value=user_id, registered=True)
        if fingerprint:
            return cls(value=fingerprint, registered=False)
        raise MissingIdentity("Either fingerprint or user_id is required")


@dataclass
class UsageCheck:
    """Outcome of a usage check."""

    allowed: bool
    remaining: int
    limit: int
    message: Optional[str] = None


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class UsageLimiter:
    """
    Daily counters keyed by (identity, tool).

    Counters reset lazily: whenever a stored reset date is not today, the
    next check or increment starts the day over.
    """

    def __init__(
        self,
        anonymous_limit: Optional[int] = None,
        registered_limit: Optional[int] = None,
        today: Callable[[], date] = _utc_today,
    ):
        self.anonymous_limit = anonymous_limit or settings.anonymous_daily_limit
        self.registered_limit = registered_limit or settings.registered_daily_limit
        self._today = today

    def daily_limit(self, identity: Identity) -> int:
        return self.registered_limit if identity.registered else self.anonymous_limit

    def _insert_if_missing(self, db: AsyncSession, values: dict):
        return insert_ignoring_conflict(db, UsageCounter, ["identity", "tool_code"], values)

    def _counter_query(self, identity: Identity, tool_code: str, lock: bool = False):
        query = (
            select(UsageCounter)
            .where(UsageCounter.identity == identity.value, UsageCounter.tool_code == tool_code)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        return query

    async def check(
        self,
        db: AsyncSession,
        identity: Identity,
        tool_code: str,
        pending: int = 0,
        lock: bool = False,
    ) -> UsageCheck:
        """
        Report whether the identity may submit another job for the tool today.

        Creates the counter on first use and applies the daily reset.

        Args:
            pending: Jobs of the identity already in flight; they are not in
                `used_count` yet but will be once they finish
            lock: Hold the counter row until the transaction ends, so callers
                that check and then claim work are serialized per identity
        """
        today = self._today()
        limit = self.daily_limit(identity)

        await db.execute(
            self._insert_if_missing(
                db,
                {
                    "identity": identity.value,
                    "tool_code": tool_code,
                    "daily_limit": limit,
                    "used_count": 0,
                    "reset_date": today,
                },
            )
        )
        await db.execute(
            update(UsageCounter)
            .where(
                UsageCounter.identity == identity.value,
                UsageCounter.tool_code == tool_code,
                UsageCounter.reset_date != today,
            )
            .values(used_count=0, reset_date=today, daily_limit=limit)
            .execution_options(synchronize_session=False)
        )

        counter = (await db.execute(self._counter_query(identity, tool_code, lock))).scalar_one()
        remaining = max(counter.daily_limit - counter.used_count - pending, 0)

        if remaining <= 0:
            if identity.registered:
                message = (
                    f"You have reached your daily limit of {counter.daily_limit} files. "
                    "Please try again tomorrow."
                )
            else:
                message = (
                    f"You have reached your daily limit of {counter.daily_limit} file. "
                    "Please register for more usage."
                )
            return UsageCheck(allowed=False, remaining=0, limit=counter.daily_limit, message=message)

        return UsageCheck(allowed=True, remaining=remaining, limit=counter.daily_limit)

    async def increment(self, db: AsyncSession, identity: Identity, tool_code: str):
        """
        Consume one unit of the identity's allotment.

        Does not re-check the allowance; callers gate with check() first. The
        arithmetic happens inside a single UPDATE so concurrent completions
        for the same identity never lose an increment.
        """
        today = self._today()
        limit = self.daily_limit(identity)
        same_day = UsageCounter.reset_date == today

        stmt = (
            update(UsageCounter)
            .where(UsageCounter.identity == identity.value, UsageCounter.tool_code == tool_code)
            .values(
                used_count=case((same_day, UsageCounter.used_count + 1), else_=1),
                daily_limit=case((same_day, UsageCounter.daily_limit), else_=limit),
                reset_date=today,
                last_used_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 1:
            return

        inserted = await db.execute(
            self._insert_if_missing(
                db,
                {
                    "identity": identity.value,
                    "tool_code": tool_code,
                    "daily_limit": limit,
                    "used_count": 1,
                    "reset_date": today,
                    "last_used_at": datetime.now(timezone.utc),
                },
            )
        )
        if inserted.rowcount != 1:
            # Another request created the row in the meantime.
            await db.execute(stmt)

    async def get_stats(
        self, db: AsyncSession, identity: Identity, tool_code: str
    ) -> Optional[UsageCounter]:
        """Get the raw counter row, if any."""
        return (await db.execute(self._counter_query(identity, tool_code))).scalar_one_or_none()


# Singleton instance
usage_limiter = UsageLimiter()


def get_usage_limiter() -> UsageLimiter:
    """FastAPI dependency returning the usage limiter."""
    return usage_limiter
