"""Usage ledger — period-scoped quota counters with atomic check-and-increment.

The quota check and the increment are one conditional UPDATE
(``current + :amount <= :limit`` evaluated by the database), so concurrent
callers for the same counter serialize in storage and can never overrun the
limit. Limits are resolved from the user's current tier on every call; a
downgrade never truncates existing usage, it just rejects further increments
until the period rolls over. A new period key is a new, lazily-created row.
"""

from datetime import UTC, datetime

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.db.base import get_session_factory
from entitlements.db.models.usage_counter import UsageCounter
from entitlements.domain.entitlements import resolve
from entitlements.domain.tiers import ResourceType
from entitlements.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)

# Share of the limit at which the UI starts warning
NEAR_LIMIT_RATIO = 0.8


class UsageDecision(BaseModel):
    """Outcome of a check-and-increment. Rejection is a value, not an error."""

    accepted: bool
    resource_type: ResourceType
    period_key: str
    current: int
    limit: int | None  # None = unbounded
    remaining: int | None  # None = unbounded


class ResourceUsage(BaseModel):
    resource_type: ResourceType
    current: int
    limit: int | None
    remaining: int | None
    is_near_limit: bool
    is_at_limit: bool


class UsageSnapshot(BaseModel):
    period_key: str
    resets_at: str  # ISO 8601 start of the next period (UTC)
    resources: list[ResourceUsage]


def current_period_key(now: datetime | None = None) -> str:
    """Billing period key ("YYYY-MM", UTC) for ``now``."""
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).strftime("%Y-%m")


def next_period_start(period_key: str) -> datetime:
    """First instant of the period after ``period_key``.

    Raises ValueError for a key that is not "YYYY-MM".
    """
    start = datetime.strptime(period_key, "%Y-%m").replace(tzinfo=UTC)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _remaining(current: int, limit: int | None) -> int | None:
    if limit is None:
        return None
    return max(0, limit - current)


class UsageLedger:
    def __init__(
        self,
        store: SubscriptionStore,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.store = store
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def check_and_increment(
        self,
        user_id: str,
        resource_type: ResourceType | str,
        amount: int = 1,
        period_key: str | None = None,
    ) -> UsageDecision:
        """Consume ``amount`` units if the user's current quota allows it.

        Raises ValueError for a non-positive amount, an unknown resource type,
        or a malformed period key.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("amount must be a positive integer")
        resource_type = ResourceType(resource_type)
        period_key = period_key or current_period_key()
        next_period_start(period_key)  # validates the key format

        record = await self.store.get_or_create(user_id)
        limit = resolve(record).limit_for(resource_type)

        accepted = await self._conditional_increment(user_id, resource_type, period_key, amount, limit)
        if not accepted:
            # Either over quota or no counter yet for this period. Counters only
            # grow, so after an insert-if-absent a second refusal means over quota.
            await self._create_counter(user_id, resource_type, period_key, limit)
            accepted = await self._conditional_increment(user_id, resource_type, period_key, amount, limit)

        counter = await self._load(user_id, resource_type, period_key)
        current = counter.current if counter is not None else 0

        decision = UsageDecision(
            accepted=accepted,
            resource_type=resource_type,
            period_key=period_key,
            current=current,
            limit=limit,
            remaining=_remaining(current, limit),
        )
        if accepted:
            logger.debug("usage_incremented", user_id=user_id, resource=resource_type.value, current=current)
        else:
            logger.info(
                "usage_quota_exceeded",
                user_id=user_id,
                resource=resource_type.value,
                period_key=period_key,
                current=current,
                limit=limit,
                requested=amount,
            )
        return decision

    async def get_usage(self, user_id: str, period_key: str | None = None) -> UsageSnapshot:
        """Current consumption against current limits for every resource type."""
        period_key = period_key or current_period_key()
        resets_at = next_period_start(period_key)

        record = await self.store.get_or_create(user_id)
        entitlement = resolve(record)

        async with self.session_factory() as session:
            result = await session.execute(
                select(UsageCounter).where(
                    UsageCounter.user_id == user_id,
                    UsageCounter.period_key == period_key,
                )
            )
            counters = {row.resource_type: row.current for row in result.scalars().all()}

        resources = []
        for resource_type in ResourceType:
            current = counters.get(resource_type.value, 0)
            limit = entitlement.limit_for(resource_type)
            resources.append(
                ResourceUsage(
                    resource_type=resource_type,
                    current=current,
                    limit=limit,
                    remaining=_remaining(current, limit),
                    is_near_limit=limit is not None and current >= limit * NEAR_LIMIT_RATIO,
                    is_at_limit=limit is not None and current >= limit,
                )
            )

        return UsageSnapshot(period_key=period_key, resets_at=resets_at.isoformat(), resources=resources)

    # ── Storage primitives ──────────────────────────────────────────

    async def _conditional_increment(
        self,
        user_id: str,
        resource_type: ResourceType,
        period_key: str,
        amount: int,
        limit: int | None,
    ) -> bool:
        """Single conditional write. True iff exactly one row was incremented."""
        stmt = (
            update(UsageCounter)
            .where(
                UsageCounter.user_id == user_id,
                UsageCounter.resource_type == resource_type.value,
                UsageCounter.period_key == period_key,
            )
            .values(
                current=UsageCounter.current + amount,
                limit=limit,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            stmt = stmt.where(UsageCounter.current + amount <= limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def _create_counter(
        self,
        user_id: str,
        resource_type: ResourceType,
        period_key: str,
        limit: int | None,
    ) -> None:
        """Insert a zeroed counter unless a concurrent caller already did."""
        async with self.session_factory() as session:
            try:
                now = datetime.now(UTC)
                session.add(
                    UsageCounter(
                        user_id=user_id,
                        resource_type=resource_type.value,
                        period_key=period_key,
                        current=0,
                        limit=limit,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()

    async def _load(self, user_id: str, resource_type: ResourceType, period_key: str) -> UsageCounter | None:
        async with self.session_factory() as session:
            return await session.get(UsageCounter, (user_id, resource_type.value, period_key))
