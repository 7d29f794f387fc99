"""Subscription store — versioned, conditionally-written subscription records.

Every write is ``UPDATE ... WHERE user_id = :user AND version = :expected``
bumping the version. Zero affected rows means a concurrent writer committed
first (VersionConflict). There are no application-level locks; the row's
version column is the only concurrency control.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from entitlements.core.config import get_settings
from entitlements.core.exceptions import SubscriptionNotFound, VersionConflict
from entitlements.db.base import get_session_factory
from entitlements.db.models.subscription_record import SubscriptionRecord
from entitlements.domain.lifecycle import is_expected_transition, lifecycle_state
from entitlements.domain.mutations import SubscriptionMutation
from entitlements.domain.tiers import DEFAULT_TIER, AcceleratorAccess

logger = structlog.get_logger(__name__)


def as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _same(current: Any, new: Any) -> bool:
    # SQLite hands back naive datetimes for timezone-aware columns
    if isinstance(current, datetime) and isinstance(new, datetime):
        return as_utc(current) == as_utc(new)
    return current == new


class SubscriptionStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cache=None,
        max_attempts: int | None = None,
    ):
        self._session_factory = session_factory
        self.cache = cache
        self.max_attempts = max_attempts or get_settings().version_conflict_retries

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ── Reads ───────────────────────────────────────────────────────

    async def get(self, user_id: str) -> SubscriptionRecord | None:
        async with self.session_factory() as session:
            return await session.get(SubscriptionRecord, user_id)

    async def get_or_create(self, user_id: str) -> SubscriptionRecord:
        """Load the user's record, creating it at the lowest tier on first use."""
        record = await self.get(user_id)
        if record is not None:
            return record

        async with self.session_factory() as session:
            try:
                now = datetime.now(UTC)
                session.add(
                    SubscriptionRecord(
                        user_id=user_id,
                        tier=DEFAULT_TIER.value,
                        accelerator_access=AcceleratorAccess.NONE.value,
                        version=1,
                        created_at=now,
                        last_updated=now,
                    )
                )
                await session.commit()
                logger.info("subscription_record_created", user_id=user_id)
            except IntegrityError:
                # Concurrent first request already created it
                await session.rollback()

        record = await self.get(user_id)
        if record is None:
            raise SubscriptionNotFound(user_id)
        return record

    async def find_by_customer(self, customer_id: str) -> SubscriptionRecord | None:
        """Resolve a provider customer id back to its subscription record."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionRecord).where(SubscriptionRecord.provider_customer_id == customer_id)
            )
            return result.scalar_one_or_none()

    async def list_linked(self, limit: int = 100, offset: int = 0) -> list[SubscriptionRecord]:
        """Records with a provider customer, for periodic reconciliation."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.provider_customer_id.is_not(None))
                .order_by(SubscriptionRecord.user_id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    # ── Writes ──────────────────────────────────────────────────────

    async def apply(
        self,
        user_id: str,
        mutation: SubscriptionMutation,
        expected_version: int | None = None,
    ) -> SubscriptionRecord:
        """Apply one mutation as a single version-checked write.

        With ``expected_version`` omitted, the version read here is the one
        the write is conditioned on.

        Raises:
            SubscriptionNotFound: no record for ``user_id``
            VersionConflict: the record moved past the expected version
        """
        async with self.session_factory() as session:
            record = await session.get(SubscriptionRecord, user_id)
            if record is None:
                raise SubscriptionNotFound(user_id)

            if expected_version is None:
                expected_version = record.version
            elif record.version != expected_version:
                raise VersionConflict(user_id, expected_version)

            writes = {
                field: value
                for field, value in mutation.changes(record).items()
                if not _same(getattr(record, field), value)
            }
            if not writes:
                logger.debug("subscription_mutation_noop", user_id=user_id, mutation=mutation.kind)
                return record

            state_before = lifecycle_state(record)

            result = await session.execute(
                update(SubscriptionRecord)
                .where(
                    SubscriptionRecord.user_id == user_id,
                    SubscriptionRecord.version == expected_version,
                )
                .values(**writes, version=expected_version + 1, last_updated=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise VersionConflict(user_id, expected_version)

            await session.commit()
            await session.refresh(record)

        state_after = lifecycle_state(record)
        logger.info(
            "subscription_mutation_applied",
            user_id=user_id,
            mutation=mutation.kind,
            fields=sorted(writes),
            version=record.version,
            state=state_after.value,
        )
        if not is_expected_transition(state_before, state_after):
            logger.warning(
                "subscription_unexpected_transition",
                user_id=user_id,
                from_state=state_before.value,
                to_state=state_after.value,
                mutation=mutation.kind,
            )

        if self.cache is not None:
            await self.cache.invalidate(user_id)

        return record

    async def apply_with_retry(self, user_id: str, mutation: SubscriptionMutation) -> SubscriptionRecord:
        """Re-read and re-apply on VersionConflict, up to ``max_attempts`` times.

        Re-raises the last VersionConflict once attempts are exhausted.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(VersionConflict),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=0.01, max=0.2),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "subscription_version_conflict_retrying",
                user_id=user_id,
                mutation=mutation.kind,
                attempt=rs.attempt_number,
            ),
        ):
            with attempt:
                record = await self.apply(user_id, mutation)
        return record
