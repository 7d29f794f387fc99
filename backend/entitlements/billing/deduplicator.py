"""Event deduplication — at-most-once effects over at-least-once delivery.

A ProcessedEvent row is claimed with an insert-if-absent before any effect
runs. A primary-key conflict means another delivery already claimed the
event, and the caller must ack without re-applying anything. Rows are never
deleted, including failed ones: reprocessing a partially-applied event is
worse than leaving it to reconciliation.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.billing.verifier import ProviderEvent
from entitlements.db.base import get_session_factory
from entitlements.db.models.processed_event import EventOutcome, ProcessedEvent

logger = structlog.get_logger(__name__)


class Admission(str, Enum):
    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"


class EventDeduplicator:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def admit(self, event: ProviderEvent) -> Admission:
        """Claim the event id. Returns ALREADY_PROCESSED if it was claimed before."""
        async with self.session_factory() as session:
            try:
                session.add(
                    ProcessedEvent(
                        provider_event_id=event.id,
                        event_type=event.type,
                        customer_id=event.customer_id,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("stripe_duplicate_event_ignored", event_id=event.id, event_type=event.type)
                return Admission.ALREADY_PROCESSED

        return Admission.ADMITTED

    async def complete(self, event_id: str, outcome: EventOutcome, error: str | None = None) -> None:
        """Record the outcome of an admitted event."""
        async with self.session_factory() as session:
            await session.execute(
                update(ProcessedEvent)
                .where(ProcessedEvent.provider_event_id == event_id)
                .values(outcome=outcome.value, error=error, completed_at=datetime.now(UTC))
            )
            await session.commit()

    async def get(self, event_id: str) -> ProcessedEvent | None:
        async with self.session_factory() as session:
            return await session.get(ProcessedEvent, event_id)

    async def list_failed(
        self,
        limit: int = 100,
        unreconciled_only: bool = True,
        stale_after_seconds: float | None = None,
    ) -> list[ProcessedEvent]:
        """Failed events, oldest first, for the reconciliation job.

        With ``stale_after_seconds``, events admitted longer ago than that and
        still without an outcome count as failed too: the process handling
        them died before ``complete`` and redeliveries are acked as duplicates.
        """
        failed = ProcessedEvent.outcome == EventOutcome.FAILED.value
        if stale_after_seconds is not None:
            cutoff = datetime.now(UTC) - timedelta(seconds=stale_after_seconds)
            failed = or_(failed, and_(ProcessedEvent.outcome.is_(None), ProcessedEvent.received_at < cutoff))

        stmt = select(ProcessedEvent).where(failed)
        if unreconciled_only:
            stmt = stmt.where(ProcessedEvent.reconciled_at.is_(None))
        stmt = stmt.order_by(ProcessedEvent.received_at).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def mark_reconciled(self, event_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ProcessedEvent)
                .where(ProcessedEvent.provider_event_id == event_id)
                .values(reconciled_at=datetime.now(UTC))
            )
            await session.commit()
