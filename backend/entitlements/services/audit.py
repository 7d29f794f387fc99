"""Billing audit trail.

Appends one PaymentEventLog row per applied billing effect. Writing the
audit row is best-effort: failures are logged as warnings and NEVER raised,
so a broken audit table can't fail an otherwise-applied webhook.
"""

from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.db.base import get_session_factory
from entitlements.db.models.payment_event import PaymentEventLog

logger = structlog.get_logger(__name__)


class AuditLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def record(
        self,
        user_id: str,
        event_type: str,
        provider_event_id: str | None = None,
        amount: Decimal | None = None,
        currency: str | None = None,
        **details: Any,
    ) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    PaymentEventLog(
                        user_id=user_id,
                        event_type=event_type,
                        provider_event_id=provider_event_id,
                        amount=amount,
                        currency=currency.upper()[:3] if currency else None,
                        details=details,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("payment_event_log_failed", error=str(e), user_id=user_id, event_type=event_type)

    async def has_event(self, provider_event_id: str, event_type: str) -> bool:
        """Whether an effect of ``event_type`` was already recorded for the provider event."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentEventLog.id)
                .where(
                    PaymentEventLog.provider_event_id == provider_event_id,
                    PaymentEventLog.event_type == event_type,
                )
                .limit(1)
            )
            return result.first() is not None

    async def history(self, user_id: str, limit: int = 50) -> list[PaymentEventLog]:
        """Most recent audit entries for a user, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentEventLog)
                .where(PaymentEventLog.user_id == user_id)
                .order_by(PaymentEventLog.created_at.desc(), PaymentEventLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
