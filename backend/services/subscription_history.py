"""
Subscription history logger.

Appends audit entries after the primary write has been committed. A failed
history write is logged and swallowed; it never undoes or fails the
operation that triggered it.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import HistoryEventType
from core.plans import CURRENCY
from infrastructure.database.models.subscription import SubscriptionHistory

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100


class SubscriptionHistoryLogger:
    """Writes and reads the append-only subscription history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        user_id: str,
        event_type: HistoryEventType | str,
        description: str,
        from_plan: Optional[str] = None,
        to_plan: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: str = CURRENCY,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[SubscriptionHistory]:
        """
        Append one history entry and commit it.

        Entries with an idempotency key are written at most once; a repeat
        returns None.
        """
        event_value = event_type.value if isinstance(event_type, HistoryEventType) else event_type

        try:
            if idempotency_key and await self._exists(idempotency_key):
                logger.info("History entry %s already recorded, skipping", idempotency_key)
                return None

            entry = SubscriptionHistory(
                user_id=user_id,
                event_type=event_value,
                description=description,
                from_plan=from_plan,
                to_plan=to_plan,
                amount=amount,
                currency=currency,
                event_metadata=metadata,
                idempotency_key=idempotency_key,
            )
            self.db.add(entry)
            await self.db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await self.db.rollback()
            logger.info("History entry %s recorded concurrently, skipping", idempotency_key)
            return None
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to record %s history for user %s: %s",
                event_value, user_id, type(e).__name__,
                extra={"user_id": user_id, "action": event_value},
            )
            return None

        return entry

    async def _exists(self, idempotency_key: str) -> bool:
        result = await self.db.execute(
            select(SubscriptionHistory.id).where(SubscriptionHistory.idempotency_key == idempotency_key)
        )
        return result.first() is not None

    async def get_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[SubscriptionHistory]:
        """Most recent entries first."""
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        result = await self.db.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.user_id == user_id)
            .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
