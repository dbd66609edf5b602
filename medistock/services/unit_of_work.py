"""
Transaction runner for transfer operations.

Each operation runs as one transaction. Version conflicts and lost insert races roll the
whole unit back and re-run it with fresh data; any other error rolls back and
propagates.
"""
from typing import Awaitable, Callable, Optional, TypeVar
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from medistock.config import settings
from medistock.core.exceptions import ConcurrencyConflict


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_in_transaction(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    retries: Optional[int] = None,
    name: str = "operation",
) -> T:
    """
    Run ``operation`` and commit, retrying on version conflicts.

    The operation must re-read everything it needs on each call: after a
    rollback every object loaded by a previous attempt is expired.

    Args:
        db: Session the operation works in
        operation: Zero-argument coroutine function
        retries: Extra attempts after a conflict (defaults to
            TRANSFER_CONFLICT_MAX_RETRIES)
        name: Used in log messages

    Raises:
        ConcurrencyConflict: conflicts persisted through every attempt
    """
    max_retries = settings.TRANSFER_CONFLICT_MAX_RETRIES if retries is None else retries
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await operation()
            await db.commit()
            return result
        except (ConcurrencyConflict, StaleDataError) as exc:
            await db.rollback()
            if attempt > max_retries:
                logger.warning(f"{name} gave up after {attempt} attempts: {exc}")
                if isinstance(exc, ConcurrencyConflict):
                    raise
                raise ConcurrencyConflict(
                    f"{name} conflicted with a concurrent change",
                    attempts=attempt,
                ) from exc
            logger.warning(f"{name} hit a version conflict, retrying (attempt {attempt}/{max_retries})")
        except Exception:
            await db.rollback()
            raise
