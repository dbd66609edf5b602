"""Append-only transfer transition history."""
from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from medistock.core.permissions import Actor
from medistock.models.transfer_history import TransferHistory


class HistoryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _next_sequence(self, transfer_id: uuid.UUID) -> int:
        """
        Next position in the transfer's history.

        Entries recorded earlier in the same unit of work are still pending,
        so they are counted from the session. Transitions on one transfer
        bump its version, which keeps two transactions from taking the same
        number.
        """
        stored = await self.db.scalar(
            select(func.coalesce(func.max(TransferHistory.sequence), 0)).where(
                TransferHistory.transfer_id == transfer_id
            )
        )
        pending = sum(
            1
            for obj in self.db.new
            if isinstance(obj, TransferHistory) and obj.transfer_id == transfer_id
        )
        return int(stored or 0) + pending + 1

    async def record(
        self,
        transfer_id: uuid.UUID,
        action: str,
        actor: Actor,
        item_id: Optional[uuid.UUID] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        notes: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TransferHistory:
        """Append a record in the caller's transaction."""
        entry = TransferHistory(
            transfer_id=transfer_id,
            item_id=item_id,
            sequence=await self._next_sequence(transfer_id),
            action=action,
            from_status=from_status,
            to_status=to_status,
            changed_by=actor.user_id,
            changed_by_snapshot=actor.snapshot(),
            notes=notes,
            payload=payload,
        )
        self.db.add(entry)
        return entry

    async def list_for_transfer(
        self,
        transfer_id: uuid.UUID,
        item_id: Optional[uuid.UUID] = None,
    ) -> List[TransferHistory]:
        """Records of a transfer, newest first."""
        query = select(TransferHistory).where(TransferHistory.transfer_id == transfer_id)
        if item_id:
            query = query.where(TransferHistory.item_id == item_id)
        query = query.order_by(TransferHistory.sequence.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())
