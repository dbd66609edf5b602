import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String, Text, ForeignKey, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from medistock.core.exceptions import ImmutableRecordError
from medistock.database import Base
from medistock.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class TransferHistory(Base):
    """
    Append-only record of a transfer or item transition.

    Item-level rows carry ``item_id``; transfer-level rows (APPROVED_ALL,
    CANCELLED for the whole transfer) leave it empty.
    """

    __tablename__ = "transfer_history"
    __table_args__ = (
        UniqueConstraint("transfer_id", "sequence", name="uq_transfer_history_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType, ForeignKey("transfer_items.id", ondelete="CASCADE"), index=True
    )
    # Position within the transfer, 1-based
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(50))
    to_status: Mapped[Optional[str]] = mapped_column(String(50))

    # Who made the change
    changed_by: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    changed_by_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType)

    notes: Mapped[Optional[str]] = mapped_column(Text)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<TransferHistory {self.action} {self.from_status}->{self.to_status}>"


@event.listens_for(TransferHistory, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise ImmutableRecordError(
        "Transfer history records cannot be modified",
        record_id=target.id,
    )


@event.listens_for(TransferHistory, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise ImmutableRecordError(
        "Transfer history records cannot be deleted",
        record_id=target.id,
    )
