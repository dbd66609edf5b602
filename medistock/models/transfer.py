"""Inter-department stock transfer models."""
from enum import Enum
from datetime import datetime
from typing import List, Optional
import uuid

from sqlalchemy import String, Text, ForeignKey, Integer
from sqlalchemy import UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medistock.database import Base
from medistock.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class TransferStatus(str, Enum):
    """Rollup status of a transfer, derived from its items."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PREPARED = "PREPARED"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TransferItemStatus(str, Enum):
    """Status of a single transfer line."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PREPARED = "PREPARED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class TransferPriority(str, Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class Transfer(Base):
    """
    Stock transfer between two departments of one organization.

    Status and the rollup timestamps are owned by the rollup function and
    are recomputed after every item transition.
    """

    __tablename__ = "transfers"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_transfer_org_code"),
        CheckConstraint(
            "requesting_department_id <> supplying_department_id",
            name="ck_transfer_distinct_departments",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(200))

    # Departments
    requesting_department_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("departments.id"), nullable=False, index=True
    )
    supplying_department_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("departments.id"), nullable=False, index=True
    )

    status: Mapped[str] = mapped_column(
        String(50), default=TransferStatus.PENDING.value, nullable=False, index=True,
        comment="PENDING, APPROVED, PREPARED, PARTIAL, COMPLETED, CANCELLED"
    )
    priority: Mapped[str] = mapped_column(
        String(50), default=TransferPriority.NORMAL.value, nullable=False,
        comment="NORMAL, URGENT, CRITICAL"
    )

    request_reason: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Requester
    requested_by: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    requested_by_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType)

    # Rollup timestamps
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    prepared_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    items: Mapped[List["TransferItem"]] = relationship(
        back_populates="transfer", cascade="all, delete-orphan", order_by="TransferItem.created_at"
    )
    requesting_department = relationship("Department", foreign_keys=[requesting_department_id])
    supplying_department = relationship("Department", foreign_keys=[supplying_department_id])

    def touch(self) -> None:
        """Mark the header dirty so its version is bumped on flush."""
        self.updated_at = utcnow()

    def __repr__(self) -> str:
        return f"<Transfer {self.code}>"


class TransferItem(Base):
    """One product line of a transfer."""

    __tablename__ = "transfer_items"
    __table_args__ = (
        UniqueConstraint("transfer_id", "product_id", name="uq_transfer_item_product"),
        CheckConstraint("requested_quantity > 0", name="ck_transfer_item_requested_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("products.id"), nullable=False, index=True
    )

    status: Mapped[str] = mapped_column(
        String(50), default=TransferItemStatus.PENDING.value, nullable=False,
        comment="PENDING, APPROVED, PREPARED, DELIVERED, CANCELLED"
    )

    # Quantities
    requested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    prepared_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    received_quantity: Mapped[Optional[int]] = mapped_column(Integer)

    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Transition timestamps
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    prepared_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    transfer: Mapped["Transfer"] = relationship(back_populates="items")
    product = relationship("Product")
    batches: Mapped[List["TransferItemBatch"]] = relationship(
        back_populates="item", cascade="all, delete-orphan"
    )

    @property
    def shortfall(self) -> Optional[int]:
        if self.prepared_quantity is None or self.received_quantity is None:
            return None
        return self.prepared_quantity - self.received_quantity

    def __repr__(self) -> str:
        return f"<TransferItem {self.id} {self.status}>"


class TransferItemBatch(Base):
    """Source batch reserved for a transfer item, with what arrived from it."""

    __tablename__ = "transfer_item_batches"
    __table_args__ = (
        UniqueConstraint("item_id", "batch_id", name="uq_transfer_item_batch"),
        CheckConstraint("quantity > 0", name="ck_transfer_item_batch_quantity_positive"),
        CheckConstraint(
            "received_quantity IS NULL OR (received_quantity >= 0 AND received_quantity <= quantity)",
            name="ck_transfer_item_batch_received_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("transfer_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("stock_batches.id"), nullable=False, index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    received_quantity: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Relationships
    item: Mapped["TransferItem"] = relationship(back_populates="batches")
    batch = relationship("StockBatch")

    def __repr__(self) -> str:
        return f"<TransferItemBatch batch={self.batch_id} qty={self.quantity}>"
