"""Stock ledger and batch models for department inventory."""
from enum import Enum
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional
import uuid

from sqlalchemy import String, Text, Boolean, ForeignKey, Integer, Date, Numeric
from sqlalchemy import UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medistock.database import Base
from medistock.db_types import UUIDType, UTCDateTime, utcnow


class BatchStatus(str, Enum):
    """Stock batch status enum."""
    AVAILABLE = "AVAILABLE"  # Can be allocated to transfers
    RESERVED = "RESERVED"  # Held back by a manual reservation
    QUARANTINE = "QUARANTINE"  # In quality hold
    DAMAGED = "DAMAGED"  # Damaged, needs inspection
    EXPIRED = "EXPIRED"  # Past expiry, must not be issued


COUNTER_FIELDS = (
    "total_quantity",
    "available_quantity",
    "reserved_quantity",
    "incoming_quantity",
)


def _counter_constraints(prefix: str) -> tuple:
    return (
        CheckConstraint(
            "available_quantity + reserved_quantity = total_quantity",
            name=f"ck_{prefix}_additive",
        ),
        CheckConstraint(
            "available_quantity >= 0 AND reserved_quantity >= 0 "
            "AND total_quantity >= 0 AND incoming_quantity >= 0",
            name=f"ck_{prefix}_non_negative",
        ),
    )


class Stock(Base):
    """Quantity ledger per product per department.

    Counters are the sum of the ledger's active batches and are only
    changed through the reconciliation service.
    """

    __tablename__ = "stocks"
    __table_args__ = (
        UniqueConstraint("department_id", "product_id", name="uq_stock_department_product"),
        *_counter_constraints("stock"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    department_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("departments.id"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("products.id"), nullable=False, index=True
    )

    # Stock levels
    total_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    incoming_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Thresholds
    location: Mapped[Optional[str]] = mapped_column(String(100))
    min_stock_level: Mapped[Optional[int]] = mapped_column(Integer)
    max_stock_level: Mapped[Optional[int]] = mapped_column(Integer)
    reorder_point: Mapped[Optional[int]] = mapped_column(Integer)
    default_withdrawal_qty: Mapped[Optional[int]] = mapped_column(Integer)

    # Last activity
    last_movement_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    batches: Mapped[List["StockBatch"]] = relationship(back_populates="stock", order_by="StockBatch.lot_number")
    department = relationship("Department")
    product = relationship("Product")

    @property
    def is_low_stock(self) -> bool:
        """Check if available stock is at or below the minimum level."""
        if self.min_stock_level is None:
            return False
        return self.available_quantity <= self.min_stock_level

    @property
    def needs_reorder(self) -> bool:
        if self.reorder_point is None:
            return False
        return self.available_quantity <= self.reorder_point

    def __repr__(self):
        return f"<Stock dept={self.department_id} product={self.product_id}>"


class StockBatch(Base):
    """Lot-numbered, expiry-dated subdivision of a stock ledger."""

    __tablename__ = "stock_batches"
    __table_args__ = (
        UniqueConstraint("stock_id", "lot_number", name="uq_stock_batch_lot"),
        *_counter_constraints("stock_batch"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    stock_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType, ForeignKey("stocks.id"), nullable=False, index=True
    )

    # Lot tracking
    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    manufacture_date: Mapped[Optional[date]] = mapped_column(Date)
    supplier: Mapped[Optional[str]] = mapped_column(String(200))

    # Price snapshot
    cost_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    selling_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))

    # Stock levels
    total_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    incoming_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    location: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(
        String(50), default=BatchStatus.AVAILABLE.value, nullable=False, index=True,
        comment="AVAILABLE, RESERVED, QUARANTINE, DAMAGED, EXPIRED"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    stock: Mapped["Stock"] = relationship(back_populates="batches")

    def __repr__(self):
        return f"<StockBatch {self.lot_number}>"
