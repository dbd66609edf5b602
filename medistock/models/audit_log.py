import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medistock.database import Base
from medistock.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class AuditLog(Base):
    """
    Audit log model for tracking inventory operations.
    Records: transfer creation and item transitions, stock and batch changes.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    # Who performed the action
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    user_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    # Action details
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    # Actions: transfers.create, transfers.approve_item, transfers.prepare_item,
    #          transfers.deliver_item, stocks.create, stocks.register_batch, etc.
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="INVENTORY")
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="INFO")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Entity being modified
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action='{self.action}', resource='{self.resource_type}', id='{self.resource_id}')>"
