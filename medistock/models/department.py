"""Department reference model (managed by the organization service, read-only here)."""
import uuid
from datetime import datetime

from sqlalchemy import String, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from medistock.database import Base
from medistock.db_types import UUIDType, UTCDateTime, utcnow


class Department(Base):
    """Department of an organization that owns stock and exchanges transfers."""

    __tablename__ = "departments"
    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_department_slug"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Department {self.slug}>"
