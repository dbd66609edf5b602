from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medistock.core.permissions import Actor
from medistock.models.audit_log import AuditLog


class AuditService:
    """
    Audit service for recording inventory operations.

    Entries are written in the caller's transaction, so a rolled back
    operation leaves no audit trace.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        actor: Actor,
        action: str,
        resource_type: str,
        resource_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        department_id: Optional[uuid.UUID] = None,
        category: str = "INVENTORY",
        severity: str = "INFO",
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            actor: Who performed the action
            action: Dotted action name (transfers.create, stocks.register_batch, ...)
            resource_type: Type of resource (TRANSFER, TRANSFER_ITEM, STOCK, BATCH)
            resource_id: ID of the affected resource
            description: Human-readable description
            payload: Quantities and ids involved
            department_id: Department the action was performed for

        Returns:
            The created AuditLog entry
        """
        audit_log = AuditLog(
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            user_snapshot=actor.snapshot(),
            department_id=department_id or actor.department_id,
            action=action,
            category=category,
            severity=severity,
            description=description,
            resource_type=resource_type,
            resource_id=resource_id,
            payload=payload,
        )
        self.db.add(audit_log)
        await self.db.flush()
        return audit_log

    async def get_logs(
        self,
        organization_id: uuid.UUID,
        resource_type: Optional[str] = None,
        resource_id: Optional[uuid.UUID] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Get audit logs newest first."""
        query = select(AuditLog).where(AuditLog.organization_id == organization_id)

        if resource_type:
            query = query.where(AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)
        if action:
            query = query.where(AuditLog.action == action)

        query = query.order_by(AuditLog.created_at.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())
