"""Inter-department Transfer Service.

Each public operation validates the actor and the item transition, plans the
stock movement, applies it through the reconciliation service, recomputes the
transfer rollup and records history and audit facts, all in one transaction.
"""
from typing import Optional, List, Tuple, Sequence
from datetime import date
import logging
import uuid

from sqlalchemy import select, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from medistock.config import settings
from medistock.core.exceptions import (
    DuplicateResource,
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from medistock.core.permissions import Actor, PermissionChecker
from medistock.db_types import utcnow
from medistock.models.department import Department
from medistock.models.product import Product
from medistock.models.stock import BatchStatus
from medistock.models.transfer import (
    Transfer, TransferItem, TransferItemBatch,
    TransferStatus, TransferItemStatus, TransferPriority,
)
from medistock.models.transfer_history import TransferHistory
from medistock.services.audit_service import AuditService
from medistock.services.batch_allocation import (
    AllocationResult,
    ShortfallPolicy,
    allocate_fefo,
)
from medistock.services.history_service import HistoryService
from medistock.services.reconciliation_service import (
    ReconciliationService,
    plan_dispatch,
    plan_receipt,
    plan_reservation,
)
from medistock.services.stock_ledger_service import StockLedgerService
from medistock.services.transfer_state_machine import apply_rollup, validate_transition, is_live
from medistock.services.unit_of_work import run_in_transaction


logger = logging.getLogger(__name__)

Allocation = Tuple[uuid.UUID, int]


def _clean_reason(reason: Optional[str]) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("A cancellation reason is required")
    return cleaned


class TransferService:
    """Service for inter-department transfer operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)
        self.reconciliation = ReconciliationService(db)
        self.history = HistoryService(db)
        self.audit = AuditService(db)

    # ==================== QUERIES ====================

    async def get_transfers(
        self,
        organization_id: uuid.UUID,
        department_id: Optional[uuid.UUID] = None,
        direction: Optional[str] = None,
        status: Optional[TransferStatus] = None,
        priority: Optional[TransferPriority] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transfer], int]:
        """
        Get paginated list of transfers.

        ``direction`` narrows a department filter to transfers it requests
        ("incoming") or supplies ("outgoing"); without it both are listed.
        """
        query = select(Transfer)

        conditions = [Transfer.organization_id == organization_id]
        if department_id:
            if direction == "incoming":
                conditions.append(Transfer.requesting_department_id == department_id)
            elif direction == "outgoing":
                conditions.append(Transfer.supplying_department_id == department_id)
            else:
                conditions.append(or_(
                    Transfer.requesting_department_id == department_id,
                    Transfer.supplying_department_id == department_id,
                ))
        if status:
            conditions.append(Transfer.status == status)
        if priority:
            conditions.append(Transfer.priority == priority)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(
                Transfer.code.ilike(pattern),
                Transfer.title.ilike(pattern),
            ))

        query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(Transfer.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)

        return list(result.scalars().all()), total

    async def _load_transfer(
        self,
        organization_id: uuid.UUID,
        transfer_id: uuid.UUID,
        refresh: bool = False,
    ) -> Transfer:
        query = (
            select(Transfer)
            .options(selectinload(Transfer.items).selectinload(TransferItem.batches))
            .where(and_(Transfer.id == transfer_id, Transfer.organization_id == organization_id))
        )
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        transfer = result.scalar_one_or_none()
        if not transfer:
            raise NotFound("Transfer", transfer_id)
        return transfer

    @staticmethod
    def _get_item(transfer: Transfer, item_id: uuid.UUID) -> TransferItem:
        for item in transfer.items:
            if item.id == item_id:
                return item
        raise NotFound("TransferItem", item_id, transfer_id=transfer.id)

    async def get_transfer(self, actor: Actor, transfer_id: uuid.UUID) -> Transfer:
        """Transfer with items and reserved batches."""
        return await self._load_transfer(actor.organization_id, transfer_id, refresh=True)

    async def get_history(
        self,
        actor: Actor,
        transfer_id: uuid.UUID,
        item_id: Optional[uuid.UUID] = None,
    ) -> List[TransferHistory]:
        """Transition records, newest first."""
        transfer = await self._load_transfer(actor.organization_id, transfer_id)
        if item_id:
            self._get_item(transfer, item_id)
        return await self.history.list_for_transfer(transfer.id, item_id=item_id)

    # ==================== CREATE ====================

    async def create_transfer(
        self,
        actor: Actor,
        code: str,
        requesting_department_id: uuid.UUID,
        supplying_department_id: uuid.UUID,
        items: Sequence[dict],
        title: Optional[str] = None,
        priority: TransferPriority = TransferPriority.NORMAL,
        request_reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Transfer:
        """Create a new transfer request with PENDING items."""
        code = (code or "").strip()
        if not code:
            raise ValidationError("Transfer code is required")
        if requesting_department_id == supplying_department_id:
            raise ValidationError(
                "Requesting and supplying departments cannot be the same",
                department_id=requesting_department_id,
            )
        if not items:
            raise ValidationError("A transfer needs at least one item")

        product_ids = [item["product_id"] for item in items]
        if len(set(product_ids)) != len(product_ids):
            raise ValidationError("Each product can appear only once in a transfer")
        for item in items:
            if item["requested_quantity"] <= 0:
                raise ValidationError(
                    "Requested quantity must be positive",
                    product_id=item["product_id"],
                    requested_quantity=item["requested_quantity"],
                )

        PermissionChecker(actor).require_department_or_admin(requesting_department_id, "request transfers")

        async def operation() -> uuid.UUID:
            result = await self.db.execute(
                select(Department).where(
                    and_(
                        Department.organization_id == actor.organization_id,
                        Department.id.in_([requesting_department_id, supplying_department_id]),
                        Department.is_active.is_(True),
                    )
                )
            )
            found = {d.id for d in result.scalars().all()}
            for department_id in (requesting_department_id, supplying_department_id):
                if department_id not in found:
                    raise NotFound("Department", department_id)

            result = await self.db.execute(
                select(Product.id).where(
                    and_(
                        Product.organization_id == actor.organization_id,
                        Product.id.in_(product_ids),
                        Product.is_active.is_(True),
                    )
                )
            )
            found = set(result.scalars().all())
            for product_id in product_ids:
                if product_id not in found:
                    raise NotFound("Product", product_id)

            existing = await self.db.execute(
                select(Transfer.id).where(
                    and_(Transfer.organization_id == actor.organization_id, Transfer.code == code)
                )
            )
            if existing.first():
                raise DuplicateResource(f"Transfer code '{code}' already exists", code=code)

            transfer = Transfer(
                organization_id=actor.organization_id,
                code=code,
                title=title,
                requesting_department_id=requesting_department_id,
                supplying_department_id=supplying_department_id,
                status=TransferStatus.PENDING.value,
                priority=TransferPriority(priority).value,
                request_reason=request_reason,
                notes=notes,
                requested_by=actor.user_id,
                requested_by_snapshot=actor.snapshot(),
                items=[
                    TransferItem(
                        product_id=item["product_id"],
                        requested_quantity=item["requested_quantity"],
                        notes=item.get("notes"),
                        status=TransferItemStatus.PENDING.value,
                    )
                    for item in items
                ],
            )
            self.db.add(transfer)
            try:
                await self.db.flush()
            except IntegrityError as exc:
                raise DuplicateResource(f"Transfer code '{code}' already exists", code=code) from exc

            await self.history.record(
                transfer.id,
                action="CREATED",
                actor=actor,
                to_status=TransferStatus.PENDING.value,
                notes=request_reason,
                payload={"items": len(items), "total_requested": sum(i["requested_quantity"] for i in items)},
            )
            await self.audit.log(
                actor,
                action="transfers.create",
                resource_type="TRANSFER",
                resource_id=transfer.id,
                department_id=requesting_department_id,
                description=f"Requested transfer {code} with {len(items)} item(s)",
                payload={"code": code, "items": len(items)},
            )
            return transfer.id

        transfer_id = await run_in_transaction(self.db, operation, name="create_transfer")
        logger.info(f"Transfer {code} ({transfer_id}) created by {actor.user_id}")
        return await self.get_transfer(actor, transfer_id)

    # ==================== APPROVE ====================

    async def _approve(self, actor: Actor, transfer: Transfer, item: TransferItem, quantity: int, notes: Optional[str]):
        from_status = item.status
        action = validate_transition(
            from_status, TransferItemStatus.APPROVED.value,
            item_id=item.id, transfer_id=transfer.id,
        )
        if quantity <= 0 or quantity > item.requested_quantity:
            raise ValidationError(
                "Approved quantity must be positive and cannot exceed the requested quantity",
                item_id=item.id,
                requested_quantity=item.requested_quantity,
                approved_quantity=quantity,
            )

        item.status = TransferItemStatus.APPROVED.value
        item.approved_quantity = quantity
        item.approved_at = utcnow()

        await self.history.record(
            transfer.id,
            action=action,
            actor=actor,
            item_id=item.id,
            from_status=from_status,
            to_status=item.status,
            notes=notes,
            payload={"requested_quantity": item.requested_quantity, "approved_quantity": quantity},
        )

    async def approve_item(
        self,
        actor: Actor,
        transfer_id: uuid.UUID,
        item_id: uuid.UUID,
        approved_quantity: int,
        notes: Optional[str] = None,
    ) -> Transfer:
        """Supplying department accepts an item for up to the requested quantity."""

        async def operation():
            transfer = await self._load_transfer(actor.organization_id, transfer_id)
            item = self._get_item(transfer, item_id)
            PermissionChecker(actor).require_department(
                transfer.supplying_department_id, "supplying", "approve items"
            )

            await self._approve(actor, transfer, item, approved_quantity, notes)
            apply_rollup(transfer)

            await self.audit.log(
                actor,
                action="transfers.approve_item",
                resource_type="TRANSFER_ITEM",
                resource_id=item.id,
                department_id=transfer.supplying_department_id,
                description=f"Approved {approved_quantity} of {item.requested_quantity} on transfer {transfer.code}",
                payload={"transfer_id": str(transfer.id), "approved_quantity": approved_quantity},
            )

        await run_in_transaction(self.db, operation, name="approve_item")
        logger.info(f"Item {item_id} of transfer {transfer_id} approved for {approved_quantity}")
        return await self.get_transfer(actor, transfer_id)

    async def approve_all(self, actor: Actor, transfer_id: uuid.UUID, notes: Optional[str] = None) -> Transfer:
        """Approve every PENDING item at its requested quantity."""

        async def operation() -> int:
            transfer = await self._load_transfer(actor.organization_id, transfer_id)
            PermissionChecker(actor).require_department(
                transfer.supplying_department_id, "supplying", "approve items"
            )

            pending = [i for i in transfer.items if i.status == TransferItemStatus.PENDING.value]
            if not pending:
                raise InvalidTransition(
                    transfer.status,
                    TransferStatus.APPROVED.value,
                    message="Transfer has no pending items to approve",
                    transfer_id=transfer.id,
                )

            from_status = transfer.status
            for item in pending:
                await self._approve(actor, transfer, item, item.requested_quantity, notes)
            rollup = apply_rollup(transfer)

            await self.history.record(
                transfer.id,
                action="APPROVED_ALL",
                actor=actor,
                from_status=from_status,
                to_status=rollup.status,
                notes=notes,
                payload={"items": len(pending)},
            )
            await self.audit.log(
                actor,
                action="transfers.approve_all",
                resource_type="TRANSFER",
                resource_id=transfer.id,
                department_id=transfer.supplying_department_id,
                description=f"Approved {len(pending)} item(s) on transfer {transfer.code}",
                payload={"items": len(pending)},
            )
            return len(pending)

        count = await run_in_transaction(self.db, operation, name="approve_all")
        logger.info(f"Approved {count} item(s) of transfer {transfer_id}")
        return await self.get_transfer(actor, transfer_id)

    # ==================== ALLOCATION / PREPARE ====================

    @staticmethod
    def _allocation_cutoff() -> Optional[date]:
        return date.today() if settings.ALLOCATION_SKIP_EXPIRED else None

    async def suggest_allocation(
        self,
        actor: Actor,
        transfer_id: uuid.UUID,
        item_id: uuid.UUID,
    ) -> Tuple[TransferItem, AllocationResult]:
        """Proposed first-expiry-first-out allocation for an APPROVED item; changes nothing."""
        transfer = await self._load_transfer(actor.organization_id, transfer_id)
        item = self._get_item(transfer, item_id)
        PermissionChecker(actor).require_department(
            transfer.supplying_department_id, "supplying", "allocate stock"
        )
        if item.status != TransferItemStatus.APPROVED.value:
            raise InvalidTransition(
                item.status,
                TransferItemStatus.PREPARED.value,
                message=f"Only APPROVED items can be allocated, item is '{item.status}'",
                item_id=item.id,
            )

        stock = await self.ledger.get_stock_for(transfer.supplying_department_id, item.product_id)
        candidates = await self.ledger.allocation_candidates(stock.id) if stock else []
        result = allocate_fefo(
            candidates,
            item.approved_quantity,
            policy=ShortfallPolicy.PARTIAL,
            expiring_before=self._allocation_cutoff(),
        )
        return item, result

    async def _validate_allocations(
        self,
        item: TransferItem,
        stock,
        allocations: List[Allocation],
    ):
        batch_ids = [batch_id for batch_id, _ in allocations]
        if len(set(batch_ids)) != len(batch_ids):
            raise ValidationError("Each batch can be allocated only once", item_id=item.id)
        for batch_id, quantity in allocations:
            if quantity <= 0:
                raise ValidationError(
                    "Allocated quantity must be positive",
                    batch_id=batch_id,
                    quantity=quantity,
                )
        total = sum(q for _, q in allocations)
        if total > item.approved_quantity:
            raise ValidationError(
                "Allocated quantity cannot exceed the approved quantity",
                item_id=item.id,
                approved_quantity=item.approved_quantity,
                allocated_quantity=total,
            )

        batches = await self.ledger.get_batches_by_id(stock.id, batch_ids) if stock else {}
        for batch_id, quantity in allocations:
            batch = batches.get(batch_id)
            if batch is None:
                raise NotFound("StockBatch", batch_id, message="Batch not found in the supplying department's stock")
            if not batch.is_active or batch.status != BatchStatus.AVAILABLE.value:
                raise ValidationError(
                    f"Batch {batch.lot_number} is not available for allocation",
                    batch_id=batch_id,
                    status=batch.status,
                    is_active=batch.is_active,
                )
            if batch.available_quantity < quantity:
                raise InsufficientStock(
                    f"Insufficient stock in batch {batch.lot_number}. "
                    f"Available: {batch.available_quantity}, Requested: {quantity}",
                    requested=quantity,
                    available=batch.available_quantity,
                    batch_id=batch_id,
                )
        return batches

    async def prepare_item(
        self,
        actor: Actor,
        transfer_id: uuid.UUID,
        item_id: uuid.UUID,
        allocations: Optional[List[Allocation]] = None,
        notes: Optional[str] = None,
    ) -> Transfer:
        """
        Reserve batches of the supplying department for an APPROVED item.

        Without explicit allocations, batches are picked first-expiry-first-out
        for the approved quantity.
        """

        async def operation() -> int:
            transfer = await self._load_transfer(actor.organization_id, transfer_id)
            item = self._get_item(transfer, item_id)
            PermissionChecker(actor).require_department(
                transfer.supplying_department_id, "supplying", "prepare items"
            )
            from_status = item.status
            action = validate_transition(
                from_status, TransferItemStatus.PREPARED.value,
                item_id=item.id, transfer_id=transfer.id,
            )

            stock = await self.ledger.get_stock_for(transfer.supplying_department_id, item.product_id)
            chosen = list(allocations or [])
            if not chosen:
                candidates = await self.ledger.allocation_candidates(stock.id) if stock else []
                policy = ShortfallPolicy.STRICT if settings.ALLOCATION_STRICT_MODE else ShortfallPolicy.PARTIAL
                proposal = allocate_fefo(
                    candidates,
                    item.approved_quantity,
                    policy=policy,
                    expiring_before=self._allocation_cutoff(),
                )
                chosen = proposal.as_pairs()
                if not chosen:
                    raise InsufficientStock(
                        "No stock available to prepare this item",
                        requested=item.approved_quantity,
                        available=0,
                        item_id=item.id,
                    )

            batches = await self._validate_allocations(item, stock, chosen)

            await self.reconciliation.apply(plan_reservation(stock.id, chosen))

            prepared = sum(q for _, q in chosen)
            for batch_id, quantity in chosen:
                item.batches.append(TransferItemBatch(batch_id=batch_id, quantity=quantity))
            item.status = TransferItemStatus.PREPARED.value
            item.prepared_quantity = prepared
            item.prepared_at = utcnow()
            apply_rollup(transfer)

            lines = [
                {"batch_id": str(batch_id), "lot_number": batches[batch_id].lot_number, "quantity": quantity}
                for batch_id, quantity in chosen
            ]
            await self.history.record(
                transfer.id,
                action=action,
                actor=actor,
                item_id=item.id,
                from_status=from_status,
                to_status=item.status,
                notes=notes,
                payload={
                    "approved_quantity": item.approved_quantity,
                    "prepared_quantity": prepared,
                    "batches": lines,
                },
            )
            await self.audit.log(
                actor,
                action="transfers.prepare_item",
                resource_type="TRANSFER_ITEM",
                resource_id=item.id,
                department_id=transfer.supplying_department_id,
                description=f"Prepared {prepared} from {len(lines)} batch(es) on transfer {transfer.code}",
                payload={"transfer_id": str(transfer.id), "prepared_quantity": prepared, "batches": lines},
            )
            return prepared

        prepared = await run_in_transaction(self.db, operation, name="prepare_item")
        logger.info(f"Item {item_id} of transfer {transfer_id} prepared with {prepared} units")
        return await self.get_transfer(actor, transfer_id)

    # ==================== DELIVER ====================

    async def deliver_item(
        self,
        actor: Actor,
        transfer_id: uuid.UUID,
        item_id: uuid.UUID,
        receipts: List[Allocation],
        notes: Optional[str] = None,
    ) -> Transfer:
        """
        Requesting department confirms what arrived from each reserved batch.

        The whole reservation leaves the supplying ledger; only the received
        quantity is added to the requesting ledger.
        """

        async def operation() -> dict:
            transfer = await self._load_transfer(actor.organization_id, transfer_id)
            item = self._get_item(transfer, item_id)
            PermissionChecker(actor).require_department(
                transfer.requesting_department_id, "requesting", "confirm delivery"
            )
            from_status = item.status
            action = validate_transition(
                from_status, TransferItemStatus.DELIVERED.value,
                item_id=item.id, transfer_id=transfer.id,
            )

            lines = {line.batch_id: line for line in item.batches}
            received = {}
            for batch_id, quantity in receipts:
                if batch_id in received:
                    raise ValidationError("Duplicate receipt for batch", batch_id=batch_id)
                if batch_id not in lines:
                    raise ValidationError("Batch was not prepared for this item", batch_id=batch_id)
                received[batch_id] = quantity
            missing = [str(b) for b in lines if b not in received]
            if missing:
                raise ValidationError("Every prepared batch needs a receipt", missing_batches=missing)

            for batch_id, quantity in received.items():
                line = lines[batch_id]
                if quantity < 0:
                    raise ValidationError(
                        "Received quantity cannot be negative",
                        batch_id=batch_id,
                        received_quantity=quantity,
                    )
                if quantity > line.quantity:
                    raise InsufficientStock(
                        f"Received quantity {quantity} exceeds the {line.quantity} prepared from this batch",
                        requested=quantity,
                        available=line.quantity,
                        batch_id=batch_id,
                    )

            source_stock = await self.ledger.get_stock_for(transfer.supplying_department_id, item.product_id)
            if source_stock is None:
                raise NotFound("Stock", message="Supplying department has no stock for this product")
            source_batches = await self.ledger.get_batches_by_id(source_stock.id, list(lines))

            plan = plan_dispatch(source_stock.id, [(b, line.quantity) for b, line in lines.items()])

            total_received = sum(received.values())
            if total_received > 0:
                target_stock = await self.ledger.find_or_create_stock(
                    transfer.organization_id, transfer.requesting_department_id, item.product_id
                )
                arrivals = []
                for batch_id, quantity in received.items():
                    if quantity == 0:
                        continue
                    mirror = await self.ledger.find_or_create_mirror_batch(target_stock, source_batches[batch_id])
                    arrivals.append((mirror.id, quantity))
                plan = plan + plan_receipt(target_stock.id, arrivals)

            await self.reconciliation.apply(plan)

            for batch_id, line in lines.items():
                line.received_quantity = received[batch_id]
            item.received_quantity = total_received
            item.status = TransferItemStatus.DELIVERED.value
            item.delivered_at = utcnow()
            apply_rollup(transfer)

            summary = {
                "prepared_quantity": item.prepared_quantity,
                "received_quantity": total_received,
                "shortfall": item.prepared_quantity - total_received,
                "batches": [
                    {"batch_id": str(b), "quantity": line.quantity, "received_quantity": received[b]}
                    for b, line in lines.items()
                ],
            }
            await self.history.record(
                transfer.id,
                action=action,
                actor=actor,
                item_id=item.id,
                from_status=from_status,
                to_status=item.status,
                notes=notes,
                payload=summary,
            )
            await self.audit.log(
                actor,
                action="transfers.deliver_item",
                resource_type="TRANSFER_ITEM",
                resource_id=item.id,
                department_id=transfer.requesting_department_id,
                description=(
                    f"Received {total_received} of {item.prepared_quantity} on transfer {transfer.code}"
                ),
                payload={"transfer_id": str(transfer.id), **summary},
                severity="WARNING" if summary["shortfall"] else "INFO",
            )
            return summary

        summary = await run_in_transaction(self.db, operation, name="deliver_item")
        if summary["shortfall"]:
            logger.warning(
                f"Item {item_id} of transfer {transfer_id} delivered short by {summary['shortfall']}"
            )
        else:
            logger.info(f"Item {item_id} of transfer {transfer_id} delivered in full")
        return await self.get_transfer(actor, transfer_id)

    # ==================== CANCEL ====================

    async def _cancel(self, actor: Actor, transfer: Transfer, item: TransferItem, reason: str):
        from_status = item.status
        action = validate_transition(
            from_status, TransferItemStatus.CANCELLED.value,
            item_id=item.id, transfer_id=transfer.id,
        )
        item.status = TransferItemStatus.CANCELLED.value
        item.cancel_reason = reason
        item.cancelled_at = utcnow()

        await self.history.record(
            transfer.id,
            action=action,
            actor=actor,
            item_id=item.id,
            from_status=from_status,
            to_status=item.status,
            notes=reason,
            payload={"requested_quantity": item.requested_quantity},
        )

    async def cancel_item(
        self,
        actor: Actor,
        transfer_id: uuid.UUID,
        item_id: uuid.UUID,
        reason: str,
    ) -> Transfer:
        """Withdraw a PENDING item. No stock is involved."""
        PermissionChecker(actor).require_admin("cancel transfer items")
        reason = _clean_reason(reason)

        async def operation():
            transfer = await self._load_transfer(actor.organization_id, transfer_id)
            item = self._get_item(transfer, item_id)
            await self._cancel(actor, transfer, item, reason)
            rollup = apply_rollup(transfer)
            if rollup.status == TransferStatus.CANCELLED.value and not transfer.cancel_reason:
                transfer.cancel_reason = reason

            await self.audit.log(
                actor,
                action="transfers.cancel_item",
                resource_type="TRANSFER_ITEM",
                resource_id=item.id,
                description=f"Cancelled item on transfer {transfer.code}: {reason}",
                payload={"transfer_id": str(transfer.id), "reason": reason},
            )

        await run_in_transaction(self.db, operation, name="cancel_item")
        logger.info(f"Item {item_id} of transfer {transfer_id} cancelled by {actor.user_id}")
        return await self.get_transfer(actor, transfer_id)

    async def cancel_transfer(self, actor: Actor, transfer_id: uuid.UUID, reason: str) -> Transfer:
        """Cancel a transfer whose live items are all still PENDING."""
        PermissionChecker(actor).require_admin("cancel transfers")
        reason = _clean_reason(reason)

        async def operation() -> int:
            transfer = await self._load_transfer(actor.organization_id, transfer_id)
            live = [i for i in transfer.items if is_live(i.status)]
            if not live:
                raise InvalidTransition(
                    transfer.status,
                    TransferStatus.CANCELLED.value,
                    message="Transfer is already cancelled",
                    transfer_id=transfer.id,
                )
            progressed = [str(i.id) for i in live if i.status != TransferItemStatus.PENDING.value]
            if progressed:
                raise InvalidTransition(
                    transfer.status,
                    TransferStatus.CANCELLED.value,
                    message="Only transfers whose items are all PENDING can be cancelled",
                    transfer_id=transfer.id,
                    items=progressed,
                )

            from_status = transfer.status
            for item in live:
                await self._cancel(actor, transfer, item, reason)
            transfer.cancel_reason = reason
            rollup = apply_rollup(transfer)

            await self.history.record(
                transfer.id,
                action="CANCELLED",
                actor=actor,
                from_status=from_status,
                to_status=rollup.status,
                notes=reason,
                payload={"items": len(live)},
            )
            await self.audit.log(
                actor,
                action="transfers.cancel",
                resource_type="TRANSFER",
                resource_id=transfer.id,
                description=f"Cancelled transfer {transfer.code}: {reason}",
                payload={"items": len(live), "reason": reason},
            )
            return len(live)

        count = await run_in_transaction(self.db, operation, name="cancel_transfer")
        logger.info(f"Transfer {transfer_id} cancelled with {count} item(s)")
        return await self.get_transfer(actor, transfer_id)
