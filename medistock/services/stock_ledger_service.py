"""Stock ledger and batch store operations.

Counters are never written directly here; every quantity change goes through
a delta plan applied by the reconciliation service.
"""
from typing import Optional, List, Tuple, Dict, Any
from datetime import date
from decimal import Decimal
import logging
import uuid

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medistock.core.exceptions import ConcurrencyConflict, DuplicateResource, NotFound, ValidationError
from medistock.core.permissions import Actor, PermissionChecker
from medistock.db_types import utcnow
from medistock.models.department import Department
from medistock.models.product import Product
from medistock.models.stock import Stock, StockBatch, BatchStatus, COUNTER_FIELDS
from medistock.services.audit_service import AuditService
from medistock.services.batch_allocation import BatchCandidate
from medistock.services.reconciliation_service import (
    ReconciliationService,
    plan_receipt,
    plan_write_off,
)
from medistock.services.unit_of_work import run_in_transaction


logger = logging.getLogger(__name__)


class StockLedgerService:
    """Service for department stock ledgers and their batches."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.reconciliation = ReconciliationService(db)
        self.audit = AuditService(db)

    # ==================== LOOKUPS ====================

    async def get_department(self, organization_id: uuid.UUID, department_id: uuid.UUID) -> Department:
        result = await self.db.execute(
            select(Department).where(
                and_(
                    Department.id == department_id,
                    Department.organization_id == organization_id,
                )
            )
        )
        department = result.scalar_one_or_none()
        if not department:
            raise NotFound("Department", department_id)
        return department

    async def get_stock(self, organization_id: uuid.UUID, stock_id: uuid.UUID) -> Stock:
        result = await self.db.execute(
            select(Stock).where(
                and_(Stock.id == stock_id, Stock.organization_id == organization_id)
            )
        )
        stock = result.scalar_one_or_none()
        if not stock:
            raise NotFound("Stock", stock_id)
        return stock

    async def get_stock_for(self, department_id: uuid.UUID, product_id: uuid.UUID) -> Optional[Stock]:
        """Ledger of a product in a department, if one exists."""
        result = await self.db.execute(
            select(Stock).where(
                and_(Stock.department_id == department_id, Stock.product_id == product_id)
            )
        )
        return result.scalar_one_or_none()

    async def get_batch(self, stock_id: uuid.UUID, batch_id: uuid.UUID) -> StockBatch:
        result = await self.db.execute(
            select(StockBatch).where(
                and_(StockBatch.id == batch_id, StockBatch.stock_id == stock_id)
            )
        )
        batch = result.scalar_one_or_none()
        if not batch:
            raise NotFound("StockBatch", batch_id)
        return batch

    async def get_batches_by_id(self, stock_id: uuid.UUID, batch_ids: List[uuid.UUID]) -> Dict[uuid.UUID, StockBatch]:
        """Batches of one ledger keyed by id; ids from other ledgers are left out."""
        if not batch_ids:
            return {}
        result = await self.db.execute(
            select(StockBatch).where(
                and_(StockBatch.stock_id == stock_id, StockBatch.id.in_(batch_ids))
            )
        )
        return {b.id: b for b in result.scalars().all()}

    async def _flush_new(self, entity: str, **context: Any) -> None:
        """
        Flush a freshly added row guarded by a unique key.

        Losing the insert race to another transaction is reported as a
        conflict so the unit of work retries and finds the committed row.
        """
        try:
            await self.db.flush()
        except IntegrityError as exc:
            logger.warning(f"{entity} insert lost a race: {context}")
            raise ConcurrencyConflict(
                f"{entity} was created concurrently, retry with fresh data", **context
            ) from exc

    # ==================== READ MODELS ====================

    async def list_department_stocks(
        self,
        organization_id: uuid.UUID,
        department_id: uuid.UUID,
        low_stock_only: bool = False,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Stock], int]:
        """Get the ledgers of a department."""
        await self.get_department(organization_id, department_id)

        query = select(Stock).where(Stock.department_id == department_id)
        if low_stock_only:
            query = query.where(
                and_(
                    Stock.min_stock_level.is_not(None),
                    Stock.available_quantity <= Stock.min_stock_level,
                )
            )

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(Stock.created_at).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_batches(
        self,
        organization_id: uuid.UUID,
        stock_id: uuid.UUID,
        include_inactive: bool = False,
    ) -> List[StockBatch]:
        await self.get_stock(organization_id, stock_id)
        query = select(StockBatch).where(StockBatch.stock_id == stock_id)
        if not include_inactive:
            query = query.where(StockBatch.is_active.is_(True))
        query = query.order_by(StockBatch.expiry_date.is_(None), StockBatch.expiry_date, StockBatch.lot_number)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def allocation_candidates(self, stock_id: uuid.UUID) -> List[BatchCandidate]:
        """Snapshots of the ledger's allocatable batches."""
        result = await self.db.execute(
            select(StockBatch).where(
                and_(
                    StockBatch.stock_id == stock_id,
                    StockBatch.is_active.is_(True),
                    StockBatch.status == BatchStatus.AVAILABLE.value,
                    StockBatch.available_quantity > 0,
                )
            )
        )
        return [BatchCandidate.from_batch(b) for b in result.scalars().all()]

    async def verify_ledger(self, organization_id: uuid.UUID, stock_id: uuid.UUID) -> Dict[str, Any]:
        """Compare ledger counters with the sum of its active batches."""
        stock = await self.get_stock(organization_id, stock_id)
        sums = [func.coalesce(func.sum(getattr(StockBatch, c)), 0) for c in COUNTER_FIELDS]
        result = await self.db.execute(
            select(*sums).where(
                and_(StockBatch.stock_id == stock_id, StockBatch.is_active.is_(True))
            )
        )
        row = result.one()

        ledger = {c: getattr(stock, c) for c in COUNTER_FIELDS}
        batch_totals = {c: int(v) for c, v in zip(COUNTER_FIELDS, row)}
        discrepancies = {
            c: ledger[c] - batch_totals[c]
            for c in COUNTER_FIELDS
            if ledger[c] != batch_totals[c]
        }
        if discrepancies:
            logger.warning(f"Ledger {stock_id} differs from its batches: {discrepancies}")

        return {
            "stock_id": stock.id,
            "is_consistent": not discrepancies,
            "ledger": ledger,
            "batch_totals": batch_totals,
            "discrepancies": discrepancies,
        }

    # ==================== LEDGER ENTRY POINTS ====================

    async def find_or_create_stock(
        self,
        organization_id: uuid.UUID,
        department_id: uuid.UUID,
        product_id: uuid.UUID,
    ) -> Stock:
        """Ledger for a receiving department, opened empty when missing."""
        stock = await self.get_stock_for(department_id, product_id)
        if stock:
            return stock

        stock = Stock(
            organization_id=organization_id,
            department_id=department_id,
            product_id=product_id,
        )
        self.db.add(stock)
        await self._flush_new("Stock", department_id=department_id, product_id=product_id)
        logger.info(f"Opened ledger {stock.id} for product {product_id} in department {department_id}")
        return stock

    async def find_or_create_mirror_batch(self, stock: Stock, source: StockBatch) -> StockBatch:
        """
        Batch in ``stock`` carrying the same lot as ``source``.

        A retired batch with that lot is reactivated; its counters are
        already zero.
        """
        result = await self.db.execute(
            select(StockBatch).where(
                and_(
                    StockBatch.stock_id == stock.id,
                    StockBatch.lot_number == source.lot_number,
                )
            )
        )
        batch = result.scalar_one_or_none()

        if batch:
            if not batch.is_active:
                batch.is_active = True
                batch.status = BatchStatus.AVAILABLE.value
                batch.received_at = utcnow()
            return batch

        batch = StockBatch(
            stock_id=stock.id,
            lot_number=source.lot_number,
            expiry_date=source.expiry_date,
            manufacture_date=source.manufacture_date,
            supplier=source.supplier,
            cost_price=source.cost_price,
            selling_price=source.selling_price,
            total_quantity=0,
            available_quantity=0,
            reserved_quantity=0,
            incoming_quantity=0,
            status=BatchStatus.AVAILABLE.value,
        )
        self.db.add(batch)
        await self._flush_new("StockBatch", stock_id=stock.id, lot_number=source.lot_number)
        return batch

    async def create_stock(
        self,
        actor: Actor,
        department_id: uuid.UUID,
        product_id: uuid.UUID,
        location: Optional[str] = None,
        min_stock_level: Optional[int] = None,
        max_stock_level: Optional[int] = None,
        reorder_point: Optional[int] = None,
        default_withdrawal_qty: Optional[int] = None,
    ) -> Stock:
        """Open a zero ledger for a product in a department."""

        async def operation() -> uuid.UUID:
            department = await self.get_department(actor.organization_id, department_id)
            PermissionChecker(actor).require_department_or_admin(department.id, "manage stock")
            if not department.is_active:
                raise ValidationError("Department is not active", department_id=department_id)

            result = await self.db.execute(
                select(Product).where(
                    and_(
                        Product.id == product_id,
                        Product.organization_id == actor.organization_id,
                        Product.is_active.is_(True),
                    )
                )
            )
            if not result.scalar_one_or_none():
                raise NotFound("Product", product_id)

            if await self.get_stock_for(department_id, product_id):
                raise DuplicateResource(
                    "Stock already exists for this product in the department",
                    department_id=department_id,
                    product_id=product_id,
                )

            if (
                min_stock_level is not None
                and max_stock_level is not None
                and min_stock_level > max_stock_level
            ):
                raise ValidationError(
                    "Minimum stock level cannot exceed maximum stock level",
                    min_stock_level=min_stock_level,
                    max_stock_level=max_stock_level,
                )

            stock = Stock(
                organization_id=actor.organization_id,
                department_id=department_id,
                product_id=product_id,
                location=location,
                min_stock_level=min_stock_level,
                max_stock_level=max_stock_level,
                reorder_point=reorder_point,
                default_withdrawal_qty=default_withdrawal_qty,
            )
            self.db.add(stock)
            try:
                await self.db.flush()
            except IntegrityError as exc:
                raise DuplicateResource(
                    "Stock already exists for this product in the department",
                    department_id=department_id,
                    product_id=product_id,
                ) from exc

            await self.audit.log(
                actor,
                action="stocks.create",
                resource_type="STOCK",
                resource_id=stock.id,
                department_id=department_id,
                description=f"Opened stock for product {product_id}",
            )
            return stock.id

        stock_id = await run_in_transaction(self.db, operation, name="create_stock")
        logger.info(f"Stock {stock_id} created by {actor.user_id}")
        return await self.get_stock(actor.organization_id, stock_id)

    async def register_batch(
        self,
        actor: Actor,
        stock_id: uuid.UUID,
        lot_number: str,
        quantity: int,
        expiry_date: Optional[date] = None,
        manufacture_date: Optional[date] = None,
        supplier: Optional[str] = None,
        cost_price: Optional[Decimal] = None,
        selling_price: Optional[Decimal] = None,
        location: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockBatch:
        """Goods receipt of a new lot into a ledger."""
        lot_number = (lot_number or "").strip()
        if not lot_number:
            raise ValidationError("Lot number is required")
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", quantity=quantity)
        if expiry_date and manufacture_date and expiry_date < manufacture_date:
            raise ValidationError(
                "Expiry date cannot precede manufacture date",
                expiry_date=expiry_date,
                manufacture_date=manufacture_date,
            )

        async def operation() -> uuid.UUID:
            stock = await self.get_stock(actor.organization_id, stock_id)
            PermissionChecker(actor).require_department_or_admin(stock.department_id, "receive stock")

            existing = await self.db.execute(
                select(StockBatch.id).where(
                    and_(StockBatch.stock_id == stock.id, StockBatch.lot_number == lot_number)
                )
            )
            if existing.first():
                raise DuplicateResource(
                    f"Lot '{lot_number}' already exists in this stock",
                    stock_id=stock.id,
                    lot_number=lot_number,
                )

            batch = StockBatch(
                stock_id=stock.id,
                lot_number=lot_number,
                expiry_date=expiry_date,
                manufacture_date=manufacture_date,
                supplier=supplier,
                cost_price=cost_price,
                selling_price=selling_price,
                location=location,
                notes=notes,
                total_quantity=0,
                available_quantity=0,
                reserved_quantity=0,
                incoming_quantity=0,
                status=BatchStatus.AVAILABLE.value,
            )
            self.db.add(batch)
            await self._flush_new("StockBatch", stock_id=stock.id, lot_number=lot_number)

            await self.reconciliation.apply(plan_receipt(stock.id, [(batch.id, quantity)]))

            await self.audit.log(
                actor,
                action="stocks.register_batch",
                resource_type="BATCH",
                resource_id=batch.id,
                department_id=stock.department_id,
                description=f"Received lot {lot_number} ({quantity})",
                payload={"stock_id": str(stock.id), "quantity": quantity},
            )
            return batch.id

        batch_id = await run_in_transaction(self.db, operation, name="register_batch")
        logger.info(f"Lot {lot_number} registered in stock {stock_id} with {quantity} units")
        return await self.get_batch(stock_id, batch_id)

    async def deactivate_batch(self, actor: Actor, stock_id: uuid.UUID, batch_id: uuid.UUID) -> StockBatch:
        """
        Retire a batch, writing off whatever is still available.

        Refused while units of the batch are reserved for a transfer or
        expected to arrive.
        """

        async def operation() -> uuid.UUID:
            stock = await self.get_stock(actor.organization_id, stock_id)
            PermissionChecker(actor).require_department_or_admin(stock.department_id, "retire batches")
            batch = await self.get_batch(stock.id, batch_id)

            if not batch.is_active:
                raise ValidationError("Batch is already inactive", batch_id=batch_id)
            if batch.reserved_quantity > 0 or batch.incoming_quantity > 0:
                raise ValidationError(
                    "Cannot deactivate a batch with reserved or incoming quantity",
                    batch_id=batch_id,
                    reserved_quantity=batch.reserved_quantity,
                    incoming_quantity=batch.incoming_quantity,
                )

            written_off = batch.available_quantity
            if written_off:
                await self.reconciliation.apply(plan_write_off(stock.id, batch.id, written_off))
            batch.is_active = False

            await self.audit.log(
                actor,
                action="stocks.deactivate_batch",
                resource_type="BATCH",
                resource_id=batch.id,
                department_id=stock.department_id,
                description=f"Retired lot {batch.lot_number}",
                payload={"written_off": written_off},
                severity="WARNING" if written_off else "INFO",
            )
            await self.db.flush()
            return batch.id

        await run_in_transaction(self.db, operation, name="deactivate_batch")
        logger.info(f"Batch {batch_id} of stock {stock_id} deactivated by {actor.user_id}")
        return await self.get_batch(stock_id, batch_id)
