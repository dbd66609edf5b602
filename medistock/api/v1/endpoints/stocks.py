"""Department stock ledger and batch API endpoints."""
import uuid
from math import ceil

from fastapi import APIRouter, status, Query

from medistock.api.deps import DB, CurrentActor
from medistock.schemas.stock import (
    StockCreate,
    StockResponse,
    StockListResponse,
    BatchCreate,
    BatchResponse,
    LedgerConsistency,
)
from medistock.services.stock_ledger_service import StockLedgerService


router = APIRouter(tags=["Stock"])


@router.get("/departments/{department_id}/stocks", response_model=StockListResponse)
async def list_department_stocks(
    department_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    low_stock_only: bool = Query(False),
):
    """Get the stock ledgers of a department."""
    service = StockLedgerService(db)
    stocks, total = await service.list_department_stocks(
        actor.organization_id,
        department_id,
        low_stock_only=low_stock_only,
        skip=(page - 1) * size,
        limit=size,
    )
    return StockListResponse(
        items=[StockResponse.model_validate(s) for s in stocks],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.post(
    "/departments/{department_id}/stocks",
    response_model=StockResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_stock(
    department_id: uuid.UUID,
    data: StockCreate,
    db: DB,
    actor: CurrentActor,
):
    """Open an empty ledger for a product in the department."""
    service = StockLedgerService(db)
    stock = await service.create_stock(
        actor,
        department_id=department_id,
        product_id=data.product_id,
        location=data.location,
        min_stock_level=data.min_stock_level,
        max_stock_level=data.max_stock_level,
        reorder_point=data.reorder_point,
        default_withdrawal_qty=data.default_withdrawal_qty,
    )
    return StockResponse.model_validate(stock)


@router.get("/stocks/{stock_id}/batches", response_model=list[BatchResponse])
async def list_batches(
    stock_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
    include_inactive: bool = Query(False),
):
    """Get the batches of a ledger, earliest expiry first."""
    service = StockLedgerService(db)
    batches = await service.list_batches(actor.organization_id, stock_id, include_inactive=include_inactive)
    return [BatchResponse.model_validate(b) for b in batches]


@router.post(
    "/stocks/{stock_id}/batches",
    response_model=BatchResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_batch(
    stock_id: uuid.UUID,
    data: BatchCreate,
    db: DB,
    actor: CurrentActor,
):
    """Receive a new lot into the ledger."""
    service = StockLedgerService(db)
    batch = await service.register_batch(actor, stock_id, **data.model_dump())
    return BatchResponse.model_validate(batch)


@router.delete("/stocks/{stock_id}/batches/{batch_id}", response_model=BatchResponse)
async def deactivate_batch(
    stock_id: uuid.UUID,
    batch_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
):
    """
    Retire a batch.

    Refused while the batch has reserved or incoming quantity; any remaining
    available quantity is written off the ledger.
    """
    service = StockLedgerService(db)
    batch = await service.deactivate_batch(actor, stock_id, batch_id)
    return BatchResponse.model_validate(batch)


@router.get("/stocks/{stock_id}/consistency", response_model=LedgerConsistency)
async def check_consistency(
    stock_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
):
    """Compare ledger counters with the sum of its active batches."""
    service = StockLedgerService(db)
    return LedgerConsistency(**await service.verify_ledger(actor.organization_id, stock_id))
