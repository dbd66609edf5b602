"""Inter-department transfer API endpoints."""
from typing import Optional, Literal
import uuid
from math import ceil

from fastapi import APIRouter, status, Query

from medistock.api.deps import DB, CurrentActor
from medistock.models.transfer import TransferStatus, TransferPriority
from medistock.schemas.transfer import (
    TransferCreate,
    TransferResponse,
    TransferDetail,
    TransferListResponse,
    ItemApproval,
    ItemPreparation,
    ItemDelivery,
    CancelRequest,
    AllocationLine,
    AllocationPreview,
    TransferHistoryResponse,
)
from medistock.services.transfer_service import TransferService


router = APIRouter(tags=["Transfers"])


@router.get("", response_model=TransferListResponse)
async def list_transfers(
    db: DB,
    actor: CurrentActor,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    department_id: Optional[uuid.UUID] = Query(None),
    direction: Optional[Literal["incoming", "outgoing"]] = Query(None),
    status: Optional[TransferStatus] = Query(None),
    priority: Optional[TransferPriority] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
):
    """
    Get paginated list of transfers of the caller's organization.

    With a department, ``direction=incoming`` lists what it requested and
    ``direction=outgoing`` what it has to supply.
    """
    service = TransferService(db)
    skip = (page - 1) * size

    transfers, total = await service.get_transfers(
        organization_id=actor.organization_id,
        department_id=department_id,
        direction=direction,
        status=status.value if status else None,
        priority=priority.value if priority else None,
        search=search,
        skip=skip,
        limit=size,
    )

    return TransferListResponse(
        items=[TransferResponse.model_validate(t) for t in transfers],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.post("", response_model=TransferDetail, status_code=status.HTTP_201_CREATED)
async def create_transfer(
    data: TransferCreate,
    db: DB,
    actor: CurrentActor,
):
    """Request stock from another department."""
    service = TransferService(db)
    transfer = await service.create_transfer(
        actor,
        code=data.code,
        title=data.title,
        requesting_department_id=data.requesting_department_id,
        supplying_department_id=data.supplying_department_id,
        priority=data.priority,
        request_reason=data.request_reason,
        notes=data.notes,
        items=[item.model_dump() for item in data.items],
    )
    return TransferDetail.model_validate(transfer)


@router.get("/{transfer_id}", response_model=TransferDetail)
async def get_transfer(
    transfer_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
):
    """Get transfer by ID with items and reserved batches."""
    service = TransferService(db)
    transfer = await service.get_transfer(actor, transfer_id)
    return TransferDetail.model_validate(transfer)


@router.post("/{transfer_id}/items/{item_id}/approve", response_model=TransferDetail)
async def approve_item(
    transfer_id: uuid.UUID,
    item_id: uuid.UUID,
    data: ItemApproval,
    db: DB,
    actor: CurrentActor,
):
    """Approve an item. Supplying department only."""
    service = TransferService(db)
    transfer = await service.approve_item(
        actor, transfer_id, item_id,
        approved_quantity=data.approved_quantity,
        notes=data.notes,
    )
    return TransferDetail.model_validate(transfer)


@router.post("/{transfer_id}/approve-all", response_model=TransferDetail)
async def approve_all(
    transfer_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
):
    """Approve every pending item at its requested quantity."""
    service = TransferService(db)
    transfer = await service.approve_all(actor, transfer_id)
    return TransferDetail.model_validate(transfer)


@router.get("/{transfer_id}/items/{item_id}/allocation", response_model=AllocationPreview)
async def preview_allocation(
    transfer_id: uuid.UUID,
    item_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
):
    """Suggest batches for an approved item, earliest expiry first."""
    service = TransferService(db)
    item, result = await service.suggest_allocation(actor, transfer_id, item_id)
    return AllocationPreview(
        item_id=item.id,
        requested_quantity=result.requested_quantity,
        allocated_quantity=result.allocated_quantity,
        shortfall=result.shortfall,
        allocations=[
            AllocationLine(
                batch_id=a.batch_id,
                lot_number=a.lot_number,
                expiry_date=a.expiry_date,
                quantity=a.quantity,
            )
            for a in result.allocations
        ],
    )


@router.post("/{transfer_id}/items/{item_id}/prepare", response_model=TransferDetail)
async def prepare_item(
    transfer_id: uuid.UUID,
    item_id: uuid.UUID,
    data: ItemPreparation,
    db: DB,
    actor: CurrentActor,
):
    """Reserve batches for an approved item. Supplying department only."""
    service = TransferService(db)
    allocations = None
    if data.allocations:
        allocations = [(a.batch_id, a.quantity) for a in data.allocations]
    transfer = await service.prepare_item(
        actor, transfer_id, item_id,
        allocations=allocations,
        notes=data.notes,
    )
    return TransferDetail.model_validate(transfer)


@router.post("/{transfer_id}/items/{item_id}/deliver", response_model=TransferDetail)
async def deliver_item(
    transfer_id: uuid.UUID,
    item_id: uuid.UUID,
    data: ItemDelivery,
    db: DB,
    actor: CurrentActor,
):
    """Confirm receipt of a prepared item. Requesting department only."""
    service = TransferService(db)
    transfer = await service.deliver_item(
        actor, transfer_id, item_id,
        receipts=[(r.batch_id, r.received_quantity) for r in data.receipts],
        notes=data.notes,
    )
    return TransferDetail.model_validate(transfer)


@router.post("/{transfer_id}/items/{item_id}/cancel", response_model=TransferDetail)
async def cancel_item(
    transfer_id: uuid.UUID,
    item_id: uuid.UUID,
    data: CancelRequest,
    db: DB,
    actor: CurrentActor,
):
    """Cancel a pending item. ADMIN or OWNER only."""
    service = TransferService(db)
    transfer = await service.cancel_item(actor, transfer_id, item_id, reason=data.reason)
    return TransferDetail.model_validate(transfer)


@router.post("/{transfer_id}/cancel", response_model=TransferDetail)
async def cancel_transfer(
    transfer_id: uuid.UUID,
    data: CancelRequest,
    db: DB,
    actor: CurrentActor,
):
    """Cancel a transfer whose items are all pending. ADMIN or OWNER only."""
    service = TransferService(db)
    transfer = await service.cancel_transfer(actor, transfer_id, reason=data.reason)
    return TransferDetail.model_validate(transfer)


@router.get("/{transfer_id}/history", response_model=list[TransferHistoryResponse])
async def get_transfer_history(
    transfer_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
    item_id: Optional[uuid.UUID] = Query(None),
):
    """Transition history, newest first."""
    service = TransferService(db)
    records = await service.get_history(actor, transfer_id, item_id=item_id)
    return [TransferHistoryResponse.model_validate(r) for r in records]
