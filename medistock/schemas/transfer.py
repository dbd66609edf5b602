"""Transfer schemas for API requests/responses."""
from pydantic import BaseModel, Field

from medistock.schemas.base import BaseResponseSchema, BaseCreateSchema
from typing import Optional, List, Any, Dict
from datetime import datetime, date
import uuid

from medistock.models.transfer import TransferPriority


# ==================== TRANSFER ITEM SCHEMAS ====================

class TransferItemCreate(BaseCreateSchema):
    """Transfer item creation schema."""
    product_id: uuid.UUID
    requested_quantity: int = Field(..., ge=1)
    notes: Optional[str] = None


class TransferItemBatchResponse(BaseResponseSchema):
    """Batch reserved for an item."""
    id: uuid.UUID
    batch_id: uuid.UUID
    quantity: int
    received_quantity: Optional[int] = None


class TransferItemResponse(BaseResponseSchema):
    """Transfer item response schema."""
    id: uuid.UUID
    transfer_id: uuid.UUID
    product_id: uuid.UUID
    status: str
    requested_quantity: int
    approved_quantity: Optional[int] = None
    prepared_quantity: Optional[int] = None
    received_quantity: Optional[int] = None
    shortfall: Optional[int] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    batches: List[TransferItemBatchResponse] = []
    created_at: datetime


# ==================== TRANSFER SCHEMAS ====================

class TransferCreate(BaseCreateSchema):
    """Transfer creation schema."""
    code: str = Field(..., min_length=1, max_length=50)
    title: Optional[str] = Field(None, max_length=200)
    requesting_department_id: uuid.UUID
    supplying_department_id: uuid.UUID
    priority: TransferPriority = TransferPriority.NORMAL
    request_reason: Optional[str] = None
    notes: Optional[str] = None
    items: List[TransferItemCreate] = Field(..., min_length=1)


class ItemApproval(BaseModel):
    """Approve an item for a quantity up to the requested one."""
    approved_quantity: int = Field(..., ge=1)
    notes: Optional[str] = None


class BatchAllocationInput(BaseModel):
    batch_id: uuid.UUID
    quantity: int = Field(..., ge=1)


class ItemPreparation(BaseModel):
    """Prepare an item; leave allocations empty to pick batches first-expiry-first-out."""
    allocations: Optional[List[BatchAllocationInput]] = None
    notes: Optional[str] = None


class BatchReceiptInput(BaseModel):
    batch_id: uuid.UUID
    received_quantity: int


class ItemDelivery(BaseModel):
    """Confirm what arrived, one receipt per reserved batch."""
    receipts: List[BatchReceiptInput] = Field(..., min_length=1)
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str


class TransferResponse(BaseResponseSchema):
    """Transfer response schema."""
    id: uuid.UUID
    organization_id: uuid.UUID
    code: str
    title: Optional[str] = None
    requesting_department_id: uuid.UUID
    supplying_department_id: uuid.UUID
    status: str
    priority: str
    request_reason: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    requested_by: uuid.UUID
    requested_by_snapshot: Optional[Dict[str, Any]] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: Optional[datetime] = None


class TransferDetail(TransferResponse):
    """Transfer with its items and reserved batches."""
    items: List[TransferItemResponse] = []


class TransferListResponse(BaseModel):
    """Paginated transfer list."""
    items: List[TransferResponse]
    total: int
    page: int
    size: int
    pages: int


# ==================== ALLOCATION / HISTORY ====================

class AllocationLine(BaseModel):
    batch_id: uuid.UUID
    lot_number: str
    expiry_date: Optional[date] = None
    quantity: int


class AllocationPreview(BaseModel):
    """Proposed first-expiry-first-out allocation for an approved item."""
    item_id: uuid.UUID
    requested_quantity: int
    allocated_quantity: int
    shortfall: int
    allocations: List[AllocationLine]


class TransferHistoryResponse(BaseResponseSchema):
    id: uuid.UUID
    transfer_id: uuid.UUID
    item_id: Optional[uuid.UUID] = None
    sequence: int
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    changed_by: uuid.UUID
    changed_by_snapshot: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime
