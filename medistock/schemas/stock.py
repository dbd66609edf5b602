"""Stock ledger and batch schemas."""
from pydantic import BaseModel, Field

from medistock.schemas.base import BaseResponseSchema, BaseCreateSchema
from typing import Optional, List, Dict
from datetime import datetime, date
from decimal import Decimal
import uuid


class StockCreate(BaseCreateSchema):
    """Open a zero ledger for a product in a department."""
    product_id: uuid.UUID
    location: Optional[str] = Field(None, max_length=100)
    min_stock_level: Optional[int] = Field(None, ge=0)
    max_stock_level: Optional[int] = Field(None, ge=0)
    reorder_point: Optional[int] = Field(None, ge=0)
    default_withdrawal_qty: Optional[int] = Field(None, ge=1)


class StockResponse(BaseResponseSchema):
    id: uuid.UUID
    department_id: uuid.UUID
    product_id: uuid.UUID
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    incoming_quantity: int
    location: Optional[str] = None
    min_stock_level: Optional[int] = None
    max_stock_level: Optional[int] = None
    reorder_point: Optional[int] = None
    default_withdrawal_qty: Optional[int] = None
    is_low_stock: bool
    needs_reorder: bool
    last_movement_at: Optional[datetime] = None
    version: int


class StockListResponse(BaseModel):
    items: List[StockResponse]
    total: int
    page: int
    size: int
    pages: int


class BatchCreate(BaseCreateSchema):
    """Goods receipt of a new lot."""
    lot_number: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(..., ge=1)
    expiry_date: Optional[date] = None
    manufacture_date: Optional[date] = None
    supplier: Optional[str] = Field(None, max_length=200)
    cost_price: Optional[Decimal] = Field(None, ge=0)
    selling_price: Optional[Decimal] = Field(None, ge=0)
    location: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class BatchResponse(BaseResponseSchema):
    id: uuid.UUID
    stock_id: uuid.UUID
    lot_number: str
    expiry_date: Optional[date] = None
    manufacture_date: Optional[date] = None
    supplier: Optional[str] = None
    cost_price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    incoming_quantity: int
    location: Optional[str] = None
    status: str
    is_active: bool
    received_at: datetime
    version: int


class LedgerConsistency(BaseModel):
    """Ledger counters compared with the sum of its active batches."""
    stock_id: uuid.UUID
    is_consistent: bool
    ledger: Dict[str, int]
    batch_totals: Dict[str, int]
    discrepancies: Dict[str, int]
