# Models module
from medistock.models.department import Department
from medistock.models.product import Product
from medistock.models.stock import Stock, StockBatch, BatchStatus
from medistock.models.transfer import (
    Transfer,
    TransferItem,
    TransferItemBatch,
    TransferStatus,
    TransferItemStatus,
    TransferPriority,
)
from medistock.models.transfer_history import TransferHistory
from medistock.models.audit_log import AuditLog

__all__ = [
    "Department",
    "Product",
    "Stock",
    "StockBatch",
    "BatchStatus",
    "Transfer",
    "TransferItem",
    "TransferItemBatch",
    "TransferStatus",
    "TransferItemStatus",
    "TransferPriority",
    "TransferHistory",
    "AuditLog",
]
