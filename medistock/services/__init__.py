# Services module
from medistock.services.audit_service import AuditService
from medistock.services.history_service import HistoryService
from medistock.services.reconciliation_service import ReconciliationService
from medistock.services.stock_ledger_service import StockLedgerService
from medistock.services.transfer_service import TransferService

__all__ = [
    "AuditService",
    "HistoryService",
    "ReconciliationService",
    "StockLedgerService",
    "TransferService",
]
