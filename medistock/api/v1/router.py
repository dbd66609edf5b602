from fastapi import APIRouter

from medistock.api.v1.endpoints import (
    transfers,
    stocks,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Transfers ====================
api_router.include_router(
    transfers.router,
    prefix="/transfers",
    tags=["Transfers"]
)

# ==================== Stock Ledgers & Batches ====================
api_router.include_router(
    stocks.router,
    tags=["Stock"]
)
