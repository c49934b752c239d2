"""
KRA eTIMS API Routes

Provides endpoints for:
- Item registration (single ingredient, recipe with composition, bulk sync)
- Sales, purchases and stock movements
- Ledger queries, statistics and replay of failed submissions
- Authority lookups (code lists, classifications, branches, notices)
"""

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from etims.core.config import FiscalConfig, get_fiscal_config
from etims.db.session import DbSession
from etims.models.etims_transaction import TransactionKind
from etims.schemas.etims import (
    FiscalResultResponse,
    ItemClassification,
    LedgerEntryResponse,
    LedgerStatisticsResponse,
    SaleOrder,
    StockMasterRequest,
    StockMovementRequest,
    SupplierOrder,
    SyncReportResponse,
)
from etims.services.etims.client import EtimsClient
from etims.services.etims.ledger import TransactionLedger
from etims.services.etims.service import EtimsService
from etims.services.etims.store import SqlRecordStore

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Dependencies ==============

def get_config() -> FiscalConfig:
    return get_fiscal_config()


def get_client(config: FiscalConfig = Depends(get_config)) -> EtimsClient:
    return EtimsClient(config)


def get_ledger(db: DbSession) -> TransactionLedger:
    return TransactionLedger(db)


def get_etims_service(
    db: DbSession,
    config: FiscalConfig = Depends(get_config),
    client: EtimsClient = Depends(get_client),
) -> EtimsService:
    return EtimsService(config, client, TransactionLedger(db), SqlRecordStore(db))


# ============== Items ==============

@router.post("/items/sync", response_model=SyncReportResponse)
async def sync_items(service: EtimsService = Depends(get_etims_service)):
    """Register every ingredient that has no KRA item code yet."""
    report = await service.sync_all_items()
    return SyncReportResponse.from_report(report)


@router.post("/ingredients/{ingredient_id}/register", response_model=FiscalResultResponse)
async def register_ingredient(
    ingredient_id: int,
    classification: Optional[ItemClassification] = None,
    service: EtimsService = Depends(get_etims_service),
):
    """Register (or re-submit) one ingredient as a KRA item."""
    ingredient = service.store.get_ingredient(ingredient_id)
    if ingredient is None:
        raise HTTPException(status_code=404, detail=f"Ingredient {ingredient_id} not found")
    result = await service.register_ingredient(ingredient, classification=classification)
    return FiscalResultResponse.from_result(result)


@router.post("/recipes/{recipe_id}/register", response_model=FiscalResultResponse)
async def register_recipe(recipe_id: int, service: EtimsService = Depends(get_etims_service)):
    """Register a recipe as a finished product together with its composition."""
    if service.store.get_recipe(recipe_id) is None:
        raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
    result = await service.register_recipe_with_composition(recipe_id)
    return FiscalResultResponse.from_result(result)


@router.post("/recipes/{recipe_id}/composition", response_model=FiscalResultResponse)
async def send_recipe_composition(recipe_id: int, service: EtimsService = Depends(get_etims_service)):
    """Resubmit the composition of an already registered recipe."""
    recipe = service.store.get_recipe(recipe_id)
    if recipe is None:
        raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
    result = await service.send_item_composition(recipe)
    return FiscalResultResponse.from_result(result)


@router.post("/stock-master", response_model=FiscalResultResponse)
async def save_stock_master(
    request: StockMasterRequest,
    service: EtimsService = Depends(get_etims_service),
):
    result = await service.save_stock_master(request.item_cd, request.remaining_qty)
    return FiscalResultResponse.from_result(result)


# ============== Transactions ==============

@router.post("/sales", response_model=FiscalResultResponse)
async def send_sale(order: SaleOrder, service: EtimsService = Depends(get_etims_service)):
    """Report a completed sales order. Repeating the call for the same order is safe."""
    result = await service.send_sale(order)
    return FiscalResultResponse.from_result(result)


@router.post("/purchases", response_model=FiscalResultResponse)
async def send_purchase(order: SupplierOrder, service: EtimsService = Depends(get_etims_service)):
    """Report a received supplier order."""
    result = await service.send_purchase(order)
    return FiscalResultResponse.from_result(result)


@router.post("/stock", response_model=FiscalResultResponse)
async def send_stock_movement(
    request: StockMovementRequest,
    service: EtimsService = Depends(get_etims_service),
):
    """Report stock in or out."""
    result = await service.send_stock_movement(
        request.items,
        movement_type=request.movement_type,
        idempotency_key=request.idempotency_key,
        supplier_order_id=request.supplier_order_id,
        sales_order_id=request.sales_order_id,
        remark=request.remark,
    )
    return FiscalResultResponse.from_result(result)


# ============== Ledger ==============

@router.get("/transactions", response_model=List[LedgerEntryResponse])
def list_transactions(
    limit: int = Query(50, ge=1, le=500),
    ledger: TransactionLedger = Depends(get_ledger),
):
    return ledger.list_recent(limit)


@router.get("/transactions/failed", response_model=List[LedgerEntryResponse])
def list_failed_transactions(
    kind: Optional[TransactionKind] = None,
    ledger: TransactionLedger = Depends(get_ledger),
):
    """Failed submissions, newest first."""
    return ledger.list_failed(kind)


@router.get("/transactions/stale", response_model=List[LedgerEntryResponse])
def list_stale_transactions(
    kind: Optional[TransactionKind] = None,
    older_than_minutes: int = Query(15, ge=0),
    ledger: TransactionLedger = Depends(get_ledger),
):
    """Entries stuck in retry, and pending ones older than ``older_than_minutes``."""
    return ledger.list_stale(kind, older_than=timedelta(minutes=older_than_minutes))


@router.get("/transactions/stats", response_model=LedgerStatisticsResponse)
def transaction_statistics(ledger: TransactionLedger = Depends(get_ledger)):
    return ledger.statistics()


@router.get("/transactions/{entry_id}", response_model=LedgerEntryResponse)
def get_transaction(entry_id: int, ledger: TransactionLedger = Depends(get_ledger)):
    return ledger.get(entry_id)


@router.post("/transactions/{entry_id}/retry", response_model=FiscalResultResponse)
async def retry_transaction(entry_id: int, service: EtimsService = Depends(get_etims_service)):
    """Resubmit a failed transaction's stored payload."""
    result = await service.retry_transaction(entry_id)
    return FiscalResultResponse.from_result(result)


@router.get("/sales-orders/{order_id}/transactions", response_model=List[LedgerEntryResponse])
def sales_order_transactions(order_id: str, ledger: TransactionLedger = Depends(get_ledger)):
    return ledger.for_sales_order(order_id)


@router.get("/supplier-orders/{order_id}/transactions", response_model=List[LedgerEntryResponse])
def supplier_order_transactions(order_id: str, ledger: TransactionLedger = Depends(get_ledger)):
    return ledger.for_supplier_order(order_id)


@router.get("/ingredients/{ingredient_id}/transactions", response_model=List[LedgerEntryResponse])
def ingredient_transactions(ingredient_id: str, ledger: TransactionLedger = Depends(get_ledger)):
    return ledger.for_ingredient(ingredient_id)


# ============== Lookups ==============

@router.get("/codes", response_model=FiscalResultResponse)
async def get_code_list(
    last_req_dt: str = Query("20220101010101", pattern=r"^\d{14}$"),
    service: EtimsService = Depends(get_etims_service),
):
    return FiscalResultResponse.from_result(await service.get_code_list(last_req_dt))


@router.get("/classifications", response_model=FiscalResultResponse)
async def get_item_classifications(
    last_req_dt: str = Query("20180523000000", pattern=r"^\d{14}$"),
    service: EtimsService = Depends(get_etims_service),
):
    return FiscalResultResponse.from_result(await service.get_item_classifications(last_req_dt))


@router.get("/branches", response_model=FiscalResultResponse)
async def get_branches(
    last_req_dt: str = Query("20180520000000", pattern=r"^\d{14}$"),
    service: EtimsService = Depends(get_etims_service),
):
    return FiscalResultResponse.from_result(await service.get_branches(last_req_dt))


@router.get("/notices", response_model=FiscalResultResponse)
async def get_notices(
    last_req_dt: Optional[str] = Query(None, pattern=r"^\d{14}$"),
    service: EtimsService = Depends(get_etims_service),
):
    return FiscalResultResponse.from_result(await service.get_notices(last_req_dt))


@router.get("/items", response_model=FiscalResultResponse)
async def get_item_list(
    last_req_dt: str = Query("20180520000000", pattern=r"^\d{14}$"),
    service: EtimsService = Depends(get_etims_service),
):
    """Items registered with the authority for this branch."""
    return FiscalResultResponse.from_result(await service.get_item_list(last_req_dt))


@router.get("/stock-moves", response_model=FiscalResultResponse)
async def get_stock_moves(
    last_req_dt: str = Query("20180520000000", pattern=r"^\d{14}$"),
    service: EtimsService = Depends(get_etims_service),
):
    return FiscalResultResponse.from_result(await service.get_stock_moves(last_req_dt))


@router.post("/initialize", response_model=FiscalResultResponse)
async def initialize_device(
    device_serial: str = Query(..., min_length=1),
    service: EtimsService = Depends(get_etims_service),
):
    """Fetch the device's initialization info from the authority."""
    return FiscalResultResponse.from_result(await service.initialize_device(device_serial))
