"""
KRA eTIMS domain service

Turns restaurant records (ingredients, recipes, sales orders, supplier
orders, stock movements) into eTIMS documents, submits them through the
transport client and records every attempt in the transaction ledger.

Every operation follows the same shape:
1. build the wire payload and check its arithmetic locally
2. create a pending ledger entry holding the exact payload
3. send it, then move the entry to success or failed
4. return a ``FiscalResult`` (failures are values, not exceptions)

A document that fails the local checks is never transmitted: its ledger
entry is failed at once with result code ``LOCAL_VALIDATION``.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from etims.core.config import FiscalConfig
from etims.core.exceptions import FiscalError, FiscalValidationError
from etims.core.metrics import FiscalMetrics, metrics as default_metrics
from etims.models.etims_transaction import EtimsTransaction, TransactionKind, TransactionStatus
from etims.schemas.etims import (
    ComponentResult,
    FiscalOutcome,
    FiscalResult,
    IngredientRecord,
    ItemClassification,
    ItemRecord,
    RecipeRecord,
    RecordId,
    SaleOrder,
    StockLine,
    SupplierOrder,
    SyncError,
    SyncReport,
)
from etims.services.etims.client import EtimsClient, EtimsResult
from etims.services.etims.codes import (
    DEFAULT_CLASSIFICATION,
    LOCAL_VALIDATION,
    NETWORK_ERROR,
    TAX_CLASSES,
    ItemType,
    StockMovementType,
    TaxType,
    classification_for,
    document_number_for,
    format_date,
    format_datetime,
    generate_item_code,
    tax_rate_for,
    to_unit_code,
)
from etims.services.etims.ledger import TransactionLedger
from etims.services.etims.payloads import (
    ItemCompositionPayload,
    ItemPayload,
    PurchaseItemLine,
    PurchasePayload,
    ReceiptBlock,
    SaleItemLine,
    SalePayload,
    StockItemLine,
    StockMasterPayload,
    StockPayload,
    WirePayload,
    check_totals,
)
from etims.services.etims.store import FiscalRecordStore
from etims.services.etims.totals import TaxBuckets, apportion, line_amounts, money

logger = logging.getLogger(__name__)

# Ledger kind -> authority operation used to replay it
KIND_OPERATIONS = {
    TransactionKind.ITEM_REGISTRATION: "items",
    TransactionKind.ITEM_COMPOSITION: "item_composition",
    TransactionKind.SALE: "sales",
    TransactionKind.PURCHASE: "purchases",
    TransactionKind.STOCK_IN: "stock_io",
    TransactionKind.STOCK_OUT: "stock_io",
}

# Documents whose arithmetic is re-checked before a replay
KIND_PAYLOADS = {
    TransactionKind.SALE: SalePayload,
    TransactionKind.PURCHASE: PurchasePayload,
    TransactionKind.STOCK_IN: StockPayload,
    TransactionKind.STOCK_OUT: StockPayload,
}

UNKNOWN_ITEM_CODE = "UNKNOWN"


class _SarSequence:
    """Process-wide stock adjustment numbers from a millisecond clock.

    The clock reading wraps every ~11.6 days (``ms % 10**9``), so each
    number is also kept above ``floor``, the highest number already in
    the ledger. Numbers never repeat across restarts and stay strictly
    increasing when two movements land on the same millisecond.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next(self, floor: int = 0) -> int:
        with self._lock:
            candidate = int(time.time() * 1000) % 1_000_000_000
            highest = max(self._last, floor)
            if candidate <= highest:
                candidate = highest + 1
            self._last = candidate
            return candidate


_sar_numbers = _SarSequence()


class EtimsService:
    """Fiscal operations for one tenant."""

    def __init__(
        self,
        config: FiscalConfig,
        client: EtimsClient,
        ledger: TransactionLedger,
        store: FiscalRecordStore,
        concurrency: int = 4,
        metrics: Optional[FiscalMetrics] = None,
        clock=None,
    ):
        self.config = config
        self.client = client
        self.ledger = ledger
        self.store = store
        self.concurrency = max(1, concurrency)
        self._metrics = metrics or default_metrics
        self._clock = clock

    # ===== ITEMS =====

    async def register_item(
        self,
        record: ItemRecord,
        price_override: Optional[Decimal] = None,
        classification: Optional[ItemClassification] = None,
    ) -> FiscalResult:
        """Register (or re-submit) an item master record.

        A record that already carries an item code is re-submitted under
        that code; otherwise a fresh code is generated. The codes come
        back on the result for the caller to persist.
        """
        item_cd = record.item_cd or generate_item_code(self.config.default_country)
        if classification is not None:
            item_cls_cd = classification.code
            tax_type = classification.tax_type or TaxType.standard()
        else:
            item_cls_cd = record.item_cls_cd or classification_for(record.category)
            tax_type = TaxType.standard()

        is_recipe = isinstance(record, RecipeRecord)
        links = {"recipe_id": record.id} if is_recipe else {"ingredient_id": record.id}
        price = money(price_override if price_override is not None else record.price)

        try:
            payload = self._build(
                ItemPayload,
                item_cd=item_cd,
                item_cls_cd=item_cls_cd,
                item_ty_cd=ItemType.FINISHED_PRODUCT if is_recipe else ItemType.RAW_MATERIAL,
                item_nm=record.name,
                item_std_nm=record.name,
                orgn_nat_cd=self.config.default_country,
                qty_unit_cd=to_unit_code(record.unit),
                tax_ty_cd=tax_type,
                dft_prc=price,
                grp_prc_l1=price,
                grp_prc_l2=price,
                grp_prc_l3=price,
                grp_prc_l4=price,
                add_info=record.description,
                **self._registrar_fields(),
            )
        except FiscalValidationError as exc:
            return self._reject_locally(TransactionKind.ITEM_REGISTRATION, exc, None, links)

        entry_id, result = await self._submit(
            TransactionKind.ITEM_REGISTRATION, "items", payload, links, total_amount=price,
        )
        return self._result(
            TransactionKind.ITEM_REGISTRATION, entry_id, result,
            f"Item '{record.name}' registered with KRA",
            item_cd=item_cd, item_cls_cd=item_cls_cd,
        )

    async def register_ingredient(
        self,
        ingredient: IngredientRecord,
        price_override: Optional[Decimal] = None,
        classification: Optional[ItemClassification] = None,
    ) -> FiscalResult:
        """register_item, then store the codes (or the failure) on the ingredient."""
        result = await self.register_item(ingredient, price_override, classification)
        if result.success:
            self.store.save_item_codes(ingredient.id, result.item_cd, result.item_cls_cd)
        else:
            self.store.mark_registration_failed(ingredient.id)
        return result

    async def sync_all_items(self) -> SyncReport:
        """Register every ingredient still lacking authority codes.

        Items are processed independently with bounded concurrency; one
        failure never stops the sweep. ``synced`` counts the newly
        registered and the already registered items together.
        """
        pending = self.store.list_unregistered_ingredients()
        report = SyncReport(already_registered=self.store.count_ingredients() - len(pending))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def register(record: IngredientRecord) -> Tuple[IngredientRecord, Optional[str]]:
            async with semaphore:
                try:
                    result = await self.register_ingredient(record)
                except FiscalError as exc:
                    logger.error("Item sync for '%s' failed: %s", record.name, exc)
                    return record, str(exc)
                return record, None if result.success else (result.error or result.message)

        for record, error in await asyncio.gather(*(register(r) for r in pending)):
            if error is None:
                report.registered += 1
            else:
                report.errors.append(SyncError(item_name=record.name, error=error))

        report.synced = report.registered + report.already_registered
        logger.info(
            "Item sync finished: %d synced (%d new), %d errors",
            report.synced, report.registered, len(report.errors),
        )
        return report

    async def send_item_composition(self, recipe: RecipeRecord) -> FiscalResult:
        """Submit a recipe's ingredient composition, one call per component.

        Components without authority codes are registered first; a failed
        component registration stops the operation before any composition
        call. Individual composition failures are reported per component.
        """
        links = {"recipe_id": recipe.id}
        kind = TransactionKind.ITEM_COMPOSITION
        if not recipe.item_cd:
            return self._reject_locally(
                kind, FiscalValidationError("Recipe must be registered with KRA first", field="itemCd"),
                None, links,
            )
        if not recipe.components:
            return self._reject_locally(
                kind, FiscalValidationError("Recipe has no components", field="components"),
                None, links,
            )
        for component in recipe.components:
            if component.quantity <= 0:
                return self._reject_locally(
                    kind,
                    FiscalValidationError(
                        f"Component '{component.name}' has a non-positive quantity",
                        field="cpstQty",
                        details={"quantity": str(component.quantity)},
                    ),
                    None, links,
                )

        components = []
        for component in recipe.components:
            if not (component.item_cd and component.item_cls_cd):
                ingredient = self.store.get_ingredient(component.ingredient_id) or IngredientRecord(
                    id=component.ingredient_id, name=component.name, unit=component.unit,
                )
                registration = await self.register_ingredient(ingredient)
                if not registration.success:
                    return registration.model_copy(update={
                        "message": f"Failed to register ingredient '{component.name}'",
                        "status": "component_registration_failed",
                    })
                component = component.model_copy(update={
                    "item_cd": registration.item_cd,
                    "item_cls_cd": registration.item_cls_cd,
                })
            components.append(component)

        results: List[ComponentResult] = []
        last: Optional[EtimsResult] = None
        for component in components:
            payload = ItemCompositionPayload(
                item_cd=recipe.item_cd,
                cpst_item_cd=component.item_cd,
                cpst_qty=component.quantity,
                regr_id=self.config.registrar,
                regr_nm=self.config.registrar,
            )
            entry_id, result = await self._submit(kind, "item_composition", payload, links)
            self._metrics.record_outcome(kind.value, _outcome_for(result).value)
            results.append(ComponentResult(
                name=component.name,
                item_cd=component.item_cd,
                success=result.success,
                error=result.error,
                ledger_entry_id=entry_id,
            ))
            if not result.success:
                last = result

        failed = [r for r in results if not r.success]
        if not failed:
            outcome, status = FiscalOutcome.SUCCESS, "ok"
            message = f"Composition of '{recipe.name}' registered ({len(results)} components)"
        elif len(failed) < len(results):
            outcome, status = FiscalOutcome.DEGRADED, "partial_success"
            message = f"Composition of '{recipe.name}' partially registered"
        else:
            outcome, status = _outcome_for(last), "failed"
            message = f"Composition of '{recipe.name}' failed"
        self.store.save_composition_status(recipe.id, status)

        return FiscalResult(
            outcome=outcome,
            message=message,
            error=last.error if last else None,
            result_code=last.result_code if last else None,
            result_message=last.result_message if last else None,
            item_cd=recipe.item_cd,
            status=status,
            components=results,
            warnings=[f"{r.name}: {r.error}" for r in failed],
        )

    async def register_recipe_with_composition(self, recipe_id: RecordId) -> FiscalResult:
        """Register a recipe as a finished product, then its composition.

        A registered recipe whose composition then fails is DEGRADED, not
        failed: the item exists at the authority and the composition can
        be resubmitted on its own.
        """
        recipe = self.store.get_recipe(recipe_id)
        if recipe is None:
            raise FiscalValidationError(f"Recipe {recipe_id} not found", field="recipe_id")

        registration = await self.register_item(recipe)
        if not registration.success:
            return registration.model_copy(update={"status": "registration_failed"})
        self.store.save_recipe_item_code(recipe.id, registration.item_cd, registration.item_cls_cd)

        recipe = recipe.model_copy(update={
            "item_cd": registration.item_cd,
            "item_cls_cd": registration.item_cls_cd,
        })
        composition = await self.send_item_composition(recipe)
        if composition.outcome is FiscalOutcome.SUCCESS:
            return composition.model_copy(update={
                "message": f"Recipe '{recipe.name}' registered with composition",
                "item_cls_cd": registration.item_cls_cd,
                "ledger_entry_id": registration.ledger_entry_id,
                "status": "registered_and_composed",
            })

        warnings = composition.warnings or [composition.error or composition.message]
        return registration.model_copy(update={
            "outcome": FiscalOutcome.DEGRADED,
            "message": f"Recipe '{recipe.name}' registered, composition failed",
            "status": "registered_composition_failed",
            "components": composition.components,
            "warnings": warnings,
        })

    async def save_stock_master(self, item_cd: str, remaining_qty: Decimal) -> FiscalResult:
        """Report the remaining stock quantity of an item."""
        payload = StockMasterPayload(
            item_cd=item_cd,
            rsd_qty=remaining_qty,
            **self._registrar_fields(),
        )
        result = await self.client.send("stock_master", payload)
        return self._lookup_result(result, f"Stock master for {item_cd} saved", item_cd=item_cd)

    # ===== TRANSACTIONS =====

    async def send_sale(self, order: SaleOrder) -> FiscalResult:
        """Report a completed sale.

        The invoice number is stable for an order: a sale already accepted
        for the order is returned as a duplicate without a new submission,
        and a failed earlier attempt's number is reused.
        """
        kind = TransactionKind.SALE
        links = {"sales_order_id": order.id}
        previous = self.ledger.for_sales_order(str(order.id))
        accepted = next((e for e in previous if e.status == TransactionStatus.SUCCESS), None)
        if accepted is not None:
            logger.info("Sale for order %s already reported (entry %s)", order.id, accepted.id)
            return self._duplicate(accepted, "Sale already reported to KRA")
        invoice_no = self._sale_invoice_no(order, previous)

        try:
            payload = self.build_sale(order, invoice_no)
            check_totals(payload)
        except FiscalValidationError as exc:
            return self._reject_locally(kind, exc, None, links, kra_invoice_no=invoice_no)

        entry_id, result = await self._submit(
            kind, "sales", payload, links,
            kra_invoice_no=invoice_no,
            total_amount=payload.tot_amt,
            vat_amount=payload.tot_tax_amt,
        )
        return self._result(
            kind, entry_id, result, f"Sale invoice {invoice_no} reported to KRA",
            invoice_no=invoice_no,
        )

    async def send_purchase(self, order: SupplierOrder) -> FiscalResult:
        """Report a received supplier order.

        The supplier's VAT figure is split evenly across the lines, with
        any rounding residue on the last line.
        """
        kind = TransactionKind.PURCHASE
        links = {"supplier_order_id": order.id}
        invoice_no = _purchase_invoice_no(order)

        try:
            payload = self.build_purchase(order, invoice_no)
            check_totals(payload)
        except FiscalValidationError as exc:
            return self._reject_locally(kind, exc, None, links, kra_invoice_no=invoice_no)

        entry_id, result = await self._submit(
            kind, "purchases", payload, links,
            kra_invoice_no=invoice_no,
            total_amount=payload.tot_amt,
            vat_amount=payload.tot_tax_amt,
        )
        return self._result(
            kind, entry_id, result, f"Purchase invoice {invoice_no} reported to KRA",
            invoice_no=invoice_no,
        )

    async def send_stock_movement(
        self,
        items: List[StockLine],
        movement_type: StockMovementType = StockMovementType.PURCHASE,
        idempotency_key: Optional[str] = None,
        supplier_order_id: Optional[str] = None,
        sales_order_id: Optional[str] = None,
        remark: Optional[str] = None,
    ) -> FiscalResult:
        """Report stock in or out.

        With an ``idempotency_key``, a movement already accepted under that
        key is returned as a duplicate, and a failed one keeps its number.
        """
        movement_type = StockMovementType(movement_type)
        kind = TransactionKind.STOCK_IN if movement_type.is_incoming else TransactionKind.STOCK_OUT
        links = {"supplier_order_id": supplier_order_id, "sales_order_id": sales_order_id}
        links = {name: value for name, value in links.items() if value is not None}

        sar_no = None
        if idempotency_key:
            previous = self.ledger.by_idempotency_key(kind, idempotency_key)
            accepted = next((e for e in previous if e.status == TransactionStatus.SUCCESS), None)
            if accepted is not None:
                return self._duplicate(accepted, "Stock movement already reported to KRA")
            sar_no = next((e.kra_sar_no for e in previous if e.kra_sar_no), None)
        if sar_no is None:
            sar_no = _sar_numbers.next(floor=self.ledger.max_sar_no())

        try:
            payload = self.build_stock_movement(items, movement_type, sar_no, remark)
            check_totals(payload)
        except FiscalValidationError as exc:
            return self._reject_locally(
                kind, exc, None, links, kra_sar_no=sar_no, idempotency_key=idempotency_key,
            )

        entry_id, result = await self._submit(
            kind, "stock_io", payload, links,
            kra_sar_no=sar_no,
            total_amount=payload.tot_amt,
            vat_amount=payload.tot_tax_amt,
            idempotency_key=idempotency_key,
        )
        return self._result(
            kind, entry_id, result, f"Stock movement {sar_no} reported to KRA", sar_no=sar_no,
        )

    # ===== REPLAY =====

    async def retry_transaction(self, entry_id: int) -> FiscalResult:
        """Resubmit a failed ledger entry's stored payload as-is.

        The entry moves failed -> retry -> pending and then to success or
        failed again; no new entry is created. An entry stranded in retry
        is resumed. Raises LedgerStateError for any other status.
        """
        entry = self.ledger.begin_retry(entry_id)
        kind = TransactionKind(entry.transaction_type)

        if not entry.items_data:
            return self._fail_locally(
                entry,
                FiscalValidationError("Entry has no stored payload to replay", field="items_data"),
            )
        model = KIND_PAYLOADS.get(kind)
        if model is not None:
            try:
                check_totals(model.model_validate(entry.items_data))
            except ValidationError as exc:
                return self._fail_locally(
                    entry, FiscalValidationError("Stored payload is malformed", details={"errors": _error_summary(exc)}),
                )
            except FiscalValidationError as exc:
                return self._fail_locally(entry, exc)

        logger.info("Replaying ledger entry %s (%s, retry %d)", entry.id, kind.value, entry.retry_count)
        result = await self.client.send(KIND_OPERATIONS[kind], entry.items_data)
        self._settle(entry.id, result)

        extra: Dict[str, Any] = {
            "invoice_no": entry.kra_invoice_no,
            "sar_no": entry.kra_sar_no,
        }
        if kind == TransactionKind.ITEM_REGISTRATION:
            extra["item_cd"] = entry.items_data.get("itemCd")
            extra["item_cls_cd"] = entry.items_data.get("itemClsCd")
            if result.success and entry.ingredient_id:
                self.store.save_item_codes(entry.ingredient_id, extra["item_cd"], extra["item_cls_cd"])
            elif result.success and entry.recipe_id:
                self.store.save_recipe_item_code(entry.recipe_id, extra["item_cd"], extra["item_cls_cd"])
        return self._result(kind, entry.id, result, f"Ledger entry {entry.id} resubmitted", **extra)

    # ===== LOOKUPS =====

    async def initialize_device(self, device_serial: str) -> FiscalResult:
        """Fetch the device/branch initialization info."""
        result = await self.client.send("initialization", {
            "tin": self.config.tin,
            "bhfId": self.config.bhf_id,
            "dvcSrlNo": device_serial,
        })
        return self._lookup_result(result, "Device information retrieved")

    async def get_code_list(self, last_req_dt: str = "20220101010101") -> FiscalResult:
        return await self._lookup("code_list", "Code list retrieved", last_req_dt, tenant=True)

    async def get_item_classifications(self, last_req_dt: str = "20180523000000") -> FiscalResult:
        return await self._lookup(
            "item_classification", "Item classifications retrieved", last_req_dt, tenant=True,
        )

    async def get_branches(self, last_req_dt: str = "20180520000000") -> FiscalResult:
        return await self._lookup("branch_list", "Branch list retrieved", last_req_dt)

    async def get_notices(self, last_req_dt: Optional[str] = None) -> FiscalResult:
        return await self._lookup("notices", "Notices retrieved", last_req_dt)

    async def get_item_list(self, last_req_dt: str = "20180520000000") -> FiscalResult:
        return await self._lookup("item_list", "Item list retrieved", last_req_dt, tenant=True)

    async def get_stock_moves(self, last_req_dt: str = "20180520000000") -> FiscalResult:
        return await self._lookup("stock_moves", "Stock movements retrieved", last_req_dt, tenant=True)

    # ===== BUILDERS =====

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(ZoneInfo(self.config.timezone))

    def _rates(self) -> Dict[TaxType, Decimal]:
        return {
            tax_type: tax_rate_for(tax_type, self.config.default_tax_rate, self.config.reduced_tax_rate)
            for tax_type in TAX_CLASSES
        }

    def _registrar_fields(self) -> Dict[str, str]:
        registrar = self.config.registrar
        return {"regr_id": registrar, "regr_nm": registrar, "modr_id": registrar, "modr_nm": registrar}

    @staticmethod
    def _build(model, **fields) -> WirePayload:
        try:
            return model(**fields)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise FiscalValidationError(
                f"Invalid {field}: {first['msg']}",
                field=field,
                details={"errors": _error_summary(exc)},
            ) from exc

    def build_sale(self, order: SaleOrder, invoice_no: int) -> SalePayload:
        """Sale document with tax charged on top of each line."""
        rates = self._rates()
        buckets = TaxBuckets()
        lines = []
        for seq, line in enumerate(order.items, start=1):
            tax_type = line.tax_type or TaxType.standard()
            amounts = line_amounts(line.unit_price, line.quantity, rates[tax_type])
            buckets.add(tax_type, amounts.taxable, amounts.tax)
            lines.append(self._build(
                SaleItemLine,
                item_seq=seq,
                item_cd=line.item_cd or UNKNOWN_ITEM_CODE,
                item_cls_cd=line.item_cls_cd or DEFAULT_CLASSIFICATION,
                item_nm=line.name,
                qty_unit_cd=to_unit_code(line.unit),
                qty=line.quantity,
                prc=money(line.unit_price),
                sply_amt=amounts.supply,
                tax_ty_cd=tax_type,
                taxbl_amt=amounts.taxable,
                tax_amt=amounts.tax,
                tot_amt=amounts.total,
            ))

        now = self._now()
        confirmed = format_datetime(now)
        receipt = ReceiptBlock(
            cust_tin=order.customer_tin,
            rcpt_pbct_dt=confirmed,
            trde_nm=self.config.business_name,
            adrs=self.config.address,
            top_msg=self.config.receipt_top_message,
            btm_msg=self.config.receipt_bottom_message,
        )
        return self._build(
            SalePayload,
            invc_no=invoice_no,
            cust_tin=order.customer_tin,
            cust_nm=order.customer_name or "Walk-in Customer",
            pmt_ty_cd=order.payment_type,
            cfm_dt=confirmed,
            sales_dt=format_date(now),
            stock_rls_dt=confirmed,
            tot_item_cnt=len(lines),
            remark=order.remark,
            receipt=receipt,
            item_list=lines,
            **buckets.payload_fields(rates),
            **self._registrar_fields(),
        )

    def build_purchase(self, order: SupplierOrder, invoice_no: int) -> PurchasePayload:
        """Purchase document carrying the supplier's VAT, split across the lines."""
        rates = self._rates()
        buckets = TaxBuckets()
        shares = apportion(order.vat_amount, len(order.items)) if order.items else []
        lines = []
        for seq, (line, vat) in enumerate(zip(order.items, shares), start=1):
            tax_type = line.tax_type or TaxType.standard()
            supply = money(line.cost_per_unit * line.quantity)
            buckets.add(tax_type, supply, vat)
            lines.append(self._build(
                PurchaseItemLine,
                item_seq=seq,
                item_cd=line.item_cd or UNKNOWN_ITEM_CODE,
                item_cls_cd=line.item_cls_cd or DEFAULT_CLASSIFICATION,
                item_nm=line.name,
                spplr_item_nm=line.name,
                qty_unit_cd=to_unit_code(line.unit),
                qty=line.quantity,
                prc=money(line.cost_per_unit),
                sply_amt=supply,
                tax_ty_cd=tax_type,
                taxbl_amt=supply,
                tax_amt=vat,
                tot_amt=supply + vat,
            ))

        now = self._now()
        return self._build(
            PurchasePayload,
            invc_no=invoice_no,
            spplr_tin=order.supplier_tin,
            spplr_bhf_id=order.supplier_bhf_id,
            spplr_nm=order.supplier_name or "Unknown Supplier",
            spplr_invc_no=order.invoice_number,
            pmt_ty_cd=order.payment_type,
            cfm_dt=format_datetime(now),
            pchs_dt=format_date(now),
            wrhs_dt=format_datetime(now),
            tot_item_cnt=len(lines),
            remark=order.remark,
            item_list=lines,
            **buckets.payload_fields(rates),
            **self._registrar_fields(),
        )

    def build_stock_movement(
        self,
        items: List[StockLine],
        movement_type: StockMovementType,
        sar_no: int,
        remark: Optional[str],
    ) -> StockPayload:
        rates = self._rates()
        lines = []
        for seq, line in enumerate(items, start=1):
            tax_type = line.tax_type or TaxType.standard()
            amounts = line_amounts(line.cost_per_unit, line.quantity, rates[tax_type])
            lines.append(self._build(
                StockItemLine,
                item_seq=seq,
                item_cd=line.item_cd or UNKNOWN_ITEM_CODE,
                item_cls_cd=line.item_cls_cd or DEFAULT_CLASSIFICATION,
                item_nm=line.name,
                qty_unit_cd=to_unit_code(line.unit),
                qty=line.quantity,
                prc=money(line.cost_per_unit),
                sply_amt=amounts.supply,
                tax_ty_cd=tax_type,
                taxbl_amt=amounts.taxable,
                tax_amt=amounts.tax,
                tot_amt=amounts.total,
            ))

        taxable = sum((line.taxbl_amt for line in lines), Decimal("0"))
        tax = sum((line.tax_amt for line in lines), Decimal("0"))
        return self._build(
            StockPayload,
            sar_no=sar_no,
            org_sar_no=sar_no,
            sar_ty_cd=movement_type,
            ocrn_dt=format_date(self._now()),
            tot_item_cnt=len(lines),
            tot_taxbl_amt=taxable,
            tot_tax_amt=tax,
            tot_amt=taxable + tax,
            remark=remark,
            item_list=lines,
            **self._registrar_fields(),
        )

    def _sale_invoice_no(self, order: SaleOrder, previous: List[EtimsTransaction]) -> int:
        if order.invoice_no:
            return order.invoice_no
        for entry in previous:
            if entry.kra_invoice_no:
                return entry.kra_invoice_no
        return document_number_for(order.id)

    # ===== LEDGER PLUMBING =====

    async def _submit(
        self,
        kind: TransactionKind,
        operation: str,
        payload: WirePayload,
        links: Dict[str, Any],
        **fields,
    ) -> Tuple[int, EtimsResult]:
        """Ledger entry first, then the call, then the outcome."""
        body = payload.to_wire()
        entry_id = self.ledger.create(kind, body, **links, **fields)
        result = await self.client.send(operation, body)
        self._settle(entry_id, result)
        return entry_id, result

    def _settle(self, entry_id: int, result: EtimsResult) -> None:
        if result.success:
            self.ledger.advance(
                entry_id,
                TransactionStatus.SUCCESS,
                result_code=result.result_code,
                result_message=result.result_message,
                receipt=result.data,
            )
            return
        category = "network" if result.is_transport_failure else "rejected"
        self.ledger.fail(
            entry_id,
            result.error or "KRA API error",
            details={"category": category, "attempts": result.attempts},
            result_code=result.result_code,
            result_message=result.result_message,
            receipt=result.data,
        )

    def _reject_locally(
        self,
        kind: TransactionKind,
        exc: FiscalValidationError,
        items_data: Optional[Dict[str, Any]],
        links: Dict[str, Any],
        **fields,
    ) -> FiscalResult:
        """Record a document refused before transmission."""
        entry_id = self.ledger.create(kind, items_data, **links, **fields)
        entry = self.ledger.get(entry_id)
        return self._fail_locally(entry, exc)

    def _fail_locally(self, entry: EtimsTransaction, exc: FiscalValidationError) -> FiscalResult:
        kind = TransactionKind(entry.transaction_type)
        self.ledger.fail(
            entry.id,
            str(exc),
            details={"category": "local_validation", "field": exc.field, **exc.details},
            result_code=LOCAL_VALIDATION,
            result_message=str(exc),
        )
        self._metrics.record_outcome(kind.value, FiscalOutcome.INVALID.value)
        logger.warning("eTIMS %s refused locally (entry %s): %s", kind.value, entry.id, exc)
        return FiscalResult(
            outcome=FiscalOutcome.INVALID,
            message=f"{kind.value.replace('_', ' ').capitalize()} failed local validation",
            error=str(exc),
            result_code=LOCAL_VALIDATION,
            result_message=str(exc),
            ledger_entry_id=entry.id,
            invoice_no=entry.kra_invoice_no,
            sar_no=entry.kra_sar_no,
        )

    def _result(
        self,
        kind: TransactionKind,
        entry_id: int,
        result: EtimsResult,
        success_message: str,
        **extra,
    ) -> FiscalResult:
        outcome = _outcome_for(result)
        self._metrics.record_outcome(kind.value, outcome.value)
        if outcome is FiscalOutcome.SUCCESS:
            message = success_message
            logger.info("eTIMS %s succeeded (entry %s)", kind.value, entry_id)
        elif outcome is FiscalOutcome.NETWORK_FAILURE:
            message = f"KRA unreachable after {result.attempts} attempts"
            logger.error("eTIMS %s network failure (entry %s): %s", kind.value, entry_id, result.error)
        else:
            message = f"KRA rejected {kind.value.replace('_', ' ')}: {result.error}"
            logger.warning(
                "eTIMS %s rejected (entry %s): %s %s",
                kind.value, entry_id, result.result_code, result.result_message,
            )
        return FiscalResult(
            outcome=outcome,
            message=message,
            error=result.error,
            result_code=result.result_code,
            result_message=result.result_message,
            ledger_entry_id=entry_id,
            data=result.data,
            **extra,
        )

    def _duplicate(self, entry: EtimsTransaction, message: str) -> FiscalResult:
        return FiscalResult(
            outcome=FiscalOutcome.SUCCESS,
            message=message,
            result_code=entry.kra_result_code,
            result_message=entry.kra_result_message,
            ledger_entry_id=entry.id,
            data=entry.kra_receipt_data,
            invoice_no=entry.kra_invoice_no,
            sar_no=entry.kra_sar_no,
            duplicate=True,
        )

    async def _lookup(
        self,
        operation: str,
        message: str,
        last_req_dt: Optional[str],
        tenant: bool = False,
    ) -> FiscalResult:
        body: Dict[str, Any] = {}
        if tenant:
            body.update({"tin": self.config.tin, "bhfId": self.config.bhf_id})
        if last_req_dt:
            body["lastReqDt"] = last_req_dt
        result = await self.client.send(operation, body)
        return self._lookup_result(result, message)

    @staticmethod
    def _lookup_result(result: EtimsResult, message: str, **extra) -> FiscalResult:
        outcome = _outcome_for(result)
        return FiscalResult(
            outcome=outcome,
            message=message if result.success else (result.error or "KRA API error"),
            error=result.error,
            result_code=result.result_code,
            result_message=result.result_message,
            data=result.data,
            **extra,
        )


def _outcome_for(result: EtimsResult) -> FiscalOutcome:
    if result.success:
        return FiscalOutcome.SUCCESS
    if result.result_code == NETWORK_ERROR:
        return FiscalOutcome.NETWORK_FAILURE
    return FiscalOutcome.REJECTED


def _purchase_invoice_no(order: SupplierOrder) -> int:
    return document_number_for((order.invoice_number or "").strip() or order.id)


def _error_summary(exc: ValidationError) -> List[Dict[str, str]]:
    return [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]
