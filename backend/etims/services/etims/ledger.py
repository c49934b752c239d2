"""
eTIMS Transaction Ledger

Durable record of every fiscal operation attempted. The ledger owns all
writes to ``kra_transactions``; callers get ids back and move entries
through the status machine with ``advance``/``fail``/``begin_retry``.

Status machine:
    pending -> success
    pending -> failed
    failed  -> retry -> pending
A success entry is never modified again and no entry is ever deleted.
``begin_retry`` takes an entry from failed to pending in one commit, so a
crash never strands it in retry. Entries left in retry by an interrupted
writer, and pending entries whose call never came back, are found with
``list_stale``.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from etims.core.exceptions import FiscalValidationError, LedgerEntryNotFound, LedgerStateError
from etims.models.etims_transaction import (
    KIND_LINKS,
    LINK_FIELDS,
    EtimsTransaction,
    TransactionKind,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.SUCCESS, TransactionStatus.FAILED},
    TransactionStatus.FAILED: {TransactionStatus.RETRY},
    TransactionStatus.RETRY: {TransactionStatus.PENDING},
    TransactionStatus.SUCCESS: set(),
}


class TransactionLedger:
    """Service for recording fiscal submissions and their outcomes."""

    def __init__(self, db: Session):
        self.db = db

    # ===== WRITES =====

    def create(
        self,
        kind: TransactionKind,
        items_data: Optional[Dict[str, Any]] = None,
        *,
        supplier_order_id: Optional[str] = None,
        sales_order_id: Optional[str] = None,
        ingredient_id: Optional[str] = None,
        recipe_id: Optional[str] = None,
        kra_invoice_no: Optional[int] = None,
        kra_sar_no: Optional[int] = None,
        total_amount: Optional[Decimal] = None,
        vat_amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Insert a pending entry and return its id.

        Kinds that require a business link must carry exactly one, chosen
        from the columns that kind allows. Other kinds carry at most one.
        """
        kind = TransactionKind(kind)
        links = {
            "supplier_order_id": supplier_order_id,
            "sales_order_id": sales_order_id,
            "ingredient_id": ingredient_id,
            "recipe_id": recipe_id,
        }
        populated = [name for name in LINK_FIELDS if links[name] is not None]
        allowed, required = KIND_LINKS[kind]
        if any(name not in allowed for name in populated) or len(populated) > 1:
            raise FiscalValidationError(
                f"{kind.value} entries may only link one of {', '.join(allowed)}",
                field=populated[0] if populated else None,
                details={"populated": populated},
            )
        if required and not populated:
            raise FiscalValidationError(
                f"{kind.value} entries must link one of {', '.join(allowed)}",
                field=allowed[0],
            )

        entry = EtimsTransaction(
            transaction_type=kind,
            status=TransactionStatus.PENDING,
            items_data=items_data,
            kra_invoice_no=kra_invoice_no,
            kra_sar_no=kra_sar_no,
            total_amount=total_amount,
            vat_amount=vat_amount,
            idempotency_key=idempotency_key,
            retry_count=0,
            **{name: str(value) for name, value in links.items() if value is not None},
        )
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        logger.info("Ledger entry %s created (%s)", entry.id, kind.value)
        return entry.id

    def advance(
        self,
        entry_id: int,
        status: TransactionStatus,
        result_code: Optional[str] = None,
        result_message: Optional[str] = None,
        receipt: Optional[Any] = None,
    ) -> EtimsTransaction:
        """Move an entry to ``status``, recording the authority's reply."""
        entry = self.get(entry_id)
        self._transition(entry, TransactionStatus(status))
        if result_code is not None:
            entry.kra_result_code = result_code
        if result_message is not None:
            entry.kra_result_message = result_message
        if receipt is not None:
            entry.kra_receipt_data = receipt
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def fail(
        self,
        entry_id: int,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        result_code: Optional[str] = None,
        result_message: Optional[str] = None,
        receipt: Optional[Any] = None,
    ) -> EtimsTransaction:
        """Mark a pending entry failed with a human-readable error."""
        entry = self.get(entry_id)
        self._transition(entry, TransactionStatus.FAILED)
        entry.error_message = message
        if details is not None:
            entry.error_details = details
        if result_code is not None:
            entry.kra_result_code = result_code
        if result_message is not None:
            entry.kra_result_message = result_message
        if receipt is not None:
            entry.kra_receipt_data = receipt
        self.db.commit()
        self.db.refresh(entry)
        logger.warning("Ledger entry %s failed: %s", entry_id, message)
        return entry

    def begin_retry(self, entry_id: int) -> EtimsTransaction:
        """failed -> retry -> pending in a single commit.

        Also resumes an entry stranded in retry. Bumps ``retry_count`` and
        ``last_retry_at``.
        """
        entry = self.get(entry_id)
        if TransactionStatus(entry.status) != TransactionStatus.RETRY:
            self._transition(entry, TransactionStatus.RETRY)
        self._transition(entry, TransactionStatus.PENDING)
        entry.retry_count = (entry.retry_count or 0) + 1
        entry.last_retry_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(entry)
        logger.info("Ledger entry %s queued for retry %d", entry.id, entry.retry_count)
        return entry

    # ===== READS =====

    def get(self, entry_id: int) -> EtimsTransaction:
        entry = self.db.get(EtimsTransaction, entry_id)
        if entry is None:
            raise LedgerEntryNotFound(entry_id)
        return entry

    def list_failed(self, kind: Optional[TransactionKind] = None) -> List[EtimsTransaction]:
        """Failed entries, newest first. A query only; replay lives in the service."""
        stmt = select(EtimsTransaction).where(EtimsTransaction.status == TransactionStatus.FAILED)
        if kind is not None:
            stmt = stmt.where(EtimsTransaction.transaction_type == TransactionKind(kind))
        stmt = stmt.order_by(EtimsTransaction.created_at.desc(), EtimsTransaction.id.desc())
        return list(self.db.scalars(stmt))

    def list_stale(
        self,
        kind: Optional[TransactionKind] = None,
        older_than: timedelta = timedelta(minutes=15),
    ) -> List[EtimsTransaction]:
        """Entries a reconciliation pass must resolve, oldest first.

        Every entry in retry, plus pending entries not touched for
        ``older_than``. A stale pending entry can be failed with ``fail``
        and then replayed.
        """
        cutoff = datetime.now(timezone.utc) - older_than
        stmt = select(EtimsTransaction).where(
            or_(
                EtimsTransaction.status == TransactionStatus.RETRY,
                and_(
                    EtimsTransaction.status == TransactionStatus.PENDING,
                    EtimsTransaction.updated_at <= cutoff,
                ),
            )
        )
        if kind is not None:
            stmt = stmt.where(EtimsTransaction.transaction_type == TransactionKind(kind))
        stmt = stmt.order_by(EtimsTransaction.updated_at, EtimsTransaction.id)
        return list(self.db.scalars(stmt))

    def max_sar_no(self) -> int:
        """Highest stock adjustment number ever recorded, or 0."""
        return self.db.scalar(select(func.max(EtimsTransaction.kra_sar_no))) or 0

    def list_recent(self, limit: int = 50) -> List[EtimsTransaction]:
        stmt = (
            select(EtimsTransaction)
            .order_by(EtimsTransaction.created_at.desc(), EtimsTransaction.id.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def for_sales_order(self, sales_order_id: str) -> List[EtimsTransaction]:
        return self._by_link(EtimsTransaction.sales_order_id, sales_order_id)

    def for_supplier_order(self, supplier_order_id: str) -> List[EtimsTransaction]:
        return self._by_link(EtimsTransaction.supplier_order_id, supplier_order_id)

    def for_ingredient(self, ingredient_id: str) -> List[EtimsTransaction]:
        return self._by_link(EtimsTransaction.ingredient_id, ingredient_id)

    def by_idempotency_key(self, kind: TransactionKind, key: str) -> List[EtimsTransaction]:
        stmt = (
            select(EtimsTransaction)
            .where(EtimsTransaction.transaction_type == TransactionKind(kind))
            .where(EtimsTransaction.idempotency_key == key)
            .order_by(EtimsTransaction.id.desc())
        )
        return list(self.db.scalars(stmt))

    def statistics(self) -> Dict[str, Any]:
        """Counts by kind, status and result code, plus success rate (success / total)."""
        by_type = self._count_by(EtimsTransaction.transaction_type)
        by_status = self._count_by(EtimsTransaction.status)
        by_result_code = self._count_by(
            EtimsTransaction.kra_result_code,
            EtimsTransaction.kra_result_code.is_not(None),
        )
        total = sum(by_type.values())
        success = by_status.get(TransactionStatus.SUCCESS.value, 0)
        return {
            "total": total,
            "by_type": by_type,
            "by_status": by_status,
            "by_result_code": by_result_code,
            "success_rate": round(success / total, 4) if total else 0.0,
        }

    # ===== INTERNALS =====

    @staticmethod
    def _transition(entry: EtimsTransaction, target: TransactionStatus) -> None:
        current = TransactionStatus(entry.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise LedgerStateError(entry.id, current.value, target.value)
        entry.status = target

    def _by_link(self, column, value: str) -> List[EtimsTransaction]:
        stmt = (
            select(EtimsTransaction)
            .where(column == str(value))
            .order_by(EtimsTransaction.created_at.desc(), EtimsTransaction.id.desc())
        )
        return list(self.db.scalars(stmt))

    def _count_by(self, column, *criteria) -> Dict[str, int]:
        stmt = select(column, func.count()).group_by(column)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        counts: Dict[str, int] = {}
        for key, count in self.db.execute(stmt):
            label = key.value if hasattr(key, "value") else str(key)
            counts[label] = count
        return counts
