"""Persistence for payments and installments.

Reads go through a single LEFT JOIN of payments to installments and the flat
rows are folded back into ``Payment`` trees by ``aggregate_rows``. Listing runs
one id query plus batched joins, never one query per payment.
"""

import logging
import struct
from contextlib import contextmanager
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.orm import Session

from backend.app.core.errors import DatabaseError, InvalidInputError, NotFoundError
from backend.app.core.time import parse_timestamp, to_storage, utc_now
from backend.app.models.payment import InstallmentRecord, PaymentRecord
from backend.app.schemas.payment import (
    Installment,
    Payment,
    PaymentMethod,
    PaymentStatus,
    new_installment_id,
)

logger = logging.getLogger(__name__)

_payments = PaymentRecord.__table__
_installments = InstallmentRecord.__table__

# SQLite caps bound parameters at 32766.
ID_BATCH_SIZE = 30000

FILTER_COLUMNS = {
    "status": _payments.c.status,
    "method": _payments.c.method,
    "transaction_id": _payments.c.transaction_id,
}

JOINED_COLUMNS = (
    _payments.c.id,
    _payments.c.transaction_id,
    _payments.c.amount,
    _payments.c.method,
    _payments.c.status,
    _payments.c.payment_date,
    _payments.c.due_date,
    _installments.c.id.label("inst_id"),
    _installments.c.payment_id.label("inst_payment_id"),
    _installments.c.amount.label("inst_amount"),
    _installments.c.payment_date.label("inst_date"),
)


def read_amount(value) -> float:
    """Decode a stored amount as a 64-bit float.

    Values that do not convert directly are retried as a packed 32-bit float
    and widened; 0.0 is the last resort.
    """
    if isinstance(value, float):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if len(raw) == 8:
            return struct.unpack("<d", raw)[0]
        if len(raw) == 4:
            return float(struct.unpack("<f", raw)[0])
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _read_timestamp(value, column: str):
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise DatabaseError(f"Cannot decode column '{column}': {exc}", code="DECODE") from exc


def _read_enum(enum_cls, value, column: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise DatabaseError(f"Cannot decode column '{column}': unknown value {value!r}", code="DECODE") from exc


def payment_from_row(row: Mapping) -> Payment:
    due_date = row["due_date"]
    return Payment(
        id=row["id"],
        transaction_id=row["transaction_id"],
        amount=read_amount(row["amount"]),
        method=_read_enum(PaymentMethod, row["method"], "method"),
        status=_read_enum(PaymentStatus, row["status"], "status"),
        payment_date=_read_timestamp(row["payment_date"], "payment_date"),
        due_date=_read_timestamp(due_date, "due_date") if due_date is not None else None,
        installments=[],
    )


def installment_from_row(row: Mapping) -> Optional[Installment]:
    if row["inst_id"] is None:
        return None
    return Installment(
        id=row["inst_id"],
        payment_id=row["inst_payment_id"],
        amount=read_amount(row["inst_amount"]),
        payment_date=_read_timestamp(row["inst_date"], "installments.payment_date"),
    )


def aggregate_rows(rows: Iterable[Mapping]) -> List[Payment]:
    """Fold joined payment/installment rows into payments in first-seen order."""
    payments: Dict[str, Payment] = {}
    for row in rows:
        payment_id = row["id"]
        payment = payments.get(payment_id)
        if payment is None:
            payment = payment_from_row(row)
            payments[payment_id] = payment
        installment = installment_from_row(row)
        if installment is not None:
            payment.installments.append(installment)
    # Legacy timestamps without an offset do not sort correctly as text.
    for payment in payments.values():
        payment.installments.sort(key=lambda installment: installment.payment_date)
    # dicts keep insertion order
    return list(payments.values())


@contextmanager
def atomic(db: Session):
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


def _payment_values(payment: Payment) -> dict:
    return {
        "transaction_id": payment.transaction_id,
        "amount": float(payment.amount),
        "method": PaymentMethod(payment.method).value,
        "status": PaymentStatus(payment.status).value,
        "payment_date": to_storage(payment.payment_date),
        "due_date": to_storage(payment.due_date),
    }


def _installment_values(installment: Installment) -> dict:
    return {
        "id": installment.id,
        "payment_id": installment.payment_id,
        "amount": float(installment.amount),
        "payment_date": to_storage(installment.payment_date),
    }


class CRUDPayment:
    def create(self, db: Session, *, payment: Payment) -> Payment:
        with atomic(db):
            db.execute(insert(_payments).values(id=payment.id, **_payment_values(payment)))
            if payment.installments:
                db.execute(
                    insert(_installments),
                    [_installment_values(installment) for installment in payment.installments],
                )
        logger.info("Created payment %s with %d installment(s)", payment.id, len(payment.installments))
        return self.find_by_id(db, payment_id=payment.id)

    def find_by_id(self, db: Session, *, payment_id: str) -> Payment:
        stmt = (
            select(*JOINED_COLUMNS)
            .select_from(_payments.outerjoin(_installments, _payments.c.id == _installments.c.payment_id))
            .where(_payments.c.id == payment_id)
            .order_by(_installments.c.payment_date.asc())
        )
        rows = db.execute(stmt).mappings().all()
        if not rows:
            raise NotFoundError("Payment", payment_id)
        return aggregate_rows(rows)[0]

    def find_all(self, db: Session, *, filters: Optional[Mapping[str, str]] = None) -> List[Payment]:
        """List matching payments with their installments.

        One id query, then one join per ``ID_BATCH_SIZE`` ids. The batch bound
        keeps the ``IN`` list under SQLite's bound-parameter limit.
        """
        id_query = select(_payments.c.id)
        for key, value in (filters or {}).items():
            column = FILTER_COLUMNS.get(key)
            if column is None:
                raise InvalidInputError("filters", f"Unsupported filter: {key}")
            id_query = id_query.where(column == value)
        id_query = id_query.order_by(_payments.c.payment_date.asc(), _payments.c.id.asc())

        payment_ids = db.execute(id_query).scalars().all()
        if not payment_ids:
            return []

        payments: List[Payment] = []
        for start in range(0, len(payment_ids), ID_BATCH_SIZE):
            batch = payment_ids[start:start + ID_BATCH_SIZE]
            # Same ordering as the id query so first-seen order matches it.
            stmt = (
                select(*JOINED_COLUMNS)
                .select_from(_payments.outerjoin(_installments, _payments.c.id == _installments.c.payment_id))
                .where(_payments.c.id.in_(batch))
                .order_by(_payments.c.payment_date.asc(), _payments.c.id.asc(), _installments.c.payment_date.asc())
            )
            payments.extend(aggregate_rows(db.execute(stmt).mappings().all()))
        return payments

    def update(self, db: Session, *, payment: Payment) -> Payment:
        with atomic(db):
            result = db.execute(
                update(_payments).where(_payments.c.id == payment.id).values(**_payment_values(payment))
            )
            if result.rowcount == 0:
                raise NotFoundError("Payment", payment.id)
        logger.info("Updated payment %s", payment.id)
        return self.find_by_id(db, payment_id=payment.id)

    def update_status(
        self,
        db: Session,
        *,
        payment_id: str,
        new_status: PaymentStatus,
        additional_amount: Optional[float] = None,
    ) -> Payment:
        status = PaymentStatus(new_status)
        with atomic(db):
            result = db.execute(
                update(_payments).where(_payments.c.id == payment_id).values(status=status.value)
            )
            if result.rowcount == 0:
                raise NotFoundError("Payment", payment_id)
            if additional_amount is not None:
                installment = Installment(
                    id=new_installment_id(),
                    payment_id=payment_id,
                    amount=additional_amount,
                    payment_date=utc_now(),
                )
                db.execute(insert(_installments).values(**_installment_values(installment)))
        logger.info("Payment %s status set to %s", payment_id, status.value)
        return self.find_by_id(db, payment_id=payment_id)

    def delete(self, db: Session, *, payment_id: str) -> None:
        with atomic(db):
            db.execute(delete(_installments).where(_installments.c.payment_id == payment_id))
            result = db.execute(delete(_payments).where(_payments.c.id == payment_id))
            if result.rowcount == 0:
                raise NotFoundError("Payment", payment_id)
        logger.info("Deleted payment %s", payment_id)

    def add_installment(self, db: Session, *, installment: Installment) -> Installment:
        with atomic(db):
            db.execute(insert(_installments).values(**_installment_values(installment)))
        logger.info("Added installment %s to payment %s", installment.id, installment.payment_id)
        return installment


payment_crud = CRUDPayment()
