"""Payment service: validation, error translation and cache orchestration.

This is the entry point other layers call. Validation runs before any I/O, so a
rejected request leaves no partial side effects. Storage failures reach callers
as errors from ``backend.app.core.errors``; nothing is retried.
"""

import logging
import math
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.core.errors import (
    InvalidInputError,
    PaymentValidationError,
    storage_error_from,
)
from backend.app.core.time import utc_now
from backend.app.crud.crud_payment import CRUDPayment, payment_crud
from backend.app.db.session import SessionLocal
from backend.app.schemas.payment import (
    METHOD_LABELS,
    STATUS_LABELS,
    Installment,
    InstallmentCreate,
    Payment,
    PaymentCreate,
    PaymentMethod,
    PaymentStatus,
    PaymentStatusUpdate,
    PaymentUpdate,
    new_installment_id,
    new_payment_id,
)
from backend.app.services.payment_cache import PaymentCache

logger = logging.getLogger(__name__)


def parse_payment_method(value: str) -> PaymentMethod:
    method = METHOD_LABELS.get((value or "").strip().upper())
    if method is None:
        raise InvalidInputError("payment_method", f"Invalid payment method: {value}")
    return method


def parse_payment_status(value: str) -> PaymentStatus:
    status = STATUS_LABELS.get((value or "").strip().upper())
    if status is None:
        raise InvalidInputError("payment_status", f"Invalid payment status: {value}")
    return status


def parse_due_date(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
    if parsed is None or parsed.tzinfo is None:
        raise InvalidInputError("due_date", "Invalid due date format. Use RFC3339 format")
    return parsed


def is_positive_amount(amount: float) -> bool:
    # rejects NaN and infinity as well as non-positive values
    return math.isfinite(amount) and amount > 0


def collect_violations(payment: Payment) -> List[str]:
    """Return every rule the payment breaks, in a stable order."""
    errors = []
    if not payment.id.strip():
        errors.append("Payment ID cannot be empty")
    if not payment.transaction_id.strip():
        errors.append("Transaction ID cannot be empty")
    if not is_positive_amount(payment.amount):
        errors.append("Payment amount must be greater than 0")
    if payment.status == PaymentStatus.INSTALLMENT and not payment.installments:
        errors.append("Payment with INSTALLMENT status must have at least one installment")
    for position, installment in enumerate(payment.installments, start=1):
        if not is_positive_amount(installment.amount):
            errors.append(f"Installment {position} amount must be greater than 0")
        if installment.payment_id != payment.id:
            errors.append(f"Installment {position} payment_id does not match payment ID")
    # The installment total is not compared with payment.amount.
    return errors


def payments_are_equal(left: Payment, right: Payment) -> bool:
    return (
        left.id == right.id
        and left.transaction_id == right.transaction_id
        and abs(left.amount - right.amount) < sys.float_info.epsilon
        and left.method == right.method
        and left.status == right.status
        and len(left.installments) == len(right.installments)
    )


class PaymentService:
    def __init__(
        self,
        session_factory=SessionLocal,
        store: Optional[CRUDPayment] = None,
        cache: Optional[PaymentCache] = None,
        cache_ttl: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.store = store or payment_crud
        self.cache = cache if cache is not None else PaymentCache(default_ttl=cache_ttl)
        self.cache_ttl = cache_ttl if cache_ttl is not None else self.cache.default_ttl

    parse_method = staticmethod(parse_payment_method)
    parse_status = staticmethod(parse_payment_status)

    @contextmanager
    def _session(self):
        db: Optional[Session] = None
        try:
            db = self._session_factory()
            yield db
        except SQLAlchemyError as exc:
            error = storage_error_from(exc)
            logger.warning("Storage failure translated to %s: %s", error.kind, exc)
            raise error from exc
        finally:
            if db is not None:
                db.close()

    def _refresh(self, payment: Payment, generation: Tuple[int, int]) -> None:
        """Replace the snapshot after a write, unless another write invalidated it since ``generation``."""
        epoch, count = generation
        self.cache.invalidate(payment.id)
        self.cache.put_if_generation(payment.id, payment, (epoch, count + 1), self.cache_ttl)

    def validate(self, payment: Payment) -> None:
        errors = collect_violations(payment)
        if errors:
            raise PaymentValidationError(errors)

    def validate_filters(self, filters: Optional[Mapping[str, str]]) -> Dict[str, str]:
        """Check filter keys and values, returning them normalized to stored labels."""
        errors = []
        normalized: Dict[str, str] = {}
        for key, value in (filters or {}).items():
            if key == "status":
                try:
                    normalized[key] = parse_payment_status(value).value
                except InvalidInputError:
                    errors.append(f"Invalid status filter: {value}")
            elif key == "method":
                try:
                    normalized[key] = parse_payment_method(value).value
                except InvalidInputError:
                    errors.append(f"Invalid method filter: {value}")
            elif key == "transaction_id":
                if not (value or "").strip():
                    errors.append("Transaction ID filter cannot be empty")
                else:
                    normalized[key] = value
            else:
                errors.append(f"Unknown filter key: {key}")
        if errors:
            raise PaymentValidationError(errors)
        return normalized

    def create_payment(self, payment: Payment) -> Payment:
        self.validate(payment)
        generation = self.cache.generation(payment.id)
        with self._session() as db:
            created = self.store.create(db, payment=payment)
        self._refresh(created, generation)
        return created

    def get_payment_by_id(self, payment_id: str) -> Payment:
        cached = self.cache.get(payment_id)
        if cached is not None:
            return cached
        # Taken before the read so a write committed meanwhile keeps this snapshot out.
        generation = self.cache.generation(payment_id)
        with self._session() as db:
            payment = self.store.find_by_id(db, payment_id=payment_id)
        self.cache.put_if_generation(payment_id, payment, generation, self.cache_ttl)
        return payment

    def get_all_payments(self, filters: Optional[Mapping[str, str]] = None) -> List[Payment]:
        normalized = self.validate_filters(filters)
        with self._session() as db:
            return self.store.find_all(db, filters=normalized)

    def update_payment(self, payment: Payment) -> Payment:
        self.validate(payment)
        existing = self.get_payment_by_id(payment.id)
        if payments_are_equal(existing, payment):
            logger.debug("Payment %s unchanged; skipping write", payment.id)
            return existing
        generation = self.cache.generation(payment.id)
        with self._session() as db:
            updated = self.store.update(db, payment=payment)
        self._refresh(updated, generation)
        return updated

    def update_payment_status(
        self,
        payment_id: str,
        new_status,
        additional_amount: Optional[float] = None,
    ) -> Payment:
        status = new_status if isinstance(new_status, PaymentStatus) else parse_payment_status(new_status)
        if additional_amount is not None and not is_positive_amount(additional_amount):
            raise InvalidInputError("additional_amount", "Amount must be greater than 0")
        generation = self.cache.generation(payment_id)
        with self._session() as db:
            updated = self.store.update_status(
                db,
                payment_id=payment_id,
                new_status=status,
                additional_amount=additional_amount,
            )
        self._refresh(updated, generation)
        return updated

    def delete_payment(self, payment_id: str) -> None:
        self.get_payment_by_id(payment_id)
        try:
            with self._session() as db:
                self.store.delete(db, payment_id=payment_id)
        finally:
            # Drop the snapshot even when the row vanished underneath us.
            self.cache.invalidate(payment_id)

    def add_installment(self, payment_id: str, amount: float) -> Payment:
        if not is_positive_amount(amount):
            raise InvalidInputError("amount", "Amount must be greater than 0")
        payment = self.get_payment_by_id(payment_id)
        if payment.status != PaymentStatus.INSTALLMENT:
            raise InvalidInputError(
                "payment_status",
                "Cannot add installment to a payment that is not in INSTALLMENT status",
            )
        installment = Installment(
            id=new_installment_id(),
            payment_id=payment_id,
            amount=amount,
            payment_date=utc_now(),
        )
        with self._session() as db:
            self.store.add_installment(db, installment=installment)
        self.cache.invalidate(payment_id)
        return self.get_payment_by_id(payment_id)

    def create_payment_from_request(self, request: PaymentCreate) -> Payment:
        payment = Payment(
            id=new_payment_id(),
            transaction_id=request.transaction_id,
            amount=request.amount,
            method=parse_payment_method(request.method),
            status=parse_payment_status(request.status),
            payment_date=utc_now(),
            due_date=parse_due_date(request.due_date),
            installments=[],
        )
        return self.create_payment(payment)

    def update_payment_from_request(self, payment_id: str, request: PaymentUpdate) -> Payment:
        method = parse_payment_method(request.method)
        status = parse_payment_status(request.status)
        due_date = parse_due_date(request.due_date)
        current = self.get_payment_by_id(payment_id)
        payment = current.model_copy(
            update={
                "transaction_id": request.transaction_id,
                "amount": request.amount,
                "method": method,
                "status": status,
                "due_date": due_date,
            }
        )
        return self.update_payment(payment)

    def update_payment_status_from_request(self, payment_id: str, request: PaymentStatusUpdate) -> Payment:
        return self.update_payment_status(payment_id, request.new_status, request.additional_amount)

    def add_installment_from_request(self, payment_id: str, request: InstallmentCreate) -> Payment:
        return self.add_installment(payment_id, request.amount)

    def clear_cache(self) -> None:
        self.cache.clear()
