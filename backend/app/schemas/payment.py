"""Payment schemas: domain entities and request payloads."""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    E_WALLET = "E_WALLET"


class PaymentStatus(str, Enum):
    PAID = "PAID"
    INSTALLMENT = "INSTALLMENT"


METHOD_LABELS = {method.value: method for method in PaymentMethod}
# LUNAS/CICILAN are the labels written by earlier clients.
STATUS_LABELS = {
    "PAID": PaymentStatus.PAID,
    "LUNAS": PaymentStatus.PAID,
    "INSTALLMENT": PaymentStatus.INSTALLMENT,
    "CICILAN": PaymentStatus.INSTALLMENT,
}


def new_payment_id() -> str:
    return f"PMT-{uuid.uuid4()}"


def new_installment_id() -> str:
    return f"INST-{uuid.uuid4()}"


class Installment(BaseModel):
    id: str
    payment_id: str
    amount: float
    payment_date: datetime

    model_config = ConfigDict(from_attributes=True)


class Payment(BaseModel):
    id: str
    transaction_id: str
    amount: float
    method: PaymentMethod
    status: PaymentStatus
    payment_date: datetime
    due_date: Optional[datetime] = None
    installments: List[Installment] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    def installment_total(self) -> float:
        return sum(installment.amount for installment in self.installments)


class PaymentCreate(BaseModel):
    transaction_id: str
    amount: float
    method: str
    status: str
    due_date: Optional[str] = None


class PaymentUpdate(PaymentCreate):
    pass


class PaymentStatusUpdate(BaseModel):
    new_status: str
    additional_amount: Optional[float] = None


class InstallmentCreate(BaseModel):
    amount: float
