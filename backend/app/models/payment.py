"""Persisted schema for payments and their installments.

Timestamps are stored as ISO-8601 text and amounts as REAL; the store decodes
rows itself so that legacy text formats can still be read.
"""

from sqlalchemy import Column, Float, ForeignKey, String

from backend.app.db.base_class import Base


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(String(64), primary_key=True)
    transaction_id = Column(String(128), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    method = Column(String(32), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    payment_date = Column(String(64), nullable=False)
    due_date = Column(String(64), nullable=True)


class InstallmentRecord(Base):
    __tablename__ = "installments"

    id = Column(String(64), primary_key=True)
    payment_id = Column(String(64), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    payment_date = Column(String(64), nullable=False)
