import struct
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import event, insert, select
from sqlalchemy.exc import IntegrityError

from backend.app.core.errors import DatabaseError, InvalidInputError, NotFoundError
from backend.app.crud.crud_payment import aggregate_rows, payment_crud, read_amount
from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.models.payment import InstallmentRecord, PaymentRecord
from backend.app.schemas.payment import Installment, Payment, PaymentMethod, PaymentStatus

BASE_TIME = datetime(2030, 1, 1, 10, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def make_payment(
    payment_id="PMT-1",
    transaction_id="TXN-1",
    amount=1000.0,
    method=PaymentMethod.CASH,
    status=PaymentStatus.PAID,
    installment_amounts=(),
    offset_minutes=0,
    due_date=None,
):
    payment_date = BASE_TIME + timedelta(minutes=offset_minutes)
    installments = [
        Installment(
            id=f"INST-{payment_id}-{index}",
            payment_id=payment_id,
            amount=value,
            payment_date=payment_date + timedelta(days=index),
        )
        for index, value in enumerate(installment_amounts, start=1)
    ]
    return Payment(
        id=payment_id,
        transaction_id=transaction_id,
        amount=amount,
        method=method,
        status=status,
        payment_date=payment_date,
        due_date=due_date,
        installments=installments,
    )


class CountingStatements:
    def __init__(self):
        self.count = 0

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT"):
            self.count += 1


@pytest.fixture
def select_counter():
    counter = CountingStatements()
    event.listen(engine, "before_cursor_execute", counter)
    yield counter
    event.remove(engine, "before_cursor_execute", counter)


def test_scenario_a_payment_without_installments():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment())
        found = payment_crud.find_by_id(db, payment_id="PMT-1")
        assert found.amount == 1000.0
        assert found.installments == []
        assert found.method is PaymentMethod.CASH
        assert found.status is PaymentStatus.PAID
    finally:
        db.close()


def test_scenario_b_installments_in_both_read_paths():
    db = SessionLocal()
    try:
        payment = make_payment(
            payment_id="PMT-2",
            status=PaymentStatus.INSTALLMENT,
            installment_amounts=(300.0, 700.0),
        )
        # insert out of date order; reads must sort by payment_date
        payment.installments.reverse()
        payment_crud.create(db, payment=payment)

        by_id = payment_crud.find_by_id(db, payment_id="PMT-2")
        listed = payment_crud.find_all(db, filters=None)

        assert len(listed) == 1
        for found in (by_id, listed[0]):
            assert len(found.installments) == 2
            assert sum(installment.amount for installment in found.installments) == 1000.0
            dates = [installment.payment_date for installment in found.installments]
            assert dates == sorted(dates)
            assert [installment.amount for installment in found.installments] == [300.0, 700.0]
    finally:
        db.close()


def test_round_trip_preserves_every_field():
    db = SessionLocal()
    try:
        payment = make_payment(
            payment_id="PMT-RT",
            transaction_id="TXN-RT",
            amount=1500.25,
            method=PaymentMethod.E_WALLET,
            status=PaymentStatus.INSTALLMENT,
            installment_amounts=(500.0, 300.5),
            due_date=BASE_TIME + timedelta(days=30),
        )
        created = payment_crud.create(db, payment=payment)
        found = payment_crud.find_by_id(db, payment_id="PMT-RT")
        assert created == payment
        assert found == payment
    finally:
        db.close()


def test_find_by_id_missing_raises_not_found():
    db = SessionLocal()
    try:
        with pytest.raises(NotFoundError) as excinfo:
            payment_crud.find_by_id(db, payment_id="PMT-404")
        assert excinfo.value.entity == "Payment"
        assert excinfo.value.id == "PMT-404"
    finally:
        db.close()


def test_find_all_matches_find_by_id_for_every_payment():
    db = SessionLocal()
    try:
        for index in range(5):
            payment_crud.create(
                db,
                payment=make_payment(
                    payment_id=f"PMT-{index}",
                    transaction_id=f"TXN-{index}",
                    status=PaymentStatus.INSTALLMENT if index % 2 else PaymentStatus.PAID,
                    installment_amounts=tuple(100.0 * (n + 1) for n in range(index)),
                    offset_minutes=index,
                ),
            )
        listed = payment_crud.find_all(db)
        individually = [payment_crud.find_by_id(db, payment_id=payment.id) for payment in listed]
        assert listed == individually
        assert [payment.id for payment in listed] == [f"PMT-{index}" for index in range(5)]
        assert [len(payment.installments) for payment in listed] == [0, 1, 2, 3, 4]
    finally:
        db.close()


def test_find_all_uses_two_queries_regardless_of_size(select_counter):
    db = SessionLocal()
    try:
        for index in range(10):
            payment_crud.create(
                db,
                payment=make_payment(payment_id=f"PMT-{index}", installment_amounts=(10.0, 20.0), offset_minutes=index),
            )
        select_counter.count = 0
        listed = payment_crud.find_all(db)
        assert len(listed) == 10
        assert select_counter.count == 2
    finally:
        db.close()


def test_find_all_with_no_matches_skips_join_query(select_counter):
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment())
        select_counter.count = 0
        assert payment_crud.find_all(db, filters={"transaction_id": "TXN-none"}) == []
        assert select_counter.count == 1
    finally:
        db.close()


def test_find_all_filters_are_anded():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment("PMT-A", "TXN-A", method=PaymentMethod.CASH))
        payment_crud.create(db, payment=make_payment("PMT-B", "TXN-B", method=PaymentMethod.BANK_TRANSFER, offset_minutes=1))
        payment_crud.create(
            db,
            payment=make_payment(
                "PMT-C",
                "TXN-C",
                method=PaymentMethod.BANK_TRANSFER,
                status=PaymentStatus.INSTALLMENT,
                installment_amounts=(50.0,),
                offset_minutes=2,
            ),
        )

        by_method = payment_crud.find_all(db, filters={"method": "BANK_TRANSFER"})
        assert [payment.id for payment in by_method] == ["PMT-B", "PMT-C"]

        both = payment_crud.find_all(db, filters={"method": "BANK_TRANSFER", "status": "INSTALLMENT"})
        assert [payment.id for payment in both] == ["PMT-C"]

        by_transaction = payment_crud.find_all(db, filters={"transaction_id": "TXN-A"})
        assert [payment.id for payment in by_transaction] == ["PMT-A"]
    finally:
        db.close()


def test_find_all_rejects_unknown_filter_key():
    db = SessionLocal()
    try:
        with pytest.raises(InvalidInputError):
            payment_crud.find_all(db, filters={"amount": "10"})
    finally:
        db.close()


def test_create_is_atomic_when_an_installment_fails():
    db = SessionLocal()
    try:
        payment_crud.create(
            db,
            payment=make_payment("PMT-1", status=PaymentStatus.INSTALLMENT, installment_amounts=(100.0,)),
        )
        clashing = make_payment("PMT-2", "TXN-2", status=PaymentStatus.INSTALLMENT, installment_amounts=(100.0,))
        clashing.installments[0].id = "INST-PMT-1-1"

        with pytest.raises(IntegrityError):
            payment_crud.create(db, payment=clashing)

        with pytest.raises(NotFoundError):
            payment_crud.find_by_id(db, payment_id="PMT-2")
    finally:
        db.close()


def test_update_changes_scalars_but_not_installments():
    db = SessionLocal()
    try:
        original = make_payment(status=PaymentStatus.INSTALLMENT, installment_amounts=(100.0,))
        payment_crud.create(db, payment=original)

        changed = original.model_copy(update={"amount": 2000.0, "method": PaymentMethod.CREDIT_CARD, "installments": []})
        updated = payment_crud.update(db, payment=changed)

        assert updated.amount == 2000.0
        assert updated.method is PaymentMethod.CREDIT_CARD
        assert len(updated.installments) == 1
    finally:
        db.close()


def test_update_missing_payment_raises_not_found():
    db = SessionLocal()
    try:
        with pytest.raises(NotFoundError):
            payment_crud.update(db, payment=make_payment("PMT-404"))
    finally:
        db.close()


def test_update_status_appends_installment():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment())
        updated = payment_crud.update_status(
            db,
            payment_id="PMT-1",
            new_status=PaymentStatus.INSTALLMENT,
            additional_amount=250.0,
        )
        assert updated.status is PaymentStatus.INSTALLMENT
        assert len(updated.installments) == 1
        assert updated.installments[0].amount == 250.0
        assert updated.installments[0].id.startswith("INST-")
        assert updated.installments[0].payment_id == "PMT-1"
    finally:
        db.close()


def test_update_status_without_amount_only_changes_status():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment(status=PaymentStatus.INSTALLMENT, installment_amounts=(10.0,)))
        updated = payment_crud.update_status(db, payment_id="PMT-1", new_status=PaymentStatus.PAID)
        assert updated.status is PaymentStatus.PAID
        assert len(updated.installments) == 1
    finally:
        db.close()


def test_update_status_missing_payment_writes_nothing():
    db = SessionLocal()
    try:
        with pytest.raises(NotFoundError):
            payment_crud.update_status(
                db,
                payment_id="PMT-404",
                new_status=PaymentStatus.PAID,
                additional_amount=10.0,
            )
        assert db.execute(select(InstallmentRecord.id)).scalars().all() == []
    finally:
        db.close()


def test_delete_removes_payment_and_installments():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment(status=PaymentStatus.INSTALLMENT, installment_amounts=(1.0, 2.0)))
        payment_crud.delete(db, payment_id="PMT-1")
        with pytest.raises(NotFoundError):
            payment_crud.find_by_id(db, payment_id="PMT-1")
        assert db.execute(select(InstallmentRecord.id)).scalars().all() == []
    finally:
        db.close()


def test_delete_missing_payment_raises_not_found():
    db = SessionLocal()
    try:
        with pytest.raises(NotFoundError):
            payment_crud.delete(db, payment_id="PMT-404")
    finally:
        db.close()


def test_add_installment_inserts_row():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment(status=PaymentStatus.INSTALLMENT, installment_amounts=(100.0,)))
        payment_crud.add_installment(
            db,
            installment=Installment(
                id="INST-extra",
                payment_id="PMT-1",
                amount=50.0,
                payment_date=BASE_TIME + timedelta(days=10),
            ),
        )
        found = payment_crud.find_by_id(db, payment_id="PMT-1")
        assert [installment.id for installment in found.installments] == ["INST-PMT-1-1", "INST-extra"]
    finally:
        db.close()


def test_reads_legacy_rows_with_local_timestamps():
    db = SessionLocal()
    try:
        db.execute(
            insert(PaymentRecord).values(
                id="PMT-OLD",
                transaction_id="TXN-OLD",
                amount=750,
                method="BANK_TRANSFER",
                status="INSTALLMENT",
                payment_date="2024-03-01 08:30:00",
                due_date="2024-04-01 08:30:00.500",
            )
        )
        db.execute(
            insert(InstallmentRecord).values(
                id="INST-OLD",
                payment_id="PMT-OLD",
                amount=250.0,
                payment_date="2024-03-02T08:30:00Z",
            )
        )
        db.commit()

        found = payment_crud.find_by_id(db, payment_id="PMT-OLD")
        assert found.amount == 750.0
        assert found.payment_date == datetime(2024, 3, 1, 8, 30, tzinfo=UTC)
        assert found.due_date == datetime(2024, 4, 1, 8, 30, 0, 500000, tzinfo=UTC)
        assert found.installments[0].payment_date == datetime(2024, 3, 2, 8, 30, tzinfo=UTC)
    finally:
        db.close()


def test_installments_sort_by_time_across_timestamp_formats():
    db = SessionLocal()
    try:
        payment_crud.create(db, payment=make_payment(payment_id="PMT-MIX", status=PaymentStatus.INSTALLMENT))
        db.execute(
            insert(InstallmentRecord),
            [
                {"id": "INST-late", "payment_id": "PMT-MIX", "amount": 20.0, "payment_date": "2024-03-02 23:00:00"},
                {"id": "INST-early", "payment_id": "PMT-MIX", "amount": 10.0, "payment_date": "2024-03-02T08:30:00Z"},
            ],
        )
        db.commit()

        single = payment_crud.find_by_id(db, payment_id="PMT-MIX")
        listed = payment_crud.find_all(db)
        for payment in (single, listed[0]):
            assert [installment.id for installment in payment.installments] == ["INST-early", "INST-late"]
    finally:
        db.close()


def test_find_all_splits_large_id_lists_and_keeps_order(select_counter, monkeypatch):
    monkeypatch.setattr("backend.app.crud.crud_payment.ID_BATCH_SIZE", 2)
    db = SessionLocal()
    try:
        for index in range(5):
            payment_crud.create(
                db,
                payment=make_payment(payment_id=f"PMT-{index}", installment_amounts=(10.0,) * index, offset_minutes=index),
            )
        select_counter.count = 0
        listed = payment_crud.find_all(db)
        assert select_counter.count == 1 + 3
        assert [payment.id for payment in listed] == [f"PMT-{index}" for index in range(5)]
        assert [len(payment.installments) for payment in listed] == [0, 1, 2, 3, 4]
    finally:
        db.close()


def test_undecodable_date_is_an_error_not_a_default():
    db = SessionLocal()
    try:
        db.execute(
            insert(PaymentRecord).values(
                id="PMT-BAD",
                transaction_id="TXN-BAD",
                amount=10.0,
                method="CASH",
                status="PAID",
                payment_date="first of March",
            )
        )
        db.commit()
        with pytest.raises(DatabaseError) as excinfo:
            payment_crud.find_by_id(db, payment_id="PMT-BAD")
        assert excinfo.value.code == "DECODE"
    finally:
        db.close()


def test_aggregate_rows_keeps_first_seen_order_and_skips_null_children():
    def row(payment_id, inst_id=None, inst_date=None):
        return {
            "id": payment_id,
            "transaction_id": f"TXN-{payment_id}",
            "amount": 100.0,
            "method": "CASH",
            "status": "INSTALLMENT",
            "payment_date": "2030-01-01T10:00:00+00:00",
            "due_date": None,
            "inst_id": inst_id,
            "inst_payment_id": payment_id if inst_id else None,
            "inst_amount": 10.0 if inst_id else None,
            "inst_date": inst_date,
        }

    rows = [
        row("PMT-B", "INST-B1", "2030-01-02T00:00:00+00:00"),
        row("PMT-A"),
        row("PMT-B", "INST-B2", "2030-01-03T00:00:00+00:00"),
    ]
    payments = aggregate_rows(rows)
    assert [payment.id for payment in payments] == ["PMT-B", "PMT-A"]
    assert [installment.id for installment in payments[0].installments] == ["INST-B1", "INST-B2"]
    assert payments[1].installments == []
    assert aggregate_rows([]) == []


def test_read_amount_fallbacks():
    assert read_amount(12.5) == 12.5
    assert read_amount(7) == 7.0
    assert read_amount("3.25") == 3.25
    assert read_amount(struct.pack("<d", 99.5)) == 99.5
    assert read_amount(struct.pack("<f", 1.5)) == 1.5
    assert read_amount(None) == 0.0
    assert read_amount(b"\x00") == 0.0
