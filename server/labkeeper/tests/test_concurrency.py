from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from labkeeper.db import Base, run_in_transaction
from labkeeper.errors import ConflictError, InsufficientStockError, ValidationError
from labkeeper.inventory.service import get_lab_inventory, reserve_temp
from labkeeper.models import ItemAsset, Transaction
from labkeeper.transactions.service import create_transfer, decide_transfer, raise_request
from labkeeper.tests.factories import create_item, create_lab, create_student, create_user, identity, stock


@pytest.fixture()
def file_sessions(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'labkeeper.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


def test_stale_counter_write_is_detected(file_sessions):
    with file_sessions() as setup:
        lab = create_lab(setup)
        item = create_item(setup)
        stock(setup, lab, item, 10)
        setup.commit()
        lab_id, item_id = lab.id, item.id

    first = file_sessions()
    second = file_sessions()
    try:
        first_row = get_lab_inventory(first, lab_id, item_id)
        second_row = get_lab_inventory(second, lab_id, item_id)

        second_row.temp_reserved_quantity += 4
        second.commit()

        first_row.temp_reserved_quantity += 8
        with pytest.raises(StaleDataError):
            first.flush()
    finally:
        first.rollback()
        first.close()
        second.close()


def test_retry_rereads_committed_counters(file_sessions):
    with file_sessions() as setup:
        lab = create_lab(setup)
        item = create_item(setup)
        stock(setup, lab, item, 10)
        setup.commit()
        lab_id, item_id = lab.id, item.id

    calls = []

    def hold_with_interference(db):
        calls.append(db)
        get_lab_inventory(db, lab_id, item_id)
        if len(calls) == 1:
            with file_sessions() as rival:
                get_lab_inventory(rival, lab_id, item_id).temp_reserved_quantity += 5
                rival.commit()
        return reserve_temp(db, lab_id=lab_id, item_id=item_id, quantity=3)

    db = file_sessions()
    try:
        inventory = run_in_transaction(db, hold_with_interference)
        assert len(calls) == 2
        assert inventory.temp_reserved_quantity == 8
        assert inventory.usable_quantity == 2
    finally:
        db.close()


def test_retry_gives_up_with_conflict(db):
    attempts = []

    def always_stale(session):
        attempts.append(1)
        raise StaleDataError("row changed underneath")

    with pytest.raises(ConflictError):
        run_in_transaction(db, always_stale, attempts=3)
    assert len(attempts) == 3


def test_other_errors_roll_back_without_retry(db):
    lab = create_lab(db)
    db.commit()
    attempts = []

    def rename_then_fail(session):
        attempts.append(1)
        lab.name = "Renamed Lab"
        session.flush()
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        run_in_transaction(db, rename_then_fail)

    assert len(attempts) == 1
    assert lab.name == "Electronics Lab"


def _borrow(student_id, lab_id, item_id):
    return {
        "student_id": student_id,
        "items": [{"lab_id": lab_id, "item_id": item_id, "quantity": 1}],
        "faculty_email": "guide@uni.test",
        "expected_return_date": datetime.utcnow() + timedelta(days=7),
        "project_name": "Line follower robot",
    }


def test_racing_students_cannot_both_hold_the_last_unit(file_sessions):
    with file_sessions() as setup:
        lab = create_lab(setup)
        item = create_item(setup)
        stock(setup, lab, item, 1)
        first = create_student(setup, reg_no="21BCE1001")
        second = create_student(setup, reg_no="21BCE1002")
        setup.commit()
        lab_id, item_id, first_id, second_id = lab.id, item.id, first.id, second.id

    calls = []

    def raise_after_rival(db):
        calls.append(db)
        # Our session has read the row before the rival commits its hold.
        get_lab_inventory(db, lab_id, item_id)
        if len(calls) == 1:
            with file_sessions() as rival:
                run_in_transaction(rival, raise_request, **_borrow(first_id, lab_id, item_id))
        return raise_request(db, **_borrow(second_id, lab_id, item_id))

    db = file_sessions()
    try:
        with pytest.raises(InsufficientStockError):
            run_in_transaction(db, raise_after_rival)
    finally:
        db.close()

    with file_sessions() as check:
        inventory = get_lab_inventory(check, lab_id, item_id)
        assert inventory.temp_reserved_quantity == 1
        assert inventory.usable_quantity == 0
        assert [row.student_id for row in check.query(Transaction).all()] == [first_id]


def test_racing_transfer_approvals_cannot_oversubscribe_assets(file_sessions):
    with file_sessions() as setup:
        lender = create_lab(setup)
        borrower_a = create_lab(setup, name="Robotics Lab", code="ROB")
        borrower_b = create_lab(setup, name="Embedded Lab", code="EMB")
        boards = create_item(setup, sku="RPI-4", name="Raspberry Pi 4", tracking_type="asset")
        stock(setup, lender, boards, 3)
        lender_staff = identity(create_user(setup, role="incharge", lab=lender))
        transfers = []
        for borrower in (borrower_a, borrower_b):
            staff = identity(create_user(setup, role="incharge", lab=borrower))
            transfer = create_transfer(
                setup,
                staff,
                source_lab_id=lender.id,
                items=[{"item_id": boards.id, "quantity": 2}],
                transfer_type="temporary",
                project_name="Drone swarm demo",
                expected_return_date=datetime.utcnow() + timedelta(days=10),
            )
            transfers.append(transfer.transaction_id)
        setup.commit()
        lender_id, boards_id = lender.id, boards.id

    calls = []

    def approve_after_rival(db):
        calls.append(db)
        get_lab_inventory(db, lender_id, boards_id)
        if len(calls) == 1:
            with file_sessions() as rival:
                run_in_transaction(rival, decide_transfer, lender_staff, transfers[0], decision="approve")
        return decide_transfer(db, lender_staff, transfers[1], decision="approve")

    db = file_sessions()
    try:
        with pytest.raises(InsufficientStockError):
            run_in_transaction(db, approve_after_rival)
    finally:
        db.close()

    with file_sessions() as check:
        issued = check.query(ItemAsset).filter(ItemAsset.status == "issued").all()
        assert len(issued) == 2
        statuses = {
            row.transaction_id: row.status
            for row in check.query(Transaction).filter(Transaction.transaction_id.in_(transfers))
        }
        assert statuses == {transfers[0]: "active", transfers[1]: "raised"}
        assert get_lab_inventory(check, lender_id, boards_id).usable_quantity == 1
