import re

import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from labkeeper.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from labkeeper.inventory.service import (
    add_stock,
    adjust_stock,
    commit_issue,
    commit_return,
    get_lab_inventory,
    get_usable_qty,
    get_usable_qty_map,
    lock_lab_inventories,
    release_temp,
    reserve_temp,
)
from labkeeper.models import InventoryMovement, Item
from labkeeper.tests.factories import create_item, create_lab


def _assert_counters_consistent(inventory):
    assert inventory.available_quantity == (
        inventory.total_quantity - inventory.reserved_quantity - inventory.issued_quantity
    )
    assert inventory.usable_quantity >= 0
    assert 0 <= inventory.reserved_quantity <= inventory.total_quantity


def test_add_stock_creates_lab_row_and_derives_available(db):
    lab = create_lab(db)
    item = create_item(db)

    inventory = add_stock(db, lab_id=lab.id, item_id=item.id, quantity=20, reserved_quantity=5)

    assert inventory.total_quantity == 20
    assert inventory.reserved_quantity == 5
    assert inventory.available_quantity == 15
    assert get_usable_qty(db, lab.id, item.id) == 15
    _assert_counters_consistent(inventory)

    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=4)
    assert inventory.total_quantity == 24
    assert inventory.available_quantity == 19


@pytest.mark.parametrize("quantity,reserved", [(0, 0), (-3, 0), (5, 6), (5, -1)])
def test_add_stock_rejects_invalid_quantities(db, quantity, reserved):
    lab = create_lab(db)
    item = create_item(db)

    with pytest.raises(ValidationError):
        add_stock(db, lab_id=lab.id, item_id=item.id, quantity=quantity, reserved_quantity=reserved)


def test_adjust_stock_cannot_remove_reserved_units(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10, reserved_quantity=4)

    with pytest.raises(ConflictError):
        adjust_stock(db, lab_id=lab.id, item_id=item.id, delta=-7)

    inventory = adjust_stock(db, lab_id=lab.id, item_id=item.id, delta=-6)
    assert inventory.total_quantity == 4
    assert inventory.available_quantity == 0
    _assert_counters_consistent(inventory)


def test_adjust_stock_cannot_remove_units_on_hold(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10)
    reserve_temp(db, lab_id=lab.id, item_id=item.id, quantity=8)

    with pytest.raises(ConflictError):
        adjust_stock(db, lab_id=lab.id, item_id=item.id, delta=-3)


def test_adjust_stock_reserved_must_stay_within_total(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10)

    with pytest.raises(ValidationError):
        adjust_stock(db, lab_id=lab.id, item_id=item.id, new_reserved=11)
    with pytest.raises(ValidationError):
        adjust_stock(db, lab_id=lab.id, item_id=item.id, new_reserved=-1)

    inventory = adjust_stock(db, lab_id=lab.id, item_id=item.id, new_reserved=3)
    assert inventory.available_quantity == 7


def test_adjust_stock_unknown_lab_row(db):
    lab = create_lab(db)
    item = create_item(db)

    with pytest.raises(NotFoundError):
        adjust_stock(db, lab_id=lab.id, item_id=item.id, delta=1)


def test_reserve_then_release_restores_usable_exactly(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=12, reserved_quantity=2)
    before = get_usable_qty(db, lab.id, item.id)

    reserve_temp(db, lab_id=lab.id, item_id=item.id, quantity=7)
    assert get_usable_qty(db, lab.id, item.id) == before - 7

    released = release_temp(db, lab_id=lab.id, item_id=item.id, quantity=7)
    assert released == 7
    assert get_usable_qty(db, lab.id, item.id) == before


def test_release_temp_clamps_at_zero(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=5)
    reserve_temp(db, lab_id=lab.id, item_id=item.id, quantity=2)

    assert release_temp(db, lab_id=lab.id, item_id=item.id, quantity=2) == 2
    assert release_temp(db, lab_id=lab.id, item_id=item.id, quantity=2) == 0

    inventory = get_lab_inventory(db, lab.id, item.id)
    assert inventory.temp_reserved_quantity == 0
    assert inventory.usable_quantity == 5


def test_reserve_temp_reports_violation(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=5, reserved_quantity=2)

    with pytest.raises(InsufficientStockError) as excinfo:
        reserve_temp(db, lab_id=lab.id, item_id=item.id, quantity=4)

    assert excinfo.value.violations == [
        {"lab_id": lab.id, "item_id": item.id, "requested_qty": 4, "usable_qty": 3}
    ]


def test_commit_issue_and_return_move_issued_counter(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10)

    inventory = commit_issue(db, lab_id=lab.id, item_id=item.id, quantity=4, reference_id="TXN-1")
    assert inventory.total_quantity == 10
    assert inventory.issued_quantity == 4
    assert inventory.available_quantity == 6
    _assert_counters_consistent(inventory)

    commit_return(db, lab_id=lab.id, item_id=item.id, quantity=4, damaged_quantity=1, reference_id="TXN-1")
    assert inventory.issued_quantity == 0
    assert inventory.total_quantity == 9
    assert inventory.damaged_quantity == 1
    assert inventory.available_quantity == 9
    _assert_counters_consistent(inventory)


def test_permanent_issue_moves_total_between_labs(db):
    source = create_lab(db)
    target = create_lab(db, name="Robotics Lab", code="ROB")
    item = create_item(db)
    add_stock(db, lab_id=source.id, item_id=item.id, quantity=10)

    commit_issue(db, lab_id=source.id, item_id=item.id, quantity=3, transfer_to_lab_id=target.id)

    source_row = get_lab_inventory(db, source.id, item.id)
    target_row = get_lab_inventory(db, target.id, item.id)
    assert source_row.total_quantity == 7
    assert source_row.issued_quantity == 0
    assert target_row.total_quantity == 3
    assert target_row.available_quantity == 3


def test_commit_return_cannot_exceed_issued(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10)
    commit_issue(db, lab_id=lab.id, item_id=item.id, quantity=2)

    with pytest.raises(ConflictError):
        commit_return(db, lab_id=lab.id, item_id=item.id, quantity=3)


def test_item_aggregates_are_reconciled_across_labs(db):
    lab_a = create_lab(db)
    lab_b = create_lab(db, name="Robotics Lab", code="ROB")
    item = create_item(db)

    add_stock(db, lab_id=lab_a.id, item_id=item.id, quantity=10, reserved_quantity=2)
    add_stock(db, lab_id=lab_b.id, item_id=item.id, quantity=5)
    reserve_temp(db, lab_id=lab_b.id, item_id=item.id, quantity=3)

    refreshed = db.get(Item, item.id)
    assert refreshed.total_quantity == 15
    assert refreshed.available_quantity == 13
    assert refreshed.temp_reserved_quantity == 3
    assert refreshed.usable_quantity == 10
    assert get_usable_qty_map(db, [item.id]) == {item.id: 10}
    assert get_usable_qty_map(db, [item.id], lab_id=lab_b.id) == {item.id: 2}


def test_every_mutation_appends_a_movement(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10, reserved_quantity=1)
    reserve_temp(db, lab_id=lab.id, item_id=item.id, quantity=2, reference_id="TXN-9")
    release_temp(db, lab_id=lab.id, item_id=item.id, quantity=2, reference_id="TXN-9")
    db.flush()

    movements = db.query(InventoryMovement).order_by(InventoryMovement.id.asc()).all()
    assert [(m.movement_type, m.qty_delta) for m in movements] == [
        ("STOCK_ADD", 10),
        ("RESERVE_SET", 1),
        ("TEMP_HOLD", 2),
        ("TEMP_RELEASE", -2),
    ]
    assert movements[2].reference_id == "TXN-9"


class _SelectRecorder:
    """Collects every ORM select rendered as Postgres SQL, where row locks are visible."""

    def __init__(self, session):
        self.session = session
        self.statements = []

    def __enter__(self):
        event.listen(self.session, "do_orm_execute", self._record)
        return self

    def __exit__(self, *exc):
        event.remove(self.session, "do_orm_execute", self._record)

    def _record(self, state):
        if state.is_select:
            self.statements.append(str(state.statement.compile(dialect=postgresql.dialect())))

    @property
    def locked_tables(self):
        return [
            re.search(r"\bFROM (\w+)", sql).group(1)
            for sql in self.statements
            if "FOR UPDATE" in sql
        ]


def test_item_totals_are_summed_under_the_item_lock(db):
    lab = create_lab(db)
    item = create_item(db)
    add_stock(db, lab_id=lab.id, item_id=item.id, quantity=10)
    db.flush()

    with _SelectRecorder(db) as recorder:
        reserve_temp(db, lab_id=lab.id, item_id=item.id, quantity=2)

    assert recorder.locked_tables == ["lab_inventory", "items"]
    item_lock = next(
        index for index, sql in enumerate(recorder.statements) if "FOR UPDATE" in sql and "FROM items" in sql
    )
    summed = next(
        index for index, sql in enumerate(recorder.statements) if "sum(lab_inventory.total_quantity)" in sql
    )
    assert item_lock < summed
    assert db.get(Item, item.id).temp_reserved_quantity == 2


def test_lab_rows_are_locked_before_item_rows(db):
    lab_a = create_lab(db)
    lab_b = create_lab(db, name="Robotics Lab", code="ROB")
    item = create_item(db)
    add_stock(db, lab_id=lab_a.id, item_id=item.id, quantity=5)
    add_stock(db, lab_id=lab_b.id, item_id=item.id, quantity=5)
    db.flush()

    with _SelectRecorder(db) as recorder:
        locked = lock_lab_inventories(db, [(lab_b.id, item.id), (lab_a.id, item.id)])

    assert sorted(locked) == [(lab_a.id, item.id), (lab_b.id, item.id)]
    assert recorder.locked_tables == ["lab_inventory", "lab_inventory", "items"]
