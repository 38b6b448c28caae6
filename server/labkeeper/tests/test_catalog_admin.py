import pytest

from labkeeper.assets.service import list_assets
from labkeeper.catalog.service import (
    StockAdjustment,
    add_item_stock,
    list_item_labs,
    list_student_catalog,
    list_transferable_items,
    remove_item_from_lab,
    update_item,
)
from labkeeper.component_requests.service import (
    create_component_request,
    list_lab_component_requests,
    list_my_component_requests,
    update_component_request_status,
)
from labkeeper.errors import ConflictError, NotFoundError, ValidationError
from labkeeper.inventory.service import get_lab_inventory
from labkeeper.models import Item, Lab
from labkeeper.transactions.service import raise_request
from labkeeper.tests.factories import create_item, create_lab, create_student, create_user, identity, line, request_kwargs, stock


@pytest.fixture()
def staff(db):
    lab = create_lab(db)
    return identity(create_user(db, role="incharge", lab=lab))


def test_add_item_stock_creates_catalogue_entry(db, staff):
    inventory, assets = add_item_stock(
        db,
        staff,
        sku="RPI-4",
        name="Raspberry Pi 4",
        category="Single board computers",
        tracking_type="asset",
        quantity=3,
        vendor="Robu",
        invoice_number="INV-22",
    )

    item = db.query(Item).filter(Item.sku == "RPI-4").one()
    assert item.tracking_type == "asset"
    assert inventory.total_quantity == 3
    assert [asset.asset_tag for asset in assets] == ["RPI-4-0001", "RPI-4-0002", "RPI-4-0003"]
    assert {asset.invoice_number for asset in assets} == {"INV-22"}


def test_add_item_stock_validates_new_items(db, staff):
    with pytest.raises(ValidationError):
        add_item_stock(db, staff, sku="  ", name="Nameless", quantity=1)
    with pytest.raises(ValidationError):
        add_item_stock(db, staff, sku="NEW-1", name=None, quantity=1)
    with pytest.raises(ValidationError):
        add_item_stock(db, staff, sku="NEW-1", name="Thing", tracking_type="pallet", quantity=1)
    with pytest.raises(ValidationError):
        add_item_stock(db, staff, sku="RPI-4", name="Raspberry Pi 4", tracking_type="asset", quantity=2)


def test_tracking_type_is_fixed_after_creation(db, staff):
    add_item_stock(db, staff, sku="RES-10K", name="Resistor 10k", quantity=100)
    item = db.query(Item).filter(Item.sku == "RES-10K").one()

    with pytest.raises(ValidationError):
        add_item_stock(db, staff, sku="RES-10K", tracking_type="asset", quantity=1, vendor="Robu")
    with pytest.raises(ValidationError):
        update_item(db, staff, item.id, StockAdjustment(tracking_type="asset"))


def test_update_item_adds_and_removes_stock(db, staff):
    inventory, _ = add_item_stock(db, staff, sku="RES-10K", name="Resistor 10k", quantity=100)
    item_id = inventory.item_id

    with pytest.raises(ValidationError):
        update_item(db, staff, item_id, StockAdjustment(delta=10))

    inventory, _ = update_item(db, staff, item_id, StockAdjustment(delta=10, vendor="Robu", name="Resistor 10k 1/4W"))
    assert inventory.total_quantity == 110
    assert db.get(Item, item_id).name == "Resistor 10k 1/4W"

    inventory, _ = update_item(db, staff, item_id, StockAdjustment(delta=-30, reserved_quantity=5))
    assert inventory.total_quantity == 80
    assert inventory.available_quantity == 75


def test_update_asset_item_retires_selected_tags(db, staff):
    inventory, _ = add_item_stock(
        db, staff, sku="RPI-4", name="Raspberry Pi 4", tracking_type="asset", quantity=3, vendor="Robu"
    )
    item_id = inventory.item_id

    with pytest.raises(ValidationError):
        update_item(db, staff, item_id, StockAdjustment(delta=-2, remove_asset_tags=["RPI-4-0002"]))

    inventory, _ = update_item(db, staff, item_id, StockAdjustment(delta=-1, remove_asset_tags=["RPI-4-0002"]))
    db.flush()

    assert inventory.total_quantity == 2
    remaining = list_assets(db, lab_id=staff.lab_id, item_id=item_id, status="available")
    assert [asset.asset_tag for asset in remaining] == ["RPI-4-0001", "RPI-4-0003"]


def test_remove_item_refuses_open_transactions(db, staff):
    lab_id = staff.lab_id
    inventory, _ = add_item_stock(db, staff, sku="ARD-UNO", name="Arduino Uno", quantity=5)
    student = create_student(db)
    lab = db.get(Lab, lab_id)
    raise_request(db, **request_kwargs(student, [line(lab, inventory.item, 1)]))
    db.flush()

    with pytest.raises(ConflictError):
        remove_item_from_lab(db, staff, inventory.item_id)


def test_remove_item_deactivates_when_no_lab_carries_it(db, staff):
    other_lab = create_lab(db, name="Robotics Lab", code="ROB")
    other_staff = identity(create_user(db, role="incharge", lab=other_lab))
    inventory, _ = add_item_stock(
        db, staff, sku="RPI-4", name="Raspberry Pi 4", tracking_type="asset", quantity=2, vendor="Robu"
    )
    add_item_stock(db, other_staff, sku="RPI-4", tracking_type="asset", quantity=1, vendor="Robu")
    item_id = inventory.item_id

    item = remove_item_from_lab(db, staff, item_id)
    assert item.is_active is True
    assert item.total_quantity == 1
    assert get_lab_inventory(db, staff.lab_id, item_id) is None
    assert {asset.status for asset in list_assets(db, lab_id=staff.lab_id, item_id=item_id)} == {"retired"}

    item = remove_item_from_lab(db, other_staff, item_id)
    assert item.is_active is False
    with pytest.raises(NotFoundError):
        remove_item_from_lab(db, other_staff, item_id)


def test_student_catalog_hides_staff_only_items(db):
    lab = create_lab(db)
    visible = create_item(db)
    hidden = create_item(db, sku="SCOPE-1", name="Oscilloscope", is_student_visible=False)
    stock(db, lab, visible, 10, reserved=2)
    stock(db, lab, hidden, 1)

    catalog = list_student_catalog(db)
    assert [(entry["sku"], entry["usable_quantity"]) for entry in catalog] == [("ARD-UNO", 8)]
    assert list_student_catalog(db, search="scope") == []
    assert list_item_labs(db, visible.id) == [
        {"lab_id": lab.id, "lab_name": "Electronics Lab", "lab_code": "ELX", "usable_quantity": 8}
    ]
    with pytest.raises(NotFoundError):
        list_item_labs(db, hidden.id)
    assert {row.item_id for row in list_transferable_items(db, lab.id)} == {hidden.id, visible.id}


def test_component_request_flow(db, staff):
    student = identity(create_student(db))
    other_lab = create_lab(db, name="Robotics Lab", code="ROB")
    outsider = identity(create_user(db, role="incharge", lab=other_lab))

    request = create_component_request(
        db,
        student,
        lab_id=staff.lab_id,
        component_name=" LiDAR sensor ",
        quantity_requested=2,
        use_case="Mapping for final year project",
        urgency="high",
    )

    assert request.status == "pending"
    assert request.component_name == "LiDAR sensor"
    assert request.lab_name_snapshot == "Electronics Lab"
    assert list_my_component_requests(db, student) == [request]
    assert list_lab_component_requests(db, staff, urgency="high") == [request]
    assert list_lab_component_requests(db, outsider) == []

    with pytest.raises(NotFoundError):
        update_component_request_status(db, outsider, request.id, status="approved")
    with pytest.raises(ValidationError):
        update_component_request_status(db, staff, request.id, status="pending")

    update_component_request_status(db, staff, request.id, status="reviewed")
    update_component_request_status(db, staff, request.id, status="approved", admin_remarks="Ordered from vendor")
    assert request.admin_remarks == "Ordered from vendor"
    with pytest.raises(ConflictError):
        update_component_request_status(db, staff, request.id, status="rejected")


@pytest.mark.parametrize(
    "overrides",
    [
        {"component_name": ""},
        {"use_case": "   "},
        {"quantity_requested": 0},
        {"urgency": "critical"},
    ],
)
def test_component_request_validation(db, staff, overrides):
    student = identity(create_student(db))
    kwargs = {
        "lab_id": staff.lab_id,
        "component_name": "Servo motor",
        "quantity_requested": 4,
        "use_case": "Robotic arm",
    }
    kwargs.update(overrides)

    with pytest.raises(ValidationError):
        create_component_request(db, student, **kwargs)
