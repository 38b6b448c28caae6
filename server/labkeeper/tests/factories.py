from datetime import datetime, timedelta

from labkeeper.assets.service import mint_sequential
from labkeeper.auth import Identity
from labkeeper.inventory.service import add_stock
from labkeeper.models import Item, Lab, User


T0 = datetime(2026, 3, 2, 9, 0, 0)


def create_lab(db, name="Electronics Lab", code="ELX"):
    lab = Lab(name=name, code=code, is_active=True)
    db.add(lab)
    db.flush()
    return lab


def create_user(db, *, role="student", lab=None, email=None, reg_no=None, name=None):
    user = User(
        name=name or f"{role.title()} User",
        email=email or f"{role}-{reg_no or (lab.code if lab else 'x')}@uni.test".lower(),
        role=role,
        lab_id=lab.id if lab else None,
        reg_no=reg_no,
        is_active=True,
    )
    db.add(user)
    db.flush()
    return user


def create_student(db, reg_no="21BCE1001"):
    return create_user(db, role="student", reg_no=reg_no, email=f"{reg_no.lower()}@uni.test")


def create_item(db, *, sku="ARD-UNO", name="Arduino Uno", tracking_type="bulk", is_student_visible=True):
    item = Item(
        sku=sku,
        name=name,
        category="Microcontrollers",
        tracking_type=tracking_type,
        is_student_visible=is_student_visible,
        is_active=True,
        last_asset_seq=0,
        total_quantity=0,
        available_quantity=0,
        temp_reserved_quantity=0,
        damaged_quantity=0,
    )
    db.add(item)
    db.flush()
    return item


def stock(db, lab, item, quantity, reserved=0):
    if item.tracking_type == "asset":
        mint_sequential(db, item_id=item.id, lab_id=lab.id, count=quantity, vendor="Robu")
    return add_stock(db, lab_id=lab.id, item_id=item.id, quantity=quantity, reserved_quantity=reserved)


def identity(user):
    return Identity.from_user(user)


def line(lab, item, quantity):
    return {"lab_id": lab.id, "item_id": item.id, "quantity": quantity}


def request_kwargs(student, lines, now=T0, **overrides):
    kwargs = {
        "student_id": student.id,
        "items": lines,
        "faculty_email": "guide@uni.test",
        "expected_return_date": now + timedelta(days=14),
        "project_name": "Line follower robot",
        "now": now,
    }
    kwargs.update(overrides)
    return kwargs
