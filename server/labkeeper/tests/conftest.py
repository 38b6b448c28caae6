import os

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SEND_EMAILS", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labkeeper.auth import get_current_user
from labkeeper.db import Base
from labkeeper.main import app
from labkeeper.models import User


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def override_auth(request):
    if request.node.get_closest_marker("real_auth"):
        yield
        return

    app.dependency_overrides[get_current_user] = lambda: User(
        id=1,
        name="Test Admin",
        email="admin@labkeeper.local",
        role="super_admin",
        lab_id=None,
        is_active=True,
    )
    yield
    app.dependency_overrides.pop(get_current_user, None)
