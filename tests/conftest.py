# tests/conftest.py
import os
import tempfile

# self-contained by default; export DATABASE_URL to run against PostgreSQL
_DB_DIR = tempfile.mkdtemp(prefix="billing-tests-")
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(_DB_DIR, "test.db"))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("METRICS_ENABLED", "0")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
os.environ.setdefault("APP_TZ", "Europe/Moscow")

import pytest  # noqa: E402
from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402


@pytest.fixture(scope="session")
def db_engine():
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="session")
def app(db_engine):
    return create_app({"TESTING": True, "WTF_CSRF_ENABLED": False,
                       "MATERIALIZE_ON_VIEW": False})


@pytest.fixture(autouse=True)
def _db_clean(db_engine):
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def client(app):
    return app.test_client()
