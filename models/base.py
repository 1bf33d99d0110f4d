# models/base.py
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine, event
from contextlib import contextmanager
import os


class Base(DeclarativeBase):
    pass


def make_engine(url: str):
    kwargs = {"pool_pre_ping": True, "future": True}
    if not url.startswith("sqlite"):
        return create_engine(url, **kwargs)

    # concurrent writers wait on the file lock instead of failing fast
    kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}
    engine = create_engine(url, **kwargs)

    # pysqlite: let SQLAlchemy own BEGIN, and take the write lock up front so
    # two read-then-write transactions never deadlock on lock upgrade
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_engine_from_env():
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    return make_engine(url)


# Private globals
_Engine = None
_SessionFactory = None


def init_engine_and_session():
    """Idempotently init engine + session factory and return them."""
    global _Engine, _SessionFactory
    if _Engine is None:
        _Engine = make_engine_from_env()
        _SessionFactory = sessionmaker(
            bind=_Engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,  # prevents DetachedInstanceError after commit
        )
    return _Engine, _SessionFactory


def SessionLocal():
    """Return a new Session bound to the current engine."""
    _, factory = init_engine_and_session()
    return factory()


@contextmanager
def session_scope():
    """Provide a transactional scope around a series of operations."""
    s = SessionLocal()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
