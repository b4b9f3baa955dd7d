import os
from datetime import datetime, timezone

# Settings are read once at import; fix the values tests rely on first.
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("WEBHOOK_VERIFICATION", "always")
os.environ.setdefault("STEP_UP_CODE_PEPPER", "test-pepper")
os.environ.setdefault("SECURE_COOKIES", "false")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
import app.models  # noqa: F401
from app.services.payments.adapters import AdapterRegistry
from app.services.payments.idempotency import IdempotencyStore
from app.services.payments.reconciler import PaymentReconciler
from tests.mocks import FakeAdapter, RecordingQueue, make_order


@pytest.fixture()
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite defers BEGIN on its own; take control so SAVEPOINT works.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notification_queue():
    return RecordingQueue()


@pytest.fixture()
def capture_queue():
    return RecordingQueue()


@pytest.fixture()
def card_adapter():
    return FakeAdapter("card")


@pytest.fixture()
def deferred_adapter():
    return FakeAdapter("deferred")


@pytest.fixture()
def registry(card_adapter, deferred_adapter):
    return AdapterRegistry(
        [card_adapter, FakeAdapter("qr_wallet_a"), FakeAdapter("qr_wallet_b"), deferred_adapter]
    )


@pytest.fixture()
def reconciler(registry, notification_queue, capture_queue):
    return PaymentReconciler(
        registry,
        IdempotencyStore(retention_days=30),
        enqueue_notifications=notification_queue,
        enqueue_capture=capture_queue,
    )


@pytest.fixture()
def order(db_session):
    return make_order(db_session)


@pytest.fixture()
def now():
    return datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
