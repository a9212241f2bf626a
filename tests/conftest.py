import os

# Must be set before the app modules build their engine.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["OPERATOR_TOKEN"] = "operator-secret"

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reservation_engine.api.routes.routes import get_db, get_payment_gateway
from reservation_engine.domain.inventory import InventoryKind
from reservation_engine.infrastructure.db.session import Base
from reservation_engine.infrastructure.payments.gateway import GatewayResult
from reservation_engine.infrastructure.repositories.inventory_ledger import InventoryLedger
from reservation_engine.main import app


class FakeGateway:
    """
    In-memory provider. Queue ProviderError instances in ``capture_errors``
    or ``refund_errors`` to fail the next calls before succeeding.
    """

    def __init__(self):
        self.captures: list[dict] = []
        self.refunds: list[dict] = []
        self.capture_errors: list[Exception] = []
        self.refund_errors: list[Exception] = []

    def capture(self, *, amount, currency, method, source, idempotency_key, timeout):
        self.captures.append(
            {
                "amount": amount,
                "currency": currency,
                "method": method,
                "source": source,
                "idempotency_key": idempotency_key,
                "timeout": timeout,
            }
        )
        if self.capture_errors:
            raise self.capture_errors.pop(0)
        return GatewayResult(provider_ref=f"pay_{source}", status="captured")

    def refund(self, *, provider_ref, amount, idempotency_key, timeout):
        self.refunds.append(
            {
                "provider_ref": provider_ref,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "timeout": timeout,
            }
        )
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        return GatewayResult(provider_ref=f"rfnd_{provider_ref}", status="processed")


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite handles BEGIN itself and breaks SAVEPOINT; hand it to SQLAlchemy.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(db):
    return InventoryLedger(db)


@pytest.fixture
def time_slot(db, ledger):
    unit = ledger.register_unit(
        InventoryKind.TIME_SLOT,
        name="Quadra 1 - Beach Tennis 18:00",
        capacity=4,
        price=10000,
    )
    db.commit()
    return unit


@pytest.fixture
def day_use_event(db, ledger):
    unit = ledger.register_unit(
        InventoryKind.DAY_USE_EVENT,
        name="Day Use Arena Sunset",
        capacity=10,
        price=8000,
    )
    db.commit()
    return unit


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    # No context manager: startup would try to reach the configured database.
    yield TestClient(app)

    app.dependency_overrides.clear()
