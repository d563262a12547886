"""
Shared pytest fixtures for all test modules.

Uses an in-memory SQLite database (StaticPool) so every test
function gets a clean, isolated database — no disk I/O, no state leakage.
"""
import os

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
from datetime import datetime, timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from typing import Optional

from app.database import Base, get_db
from app.security import create_merchant_token
from app import models


MERCHANT_ID = "merchant_1"
OTHER_MERCHANT_ID = "merchant_2"


# ---------------------------------------------------------------------------
# In-memory database engine shared across all fixtures in a test session.
# StaticPool forces all SQLAlchemy connections to reuse the same underlying
# sqlite3 connection, which is required for in-memory SQLite.
# ---------------------------------------------------------------------------
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE)


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate all tables before each test for full isolation."""
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db(reset_db):
    """Yield a SQLAlchemy session backed by the in-memory test database."""
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    """
    FastAPI TestClient with the real DB dependency overridden to use
    the in-memory test session.  The TestClient is NOT used as a context
    manager so the lifespan hook (table creation, demo seeding) is skipped.
    """
    from app.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def file_sessions(tmp_path):
    """
    Session factory on a file-backed SQLite database, for tests where a
    second connection must see what another session committed.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'pos.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def file_db(file_sessions):
    session = file_sessions()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_client(file_db):
    """TestClient whose requests use the file-backed session."""
    from app.main import app

    def override_get_db():
        yield file_db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_merchant_token(MERCHANT_ID)}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {create_merchant_token(OTHER_MERCHANT_ID)}"}


# ---------------------------------------------------------------------------
# Helper — not a fixture — so any test file can import and call it directly.
# ---------------------------------------------------------------------------
def make_txn(
    db,
    txn_id: str,
    merchant_id: str = MERCHANT_ID,
    amount: float = 100.00,
    currency: str = "USD",
    gateway: str = models.STRIPE,
    payment_method: str = "CARD",
    status: str = models.PENDING,
    type: str = models.SALE,
    sale_id: Optional[str] = "sale_1",
    gateway_order_id: Optional[str] = None,
    gateway_capture_id: Optional[str] = None,
    fee_amount: float = 0.0,
    net_amount: Optional[float] = None,
    created_at: Optional[datetime] = None,   # defaults to 1 hour ago
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    description: Optional[str] = None,
) -> models.Transaction:
    if created_at is None:
        created_at = datetime.utcnow() - timedelta(hours=1)
    txn = models.Transaction(
        id=txn_id,
        merchant_id=merchant_id,
        sale_id=sale_id,
        type=type,
        status=status,
        payment_method=payment_method,
        gateway=gateway,
        amount=amount,
        currency=currency,
        fee_amount=fee_amount,
        net_amount=net_amount if net_amount is not None else round(amount - fee_amount, 2),
        gateway_order_id=gateway_order_id,
        gateway_capture_id=gateway_capture_id,
        customer_name=customer_name,
        customer_email=customer_email,
        description=description,
        metadata_={},
        notes="",
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn
