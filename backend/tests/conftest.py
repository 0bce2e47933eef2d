from __future__ import annotations

import base64
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the project root (which exposes the ``backend`` package) is on ``sys.path``
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# The application must not touch a real database or run Alembic while under test.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "0"

from backend.app import models, schemas  # noqa: E402
from backend.app.database import Base, get_db  # noqa: E402
from backend.app.main import app  # noqa: E402
from backend.app.security import generate_password_hash  # noqa: E402
from backend.app.services import GiftCardService  # noqa: E402

ADMIN_EMAIL = "admin@atlurbanfarms.com"


@pytest.fixture(scope="session")
def security_settings() -> dict:
    password = "Adm1nS3cret!"

    os.environ["ADMIN_USERNAME"] = ADMIN_EMAIL
    os.environ["ADMIN_JWT_SECRET"] = base64.urlsafe_b64encode(os.urandom(32)).decode()
    os.environ["ACCESS_TOKEN_EXPIRE_MINUTES"] = "60"
    # A low iteration count keeps the suite fast; production hashes use the default.
    os.environ["ADMIN_PASSWORD_HASH"] = generate_password_hash(password, iterations=1_000)

    return {"username": ADMIN_EMAIL, "password": password}


@pytest.fixture(scope="session", autouse=True)
def _ensure_security_settings(security_settings: dict) -> Generator[None, None, None]:
    yield


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_session: Session, security_settings: dict) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            db_session.expire_all()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        response = test_client.post(
            "/auth/token",
            json={
                "username": security_settings["username"],
                "password": security_settings["password"],
            },
        )
        assert response.status_code == 200
        token = response.json()["access_token"]
        test_client.headers.update({"Authorization": f"Bearer {token}"})
        yield test_client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def admin_customer(db_session: Session) -> models.Customer:
    customer = models.Customer(email=ADMIN_EMAIL, first_name="Ada", last_name="Okafor")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def order(db_session: Session) -> models.Order:
    shopper = models.Customer(email="shopper@example.com", first_name="Sam")
    db_session.add(shopper)
    db_session.flush()
    order = models.Order(order_number="ATL-10042", customer_id=shopper.id)
    db_session.add(order)
    db_session.commit()
    return order


@pytest.fixture
def issue_card(db_session: Session) -> Callable[..., models.GiftCard]:
    def _issue(amount: str = "50.00", **fields) -> models.GiftCard:
        payload = schemas.GiftCardCreate(initial_balance=Decimal(amount), **fields)
        return GiftCardService.issue_gift_card(db_session, payload)

    return _issue
