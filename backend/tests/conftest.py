"""Pytest configuration and fixtures."""

import os

# Tenant identity for the app under test; must be set before etims is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("KRA_BASE_URL", "https://etims.test/etims-api")
os.environ.setdefault("KRA_TIN", "P051234567A")
os.environ.setdefault("KRA_BHF_ID", "00")
os.environ.setdefault("KRA_CMC_KEY", "test-cmc-key")
os.environ.setdefault("BUSINESS_NAME", "Mama Oliech Restaurant Ltd")
os.environ.setdefault("BUSINESS_ADDRESS", "Marcus Garvey Rd, Nairobi")
os.environ.setdefault("BUSINESS_PHONE", "+254700000000")
os.environ.setdefault("BUSINESS_EMAIL", "accounts@example.co.ke")

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Generator, List, Union
from zoneinfo import ZoneInfo

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from etims.core.config import FiscalConfig
from etims.core.metrics import FiscalMetrics
from etims.db.base import Base
from etims.db.session import get_db
# Import all models to ensure they're registered with Base.metadata
from etims.models import *
from etims.services.etims.client import EtimsClient, RetryPolicy
from etims.services.etims.ledger import TransactionLedger
from etims.services.etims.service import EtimsService
from etims.services.etims.store import SqlRecordStore

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

BASE_URL = "https://etims.test/etims-api"

FIXED_NOW = datetime(2026, 3, 14, 12, 30, 5, tzinfo=ZoneInfo("Africa/Nairobi"))

OK = {"resultCd": "000", "resultMsg": "It is succeeded", "data": None}

Reply = Union[Dict[str, Any], int, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeAuthority:
    """httpx handler standing in for the eTIMS API.

    Replies are queued per endpoint (``saveItem``, ``saveTrnsSalesOsdc``...).
    A dict is a 200 JSON body, an int an empty response with that status,
    an exception is raised as a transport error. The last queued reply
    repeats; endpoints with nothing queued answer ``resultCd 000``.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._replies: Dict[str, List[Reply]] = {}

    def on(self, endpoint: str, *replies: Reply) -> "FakeAuthority":
        self._replies.setdefault(endpoint, []).extend(replies)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._replies.get(_endpoint(request), [])
        reply = (queue.pop(0) if len(queue) > 1 else queue[0]) if queue else OK
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return httpx.Response(reply)
        if callable(reply):
            return reply(request)
        return httpx.Response(200, json=reply)

    def calls(self, endpoint: str) -> List[httpx.Request]:
        return [r for r in self.requests if _endpoint(r) == endpoint]

    def bodies(self, endpoint: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls(endpoint)]


def _endpoint(request: httpx.Request) -> str:
    return request.url.path.rsplit("/", 1)[-1]


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers the delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fiscal_config() -> FiscalConfig:
    return FiscalConfig(
        base_url=BASE_URL,
        tin="P051234567A",
        bhf_id="00",
        cmc_key="test-cmc-key",
        business_name="Mama Oliech Restaurant Ltd",
        address="Marcus Garvey Rd, Nairobi",
        phone="+254700000000",
        email="accounts@example.co.ke",
    )


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fiscal_metrics() -> FiscalMetrics:
    return FiscalMetrics()


@pytest.fixture
def etims_client(fiscal_config, authority, sleep, fiscal_metrics) -> EtimsClient:
    return EtimsClient(
        fiscal_config,
        transport=httpx.MockTransport(authority),
        retry_policy=RetryPolicy(max_attempts=3),
        sleep=sleep,
        metrics=fiscal_metrics,
    )


@pytest.fixture
def ledger(db_session: Session) -> TransactionLedger:
    return TransactionLedger(db_session)


@pytest.fixture
def store(db_session: Session) -> SqlRecordStore:
    return SqlRecordStore(db_session)


@pytest.fixture
def service(fiscal_config, etims_client, ledger, store, fiscal_metrics) -> EtimsService:
    return EtimsService(
        fiscal_config,
        etims_client,
        ledger,
        store,
        metrics=fiscal_metrics,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def tomato(db_session: Session) -> Ingredient:
    ingredient = Ingredient(name="Tomato", unit="kg", cost_per_unit=Decimal("2.50"), category="vegetables")
    db_session.add(ingredient)
    db_session.commit()
    db_session.refresh(ingredient)
    return ingredient


@pytest.fixture
def ugali_recipe(db_session: Session) -> Recipe:
    """A recipe with two unregistered ingredients."""
    maize = Ingredient(name="Maize Flour", unit="kg", cost_per_unit=Decimal("1.20"), category="grains")
    sukuma = Ingredient(name="Sukuma Wiki", unit="kg", cost_per_unit=Decimal("0.80"), category="vegetables")
    db_session.add_all([maize, sukuma])
    db_session.flush()
    recipe = Recipe(name="Ugali Sukuma", price=Decimal("4.50"), category="mains")
    recipe.components = [
        RecipeComponent(ingredient_id=maize.id, quantity=Decimal("0.25")),
        RecipeComponent(ingredient_id=sukuma.id, quantity=Decimal("0.15")),
    ]
    db_session.add(recipe)
    db_session.commit()
    db_session.refresh(recipe)
    return recipe


@pytest.fixture(scope="function")
def client(db_session: Session, fiscal_config, etims_client) -> Generator[TestClient, None, None]:
    """Create a test client with database and authority overrides."""
    from etims.api.routes.etims import get_client, get_config
    from etims.main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_config] = lambda: fiscal_config
    app.dependency_overrides[get_client] = lambda: etims_client
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
