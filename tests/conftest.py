import os

# Must be set before homeservice.config is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SIMULATE_PAYMENT_CONFIRMATION"] = "0"
os.environ.setdefault("CELERY_EAGER", "1")

from typing import Iterator  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from homeservice import models  # noqa: E402,F401
from homeservice.ai.diagnosis import StaticDiagnosisService  # noqa: E402
from homeservice.db_core import Base  # noqa: E402
from homeservice.payment.ledger import LedgerManager  # noqa: E402
from homeservice.services.catalog import seed_categories  # noqa: E402
from homeservice.services.events import EventDispatcher  # noqa: E402
from homeservice.services.lifecycle import ServiceLifecycleController  # noqa: E402
from homeservice.services.payments.mock import MockProvider  # noqa: E402

# In-memory SQLite shared by every connection of the test engine
engine = create_engine(
    "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session() -> Iterator[Session]:
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    seed_categories(db)
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


class EventRecorder:
    def __init__(self, events: EventDispatcher):
        self.seen = []
        for name in ("provider_assigned", "service_accepted", "escrow_released", "antifraud_flag_raised"):
            events.subscribe(name, lambda payload, name=name: self.seen.append((name, payload)))

    def names(self):
        return [name for name, _ in self.seen]


@pytest.fixture
def events() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def recorder(events) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def ledger(events) -> LedgerManager:
    return LedgerManager(MockProvider(), events=events)


@pytest.fixture
def releases():
    return []


@pytest.fixture
def controller(ledger, events, releases) -> ServiceLifecycleController:
    return ServiceLifecycleController(
        ledger=ledger,
        diagnosis_service=StaticDiagnosisService(),
        events=events,
        release_scheduler=lambda escrow_id, eta: releases.append((escrow_id, eta)),
    )


@pytest.fixture
def api(db_session, controller, diagnosis_limiter):
    from fastapi.testclient import TestClient

    from homeservice.api import deps
    from homeservice.app import app
    from homeservice.db import get_db

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.controller] = lambda: controller
    app.dependency_overrides[deps.antifraud] = lambda: controller.antifraud
    app.dependency_overrides[deps.diagnosis_limiter] = lambda: diagnosis_limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def diagnosis_limiter():
    from homeservice.services.attempts import MemoryAttemptStore, RateLimiter

    return RateLimiter(MemoryAttemptStore(), limit=3, window_seconds=900, scope="diagnosis")


@pytest.fixture
def session_factory():
    return TestingSessionLocal
