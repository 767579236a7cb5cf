"""
Shared fixtures for the settlement core test suite.

Key Components:
1. In-memory SQLite database with the full settlement schema
2. A fake payment rail (AsyncMock) that confirms every transfer by default
3. An in-memory keyed store driven by a controllable clock
4. Profile factory for tenant/payee subscription profiles
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("KEYED_STORE_BACKEND", "memory")

import itertools
import logging
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from caching.keyed_store import InMemoryKeyedStore
from models import Base, SubscriptionProfile
from services.payment_rail import TransferResult, TransferStatus

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# 2024-01-01 was a Monday
MONDAY = datetime(2024, 1, 1, 9, 0, 0)


class FakeClock:
    """Callable clock for InMemoryKeyedStore TTLs"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def now():
    return MONDAY


@pytest.fixture
def payment_rail():
    """Rail that confirms every transfer with a fresh transfer id"""
    ids = itertools.count(1)

    async def transfer(destination, amount, metadata, idempotency_key):
        return TransferResult(TransferStatus.SUCCEEDED, transfer_id=f"tr_{next(ids)}")

    rail = AsyncMock()
    rail.transfer = AsyncMock(side_effect=transfer)
    return rail


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keyed_store(clock):
    return InMemoryKeyedStore(default_ttl=300, clock=clock)


@pytest.fixture
def make_profile(db_session):
    def _make(
        subject_id: str,
        tier: str = "starter",
        email: str = "owner@example.com",
        billing_period_ends_at=None,
        payout_destination=None,
        display_name: str = "Acme Plumbing",
    ) -> SubscriptionProfile:
        profile = SubscriptionProfile(
            subject_id=subject_id,
            display_name=display_name,
            email=email,
            tier=tier,
            billing_period_ends_at=billing_period_ends_at,
            payout_destination=payout_destination,
            created_at=MONDAY,
        )
        db_session.add(profile)
        db_session.commit()
        return profile

    return _make
