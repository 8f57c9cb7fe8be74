"""Shared test fixtures."""
from datetime import datetime
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from erpwms.models import sync  # noqa: F401
from erpwms.config import Company, CompanySettings, SapB1Config, Settings


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


class FakeClock:
    """Settable clock for jobs and schedulers."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 12, 0))


@pytest.fixture(name="company")
def company_fixture() -> Company:
    return Company(
        company_name="ACME",
        sap_b1=SapB1Config(
            service_layer_url="https://sap.example:50000/b1s/v1",
            company_db="SBO_ACME",
            client_name="AcmeClient",
            user_name="manager",
            password="secret",
        ),
        p4_warehouse_api_key="key-123",
        settings=CompanySettings(product_batch_size=25, default_warehouse_code="02"),
    )


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(_env_file=None, database_url="sqlite://", upload_lookback_days=5)
