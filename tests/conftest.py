"""
Shared fixtures for tenancy engine tests.
"""

import pytest

from tenancy import (
    Identity,
    InMemoryRecordStore,
    Role,
    StorageError,
    build_engine,
)
from tenancy.schema import NANOS_PER_SECOND, RentalAgreement, RentalStatus
from utils.config import Config


# =============================================================================
# Time
# =============================================================================

T0 = 1_700_000_000 * NANOS_PER_SECOND
HOUR = 60 * 60 * NANOS_PER_SECOND
DAY = 24 * HOUR


class FakeClock:
    """Controllable nanosecond clock. Each read advances by 1ns."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now

    def advance(self, nanos: int) -> None:
        self.now += nanos

    def set(self, value: int) -> None:
        self.now = value


# =============================================================================
# Identities
# =============================================================================

LANDLORD = Identity("landlord-alice")
TENANT = Identity("tenant-bob")
OTHER_TENANT = Identity("tenant-carol")
OTHER_LANDLORD = Identity("landlord-dave")
STRANGER = Identity("stranger-erin")  # authenticated, no role


def make_config(**overrides) -> Config:
    """Config with test-friendly defaults, independent of the environment."""
    values = dict(
        data_dir="./data",
        store_filename="test_store.json",
        submission_window_days=7,
        dispute_resolution="restore",
        enforce_refund_ceiling=True,
        open_escrow_on_confirm=True,
        currency="INR",
        session_secret="test-secret",
        token_duration_hours=8,
        allow_dev_tokens=True,
        debug=False,
        log_level="INFO",
    )
    values.update(overrides)
    return Config(**values)


def make_engine(clock, store=None, **config_overrides):
    engine = build_engine(
        make_config(**config_overrides),
        store=store or InMemoryRecordStore(),
        clock=clock,
    )
    engine.roles.register(LANDLORD, Role.LANDLORD)
    engine.roles.register(OTHER_LANDLORD, Role.LANDLORD)
    engine.roles.register(TENANT, Role.TENANT)
    engine.roles.register(OTHER_TENANT, Role.TENANT)
    return engine


# =============================================================================
# Seeding
# =============================================================================


def seed_rental(
    engine,
    landlord=LANDLORD,
    tenant=TENANT,
    deposit=500,
    status=RentalStatus.CONFIRMED,
):
    """Store an agreement directly, bypassing roles and listings."""
    now = engine.ctx.now()
    return engine.ctx.rentals.create(
        lambda rental_id: RentalAgreement(
            id=rental_id,
            property_id=100 + rental_id,
            landlord=landlord,
            tenant=tenant,
            status=status,
            start_date=now + DAY,
            end_date=now + 365 * DAY,
            rent_amount=1000,
            deposit_amount=deposit,
            created_at=now,
            updated_at=now,
        )
    )


def open_escrow(engine, landlord=LANDLORD, tenant=TENANT, deposit=500, caller=None):
    """Escrow for a freshly seeded agreement between landlord and tenant."""
    rental = seed_rental(engine, landlord, tenant, deposit)
    return engine.create_escrow(
        caller or landlord, rental.id, rental.property_id, landlord, tenant, deposit
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    """Engine over an in-memory store with registered landlords and tenants."""
    return make_engine(clock)


@pytest.fixture
def listing(engine):
    """An available property owned by LANDLORD (rent 1000, deposit 500)."""
    return engine.properties.add(
        owner=LANDLORD,
        title="Sunny Flat",
        address="12 MG Road, Bengaluru",
        rent_amount=1000,
        deposit_amount=500,
    )


@pytest.fixture
def lease_dates(clock):
    start = clock.now + DAY
    return start, start + 365 * DAY


# =============================================================================
# Failing Stores
# =============================================================================


class FlakyStore(InMemoryRecordStore):
    """In-memory store whose writes to one table can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_inserts_on = None
        self.fail_updates_on = None

    def insert_new(self, table, kind, build):
        if table == self.fail_inserts_on:
            raise StorageError(f"insert into {table} failed")
        return super().insert_new(table, kind, build)

    def update(self, table, record_id, record):
        if table == self.fail_updates_on:
            raise StorageError(f"update of {table} failed")
        super().update(table, record_id, record)
