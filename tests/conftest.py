"""
Shared fixtures for the rental core test suite
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from rental_core.currency import Money, Currency
from rental_core.storage import InMemoryStorage
from rental_core.audit import AuditTrail
from rental_core.leases import BusinessRules, Lease, LeaseRepository
from rental_core.schedules import ScheduleRepository
from rental_core.payments import PaymentService
from rental_core.overdue import OverdueScanner


def zar(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.ZAR)


@pytest.fixture
def make_rules():
    """Factory for business rules, R20/day from day 4 by default"""
    def _make(late_fee="20.00", start_day=4, grace_days=0, methods=("cash", "eft")):
        return BusinessRules(
            late_fee_amount=zar(late_fee),
            late_fee_start_day=start_day,
            grace_period_days=grace_days,
            child_surcharge=zar("10.00"),
            payment_methods=frozenset(methods),
        )
    return _make


@pytest.fixture
def make_lease(make_rules):
    """Factory for unsaved leases, 2025-01-01 to 2025-03-31 by default"""
    def _make(lease_id="LEASE001", start=date(2025, 1, 1), end=date(2025, 3, 31),
              rent="1000.00", deposit="500.00", rules=None, **kwargs):
        now = datetime.now(timezone.utc)
        return Lease(
            id=lease_id,
            created_at=now,
            updated_at=now,
            facility_id="FAC001",
            room_id="ROOM001",
            renter_id="RENTER001",
            start_date=start,
            end_date=end,
            monthly_rent=zar(rent),
            deposit_amount=zar(deposit),
            business_rules=rules or make_rules(),
            **kwargs
        )
    return _make


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def lease_repository(storage, audit_trail):
    return LeaseRepository(storage, audit_trail)


@pytest.fixture
def schedule_repository(storage, audit_trail):
    return ScheduleRepository(storage, audit_trail)


@pytest.fixture
def payment_service(schedule_repository, lease_repository, audit_trail):
    return PaymentService(schedule_repository, lease_repository, audit_trail)


@pytest.fixture
def overdue_scanner(schedule_repository, lease_repository, audit_trail):
    return OverdueScanner(schedule_repository, lease_repository, audit_trail)


@pytest.fixture
def stored_lease(lease_repository, make_rules):
    """Saved lease for 2025-01-01 to 2025-03-31, rent R1000, deposit R500"""
    return lease_repository.create_lease(
        facility_id="FAC001",
        room_id="ROOM001",
        renter_id="RENTER001",
        start_date=date(2025, 1, 1),
        end_date=date(2025, 3, 31),
        monthly_rent=zar("1000.00"),
        deposit_amount=zar("500.00"),
        business_rules=make_rules(),
        created_by="ADMIN001"
    )
