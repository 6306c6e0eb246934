"""
Test suite for leases and business rules
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from rental_core.audit import AuditEventType
from rental_core.currency import Money, Currency
from rental_core.exceptions import LeaseNotFound
from rental_core.leases import BusinessRules, Lease, LeaseStatus

from conftest import zar


class TestBusinessRules:
    """Test the immutable business rules value"""

    @pytest.mark.parametrize("field_name, value", [
        ("late_fee_amount", zar("-1.00")),
        ("child_surcharge", zar("-5.00")),
        ("late_fee_start_day", -1),
        ("grace_period_days", -3),
    ])
    def test_negative_values_rejected(self, field_name, value):
        kwargs = {
            'late_fee_amount': zar("20.00"),
            'late_fee_start_day': 4,
            'grace_period_days': 0,
            'child_surcharge': zar("10.00"),
        }
        kwargs[field_name] = value

        with pytest.raises(ValueError):
            BusinessRules(**kwargs)

    def test_rules_are_frozen(self, make_rules):
        rules = make_rules()

        with pytest.raises(AttributeError):
            rules.late_fee_start_day = 10

    def test_methods_become_frozenset(self):
        rules = BusinessRules(
            late_fee_amount=zar(20),
            late_fee_start_day=4,
            grace_period_days=0,
            child_surcharge=zar(10),
            payment_methods=["cash", "eft", "cash"],
        )

        assert rules.payment_methods == frozenset({"cash", "eft"})
        assert rules.allows_method("eft")
        assert not rules.allows_method("card")

    def test_empty_methods_accept_anything(self, make_rules):
        assert make_rules(methods=()).allows_method("anything")

    def test_dict_round_trip(self, make_rules):
        rules = make_rules(late_fee="35.50", start_day=2, grace_days=1)

        assert BusinessRules.from_dict(rules.to_dict()) == rules

    def test_defaults_from_config(self):
        rules = BusinessRules.defaults(Currency.USD)

        assert rules.late_fee_amount == Money(Decimal("20.00"), Currency.USD)
        assert rules.late_fee_start_day == 4
        assert rules.grace_period_days == 0
        assert rules.child_surcharge == Money(Decimal("10.00"), Currency.USD)
        assert rules.payment_methods == frozenset({"cash", "eft", "card"})


class TestLeaseRepository:
    """Test lease persistence"""

    def test_create_and_get(self, lease_repository, stored_lease):
        loaded = lease_repository.get_lease(stored_lease.id)

        assert loaded.renter_id == "RENTER001"
        assert loaded.start_date == date(2025, 1, 1)
        assert loaded.monthly_rent == zar(1000)
        assert loaded.business_rules == stored_lease.business_rules
        assert loaded.status == LeaseStatus.ACTIVE
        assert loaded.is_active

    def test_missing_lease(self, lease_repository):
        with pytest.raises(LeaseNotFound):
            lease_repository.get_lease("NOPE")
        with pytest.raises(LeaseNotFound):
            lease_repository.load_business_rules("NOPE")

    def test_load_business_rules(self, lease_repository, stored_lease, make_rules):
        assert lease_repository.load_business_rules(stored_lease.id) == make_rules()

    def test_default_rules_when_omitted(self, lease_repository):
        lease = lease_repository.create_lease(
            facility_id="FAC001",
            room_id="ROOM002",
            renter_id="RENTER002",
            start_date=date(2025, 2, 1),
            end_date=date(2026, 1, 31),
            monthly_rent=zar("2500.00"),
            deposit_amount=zar("2500.00"),
            deposit_paid=True,
            deposit_paid_date=date(2025, 1, 28),
        )

        loaded = lease_repository.get_lease(lease.id)
        assert loaded.business_rules.late_fee_amount == zar("20.00")
        assert loaded.deposit_paid is True
        assert loaded.deposit_paid_date == date(2025, 1, 28)

    def test_creation_is_audited(self, stored_lease, audit_trail):
        events = audit_trail.get_events_for_entity("lease", stored_lease.id)

        assert len(events) == 1
        assert events[0].event_type == AuditEventType.LEASE_CREATED
        assert events[0].user_id == "ADMIN001"
        assert events[0].metadata['monthly_rent'] == "1000.00"

    def test_list_by_status(self, lease_repository, stored_lease):
        stored_lease.status = LeaseStatus.TERMINATED
        lease_repository.save_lease(stored_lease)

        assert lease_repository.list_leases(LeaseStatus.ACTIVE) == []
        assert [l.id for l in lease_repository.list_leases(LeaseStatus.TERMINATED)] == [stored_lease.id]

    def test_mismatched_currency(self):
        with pytest.raises(ValueError):
            Lease(
                id="LEASE_X",
                created_at=datetime.now(timezone.utc),
                updated_at=datetime.now(timezone.utc),
                facility_id="FAC001",
                room_id="ROOM001",
                renter_id="RENTER001",
                start_date=date(2025, 1, 1),
                end_date=date(2025, 12, 31),
                monthly_rent=zar(1000),
                deposit_amount=Money(Decimal("500"), Currency.USD),
                business_rules=BusinessRules.defaults(Currency.ZAR),
            )

    def test_rules_currency_must_match_rent(self, lease_repository):
        usd_rules = BusinessRules.defaults(Currency.USD)

        with pytest.raises(ValueError, match="Business rules currency"):
            lease_repository.create_lease(
                facility_id="FAC001",
                room_id="ROOM003",
                renter_id="RENTER003",
                start_date=date(2025, 1, 1),
                end_date=date(2025, 3, 31),
                monthly_rent=zar("1000.00"),
                deposit_amount=zar("500.00"),
                business_rules=usd_rules,
            )

        assert lease_repository.list_leases() == []
