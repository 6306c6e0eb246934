"""
Test suite for the daily overdue scan

Tests penalty posting, per-month deduplication across runs, overdue marking
and the repository-driven daily job.
"""

import pytest
from datetime import date

from rental_core.audit import AuditEventType
from rental_core.exceptions import LeaseNotFound
from rental_core.overdue import (
    ScanResult, mark_overdue_payments, post_penalties_for_schedule, scan_and_post_penalties
)
from rental_core.schedules import PaymentScheduleGenerator, PaymentStatus

from conftest import zar


@pytest.fixture
def rent_only_schedule(make_lease):
    """Three months of rent due on the first, no deposit"""
    return PaymentScheduleGenerator().generate(make_lease(), include_deposit=False,
                                               due_date_policy="first_day")


class TestScanAndPostPenalties:
    """Test scan_and_post_penalties over in-memory schedules"""

    def test_posts_one_charge_for_late_month(self, rent_only_schedule, make_rules):
        rules = make_rules()

        posted = scan_and_post_penalties([rent_only_schedule], lambda lease_id: rules,
                                         today=date(2025, 1, 10))

        ledger = rent_only_schedule.aggregated_penalty
        assert posted == 1
        assert ledger.total_amount == zar(100)
        assert ledger.calculation_history[0].payment_month == "2025-01"
        assert ledger.calculation_history[0].reason == "Daily penalty for 2025-01 - 9 days overdue"

    def test_deduplicates_across_runs(self, rent_only_schedule, make_rules):
        """A month is charged once, however many times the scan runs"""
        rules = make_rules()
        lookup = lambda lease_id: rules

        first = scan_and_post_penalties([rent_only_schedule], lookup, today=date(2025, 1, 10))
        again = scan_and_post_penalties([rent_only_schedule], lookup, today=date(2025, 1, 10))
        later = scan_and_post_penalties([rent_only_schedule], lookup, today=date(2025, 1, 20))

        ledger = rent_only_schedule.aggregated_penalty
        assert (first, again, later) == (1, 0, 0)
        assert ledger.total_amount == zar(100)
        assert len(ledger.calculation_history) == 1

    def test_charge_fixed_at_first_detection(self, rent_only_schedule, make_rules):
        """Later months are charged when they fall late; earlier charges stay as posted"""
        rules = make_rules()
        lookup = lambda lease_id: rules

        scan_and_post_penalties([rent_only_schedule], lookup, today=date(2025, 1, 10))
        posted = scan_and_post_penalties([rent_only_schedule], lookup, today=date(2025, 2, 10))

        ledger = rent_only_schedule.aggregated_penalty
        assert posted == 1
        assert [c.payment_month for c in ledger.calculation_history] == ["2025-01", "2025-02"]
        assert ledger.calculation_history[0].amount == zar(100)
        assert ledger.calculation_history[1].amount == zar(100)
        assert ledger.total_amount == zar(200)

    def test_paid_payments_not_charged(self, rent_only_schedule, make_rules):
        rent_only_schedule.update_payment("2025-01", {'status': PaymentStatus.PAID,
                                                      'paid_amount': zar(1000)})

        posted = scan_and_post_penalties([rent_only_schedule], lambda lease_id: make_rules(),
                                         today=date(2025, 1, 10))

        assert posted == 0
        assert rent_only_schedule.aggregated_penalty is None

    def test_not_late_yet(self, rent_only_schedule, make_rules):
        posted = scan_and_post_penalties([rent_only_schedule], lambda lease_id: make_rules(),
                                         today=date(2025, 1, 5))

        assert posted == 0
        assert rent_only_schedule.aggregated_penalty is None

    def test_fully_paid_schedule_skipped(self, rent_only_schedule, make_rules):
        for payment in rent_only_schedule.payments:
            rent_only_schedule.update_payment(payment.month, {'status': PaymentStatus.PAID,
                                                              'paid_amount': zar(1000)})
        calls = []

        def lookup(lease_id):
            calls.append(lease_id)
            return make_rules()

        assert scan_and_post_penalties([rent_only_schedule], lookup, today=date(2025, 6, 1)) == 0
        assert calls == []

    def test_missing_lease_skipped(self, make_lease, make_rules):
        """A lookup miss skips that schedule and the scan carries on"""
        generator = PaymentScheduleGenerator()
        orphan = generator.generate(make_lease(lease_id="ORPHAN"), include_deposit=False)
        healthy = generator.generate(make_lease(lease_id="HEALTHY"), include_deposit=False)
        rules = make_rules()

        def lookup(lease_id):
            if lease_id == "ORPHAN":
                raise LeaseNotFound(lease_id)
            return rules

        posted = scan_and_post_penalties([orphan, healthy], lookup, today=date(2025, 1, 10))

        assert posted == 1
        assert orphan.aggregated_penalty is None
        assert healthy.aggregated_penalty.total_amount == zar(100)

    def test_overdue_status_also_charged(self, rent_only_schedule, make_rules):
        rent_only_schedule.update_payment("2025-01", {'status': PaymentStatus.OVERDUE})

        charges = post_penalties_for_schedule(rent_only_schedule, make_rules(), date(2025, 1, 10))

        assert [c.payment_month for c in charges] == ["2025-01"]


class TestMarkOverduePayments:
    """Test pending to overdue transitions"""

    def test_overdue_day_after_due_date(self, rent_only_schedule):
        assert mark_overdue_payments(rent_only_schedule, date(2025, 1, 1)) == 0
        assert rent_only_schedule.get_payment("2025-01").status == PaymentStatus.PENDING

        assert mark_overdue_payments(rent_only_schedule, date(2025, 1, 2)) == 1
        assert rent_only_schedule.get_payment("2025-01").status == PaymentStatus.OVERDUE

    def test_deposit_stays_pending(self, make_lease):
        schedule = PaymentScheduleGenerator().generate(make_lease(), include_deposit=True)

        assert mark_overdue_payments(schedule, date(2025, 1, 10)) == 1
        assert schedule.get_payment("2025-01-deposit").status == PaymentStatus.PENDING
        assert schedule.get_payment("2025-01").status == PaymentStatus.OVERDUE

    def test_only_pending_entries(self, rent_only_schedule):
        rent_only_schedule.update_payment("2025-01", {'status': PaymentStatus.PARTIAL,
                                                      'paid_amount': zar(500)})

        assert mark_overdue_payments(rent_only_schedule, date(2025, 2, 10)) == 1
        assert rent_only_schedule.get_payment("2025-01").status == PaymentStatus.PARTIAL
        assert rent_only_schedule.get_payment("2025-02").status == PaymentStatus.OVERDUE


class TestOverdueScanner:
    """Test the repository-driven daily job"""

    def test_run_daily_persists_ledger(self, overdue_scanner, schedule_repository, stored_lease,
                                       audit_trail):
        schedule_repository.create_schedule(stored_lease, include_deposit=False,
                                            due_date_policy="first_day")

        result = overdue_scanner.run_daily(today=date(2025, 1, 10))

        assert result == ScanResult(
            schedules_scanned=1,
            penalties_posted=1,
            payments_marked_overdue=1,
            schedules_skipped=0,
        )
        saved = schedule_repository.load_schedule(stored_lease.id)
        assert saved.aggregated_penalty.total_amount == zar(100)
        assert saved.get_payment("2025-01").status == PaymentStatus.OVERDUE

        charged = audit_trail.get_events_by_type(AuditEventType.PENALTY_CHARGED)
        assert len(charged) == 1
        assert charged[0].metadata['payment_month'] == "2025-01"
        assert len(audit_trail.get_events_by_type(AuditEventType.OVERDUE_SCAN_COMPLETED)) == 1

    def test_second_run_posts_nothing(self, overdue_scanner, schedule_repository, stored_lease):
        schedule_repository.create_schedule(stored_lease, include_deposit=False)

        overdue_scanner.run_daily(today=date(2025, 1, 10))
        result = overdue_scanner.run_daily(today=date(2025, 1, 11))

        assert result.penalties_posted == 0
        assert result.payments_marked_overdue == 0
        saved = schedule_repository.load_schedule(stored_lease.id)
        assert saved.aggregated_penalty.total_amount == zar(100)

    def test_schedule_without_lease_skipped(self, overdue_scanner, schedule_repository,
                                            stored_lease, make_lease):
        schedule_repository.create_schedule(stored_lease, include_deposit=False)
        schedule_repository.create_schedule(make_lease(lease_id="UNKNOWN"), include_deposit=False)

        result = overdue_scanner.run_daily(today=date(2025, 1, 10))

        assert result.schedules_scanned == 1
        assert result.schedules_skipped == 1
        assert result.penalties_posted == 1
        assert schedule_repository.load_schedule("UNKNOWN").aggregated_penalty is None

    def test_audit_chain_intact_after_scan(self, overdue_scanner, schedule_repository,
                                           stored_lease, audit_trail):
        schedule_repository.create_schedule(stored_lease)
        overdue_scanner.run_daily(today=date(2025, 3, 15))

        assert audit_trail.verify_integrity()['valid'] is True

    def test_overpaid_month_does_not_hide_later_arrears(self, overdue_scanner, schedule_repository,
                                                        stored_lease):
        schedule = schedule_repository.create_schedule(stored_lease, include_deposit=False)
        schedule.update_payment("2025-01", {'status': PaymentStatus.PAID, 'paid_amount': zar(3000)})
        schedule_repository.save_schedule(schedule)

        result = overdue_scanner.run_daily(today=date(2025, 2, 10))

        assert result.schedules_scanned == 1
        assert result.penalties_posted == 1
        saved = schedule_repository.load_schedule(stored_lease.id)
        assert saved.aggregated_penalty.calculation_history[0].payment_month == "2025-02"
