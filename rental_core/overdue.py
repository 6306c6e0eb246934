"""
Overdue Scanning Module

Daily batch that marks unpaid rent overdue and posts one penalty charge per
late payment to each lease's aggregated penalty ledger. A charge is fixed
when it is first detected; later runs skip months already charged.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .audit import AuditTrail, AuditEventType
from .exceptions import LeaseNotFound
from .leases import BusinessRules, LeaseRepository
from .penalties import AggregatedPenalty, PenaltyCharge, calculate_penalty
from .schedules import RENT_MONTH_PATTERN, PaymentSchedule, PaymentStatus, ScheduleRepository
from .config import get_config
from .logging_config import get_logger, log_action


logger = get_logger("rental_core.overdue")

RulesLookup = Callable[[str], BusinessRules]


@dataclass
class ScanResult:
    """Counts from one daily scan"""
    schedules_scanned: int = 0
    penalties_posted: int = 0
    payments_marked_overdue: int = 0
    schedules_skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'schedules_scanned': self.schedules_scanned,
            'penalties_posted': self.penalties_posted,
            'payments_marked_overdue': self.payments_marked_overdue,
            'schedules_skipped': self.schedules_skipped,
        }


def mark_overdue_payments(schedule: PaymentSchedule, today: date) -> int:
    """
    Flip pending rent payments to overdue once their due date has passed

    Only plain YYYY-MM rent entries are marked; deposits stay pending. The
    grace period affects penalties, not the overdue status.

    Returns:
        Number of payments marked overdue
    """
    marked = 0
    for payment in schedule.payments:
        if payment.status != PaymentStatus.PENDING or not RENT_MONTH_PATTERN.match(payment.month):
            continue
        if payment.due_date < today:
            schedule.update_payment(payment.month, {'status': PaymentStatus.OVERDUE})
            marked += 1
    return marked


def post_penalties_for_schedule(
    schedule: PaymentSchedule,
    rules: BusinessRules,
    today: date,
    now: Optional[datetime] = None
) -> List[PenaltyCharge]:
    """
    Post a charge for every late open payment not yet charged

    The updated ledger is set on the schedule; saving is up to the caller.

    Returns:
        Charges posted by this call
    """
    posted: List[PenaltyCharge] = []
    ledger = schedule.aggregated_penalty

    for payment in schedule.open_payments_due(today):
        result = calculate_penalty(payment.due_date, today, rules, payment.amount)
        if not result.is_late or not result.penalty_amount.is_positive():
            continue

        if ledger is not None and ledger.has_charge_for(payment.month):
            logger.debug("Penalty already charged for %s on lease %s", payment.month, schedule.lease_id)
            continue

        if ledger is None:
            ledger = AggregatedPenalty.empty(schedule.currency, now)

        ledger = ledger.post_charge(
            payment_month=payment.month,
            amount=result.penalty_amount,
            reason=f"Daily penalty for {payment.month} - {result.days_late} days overdue",
            now=now,
        )
        posted.append(ledger.calculation_history[-1])

    if posted:
        schedule.aggregated_penalty = ledger
    return posted


def scan_and_post_penalties(
    schedules: Iterable[PaymentSchedule],
    lease_lookup: RulesLookup,
    today: Optional[date] = None
) -> int:
    """
    Post penalties across a batch of schedules

    Schedules without an outstanding balance are ignored. A lease that cannot
    be found is logged and its schedule skipped.

    Args:
        schedules: Schedules to scan; updated in place
        lease_lookup: Returns the business rules for a lease id
        today: Evaluation date, defaults to the current date

    Returns:
        Number of charges posted
    """
    today = today or date.today()
    posted = 0

    for schedule in schedules:
        if not schedule.outstanding_amount.is_positive():
            continue
        try:
            rules = lease_lookup(schedule.lease_id)
        except LeaseNotFound:
            logger.warning("Skipping schedule for lease %s: lease not found", schedule.lease_id)
            continue
        posted += len(post_penalties_for_schedule(schedule, rules, today))

    return posted


class OverdueScanner:
    """
    Runs the daily overdue and penalty scan against stored schedules
    """

    def __init__(
        self,
        schedule_repository: ScheduleRepository,
        lease_repository: LeaseRepository,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.schedules = schedule_repository
        self.leases = lease_repository
        self.audit_trail = audit_trail

    def run_daily(self, today: Optional[date] = None) -> ScanResult:
        """
        Scan every schedule with an outstanding balance.

        Each schedule is reloaded and saved under its own lock, so a failure
        on one schedule leaves the ones already saved intact. Storage errors
        propagate to the caller.

        Args:
            today: Evaluation date, defaults to the current date

        Returns:
            ScanResult with counts
        """
        today = today or date.today()
        mark_overdue = get_config().mark_overdue_during_scan
        result = ScanResult()

        for candidate in self.schedules.list_schedules_with_outstanding_balance():
            lease_id = candidate.lease_id
            try:
                rules = self.leases.load_business_rules(lease_id)
            except LeaseNotFound:
                logger.warning("Skipping schedule for lease %s: lease not found", lease_id)
                result.schedules_skipped += 1
                continue

            with self.schedules.locked(lease_id):
                schedule = self.schedules.load_schedule(lease_id)
                if not schedule.outstanding_amount.is_positive():
                    continue

                marked = mark_overdue_payments(schedule, today) if mark_overdue else 0
                charges = post_penalties_for_schedule(schedule, rules, today, datetime.now(timezone.utc))

                if marked or charges:
                    self.schedules.save_schedule(schedule)

            result.schedules_scanned += 1
            result.payments_marked_overdue += marked
            result.penalties_posted += len(charges)

            if self.audit_trail:
                for charge in charges:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.PENALTY_CHARGED,
                        entity_type="payment_schedule",
                        entity_id=lease_id,
                        metadata={
                            'payment_month': charge.payment_month,
                            'amount': charge.amount.amount,
                            'reason': charge.reason,
                        }
                    )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.OVERDUE_SCAN_COMPLETED,
                entity_type="overdue_scan",
                entity_id=today.isoformat(),
                metadata=result.to_dict()
            )

        log_action(
            logger, "info", f"Overdue scan complete for {today.isoformat()}",
            action="overdue_scan", extra=result.to_dict()
        )
        return result
