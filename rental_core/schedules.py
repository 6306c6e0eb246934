"""
Payment Schedule Module

Generates a lease's payment schedule (deposit plus one rent entry per
calendar month) and persists it. The schedule is the aggregate root for a
lease's rent obligations and its aggregated penalty ledger; every change to
a scheduled payment goes through PaymentSchedule.update_payment.
"""

import calendar
import logging
import re
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from .currency import Money, Currency, money_to_dict, money_from_dict, sum_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import ScheduleNotFound, PaymentNotFound
from .leases import Lease
from .penalties import AggregatedPenalty
from .config import get_config


logger = logging.getLogger("rental_core.schedules")

RENT_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


class PaymentType(Enum):
    """Kinds of scheduled payment"""
    RENT = "rent"
    DEPOSIT = "deposit"
    LATE_FEE = "late_fee"
    MAINTENANCE = "maintenance"
    DEPOSIT_PAYOUT = "deposit_payout"


class PaymentStatus(Enum):
    """Scheduled payment states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIAL = "partial"
    PENDING_APPROVAL = "pending_approval"


class DueDatePolicy(Enum):
    """Which day of the month rent falls due"""
    FIRST_DAY = "first_day"
    LAST_DAY = "last_day"


# Fields a caller may change through PaymentSchedule.update_payment
MUTABLE_PAYMENT_FIELDS = frozenset({
    'due_date', 'status', 'paid_amount', 'paid_date', 'payment_method',
    'late_fee', 'notes', 'captured_by', 'captured_at', 'approved_by',
    'approved_at', 'approval_notes',
})


def compute_due_date(year: int, month: int, policy: Union[DueDatePolicy, str]) -> date:
    """
    Due date for a rent month under the given policy

    Args:
        year: Calendar year
        month: Calendar month (1-12)
        policy: first_day or last_day

    Returns:
        First or last calendar day of the month
    """
    policy = DueDatePolicy(policy)
    if policy == DueDatePolicy.LAST_DAY:
        return date(year, month, calendar.monthrange(year, month)[1])
    return date(year, month, 1)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _iter_months(start: date, end: date) -> Iterator[date]:
    """First day of every calendar month from start's month to end's month"""
    current = date(start.year, start.month, 1)
    last = date(end.year, end.month, 1)
    while current <= last:
        yield current
        if current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)


@dataclass
class ScheduledPayment:
    """
    One obligation in a lease's payment schedule
    """
    month: str
    due_date: date
    amount: Money
    type: PaymentType
    status: PaymentStatus = PaymentStatus.PENDING
    paid_amount: Optional[Money] = None
    paid_date: Optional[date] = None
    payment_method: Optional[str] = None
    late_fee: Optional[Money] = None
    notes: Optional[str] = None
    captured_by: Optional[str] = None
    captured_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None
    edited_by: Optional[str] = None
    edited_at: Optional[datetime] = None
    original_values: Optional[Dict[str, Any]] = None

    @property
    def is_deposit(self) -> bool:
        return self.type == PaymentType.DEPOSIT

    @property
    def counts_as_paid(self) -> bool:
        """Only settled captures count towards the schedule's total paid"""
        return self.status in (PaymentStatus.PAID, PaymentStatus.PARTIAL)

    @property
    def settled_amount(self) -> Money:
        """Paid amount counted against this entry, never more than it asks for"""
        if not self.counts_as_paid or not self.paid_amount:
            return Money.zero(self.amount.currency)
        return min(self.paid_amount, self.amount)

    @property
    def is_open(self) -> bool:
        """Still owed and eligible for penalties"""
        return self.status in (PaymentStatus.PENDING, PaymentStatus.OVERDUE)

    def snapshot(self) -> Dict[str, Any]:
        """Values an edit may overwrite, kept for undo"""
        return {
            'paid_amount': money_to_dict(self.paid_amount) if self.paid_amount else None,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'payment_method': self.payment_method,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'due_date': self.due_date.isoformat(),
            'amount': money_to_dict(self.amount),
            'type': self.type.value,
            'status': self.status.value,
            'paid_amount': money_to_dict(self.paid_amount) if self.paid_amount else None,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'payment_method': self.payment_method,
            'late_fee': money_to_dict(self.late_fee) if self.late_fee else None,
            'notes': self.notes,
            'captured_by': self.captured_by,
            'captured_at': self.captured_at.isoformat() if self.captured_at else None,
            'approved_by': self.approved_by,
            'approved_at': self.approved_at.isoformat() if self.approved_at else None,
            'approval_notes': self.approval_notes,
            'edited_by': self.edited_by,
            'edited_at': self.edited_at.isoformat() if self.edited_at else None,
            'original_values': self.original_values,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledPayment':
        def get_money(key: str) -> Optional[Money]:
            return money_from_dict(data[key]) if data.get(key) else None

        def get_date(key: str) -> Optional[date]:
            return date.fromisoformat(data[key]) if data.get(key) else None

        def get_datetime(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            month=data['month'],
            due_date=date.fromisoformat(data['due_date']),
            amount=money_from_dict(data['amount']),
            type=PaymentType(data['type']),
            status=PaymentStatus(data['status']),
            paid_amount=get_money('paid_amount'),
            paid_date=get_date('paid_date'),
            payment_method=data.get('payment_method'),
            late_fee=get_money('late_fee'),
            notes=data.get('notes'),
            captured_by=data.get('captured_by'),
            captured_at=get_datetime('captured_at'),
            approved_by=data.get('approved_by'),
            approved_at=get_datetime('approved_at'),
            approval_notes=data.get('approval_notes'),
            edited_by=data.get('edited_by'),
            edited_at=get_datetime('edited_at'),
            original_values=data.get('original_values'),
        )


@dataclass
class PaymentSchedule(StorageRecord):
    """
    All scheduled rent and deposit obligations for one lease

    total_amount, total_paid and outstanding_amount cover the scheduled
    payments only; the aggregated penalty is tracked separately.
    """
    lease_id: str
    facility_id: str
    room_id: str
    renter_id: str
    due_date_policy: DueDatePolicy
    currency: Currency
    payments: List[ScheduledPayment] = field(default_factory=list)
    aggregated_penalty: Optional[AggregatedPenalty] = None

    @property
    def total_amount(self) -> Money:
        return sum_money((p.amount for p in self.payments), self.currency)

    @property
    def total_paid(self) -> Money:
        return sum_money((p.settled_amount for p in self.payments), self.currency)

    @property
    def outstanding_amount(self) -> Money:
        return self.total_amount - self.total_paid

    def get_payment(self, month: str) -> ScheduledPayment:
        """Find a scheduled payment by month key (raises PaymentNotFound)"""
        for payment in self.payments:
            if payment.month == month:
                return payment
        raise PaymentNotFound(self.lease_id, month)

    def update_payment(
        self,
        month: str,
        changes: Dict[str, Any],
        edited_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ScheduledPayment:
        """
        Apply field changes to one scheduled payment.

        When edited_by is given the previous paid values are snapshotted into
        original_values and the edit is stamped; otherwise any existing
        snapshot is kept. A value of None clears the field.

        Args:
            month: Month key of the payment
            changes: Field name to new value
            edited_by: User making a manual edit
            now: Timestamp for the edit stamp

        Returns:
            The updated ScheduledPayment
        """
        unknown = set(changes) - MUTABLE_PAYMENT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update payment fields: {sorted(unknown)}")

        payment = self.get_payment(month)

        if edited_by:
            payment.original_values = payment.snapshot()
            payment.edited_by = edited_by
            payment.edited_at = now or datetime.now(timezone.utc)

        for name, value in changes.items():
            setattr(payment, name, value)

        self.updated_at = datetime.now(timezone.utc)
        return payment

    def open_payments_due(self, today: date) -> List[ScheduledPayment]:
        """Pending or overdue payments whose due date has arrived"""
        return [p for p in self.payments if p.is_open and p.due_date <= today]

    def summary(self) -> Dict[str, Any]:
        """Totals for display and reporting"""
        penalty = self.aggregated_penalty
        return {
            'lease_id': self.lease_id,
            'total_amount': self.total_amount.amount,
            'total_paid': self.total_paid.amount,
            'outstanding_amount': self.outstanding_amount.amount,
            'penalty_total': penalty.total_amount.amount if penalty else None,
            'penalty_outstanding': penalty.outstanding_amount.amount if penalty else None,
            'currency': self.currency.code,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'lease_id': self.lease_id,
            'facility_id': self.facility_id,
            'room_id': self.room_id,
            'renter_id': self.renter_id,
            'due_date_policy': self.due_date_policy.value,
            'currency': self.currency.code,
            'payments': [p.to_dict() for p in self.payments],
            'aggregated_penalty': self.aggregated_penalty.to_dict() if self.aggregated_penalty else None,
            # Denormalized for listing without rebuilding every schedule
            'total_amount': str(self.total_amount.amount),
            'total_paid': str(self.total_paid.amount),
            'outstanding_amount': str(self.outstanding_amount.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentSchedule':
        penalty = data.get('aggregated_penalty')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            lease_id=data['lease_id'],
            facility_id=data['facility_id'],
            room_id=data['room_id'],
            renter_id=data['renter_id'],
            due_date_policy=DueDatePolicy(data['due_date_policy']),
            currency=Currency[data['currency']],
            payments=[ScheduledPayment.from_dict(p) for p in data.get('payments', [])],
            aggregated_penalty=AggregatedPenalty.from_dict(penalty) if penalty else None,
        )


class PaymentScheduleGenerator:
    """
    Builds a lease's payment schedule from its terms
    """

    def generate(
        self,
        lease: Lease,
        include_deposit: bool = True,
        due_date_policy: Union[DueDatePolicy, str] = DueDatePolicy.FIRST_DAY
    ) -> PaymentSchedule:
        """
        Generate the full schedule for a lease.

        The deposit (when included) comes first and falls due on the lease
        start date. Rent is due once per calendar month from the start month
        to the end month inclusive. An end date before the start date yields
        no rent entries.

        Args:
            lease: Lease to schedule
            include_deposit: Whether to add the deposit entry
            due_date_policy: first_day or last_day

        Returns:
            Unsaved PaymentSchedule
        """
        policy = DueDatePolicy(due_date_policy)
        payments: List[ScheduledPayment] = []

        if include_deposit:
            deposit = ScheduledPayment(
                month=f"{month_key(lease.start_date)}-deposit",
                due_date=lease.start_date,
                amount=lease.deposit_amount,
                type=PaymentType.DEPOSIT,
            )
            if lease.deposit_paid:
                deposit.status = PaymentStatus.PAID
                deposit.paid_amount = lease.deposit_amount
                deposit.paid_date = lease.deposit_paid_date or lease.start_date
                deposit.payment_method = lease.deposit_payment_method or "cash"
            payments.append(deposit)

        if lease.end_date >= lease.start_date:
            for month_start in _iter_months(lease.start_date, lease.end_date):
                payments.append(ScheduledPayment(
                    month=month_key(month_start),
                    due_date=compute_due_date(month_start.year, month_start.month, policy),
                    amount=lease.monthly_rent,
                    type=PaymentType.RENT,
                ))

        now = datetime.now(timezone.utc)
        return PaymentSchedule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lease_id=lease.id,
            facility_id=lease.facility_id,
            room_id=lease.room_id,
            renter_id=lease.renter_id,
            due_date_policy=policy,
            currency=lease.currency,
            payments=payments,
        )


def reapply_due_date_policy(
    schedule: PaymentSchedule,
    policy: Union[DueDatePolicy, str],
    today: Optional[date] = None
) -> int:
    """
    Move rent due dates to a new policy.

    Entries without a plain YYYY-MM key (deposits) keep their due date. An
    overdue entry whose new due date is in the future goes back to pending;
    a pending entry whose new due date has passed becomes overdue.

    Returns:
        Number of entries whose due date changed
    """
    policy = DueDatePolicy(policy)
    today = today or date.today()
    changed = 0

    for payment in schedule.payments:
        match = RENT_MONTH_PATTERN.match(payment.month)
        if payment.is_deposit or not match:
            continue

        new_due = compute_due_date(int(match.group(1)), int(match.group(2)), policy)
        if new_due == payment.due_date:
            continue

        changes: Dict[str, Any] = {'due_date': new_due}
        if payment.status == PaymentStatus.OVERDUE and new_due > today:
            changes['status'] = PaymentStatus.PENDING
        elif payment.status == PaymentStatus.PENDING and new_due < today:
            changes['status'] = PaymentStatus.OVERDUE

        schedule.update_payment(payment.month, changes)
        changed += 1

    schedule.due_date_policy = policy
    return changed


class ScheduleRepository:
    """
    Persists payment schedules, one per lease, keyed by lease id
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        generator: Optional[PaymentScheduleGenerator] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.generator = generator or PaymentScheduleGenerator()
        self.table_name = "payment_schedules"

    @contextmanager
    def locked(self, lease_id: str):
        """Hold the schedule's lock for a load, mutate, save cycle"""
        with self.storage.record_lock(self.table_name, lease_id):
            yield

    def create_schedule(
        self,
        lease: Lease,
        include_deposit: Optional[bool] = None,
        due_date_policy: Optional[Union[DueDatePolicy, str]] = None,
        created_by: Optional[str] = None
    ) -> PaymentSchedule:
        """
        Generate and persist the schedule for a lease

        Args:
            lease: Lease to schedule
            include_deposit: Defaults to the configured setting
            due_date_policy: Defaults to the configured policy
            created_by: User creating the schedule

        Returns:
            Saved PaymentSchedule
        """
        cfg = get_config()
        if include_deposit is None:
            include_deposit = cfg.include_deposit_by_default
        if due_date_policy is None:
            due_date_policy = cfg.default_due_date_policy

        with self.locked(lease.id):
            schedule = self.generator.generate(lease, include_deposit, due_date_policy)
            self.save_schedule(schedule)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="payment_schedule",
                entity_id=lease.id,
                metadata={
                    'entries': len(schedule.payments),
                    'include_deposit': include_deposit,
                    'due_date_policy': schedule.due_date_policy.value,
                    'total_amount': schedule.total_amount.amount,
                },
                user_id=created_by
            )

        logger.info(
            "Generated schedule for lease %s: %d entries, total %s",
            lease.id, len(schedule.payments), schedule.total_amount.to_string()
        )
        return schedule

    def load_schedule(self, lease_id: str) -> PaymentSchedule:
        """Load a lease's schedule (raises ScheduleNotFound)"""
        data = self.storage.load(self.table_name, lease_id)
        if not data:
            raise ScheduleNotFound(lease_id)
        return PaymentSchedule.from_dict(data)

    def save_schedule(self, schedule: PaymentSchedule) -> None:
        schedule.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, schedule.lease_id, schedule.to_dict())

    def list_schedules(self) -> List[PaymentSchedule]:
        return [PaymentSchedule.from_dict(row) for row in self.storage.load_all(self.table_name)]

    def list_schedules_with_outstanding_balance(self) -> List[PaymentSchedule]:
        """Schedules whose scheduled payments are not fully paid"""
        return [s for s in self.list_schedules() if s.outstanding_amount.is_positive()]

    def update_due_date_policy(
        self,
        policy: Union[DueDatePolicy, str],
        today: Optional[date] = None,
        updated_by: Optional[str] = None
    ) -> Dict[str, int]:
        """
        Re-apply a due date policy to every stored schedule

        Returns:
            Dictionary with counts of schedules and payments updated
        """
        policy = DueDatePolicy(policy)
        results = {
            'total_schedules': 0,
            'updated_schedules': 0,
            'updated_payments': 0,
        }

        lease_ids = [row['lease_id'] for row in self.storage.load_all(self.table_name)]
        results['total_schedules'] = len(lease_ids)

        # One policy for every schedule: a failed save leaves none migrated
        with self.storage.atomic():
            for lease_id in lease_ids:
                with self.locked(lease_id):
                    schedule = self.load_schedule(lease_id)
                    previous_policy = schedule.due_date_policy
                    changed = reapply_due_date_policy(schedule, policy, today)
                    if changed or previous_policy != policy:
                        self.save_schedule(schedule)
                    if changed:
                        results['updated_schedules'] += 1
                        results['updated_payments'] += changed

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.DUE_DATE_POLICY_CHANGED,
                entity_type="payment_schedule",
                entity_id="*",
                metadata={'due_date_policy': policy.value, **results},
                user_id=updated_by
            )

        logger.info("Applied due date policy %s: %s", policy.value, results)
        return results
