"""
Penalty Module

Late-payment penalty calculation and the per-lease aggregated penalty ledger.

The calculator is a pure function of the due date, the payment (or
evaluation) date and the lease's business rules. The ledger is an immutable
value: posting a charge or applying a payment returns a new ledger.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple, Union

from .currency import Money, Currency, money_to_dict, money_from_dict
from .exceptions import InvalidAmount
from .leases import BusinessRules


DateLike = Union[date, datetime]


def _as_date(value: DateLike) -> date:
    """Reduce a datetime to its calendar date"""
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True)
class PenaltyCalculation:
    """Result of evaluating one payment against the business rules"""
    is_late: bool
    days_late: int
    penalty_amount: Money
    grace_period_used: bool
    base_amount: Money
    penalty_rate: Money
    days_overdue: int

    @property
    def calculation(self) -> Dict:
        """Breakdown of how penalty_amount was reached"""
        return {
            'base_amount': self.base_amount,
            'penalty_rate': self.penalty_rate,
            'days_overdue': self.days_overdue,
            'calculated_amount': self.penalty_amount,
        }


def calculate_penalty(
    due_date: DateLike,
    paid_date: DateLike,
    rules: BusinessRules,
    base_amount: Money
) -> PenaltyCalculation:
    """
    Decide whether a payment is late and how much penalty it accrues.

    Time of day is ignored. A payment within the grace period is never late,
    even when the grace period is longer than late_fee_start_day. Once late,
    the penalty accrues at late_fee_amount per day beyond late_fee_start_day.

    Args:
        due_date: When the payment was due
        paid_date: When it was paid, or the evaluation date for unpaid entries
        rules: Lease business rules
        base_amount: Amount of the scheduled payment

    Returns:
        PenaltyCalculation
    """
    days_late = (_as_date(paid_date) - _as_date(due_date)).days

    grace_period_used = days_late <= rules.grace_period_days
    is_late = days_late > rules.late_fee_start_day and not grace_period_used

    if is_late:
        days_overdue = days_late - rules.late_fee_start_day
        penalty_amount = rules.late_fee_amount * days_overdue
    else:
        days_overdue = max(0, days_late - rules.late_fee_start_day)
        penalty_amount = Money.zero(rules.late_fee_amount.currency)

    return PenaltyCalculation(
        is_late=is_late,
        days_late=days_late,
        penalty_amount=penalty_amount,
        grace_period_used=grace_period_used,
        base_amount=base_amount,
        penalty_rate=rules.late_fee_amount,
        days_overdue=days_overdue,
    )


@dataclass(frozen=True)
class PenaltyCharge:
    """One posted penalty, kept forever in the ledger history"""
    date: datetime
    amount: Money
    reason: str
    payment_month: str

    def to_dict(self) -> Dict:
        return {
            'date': self.date.isoformat(),
            'amount': money_to_dict(self.amount),
            'reason': self.reason,
            'payment_month': self.payment_month,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PenaltyCharge':
        return cls(
            date=datetime.fromisoformat(data['date']),
            amount=money_from_dict(data['amount']),
            reason=data['reason'],
            payment_month=data['payment_month'],
        )


@dataclass(frozen=True)
class AggregatedPenalty:
    """
    Running penalty ledger for one lease

    outstanding_amount is always total_amount - paid_amount and
    0 <= paid_amount <= total_amount. charged_months is derived from
    calculation_history and is not persisted.
    """
    total_amount: Money
    paid_amount: Money
    last_calculated: datetime
    calculation_history: Tuple[PenaltyCharge, ...] = ()
    charged_months: FrozenSet[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.paid_amount.currency != self.total_amount.currency:
            raise ValueError("Paid amount currency must match total currency")
        if self.paid_amount.is_negative() or self.paid_amount > self.total_amount:
            raise ValueError("Paid amount must be between zero and the total")

        if not isinstance(self.calculation_history, tuple):
            object.__setattr__(self, 'calculation_history', tuple(self.calculation_history))
        object.__setattr__(
            self, 'charged_months',
            frozenset(charge.payment_month for charge in self.calculation_history)
        )

    @classmethod
    def empty(cls, currency: Currency, now: Optional[datetime] = None) -> 'AggregatedPenalty':
        """Ledger with no charges"""
        return cls(
            total_amount=Money.zero(currency),
            paid_amount=Money.zero(currency),
            last_calculated=now or datetime.now(timezone.utc),
        )

    @property
    def currency(self) -> Currency:
        return self.total_amount.currency

    @property
    def outstanding_amount(self) -> Money:
        return self.total_amount - self.paid_amount

    def has_charge_for(self, payment_month: str) -> bool:
        return payment_month in self.charged_months

    def post_charge(
        self,
        payment_month: str,
        amount: Money,
        reason: str,
        now: Optional[datetime] = None
    ) -> 'AggregatedPenalty':
        """
        Append a charge and return the new ledger.

        Does not deduplicate; callers check has_charge_for first.
        """
        now = now or datetime.now(timezone.utc)
        charge = PenaltyCharge(date=now, amount=amount, reason=reason, payment_month=payment_month)
        return AggregatedPenalty(
            total_amount=self.total_amount + amount,
            paid_amount=self.paid_amount,
            last_calculated=now,
            calculation_history=self.calculation_history + (charge,),
        )

    def apply_payment(
        self,
        amount: Money,
        method: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> 'AggregatedPenalty':
        """
        Apply a penalty payment and return the new ledger.

        Overpayment is clamped to the total. method and note are recorded by
        the caller's audit trail; the history only holds charges.

        Raises:
            InvalidAmount: amount is zero or negative
        """
        if not amount.is_positive():
            raise InvalidAmount(amount.amount, "Penalty payment amount must be greater than zero")

        new_paid = self.paid_amount + amount
        if new_paid > self.total_amount:
            new_paid = self.total_amount

        return AggregatedPenalty(
            total_amount=self.total_amount,
            paid_amount=new_paid,
            last_calculated=now or datetime.now(timezone.utc),
            calculation_history=self.calculation_history,
        )

    def to_dict(self) -> Dict:
        return {
            'total_amount': money_to_dict(self.total_amount),
            'paid_amount': money_to_dict(self.paid_amount),
            'outstanding_amount': money_to_dict(self.outstanding_amount),
            'last_calculated': self.last_calculated.isoformat(),
            'calculation_history': [charge.to_dict() for charge in self.calculation_history],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AggregatedPenalty':
        return cls(
            total_amount=money_from_dict(data['total_amount']),
            paid_amount=money_from_dict(data['paid_amount']),
            last_calculated=datetime.fromisoformat(data['last_calculated']),
            calculation_history=tuple(
                PenaltyCharge.from_dict(item) for item in data.get('calculation_history', [])
            ),
        )
