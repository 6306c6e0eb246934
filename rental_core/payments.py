"""
Payment Capture Module

Captures rent and deposit payments against a lease's schedule, applies
penalty payments to the aggregated penalty ledger, and runs the approval
workflow for captures that need an administrator's sign-off.

Every operation loads the schedule under its lock, mutates it through
PaymentSchedule.update_payment and saves it once at the end, so a failure
leaves the stored schedule untouched.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from .currency import Money
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .exceptions import (
    InvalidAmount, InvalidPaymentState, PaymentMethodNotAllowed, PaymentDateNotAllowed
)
from .leases import LeaseRepository
from .logging_config import get_logger, log_action
from .penalties import AggregatedPenalty, calculate_penalty
from .schedules import PaymentSchedule, PaymentStatus, ScheduledPayment, ScheduleRepository


logger = get_logger("rental_core.payments")

EDITABLE_FIELDS = frozenset({'paid_amount', 'paid_date', 'payment_method'})
CAPTURED_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIAL, PaymentStatus.PENDING_APPROVAL)


@dataclass(frozen=True)
class PaymentDateValidation:
    """Outcome of checking a capture date against the date policy"""
    is_valid: bool
    requires_approval: bool
    error_message: Optional[str] = None


def validate_payment_date(
    paid_date: date,
    today: Optional[date] = None,
    is_admin: bool = False,
    allow_past: bool = True,
    max_past_days: int = 30,
    require_approval_for_past: bool = True
) -> PaymentDateValidation:
    """
    Check whether a payment may be captured with the given date.

    Administrators may use any date. Everyone else may not use a future
    date, and may only back-date within max_past_days when allow_past is
    set; such back-dated captures need approval when
    require_approval_for_past is set.
    """
    today = today or date.today()
    if isinstance(paid_date, datetime):
        paid_date = paid_date.date()

    if is_admin:
        return PaymentDateValidation(is_valid=True, requires_approval=False)

    if paid_date > today:
        return PaymentDateValidation(
            is_valid=False,
            requires_approval=False,
            error_message="Payment date cannot be in the future"
        )

    if paid_date < today:
        if not allow_past:
            return PaymentDateValidation(
                is_valid=False,
                requires_approval=False,
                error_message="Standard users are not allowed to capture payments with past dates"
            )
        if (today - paid_date).days > max_past_days:
            return PaymentDateValidation(
                is_valid=False,
                requires_approval=False,
                error_message=f"Payment date cannot be more than {max_past_days} days in the past"
            )
        return PaymentDateValidation(is_valid=True, requires_approval=require_approval_for_past)

    return PaymentDateValidation(is_valid=True, requires_approval=False)


def _settled_status(payment: ScheduledPayment, paid_amount: Money) -> PaymentStatus:
    return PaymentStatus.PAID if paid_amount >= payment.amount else PaymentStatus.PARTIAL


class PaymentService:
    """
    Payment capture, reversal, editing and approval for lease schedules
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

    def _audit(self, event_type: AuditEventType, lease_id: str, metadata: Dict[str, Any],
               user_id: Optional[str] = None) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="payment_schedule",
                entity_id=lease_id,
                metadata=metadata,
                user_id=user_id
            )

    def capture_payment(
        self,
        lease_id: str,
        month: str,
        amount: Money,
        payment_method: str,
        paid_date: date,
        captured_by: str,
        notes: Optional[str] = None,
        requires_approval: bool = False,
        penalty_payment: Optional[Money] = None,
        penalty_payment_method: Optional[str] = None,
        is_admin: bool = False,
        today: Optional[date] = None
    ) -> PaymentSchedule:
        """
        Capture a payment against one scheduled entry

        A capture on a partially paid entry adds to what was already paid.
        When the payment is late a penalty is posted for the month, unless
        the month has already been charged. An optional penalty payment is
        applied to the ledger in the same save.

        Args:
            lease_id: Lease the schedule belongs to
            month: Month key of the scheduled entry
            amount: Amount received
            payment_method: How it was paid
            paid_date: Date the money was received
            captured_by: User capturing the payment
            notes: Free-text notes
            requires_approval: Force the capture into the approval queue
            penalty_payment: Amount to apply to the penalty ledger
            penalty_payment_method: Method for the penalty payment, defaults to payment_method
            is_admin: Whether the capturing user bypasses the date policy
            today: Reference date for the date policy

        Returns:
            Updated PaymentSchedule

        Raises:
            InvalidAmount: amount or penalty_payment is not positive
            PaymentMethodNotAllowed: method not accepted by the lease
            PaymentDateNotAllowed: paid_date rejected by the date policy
            InvalidPaymentState: entry already paid or awaiting approval
        """
        if not amount.is_positive():
            raise InvalidAmount(amount.amount)
        if penalty_payment is not None and not penalty_payment.is_positive():
            raise InvalidAmount(penalty_payment.amount, "Penalty payment amount must be greater than zero")

        rules = self.leases.load_business_rules(lease_id)
        if not rules.allows_method(payment_method):
            raise PaymentMethodNotAllowed(payment_method, rules.payment_methods)

        cfg = get_config()
        validation = validate_payment_date(
            paid_date,
            today=today,
            is_admin=is_admin,
            allow_past=cfg.allow_standard_user_past_payments,
            max_past_days=cfg.max_past_payment_days,
            require_approval_for_past=cfg.require_admin_approval_for_past_payments,
        )
        if not validation.is_valid:
            raise PaymentDateNotAllowed(validation.error_message)

        now = datetime.now(timezone.utc)
        with self.schedules.locked(lease_id):
            schedule = self.schedules.load_schedule(lease_id)
            payment = schedule.get_payment(month)

            if payment.status in (PaymentStatus.PAID, PaymentStatus.PENDING_APPROVAL):
                raise InvalidPaymentState(
                    f"Payment {month} for lease {lease_id} is {payment.status.value}"
                )

            paid_amount = amount
            if payment.status == PaymentStatus.PARTIAL and payment.paid_amount:
                paid_amount = payment.paid_amount + amount

            if requires_approval or validation.requires_approval:
                status = PaymentStatus.PENDING_APPROVAL
            else:
                status = _settled_status(payment, paid_amount)

            changes: Dict[str, Any] = {
                'status': status,
                'paid_amount': paid_amount,
                'paid_date': paid_date,
                'payment_method': payment_method,
                'captured_by': captured_by,
                'captured_at': now,
            }
            if notes:
                changes['notes'] = notes.strip()

            calculation = calculate_penalty(payment.due_date, paid_date, rules, payment.amount)
            charged = None
            if calculation.is_late and calculation.penalty_amount.is_positive():
                changes['late_fee'] = calculation.penalty_amount
                ledger = schedule.aggregated_penalty or AggregatedPenalty.empty(schedule.currency, now)
                if not ledger.has_charge_for(month):
                    reason = f"Late payment penalty for {month} - {calculation.days_late} days overdue"
                    schedule.aggregated_penalty = ledger.post_charge(month, calculation.penalty_amount, reason, now)
                    charged = schedule.aggregated_penalty.calculation_history[-1]

            schedule.update_payment(month, changes)

            if penalty_payment is not None:
                if schedule.aggregated_penalty is None:
                    raise InvalidPaymentState(f"Lease {lease_id} has no penalties to pay")
                schedule.aggregated_penalty = schedule.aggregated_penalty.apply_payment(
                    penalty_payment,
                    penalty_payment_method or payment_method,
                    f"Penalty payment captured with {month} payment",
                    now
                )

            self.schedules.save_schedule(schedule)

        self._audit(AuditEventType.PAYMENT_CAPTURED, lease_id, {
            'month': month,
            'amount': amount.amount,
            'payment_method': payment_method,
            'paid_date': paid_date,
            'status': status.value,
        }, captured_by)
        if charged:
            self._audit(AuditEventType.PENALTY_CHARGED, lease_id, {
                'payment_month': charged.payment_month,
                'amount': charged.amount.amount,
                'reason': charged.reason,
            }, captured_by)
        if penalty_payment is not None:
            self._audit(AuditEventType.PENALTY_PAYMENT_APPLIED, lease_id, {
                'amount': penalty_payment.amount,
                'payment_method': penalty_payment_method or payment_method,
                'outstanding': schedule.aggregated_penalty.outstanding_amount.amount,
            }, captured_by)

        log_action(
            logger, "info", f"Payment captured: {month}",
            user_id=captured_by, action="capture_payment", lease_id=lease_id,
            extra={
                "month": month,
                "amount": amount.to_string(),
                "payment_method": payment_method,
                "status": status.value,
            }
        )
        return schedule

    def apply_penalty_payment(
        self,
        lease_id: str,
        amount: Money,
        method: str,
        note: Optional[str] = None,
        paid_by: Optional[str] = None
    ) -> AggregatedPenalty:
        """
        Apply a payment to the lease's aggregated penalty

        Returns:
            Updated AggregatedPenalty

        Raises:
            InvalidAmount: amount is not positive
            InvalidPaymentState: the lease has no penalty ledger
        """
        if not amount.is_positive():
            raise InvalidAmount(amount.amount, "Penalty payment amount must be greater than zero")

        with self.schedules.locked(lease_id):
            schedule = self.schedules.load_schedule(lease_id)
            if schedule.aggregated_penalty is None:
                raise InvalidPaymentState(f"Lease {lease_id} has no penalties to pay")

            schedule.aggregated_penalty = schedule.aggregated_penalty.apply_payment(amount, method, note)
            self.schedules.save_schedule(schedule)

        ledger = schedule.aggregated_penalty
        self._audit(AuditEventType.PENALTY_PAYMENT_APPLIED, lease_id, {
            'amount': amount.amount,
            'payment_method': method,
            'note': note,
            'outstanding': ledger.outstanding_amount.amount,
        }, paid_by)

        logger.info("Applied penalty payment %s on lease %s, outstanding %s",
                    amount.to_string(), lease_id, ledger.outstanding_amount.to_string())
        return ledger

    def reverse_payment(self, lease_id: str, month: str, removed_by: str) -> ScheduledPayment:
        """
        Undo a capture, resetting the entry to pending with nothing paid.

        Penalties already charged for the month stay on the ledger.
        """
        with self.schedules.locked(lease_id):
            schedule = self.schedules.load_schedule(lease_id)
            payment = schedule.get_payment(month)
            if payment.status not in CAPTURED_STATUSES:
                raise InvalidPaymentState(f"Payment {month} for lease {lease_id} has not been captured")

            payment = schedule.update_payment(month, {
                'status': PaymentStatus.PENDING,
                'paid_amount': Money.zero(schedule.currency),
                'paid_date': None,
                'payment_method': None,
            }, edited_by=removed_by)
            self.schedules.save_schedule(schedule)

        self._audit(AuditEventType.PAYMENT_REVERSED, lease_id, {
            'month': month,
            'original_values': payment.original_values,
        }, removed_by)
        logger.info("Reversed payment %s on lease %s", month, lease_id)
        return payment

    def edit_payment(
        self,
        lease_id: str,
        month: str,
        changes: Dict[str, Any],
        edited_by: str
    ) -> ScheduledPayment:
        """
        Amend the paid amount, date or method of a captured payment

        The previous values are kept in original_values. A settled entry's
        status follows its new paid amount.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit payment fields: {sorted(unknown)}")

        paid_amount = changes.get('paid_amount')
        if paid_amount is not None and not paid_amount.is_positive():
            raise InvalidAmount(paid_amount.amount)

        method = changes.get('payment_method')
        if method is not None:
            rules = self.leases.load_business_rules(lease_id)
            if not rules.allows_method(method):
                raise PaymentMethodNotAllowed(method, rules.payment_methods)

        with self.schedules.locked(lease_id):
            schedule = self.schedules.load_schedule(lease_id)
            payment = schedule.get_payment(month)
            if payment.status not in CAPTURED_STATUSES:
                raise InvalidPaymentState(f"Payment {month} for lease {lease_id} has not been captured")

            updates = dict(changes)
            if paid_amount is not None and payment.status != PaymentStatus.PENDING_APPROVAL:
                updates['status'] = _settled_status(payment, paid_amount)

            payment = schedule.update_payment(month, updates, edited_by=edited_by)
            self.schedules.save_schedule(schedule)

        self._audit(AuditEventType.PAYMENT_EDITED, lease_id, {
            'month': month,
            'changes': changes,
            'original_values': payment.original_values,
        }, edited_by)
        return payment

    def approve_payment(
        self,
        lease_id: str,
        month: str,
        approved_by: str,
        notes: Optional[str] = None
    ) -> ScheduledPayment:
        """Approve a capture waiting for sign-off; it becomes paid or partial"""
        with self.schedules.locked(lease_id):
            schedule = self.schedules.load_schedule(lease_id)
            payment = schedule.get_payment(month)
            self._require_pending_approval(lease_id, payment)

            paid_amount = payment.paid_amount or Money.zero(schedule.currency)
            payment = schedule.update_payment(month, {
                'status': _settled_status(payment, paid_amount),
                'approved_by': approved_by,
                'approved_at': datetime.now(timezone.utc),
                'approval_notes': notes or "",
            })
            self.schedules.save_schedule(schedule)

        self._audit(AuditEventType.PAYMENT_APPROVED, lease_id, {
            'month': month,
            'status': payment.status.value,
            'notes': notes,
        }, approved_by)
        logger.info("Approved payment %s on lease %s", month, lease_id)
        return payment

    def reject_payment(
        self,
        lease_id: str,
        month: str,
        rejected_by: str,
        notes: Optional[str] = None
    ) -> ScheduledPayment:
        """Reject a capture waiting for sign-off; the entry goes back to pending"""
        with self.schedules.locked(lease_id):
            schedule = self.schedules.load_schedule(lease_id)
            payment = schedule.get_payment(month)
            self._require_pending_approval(lease_id, payment)

            payment = schedule.update_payment(month, {
                'status': PaymentStatus.PENDING,
                'paid_amount': None,
                'paid_date': None,
                'payment_method': None,
                'notes': None,
                'captured_by': None,
                'captured_at': None,
                'approved_by': rejected_by,
                'approved_at': datetime.now(timezone.utc),
                'approval_notes': f"REJECTED: {notes or 'Payment rejected by admin'}",
            })
            self.schedules.save_schedule(schedule)

        self._audit(AuditEventType.PAYMENT_REJECTED, lease_id, {
            'month': month,
            'notes': notes,
        }, rejected_by)
        logger.info("Rejected payment %s on lease %s", month, lease_id)
        return payment

    def list_pending_approvals(self) -> List[Dict[str, Any]]:
        """Captures awaiting approval across all schedules, newest first"""
        pending = []
        for schedule in self.schedules.list_schedules():
            for payment in schedule.payments:
                if payment.status != PaymentStatus.PENDING_APPROVAL:
                    continue
                pending.append({
                    'lease_id': schedule.lease_id,
                    'facility_id': schedule.facility_id,
                    'room_id': schedule.room_id,
                    'renter_id': schedule.renter_id,
                    'month': payment.month,
                    'amount': payment.amount,
                    'paid_amount': payment.paid_amount,
                    'payment_method': payment.payment_method,
                    'paid_date': payment.paid_date,
                    'captured_by': payment.captured_by,
                    'captured_at': payment.captured_at,
                    'notes': payment.notes,
                })

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        pending.sort(key=lambda item: item['captured_at'] or epoch, reverse=True)
        return pending

    def _require_pending_approval(self, lease_id: str, payment: ScheduledPayment) -> None:
        if payment.status != PaymentStatus.PENDING_APPROVAL:
            raise InvalidPaymentState(
                f"Payment {payment.month} for lease {lease_id} is not awaiting approval"
            )
