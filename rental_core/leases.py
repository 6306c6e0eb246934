"""
Lease Module

Lease agreements and the per-lease business rules that drive penalty
calculation. Rules are an explicit immutable value; every numeric field is
validated at construction.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import logging
import uuid

from .currency import Money, Currency, money_to_dict, money_from_dict
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import LeaseNotFound
from .config import get_config


logger = logging.getLogger("rental_core.leases")


class LeaseStatus(Enum):
    """Lease lifecycle states"""
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    PENDING = "pending"


@dataclass(frozen=True)
class BusinessRules:
    """
    Penalty and payment rules attached to a lease

    late_fee_amount accrues per day once a payment is more than
    late_fee_start_day days late and outside the grace period.
    """
    late_fee_amount: Money
    late_fee_start_day: int
    grace_period_days: int
    child_surcharge: Money
    payment_methods: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.late_fee_amount.is_negative():
            raise ValueError("Late fee amount cannot be negative")
        if self.child_surcharge.is_negative():
            raise ValueError("Child surcharge cannot be negative")
        if self.late_fee_start_day < 0:
            raise ValueError("Late fee start day cannot be negative")
        if self.grace_period_days < 0:
            raise ValueError("Grace period days cannot be negative")
        if self.child_surcharge.currency != self.late_fee_amount.currency:
            raise ValueError("Child surcharge currency must match late fee currency")

        if not isinstance(self.payment_methods, frozenset):
            object.__setattr__(self, 'payment_methods', frozenset(self.payment_methods))

    @property
    def currency(self) -> Currency:
        return self.late_fee_amount.currency

    def allows_method(self, method: str) -> bool:
        """An empty method set accepts any method"""
        return not self.payment_methods or method in self.payment_methods

    def to_dict(self) -> Dict:
        return {
            'late_fee_amount': money_to_dict(self.late_fee_amount),
            'late_fee_start_day': self.late_fee_start_day,
            'grace_period_days': self.grace_period_days,
            'child_surcharge': money_to_dict(self.child_surcharge),
            'payment_methods': sorted(self.payment_methods),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BusinessRules':
        return cls(
            late_fee_amount=money_from_dict(data['late_fee_amount']),
            late_fee_start_day=int(data['late_fee_start_day']),
            grace_period_days=int(data['grace_period_days']),
            child_surcharge=money_from_dict(data['child_surcharge']),
            payment_methods=frozenset(data.get('payment_methods', [])),
        )

    @classmethod
    def defaults(cls, currency: Optional[Currency] = None) -> 'BusinessRules':
        """Rules built from the configured defaults"""
        cfg = get_config()
        currency = currency or Currency[cfg.default_currency]
        return cls(
            late_fee_amount=Money(Decimal(cfg.default_late_fee_amount), currency),
            late_fee_start_day=cfg.default_late_fee_start_day,
            grace_period_days=cfg.default_grace_period_days,
            child_surcharge=Money(Decimal(cfg.default_child_surcharge), currency),
            payment_methods=frozenset(cfg.default_payment_methods),
        )


@dataclass
class Lease(StorageRecord):
    """
    Lease agreement between a renter and a room in a facility
    """
    facility_id: str
    room_id: str
    renter_id: str
    start_date: date
    end_date: date
    monthly_rent: Money
    deposit_amount: Money
    business_rules: BusinessRules
    deposit_paid: bool = False
    deposit_paid_date: Optional[date] = None
    deposit_payment_method: str = "cash"
    children_count: int = 0
    status: LeaseStatus = LeaseStatus.ACTIVE

    def __post_init__(self):
        if self.deposit_amount.currency != self.monthly_rent.currency:
            raise ValueError("Deposit currency must match rent currency")
        if self.business_rules.currency != self.monthly_rent.currency:
            raise ValueError("Business rules currency must match rent currency")
        if self.children_count < 0:
            raise ValueError("Children count cannot be negative")

    @property
    def currency(self) -> Currency:
        return self.monthly_rent.currency

    @property
    def is_active(self) -> bool:
        return self.status == LeaseStatus.ACTIVE


class LeaseRepository:
    """
    Persists leases and answers business-rule lookups for the scanner
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "leases"

    def create_lease(
        self,
        facility_id: str,
        room_id: str,
        renter_id: str,
        start_date: date,
        end_date: date,
        monthly_rent: Money,
        deposit_amount: Money,
        business_rules: Optional[BusinessRules] = None,
        deposit_paid: bool = False,
        deposit_paid_date: Optional[date] = None,
        deposit_payment_method: str = "cash",
        children_count: int = 0,
        created_by: Optional[str] = None
    ) -> Lease:
        """
        Create and persist a new lease

        Args:
            facility_id: Facility the room belongs to
            room_id: Rented room
            renter_id: Renter signing the lease
            start_date: First day of the lease
            end_date: Last day of the lease
            monthly_rent: Rent due each month
            deposit_amount: Security deposit
            business_rules: Penalty rules; configured defaults when omitted
            deposit_paid: Whether the deposit was paid on signing
            deposit_paid_date: When the deposit was paid
            deposit_payment_method: How the deposit was paid
            children_count: Number of children on the lease
            created_by: User creating the lease

        Returns:
            Created Lease
        """
        now = datetime.now(timezone.utc)
        lease = Lease(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            facility_id=facility_id,
            room_id=room_id,
            renter_id=renter_id,
            start_date=start_date,
            end_date=end_date,
            monthly_rent=monthly_rent,
            deposit_amount=deposit_amount,
            business_rules=business_rules or BusinessRules.defaults(monthly_rent.currency),
            deposit_paid=deposit_paid,
            deposit_paid_date=deposit_paid_date,
            deposit_payment_method=deposit_payment_method,
            children_count=children_count,
        )
        self.save_lease(lease)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.LEASE_CREATED,
                entity_type="lease",
                entity_id=lease.id,
                metadata={
                    'room_id': room_id,
                    'renter_id': renter_id,
                    'start_date': start_date,
                    'end_date': end_date,
                    'monthly_rent': monthly_rent.amount,
                    'currency': lease.currency.code
                },
                user_id=created_by
            )

        logger.info("Created lease %s for renter %s", lease.id, renter_id)
        return lease

    def save_lease(self, lease: Lease) -> None:
        lease.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, lease.id, self._lease_to_dict(lease))

    def get_lease(self, lease_id: str) -> Lease:
        """Load a lease, raising LeaseNotFound when it does not exist"""
        data = self.storage.load(self.table_name, lease_id)
        if not data:
            raise LeaseNotFound(lease_id)
        return self._lease_from_dict(data)

    def load_business_rules(self, lease_id: str) -> BusinessRules:
        """Business rules for a lease (raises LeaseNotFound)"""
        return self.get_lease(lease_id).business_rules

    def list_leases(self, status: Optional[LeaseStatus] = None) -> List[Lease]:
        if status:
            rows = self.storage.find(self.table_name, {'status': status.value})
        else:
            rows = self.storage.load_all(self.table_name)
        return [self._lease_from_dict(row) for row in rows]

    def _lease_to_dict(self, lease: Lease) -> Dict:
        """Convert lease to dictionary"""
        result = {
            'id': lease.id,
            'created_at': lease.created_at.isoformat(),
            'updated_at': lease.updated_at.isoformat(),
            'facility_id': lease.facility_id,
            'room_id': lease.room_id,
            'renter_id': lease.renter_id,
            'start_date': lease.start_date.isoformat(),
            'end_date': lease.end_date.isoformat(),
            'monthly_rent': money_to_dict(lease.monthly_rent),
            'deposit_amount': money_to_dict(lease.deposit_amount),
            'business_rules': lease.business_rules.to_dict(),
            'deposit_paid': lease.deposit_paid,
            'deposit_paid_date': lease.deposit_paid_date.isoformat() if lease.deposit_paid_date else None,
            'deposit_payment_method': lease.deposit_payment_method,
            'children_count': lease.children_count,
            'status': lease.status.value,
        }
        return result

    def _lease_from_dict(self, data: Dict) -> Lease:
        """Convert dictionary to lease"""
        deposit_paid_date = data.get('deposit_paid_date')
        return Lease(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            facility_id=data['facility_id'],
            room_id=data['room_id'],
            renter_id=data['renter_id'],
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            monthly_rent=money_from_dict(data['monthly_rent']),
            deposit_amount=money_from_dict(data['deposit_amount']),
            business_rules=BusinessRules.from_dict(data['business_rules']),
            deposit_paid=data.get('deposit_paid', False),
            deposit_paid_date=date.fromisoformat(deposit_paid_date) if deposit_paid_date else None,
            deposit_payment_method=data.get('deposit_payment_method', 'cash'),
            children_count=data.get('children_count', 0),
            status=LeaseStatus(data.get('status', 'active')),
        )

