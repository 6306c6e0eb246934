"""
FastAPI REST API Module

Thin HTTP adapter over the rental core: leases, schedule generation, payment
capture and approvals, penalty payments, the daily overdue scan (for an
external scheduler to trigger) and audit queries. Runs on port 8090.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, date
from typing import Dict, List, Optional, Any
from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uvicorn

from .config import get_config
from .currency import Money, Currency, money_to_dict
from .storage import InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .exceptions import ScheduleNotFound, LeaseNotFound, PaymentNotFound
from .leases import BusinessRules, Lease, LeaseRepository
from .schedules import PaymentSchedule, ScheduledPayment, ScheduleRepository
from .penalties import AggregatedPenalty, calculate_penalty
from .overdue import OverdueScanner
from .payments import PaymentService
from .logging_config import setup_logging


NOT_FOUND_ERRORS = (ScheduleNotFound, LeaseNotFound, PaymentNotFound)


# Pydantic models for API requests/responses
class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (ZAR, USD, etc.)")

    def to_money(self) -> Money:
        try:
            return Money(Decimal(self.amount), Currency[self.currency])
        except (InvalidOperation, KeyError):
            raise ValueError(f"Invalid money value {self.amount} {self.currency}")


class BusinessRulesModel(BaseModel):
    late_fee_amount: MoneyModel
    late_fee_start_day: int = Field(..., ge=0)
    grace_period_days: int = Field(0, ge=0)
    child_surcharge: MoneyModel
    payment_methods: List[str] = Field(default_factory=list)

    def to_rules(self) -> BusinessRules:
        return BusinessRules(
            late_fee_amount=self.late_fee_amount.to_money(),
            late_fee_start_day=self.late_fee_start_day,
            grace_period_days=self.grace_period_days,
            child_surcharge=self.child_surcharge.to_money(),
            payment_methods=frozenset(self.payment_methods),
        )


class CreateLeaseRequest(BaseModel):
    facility_id: str
    room_id: str
    renter_id: str
    start_date: date
    end_date: date
    monthly_rent: MoneyModel
    deposit_amount: MoneyModel
    business_rules: Optional[BusinessRulesModel] = None
    deposit_paid: bool = False
    deposit_paid_date: Optional[date] = None
    deposit_payment_method: str = "cash"
    children_count: int = Field(0, ge=0)
    generate_schedule: bool = True
    include_deposit: Optional[bool] = None
    due_date_policy: Optional[str] = Field(None, description="first_day or last_day")
    created_by: Optional[str] = None


class GenerateScheduleRequest(BaseModel):
    include_deposit: Optional[bool] = None
    due_date_policy: Optional[str] = Field(None, description="first_day or last_day")
    created_by: Optional[str] = None


class CapturePaymentRequest(BaseModel):
    amount: MoneyModel
    payment_method: str
    paid_date: date
    captured_by: str
    notes: Optional[str] = None
    requires_approval: bool = False
    penalty_payment: Optional[MoneyModel] = None
    penalty_payment_method: Optional[str] = None
    is_admin: bool = False


class EditPaymentRequest(BaseModel):
    edited_by: str
    paid_amount: Optional[MoneyModel] = None
    paid_date: Optional[date] = None
    payment_method: Optional[str] = None


class ReviewPaymentRequest(BaseModel):
    reviewed_by: str
    notes: Optional[str] = None


class ReversePaymentRequest(BaseModel):
    removed_by: str


class PenaltyPaymentRequest(BaseModel):
    amount: MoneyModel
    payment_method: str
    note: Optional[str] = None
    paid_by: Optional[str] = None


class PenaltyPreviewRequest(BaseModel):
    due_date: date
    paid_date: date
    base_amount: MoneyModel
    business_rules: BusinessRulesModel


class OverdueScanRequest(BaseModel):
    today: Optional[date] = None


class DueDatePolicyRequest(BaseModel):
    due_date_policy: str = Field(..., description="first_day or last_day")
    today: Optional[date] = None
    updated_by: Optional[str] = None


class RentalSystem:
    """Rental core with all components initialized"""

    def __init__(self, use_sqlite: bool = True, database_path: Optional[str] = None):
        cfg = get_config()

        # Initialize storage
        if use_sqlite:
            self.storage = SQLiteStorage(database_path or cfg.database_path)
        else:
            self.storage = InMemoryStorage()

        self.audit_trail = AuditTrail(self.storage) if cfg.enable_audit_logging else None
        self.lease_repository = LeaseRepository(self.storage, self.audit_trail)
        self.schedule_repository = ScheduleRepository(self.storage, self.audit_trail)
        self.payment_service = PaymentService(
            self.schedule_repository, self.lease_repository, self.audit_trail
        )
        self.overdue_scanner = OverdueScanner(
            self.schedule_repository, self.lease_repository, self.audit_trail
        )


# Global rental system instance, created on first request
_rental_system: Optional[RentalSystem] = None


def get_rental_system() -> RentalSystem:
    global _rental_system
    if _rental_system is None:
        _rental_system = RentalSystem(use_sqlite=get_config().storage_backend == "sqlite")
    return _rental_system


# Create FastAPI app
app = FastAPI(
    title="Rental Payments API",
    description="Payment schedules, late-payment penalties and payment capture for rental leases",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _money(money: Optional[Money]) -> Optional[Dict[str, str]]:
    return money_to_dict(money) if money else None


def _payment_response(payment: ScheduledPayment) -> Dict[str, Any]:
    return payment.to_dict()


def _penalty_response(ledger: Optional[AggregatedPenalty]) -> Optional[Dict[str, Any]]:
    return ledger.to_dict() if ledger else None


def _schedule_response(schedule: PaymentSchedule) -> Dict[str, Any]:
    return {
        "lease_id": schedule.lease_id,
        "facility_id": schedule.facility_id,
        "room_id": schedule.room_id,
        "renter_id": schedule.renter_id,
        "due_date_policy": schedule.due_date_policy.value,
        "currency": schedule.currency.code,
        "payments": [_payment_response(p) for p in schedule.payments],
        "aggregated_penalty": _penalty_response(schedule.aggregated_penalty),
        "total_amount": _money(schedule.total_amount),
        "total_paid": _money(schedule.total_paid),
        "outstanding_amount": _money(schedule.outstanding_amount),
    }


def _lease_response(lease: Lease) -> Dict[str, Any]:
    return {
        "id": lease.id,
        "facility_id": lease.facility_id,
        "room_id": lease.room_id,
        "renter_id": lease.renter_id,
        "start_date": lease.start_date.isoformat(),
        "end_date": lease.end_date.isoformat(),
        "monthly_rent": _money(lease.monthly_rent),
        "deposit_amount": _money(lease.deposit_amount),
        "deposit_paid": lease.deposit_paid,
        "children_count": lease.children_count,
        "status": lease.status.value,
        "business_rules": lease.business_rules.to_dict(),
    }


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Lease Endpoints
@app.post("/leases", status_code=status.HTTP_201_CREATED)
async def create_lease(
    request: CreateLeaseRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Create a lease and, by default, its payment schedule"""
    try:
        lease = system.lease_repository.create_lease(
            facility_id=request.facility_id,
            room_id=request.room_id,
            renter_id=request.renter_id,
            start_date=request.start_date,
            end_date=request.end_date,
            monthly_rent=request.monthly_rent.to_money(),
            deposit_amount=request.deposit_amount.to_money(),
            business_rules=request.business_rules.to_rules() if request.business_rules else None,
            deposit_paid=request.deposit_paid,
            deposit_paid_date=request.deposit_paid_date,
            deposit_payment_method=request.deposit_payment_method,
            children_count=request.children_count,
            created_by=request.created_by
        )

        response = {"lease_id": lease.id, "message": "Lease created successfully"}
        if request.generate_schedule:
            schedule = system.schedule_repository.create_schedule(
                lease,
                include_deposit=request.include_deposit,
                due_date_policy=request.due_date_policy,
                created_by=request.created_by
            )
            response["schedule"] = _schedule_response(schedule)
        return response

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/leases/{lease_id}")
async def get_lease(
    lease_id: str,
    system: RentalSystem = Depends(get_rental_system)
):
    """Get lease by ID"""
    try:
        lease = system.lease_repository.get_lease(lease_id)
    except LeaseNotFound:
        raise HTTPException(status_code=404, detail="Lease not found")
    return _lease_response(lease)


# Schedule Endpoints
@app.post("/leases/{lease_id}/schedule", status_code=status.HTTP_201_CREATED)
async def generate_schedule(
    lease_id: str,
    request: GenerateScheduleRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Generate (or regenerate) the payment schedule for a lease"""
    try:
        lease = system.lease_repository.get_lease(lease_id)
        schedule = system.schedule_repository.create_schedule(
            lease,
            include_deposit=request.include_deposit,
            due_date_policy=request.due_date_policy,
            created_by=request.created_by
        )
        return _schedule_response(schedule)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/leases/{lease_id}/schedule")
async def get_schedule(
    lease_id: str,
    system: RentalSystem = Depends(get_rental_system)
):
    """Get the payment schedule and penalty ledger for a lease"""
    try:
        schedule = system.schedule_repository.load_schedule(lease_id)
    except ScheduleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _schedule_response(schedule)


# Payment Endpoints
@app.post("/leases/{lease_id}/payments/{month}/capture")
async def capture_payment(
    lease_id: str,
    month: str,
    request: CapturePaymentRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Capture a payment against a scheduled entry"""
    try:
        schedule = system.payment_service.capture_payment(
            lease_id=lease_id,
            month=month,
            amount=request.amount.to_money(),
            payment_method=request.payment_method,
            paid_date=request.paid_date,
            captured_by=request.captured_by,
            notes=request.notes,
            requires_approval=request.requires_approval,
            penalty_payment=request.penalty_payment.to_money() if request.penalty_payment else None,
            penalty_payment_method=request.penalty_payment_method,
            is_admin=request.is_admin
        )
        return {
            "payment": _payment_response(schedule.get_payment(month)),
            "aggregated_penalty": _penalty_response(schedule.aggregated_penalty),
            "outstanding_amount": _money(schedule.outstanding_amount),
        }
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/leases/{lease_id}/payments/{month}")
async def edit_payment(
    lease_id: str,
    month: str,
    request: EditPaymentRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Amend a captured payment"""
    changes: Dict[str, Any] = {}
    try:
        if request.paid_amount is not None:
            changes["paid_amount"] = request.paid_amount.to_money()
        if request.paid_date is not None:
            changes["paid_date"] = request.paid_date
        if request.payment_method is not None:
            changes["payment_method"] = request.payment_method

        payment = system.payment_service.edit_payment(lease_id, month, changes, request.edited_by)
        return _payment_response(payment)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/leases/{lease_id}/payments/{month}/reverse")
async def reverse_payment(
    lease_id: str,
    month: str,
    request: ReversePaymentRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Reverse a captured payment back to pending"""
    try:
        payment = system.payment_service.reverse_payment(lease_id, month, request.removed_by)
        return _payment_response(payment)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/leases/{lease_id}/payments/{month}/approve")
async def approve_payment(
    lease_id: str,
    month: str,
    request: ReviewPaymentRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Approve a capture waiting for sign-off"""
    try:
        payment = system.payment_service.approve_payment(
            lease_id, month, request.reviewed_by, request.notes
        )
        return _payment_response(payment)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/leases/{lease_id}/payments/{month}/reject")
async def reject_payment(
    lease_id: str,
    month: str,
    request: ReviewPaymentRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Reject a capture waiting for sign-off"""
    try:
        payment = system.payment_service.reject_payment(
            lease_id, month, request.reviewed_by, request.notes
        )
        return _payment_response(payment)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/approvals/pending")
async def list_pending_approvals(system: RentalSystem = Depends(get_rental_system)):
    """List captures awaiting approval, newest first"""
    approvals = system.payment_service.list_pending_approvals()
    return {
        "approvals": [
            {
                **item,
                "amount": _money(item["amount"]),
                "paid_amount": _money(item["paid_amount"]),
                "paid_date": item["paid_date"].isoformat() if item["paid_date"] else None,
                "captured_at": item["captured_at"].isoformat() if item["captured_at"] else None,
            }
            for item in approvals
        ],
        "count": len(approvals),
    }


# Penalty Endpoints
@app.post("/leases/{lease_id}/penalties/payments")
async def apply_penalty_payment(
    lease_id: str,
    request: PenaltyPaymentRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Apply a payment to the lease's aggregated penalty"""
    try:
        ledger = system.payment_service.apply_penalty_payment(
            lease_id,
            request.amount.to_money(),
            request.payment_method,
            note=request.note,
            paid_by=request.paid_by
        )
        return _penalty_response(ledger)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/penalties/calculate")
async def preview_penalty(request: PenaltyPreviewRequest):
    """Calculate the penalty for a payment without posting anything"""
    try:
        result = calculate_penalty(
            request.due_date,
            request.paid_date,
            request.business_rules.to_rules(),
            request.base_amount.to_money()
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "is_late": result.is_late,
        "days_late": result.days_late,
        "penalty_amount": _money(result.penalty_amount),
        "grace_period_used": result.grace_period_used,
        "calculation": {
            "base_amount": _money(result.base_amount),
            "penalty_rate": _money(result.penalty_rate),
            "days_overdue": result.days_overdue,
            "calculated_amount": _money(result.penalty_amount),
        },
    }


# Scheduled job and settings endpoints
@app.post("/jobs/overdue-scan")
async def run_overdue_scan(
    request: OverdueScanRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Run the daily overdue and penalty scan"""
    result = system.overdue_scanner.run_daily(request.today)
    return result.to_dict()


@app.put("/settings/due-date-policy")
async def update_due_date_policy(
    request: DueDatePolicyRequest,
    system: RentalSystem = Depends(get_rental_system)
):
    """Move every schedule's rent due dates to a new policy"""
    try:
        return system.schedule_repository.update_due_date_policy(
            request.due_date_policy, request.today, request.updated_by
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# Audit Endpoints
@app.get("/audit/integrity")
async def verify_audit_integrity(system: RentalSystem = Depends(get_rental_system)):
    """Verify the audit trail hash chain"""
    if system.audit_trail is None:
        raise HTTPException(status_code=404, detail="Audit logging is disabled")
    return system.audit_trail.verify_integrity()


@app.get("/leases/{lease_id}/audit")
async def get_lease_audit(
    lease_id: str,
    limit: Optional[int] = None,
    system: RentalSystem = Depends(get_rental_system)
):
    """Audit events for a lease's payment schedule"""
    if system.audit_trail is None:
        raise HTTPException(status_code=404, detail="Audit logging is disabled")

    events = system.audit_trail.get_events_for_entity("payment_schedule", lease_id, limit)
    return {
        "events": [
            {
                "id": event.id,
                "event_type": event.event_type.value,
                "created_at": event.created_at.isoformat(),
                "user_id": event.user_id,
                "metadata": event.metadata,
            }
            for event in events
        ]
    }


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format)
    uvicorn.run(
        "rental_core.api:app",
        host=host or cfg.api_host,
        port=port or cfg.api_port,
        reload=debug,
        log_level=cfg.log_level.lower()
    )
