"""
Exceptions raised by the rental core.

All of them are ValueError subclasses so callers that only catch ValueError
keep working; each carries a short machine-readable ``code``.
"""

from typing import Optional


class RentalCoreError(ValueError):
    """Base class for rental core domain errors"""
    code = "RENTAL_ERROR"


class InvalidAmount(RentalCoreError):
    """Amount is zero, negative or otherwise unusable"""
    code = "INVALID_AMOUNT"

    def __init__(self, amount, message: Optional[str] = None):
        self.amount = amount
        super().__init__(message or f"Amount must be greater than zero, got {amount}")


class ScheduleNotFound(RentalCoreError):
    """No payment schedule exists for the lease"""
    code = "SCHEDULE_NOT_FOUND"

    def __init__(self, lease_id: str):
        self.lease_id = lease_id
        super().__init__(f"Payment schedule for lease {lease_id} not found")


class LeaseNotFound(RentalCoreError):
    """Lease (or its business rules) could not be loaded"""
    code = "LEASE_NOT_FOUND"

    def __init__(self, lease_id: str):
        self.lease_id = lease_id
        super().__init__(f"Lease {lease_id} not found")


class PaymentNotFound(RentalCoreError):
    """No scheduled payment with the given month key"""
    code = "PAYMENT_NOT_FOUND"

    def __init__(self, lease_id: str, month: str):
        self.lease_id = lease_id
        self.month = month
        super().__init__(f"Payment {month} not found in schedule for lease {lease_id}")


class InvalidPaymentState(RentalCoreError):
    """Operation not allowed in the payment's (or ledger's) current state"""
    code = "INVALID_PAYMENT_STATE"


class PaymentMethodNotAllowed(RentalCoreError):
    """Payment method is not in the lease's allowed set"""
    code = "PAYMENT_METHOD_NOT_ALLOWED"

    def __init__(self, method: str, allowed):
        self.method = method
        self.allowed = sorted(allowed)
        super().__init__(f"Payment method '{method}' not allowed, expected one of {self.allowed}")


class PaymentDateNotAllowed(RentalCoreError):
    """Payment date rejected by the capture date policy"""
    code = "PAYMENT_DATE_NOT_ALLOWED"
