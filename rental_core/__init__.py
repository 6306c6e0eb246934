"""
Rental Core

Late-payment penalty and payment-schedule engine for rental leases:
schedule generation, penalty calculation, aggregated penalty ledgers
and the daily overdue scan. All money uses Decimal, never float.
"""

__version__ = "1.0.0"
