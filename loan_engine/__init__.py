"""
Loan Ledger Engine

Append-only loan ledger with simple day-count interest accrual, a loan
lifecycle state machine, revolving period tracking and what-if analysis.
All monetary math uses Decimal.
"""

__version__ = "1.0.0"
