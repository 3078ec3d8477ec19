"""
Gold Loan Lending Core

Loan lifecycle, payment ledger and overdue/penalty accrual engine for a
gold-backed lending back office. All monetary values use Decimal.
"""

__version__ = "1.0.0"
