"""
Deposit Accrual Batch

Nightly batch that tracks end-of-day balance runs, accrues compounding
interest for deposit accounts, posts aggregated ledger entries and pays out
interest at the end of each period. All amounts use Decimal.
"""

__version__ = "1.0.0"
