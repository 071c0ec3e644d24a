"""
Batch Error Taxonomy

Every failure raised by the accrual batch derives from AccrualBatchError and
carries the account and business date it was raised for.
"""

from datetime import date
from typing import Optional


class AccrualBatchError(Exception):
    """Base exception for all accrual batch errors."""
    
    def __init__(self, message: str, account_id: Optional[int] = None,
                 business_date: Optional[date] = None):
        super().__init__(message)
        self.account_id = account_id
        self.business_date = business_date


class UnknownAccountError(AccrualBatchError):
    """Raised when a feed or admin action references an account that was never created."""
    pass


class DuplicateAccountError(AccrualBatchError):
    """Raised when an account id is created twice."""
    pass


class ClosedAccountError(AccrualBatchError):
    """Raised when the balance feed carries a balance for a closed account."""
    pass


class DiscontinuityError(AccrualBatchError):
    """Raised when an unchanged balance arrives after a missed day in the feed.
    
    Retryable: the account is dead-lettered when failure isolation is on.
    """
    pass


class RepeatedBalanceError(AccrualBatchError):
    """Raised when a balance arrives for a day the account already has a balance on or after."""
    pass


class MissingPeriodError(AccrualBatchError):
    """Raised when a balance day falls outside every period of the account."""
    pass


class MissingSchemeVersionError(AccrualBatchError):
    """Raised when a scheme has no version in force on a date."""
    
    def __init__(self, message: str, account_id: Optional[int] = None,
                 business_date: Optional[date] = None, scheme_id: Optional[int] = None):
        super().__init__(message, account_id, business_date)
        self.scheme_id = scheme_id


class MissingAccrualRunError(AccrualBatchError):
    """Raised when a continuation has no accrual run to continue."""
    pass


class NonContiguousAccrualRunError(AccrualBatchError):
    """Raised when the accrual run being continued does not end on the previous day."""
    pass


class OverlappingPeriodError(AccrualBatchError):
    """Raised when a new period overlaps an existing period of the same account."""
    pass


class AccountQuarantinedError(AccrualBatchError):
    """Recorded when work arrives for an account that is quarantined."""
    pass
