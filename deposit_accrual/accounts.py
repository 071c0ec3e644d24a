"""
Account Administration Module

Same-day admin actions: scheme versions, account opening and closure, and
period opening. The scheme version in force is checked when a period opens.
"""

from decimal import Decimal
from datetime import date
from typing import Optional
import logging

from .store import LedgerStore
from .models import Account, AccountClosure, Period, SchemeVersion
from .exceptions import (
    ClosedAccountError, DuplicateAccountError, MissingSchemeVersionError,
    OverlappingPeriodError
)
from .logging_config import get_logger, log_action


class AccountAdministration:
    """
    Applies admin actions to the ledger store
    """
    
    def __init__(self, store: LedgerStore, enforce_period_non_overlap: bool = True,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.enforce_period_non_overlap = enforce_period_non_overlap
        self.logger = logger or get_logger("deposit_accrual.accounts")
    
    def add_scheme_version(self, scheme_id: int, effective_from: date, aer: Decimal) -> SchemeVersion:
        """Append a rate version to a scheme; versions are never edited"""
        version = self.store.add_scheme_version(scheme_id, effective_from, Decimal(str(aer)))
        log_action(
            self.logger, "info", f"Scheme {scheme_id} version {version.id} added",
            business_date=effective_from, action="scheme_version_added",
            resource="scheme_versions", extra={"aer": str(version.annual_equivalent_rate)}
        )
        return version
    
    def create_account(self, account_id: int, opened_on: date, product_id: int) -> Account:
        if self.store.find_account(account_id) is not None:
            raise DuplicateAccountError(f"Account {account_id} already exists", account_id, opened_on)
        account = self.store.create_account(account_id, opened_on, product_id)
        log_action(
            self.logger, "info", "Account created",
            account_id=account_id, business_date=opened_on,
            action="account_created", resource="accounts",
            extra={"product_id": product_id}
        )
        return account
    
    def close_account(self, account_id: int, on: date) -> AccountClosure:
        if self.store.is_closed(account_id):
            raise ClosedAccountError(f"Account {account_id} is already closed", account_id, on)
        closure = self.store.close_account(account_id, on)
        log_action(
            self.logger, "info", "Account closed",
            account_id=account_id, business_date=on,
            action="account_closed", resource="account_closures"
        )
        return closure
    
    def open_period(self, account_id: int, scheme_id: int, start: date, end: date) -> Period:
        """
        Open an interest-rate period for an account
        
        Args:
            account_id: Account the period belongs to
            scheme_id: Deposit scheme whose versions set the rate
            start: First day of the period
            end: Last day of the period; the payment is dated the day after
            
        Returns:
            The new period
            
        Raises:
            MissingSchemeVersionError: No version of the scheme is in force on start
            OverlappingPeriodError: The account already has a period covering part of start..end
        """
        self.store.get_account(account_id)
        
        version = self.store.find_scheme_version_for_date(scheme_id, start)
        if version is None:
            raise MissingSchemeVersionError(
                f"Scheme {scheme_id} has no version on {start}",
                account_id, start, scheme_id=scheme_id
            )
        
        if self.enforce_period_non_overlap:
            for existing in self.store.find_periods_for_account(account_id):
                if existing.start <= end and start <= existing.end:
                    raise OverlappingPeriodError(
                        f"Period {start}..{end} overlaps period {existing.id} "
                        f"({existing.start}..{existing.end}) of account {account_id}",
                        account_id, start
                    )
        
        period = self.store.open_period(account_id, scheme_id, start, end)
        log_action(
            self.logger, "info", f"Period {period.id} opened",
            account_id=account_id, business_date=start,
            action="period_opened", resource="periods",
            extra={"scheme_id": scheme_id, "scheme_version_id": version.id,
                   "end": end.isoformat()}
        )
        return period
