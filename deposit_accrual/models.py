"""
Data Model Module

Records owned by the ledger store. Money, rates and accrual residuals are
Decimal throughout; residuals are kept unrounded.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum

from .storage import StorageRecord


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class EodActionTaken(Enum):
    """What the balance run manager did with a day's balance"""
    NEW_RUN_CREATED = "new_run_created"
    RUN_EXTENDED = "run_extended"


class BatchStage(Enum):
    """Stages of the nightly batch, used to tag dead letters"""
    BALANCE_INGEST = "balance_ingest"
    ACCRUAL = "accrual"
    ADMIN = "admin"


@dataclass
class SchemeVersion(StorageRecord):
    """One rate version of a deposit scheme, in force from effective_from"""
    scheme_id: int
    effective_from: date
    annual_equivalent_rate: Decimal
    
    def __post_init__(self):
        self.annual_equivalent_rate = _as_decimal(self.annual_equivalent_rate)
        if self.annual_equivalent_rate < Decimal('0'):
            raise ValueError("Annual equivalent rate must not be negative")


@dataclass
class Account(StorageRecord):
    """Deposit account; never mutated after creation"""
    opened_on: date
    product_id: int


@dataclass
class AccountClosure(StorageRecord):
    account_id: int
    closed_on: date


@dataclass
class Period(StorageRecord):
    """Interest-rate review window for an account, inclusive at both ends"""
    account_id: int
    scheme_id: int
    start: date
    end: date
    
    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("Period end must not be before period start")
    
    def contains(self, on: date) -> bool:
        return self.start <= on <= self.end


@dataclass
class EodBalanceRun(StorageRecord):
    """
    Maximal contiguous span of days with an unchanged end-of-day balance.
    Only run_end moves, one day at a time.
    """
    account_id: int
    run_start: date
    run_end: date
    balance: Decimal
    
    def __post_init__(self):
        self.balance = _as_decimal(self.balance)
        if self.run_end < self.run_start:
            raise ValueError("Balance run cannot end before it starts")


@dataclass
class EodBalanceCompletion(StorageRecord):
    """Pending work: a balance day closed and accrual is owed for it"""
    eod_balance_id: int
    account_id: int
    date: date
    action_taken: EodActionTaken


@dataclass
class AccrualRun(StorageRecord):
    """
    Contiguous span over which the same balance run, period and scheme version
    applied. Residuals are the uncompounded interest tracked apart from the
    principal balance.
    """
    account_id: int
    period_id: int
    scheme_version_id: int
    eod_balance_id: int
    start: date
    end: date
    start_accrual_balance: Decimal
    end_accrual_balance: Decimal
    
    def __post_init__(self):
        self.start_accrual_balance = _as_decimal(self.start_accrual_balance)
        self.end_accrual_balance = _as_decimal(self.end_accrual_balance)
        if self.end < self.start:
            raise ValueError("Accrual run cannot end before it starts")


@dataclass
class DailyAccrualCompletion(StorageRecord):
    """Pending work: one account's accrued delta for one day, awaiting posting"""
    account_id: int
    accrual_run_id: int
    date: date
    delta: Decimal
    
    def __post_init__(self):
        self.delta = _as_decimal(self.delta)


@dataclass
class LedgerEntry(StorageRecord):
    """Aggregated accrual posting for one product on one value date"""
    product_id: int
    value_date: date
    amount: Decimal
    
    def __post_init__(self):
        self.amount = _as_decimal(self.amount)


@dataclass
class Payment(StorageRecord):
    """Interest paid out at the end of a period"""
    account_id: int
    period_id: int
    amount: Decimal
    date: date
    
    def __post_init__(self):
        self.amount = _as_decimal(self.amount)


@dataclass
class DeadLetter(StorageRecord):
    """A per-account failure set aside for operator remediation"""
    account_id: int
    business_date: date
    stage: BatchStage
    error_type: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    released: bool = False


@dataclass
class Quarantine(StorageRecord):
    """Account excluded from the batch until released"""
    account_id: int
    since: date
    reason: str
    released_on: Optional[date] = None
