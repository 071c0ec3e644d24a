"""
Ledger Store Module

Typed tables over a StorageInterface backend: scheme versions, accounts,
periods, balance runs, accrual runs, ledger entries, payments, dead letters
and the two pending-work queues. Holds no business rules.

Every lookup returns a fresh record, so callers never hold an alias into a
table; run records change only through the create/extend methods here.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Type

from .storage import StorageInterface, InMemoryStorage, StorageRecord
from .models import (
    SchemeVersion, Account, AccountClosure, Period, EodBalanceRun,
    EodActionTaken, EodBalanceCompletion, AccrualRun, DailyAccrualCompletion,
    LedgerEntry, Payment, DeadLetter, Quarantine, BatchStage
)
from .exceptions import UnknownAccountError


class LedgerStore:
    """
    Explicit datastore for one batch, passed to every component
    """
    
    def __init__(self, storage: Optional[StorageInterface] = None):
        self.storage = storage or InMemoryStorage()
        
        self.scheme_versions_table = "scheme_versions"
        self.accounts_table = "accounts"
        self.closures_table = "account_closures"
        self.periods_table = "periods"
        self.eod_balances_table = "eod_balance_runs"
        self.eod_completions_table = "eod_balance_completions"
        self.accruals_table = "accrual_runs"
        self.accrual_completions_table = "daily_accrual_completions"
        self.ledger_table = "ledger_entries"
        self.payments_table = "payments"
        self.dead_letters_table = "dead_letters"
        self.quarantine_table = "quarantined_accounts"
    
    def atomic(self):
        """Atomic unit of work over the backend"""
        return self.storage.atomic()
    
    # Generic helpers
    
    def _insert(self, table: str, record_type: Type[StorageRecord], **values) -> StorageRecord:
        record = record_type(id=self.storage.next_id(table), **values)
        self.storage.save(table, str(record.id), record.to_dict())
        return record
    
    def _update(self, table: str, record: StorageRecord) -> None:
        self.storage.save(table, str(record.id), record.to_dict())
    
    def _get(self, table: str, record_type: Type[StorageRecord], record_id: int) -> Optional[StorageRecord]:
        data = self.storage.load(table, str(record_id))
        return record_type.from_dict(data) if data else None
    
    def _find(self, table: str, record_type: Type[StorageRecord], filters: Dict[str, Any],
              predicate: Optional[Callable[[Dict[str, Any]], bool]] = None) -> List[StorageRecord]:
        return [record_type.from_dict(data) for data in self.storage.find(table, filters, predicate)]
    
    # Scheme versions (append-only)
    
    def add_scheme_version(self, scheme_id: int, effective_from: date, aer: Decimal) -> SchemeVersion:
        return self._insert(self.scheme_versions_table, SchemeVersion,
                            scheme_id=scheme_id, effective_from=effective_from,
                            annual_equivalent_rate=aer)
    
    def get_scheme_version(self, version_id: int) -> Optional[SchemeVersion]:
        return self._get(self.scheme_versions_table, SchemeVersion, version_id)
    
    def find_scheme_version_for_date(self, scheme_id: int, on: date) -> Optional[SchemeVersion]:
        """Latest version of the scheme with effective_from on or before the date"""
        on_iso = on.isoformat()
        versions = self._find(self.scheme_versions_table, SchemeVersion,
                              {"scheme_id": scheme_id},
                              lambda r: r['effective_from'] <= on_iso)
        if not versions:
            return None
        return max(versions, key=lambda v: (v.effective_from, v.id))
    
    # Accounts
    
    def create_account(self, account_id: int, opened_on: date, product_id: int) -> Account:
        account = Account(id=account_id, opened_on=opened_on, product_id=product_id)
        self.storage.save(self.accounts_table, str(account_id), account.to_dict())
        return account
    
    def find_account(self, account_id: int) -> Optional[Account]:
        return self._get(self.accounts_table, Account, account_id)
    
    def get_account(self, account_id: int) -> Account:
        account = self.find_account(account_id)
        if account is None:
            raise UnknownAccountError(f"Account {account_id} does not exist", account_id)
        return account
    
    def close_account(self, account_id: int, on: date) -> AccountClosure:
        return self._insert(self.closures_table, AccountClosure,
                            account_id=self.get_account(account_id).id, closed_on=on)
    
    def is_closed(self, account_id: int) -> bool:
        return bool(self.storage.find(self.closures_table, {"account_id": account_id}))
    
    # Periods
    
    def open_period(self, account_id: int, scheme_id: int, start: date, end: date) -> Period:
        return self._insert(self.periods_table, Period, account_id=account_id,
                            scheme_id=scheme_id, start=start, end=end)
    
    def get_period(self, period_id: int) -> Optional[Period]:
        return self._get(self.periods_table, Period, period_id)
    
    def find_periods_for_account(self, account_id: int) -> List[Period]:
        return self._find(self.periods_table, Period, {"account_id": account_id})
    
    def find_period_for_account_on_date(self, account_id: int, on: date) -> Optional[Period]:
        on_iso = on.isoformat()
        periods = self._find(self.periods_table, Period, {"account_id": account_id},
                             lambda r: r['start'] <= on_iso <= r['end'])
        return min(periods, key=lambda p: p.id) if periods else None
    
    # EoD balance runs
    
    def get_eod_balance_run(self, run_id: int) -> Optional[EodBalanceRun]:
        return self._get(self.eod_balances_table, EodBalanceRun, run_id)
    
    def find_eod_balance_run_for_date(self, account_id: int, on: date) -> Optional[EodBalanceRun]:
        on_iso = on.isoformat()
        runs = self._find(self.eod_balances_table, EodBalanceRun, {"account_id": account_id},
                          lambda r: r['run_start'] <= on_iso <= r['run_end'])
        return min(runs, key=lambda r: r.id) if runs else None
    
    def find_latest_eod_balance_run(self, account_id: int) -> Optional[EodBalanceRun]:
        """Most recent run by run_start"""
        runs = self._find(self.eod_balances_table, EodBalanceRun, {"account_id": account_id})
        if not runs:
            return None
        return max(runs, key=lambda r: (r.run_start, r.id))
    
    def create_eod_balance_run(self, account_id: int, balance: Decimal, on: date) -> EodBalanceRun:
        return self._insert(self.eod_balances_table, EodBalanceRun,
                            account_id=self.get_account(account_id).id,
                            run_start=on, run_end=on, balance=balance)
    
    def extend_eod_balance_run(self, run_id: int, new_run_end: date) -> EodBalanceRun:
        run = self.get_eod_balance_run(run_id)
        run.run_end = new_run_end
        self._update(self.eod_balances_table, run)
        return run
    
    # EoD balance completion queue
    
    def enqueue_eod_balance_completion(self, run: EodBalanceRun,
                                       action_taken: EodActionTaken) -> EodBalanceCompletion:
        """Queue the run's latest day; the event date is the run's end"""
        return self._insert(self.eod_completions_table, EodBalanceCompletion,
                            eod_balance_id=run.id, account_id=run.account_id,
                            date=run.run_end, action_taken=action_taken)
    
    def get_pending_eod_balance_completions(self) -> List[EodBalanceCompletion]:
        completions = self._find(self.eod_completions_table, EodBalanceCompletion, {})
        return sorted(completions, key=lambda c: c.id)
    
    def is_eod_balance_completion_pending(self, completion_id: int) -> bool:
        return self.storage.exists(self.eod_completions_table, str(completion_id))
    
    def acknowledge_eod_balance_completion(self, account_id: int, on: date) -> int:
        """Remove the account's completion events for the date; returns how many"""
        matched = self.storage.find(self.eod_completions_table,
                                    {"account_id": account_id, "date": on.isoformat()})
        for data in matched:
            self.storage.delete(self.eod_completions_table, str(data['id']))
        return len(matched)
    
    # Accrual runs
    
    def get_accrual_run(self, run_id: int) -> Optional[AccrualRun]:
        return self._get(self.accruals_table, AccrualRun, run_id)
    
    def find_accrual_runs_for_account(self, account_id: int) -> List[AccrualRun]:
        runs = self._find(self.accruals_table, AccrualRun, {"account_id": account_id})
        return sorted(runs, key=lambda r: (r.start, r.id))
    
    def find_accrual_run_for_date(self, account_id: int, on: date) -> Optional[AccrualRun]:
        """Run containing the date with the latest start"""
        on_iso = on.isoformat()
        runs = self._find(self.accruals_table, AccrualRun, {"account_id": account_id},
                          lambda r: r['start'] <= on_iso <= r['end'])
        if not runs:
            return None
        return max(runs, key=lambda r: (r.start, r.id))
    
    def create_accrual_run(self, account_id: int, period_id: int, scheme_version_id: int,
                           eod_balance_id: int, on: date, starting_balance: Decimal,
                           closing_balance: Decimal) -> AccrualRun:
        return self._insert(self.accruals_table, AccrualRun,
                            account_id=account_id, period_id=period_id,
                            scheme_version_id=scheme_version_id,
                            eod_balance_id=eod_balance_id, start=on, end=on,
                            start_accrual_balance=starting_balance,
                            end_accrual_balance=closing_balance)
    
    def extend_accrual_run(self, run_id: int, new_run_end: date, new_end_balance: Decimal) -> AccrualRun:
        run = self.get_accrual_run(run_id)
        run.end = new_run_end
        run.end_accrual_balance = new_end_balance
        self._update(self.accruals_table, run)
        return run
    
    # Daily accrual completion queue
    
    def enqueue_daily_accrual(self, account_id: int, accrual_run_id: int, for_date: date,
                              accrued: Decimal) -> DailyAccrualCompletion:
        return self._insert(self.accrual_completions_table, DailyAccrualCompletion,
                            account_id=account_id, accrual_run_id=accrual_run_id,
                            date=for_date, delta=accrued)
    
    def find_earliest_accrual_date(self) -> Optional[date]:
        pending = self.storage.load_all(self.accrual_completions_table)
        if not pending:
            return None
        return date.fromisoformat(min(row['date'] for row in pending))
    
    def find_accruals_for_day(self, on: date) -> List[DailyAccrualCompletion]:
        accruals = self._find(self.accrual_completions_table, DailyAccrualCompletion,
                              {"date": on.isoformat()})
        return sorted(accruals, key=lambda a: a.id)
    
    def acknowledge_accrual(self, accrual_run_id: int, on: date) -> int:
        matched = self.storage.find(self.accrual_completions_table,
                                    {"accrual_run_id": accrual_run_id, "date": on.isoformat()})
        for data in matched:
            self.storage.delete(self.accrual_completions_table, str(data['id']))
        return len(matched)
    
    # Ledger and payments (append-only)
    
    def post_entry(self, product_id: int, amount: Decimal, value_date: date) -> LedgerEntry:
        return self._insert(self.ledger_table, LedgerEntry, product_id=product_id,
                            value_date=value_date, amount=amount)
    
    def list_ledger_entries(self) -> List[LedgerEntry]:
        return sorted(self._find(self.ledger_table, LedgerEntry, {}), key=lambda e: e.id)
    
    def create_payment(self, account_id: int, period_id: int, amount: Decimal, on: date) -> Payment:
        return self._insert(self.payments_table, Payment, account_id=account_id,
                            period_id=period_id, amount=amount, date=on)
    
    def list_payments(self, account_id: Optional[int] = None) -> List[Payment]:
        filters = {} if account_id is None else {"account_id": account_id}
        return sorted(self._find(self.payments_table, Payment, filters), key=lambda p: p.id)
    
    # Dead letters and quarantine
    
    def dead_letter(self, account_id: int, business_date: date, stage: BatchStage,
                    error: Exception, payload: Optional[Dict[str, Any]] = None) -> DeadLetter:
        return self._insert(self.dead_letters_table, DeadLetter, account_id=account_id,
                            business_date=business_date, stage=stage,
                            error_type=type(error).__name__, message=str(error),
                            payload=payload or {})
    
    def list_dead_letters(self, account_id: Optional[int] = None,
                          include_released: bool = False) -> List[DeadLetter]:
        filters = {} if account_id is None else {"account_id": account_id}
        if not include_released:
            filters["released"] = False
        return sorted(self._find(self.dead_letters_table, DeadLetter, filters), key=lambda d: d.id)
    
    def quarantine_account(self, account_id: int, since: date, reason: str) -> Quarantine:
        existing = self.find_quarantine(account_id)
        if existing:
            return existing
        return self._insert(self.quarantine_table, Quarantine, account_id=account_id,
                            since=since, reason=reason)
    
    def find_quarantine(self, account_id: int) -> Optional[Quarantine]:
        active = self._find(self.quarantine_table, Quarantine,
                            {"account_id": account_id, "released_on": None})
        return active[0] if active else None
    
    def is_quarantined(self, account_id: int) -> bool:
        return self.find_quarantine(account_id) is not None
    
    def release_quarantine(self, account_id: int, on: date) -> bool:
        """Return the account to the batch and mark its dead letters handled"""
        quarantine = self.find_quarantine(account_id)
        if quarantine is None:
            return False
        with self.atomic():
            quarantine.released_on = on
            self._update(self.quarantine_table, quarantine)
            for letter in self.list_dead_letters(account_id):
                letter.released = True
                self._update(self.dead_letters_table, letter)
        return True
    
    # Diagnostics
    
    def snapshot(self, account_filter: Optional[Callable[[int], bool]] = None) -> Dict[str, List[Dict[str, Any]]]:
        """JSON-serialisable dump of every table, optionally restricted to some accounts"""
        keep = account_filter or (lambda _account_id: True)
        
        def rows(table: str, account_key: Optional[str] = "account_id") -> List[Dict[str, Any]]:
            records = sorted(self.storage.load_all(table), key=lambda r: r['id'])
            if account_key is None:
                return records
            return [r for r in records if keep(r[account_key])]
        
        return {
            "scheme_versions": rows(self.scheme_versions_table, None),
            "accounts": rows(self.accounts_table, "id"),
            "account_closures": rows(self.closures_table),
            "eod_balance_runs": rows(self.eod_balances_table),
            "eod_balance_completions": rows(self.eod_completions_table),
            "periods": rows(self.periods_table),
            "accrual_runs": rows(self.accruals_table),
            "payments": rows(self.payments_table),
            "daily_accrual_completions": rows(self.accrual_completions_table),
            "ledger_entries": rows(self.ledger_table, None),
            "dead_letters": rows(self.dead_letters_table),
        }
