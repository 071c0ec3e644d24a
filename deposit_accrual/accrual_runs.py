"""
Accrual Run Manager

Turns balance completion events into compounded interest accrual. Each
account keeps contiguous accrual runs; a run lasts while the balance run,
the period and the scheme version in force stay the same, and its residual
is recomputed from the run's start every day so that no compounding error
builds up from one day to the next.

When a period ends, the residual is paid out in whole cents and only the
fraction of a cent left over is carried into the next period.
"""

from decimal import Decimal
from datetime import date, timedelta
from typing import Dict, Optional, Tuple
import logging

from .store import LedgerStore
from .models import (
    AccrualRun, BatchStage, EodBalanceCompletion, EodBalanceRun, Period, SchemeVersion
)
from .compounding import compound_residual, round_down_to_cents
from .exceptions import (
    AccrualBatchError, MissingPeriodError, MissingSchemeVersionError,
    MissingAccrualRunError, NonContiguousAccrualRunError
)
from .isolation import FailureIsolationMixin
from .logging_config import get_logger, log_action


class AccrualRunManager(FailureIsolationMixin):
    """
    Computes daily compounded accrual and generates period-end payments
    """
    
    def __init__(self, store: LedgerStore, isolate_failures: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.isolate_failures = isolate_failures
        self.logger = logger or get_logger("deposit_accrual.accrual_runs")
    
    def process_balance_completions(self, business_date: date) -> Dict[str, int]:
        """
        Drain pending balance completion events up to the business date
        
        Events are handled oldest day first; each describes the day it was
        raised for, and that day is the one accrued. Events for later days
        stay queued.
        
        Returns:
            Counts of accrual runs created, runs extended, payments generated
            and accounts dead-lettered
        """
        results = {"new_runs": 0, "extended_runs": 0, "payments": 0, "dead_lettered": 0}
        
        pending = [e for e in self.store.get_pending_eod_balance_completions()
                   if e.date <= business_date]
        pending.sort(key=lambda e: (e.date, e.id))
        
        for event in pending:
            # Acknowledging clears every event for the account and day
            if not self.store.is_eod_balance_completion_pending(event.id):
                continue
            if self._divert_if_quarantined(event.account_id, event.date, BatchStage.ACCRUAL,
                                           {"eod_balance_id": event.eod_balance_id}):
                self.store.acknowledge_eod_balance_completion(event.account_id, event.date)
                results["dead_lettered"] += 1
                continue
            
            try:
                with self.store.atomic():
                    created, paid = self._accrue(event)
                results["new_runs" if created else "extended_runs"] += 1
                results["payments"] += int(paid)
            except AccrualBatchError as e:
                self._isolate(event.account_id, event.date, BatchStage.ACCRUAL, e,
                              {"eod_balance_id": event.eod_balance_id})
                self.store.acknowledge_eod_balance_completion(event.account_id, event.date)
                results["dead_lettered"] += 1
        
        log_action(
            self.logger, "info", "Balance completions processed",
            business_date=business_date, action="process_balance_completions",
            resource="accrual_runs", extra=results
        )
        return results
    
    def _resolve_current(self, account_id: int, today: date) -> Tuple[Period, SchemeVersion]:
        period = self.store.find_period_for_account_on_date(account_id, today)
        if period is None:
            raise MissingPeriodError(
                f"Account {account_id} is not in a period on {today}", account_id, today
            )
        version = self.store.find_scheme_version_for_date(period.scheme_id, today)
        if version is None:
            raise MissingSchemeVersionError(
                f"Scheme {period.scheme_id} has no version on {today}",
                account_id, today, scheme_id=period.scheme_id
            )
        return period, version
    
    def _accrue(self, event: EodBalanceCompletion) -> Tuple[bool, bool]:
        """Accrue one account for one day; returns (new run created, payment generated)"""
        account_id = event.account_id
        today = event.date
        yesterday = today - timedelta(days=1)
        
        balance_run = self.store.get_eod_balance_run(event.eod_balance_id)
        if balance_run is None:
            raise AccrualBatchError(
                f"Balance run {event.eod_balance_id} not found", account_id, today
            )
        period, version = self._resolve_current(account_id, today)
        
        previous_balance_run = self.store.find_eod_balance_run_for_date(account_id, yesterday)
        previous_period = self.store.find_period_for_account_on_date(account_id, yesterday)
        previous_version = None
        if previous_period is not None:
            previous_version = self.store.find_scheme_version_for_date(previous_period.scheme_id, yesterday)
        previous_run = self.store.find_accrual_run_for_date(account_id, yesterday)
        
        new_run_needed = (
            previous_balance_run is None
            or previous_period is None
            or previous_version is None
            or previous_run is None
            or balance_run.id != previous_balance_run.id
            or period.id != previous_period.id
            or version.id != previous_version.id
        )
        
        if new_run_needed:
            run, previous_residual = self._start_run(
                event, balance_run, period, version, previous_period, previous_run
            )
        else:
            run, previous_residual = self._continue_run(
                event, balance_run, version, previous_run
            )
        
        accrued_today = round_down_to_cents(run.end_accrual_balance - previous_residual)
        self.store.enqueue_daily_accrual(account_id, run.id, today, accrued_today)
        
        paid = period.end == today
        if paid:
            self._generate_payment(period, run.end_accrual_balance, today + timedelta(days=1))
        
        self.store.acknowledge_eod_balance_completion(account_id, today)
        return new_run_needed, paid
    
    def _start_run(self, event: EodBalanceCompletion, balance_run: EodBalanceRun,
                   period: Period, version: SchemeVersion, previous_period: Optional[Period],
                   previous_run: Optional[AccrualRun]) -> Tuple[AccrualRun, Decimal]:
        today = event.date
        yesterday = today - timedelta(days=1)
        
        starting_residual = previous_run.end_accrual_balance if previous_run else Decimal('0')
        if previous_period is not None and previous_period.end == yesterday:
            # Whole cents were paid out at period end; carry only the remainder
            starting_residual -= round_down_to_cents(starting_residual)
        
        residual = compound_residual(
            version.annual_equivalent_rate, today, today,
            balance_run.balance, starting_residual
        )
        run = self.store.create_accrual_run(
            account_id=event.account_id,
            period_id=period.id,
            scheme_version_id=version.id,
            eod_balance_id=balance_run.id,
            on=today,
            starting_balance=starting_residual,
            closing_balance=residual
        )
        log_action(
            self.logger, "debug", f"Accrual run {run.id} started",
            account_id=event.account_id, business_date=today,
            action="accrual_run_created", resource="accrual_runs",
            extra={"starting_residual": str(starting_residual), "residual": str(residual),
                   "eod_balance_id": balance_run.id, "period_id": period.id,
                   "scheme_version_id": version.id}
        )
        return run, starting_residual
    
    def _continue_run(self, event: EodBalanceCompletion, balance_run: EodBalanceRun,
                      version: SchemeVersion,
                      previous_run: Optional[AccrualRun]) -> Tuple[AccrualRun, Decimal]:
        today = event.date
        yesterday = today - timedelta(days=1)
        
        if previous_run is None:
            raise MissingAccrualRunError(
                f"Expected an accrual run for account {event.account_id} on {yesterday}",
                event.account_id, today
            )
        if previous_run.end != yesterday:
            raise NonContiguousAccrualRunError(
                f"Accrual run {previous_run.id} ends {previous_run.end}, expected {yesterday}",
                event.account_id, today
            )
        
        # Re-base both figures on the run start with today's rate
        rate = version.annual_equivalent_rate
        previous_residual = compound_residual(
            rate, previous_run.start, yesterday,
            balance_run.balance, previous_run.start_accrual_balance
        )
        residual = compound_residual(
            rate, previous_run.start, today,
            balance_run.balance, previous_run.start_accrual_balance
        )
        run = self.store.extend_accrual_run(previous_run.id, today, residual)
        log_action(
            self.logger, "debug", f"Accrual run {run.id} extended",
            account_id=event.account_id, business_date=today,
            action="accrual_run_extended", resource="accrual_runs",
            extra={"residual": str(residual), "run_start": run.start.isoformat()}
        )
        return run, previous_residual
    
    def _generate_payment(self, period: Period, residual: Decimal, payment_date: date) -> None:
        # Ledger postings for the payment itself are not raised here
        payment = self.store.create_payment(
            period.account_id, period.id, round_down_to_cents(residual), payment_date
        )
        log_action(
            self.logger, "info", f"Payment {payment.id} generated for period {period.id}",
            account_id=period.account_id, business_date=period.end,
            action="payment_generated", resource="payments",
            extra={"amount": str(payment.amount), "payment_date": payment_date.isoformat()}
        )
