"""
EoD Balance Run Manager

Consumes the daily end-of-day balance feed and keeps one contiguous run per
account per stretch of unchanged balance. Every balance processed queues a
completion event for the accrual stage.
"""

from decimal import Decimal
from datetime import date, timedelta
from typing import Dict, Optional
import logging

from .store import LedgerStore
from .models import EodActionTaken, BatchStage
from .exceptions import (
    AccrualBatchError, ClosedAccountError, DiscontinuityError, RepeatedBalanceError
)
from .isolation import FailureIsolationMixin
from .logging_config import get_logger, log_action


class EodBalanceRunManager(FailureIsolationMixin):
    """
    Tracks contiguous balance history per account
    """
    
    def __init__(self, store: LedgerStore, isolate_failures: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.isolate_failures = isolate_failures
        self.logger = logger or get_logger("deposit_accrual.balance_runs")
    
    def ingest_daily_balances(self, business_date: date, balances: Dict[int, Decimal]) -> Dict[str, int]:
        """
        Ingest one day's balance feed
        
        Args:
            business_date: Date the balances were struck
            balances: Closing balance per account id
            
        Returns:
            Counts of runs created, runs extended and accounts dead-lettered
        """
        results = {action.value: 0 for action in EodActionTaken}
        results["dead_lettered"] = 0
        
        for account_id, balance in balances.items():
            if not isinstance(balance, Decimal):
                balance = Decimal(str(balance))
            payload = {"balance": str(balance)}
            
            if self._divert_if_quarantined(account_id, business_date, BatchStage.BALANCE_INGEST, payload):
                results["dead_lettered"] += 1
                continue
            
            try:
                with self.store.atomic():
                    action = self._ingest_balance(business_date, account_id, balance)
                results[action.value] += 1
            except AccrualBatchError as e:
                self._isolate(account_id, business_date, BatchStage.BALANCE_INGEST, e, payload)
                results["dead_lettered"] += 1
        
        log_action(
            self.logger, "info", "EoD balance feed ingested",
            business_date=business_date, action="ingest_balances",
            resource="eod_balance_runs", extra=results
        )
        return results
    
    def _ingest_balance(self, business_date: date, account_id: int, balance: Decimal) -> EodActionTaken:
        if self.store.is_closed(account_id):
            raise ClosedAccountError(
                f"Tried to submit EoD balance for closed account {account_id} on {business_date}",
                account_id, business_date
            )
        
        current_run = self.store.find_latest_eod_balance_run(account_id)
        if current_run is not None and current_run.run_end >= business_date:
            raise RepeatedBalanceError(
                f"Account {account_id} already has an EoD balance up to {current_run.run_end}, "
                f"rejected balance for {business_date}",
                account_id, business_date
            )
        
        if current_run is None or current_run.balance != balance:
            run = self.store.create_eod_balance_run(account_id, balance, business_date)
            action = EodActionTaken.NEW_RUN_CREATED
        
        elif current_run.run_end != business_date - timedelta(days=1):
            raise DiscontinuityError(
                f"Balance run {current_run.id} for account {account_id} ends {current_run.run_end}, "
                f"cannot extend to {business_date}",
                account_id, business_date
            )
        
        else:
            run = self.store.extend_eod_balance_run(current_run.id, business_date)
            action = EodActionTaken.RUN_EXTENDED
        
        self.store.enqueue_eod_balance_completion(run, action)
        log_action(
            self.logger, "debug", f"Balance run {run.id} {action.value}",
            account_id=account_id, business_date=business_date,
            action=action.value, resource="eod_balance_runs",
            extra={"balance": str(balance), "run_start": run.run_start.isoformat()}
        )
        return action
