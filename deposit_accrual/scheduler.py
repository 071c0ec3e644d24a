"""
Batch Scheduler

Advances the calendar one day at a time. For each day the nightly close-out
of the previous day runs first (balance feed, accrual, ledger posting), then
the day's admin actions, then the diagnostic state dump.
"""

from datetime import date, timedelta
from typing import Dict, List, Optional
import logging

from .store import LedgerStore
from .config import AccrualConfig, get_config
from .actions import (
    DailyAction, ConsumeEodBalanceFile, CreateAccount, CloseAccount, CreatePeriod,
    first_action_of_type
)
from .accounts import AccountAdministration
from .balance_runs import EodBalanceRunManager
from .accrual_runs import AccrualRunManager
from .ledger_poster import LedgerPoster
from .models import BatchStage
from .exceptions import AccrualBatchError
from .isolation import FailureIsolationMixin
from .logging_config import get_logger, log_action, setup_logging


class BatchScheduler(FailureIsolationMixin):
    """
    Runs the nightly and same-day stages in fixed order
    """
    
    def __init__(self, store: LedgerStore, config: Optional[AccrualConfig] = None,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.config = config or get_config()
        self.logger = logger or get_logger("deposit_accrual.scheduler")
        
        self.isolate_failures = self.config.isolate_account_failures
        self.admin = AccountAdministration(store, self.config.enforce_period_non_overlap)
        self.balance_runs = EodBalanceRunManager(store, isolate_failures=self.isolate_failures)
        self.accrual_runs = AccrualRunManager(store, isolate_failures=self.isolate_failures)
        self.ledger_poster = LedgerPoster(store)
    
    @classmethod
    def from_config(cls, config: Optional[AccrualConfig] = None,
                    store: Optional[LedgerStore] = None) -> "BatchScheduler":
        """
        Build a scheduler with logging configured from settings
    
        Args:
            config: Settings to use; defaults to the environment-loaded config
            store: Ledger store; a fresh in-memory store when omitted
        """
        config = config or get_config()
        logger = setup_logging(config.log_level, "deposit_accrual",
                               config.log_format, config.log_file)
        logger.info("Batch scheduler configured")
        return cls(store or LedgerStore(), config)
    
    def run(self, first_day: date, last_day: date,
            actions: Dict[date, List[DailyAction]]) -> None:
        """Run every day from first_day to last_day inclusive"""
        today = first_day
        while today <= last_day:
            self.run_day(today, actions)
            today += timedelta(days=1)
    
    def run_day(self, today: date, actions: Dict[date, List[DailyAction]]) -> None:
        yesterday = today - timedelta(days=1)
        self.run_nightly(yesterday, actions.get(yesterday, []))
        self.run_same_day(today, actions.get(today, []))
        self.dump_state(today)
    
    def run_nightly(self, business_date: date, actions: List[DailyAction]) -> None:
        """Close out the business date; ledger entries take the following day as value date"""
        feed = first_action_of_type(actions, ConsumeEodBalanceFile)
        if feed is not None:
            self.balance_runs.ingest_daily_balances(business_date, feed.balances)
        
        self.accrual_runs.process_balance_completions(business_date)
        self.ledger_poster.post_pending_accruals(business_date + timedelta(days=1))
    
    def run_same_day(self, today: date, actions: List[DailyAction]) -> None:
        for action in actions:
            if isinstance(action, ConsumeEodBalanceFile):
                # Consumed by the following night's run
                continue
            try:
                self._apply_admin_action(today, action)
            except AccrualBatchError as e:
                self._reject(e.account_id, today, BatchStage.ADMIN, e,
                             {"action": type(action).__name__, **action.model_dump(mode="json")})
    
    def _apply_admin_action(self, today: date, action: DailyAction) -> None:
        if isinstance(action, CreateAccount):
            self.admin.create_account(action.id, today, action.product_id)
        elif isinstance(action, CloseAccount):
            self.admin.close_account(action.id, today)
        elif isinstance(action, CreatePeriod):
            self.admin.open_period(action.account_id, action.scheme_id,
                                   action.start, action.end)
        else:
            raise ValueError(f"Unsupported daily action: {type(action).__name__}")
    
    def dump_state(self, today: date) -> None:
        if not self.config.state_dump_enabled or not self.logger.isEnabledFor(logging.DEBUG):
            return
        account_ids = self.config.state_dump_account_ids
        
        def account_filter(account_id: int) -> bool:
            return account_ids is None or account_id in account_ids
        
        log_action(
            self.logger, "debug", f"State after {today}",
            business_date=today, action="state_dump",
            extra=self.store.snapshot(account_filter)
        )
