"""
Ledger Poster

Drains daily accrual completions in date order and posts one ledger entry
per product per accrual day. Entries carry the date the posting batch ran as
their value date, not the accrual date.
"""

from decimal import Decimal
from datetime import date, timedelta
from typing import Dict, List, Optional
import logging

from .store import LedgerStore
from .models import LedgerEntry
from .logging_config import get_logger, log_action


class LedgerPoster:
    """
    Aggregates accrued deltas per product and posts them
    """
    
    def __init__(self, store: LedgerStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or get_logger("deposit_accrual.ledger_poster")
        self._product_cache: Dict[int, int] = {}
    
    def post_pending_accruals(self, run_date: date) -> List[LedgerEntry]:
        """
        Post every pending accrual dated before the run date
        
        Args:
            run_date: Date the posting batch runs; becomes each entry's value date
            
        Returns:
            Ledger entries posted, in posting order
        """
        start_date = self.store.find_earliest_accrual_date()
        if start_date is None:
            return []
        
        posted = []
        day = start_date
        while day < run_date:
            posted.extend(self._post_day(day, run_date))
            day += timedelta(days=1)
        
        log_action(
            self.logger, "info", f"Posted {len(posted)} ledger entries",
            business_date=run_date, action="post_accruals", resource="ledger_entries",
            extra={"from": start_date.isoformat(), "entries": len(posted)}
        )
        return posted
    
    def _post_day(self, day: date, run_date: date) -> List[LedgerEntry]:
        accruals = self.store.find_accruals_for_day(day)
        if not accruals:
            return []
        
        totals: Dict[int, Decimal] = {}
        for accrual in accruals:
            product_id = self._product_for(accrual.account_id)
            totals[product_id] = totals.get(product_id, Decimal('0')) + accrual.delta
        
        entries = []
        with self.store.atomic():
            for product_id, total in sorted(totals.items()):
                entries.append(self.store.post_entry(product_id, total, run_date))
            for accrual in accruals:
                self.store.acknowledge_accrual(accrual.accrual_run_id, accrual.date)
        
        for entry in entries:
            log_action(
                self.logger, "debug", f"Ledger entry {entry.id} posted",
                business_date=day, action="ledger_entry_posted", resource="ledger_entries",
                extra={"product_id": entry.product_id, "amount": str(entry.amount),
                       "value_date": entry.value_date.isoformat()}
            )
        return entries
    
    def _product_for(self, account_id: int) -> int:
        # Product is fixed when the account is created
        if account_id not in self._product_cache:
            self._product_cache[account_id] = self.store.get_account(account_id).product_id
        return self._product_cache[account_id]
