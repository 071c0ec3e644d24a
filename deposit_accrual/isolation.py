"""
Per-Account Failure Isolation

A failing account is quarantined and its work dead-lettered so the rest of
the batch can carry on. Quarantined accounts stay out of every stage until
an operator releases them.
"""

from datetime import date
from typing import Any, Dict, Optional

from .models import BatchStage
from .exceptions import AccountQuarantinedError
from .logging_config import log_action


class FailureIsolationMixin:
    """Mixin for batch stages; expects self.store, self.logger and self.isolate_failures"""
    
    def _divert_if_quarantined(self, account_id: int, business_date: date, stage: BatchStage,
                               payload: Optional[Dict[str, Any]] = None) -> bool:
        """Dead-letter work for a quarantined account; True if it was diverted"""
        quarantine = self.store.find_quarantine(account_id)
        if quarantine is None:
            return False
        error = AccountQuarantinedError(
            f"Account {account_id} quarantined since {quarantine.since}",
            account_id, business_date
        )
        self.store.dead_letter(account_id, business_date, stage, error, payload)
        log_action(
            self.logger, "warning", "Skipped quarantined account",
            account_id=account_id, business_date=business_date,
            action="divert", resource=stage.value
        )
        return True
    
    def _isolate(self, account_id: int, business_date: date, stage: BatchStage,
                 error: Exception, payload: Optional[Dict[str, Any]] = None) -> None:
        """Quarantine the account, or re-raise when isolation is off"""
        if not self.isolate_failures:
            raise error
        with self.store.atomic():
            self.store.dead_letter(account_id, business_date, stage, error, payload)
            self.store.quarantine_account(account_id, business_date, type(error).__name__)
        log_action(
            self.logger, "error", f"Account quarantined: {error}",
            account_id=account_id, business_date=business_date,
            action="quarantine", resource=stage.value,
            extra={"error_type": type(error).__name__}
        )
    
    def _reject(self, account_id: int, business_date: date, stage: BatchStage,
                error: Exception, payload: Optional[Dict[str, Any]] = None) -> None:
        """Dead-letter a rejected request without quarantining the account"""
        if not self.isolate_failures:
            raise error
        self.store.dead_letter(account_id, business_date, stage, error, payload)
        log_action(
            self.logger, "warning", f"Rejected: {error}",
            account_id=account_id, business_date=business_date,
            action="reject", resource=stage.value,
            extra={"error_type": type(error).__name__}
        )
