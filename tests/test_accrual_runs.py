"""
Test suite for the accrual run manager

Covers run continuation and restarts, re-basing from the run anchor, the
period-end payment and rounding reset, and the failure taxonomy.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from deposit_accrual.store import LedgerStore
from deposit_accrual.accounts import AccountAdministration
from deposit_accrual.balance_runs import EodBalanceRunManager
from deposit_accrual.accrual_runs import AccrualRunManager
from deposit_accrual.compounding import compound_residual, round_down_to_cents
from deposit_accrual.models import AccrualRun, BatchStage, EodActionTaken
from deposit_accrual.exceptions import (
    MissingPeriodError, MissingSchemeVersionError, MissingAccrualRunError,
    NonContiguousAccrualRunError
)


START = date(2024, 1, 1)
RATE = Decimal('0.05')


def day(offset: int) -> date:
    return START + timedelta(days=offset)


class AccrualTestBase:
    
    def setup_method(self):
        """Set up test fixtures"""
        self.store = LedgerStore()
        self.admin = AccountAdministration(self.store)
        self.version = self.admin.add_scheme_version(1, date(2020, 1, 1), RATE)
        self.admin.create_account(1, START, product_id=1)
        self.balances = EodBalanceRunManager(self.store)
        self.accruals = AccrualRunManager(self.store)
    
    def close_day(self, business_date: date, balances):
        self.balances.ingest_daily_balances(business_date, balances)
        return self.accruals.process_balance_completions(business_date)


class TestAccrualRuns(AccrualTestBase):
    """Test run creation and continuation"""
    
    def setup_method(self):
        super().setup_method()
        self.period = self.admin.open_period(1, 1, START, day(364))
    
    def test_first_day_starts_run(self):
        """Test that the first balance day starts an accrual run"""
        results = self.close_day(day(0), {1: Decimal('1000.00')})
        
        run = self.store.find_accrual_run_for_date(1, day(0))
        assert results["new_runs"] == 1
        assert run.start == day(0)
        assert run.end == day(0)
        assert run.start_accrual_balance == Decimal('0')
        assert run.end_accrual_balance == compound_residual(
            RATE, day(0), day(0), Decimal('1000.00'), Decimal('0')
        )
        assert run.period_id == self.period.id
        assert run.scheme_version_id == self.version.id
        
        accruals = self.store.find_accruals_for_day(day(0))
        assert len(accruals) == 1
        assert accruals[0].delta == Decimal('0.13')
        assert accruals[0].accrual_run_id == run.id
        
        # Completion consumed exactly once
        assert self.store.get_pending_eod_balance_completions() == []
    
    def test_unchanged_inputs_extend_run(self):
        """Test run extension while balance, period and rate hold"""
        for offset in range(3):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        
        runs = self.store.find_accrual_runs_for_account(1)
        assert len(runs) == 1
        assert runs[0].end == day(2)
        assert runs[0].end_accrual_balance == compound_residual(
            RATE, day(0), day(2), Decimal('1000.00'), Decimal('0')
        )
    
    def test_daily_delta_is_difference_of_rebased_residuals(self):
        """Test daily deltas against re-based residuals"""
        for offset in range(10):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        
        previous = Decimal('0')
        for offset in range(10):
            current = compound_residual(RATE, day(0), day(offset), Decimal('1000.00'), Decimal('0'))
            delta = self.store.find_accruals_for_day(day(offset))[0].delta
            true_value = current - previous
            
            assert delta == round_down_to_cents(true_value)
            assert delta <= true_value
            assert true_value - delta < Decimal('0.01')
            previous = current
    
    def test_balance_change_carries_residual(self):
        """Test residual carry-over into a new balance run"""
        for offset in range(10):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        self.close_day(day(10), {1: Decimal('1500.00')})
        
        first, second = self.store.find_accrual_runs_for_account(1)
        assert first.end == day(9)
        assert second.start == day(10)
        assert second.start_accrual_balance == first.end_accrual_balance
        assert second.eod_balance_id != first.eod_balance_id
        assert second.end_accrual_balance == compound_residual(
            RATE, day(10), day(10), Decimal('1500.00'), first.end_accrual_balance
        )
        
        delta = self.store.find_accruals_for_day(day(10))[0].delta
        assert delta == round_down_to_cents(second.end_accrual_balance - first.end_accrual_balance)
    
    def test_rate_change_starts_new_run(self):
        """Test that a new scheme version starts a new run"""
        new_version = self.admin.add_scheme_version(1, day(5), Decimal('0.10'))
        for offset in range(8):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        
        first, second = self.store.find_accrual_runs_for_account(1)
        assert first.scheme_version_id == self.version.id
        assert first.end == day(4)
        assert second.scheme_version_id == new_version.id
        assert second.start == day(5)
        assert second.end == day(7)
        assert second.end_accrual_balance == compound_residual(
            Decimal('0.10'), day(5), day(7), Decimal('1000.00'), first.end_accrual_balance
        )
    
    def test_full_year_pays_exact_annual_interest(self):
        """Test a full year at a constant balance"""
        for offset in range(365):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        
        run = self.store.find_accrual_run_for_date(1, day(364))
        assert run.start == day(0)
        assert run.end_accrual_balance == Decimal('50.00')
        
        payments = self.store.list_payments(1)
        assert len(payments) == 1
        assert payments[0].amount == Decimal('50.00')
        assert payments[0].date == day(365)
        assert payments[0].period_id == self.period.id


class TestPeriodRollover(AccrualTestBase):
    """Test payment at period end and the rounding reset that follows"""
    
    def setup_method(self):
        super().setup_method()
        self.first_period = self.admin.open_period(1, 1, START, day(4))
        self.second_period = self.admin.open_period(1, 1, day(5), day(364))
    
    def test_payment_dated_day_after_period_end(self):
        """Test payment generation at period end"""
        for offset in range(5):
            results = self.close_day(day(offset), {1: Decimal('10000.00')})
        
        assert results["payments"] == 1
        payment = self.store.list_payments(1)[0]
        residual = self.store.find_accrual_run_for_date(1, day(4)).end_accrual_balance
        assert payment.amount == round_down_to_cents(residual)
        assert payment.date == day(5)
        assert payment.period_id == self.first_period.id
    
    def test_only_fractional_remainder_carries_forward(self):
        """Test the rounding reset after a payment"""
        for offset in range(6):
            self.close_day(day(offset), {1: Decimal('10000.00')})
        
        first, second = self.store.find_accrual_runs_for_account(1)
        remainder = first.end_accrual_balance - round_down_to_cents(first.end_accrual_balance)
        
        assert second.period_id == self.second_period.id
        assert second.start_accrual_balance == remainder
        assert Decimal('0') <= second.start_accrual_balance < Decimal('0.01')
        
        delta = self.store.find_accruals_for_day(day(5))[0].delta
        assert delta == round_down_to_cents(second.end_accrual_balance - remainder)


class TestAccrualFailures(AccrualTestBase):
    """Test the failure taxonomy"""
    
    def test_missing_period(self):
        """Test accrual for a day outside every period"""
        with pytest.raises(MissingPeriodError, match="not in a period"):
            self.close_day(day(0), {1: Decimal('1000.00')})
        
        # Rolled back: the event is still owed
        assert len(self.store.get_pending_eod_balance_completions()) == 1
        assert self.store.find_accruals_for_day(day(0)) == []
    
    def test_missing_scheme_version(self):
        """Test accrual under a scheme with no version"""
        self.store.open_period(1, 99, START, day(364))
        
        with pytest.raises(MissingSchemeVersionError) as excinfo:
            self.close_day(day(0), {1: Decimal('1000.00')})
        assert excinfo.value.scheme_id == 99
        assert excinfo.value.account_id == 1
    
    def test_continuation_without_previous_run(self):
        """Test continuing with no accrual run"""
        self.admin.open_period(1, 1, START, day(364))
        self.balances.ingest_daily_balances(day(0), {1: Decimal('1000.00')})
        event = self.store.get_pending_eod_balance_completions()[0]
        balance_run = self.store.get_eod_balance_run(event.eod_balance_id)
        
        with pytest.raises(MissingAccrualRunError):
            self.accruals._continue_run(event, balance_run, self.version, None)
    
    def test_continuation_of_stale_run(self):
        """Test continuing a run that ended before the previous day"""
        self.admin.open_period(1, 1, START, day(364))
        self.balances.ingest_daily_balances(day(0), {1: Decimal('1000.00')})
        event = self.store.get_pending_eod_balance_completions()[0]
        balance_run = self.store.get_eod_balance_run(event.eod_balance_id)
        stale = AccrualRun(
            id=1, account_id=1, period_id=1, scheme_version_id=self.version.id,
            eod_balance_id=balance_run.id, start=day(-5), end=day(-2),
            start_accrual_balance=Decimal('0'), end_accrual_balance=Decimal('0.5')
        )
        
        with pytest.raises(NonContiguousAccrualRunError, match="expected"):
            self.accruals._continue_run(event, balance_run, self.version, stale)
    
    def test_isolation_dead_letters_and_acknowledges(self):
        """Test failure isolation in the accrual stage"""
        self.admin.create_account(2, START, product_id=1)
        self.admin.open_period(2, 1, START, day(364))
        accruals = AccrualRunManager(self.store, isolate_failures=True)
        
        self.balances.ingest_daily_balances(day(0), {1: Decimal('1000.00'), 2: Decimal('2000.00')})
        results = accruals.process_balance_completions(day(0))
        
        assert results["dead_lettered"] == 1
        assert results["new_runs"] == 1
        assert self.store.get_pending_eod_balance_completions() == []
        assert self.store.is_quarantined(1)
        letter = self.store.list_dead_letters(1)[0]
        assert letter.stage == BatchStage.ACCRUAL
        assert letter.error_type == "MissingPeriodError"
        assert [a.account_id for a in self.store.find_accruals_for_day(day(0))] == [2]
    
    def test_future_events_stay_queued(self):
        """Test that events after the business date are left queued"""
        self.admin.open_period(1, 1, START, day(364))
        self.balances.ingest_daily_balances(day(0), {1: Decimal('1000.00')})
        
        self.accruals.process_balance_completions(day(-1))
        
        pending = self.store.get_pending_eod_balance_completions()
        assert len(pending) == 1
        assert pending[0].action_taken == EodActionTaken.NEW_RUN_CREATED
    
    def test_reprocessing_extended_run_is_rejected(self):
        """Test that a replayed completion for an accrued day cannot extend the run again"""
        self.admin.open_period(1, 1, START, day(364))
        for offset in range(3):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        balance_run = self.store.find_latest_eod_balance_run(1)
        self.store.enqueue_eod_balance_completion(balance_run, EodActionTaken.RUN_EXTENDED)
        
        with pytest.raises(NonContiguousAccrualRunError, match="ends 2024-01-03, expected 2024-01-02"):
            self.accruals.process_balance_completions(day(2))
        
        assert self.store.find_accrual_runs_for_account(1)[0].end == day(2)
        assert len(self.store.find_accruals_for_day(day(2))) == 1
        assert len(self.store.get_pending_eod_balance_completions()) == 1
    
    def test_replayed_completion_dead_lettered_when_isolating(self):
        """Test that a replayed completion is dead-lettered and consumed"""
        self.admin.open_period(1, 1, START, day(364))
        for offset in range(2):
            self.close_day(day(offset), {1: Decimal('1000.00')})
        balance_run = self.store.find_latest_eod_balance_run(1)
        self.store.enqueue_eod_balance_completion(balance_run, EodActionTaken.RUN_EXTENDED)
        
        results = AccrualRunManager(self.store, isolate_failures=True).process_balance_completions(day(1))
        
        assert results["dead_lettered"] == 1
        assert self.store.get_pending_eod_balance_completions() == []
        assert self.store.list_dead_letters(1)[0].error_type == "NonContiguousAccrualRunError"


class TestCompletionQueue(AccrualTestBase):
    """Test at-most-once consumption of balance completions"""
    
    def setup_method(self):
        super().setup_method()
        self.admin.open_period(1, 1, START, day(364))
    
    def test_duplicate_events_for_same_day_accrue_once(self):
        """Test that two queued events for one account and day produce one accrual"""
        self.balances.ingest_daily_balances(day(0), {1: Decimal('1000.00')})
        balance_run = self.store.find_latest_eod_balance_run(1)
        self.store.enqueue_eod_balance_completion(balance_run, EodActionTaken.NEW_RUN_CREATED)
        assert len(self.store.get_pending_eod_balance_completions()) == 2
        
        results = self.accruals.process_balance_completions(day(0))
        
        assert results["new_runs"] == 1
        assert results["extended_runs"] == 0
        accruals = self.store.find_accruals_for_day(day(0))
        assert len(accruals) == 1
        assert accruals[0].delta == Decimal('0.13')
        assert len(self.store.find_accrual_runs_for_account(1)) == 1
        assert self.store.get_pending_eod_balance_completions() == []
    
    def test_pending_check_follows_acknowledgement(self):
        """Test the pending flag of a completion event"""
        self.balances.ingest_daily_balances(day(0), {1: Decimal('1000.00')})
        event = self.store.get_pending_eod_balance_completions()[0]
        assert self.store.is_eod_balance_completion_pending(event.id)
        
        self.store.acknowledge_eod_balance_completion(1, day(0))
        
        assert not self.store.is_eod_balance_completion_pending(event.id)
