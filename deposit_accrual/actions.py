"""
Daily Action Models

Inbound work for one simulated day: the end-of-day balance file and the
admin actions applied on the day. Pydantic validates the payloads and
coerces balances to Decimal.
"""

from decimal import Decimal
from datetime import date
from typing import Dict, List, Optional, Type, TypeVar
from pydantic import BaseModel, ConfigDict, Field, model_validator


class DailyAction(BaseModel):
    """Base class for everything the scheduler dispatches"""
    model_config = ConfigDict(frozen=True)


class ConsumeEodBalanceFile(DailyAction):
    balances: Dict[int, Decimal] = Field(..., description="Closing balance per account id")


class CreateAccount(DailyAction):
    id: int
    product_id: int


class CloseAccount(DailyAction):
    id: int


class CreatePeriod(DailyAction):
    account_id: int
    scheme_id: int
    start: date
    end: date
    
    @model_validator(mode="after")
    def check_dates(self) -> 'CreatePeriod':
        if self.end < self.start:
            raise ValueError("Period end must not be before period start")
        return self


A = TypeVar("A", bound=DailyAction)


def actions_of_type(actions: List[DailyAction], action_type: Type[A]) -> List[A]:
    return [action for action in actions if isinstance(action, action_type)]


def first_action_of_type(actions: List[DailyAction], action_type: Type[A]) -> Optional[A]:
    matching = actions_of_type(actions, action_type)
    return matching[0] if matching else None
