import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, CategoryType, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance: int = 0
    institution: Optional[str] = Field(default=None, max_length=100)
    is_goal_tracking: bool = False
    sort_order: int = 0


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    institution: Optional[str] = Field(default=None, max_length=100)
    is_goal_tracking: Optional[bool] = None
    # Explicit opening-balance edit; every other balance change goes through deltas.
    balance: Optional[int] = None


class BudgetCategoryIn(BaseModel):
    budget_id: int
    account_id: int
    name: str = Field(..., min_length=1, max_length=100)
    category_type: CategoryType = CategoryType.expense
    category_group: Optional[str] = Field(default=None, max_length=100)
    sort_order: int = 0
    allocated_amount: int = Field(default=0, ge=0)
    available_amount: int = Field(default=0, ge=0)


class BudgetCategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category_group: Optional[str] = Field(default=None, max_length=100)
    sort_order: Optional[int] = None
    allocated_amount: Optional[int] = Field(default=None, ge=0)


class TransactionIn(BaseModel):
    account_id: int
    amount: int
    type: TransactionType
    date: dt.date
    description: str = Field(default="", max_length=200)
    category_id: Optional[int] = None
    subscription_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    amount: Optional[int] = None
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = None
    subscription_id: Optional[int] = None


class DeleteManyIn(BaseModel):
    ids: list[int] = Field(default_factory=list)


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: int
    description: Optional[str] = Field(default=None, max_length=200)
    date: Optional[dt.date] = None


class MoveMoneyIn(BaseModel):
    from_category_id: int
    to_category_id: int
    amount: int


class CoverOverspendingIn(BaseModel):
    overspent_category_id: int
    source_category_id: int


class AssignIn(BaseModel):
    amount: int


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount: int = Field(..., ge=0)
    budget_id: int
    account_id: Optional[int] = None
    target_date: Optional[dt.date] = None
    image_url: Optional[str] = Field(default=None, max_length=500)
    initial_amount: int = Field(default=0, ge=0)


class GoalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount: Optional[int] = Field(default=None, ge=0)
    target_date: Optional[dt.date] = None
    image_url: Optional[str] = Field(default=None, max_length=500)


class GoalContributionIn(BaseModel):
    amount: int


class GoalTransferIn(BaseModel):
    from_goal_id: int
    to_goal_id: int
    amount: int


class ReorderItem(BaseModel):
    id: int
    sort_order: int
