import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    investment = "investment"
    loan = "loan"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"
    savings = "savings"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


# Category types whose available amounts are carved out of account cash.
ENVELOPE_CATEGORY_TYPES = (CategoryType.expense, CategoryType.savings)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_goal_tracking: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    institution: Mapped[Optional[str]] = mapped_column(String(100))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory", back_populates="account", cascade="all, delete-orphan"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        foreign_keys="Transaction.account_id",
        cascade="all, delete-orphan",
    )
    incoming_transfers: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="counterpart_account",
        foreign_keys="Transaction.counterpart_account_id",
    )

    __table_args__ = (
        Index("ix_accounts_user_sort", "user_id", "sort_order"),
        Index("ix_accounts_user_goal_tracking", "user_id", "is_goal_tracking"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    total_income: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_allocated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory", back_populates="budget", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_budget_user_month"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category_type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False
    )
    category_group: Mapped[Optional[str]] = mapped_column(String(100))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    allocated_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="categories")
    account: Mapped["Account"] = relationship("Account", back_populates="categories")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )
    goal: Mapped[Optional["Goal"]] = relationship(
        "Goal", back_populates="category", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def overspent_amount(self) -> int:
        return max(0, self.spent_amount - self.available_amount)

    __table_args__ = (
        Index("ix_budget_categories_account_budget", "account_id", "budget_id"),
        Index("ix_budget_categories_budget_sort", "budget_id", "sort_order"),
        CheckConstraint(
            "allocated_amount >= 0", name="ck_budget_category_allocated_positive"
        ),
        CheckConstraint(
            "available_amount >= 0", name="ck_budget_category_available_positive"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    counterpart_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    subscription_id: Mapped[Optional[int]] = mapped_column(Integer)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="transactions", foreign_keys=[account_id]
    )
    counterpart_account: Mapped[Optional["Account"]] = relationship(
        "Account",
        back_populates="incoming_transfers",
        foreign_keys=[counterpart_account_id],
    )
    category: Mapped[Optional["BudgetCategory"]] = relationship(
        "BudgetCategory", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    target_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    target_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    image_url: Mapped[Optional[str]] = mapped_column(String(500))

    category: Mapped["BudgetCategory"] = relationship(
        "BudgetCategory", back_populates="goal"
    )

    @property
    def current_amount(self) -> int:
        return self.category.available_amount

    @property
    def account_id(self) -> int:
        return self.category.account_id

    __table_args__ = (
        CheckConstraint("target_amount >= 0", name="ck_goal_target_positive"),
    )
