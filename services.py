from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, joinedload

from database import atomic
from errors import NotFoundError, ValidationError
from models import (
    ENVELOPE_CATEGORY_TYPES,
    Account,
    AccountType,
    Budget,
    BudgetCategory,
    CategoryType,
    Goal,
    Transaction,
    TransactionType,
)
from periods import Period, budget_name, parse_month, previous_month, today_local
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    GoalIn,
    GoalUpdate,
    ReorderItem,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)

logger = logging.getLogger(__name__)

GOAL_ACCOUNT_NAME = "Goals"

DEFAULT_GOAL_IMAGES = {
    "Emergency Fund": "https://images.unsplash.com/photo-1579621970563-ebec7560ff3e?w=800&q=80",
    "Vacation": "https://images.unsplash.com/photo-1506905925346-21bda4d32df4?w=800&q=80",
    "House Down Payment": "https://images.unsplash.com/photo-1564013799919-ab600027ffc6?w=800&q=80",
    "Car": "https://images.unsplash.com/photo-1492144534655-ae79c964c9d7?w=800&q=80",
    "Wedding": "https://images.unsplash.com/photo-1519741497674-611481863552?w=800&q=80",
    "Education": "https://images.unsplash.com/photo-1523050854058-8df90110c9f1?w=800&q=80",
    "Retirement": "https://images.unsplash.com/photo-1544367567-0f2fcb009e0b?w=800&q=80",
    "Business": "https://images.unsplash.com/photo-1454165804606-c3d57bc86b40?w=800&q=80",
    "Travel": "https://images.unsplash.com/photo-1488646953014-85cb44e25828?w=800&q=80",
    "Savings": "https://images.unsplash.com/photo-1579621970795-87facc2f976d?w=800&q=80",
}

_GOAL_IMAGE_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("emergency", "fund"), "Emergency Fund"),
    (("vacation", "holiday"), "Vacation"),
    (("house", "home", "down payment"), "House Down Payment"),
    (("car", "vehicle"), "Car"),
    (("wedding", "marriage"), "Wedding"),
    (("education", "college", "school"), "Education"),
    (("retire",), "Retirement"),
    (("business", "startup"), "Business"),
    (("travel", "trip"), "Travel"),
]


def get_current_user_id() -> int:
    return 1


def suggested_goal_image(goal_name: str) -> str:
    lower_name = goal_name.lower()
    for keywords, label in _GOAL_IMAGE_KEYWORDS:
        if any(keyword in lower_name for keyword in keywords):
            return DEFAULT_GOAL_IMAGES[label]
    return DEFAULT_GOAL_IMAGES["Savings"]


def balance_effects(txn: Transaction) -> list[tuple[int, int]]:
    """Signed (account_id, delta) pairs a transaction contributes to balances."""
    if txn.type == TransactionType.income:
        return [(txn.account_id, txn.amount)]
    effects = [(txn.account_id, -txn.amount)]
    if (
        txn.type == TransactionType.transfer
        and txn.counterpart_account_id is not None
    ):
        effects.append((txn.counterpart_account_id, txn.amount))
    return effects


def spending_effect(txn: Transaction) -> Optional[tuple[int, int]]:
    """(category_id, amount) counted as spending; only categorized expenses."""
    if txn.category_id is not None and txn.type == TransactionType.expense:
        return txn.category_id, txn.amount
    return None


def _check_month(month: str) -> None:
    try:
        parse_month(month)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _require_positive(amount: Optional[int], message: str) -> int:
    if amount is None or amount <= 0:
        raise ValidationError(message)
    return amount


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    query: Optional[str] = None


@dataclass(frozen=True)
class MoveResult:
    amount: int
    from_category: BudgetCategory
    to_category: BudgetCategory


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.sort_order, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def goal_tracking_accounts(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.is_goal_tracking.is_(True))
            .order_by(Account.sort_order, Account.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance=data.balance,
            institution=data.institution,
            is_goal_tracking=data.is_goal_tracking,
            sort_order=data.sort_order,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} type={account.type.value} "
            f"balance={account.balance}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        for field in ("name", "type", "is_goal_tracking", "balance"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"Account {field} cannot be cleared")
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        for field, value in changes.items():
            setattr(account, field, value)
        self.session.commit()
        self.session.refresh(account)
        if "balance" in changes:
            logger.info(
                f"account_balance_set: id={account.id} balance={account.balance}"
            )
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        budget_ids = {category.budget_id for category in account.categories}
        # Envelopes of other accounts stop counting this account's expenses.
        foreign_spending: dict[int, int] = defaultdict(int)
        for txn in account.transactions:
            effect = spending_effect(txn)
            if effect and txn.category.account_id != account.id:
                foreign_spending[effect[0]] += effect[1]

        budgets = BudgetService(self.session, self.user_id)
        with atomic(self.session):
            for category_id, amount in foreign_spending.items():
                budgets.remove_spending(category_id, amount)
            self.session.delete(account)
            for budget_id in budget_ids:
                budgets.update_totals(budget_id)
        logger.info(
            f"account_deleted: id={account_id} "
            f"categories_adjusted={len(foreign_spending)}"
        )

    def reorder(self, items: list[ReorderItem]) -> None:
        for item in items:
            self.get(item.id).sort_order = item.sort_order
        self.session.commit()

    def apply_balance_delta(self, account_id: int, delta: int) -> None:
        """Atomically add ``delta`` to the account balance. Does not commit."""
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance=Account.balance + delta, updated_at=datetime.utcnow())
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found")
        logger.info(f"balance_delta: account_id={account_id} delta={delta}")

    def current_balance(self, account_id: int) -> int:
        balance = self.session.execute(
            select(Account.balance).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        ).scalar_one_or_none()
        if balance is None:
            raise NotFoundError("Account not found")
        return int(balance)


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    # ---- budgets -------------------------------------------------------

    def list_budgets(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.month.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def get_by_month(self, month: str) -> Optional[Budget]:
        _check_month(month)
        return self.session.scalar(
            select(Budget).where(Budget.user_id == self.user_id, Budget.month == month)
        )

    def get_or_create_for_month(
        self, month: str, *, copy_previous: bool = False
    ) -> Budget:
        """Return the budget for ``month`` (YYYY-MM), creating it if missing.

        With ``copy_previous`` a newly created budget inherits the previous
        month's categories, rolling unspent envelope money forward.
        """
        existing = self.get_by_month(month)
        if existing:
            return existing

        with atomic(self.session):
            budget = Budget(user_id=self.user_id, month=month, name=budget_name(month))
            self.session.add(budget)
            self.session.flush()
            copied = 0
            if copy_previous:
                prior = self.get_by_month(previous_month(month))
                if prior:
                    copied = len(self._copy_into(prior, budget))
        self.session.refresh(budget)
        logger.info(
            f"budget_created: id={budget.id} month={month} categories_copied={copied}"
        )
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        if any(category.goal is not None for category in budget.categories):
            raise ValidationError(
                f"Budget {budget.month} holds goals; delete or move them first"
            )
        with atomic(self.session):
            self.session.delete(budget)
        logger.info(f"budget_deleted: id={budget_id}")

    def update_totals(self, budget_id: int) -> None:
        """Recompute total_income / total_allocated from the budget's categories."""
        self.session.flush()
        rows = self.session.execute(
            select(
                BudgetCategory.category_type,
                func.coalesce(func.sum(BudgetCategory.allocated_amount), 0),
            )
            .where(BudgetCategory.budget_id == budget_id)
            .group_by(BudgetCategory.category_type)
        ).all()
        total_income = 0
        total_allocated = 0
        for category_type, amount in rows:
            if category_type == CategoryType.income:
                total_income += int(amount or 0)
            else:
                total_allocated += int(amount or 0)
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id)
            .values(total_income=total_income, total_allocated=total_allocated)
        )

    def copy_categories(
        self, source_budget_id: int, target_budget_id: int
    ) -> list[BudgetCategory]:
        source = self.get(source_budget_id)
        target = self.get(target_budget_id)
        if source.id == target.id:
            raise ValidationError("Source and target budgets must be different")
        if self.list_categories(target.id):
            raise ValidationError("Target budget already has categories")
        with atomic(self.session):
            created = self._copy_into(source, target)
        return created

    def _copy_into(self, source: Budget, target: Budget) -> list[BudgetCategory]:
        created: list[BudgetCategory] = []
        for category in self.list_categories(source.id):
            # Overspent envelopes start fresh instead of carrying a deficit.
            rollover = max(0, category.available_amount - category.spent_amount)
            copy = BudgetCategory(
                budget_id=target.id,
                account_id=category.account_id,
                name=category.name,
                category_type=category.category_type,
                category_group=category.category_group,
                sort_order=category.sort_order,
                allocated_amount=category.allocated_amount,
                spent_amount=0,
                available_amount=rollover,
            )
            self.session.add(copy)
            self.session.flush()
            goal = category.goal
            if goal is not None:
                # Goals follow their envelope into the newest month.
                goal.category = copy
            created.append(copy)
        self.update_totals(target.id)
        return created

    # ---- categories ----------------------------------------------------

    def list_categories(self, budget_id: int) -> list[BudgetCategory]:
        stmt = (
            select(BudgetCategory)
            .where(BudgetCategory.budget_id == budget_id)
            .order_by(
                BudgetCategory.sort_order,
                BudgetCategory.category_type,
                BudgetCategory.name,
            )
        )
        return self.session.scalars(stmt).all()

    def list_account_categories(
        self, account_id: int, budget_id: Optional[int] = None
    ) -> list[BudgetCategory]:
        stmt = (
            select(BudgetCategory)
            .join(Budget, Budget.id == BudgetCategory.budget_id)
            .where(
                Budget.user_id == self.user_id,
                BudgetCategory.account_id == account_id,
            )
            .order_by(BudgetCategory.sort_order, BudgetCategory.name)
        )
        if budget_id is not None:
            stmt = stmt.where(BudgetCategory.budget_id == budget_id)
        return self.session.scalars(stmt).all()

    def grouped(self, budget_id: int) -> dict[str, list[BudgetCategory]]:
        grouped: dict[str, list[BudgetCategory]] = {}
        for category in self.list_categories(budget_id):
            grouped.setdefault(category.category_group or "Ungrouped", []).append(
                category
            )
        return grouped

    def get_category(self, category_id: int) -> BudgetCategory:
        category = self.session.get(BudgetCategory, category_id)
        if not category or category.budget.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def create_category(self, data: BudgetCategoryIn) -> BudgetCategory:
        budget = self.get(data.budget_id)
        account = self.session.get(Account, data.account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        with atomic(self.session):
            category = BudgetCategory(
                budget_id=budget.id,
                account_id=account.id,
                name=data.name.strip(),
                category_type=data.category_type,
                category_group=data.category_group,
                sort_order=data.sort_order,
                allocated_amount=data.allocated_amount,
                available_amount=data.available_amount,
                spent_amount=0,
            )
            self.session.add(category)
            self.update_totals(budget.id)
        self.session.refresh(category)
        return category

    def update_category(
        self, category_id: int, data: BudgetCategoryUpdate
    ) -> BudgetCategory:
        category = self.get_category(category_id)
        changes = data.model_dump(exclude_unset=True)
        for field in ("name", "sort_order", "allocated_amount"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"Category {field} cannot be cleared")
        with atomic(self.session):
            for field, value in changes.items():
                setattr(category, field, value.strip() if field == "name" else value)
            if "allocated_amount" in changes:
                self.update_totals(category.budget_id)
        self.session.refresh(category)
        return category

    def delete_category(self, category_id: int) -> None:
        category = self.get_category(category_id)
        if category.goal is not None:
            raise ValidationError(
                f"{category.name} backs a goal; delete the goal instead"
            )
        budget_id = category.budget_id
        with atomic(self.session):
            self.session.delete(category)
            self.update_totals(budget_id)
        logger.info(f"category_deleted: id={category_id} budget_id={budget_id}")

    def reorder_categories(self, items: list[ReorderItem]) -> None:
        for item in items:
            self.get_category(item.id).sort_order = item.sort_order
        self.session.commit()

    # ---- accumulators (never commit; callers own the transaction) ------

    def add_spending(self, category_id: int, amount: int) -> None:
        self._adjust_spent(category_id, amount)

    def remove_spending(self, category_id: int, amount: int) -> None:
        self._adjust_spent(category_id, -amount)

    def _adjust_spent(self, category_id: int, delta: int) -> None:
        result = self.session.execute(
            update(BudgetCategory)
            .where(BudgetCategory.id == category_id)
            .values(
                spent_amount=BudgetCategory.spent_amount + delta,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount == 0:
            raise NotFoundError("Category not found")
        logger.info(f"spending_delta: category_id={category_id} delta={delta}")

    def adjust_available(self, category_id: int, delta: int) -> None:
        """Atomically shift available_amount; refuses to go below zero."""
        stmt = update(BudgetCategory).where(BudgetCategory.id == category_id)
        if delta < 0:
            stmt = stmt.where(BudgetCategory.available_amount >= -delta)
        result = self.session.execute(
            stmt.values(
                available_amount=BudgetCategory.available_amount + delta,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount == 0:
            category = self.get_category(category_id)
            raise ValidationError(f"Insufficient funds in {category.name}")
        logger.info(f"available_delta: category_id={category_id} delta={delta}")


class TransactionService:
    _REQUIRED_FIELDS = ("account_id", "amount", "type", "date", "description")

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.budgets = BudgetService(session, self.user_id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        period: Optional[Period] = None,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return self.session.scalars(stmt).unique().all()

    def list_for_account(self, account_id: int) -> list[Transaction]:
        self.accounts.get(account_id)
        return self.list(filters=TransactionFilters(account_id=account_id))

    def list_by_date_range(self, start: date, end: date) -> list[Transaction]:
        if start > end:
            raise ValidationError("Start date must be before end date")
        return self.list(period=Period("custom", start, end))

    def create(
        self, data: TransactionIn, *, counterpart_account_id: Optional[int] = None
    ) -> Transaction:
        self._validate(
            account_id=data.account_id,
            amount=data.amount,
            type=data.type,
            category_id=data.category_id,
            counterpart_account_id=counterpart_account_id,
        )
        with atomic(self.session):
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                counterpart_account_id=counterpart_account_id,
                category_id=data.category_id,
                amount=data.amount,
                type=data.type,
                date=data.date,
                description=data.description,
                subscription_id=data.subscription_id,
            )
            self.session.add(txn)
            self.session.flush()
            self._apply(txn)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"account_id={txn.account_id} amount={txn.amount}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        """Edit in place; accounting treats it as delete-old plus create-new."""
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        for field in self._REQUIRED_FIELDS:
            if field in changes and changes[field] is None:
                raise ValidationError(f"Transaction {field} cannot be cleared")

        merged = {
            "account_id": txn.account_id,
            "amount": txn.amount,
            "type": txn.type,
            "category_id": txn.category_id,
            "counterpart_account_id": txn.counterpart_account_id,
        }
        merged.update({k: v for k, v in changes.items() if k in merged})
        if merged["type"] != TransactionType.transfer:
            merged["counterpart_account_id"] = None
        self._validate(**merged)

        with atomic(self.session):
            self._apply(txn, reverse=True)
            for field, value in changes.items():
                setattr(txn, field, value)
            txn.counterpart_account_id = merged["counterpart_account_id"]
            self.session.flush()
            self._apply(txn)
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: id={txn.id} fields={sorted(changes)} "
            f"amount={txn.amount}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with atomic(self.session):
            self._apply(txn, reverse=True)
            self.session.delete(txn)
        logger.info(f"transaction_deleted: id={transaction_id}")

    def delete_many(self, transaction_ids: list[int]) -> int:
        """Delete a batch, applying one netted update per account and category."""
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            return 0
        rows = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id.in_(ids)
            )
        ).all()
        missing = set(ids) - {txn.id for txn in rows}
        if missing:
            raise NotFoundError(
                f"Transactions not found: {', '.join(str(i) for i in sorted(missing))}"
            )

        balance_changes: dict[int, int] = defaultdict(int)
        spending_changes: dict[int, int] = defaultdict(int)
        for txn in rows:
            for account_id, delta in balance_effects(txn):
                balance_changes[account_id] -= delta
            effect = spending_effect(txn)
            if effect:
                spending_changes[effect[0]] += effect[1]

        with atomic(self.session):
            self.session.execute(delete(Transaction).where(Transaction.id.in_(ids)))
            for account_id, delta in balance_changes.items():
                self.accounts.apply_balance_delta(account_id, delta)
            for category_id, amount in spending_changes.items():
                self.budgets.remove_spending(category_id, amount)
        logger.info(
            f"transactions_deleted: count={len(rows)} "
            f"accounts={len(balance_changes)} categories={len(spending_changes)}"
        )
        return len(rows)

    def _validate(
        self,
        *,
        account_id: Optional[int],
        amount: Optional[int],
        type: Optional[TransactionType],
        category_id: Optional[int],
        counterpart_account_id: Optional[int],
    ) -> None:
        _require_positive(amount, "Amount must be greater than zero")
        if account_id is None or type is None:
            raise ValidationError("Transaction requires an account and a type")
        self.accounts.get(account_id)
        if category_id is not None:
            self.budgets.get_category(category_id)
        if counterpart_account_id is not None:
            if type != TransactionType.transfer:
                raise ValidationError("Only transfers can have a destination account")
            if counterpart_account_id == account_id:
                raise ValidationError("Cannot transfer to the same account")
            self.accounts.get(counterpart_account_id)

    def _apply(self, txn: Transaction, *, reverse: bool = False) -> None:
        sign = -1 if reverse else 1
        for account_id, delta in balance_effects(txn):
            self.accounts.apply_balance_delta(account_id, sign * delta)
        effect = spending_effect(txn)
        if effect:
            category_id, amount = effect
            if reverse:
                self.budgets.remove_spending(category_id, amount)
            else:
                self.budgets.add_spending(category_id, amount)


class TransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = TransactionService(session, self.user_id)

    def transfer(self, data: TransferIn) -> Transaction:
        _require_positive(data.amount, "Transfer amount must be greater than zero")
        if data.from_account_id == data.to_account_id:
            raise ValidationError("Cannot transfer to the same account")
        self.ledger.accounts.get(data.from_account_id)
        destination = self.ledger.accounts.get(data.to_account_id)

        description = data.description or f"Transfer to {destination.name}"
        txn = self.ledger.create(
            TransactionIn(
                account_id=data.from_account_id,
                amount=data.amount,
                type=TransactionType.transfer,
                date=data.date or today_local(),
                description=description,
            ),
            counterpart_account_id=destination.id,
        )
        logger.info(
            f"transfer: id={txn.id} from={data.from_account_id} "
            f"to={data.to_account_id} amount={data.amount}"
        )
        return txn

    def list_transfers(self) -> list[Transaction]:
        return self.ledger.list(
            filters=TransactionFilters(type=TransactionType.transfer)
        )

    def delete_transfer(self, transaction_id: int) -> None:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
                Transaction.type == TransactionType.transfer,
            )
        )
        if not txn:
            raise NotFoundError("Transfer not found")
        if txn.counterpart_account_id is None:
            logger.warning(
                f"transfer_delete_one_sided: id={txn.id} "
                "destination unknown, only the source is restored"
            )
        self.ledger.delete(txn.id)


class ReadyToAssignService:
    """Account cash not yet assigned to any envelope, derived on every call."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.budgets = BudgetService(session, self.user_id)

    def _assigned_stmt(self, budget_id: int):
        return (
            select(
                BudgetCategory.account_id,
                func.coalesce(func.sum(BudgetCategory.available_amount), 0),
            )
            .where(
                BudgetCategory.budget_id == budget_id,
                BudgetCategory.category_type.in_(ENVELOPE_CATEGORY_TYPES),
            )
            .group_by(BudgetCategory.account_id)
        )

    def ready_to_assign(self, account_id: int, budget_id: int) -> int:
        self.budgets.get(budget_id)
        balance = self.accounts.current_balance(account_id)
        assigned = self.session.execute(
            self._assigned_stmt(budget_id).where(
                BudgetCategory.account_id == account_id
            )
        ).first()
        return balance - (int(assigned[1]) if assigned else 0)

    def for_budget(self, budget_id: int) -> dict[int, int]:
        self.budgets.get(budget_id)
        assigned = {
            account_id: int(total or 0)
            for account_id, total in self.session.execute(
                self._assigned_stmt(budget_id)
            ).all()
        }
        balances = self.session.execute(
            select(Account.id, Account.balance).where(Account.user_id == self.user_id)
        ).all()
        return {
            account_id: int(balance) - assigned.get(account_id, 0)
            for account_id, balance in balances
        }


class EnvelopeService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.budgets = BudgetService(session, self.user_id)
        self.ready = ReadyToAssignService(session, self.user_id)

    def move_money(
        self, from_category_id: int, to_category_id: int, amount: int
    ) -> MoveResult:
        _require_positive(amount, "Amount must be greater than zero")
        if from_category_id == to_category_id:
            raise ValidationError("Source and destination categories must be different")
        source = self.budgets.get_category(from_category_id)
        destination = self.budgets.get_category(to_category_id)
        if source.account_id != destination.account_id:
            raise ValidationError(
                "Categories must belong to the same account; "
                "transfer between accounts first"
            )
        if source.available_amount < amount:
            raise ValidationError(
                f"Insufficient funds in {source.name}: "
                f"{source.available_amount} available, {amount} requested"
            )

        with atomic(self.session):
            self.budgets.adjust_available(source.id, -amount)
            self.budgets.adjust_available(destination.id, amount)
        self.session.refresh(source)
        self.session.refresh(destination)
        logger.info(
            f"move_money: from={source.id} to={destination.id} amount={amount}"
        )
        return MoveResult(amount=amount, from_category=source, to_category=destination)

    def cover_overspending(
        self, overspent_category_id: int, source_category_id: int
    ) -> MoveResult:
        if overspent_category_id == source_category_id:
            raise ValidationError("A category cannot cover its own overspending")
        overspent = self.budgets.get_category(overspent_category_id)
        source = self.budgets.get_category(source_category_id)
        deficit = overspent.overspent_amount
        if deficit == 0:
            raise ValidationError(f"{overspent.name} is not overspent")
        if source.available_amount <= 0:
            raise ValidationError(f"{source.name} has no available funds")
        return self.move_money(
            source.id, overspent.id, min(deficit, source.available_amount)
        )

    def assign(self, category_id: int, amount: int) -> BudgetCategory:
        _require_positive(amount, "Amount to assign must be greater than zero")
        category = self.budgets.get_category(category_id)
        if category.category_type not in ENVELOPE_CATEGORY_TYPES:
            raise ValidationError("Only expense and savings categories can be funded")
        ready = self.ready.ready_to_assign(category.account_id, category.budget_id)
        if amount > ready:
            raise ValidationError(
                f"Insufficient funds. You have {ready} cents ready to assign, "
                f"but tried to assign {amount} cents."
            )
        with atomic(self.session):
            self.budgets.adjust_available(category.id, amount)
        self.session.refresh(category)
        logger.info(f"assign: category_id={category.id} amount={amount}")
        return category

    def quick_assign(self, category_id: int) -> BudgetCategory:
        category = self.budgets.get_category(category_id)
        return self.assign(category.id, category.allocated_amount)


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.budgets = BudgetService(session, self.user_id)
        self.envelopes = EnvelopeService(session, self.user_id)

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .options(joinedload(Goal.category))
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        budget = self.budgets.get(data.budget_id)
        if data.account_id is not None:
            account = self.accounts.get(data.account_id)
            if not account.is_goal_tracking:
                raise ValidationError("Goals must live in a goal-tracking account")
        with atomic(self.session):
            if data.account_id is None:
                account = self._default_goal_account()
            category = BudgetCategory(
                budget_id=budget.id,
                account_id=account.id,
                name=data.name.strip(),
                category_type=CategoryType.savings,
                allocated_amount=0,
                spent_amount=0,
                available_amount=0,
            )
            self.session.add(category)
            self.session.flush()
            goal = Goal(
                user_id=self.user_id,
                name=data.name.strip(),
                category_id=category.id,
                target_amount=data.target_amount,
                target_date=data.target_date,
                image_url=data.image_url or suggested_goal_image(data.name),
            )
            self.session.add(goal)
            self.session.flush()
            if data.initial_amount:
                self.budgets.adjust_available(category.id, data.initial_amount)
            self.budgets.update_totals(budget.id)
        self.session.refresh(goal)
        self.session.refresh(category)
        logger.info(
            f"goal_created: id={goal.id} category_id={category.id} "
            f"account_id={account.id}"
        )
        return goal

    def _default_goal_account(self) -> Account:
        existing = self.accounts.goal_tracking_accounts()
        if existing:
            return existing[0]
        account = Account(
            user_id=self.user_id,
            name=GOAL_ACCOUNT_NAME,
            type=AccountType.savings,
            balance=0,
            is_goal_tracking=True,
        )
        self.session.add(account)
        self.session.flush()
        logger.info(f"goal_account_created: id={account.id}")
        return account

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        changes = data.model_dump(exclude_unset=True)
        for field in ("name", "target_amount"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"Goal {field} cannot be cleared")
        with atomic(self.session):
            for field, value in changes.items():
                setattr(goal, field, value)
            if "name" in changes:
                goal.name = goal.name.strip()
                goal.category.name = goal.name
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int, *, move_funds_to: Optional[int] = None) -> None:
        """Remove the goal and its backing envelope.

        With ``move_funds_to`` the remaining funds land in that goal within
        the same database transaction as the delete.
        """
        goal = self.get(goal_id)
        category = goal.category
        budget_id = category.budget_id
        remaining = goal.current_amount
        destination = None
        if move_funds_to is not None and remaining > 0:
            if move_funds_to == goal_id:
                raise ValidationError("Source and destination goals must be different")
            destination = self.get(move_funds_to)
            if destination.account_id != goal.account_id:
                raise ValidationError(
                    "Goals must belong to the same account; "
                    "transfer between accounts first"
                )

        with atomic(self.session):
            if destination is not None:
                self.budgets.adjust_available(category.id, -remaining)
                self.budgets.adjust_available(destination.category_id, remaining)
            self.session.delete(category)
            self.budgets.update_totals(budget_id)
        if destination is not None:
            self.session.refresh(destination.category)
            logger.info(
                f"goal_funds_moved: from={goal_id} to={destination.id} "
                f"amount={remaining}"
            )
        logger.info(f"goal_deleted: id={goal_id}")

    def add_to_goal(self, goal_id: int, amount: int) -> Goal:
        # Earmarks money already held by the goal account; balances are untouched.
        _require_positive(amount, "Amount must be greater than zero")
        goal = self.get(goal_id)
        with atomic(self.session):
            self.budgets.adjust_available(goal.category_id, amount)
        self.session.refresh(goal.category)
        logger.info(f"goal_contribution: id={goal.id} amount={amount}")
        return goal

    def transfer_between_goals(
        self, from_goal_id: int, to_goal_id: int, amount: int
    ) -> MoveResult:
        if from_goal_id == to_goal_id:
            raise ValidationError("Source and destination goals must be different")
        source = self.get(from_goal_id)
        destination = self.get(to_goal_id)
        return self.envelopes.move_money(
            source.category_id, destination.category_id, amount
        )
