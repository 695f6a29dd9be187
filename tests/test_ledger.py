from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, StoreError, ValidationError
from models import AccountType, Transaction, TransactionType
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetCategoryIn,
    TransactionIn,
    TransactionUpdate,
)
from services import AccountService, BudgetService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def seed(session: Session, balance: int = 10_000):
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, balance=balance)
    )
    budgets = BudgetService(session)
    budget = budgets.get_or_create_for_month("2025-01")
    groceries = budgets.create_category(
        BudgetCategoryIn(
            budget_id=budget.id,
            account_id=account.id,
            name="Groceries",
            allocated_amount=5_000,
            available_amount=5_000,
        )
    )
    return account, budget, groceries


def expense(account_id: int, amount: int, category_id=None, note="Shop"):
    return TransactionIn(
        account_id=account_id,
        amount=amount,
        type=TransactionType.expense,
        date=date(2025, 1, 10),
        description=note,
        category_id=category_id,
    )


def test_create_expense_updates_balance_and_spending() -> None:
    session = make_session()
    account, _, groceries = seed(session)

    txn = TransactionService(session).create(expense(account.id, 2_500, groceries.id))

    assert txn.id is not None
    assert account.balance == 7_500
    assert groceries.spent_amount == 2_500
    assert groceries.available_amount == 5_000


def test_update_amount_reverses_then_applies() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 2_500, groceries.id))

    txns.update(txn.id, TransactionUpdate(amount=4_000))

    assert account.balance == 6_000
    assert groceries.spent_amount == 4_000


def test_income_and_transfer_never_touch_spending() -> None:
    session = make_session()
    account, _, groceries = seed(session, balance=0)
    txns = TransactionService(session)

    txns.create(
        TransactionIn(
            account_id=account.id,
            amount=3_000,
            type=TransactionType.income,
            date=date(2025, 1, 1),
            description="Salary",
            category_id=groceries.id,
        )
    )
    txns.create(
        TransactionIn(
            account_id=account.id,
            amount=1_000,
            type=TransactionType.transfer,
            date=date(2025, 1, 2),
            description="Out",
            category_id=groceries.id,
        )
    )

    assert account.balance == 2_000
    assert groceries.spent_amount == 0


def test_update_moves_spending_between_categories_and_accounts() -> None:
    session = make_session()
    account, budget, groceries = seed(session)
    savings = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.savings, balance=1_000)
    )
    dining = BudgetService(session).create_category(
        BudgetCategoryIn(budget_id=budget.id, account_id=savings.id, name="Dining")
    )
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 800, groceries.id))

    txns.update(
        txn.id, TransactionUpdate(account_id=savings.id, category_id=dining.id)
    )

    assert account.balance == 10_000
    assert savings.balance == 200
    assert groceries.spent_amount == 0
    assert dining.spent_amount == 800


def test_update_type_change_flips_sign() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 1_000, groceries.id))

    txns.update(txn.id, TransactionUpdate(type=TransactionType.income))

    assert account.balance == 11_000
    assert groceries.spent_amount == 0


def test_update_clearing_category_removes_spending() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 1_200, groceries.id))

    txns.update(txn.id, TransactionUpdate(category_id=None))

    assert txn.category_id is None
    assert account.balance == 8_800
    assert groceries.spent_amount == 0


def test_delete_then_recreate_restores_state() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 2_500, groceries.id))
    balance_before, spent_before = account.balance, groceries.spent_amount

    txns.delete(txn.id)
    assert account.balance == 10_000
    assert groceries.spent_amount == 0

    txns.create(expense(account.id, 2_500, groceries.id))
    assert account.balance == balance_before
    assert groceries.spent_amount == spent_before


def test_delete_many_matches_sequential_deletes() -> None:
    batched = make_session()
    sequential = make_session()
    results = []
    for session, batch in ((batched, True), (sequential, False)):
        account, _, groceries = seed(session)
        txns = TransactionService(session)
        t1 = txns.create(expense(account.id, 1_500, groceries.id))
        t2 = txns.create(expense(account.id, 700, groceries.id))
        txns.create(expense(account.id, 300, groceries.id, note="Keep"))
        if batch:
            assert txns.delete_many([t1.id, t2.id, t1.id]) == 2
        else:
            txns.delete(t1.id)
            txns.delete(t2.id)
        results.append((account.balance, groceries.spent_amount))

    assert results[0] == results[1] == (9_700, 300)


def test_delete_many_nets_mixed_types_per_account(monkeypatch) -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    ids = [
        txns.create(expense(account.id, 1_000, groceries.id)).id,
        txns.create(expense(account.id, 500, groceries.id)).id,
        txns.create(
            TransactionIn(
                account_id=account.id,
                amount=4_000,
                type=TransactionType.income,
                date=date(2025, 1, 3),
                description="Refund",
            )
        ).id,
    ]
    assert account.balance == 12_500

    calls: list[tuple[int, int]] = []
    real_apply = AccountService.apply_balance_delta

    def spy(self, account_id, delta):
        calls.append((account_id, delta))
        return real_apply(self, account_id, delta)

    monkeypatch.setattr(AccountService, "apply_balance_delta", spy)
    txns.delete_many(ids)

    assert calls == [(account.id, -2_500)]
    assert account.balance == 10_000
    assert groceries.spent_amount == 0
    assert session.query(Transaction).count() == 0


def test_delete_many_unknown_id_changes_nothing() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 1_000, groceries.id))

    with pytest.raises(NotFoundError):
        txns.delete_many([txn.id, 999])

    assert txns.get(txn.id).amount == 1_000
    assert account.balance == 9_000
    assert txns.delete_many([]) == 0


def test_balance_and_spending_conservation_over_edits() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)

    a = txns.create(expense(account.id, 1_000, groceries.id))
    b = txns.create(expense(account.id, 2_000, groceries.id))
    c = txns.create(
        TransactionIn(
            account_id=account.id,
            amount=5_000,
            type=TransactionType.income,
            date=date(2025, 1, 15),
            description="Pay",
        )
    )
    txns.update(a.id, TransactionUpdate(amount=1_750))
    txns.update(c.id, TransactionUpdate(amount=4_500))
    txns.update(b.id, TransactionUpdate(category_id=None))
    txns.delete(a.id)
    d = txns.create(expense(account.id, 600, groceries.id))

    existing = txns.list()
    signed = sum(
        t.amount if t.type == TransactionType.income else -t.amount for t in existing
    )
    assert {t.id for t in existing} == {b.id, c.id, d.id}
    assert account.balance == 10_000 + signed
    assert groceries.spent_amount == sum(
        t.amount
        for t in existing
        if t.type == TransactionType.expense and t.category_id == groceries.id
    )


def test_non_positive_amount_is_rejected() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)

    with pytest.raises(ValidationError):
        txns.create(expense(account.id, 0, groceries.id))

    txn = txns.create(expense(account.id, 100, groceries.id))
    with pytest.raises(ValidationError):
        txns.update(txn.id, TransactionUpdate(amount=-5))
    assert account.balance == 9_900


def test_unknown_references_raise_not_found() -> None:
    session = make_session()
    account, _, _ = seed(session)
    txns = TransactionService(session)

    with pytest.raises(NotFoundError):
        txns.create(expense(999, 100))
    with pytest.raises(NotFoundError):
        txns.create(expense(account.id, 100, category_id=999))
    with pytest.raises(NotFoundError):
        txns.delete(999)


def test_store_failure_rolls_back_whole_update(monkeypatch) -> None:
    session = make_session()
    account, _, groceries = seed(session)
    txns = TransactionService(session)
    txn = txns.create(expense(account.id, 2_500, groceries.id))

    def boom(self, category_id, amount):
        raise OperationalError("UPDATE budget_categories", {}, Exception("disk I/O"))

    monkeypatch.setattr(BudgetService, "add_spending", boom)
    with pytest.raises(StoreError):
        txns.update(txn.id, TransactionUpdate(amount=4_000))

    assert txns.get(txn.id).amount == 2_500
    assert account.balance == 7_500
    assert groceries.spent_amount == 2_500


def test_deleting_account_releases_spending_in_other_envelopes() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    card = AccountService(session).create(
        AccountIn(name="Card", type=AccountType.credit_card, balance=0)
    )
    txns = TransactionService(session)
    txns.create(expense(card.id, 900, groceries.id))
    txns.create(expense(account.id, 100, groceries.id))
    assert groceries.spent_amount == 1_000

    AccountService(session).delete(card.id)

    assert groceries.spent_amount == 100
    assert [t.amount for t in txns.list()] == [100]
    assert account.balance == 9_900


def test_opening_balance_edit_composes_with_later_entries() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    accounts = AccountService(session)
    txns = TransactionService(session)
    txns.create(expense(account.id, 500, groceries.id))

    accounts.update(account.id, AccountUpdate(balance=20_000))
    assert accounts.get(account.id).balance == 20_000

    txns.create(expense(account.id, 1_000, groceries.id))
    assert accounts.get(account.id).balance == 19_000
    assert groceries.spent_amount == 1_500
    with pytest.raises(ValidationError):
        accounts.update(account.id, AccountUpdate(balance=None))
    assert accounts.get(account.id).balance == 19_000


def test_list_filters_by_account_and_date_range() -> None:
    session = make_session()
    account, _, groceries = seed(session)
    other = AccountService(session).create(
        AccountIn(name="Card", type=AccountType.credit_card, balance=0)
    )
    txns = TransactionService(session)
    txns.create(expense(account.id, 100, groceries.id))
    txns.create(
        TransactionIn(
            account_id=other.id,
            amount=200,
            type=TransactionType.expense,
            date=date(2025, 2, 1),
            description="Later",
        )
    )

    assert [t.amount for t in txns.list_for_account(other.id)] == [200]
    in_january = txns.list_by_date_range(date(2025, 1, 1), date(2025, 1, 31))
    assert [t.amount for t in in_january] == [100]
    with pytest.raises(ValidationError):
        txns.list_by_date_range(date(2025, 2, 1), date(2025, 1, 1))
