from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from models import AccountType, CategoryType, TransactionType
from schemas import AccountIn, BudgetCategoryIn, TransactionIn, TransferIn
from services import (
    AccountService,
    BudgetService,
    EnvelopeService,
    ReadyToAssignService,
    TransactionService,
    TransferService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def envelope(session, budget_id, account_id, name, available=0, **kwargs):
    return BudgetService(session).create_category(
        BudgetCategoryIn(
            budget_id=budget_id,
            account_id=account_id,
            name=name,
            available_amount=available,
            **kwargs,
        )
    )


def setup_budget(session: Session, balance: int = 10_000):
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, balance=balance)
    )
    budget = BudgetService(session).get_or_create_for_month("2025-01")
    return account, budget


def test_move_money_conserves_total_available() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    rent = envelope(session, budget.id, account.id, "Rent", available=3_000)
    fun = envelope(session, budget.id, account.id, "Fun", available=500)

    result = EnvelopeService(session).move_money(rent.id, fun.id, 1_200)

    assert result.amount == 1_200
    assert result.from_category.available_amount == 1_800
    assert result.to_category.available_amount == 1_700
    assert rent.available_amount + fun.available_amount == 3_500


def test_move_money_rejects_insufficient_funds() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    rent = envelope(session, budget.id, account.id, "Rent", available=100)
    fun = envelope(session, budget.id, account.id, "Fun")

    with pytest.raises(ValidationError, match="Insufficient funds in Rent"):
        EnvelopeService(session).move_money(rent.id, fun.id, 101)

    assert rent.available_amount == 100
    assert fun.available_amount == 0


def test_move_money_rejects_cross_account_and_same_category() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    other = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.savings, balance=0)
    )
    rent = envelope(session, budget.id, account.id, "Rent", available=1_000)
    trips = envelope(session, budget.id, other.id, "Trips")
    envelopes = EnvelopeService(session)

    with pytest.raises(ValidationError, match="same account"):
        envelopes.move_money(rent.id, trips.id, 100)
    with pytest.raises(ValidationError):
        envelopes.move_money(rent.id, rent.id, 100)
    with pytest.raises(ValidationError):
        envelopes.move_money(rent.id, trips.id, 0)
    with pytest.raises(NotFoundError):
        envelopes.move_money(rent.id, 999, 100)

    assert rent.available_amount == 1_000


def test_cover_overspending_clears_deficit() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    groceries = envelope(session, budget.id, account.id, "Groceries", available=1_000)
    dining = envelope(session, budget.id, account.id, "Dining", available=5_000)
    TransactionService(session).create(
        TransactionIn(
            account_id=account.id,
            amount=4_000,
            type=TransactionType.expense,
            date=date(2025, 1, 9),
            description="Big shop",
            category_id=groceries.id,
        )
    )
    assert groceries.overspent_amount == 3_000

    result = EnvelopeService(session).cover_overspending(groceries.id, dining.id)

    assert result.amount == 3_000
    assert groceries.available_amount == 4_000
    assert groceries.overspent_amount == 0
    assert dining.available_amount == 2_000


def test_cover_overspending_moves_what_the_source_has() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    groceries = envelope(session, budget.id, account.id, "Groceries")
    dining = envelope(session, budget.id, account.id, "Dining", available=700)
    TransactionService(session).create(
        TransactionIn(
            account_id=account.id,
            amount=2_000,
            type=TransactionType.expense,
            date=date(2025, 1, 9),
            description="Shop",
            category_id=groceries.id,
        )
    )

    result = EnvelopeService(session).cover_overspending(groceries.id, dining.id)

    assert result.amount == 700
    assert groceries.overspent_amount == 1_300
    assert dining.available_amount == 0


def test_cover_overspending_validation() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    groceries = envelope(session, budget.id, account.id, "Groceries", available=100)
    empty = envelope(session, budget.id, account.id, "Empty")
    envelopes = EnvelopeService(session)

    with pytest.raises(ValidationError, match="not overspent"):
        envelopes.cover_overspending(groceries.id, empty.id)
    with pytest.raises(ValidationError):
        envelopes.cover_overspending(groceries.id, groceries.id)

    TransactionService(session).create(
        TransactionIn(
            account_id=account.id,
            amount=500,
            type=TransactionType.expense,
            date=date(2025, 1, 9),
            description="Shop",
            category_id=groceries.id,
        )
    )
    with pytest.raises(ValidationError, match="no available funds"):
        envelopes.cover_overspending(groceries.id, empty.id)


def test_ready_to_assign_tracks_balance_and_envelopes() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    envelope(session, budget.id, account.id, "Rent", available=6_000)
    envelope(
        session,
        budget.id,
        account.id,
        "Emergency",
        available=1_000,
        category_type=CategoryType.savings,
    )
    envelope(
        session,
        budget.id,
        account.id,
        "Salary",
        available=9_999,
        category_type=CategoryType.income,
    )
    ready = ReadyToAssignService(session)

    assert ready.ready_to_assign(account.id, budget.id) == 3_000

    savings = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.savings, balance=0)
    )
    TransferService(session).transfer(
        TransferIn(from_account_id=account.id, to_account_id=savings.id, amount=4_000)
    )

    assert ready.ready_to_assign(account.id, budget.id) == -1_000
    assert ready.for_budget(budget.id) == {account.id: -1_000, savings.id: 4_000}


def test_assign_is_capped_by_ready_to_assign() -> None:
    session = make_session()
    account, budget = setup_budget(session, balance=1_000)
    rent = envelope(session, budget.id, account.id, "Rent", allocated_amount=800)
    envelopes = EnvelopeService(session)

    envelopes.quick_assign(rent.id)
    assert rent.available_amount == 800

    with pytest.raises(ValidationError, match="Insufficient funds"):
        envelopes.assign(rent.id, 201)
    envelopes.assign(rent.id, 200)

    assert rent.available_amount == 1_000
    assert ReadyToAssignService(session).ready_to_assign(account.id, budget.id) == 0


def test_assign_rejects_income_categories() -> None:
    session = make_session()
    account, budget = setup_budget(session)
    salary = envelope(
        session, budget.id, account.id, "Salary", category_type=CategoryType.income
    )

    with pytest.raises(ValidationError):
        EnvelopeService(session).assign(salary.id, 100)
