from datetime import datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

import ledger
from database import Base
from errors import NotFoundError, ValidationError
from models import Account, AccountType, Transaction, TransactionType, User


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_accounts(session, *balances):
    user = User(name="Owner")
    session.add(user)
    session.flush()
    accounts = []
    for idx, cents in enumerate(balances):
        account = Account(
            user_id=user.id,
            name=f"Account {idx}",
            type=AccountType.bank,
            balance_cents=cents,
            opening_balance_cents=cents,
        )
        session.add(account)
        accounts.append(account)
    session.commit()
    return user, accounts


def make_txn(user, **kwargs) -> Transaction:
    return Transaction(user_id=user.id, date=datetime(2025, 3, 1), **kwargs)


def test_balance_deltas_per_type() -> None:
    user = User(id=1, name="x")
    income = make_txn(user, type=TransactionType.income, amount_cents=500, account_id=3)
    expense = make_txn(
        user, type=TransactionType.expense, amount_cents=200, account_id=3
    )
    transfer = make_txn(
        user,
        type=TransactionType.transfer,
        amount_cents=300,
        source_account_id=3,
        destination_account_id=4,
    )

    assert ledger.balance_deltas(income) == [(3, 500)]
    assert ledger.balance_deltas(expense) == [(3, -200)]
    assert ledger.balance_deltas(transfer) == [(3, -300), (4, 300)]


def test_balance_deltas_rejects_incomplete_transactions() -> None:
    user = User(id=1, name="x")
    with pytest.raises(ValidationError):
        ledger.balance_deltas(
            make_txn(user, type=TransactionType.expense, amount_cents=100)
        )
    with pytest.raises(ValidationError):
        ledger.balance_deltas(
            make_txn(
                user,
                type=TransactionType.transfer,
                amount_cents=100,
                source_account_id=1,
            )
        )
    with pytest.raises(ValidationError):
        ledger.balance_deltas(
            make_txn(
                user,
                type=TransactionType.transfer,
                amount_cents=100,
                source_account_id=1,
                destination_account_id=1,
            )
        )


def test_transfer_moves_money_between_accounts() -> None:
    session = make_session()
    user, (checking, savings) = seed_accounts(session, 200_000, 50_000)

    txn = make_txn(
        user,
        type=TransactionType.transfer,
        amount_cents=30_000,
        source_account_id=checking.id,
        destination_account_id=savings.id,
    )
    session.add(txn)
    session.flush()
    ledger.apply_effect(session, txn)
    session.commit()

    assert checking.balance_cents == 170_000
    assert savings.balance_cents == 80_000


def test_apply_then_reverse_restores_balances() -> None:
    session = make_session()
    user, (first, second) = seed_accounts(session, 12_345, 0)

    txns = [
        make_txn(user, type=TransactionType.income, amount_cents=5_000, account_id=first.id),
        make_txn(user, type=TransactionType.expense, amount_cents=777, account_id=second.id),
        make_txn(
            user,
            type=TransactionType.transfer,
            amount_cents=1_001,
            source_account_id=second.id,
            destination_account_id=first.id,
        ),
    ]
    for txn in txns:
        session.add(txn)
        session.flush()
        ledger.apply_effect(session, txn)
    session.commit()
    assert first.balance_cents == 12_345 + 5_000 + 1_001
    assert second.balance_cents == -777 - 1_001

    # Reversal order does not matter.
    for txn in [txns[1], txns[2], txns[0]]:
        ledger.reverse_effect(session, txn)
    session.commit()

    assert first.balance_cents == 12_345
    assert second.balance_cents == 0


def test_apply_rejects_account_of_another_user() -> None:
    session = make_session()
    _, (theirs,) = seed_accounts(session, 1_000)
    intruder = User(name="Intruder")
    session.add(intruder)
    session.commit()

    txn = make_txn(
        intruder, type=TransactionType.expense, amount_cents=100, account_id=theirs.id
    )
    with pytest.raises(NotFoundError):
        ledger.apply_effect(session, txn)
    session.rollback()

    assert session.get(Account, theirs.id).balance_cents == 1_000


def test_balance_leaving_integer_range_is_rejected() -> None:
    session = make_session()
    user, (rich, poor) = seed_accounts(session, ledger.INT64_MAX - 50, ledger.INT64_MIN + 50)

    income = make_txn(user, type=TransactionType.income, amount_cents=100, account_id=rich.id)
    with pytest.raises(ValidationError):
        ledger.apply_effect(session, income)
    session.rollback()

    expense = make_txn(user, type=TransactionType.expense, amount_cents=100, account_id=poor.id)
    with pytest.raises(ValidationError):
        ledger.apply_effect(session, expense)
    session.rollback()

    stored = session.execute(
        text("select balance_cents, typeof(balance_cents) from accounts order by id")
    ).all()
    assert [tuple(row) for row in stored] == [
        (ledger.INT64_MAX - 50, "integer"),
        (ledger.INT64_MIN + 50, "integer"),
    ]
