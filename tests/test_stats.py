from datetime import datetime
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Category, CategoryType, TransactionType
from schemas import AccountIn, TransactionIn
from services import (
    AccountService,
    PeriodStats,
    StatsService,
    TransactionService,
    UserService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def cat(session, user_id: int, name: str, type_: CategoryType) -> int:
    return session.scalar(
        select(Category.id).where(
            Category.user_id == user_id, Category.name == name, Category.type == type_
        )
    )


def test_stats_totals_counts_and_breakdown() -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    accounts = AccountService(session, user.id)
    checking = accounts.create(AccountIn(name="Checking", balance=Decimal("500")))
    savings = accounts.create(AccountIn(name="Savings"))
    txns = TransactionService(session, user.id)
    when = datetime(2025, 4, 10)

    txns.create(
        TransactionIn(
            amount=Decimal("100"),
            type=TransactionType.income,
            account_id=checking.id,
            category_id=cat(session, user.id, "Salary", CategoryType.income),
            date=when,
        )
    )
    txns.create(
        TransactionIn(
            amount=Decimal("25"),
            type=TransactionType.income,
            account_id=checking.id,
            category_id=cat(session, user.id, "Freelance", CategoryType.income),
            date=when,
        )
    )
    txns.create(
        TransactionIn(
            amount=Decimal("40"),
            type=TransactionType.expense,
            account_id=checking.id,
            category_id=cat(session, user.id, "Food", CategoryType.expense),
            date=when,
        )
    )
    txns.create(
        TransactionIn(
            amount=Decimal("60"),
            type=TransactionType.transfer,
            source_account_id=checking.id,
            destination_account_id=savings.id,
            date=when,
        )
    )

    stats = StatsService(session, user.id).stats(month=4, year=2025)

    assert stats.total_income_cents == 12_500
    assert stats.total_expenses_cents == 4_000
    assert stats.income_count == 2
    assert stats.expense_count == 1
    assert [(c.name, c.total_cents, c.type) for c in stats.category_stats] == [
        ("Salary", 10_000, TransactionType.income),
        ("Uncategorized", 6_000, TransactionType.transfer),
        ("Food", 4_000, TransactionType.expense),
        ("Freelance", 2_500, TransactionType.income),
    ]

    other_month = StatsService(session, user.id).stats(month=5, year=2025)
    assert other_month == PeriodStats()


def test_uncategorized_transactions_are_grouped() -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    wallet = AccountService(session, user.id).create(AccountIn(name="Wallet"))
    txns = TransactionService(session, user.id)
    for amount in ("3.50", "1.25"):
        txns.create(
            TransactionIn(
                amount=Decimal(amount), type=TransactionType.expense, account_id=wallet.id
            )
        )

    stats = StatsService(session, user.id).stats()

    assert [(c.name, c.total_cents) for c in stats.category_stats] == [
        ("Uncategorized", 475)
    ]


def test_stats_fall_back_to_zero_when_storage_fails(monkeypatch) -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    service = StatsService(session, user.id)

    def broken(_period):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(service, "_collect", broken)

    assert service.stats(month=1, year=2025) == PeriodStats()


def test_out_of_range_month_yields_zeroed_stats() -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    wallet = AccountService(session, user.id).create(AccountIn(name="Wallet"))
    TransactionService(session, user.id).create(
        TransactionIn(amount=Decimal("9"), type=TransactionType.income, account_id=wallet.id)
    )

    assert StatsService(session, user.id).stats(month=13, year=2025) == PeriodStats()
    assert StatsService(session, user.id).stats(month=1, year=20) == PeriodStats()
