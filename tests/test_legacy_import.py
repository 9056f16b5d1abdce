import sqlite3
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationError
from legacy_sqlite_import import LegacyLedgerImportService
from models import Account, Asset, Category, CategoryType, Transaction, TransactionType
from services import BalanceCheckService, UserService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def build_legacy_db(path: Path) -> Path:
    con = sqlite3.connect(path)
    con.executescript(
        """
        create table accounts (id integer primary key, name text, type text, balance real);
        create table categories (id integer primary key, name text, type text);
        create table transactions (
            id integer primary key, amount real, type text, category_id integer,
            account_id integer, source_account_id integer,
            destination_account_id integer, description text, date text
        );
        create table assets (id integer primary key, name text, value real, type text);

        insert into accounts values (1, 'Checking', 'bank', 1500.0);
        insert into accounts values (2, 'Wallet', 'pocket', 200.0);

        insert into categories values (1, 'Salary', 'income');
        insert into categories values (2, 'Groceries', 'expense');
        insert into categories values (3, 'Fod', 'expense');

        insert into transactions values
            (1, 2000.0, 'income', 1, 1, null, null, 'Pay', '2024-01-05 10:00:00');
        insert into transactions values
            (2, 300.0, 'expense', 3, 1, null, null, 'Dinner', '2024-01-06T19:30:00Z');
        insert into transactions values
            (3, 200.0, 'transfer', 2, null, 1, 2, 'Top up', '2024-01-07T08:00:00');
        insert into transactions values
            (4, 50.0, 'expense', 2, 99, null, null, 'Ghost', '2024-01-08T08:00:00');
        insert into transactions values
            (5, -5.0, 'income', 1, 1, null, null, 'Negative', '2024-01-09T08:00:00');

        insert into assets values (1, 'Bike', 450.0, 'vehicle');
        """
    )
    con.commit()
    con.close()
    return path


def test_preview_reports_counts_and_category_mapping(tmp_path) -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    legacy = build_legacy_db(tmp_path / "legacy.db")

    preview = LegacyLedgerImportService(session, user.id).preview(legacy)

    assert preview.accounts_count == 2
    assert preview.transactions_count == 5
    assert preview.importable_transactions == 3
    assert preview.assets_count == 1
    assert str(preview.min_transaction_date) == "2024-01-05"
    assert str(preview.max_transaction_date) == "2024-01-07"
    assert len(preview.warnings) == 2

    actions = {row.legacy_name: (row.action, row.target_category_name) for row in preview.mapping_rows}
    assert actions == {
        "Salary": ("existing", "Salary"),
        "Groceries": ("create", "Groceries"),
        "Fod": ("fuzzy", "Food"),
    }


def test_commit_keeps_balances_and_history_consistent(tmp_path) -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    legacy = build_legacy_db(tmp_path / "legacy.db")

    summary = LegacyLedgerImportService(session, user.id).commit(legacy)

    assert summary == {
        "imported_accounts": 2,
        "created_categories": 1,
        "imported_transactions": 3,
        "skipped_transactions": 2,
        "imported_assets": 1,
    }

    accounts = {a.name: a for a in session.scalars(select(Account))}
    assert accounts["Checking"].balance_cents == 150_000
    assert accounts["Wallet"].balance_cents == 20_000
    assert accounts["Wallet"].type.value == "other"
    assert accounts["Checking"].opening_balance_cents == 0
    assert accounts["Wallet"].opening_balance_cents == 0
    assert BalanceCheckService(session, user.id).drift() == []

    txns = session.scalars(select(Transaction).order_by(Transaction.date)).all()
    assert [t.type for t in txns] == [
        TransactionType.income,
        TransactionType.expense,
        TransactionType.transfer,
    ]
    assert txns[1].category.name == "Food"
    assert txns[2].category_id is None
    assert txns[2].source_account_id == accounts["Checking"].id

    groceries = session.scalar(
        select(Category).where(
            Category.name == "Groceries", Category.type == CategoryType.expense
        )
    )
    assert groceries is not None
    assert session.scalar(select(Asset.value_cents)) == 45_000


def test_rejects_files_without_ledger_tables(tmp_path) -> None:
    session = make_session()
    user = UserService(session).ensure_local_user()
    path = tmp_path / "other.db"
    con = sqlite3.connect(path)
    con.execute("create table notes (id integer primary key)")
    con.commit()
    con.close()

    with pytest.raises(ValidationError):
        LegacyLedgerImportService(session, user.id).preview(path)
    with pytest.raises(ValidationError):
        LegacyLedgerImportService(session, user.id).preview(tmp_path / "missing.db")
