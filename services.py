from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

import ledger
from csv_utils import to_cents
from database import atomic
from errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from models import (
    DEFAULT_EXPENSE_CATEGORIES,
    DEFAULT_INCOME_CATEGORIES,
    Account,
    Asset,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, resolve_period
from schemas import (
    MAX_AMOUNT,
    AccountIn,
    AccountUpdateIn,
    AssetIn,
    AssetUpdateIn,
    CategoryIn,
    SignupIn,
    TransactionIn,
)
from security import hash_secret, verify_secret

logger = logging.getLogger(__name__)

LOCAL_USER_NAME = "Me"
PINCODE_PATTERN = re.compile(r"^\d{4}$")
UNCATEGORIZED = "Uncategorized"
MAX_AMOUNT_CENTS = to_cents(MAX_AMOUNT)


def seed_default_categories(session: Session, user_id: int) -> None:
    for name in DEFAULT_EXPENSE_CATEGORIES:
        session.add(Category(user_id=user_id, name=name, type=CategoryType.expense))
    for name in DEFAULT_INCOME_CATEGORIES:
        session.add(Category(user_id=user_id, name=name, type=CategoryType.income))


def _amount_to_cents(amount, *, field_name: str = "amount") -> int:
    try:
        cents = to_cents(amount)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}") from exc
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field_name} is too large")
    return cents


def _normalize_moment(value: Optional[date]) -> datetime:
    # Stored as given: aware timestamps lose their offset without conversion.
    if value is None:
        return datetime.utcnow()
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, time.min)


def _period_filter(stmt, period: Optional[Period]):
    if period is None:
        return stmt
    return stmt.where(Transaction.date >= period.start, Transaction.date < period.end)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def _by_username(self, username: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.username == username.strip().lower())
        )

    def signup(self, data: SignupIn) -> User:
        username = data.username.strip().lower()
        name = data.name.strip()
        if not username or not name:
            raise ValidationError("All fields are required")
        if not PINCODE_PATTERN.match(data.pincode):
            raise ValidationError("Pincode must be 4 digits")
        if self._by_username(username):
            raise ConflictError("Username already exists")

        user = User(
            name=name,
            username=username,
            password_hash=hash_secret(data.password),
            pincode_hash=hash_secret(data.pincode),
        )
        try:
            with atomic(self.session):
                self.session.add(user)
                self.session.flush()
                seed_default_categories(self.session, user.id)
        except ConflictError as exc:
            raise ConflictError("Username already exists") from exc
        logger.info(f"signup: user={user.id} username={username}")
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self._by_username(username)
        if not user or not verify_secret(password, user.password_hash):
            raise UnauthorizedError("Invalid username or password")
        return user

    def authenticate_pincode(self, username: str, pincode: str) -> User:
        if not PINCODE_PATTERN.match(pincode or ""):
            raise ValidationError("Invalid pincode format")
        user = self._by_username(username)
        if not user or not verify_secret(pincode, user.pincode_hash):
            raise UnauthorizedError("Invalid username or pincode")
        return user

    def rename(self, user_id: int, name: str) -> User:
        user = self.get(user_id)
        if not user:
            raise NotFoundError("User not found")
        clean = name.strip()
        if not clean:
            raise ValidationError("Name cannot be empty")
        with atomic(self.session):
            user.name = clean
        return user

    def ensure_local_user(self) -> User:
        """The single owner used when the app runs without sign-in."""
        user = self.session.scalar(select(User).order_by(User.id).limit(1))
        if user:
            return user
        user = User(name=LOCAL_USER_NAME)
        with atomic(self.session):
            self.session.add(user)
            self.session.flush()
            seed_default_categories(self.session, user.id)
        logger.info(f"local_user_created: user={user.id}")
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        balance = _amount_to_cents(data.balance, field_name="balance")
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=balance,
            opening_balance_cents=balance,
        )
        with atomic(self.session):
            self.session.add(account)
        return account

    def update(self, account_id: int, data: AccountUpdateIn) -> Account:
        with atomic(self.session):
            account = self.get(account_id)
            if data.name is not None:
                account.name = data.name.strip()
            if data.type is not None:
                account.type = data.type
            if data.balance is not None:
                new_balance = _amount_to_cents(data.balance, field_name="balance")
                delta = new_balance - account.balance_cents
                account.opening_balance_cents += delta
                account.balance_cents = new_balance
                logger.info(
                    f"account_reconciled: account={account.id} delta_cents={delta}"
                )
        return account

    def delete(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            in_use = self.session.execute(
                select(func.count(Transaction.id)).where(
                    or_(
                        Transaction.account_id == account.id,
                        Transaction.source_account_id == account.id,
                        Transaction.destination_account_id == account.id,
                    )
                )
            ).scalar_one()
            if in_use:
                raise ConflictError(
                    "Account has transactions; delete them before deleting the account"
                )
            self.session.delete(account)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise ConflictError("Category already exists")
        category = Category(user_id=self.user_id, name=name, type=data.type)
        try:
            with atomic(self.session):
                self.session.add(category)
        except ConflictError as exc:
            raise ConflictError("Category already exists") from exc
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_fields(self, data: TransactionIn) -> None:
        if data.type == TransactionType.transfer:
            if data.account_id is not None:
                raise ValidationError("Transfers use source and destination accounts")
            if data.category_id is not None:
                raise ValidationError("Transfers cannot have a category")
            return
        if data.source_account_id is not None or data.destination_account_id is not None:
            raise ValidationError(
                f"{data.type.value.capitalize()} transactions use account_id"
            )
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(
                data.category_id
            )
            if category.type.value != data.type.value:
                raise ValidationError("Category type mismatch")

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = _amount_to_cents(data.amount)
        if amount_cents <= 0:
            raise ValidationError("amount must be greater than 0")
        self._check_fields(data)

        txn = Transaction(
            user_id=self.user_id,
            amount_cents=amount_cents,
            type=data.type,
            category_id=data.category_id,
            account_id=data.account_id,
            source_account_id=data.source_account_id,
            destination_account_id=data.destination_account_id,
            description=(data.description or "").strip() or None,
            date=_normalize_moment(data.date),
        )
        # Raises before anything is written when required accounts are missing.
        ledger.balance_deltas(txn)

        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            ledger.apply_effect(self.session, txn)
        logger.info(
            f"transaction_created: id={txn.id} user={self.user_id} type={txn.type.value}"
        )
        return txn

    def _base_query(self):
        return (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.account),
                joinedload(Transaction.source_account),
                joinedload(Transaction.destination_account),
            )
            .where(Transaction.user_id == self.user_id)
        )

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            self._base_query().where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Transaction]:
        try:
            period = resolve_period(month, year)
        except ValidationError:
            logger.info(f"transaction_list_empty: month={month} year={year}")
            return []
        stmt = _period_filter(self._base_query(), period).order_by(
            Transaction.date.desc(), Transaction.id.desc()
        )
        try:
            return self.session.scalars(stmt).all()
        except SQLAlchemyError:
            logger.exception(f"transaction_list_failed: user={self.user_id}")
            self.session.rollback()
            return []

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            ledger.reverse_effect(self.session, txn)
            self.session.delete(txn)
        logger.info(f"transaction_deleted: id={transaction_id} user={self.user_id}")


@dataclass
class CategoryTotal:
    name: str
    total_cents: int
    type: TransactionType


@dataclass
class PeriodStats:
    total_income_cents: int = 0
    total_expenses_cents: int = 0
    income_count: int = 0
    expense_count: int = 0
    category_stats: list[CategoryTotal] = field(default_factory=list)


class StatsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def stats(self, month: Optional[int] = None, year: Optional[int] = None) -> PeriodStats:
        try:
            period = resolve_period(month, year)
        except ValidationError:
            logger.info(f"stats_empty: month={month} year={year}")
            return PeriodStats()
        try:
            return self._collect(period)
        except SQLAlchemyError:
            logger.exception(f"stats_failed: user={self.user_id}")
            self.session.rollback()
            return PeriodStats()

    def _collect(self, period: Optional[Period]) -> PeriodStats:
        is_income = Transaction.type == TransactionType.income
        is_expense = Transaction.type == TransactionType.expense
        totals_stmt = select(
            func.coalesce(
                func.sum(case((is_income, Transaction.amount_cents), else_=0)), 0
            ).label("income"),
            func.coalesce(
                func.sum(case((is_expense, Transaction.amount_cents), else_=0)), 0
            ).label("expenses"),
            func.count(case((is_income, 1))).label("income_count"),
            func.count(case((is_expense, 1))).label("expense_count"),
        ).where(Transaction.user_id == self.user_id)
        row = self.session.execute(_period_filter(totals_stmt, period)).one()

        total_expr = func.sum(Transaction.amount_cents)
        breakdown_stmt = (
            select(
                Category.name.label("name"),
                Transaction.type.label("type"),
                total_expr.label("total"),
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(Transaction.user_id == self.user_id)
            .group_by(Category.name, Transaction.type)
        )
        rows = self.session.execute(_period_filter(breakdown_stmt, period)).all()
        breakdown = sorted(
            (
                CategoryTotal(
                    name=r.name or UNCATEGORIZED,
                    total_cents=int(r.total or 0),
                    type=TransactionType(r.type),
                )
                for r in rows
            ),
            key=lambda item: (-item.total_cents, item.name, item.type.value),
        )

        return PeriodStats(
            total_income_cents=int(row.income or 0),
            total_expenses_cents=int(row.expenses or 0),
            income_count=int(row.income_count or 0),
            expense_count=int(row.expense_count or 0),
            category_stats=breakdown,
        )


class AssetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Asset]:
        stmt = (
            select(Asset)
            .where(Asset.user_id == self.user_id)
            .order_by(Asset.created_at.desc(), Asset.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, asset_id: int) -> Asset:
        asset = self.session.get(Asset, asset_id)
        if not asset or asset.user_id != self.user_id:
            raise NotFoundError("Asset not found")
        return asset

    def create(self, data: AssetIn) -> Asset:
        asset = Asset(
            user_id=self.user_id,
            name=data.name.strip(),
            value_cents=_amount_to_cents(data.value, field_name="value"),
            type=data.type.strip() or "other",
        )
        with atomic(self.session):
            self.session.add(asset)
        return asset

    def update(self, asset_id: int, data: AssetUpdateIn) -> Asset:
        with atomic(self.session):
            asset = self.get(asset_id)
            if data.name is not None:
                asset.name = data.name.strip()
            if data.value is not None:
                asset.value_cents = _amount_to_cents(data.value, field_name="value")
            if data.type is not None:
                asset.type = data.type.strip() or "other"
        return asset

    def delete(self, asset_id: int) -> None:
        with atomic(self.session):
            self.session.delete(self.get(asset_id))


class NetWorthService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summary(self) -> dict[str, int]:
        accounts_total = int(
            self.session.execute(
                select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
                    Account.user_id == self.user_id
                )
            ).scalar_one()
            or 0
        )
        assets_total = int(
            self.session.execute(
                select(func.coalesce(func.sum(Asset.value_cents), 0)).where(
                    Asset.user_id == self.user_id
                )
            ).scalar_one()
            or 0
        )
        return {
            "accounts_cents": accounts_total,
            "assets_cents": assets_total,
            "net_worth_cents": accounts_total + assets_total,
        }


@dataclass(frozen=True)
class BalanceDrift:
    account_id: int
    user_id: int
    name: str
    stored_cents: int
    expected_cents: int


class BalanceCheckService:
    """Recomputes balances from history and reports accounts that disagree."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def expected_balances(self) -> dict[int, int]:
        account_stmt = select(Account)
        txn_stmt = select(Transaction)
        if self.user_id is not None:
            account_stmt = account_stmt.where(Account.user_id == self.user_id)
            txn_stmt = txn_stmt.where(Transaction.user_id == self.user_id)

        expected = {
            account.id: account.opening_balance_cents
            for account in self.session.scalars(account_stmt)
        }
        for txn in self.session.scalars(txn_stmt):
            for account_id, delta in ledger.balance_deltas(txn):
                if account_id in expected:
                    expected[account_id] += delta
        return expected

    def drift(self) -> list[BalanceDrift]:
        expected = self.expected_balances()
        stmt = select(Account).order_by(Account.id)
        if self.user_id is not None:
            stmt = stmt.where(Account.user_id == self.user_id)
        return [
            BalanceDrift(
                account_id=account.id,
                user_id=account.user_id,
                name=account.name,
                stored_cents=account.balance_cents,
                expected_cents=expected[account.id],
            )
            for account in self.session.scalars(stmt)
            if account.id in expected and account.balance_cents != expected[account.id]
        ]
