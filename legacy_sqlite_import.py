"""Import a ledger file from the earlier single-user deployment.

That deployment kept one SQLite file with ``accounts``, ``categories``,
``transactions`` and ``assets`` tables, REAL amounts and no owner column.
Account balances in the file already include every transaction, so imported
transactions are inserted without posting them again; the opening balance of
each account is back-computed from its history instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import sqlite3
from rapidfuzz.distance import Levenshtein
from sqlalchemy import select
from sqlalchemy.orm import Session

import ledger
from csv_utils import to_cents
from database import atomic
from errors import ValidationError
from models import (
    Account,
    AccountType,
    Asset,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
)
from services import MAX_AMOUNT_CENTS

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "accounts": {"id", "name", "type", "balance"},
    "categories": {"id", "name", "type"},
    "transactions": {
        "id",
        "amount",
        "type",
        "category_id",
        "account_id",
        "source_account_id",
        "destination_account_id",
        "description",
        "date",
    },
    "assets": {"id", "name", "value", "type"},
}


@dataclass(frozen=True)
class LegacyCategoryMappingRow:
    idx: int
    legacy_type: CategoryType
    legacy_name: str
    transaction_count: int
    action: str  # "existing", "fuzzy" or "create"
    target_category_id: Optional[int]
    target_category_name: str


@dataclass(frozen=True)
class LegacyLedgerPreview:
    accounts_count: int
    categories_count: int
    transactions_count: int
    assets_count: int
    importable_transactions: int
    min_transaction_date: Optional[date]
    max_transaction_date: Optional[date]
    mapping_rows: list[LegacyCategoryMappingRow]
    warnings: list[str]


@dataclass
class _LegacyTransaction:
    legacy_id: int
    amount_cents: int
    type: TransactionType
    category_id: Optional[int]
    account_id: Optional[int]
    source_account_id: Optional[int]
    destination_account_id: Optional[int]
    description: Optional[str]
    date: datetime


@dataclass
class _LegacySnapshot:
    accounts: list[sqlite3.Row]
    categories: list[sqlite3.Row]
    assets: list[sqlite3.Row]
    transactions: list[_LegacyTransaction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_transactions: int = 0


def _connect_readonly(path: Path) -> sqlite3.Connection:
    uri = f"file:{path.resolve()}?mode=ro"
    con = sqlite3.connect(uri, uri=True)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA query_only=ON;")
    return con


def _require_legacy_schema(con: sqlite3.Connection) -> None:
    cur = con.cursor()
    cur.execute(
        "select name from sqlite_master where type='table' and name not like 'sqlite_%'"
    )
    tables = {r[0] for r in cur.fetchall()}
    missing = set(REQUIRED_COLUMNS) - tables
    if missing:
        raise ValidationError(
            f"Legacy DB missing tables: {', '.join(sorted(missing))}"
        )
    for table, cols in REQUIRED_COLUMNS.items():
        cur.execute(f"pragma table_info({table})")
        present = {row["name"] for row in cur.fetchall()}
        missing_cols = cols - present
        if missing_cols:
            raise ValidationError(
                f"Legacy DB table '{table}' missing columns: {', '.join(sorted(missing_cols))}"
            )


def _parse_legacy_datetime(value: Optional[str]) -> datetime:
    text = (value or "").strip()
    if not text:
        raise ValueError("Missing legacy datetime")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError as exc:
            raise ValueError(f"Invalid legacy datetime: {value}") from exc
    return parsed.replace(tzinfo=None)


def _parse_amount_cents(amount_text: Optional[str]) -> int:
    try:
        cents = to_cents(amount_text)
    except ValueError as exc:
        raise ValueError(f"Invalid legacy amount: {amount_text}") from exc
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValueError(f"Legacy amount out of range: {amount_text}")
    return cents


def _account_type(value: Optional[str]) -> AccountType:
    try:
        return AccountType((value or "").strip().lower())
    except ValueError:
        return AccountType.other


class LegacyLedgerImportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _read(self, con: sqlite3.Connection) -> _LegacySnapshot:
        cur = con.cursor()
        cur.execute(
            "select id, name, type, cast(balance as text) as balance_text "
            "from accounts order by id"
        )
        accounts = cur.fetchall()
        cur.execute("select id, name, type from categories order by id")
        categories = cur.fetchall()
        cur.execute(
            "select id, name, cast(value as text) as value_text, type "
            "from assets order by id"
        )
        assets = cur.fetchall()

        snapshot = _LegacySnapshot(
            accounts=accounts, categories=categories, assets=assets
        )
        account_ids = {int(a["id"]) for a in accounts}
        category_types = {int(c["id"]): str(c["type"]) for c in categories}

        cur.execute(
            "select id, cast(amount as text) as amount_text, type, category_id, "
            "account_id, source_account_id, destination_account_id, description, date "
            "from transactions order by date, id"
        )
        for r in cur.fetchall():
            snapshot.total_transactions += 1
            legacy_id = int(r["id"])
            try:
                txn_type = TransactionType(str(r["type"]))
                amount_cents = _parse_amount_cents(r["amount_text"])
                moment = _parse_legacy_datetime(r["date"])
            except ValueError as exc:
                snapshot.warnings.append(f"Transaction {legacy_id} skipped: {exc}")
                continue
            if amount_cents <= 0:
                snapshot.warnings.append(
                    f"Transaction {legacy_id} skipped: amount must be positive"
                )
                continue

            candidate = _LegacyTransaction(
                legacy_id=legacy_id,
                amount_cents=amount_cents,
                type=txn_type,
                category_id=r["category_id"],
                account_id=None,
                source_account_id=None,
                destination_account_id=None,
                description=r["description"],
                date=moment,
            )
            if txn_type == TransactionType.transfer:
                candidate.source_account_id = r["source_account_id"]
                candidate.destination_account_id = r["destination_account_id"]
                referenced = [candidate.source_account_id, candidate.destination_account_id]
                candidate.category_id = None
            else:
                candidate.account_id = r["account_id"]
                referenced = [candidate.account_id]
                if category_types.get(candidate.category_id) != txn_type.value:
                    candidate.category_id = None

            if any(acc is None or int(acc) not in account_ids for acc in referenced):
                snapshot.warnings.append(
                    f"Transaction {legacy_id} skipped: account missing in legacy DB"
                )
                continue
            if (
                txn_type == TransactionType.transfer
                and candidate.source_account_id == candidate.destination_account_id
            ):
                snapshot.warnings.append(
                    f"Transaction {legacy_id} skipped: transfer to the same account"
                )
                continue
            snapshot.transactions.append(candidate)
        return snapshot

    def _category_lookup(self) -> list[Category]:
        return self.session.scalars(
            select(Category).where(Category.user_id == self.user_id)
        ).all()

    def _match_category(
        self, categories: list[Category], legacy_type: CategoryType, legacy_name: str
    ) -> tuple[str, Optional[Category]]:
        name_lower = legacy_name.strip().lower()
        same_type = [c for c in categories if c.type == legacy_type]
        for category in same_type:
            if category.name.lower() == name_lower:
                return "existing", category

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in same_type:
            dist = int(Levenshtein.distance(name_lower, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1 and len(best) == 1:
            return "fuzzy", best[0]
        return "create", None

    def _mapping_rows(self, snapshot: _LegacySnapshot) -> list[LegacyCategoryMappingRow]:
        usage: dict[int, int] = {}
        for txn in snapshot.transactions:
            if txn.category_id is not None:
                usage[int(txn.category_id)] = usage.get(int(txn.category_id), 0) + 1

        categories = self._category_lookup()
        rows: list[LegacyCategoryMappingRow] = []
        for r in snapshot.categories:
            try:
                legacy_type = CategoryType(str(r["type"]))
            except ValueError:
                snapshot.warnings.append(
                    f"Category '{r['name']}' skipped: unknown type {r['type']}"
                )
                continue
            legacy_name = str(r["name"]).strip()
            action, target = self._match_category(categories, legacy_type, legacy_name)
            rows.append(
                LegacyCategoryMappingRow(
                    idx=int(r["id"]),
                    legacy_type=legacy_type,
                    legacy_name=legacy_name,
                    transaction_count=usage.get(int(r["id"]), 0),
                    action=action,
                    target_category_id=target.id if target else None,
                    target_category_name=target.name if target else legacy_name,
                )
            )
        return rows

    def _load(self, legacy_db_path: Path) -> _LegacySnapshot:
        if not legacy_db_path.exists():
            raise ValidationError("Legacy DB file not found")
        try:
            con = _connect_readonly(legacy_db_path)
        except sqlite3.Error as exc:
            raise ValidationError(f"Not a readable SQLite file: {exc}") from exc
        try:
            _require_legacy_schema(con)
            return self._read(con)
        except sqlite3.DatabaseError as exc:
            raise ValidationError(f"Not a readable SQLite file: {exc}") from exc
        finally:
            con.close()

    def preview(self, legacy_db_path: Path) -> LegacyLedgerPreview:
        snapshot = self._load(legacy_db_path)
        mapping_rows = self._mapping_rows(snapshot)
        dates = [txn.date.date() for txn in snapshot.transactions]
        return LegacyLedgerPreview(
            accounts_count=len(snapshot.accounts),
            categories_count=len(snapshot.categories),
            transactions_count=snapshot.total_transactions,
            assets_count=len(snapshot.assets),
            importable_transactions=len(snapshot.transactions),
            min_transaction_date=min(dates) if dates else None,
            max_transaction_date=max(dates) if dates else None,
            mapping_rows=mapping_rows,
            warnings=snapshot.warnings,
        )

    def commit(self, legacy_db_path: Path) -> dict[str, int]:
        snapshot = self._load(legacy_db_path)
        mapping_rows = self._mapping_rows(snapshot)

        with atomic(self.session):
            category_id_by_legacy: dict[int, int] = {}
            created_categories = 0
            for row in mapping_rows:
                if row.target_category_id is not None:
                    category_id_by_legacy[row.idx] = row.target_category_id
                    continue
                existing = self.session.scalar(
                    select(Category).where(
                        Category.user_id == self.user_id,
                        Category.type == row.legacy_type,
                        Category.name == row.legacy_name,
                    )
                )
                if existing is None:
                    existing = Category(
                        user_id=self.user_id, name=row.legacy_name, type=row.legacy_type
                    )
                    self.session.add(existing)
                    self.session.flush()
                    created_categories += 1
                category_id_by_legacy[row.idx] = existing.id

            accounts_by_legacy: dict[int, Account] = {}
            for r in snapshot.accounts:
                try:
                    balance = _parse_amount_cents(r["balance_text"] or "0")
                except ValueError as exc:
                    raise ValidationError(f"Account {r['id']}: {exc}") from exc
                account = Account(
                    user_id=self.user_id,
                    name=str(r["name"]),
                    type=_account_type(r["type"]),
                    balance_cents=balance,
                    opening_balance_cents=balance,
                )
                self.session.add(account)
                accounts_by_legacy[int(r["id"])] = account
            self.session.flush()

            def remap(legacy_account_id: Optional[int]) -> Optional[int]:
                if legacy_account_id is None:
                    return None
                return accounts_by_legacy[int(legacy_account_id)].id

            opening_by_id = {a.id: a for a in accounts_by_legacy.values()}
            for item in snapshot.transactions:
                txn = Transaction(
                    user_id=self.user_id,
                    amount_cents=item.amount_cents,
                    type=item.type,
                    category_id=category_id_by_legacy.get(item.category_id)
                    if item.category_id is not None
                    else None,
                    account_id=remap(item.account_id),
                    source_account_id=remap(item.source_account_id),
                    destination_account_id=remap(item.destination_account_id),
                    description=item.description or None,
                    date=item.date,
                )
                self.session.add(txn)
                # The legacy balance already contains this movement.
                for account_id, delta in ledger.balance_deltas(txn):
                    opening_by_id[account_id].opening_balance_cents -= delta

            imported_assets = 0
            for r in snapshot.assets:
                try:
                    value_cents = _parse_amount_cents(r["value_text"] or "0")
                except ValueError as exc:
                    logger.warning(f"legacy_asset_skipped: id={r['id']} error={exc}")
                    continue
                if value_cents < 0:
                    logger.warning(f"legacy_asset_skipped: id={r['id']} negative value")
                    continue
                self.session.add(
                    Asset(
                        user_id=self.user_id,
                        name=str(r["name"]),
                        value_cents=value_cents,
                        type=(r["type"] or "other").strip() or "other",
                    )
                )
                imported_assets += 1

        summary = {
            "imported_accounts": len(accounts_by_legacy),
            "created_categories": created_categories,
            "imported_transactions": len(snapshot.transactions),
            "skipped_transactions": snapshot.total_transactions
            - len(snapshot.transactions),
            "imported_assets": imported_assets,
        }
        details = " ".join(f"{k}={v}" for k, v in summary.items())
        logger.info(f"legacy_import: user={self.user_id} {details}")
        return summary
