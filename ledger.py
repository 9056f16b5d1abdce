"""Account balance effects of transactions.

Every recorded transaction moves money on one or two accounts. ``apply_effect``
posts that movement when a transaction is created and ``reverse_effect`` takes
exactly the same movement back out when it is deleted, using the amounts and
account ids stored on the transaction itself. Neither function commits; callers
run them inside ``database.atomic`` together with the write of the transaction
row, so a posting and its row land or vanish together.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import Account, Transaction, TransactionType

logger = logging.getLogger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def balance_deltas(txn: Transaction) -> list[tuple[int, int]]:
    """Signed ``(account_id, delta_cents)`` pairs a transaction applies."""
    amount = txn.amount_cents
    if txn.type == TransactionType.income:
        if txn.account_id is None:
            raise ValidationError("account_id is required for income")
        return [(txn.account_id, amount)]
    if txn.type == TransactionType.expense:
        if txn.account_id is None:
            raise ValidationError("account_id is required for expense")
        return [(txn.account_id, -amount)]
    if txn.type == TransactionType.transfer:
        if txn.source_account_id is None or txn.destination_account_id is None:
            raise ValidationError(
                "source_account_id and destination_account_id are required for transfer"
            )
        if txn.source_account_id == txn.destination_account_id:
            raise ValidationError("Transfer accounts must be different")
        return [
            (txn.source_account_id, -amount),
            (txn.destination_account_id, amount),
        ]
    return []


def _shift_balance(
    session: Session, user_id: int, account_id: int, delta_cents: int
) -> None:
    current = session.scalar(
        select(Account.balance_cents).where(
            Account.id == account_id, Account.user_id == user_id
        )
    )
    if current is None:
        raise NotFoundError(f"Account {account_id} not found")
    # SQLite would silently store an out-of-range sum as REAL.
    if not INT64_MIN <= current + delta_cents <= INT64_MAX:
        raise ValidationError(f"Balance of account {account_id} would overflow")
    result = session.execute(
        update(Account)
        .where(Account.id == account_id, Account.user_id == user_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Account {account_id} not found")


def _post(session: Session, txn: Transaction, sign: int) -> None:
    deltas = balance_deltas(txn)
    for account_id, delta in deltas:
        _shift_balance(session, txn.user_id, account_id, sign * delta)
    # Loaded Account instances would otherwise keep their pre-update balance.
    for account_id, _ in deltas:
        session.get(Account, account_id, populate_existing=True)


def apply_effect(session: Session, txn: Transaction) -> None:
    _post(session, txn, 1)
    logger.info(
        f"balance_apply: txn={txn.id} type={txn.type.value} amount_cents={txn.amount_cents}"
    )


def reverse_effect(session: Session, txn: Transaction) -> None:
    _post(session, txn, -1)
    logger.info(
        f"balance_reverse: txn={txn.id} type={txn.type.value} amount_cents={txn.amount_cents}"
    )
