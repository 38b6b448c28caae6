"""Single-use approval tokens that let faculty decide a request without a session."""

from datetime import datetime
import logging

from sqlalchemy.orm import Session, selectinload

from labkeeper.errors import NotFoundError
from labkeeper.models import Transaction, TransactionItem
from labkeeper.transactions.service import approve_transaction, reject_transaction


logger = logging.getLogger(__name__)

INVALID_TOKEN_MESSAGE = "Invalid or expired approval token."


def get_transaction_by_token(db: Session, token: str | None, *, lock: bool = False) -> Transaction:
    if not token:
        raise NotFoundError(INVALID_TOKEN_MESSAGE)
    query = db.query(Transaction).filter(
        Transaction.approval_token == token,
        Transaction.status == "raised",
    )
    if lock:
        query = query.with_for_update()
    else:
        query = query.options(selectinload(Transaction.items).selectinload(TransactionItem.item))
    transaction = query.first()
    if not transaction:
        raise NotFoundError(INVALID_TOKEN_MESSAGE)
    return transaction


def approve_by_token(db: Session, token: str | None, *, now: datetime | None = None) -> Transaction:
    transaction = get_transaction_by_token(db, token, lock=True)
    logger.info("Approval token used to approve %s", transaction.transaction_id)
    return approve_transaction(db, transaction, now=now)


def reject_by_token(
    db: Session,
    token: str | None,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> Transaction:
    transaction = get_transaction_by_token(db, token, lock=True)
    logger.info("Approval token used to reject %s", transaction.transaction_id)
    return reject_transaction(db, transaction, reason=reason, now=now)
