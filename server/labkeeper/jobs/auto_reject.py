from datetime import datetime
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from labkeeper.db import SessionLocal, run_in_transaction
from labkeeper.notifications.service import auto_reject_notice, dispatch_notification
from labkeeper.transactions.service import (
    auto_reject_transaction,
    find_expired_transaction_ids,
    find_overdue_transaction_ids,
    mark_transaction_overdue,
)


logger = logging.getLogger(__name__)


def reject_expired_transactions(
    now: Optional[datetime] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> dict:
    """Reject raised/approved requests nobody acted on in time.

    Each candidate gets its own session and commit, so one failure never
    blocks the rest and a re-run skips what was already rejected.
    """
    now = now or datetime.utcnow()
    summary = {"checked": 0, "rejected": [], "skipped": [], "failed": []}

    db = session_factory()
    try:
        candidates = find_expired_transaction_ids(db, now=now)
    finally:
        db.close()
    logger.info("Auto-reject sweep found %s expired transactions", len(candidates))

    for transaction_id in candidates:
        summary["checked"] += 1
        db = session_factory()
        try:
            transaction = run_in_transaction(db, auto_reject_transaction, transaction_id, now=now)
            if transaction is None:
                summary["skipped"].append(transaction_id)
                continue
            summary["rejected"].append(transaction_id)
            dispatch_notification(auto_reject_notice(transaction))
        except Exception:
            logger.exception("Auto-reject failed for %s", transaction_id)
            summary["failed"].append(transaction_id)
        finally:
            db.close()

    logger.info(
        "Auto-reject sweep done: rejected=%s skipped=%s failed=%s",
        len(summary["rejected"]),
        len(summary["skipped"]),
        len(summary["failed"]),
    )
    return summary


def mark_overdue_transactions(
    now: Optional[datetime] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> list[str]:
    now = now or datetime.utcnow()
    db = session_factory()
    try:
        candidates = find_overdue_transaction_ids(db, now=now)
    finally:
        db.close()

    marked: list[str] = []
    for transaction_id in candidates:
        db = session_factory()
        try:
            if run_in_transaction(db, mark_transaction_overdue, transaction_id, now=now) is not None:
                marked.append(transaction_id)
        except Exception:
            logger.exception("Overdue marking failed for %s", transaction_id)
        finally:
            db.close()
    logger.info("Marked %s transactions overdue", len(marked))
    return marked


def run_daily_sweep() -> None:
    reject_expired_transactions()
    mark_overdue_transactions()
