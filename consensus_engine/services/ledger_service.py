# consensus_engine/services/ledger_service.py
"""
XP ledger access.

The ledger is append-only and is the source of truth. ``User.total_xp`` and
``User.current_week_xp`` are projections that are only ever recomputed from
it; there is no "set total" operation here.

Nothing in this module commits: callers wrap these helpers in
``run_in_transaction`` together with the rest of their write.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from consensus_engine.core.errors import ReconciliationMismatch
from consensus_engine.core.time_utils import iso_week, utcnow, week_bounds, week_number
from consensus_engine.models.ledger import TransactionType, XpTransaction
from consensus_engine.models.user import User

logger = logging.getLogger(__name__)


def source_ref(kind: str, entity_id: int | str) -> str:
    return f"{kind}:{entity_id}"


def append_transaction(
    db: Session,
    *,
    user_id: int,
    amount: int,
    type: TransactionType,
    source_id: Optional[str] = None,
    description: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> XpTransaction:
    created_at = created_at or utcnow()
    tx = XpTransaction(
        user_id=user_id,
        amount=int(amount),
        type=type,
        week_number=week_number(created_at),
        source_id=source_id,
        description=description,
        created_at=created_at,
    )
    db.add(tx)
    db.flush()
    logger.debug(f"Ledger +{amount} ({type.value}) for user {user_id} source={source_id}")
    return tx


def ledger_sum(db: Session, user_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(XpTransaction.amount), 0))
        .filter(XpTransaction.user_id == user_id)
        .scalar()
    )
    return int(total or 0)


def net_credited(
    db: Session,
    *,
    user_id: int,
    source_id: str,
    types: Optional[Sequence[TransactionType]] = None,
) -> int:
    query = db.query(func.coalesce(func.sum(XpTransaction.amount), 0)).filter(
        XpTransaction.user_id == user_id,
        XpTransaction.source_id == source_id,
    )
    if types:
        query = query.filter(XpTransaction.type.in_(list(types)))
    return int(query.scalar() or 0)


def reconcile_credit(
    db: Session,
    *,
    user_id: int,
    source_id: str,
    target_amount: int,
    type: TransactionType,
    description: Optional[str] = None,
    created_at: Optional[datetime] = None,
    types: Optional[Sequence[TransactionType]] = None,
) -> Optional[XpTransaction]:
    """
    Make the net ledger credit for (user, source) equal ``target_amount``.

    Appends only the difference, so calling it again with the same target
    writes nothing. Returns the appended row, or None when already in line.
    """
    current = net_credited(db, user_id=user_id, source_id=source_id, types=types)
    diff = int(target_amount) - current
    if diff == 0:
        return None
    return append_transaction(
        db,
        user_id=user_id,
        amount=diff,
        type=type,
        source_id=source_id,
        description=description,
        created_at=created_at,
    )


def current_week_sum(db: Session, user_id: int, now: Optional[datetime] = None) -> int:
    start, end = week_bounds(*iso_week(now or utcnow()))
    total = (
        db.query(func.coalesce(func.sum(XpTransaction.amount), 0))
        .filter(
            XpTransaction.user_id == user_id,
            XpTransaction.created_at >= start,
            XpTransaction.created_at < end,
        )
        .scalar()
    )
    return int(total or 0)


def refresh_cached_totals(
    db: Session,
    user_ids: Iterable[int],
    now: Optional[datetime] = None,
) -> None:
    """Recompute the cached projections of the given users from the ledger."""
    db.flush()
    for user_id in sorted(set(user_ids)):
        user = db.get(User, user_id)
        if user is None:
            continue
        user.total_xp = ledger_sum(db, user_id)
        user.current_week_xp = current_week_sum(db, user_id, now)
    db.flush()


def verify_cached_total(db: Session, user_id: int) -> None:
    user = db.get(User, user_id)
    if user is None:
        return
    ledger = ledger_sum(db, user_id)
    if (user.total_xp or 0) != ledger:
        raise ReconciliationMismatch(user_id, user.total_xp or 0, ledger)


def reconcile_user_totals(
    db: Session,
    user_ids: Optional[Iterable[int]] = None,
) -> list[ReconciliationMismatch]:
    """
    Detect cached totals that drifted from the ledger and rebuild them.

    Returns the mismatches that were found (and fixed). Does not commit.
    """
    if user_ids is None:
        user_ids = [row[0] for row in db.query(User.id).all()]

    mismatches: list[ReconciliationMismatch] = []
    for user_id in user_ids:
        try:
            verify_cached_total(db, user_id)
        except ReconciliationMismatch as e:
            logger.warning(f"Reconciliation mismatch, rebuilding from ledger: {e}")
            mismatches.append(e)
            refresh_cached_totals(db, [user_id])
    return mismatches
