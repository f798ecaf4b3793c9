# consensus_engine/services/monthly_award_service.py
"""
Monthly leaderboard awards.

Winner rows and their ledger credits are written together, one transaction
per month. Each winner's credit lives under the ledger source
``monthly_winner:<id>``, so top-ups and revocations only ever append the
difference between what the row says and what the ledger already holds.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from consensus_engine.core.config import settings
from consensus_engine.core.errors import (
    ConsensusEngineError,
    CooldownViolation,
    InvalidMonth,
    WinnerNotFound,
)
from consensus_engine.core.time_utils import (
    ensure_utc,
    month_bounds,
    parse_month,
    preceding_months,
    utcnow,
)
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.award import MonthlyWinner
from consensus_engine.models.ledger import STANDINGS_EXCLUDED_TYPES, TransactionType, XpTransaction
from consensus_engine.models.user import User
from consensus_engine.schemas.aggregation import ItemResult
from consensus_engine.schemas.award import (
    AwardResult,
    BulkAwardResult,
    MonthlyWinnerPublic,
    MonthPreview,
    RevokeResult,
    StandingRow,
    TopUpResult,
    WinnerAdjustment,
)
from consensus_engine.services import audit_service, ledger_service

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 50


def award_amount(rank: int) -> int:
    return int(settings.MONTHLY_AWARD_XP.get(rank, 0))


def winner_source(winner_id: int) -> str:
    return ledger_service.source_ref("monthly_winner", winner_id)


def monthly_standings(db: Session, month: str, limit: Optional[int] = None) -> list[tuple[int, int]]:
    """(user_id, points) for the month, best first. Awards and admin adjustments do not count."""
    start, end, _ = month_bounds(month)
    total = func.sum(XpTransaction.amount)
    query = (
        db.query(XpTransaction.user_id, total)
        .filter(
            XpTransaction.created_at >= start,
            XpTransaction.created_at < end,
            XpTransaction.type.notin_(list(STANDINGS_EXCLUDED_TYPES)),
        )
        .group_by(XpTransaction.user_id)
        .having(total > 0)
        .order_by(total.desc(), XpTransaction.user_id.asc())
    )
    if limit:
        query = query.limit(limit)
    return [(user_id, int(points)) for user_id, points in query.all()]


def recent_winners(db: Session, month: str) -> dict[int, list[str]]:
    """Users who won in one of the months just before ``month``, with those months."""
    months = preceding_months(month, settings.COOLDOWN_MONTHS)
    blocked: dict[int, list[str]] = {}
    rows = (
        db.query(MonthlyWinner.user_id, MonthlyWinner.month)
        .filter(MonthlyWinner.month.in_(months))
        .order_by(MonthlyWinner.month.desc())
        .all()
    )
    for user_id, won in rows:
        blocked.setdefault(user_id, []).append(won)
    return blocked


def list_winners(db: Session, month: Optional[str] = None) -> list[MonthlyWinner]:
    query = db.query(MonthlyWinner)
    if month is not None:
        query = query.filter(MonthlyWinner.month == month)
    return query.order_by(MonthlyWinner.month.asc(), MonthlyWinner.rank.asc()).all()


def _sync_credit(db: Session, winner: MonthlyWinner, target: int) -> int:
    """Bring the winner's ledger credit to ``target``. Returns the delta appended."""
    source_id = winner_source(winner.id)
    current = ledger_service.net_credited(db, user_id=winner.user_id, source_id=source_id)
    delta = int(target) - current
    if delta == 0:
        return 0

    _, _, award_ts = month_bounds(winner.month)
    ledger_service.append_transaction(
        db,
        user_id=winner.user_id,
        amount=delta,
        type=TransactionType.MONTHLY_AWARD if delta > 0 else TransactionType.MONTHLY_AWARD_REVERSAL,
        source_id=source_id,
        description=f"Monthly award {winner.month} rank {winner.rank}",
        created_at=award_ts if delta > 0 else None,
    )
    return delta


def _remove_winner(db: Session, winner: MonthlyWinner) -> WinnerAdjustment:
    delta = _sync_credit(db, winner, 0)
    adjustment = WinnerAdjustment(
        winner_id=winner.id, user_id=winner.user_id, month=winner.month, delta=delta
    )
    db.delete(winner)
    db.flush()
    return adjustment


def _locked_winners(db: Session, month: str) -> list[MonthlyWinner]:
    return (
        db.query(MonthlyWinner)
        .filter(MonthlyWinner.month == month)
        .order_by(MonthlyWinner.rank.asc())
        .with_for_update()
        .all()
    )


def _award_month(db: Session, month: str, now: datetime) -> AwardResult:
    ranks = sorted(settings.MONTHLY_AWARD_XP)
    existing = _locked_winners(db, month)
    taken_ranks = {w.rank for w in existing}
    taken_users = {w.user_id for w in existing}
    free_ranks = [rank for rank in ranks if rank not in taken_ranks]

    created: list[MonthlyWinner] = []
    if free_ranks:
        blocked = recent_winners(db, month)
        eligible = [
            user_id
            for user_id, _ in monthly_standings(db, month)
            if user_id not in blocked and user_id not in taken_users
        ]
        for rank, user_id in zip(free_ranks, eligible):
            winner = MonthlyWinner(
                month=month,
                rank=rank,
                user_id=user_id,
                xp_awarded=award_amount(rank),
                awarded_at=now,
            )
            db.add(winner)
            created.append(winner)
        db.flush()

    topped_up = 0
    winners = sorted(existing + created, key=lambda w: w.rank)
    created_ids = {id(w) for w in created}
    for winner in winners:
        delta = _sync_credit(db, winner, winner.xp_awarded)
        if delta and id(winner) not in created_ids:
            topped_up += 1

    ledger_service.refresh_cached_totals(db, {w.user_id for w in winners})
    return AwardResult(
        month=month,
        winners=[MonthlyWinnerPublic.model_validate(w) for w in winners],
        newly_awarded=[w.id for w in created],
        skipped_selection=not free_ranks,
        topped_up=topped_up,
    )


def award_monthly_winner(
    db: Session,
    month: str,
    *,
    now: Optional[datetime] = None,
    triggered_by: str = "system",
) -> AwardResult:
    """
    Pick and credit up to three winners for ``month``.

    Ranks already filled are kept; a full month skips selection and only tops
    up credits that fell short. Users who won in the cooldown window are
    passed over.
    """
    parse_month(month)
    now = now or utcnow()
    _, end, _ = month_bounds(month)
    if ensure_utc(now) < end:
        raise InvalidMonth(f"month {month} has not ended yet")

    try:
        result = run_in_transaction(db, _award_month, month, now)
    except IntegrityError:
        # a concurrent run inserted winners first; the second pass sees them
        logger.warning(f"Concurrent award for {month}, re-reading winners")
        result = run_in_transaction(db, _award_month, month, now)

    logger.info(
        f"Monthly award {month}: new={len(result.newly_awarded)} "
        f"topped_up={result.topped_up} skipped_selection={result.skipped_selection}"
    )
    audit_service.record_automation(
        db,
        job_name="monthly_award",
        job_type="MONTHLY_AWARD",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result=result.model_dump(mode="json"),
    )
    return result


def _top_up(db: Session, month: str) -> TopUpResult:
    adjustments = []
    winners = _locked_winners(db, month)
    for winner in winners:
        delta = _sync_credit(db, winner, winner.xp_awarded)
        if delta:
            adjustments.append(WinnerAdjustment(
                winner_id=winner.id, user_id=winner.user_id, month=month, delta=delta
            ))
    ledger_service.refresh_cached_totals(db, {w.user_id for w in winners})
    return TopUpResult(month=month, adjustments=adjustments)


def top_up_monthly_winner_xp(
    db: Session,
    month: str,
    *,
    triggered_by: str = "system",
) -> TopUpResult:
    parse_month(month)
    result = run_in_transaction(db, _top_up, month)
    audit_service.record_automation(
        db,
        job_name="monthly_award_top_up",
        job_type="MONTHLY_AWARD",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result=result.model_dump(),
    )
    return result


def _revoke(db: Session, winners: list[MonthlyWinner]) -> RevokeResult:
    revoked = [_remove_winner(db, winner) for winner in winners]
    ledger_service.refresh_cached_totals(db, {r.user_id for r in revoked})
    return RevokeResult(revoked=revoked)


def _revoke_by_id(db: Session, winner_id: int) -> RevokeResult:
    winner = (
        db.query(MonthlyWinner)
        .filter(MonthlyWinner.id == winner_id)
        .with_for_update()
        .first()
    )
    return _revoke(db, [winner] if winner is not None else [])


def _revoke_month(db: Session, month: Optional[str]) -> RevokeResult:
    query = db.query(MonthlyWinner)
    if month is not None:
        query = query.filter(MonthlyWinner.month == month)
    return _revoke(db, query.order_by(MonthlyWinner.id).with_for_update().all())


def _record_revoke(db: Session, job_name: str, result: RevokeResult, triggered_by: str, **extra) -> None:
    audit_service.record_automation(
        db,
        job_name=job_name,
        job_type="MONTHLY_AWARD",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result={**extra, **result.model_dump()},
    )


def revoke_monthly_winner_by_id(
    db: Session,
    winner_id: int,
    *,
    missing_ok: bool = True,
    triggered_by: str = "admin",
) -> RevokeResult:
    """
    Remove one winner and reverse whatever the ledger still holds for them.

    Revoking an already revoked winner is a no-op unless ``missing_ok`` is
    False, in which case WinnerNotFound is raised.
    """
    result = run_in_transaction(db, _revoke_by_id, winner_id)
    if not result.revoked and not missing_ok:
        raise WinnerNotFound(f"monthly winner {winner_id} not found")
    _record_revoke(db, "monthly_award_revoke", result, triggered_by, winner_id=winner_id)
    return result


def revoke_monthly_winners(db: Session, month: str, *, triggered_by: str = "admin") -> RevokeResult:
    parse_month(month)
    result = run_in_transaction(db, _revoke_month, month)
    _record_revoke(db, "monthly_award_revoke_month", result, triggered_by, month=month)
    return result


def revoke_all_monthly_winners(db: Session, *, triggered_by: str = "admin") -> RevokeResult:
    result = run_in_transaction(db, _revoke_month, None)
    logger.warning(f"Revoked all monthly winners ({len(result.revoked)} rows)")
    _record_revoke(db, "monthly_award_revoke_all", result, triggered_by)
    return result


def bulk_award(
    db: Session,
    months: Iterable[str],
    *,
    now: Optional[datetime] = None,
    triggered_by: str = "admin",
) -> BulkAwardResult:
    """Award several months oldest first, so each month's cooldown sees the earlier winners."""
    bulk = BulkAwardResult()
    for month in sorted(set(months)):
        try:
            bulk.results.append(
                award_monthly_winner(db, month, now=now, triggered_by=triggered_by)
            )
        except ConsensusEngineError as e:
            logger.warning(f"Bulk award failed for {month}: {e}")
            bulk.errors.append(ItemResult(target=f"month:{month}", success=False, detail=str(e)))
        except Exception as e:
            db.rollback()
            logger.error(f"Unexpected error awarding {month}: {e}", exc_info=True)
            bulk.errors.append(
                ItemResult(target=f"month:{month}", success=False, detail=f"{type(e).__name__}: {e}")
            )
    return bulk


def _override(
    db: Session,
    month: str,
    user_id: int,
    rank: int,
    xp_awarded: int,
    now: datetime,
) -> tuple[MonthlyWinner, list[WinnerAdjustment]]:
    if db.get(User, user_id) is None:
        raise ConsensusEngineError(f"user {user_id} not found")

    blocked = recent_winners(db, month)
    if user_id in blocked:
        raise CooldownViolation(
            f"user {user_id} won in {', '.join(blocked[user_id])} and cannot win {month}"
        )

    replaced: list[WinnerAdjustment] = []
    target: Optional[MonthlyWinner] = None
    for winner in _locked_winners(db, month):
        if winner.rank == rank and winner.user_id == user_id:
            target = winner
        elif winner.rank == rank or winner.user_id == user_id:
            replaced.append(_remove_winner(db, winner))

    if target is None:
        target = MonthlyWinner(month=month, rank=rank, user_id=user_id, xp_awarded=xp_awarded, awarded_at=now)
        db.add(target)
    else:
        target.xp_awarded = xp_awarded
    db.flush()

    _sync_credit(db, target, xp_awarded)
    ledger_service.refresh_cached_totals(db, {user_id} | {r.user_id for r in replaced})
    return target, replaced


def override_winner(
    db: Session,
    month: str,
    user_id: int,
    rank: int = 1,
    xp_awarded: Optional[int] = None,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    triggered_by: str = "admin",
) -> MonthlyWinnerPublic:
    """
    Put ``user_id`` at ``rank`` for ``month``.

    Whoever held that rank (and any other rank the user held that month) is
    revoked with a compensating ledger entry. The cooldown still applies.
    """
    parse_month(month)
    if rank not in settings.MONTHLY_AWARD_XP:
        raise ConsensusEngineError(f"rank must be one of {sorted(settings.MONTHLY_AWARD_XP)}")
    xp = award_amount(rank) if xp_awarded is None else int(xp_awarded)

    winner, replaced = run_in_transaction(db, _override, month, user_id, rank, xp, now or utcnow())
    public = MonthlyWinnerPublic.model_validate(winner)
    audit_service.record_automation(
        db,
        job_name="monthly_award_override",
        job_type="MONTHLY_AWARD",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result={
            "month": month,
            "user_id": user_id,
            "rank": rank,
            "xp_awarded": xp,
            "reason": reason,
            "replaced": [r.model_dump() for r in replaced],
        },
    )
    return public


def preview_month(db: Session, month: str) -> MonthPreview:
    """Standings for the month annotated with cooldown eligibility."""
    parse_month(month)
    standings = monthly_standings(db, month, limit=PREVIEW_LIMIT)
    blocked = recent_winners(db, month)
    names = dict(
        db.query(User.id, User.username).filter(User.id.in_([uid for uid, _ in standings])).all()
    ) if standings else {}

    items = []
    for position, (user_id, points) in enumerate(standings, start=1):
        months = blocked.get(user_id, [])
        items.append(StandingRow(
            rank=position,
            user_id=user_id,
            username=names.get(user_id),
            points=points,
            eligible=not months,
            reasons=[f"Won in {', '.join(months)}"] if months else [],
        ))

    return MonthPreview(
        month=month,
        items=items,
        winners=[MonthlyWinnerPublic.model_validate(w) for w in list_winners(db, month)],
    )
