# consensus_engine/services/admin_service.py
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from consensus_engine.core.errors import ConsensusEngineError, SubmissionNotFound
from consensus_engine.core.time_utils import utcnow, week_number
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.ledger import TransactionType
from consensus_engine.models.review import PeerReview
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.models.user import User
from consensus_engine.models.vote import VoteCase, VoteCaseStatus
from consensus_engine.schemas.admin import AdminActionResult
from consensus_engine.services import audit_service, ledger_service
from consensus_engine.services.consensus_service import calculate_consensus

logger = logging.getLogger(__name__)


def _override_submission(db: Session, submission_id: int, final_xp: int, reason: str) -> AdminActionResult:
    submission = (
        db.query(Submission)
        .filter(Submission.id == submission_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if submission is None:
        raise SubmissionNotFound(f"submission {submission_id} not found")

    previous = submission.final_xp
    submission.final_xp = final_xp
    submission.status = SubmissionStatus.FINALIZED
    if submission.finalized_at is None:
        submission.finalized_at = utcnow()
    submission.week_number = week_number(submission.finalized_at)

    # an admin decision ends any vote still running on this submission
    case = db.query(VoteCase).filter(VoteCase.submission_id == submission_id).first()
    if case is not None and case.status == VoteCaseStatus.OPEN_FOR_VOTING:
        case.status = VoteCaseStatus.UNRESOLVED
        case.closed_at = utcnow()

    tx = ledger_service.reconcile_credit(
        db,
        user_id=submission.user_id,
        source_id=ledger_service.source_ref("submission", submission_id),
        target_amount=final_xp,
        type=TransactionType.ADMIN_ADJUSTMENT,
        description=f"Admin override: {reason}",
    )
    ledger_service.refresh_cached_totals(db, [submission.user_id])
    author = db.get(User, submission.user_id)
    return AdminActionResult(
        target=ledger_service.source_ref("submission", submission_id),
        previous_value=previous,
        new_value=final_xp,
        ledger_delta=tx.amount if tx is not None else 0,
        user_total_xp=author.total_xp if author else None,
    )


def override_submission_xp(
    db: Session,
    submission_id: int,
    final_xp: int,
    reason: str,
    *,
    triggered_by: str = "admin",
) -> AdminActionResult:
    """Set a submission's final XP by hand. The author's ledger gets the difference."""
    result = run_in_transaction(db, _override_submission, submission_id, final_xp, reason)
    logger.info(f"Admin override of submission {submission_id}: {result.previous_value} -> {final_xp}")
    audit_service.record_automation(
        db,
        job_name="admin_override_submission",
        job_type="ADMIN",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result={**result.model_dump(), "reason": reason},
    )
    return result


def _supersede_review(db: Session, review_id: int, xp_score: int) -> tuple[PeerReview, int]:
    review = db.get(PeerReview, review_id)
    if review is None:
        raise ConsensusEngineError(f"peer review {review_id} not found")
    if review.is_superseded:
        raise ConsensusEngineError(f"peer review {review_id} was already corrected")

    review.is_superseded = True
    corrected = PeerReview(
        submission_id=review.submission_id,
        reviewer_id=review.reviewer_id,
        assignment_id=review.assignment_id,
        xp_score=xp_score,
        quality_rating=review.quality_rating,
        is_late=review.is_late,
        judgment_status=review.judgment_status,
        created_at=review.created_at,
    )
    db.add(corrected)
    db.flush()
    return corrected, review.xp_score


def correct_peer_review(
    db: Session,
    review_id: int,
    xp_score: int,
    reason: str,
    *,
    triggered_by: str = "admin",
) -> AdminActionResult:
    """
    Replace a peer review's score with a corrected row.

    If the submission was already finalized, consensus is recomputed and the
    ledger receives only the resulting deltas.
    """
    corrected, previous = run_in_transaction(db, _supersede_review, review_id, xp_score)
    submission = db.get(Submission, corrected.submission_id)

    recomputed = False
    delta = 0
    if submission.status == SubmissionStatus.FINALIZED:
        source_id = ledger_service.source_ref("submission", submission.id)
        before = ledger_service.net_credited(db, user_id=submission.user_id, source_id=source_id)
        calculate_consensus(db, submission.id, allow_divergent=True, recompute=True)
        delta = ledger_service.net_credited(db, user_id=submission.user_id, source_id=source_id) - before
        recomputed = True

    result = AdminActionResult(
        target=ledger_service.source_ref("review", review_id),
        previous_value=previous,
        new_value=xp_score,
        ledger_delta=delta,
        recomputed=recomputed,
    )
    audit_service.record_automation(
        db,
        job_name="admin_correct_review",
        job_type="ADMIN",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result={**result.model_dump(), "corrected_review_id": corrected.id, "reason": reason},
    )
    return result


def _adjust(db: Session, user_id: int, amount: int, reason: str) -> AdminActionResult:
    user = db.get(User, user_id)
    if user is None:
        raise ConsensusEngineError(f"user {user_id} not found")
    previous = ledger_service.ledger_sum(db, user_id)
    ledger_service.append_transaction(
        db,
        user_id=user_id,
        amount=amount,
        type=TransactionType.ADMIN_ADJUSTMENT,
        description=reason,
    )
    ledger_service.refresh_cached_totals(db, [user_id])
    return AdminActionResult(
        target=ledger_service.source_ref("user", user_id),
        previous_value=previous,
        new_value=user.total_xp,
        ledger_delta=amount,
        user_total_xp=user.total_xp,
    )


def adjust_user_xp(
    db: Session,
    user_id: int,
    amount: int,
    reason: str,
    *,
    triggered_by: str = "admin",
) -> AdminActionResult:
    if amount == 0:
        raise ConsensusEngineError("adjustment amount must not be zero")
    result = run_in_transaction(db, _adjust, user_id, amount, reason)
    audit_service.record_automation(
        db,
        job_name="admin_adjust_xp",
        job_type="ADMIN",
        status=audit_service.STATUS_SUCCESS,
        triggered_by=triggered_by,
        result={**result.model_dump(), "reason": reason},
    )
    return result
