# consensus_engine/services/aggregation_service.py
from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from consensus_engine.core.errors import ConsensusEngineError, InsufficientReviews
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.review import (
    OUTSTANDING_ASSIGNMENT_STATUSES,
    PeerReview,
    ReviewAssignment,
)
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.models.user import User
from consensus_engine.models.vote import VoteCase, VoteCaseStatus
from consensus_engine.schemas.aggregation import (
    AggregationResult,
    BatchResult,
    ItemResult,
    ReconciliationReport,
)
from consensus_engine.services import audit_service, ledger_service
from consensus_engine.services.consensus_service import calculate_consensus

logger = logging.getLogger(__name__)

READY_STATUSES = (SubmissionStatus.AI_REVIEWED, SubmissionStatus.UNDER_PEER_REVIEW)


def aggregate_xp(db: Session, submission_id: int) -> AggregationResult:
    """Finalize one submission and bring its author's cached total in line with the ledger."""
    result = calculate_consensus(db, submission_id)
    submission = db.get(Submission, submission_id)

    if not result.divergent:
        run_in_transaction(db, ledger_service.refresh_cached_totals, [submission.user_id])

    author = db.get(User, submission.user_id)
    return AggregationResult(
        submission_id=submission_id,
        finalized=not result.divergent,
        final_xp=result.final_xp,
        author_id=submission.user_id,
        author_total_xp=author.total_xp if author else 0,
        divergent=result.divergent,
        confidence=None if result.divergent else result.confidence,
    )


def find_ready_submissions(db: Session, limit: Optional[int] = None) -> list[int]:
    outstanding = exists(
        select(ReviewAssignment.id).where(
            ReviewAssignment.submission_id == Submission.id,
            ReviewAssignment.status.in_(OUTSTANDING_ASSIGNMENT_STATUSES),
        )
    )
    has_review = exists(
        select(PeerReview.id).where(
            PeerReview.submission_id == Submission.id,
            PeerReview.is_superseded.is_(False),
        )
    )
    in_vote = exists(
        select(VoteCase.id).where(
            VoteCase.submission_id == Submission.id,
            VoteCase.status == VoteCaseStatus.OPEN_FOR_VOTING,
        )
    )
    query = (
        db.query(Submission.id)
        .filter(
            Submission.status.in_(READY_STATUSES),
            ~outstanding,
            ~in_vote,
            has_review,
        )
        .order_by(Submission.id)
    )
    if limit:
        query = query.limit(limit)
    return [row[0] for row in query.all()]


def process_ready_submissions(
    db: Session,
    submission_ids: Optional[Iterable[int]] = None,
    *,
    triggered_by: str = "system",
) -> BatchResult:
    """
    Aggregate every ready submission independently.

    One submission failing never stops the batch; failures are collected
    into the result instead of raised.
    """
    ids = list(submission_ids) if submission_ids is not None else find_ready_submissions(db)
    batch = BatchResult()
    logger.info(f"Processing {len(ids)} ready submissions")

    for submission_id in ids:
        target = ledger_service.source_ref("submission", submission_id)
        try:
            result = aggregate_xp(db, submission_id)
        except InsufficientReviews as e:
            batch.skipped += 1
            batch.items.append(ItemResult(target=target, success=False, detail=str(e)))
            continue
        except ConsensusEngineError as e:
            logger.warning(f"Aggregation failed for submission {submission_id}: {e}")
            item = ItemResult(target=target, success=False, detail=f"{type(e).__name__}: {e}")
            batch.errors.append(item)
            batch.items.append(item)
            continue
        except Exception as e:
            db.rollback()
            logger.error(f"Unexpected error aggregating submission {submission_id}: {e}", exc_info=True)
            item = ItemResult(target=target, success=False, detail=f"{type(e).__name__}: {e}")
            batch.errors.append(item)
            batch.items.append(item)
            continue

        if result.divergent:
            batch.skipped += 1
            batch.items.append(ItemResult(target=target, success=True, detail="sent to community vote"))
        else:
            batch.processed += 1
            batch.items.append(ItemResult(target=target, success=True, detail=f"final_xp={result.final_xp}"))

    audit_service.record_automation(
        db,
        job_name="process_ready_submissions",
        job_type="AGGREGATION",
        status=audit_service.status_for(batch.errors),
        triggered_by=triggered_by,
        result={
            "processed": batch.processed,
            "skipped": batch.skipped,
            "errors": [e.model_dump() for e in batch.errors],
        },
    )
    logger.info(
        f"Batch done: processed={batch.processed} skipped={batch.skipped} errors={len(batch.errors)}"
    )
    return batch


def reconcile_user_totals(
    db: Session,
    user_ids: Optional[Iterable[int]] = None,
    *,
    triggered_by: str = "system",
) -> ReconciliationReport:
    ids = list(user_ids) if user_ids is not None else None
    mismatches = run_in_transaction(db, ledger_service.reconcile_user_totals, ids)
    checked = len(ids) if ids is not None else db.query(User).count()

    report = ReconciliationReport(
        checked=checked,
        mismatches=[
            {"user_id": m.user_id, "cached": m.cached, "ledger": m.ledger}
            for m in mismatches
        ],
    )
    if mismatches:
        audit_service.record_automation(
            db,
            job_name="reconcile_user_totals",
            job_type="RECONCILIATION",
            status=audit_service.STATUS_PARTIAL,
            triggered_by=triggered_by,
            result=report.model_dump(),
        )
    return report
