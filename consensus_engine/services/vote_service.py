# consensus_engine/services/vote_service.py
"""
Community vote resolution for divergent submissions.

A case moves OPEN_FOR_VOTING -> RESOLVED once enough votes agree, or
OPEN_FOR_VOTING -> UNRESOLVED when it times out, which flags the submission
for an admin.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

import numpy as np
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from consensus_engine.core.config import settings
from consensus_engine.core.errors import (
    AlreadyVoted,
    NoConsensusCandidate,
    SubmissionNotFound,
    VotingClosed,
)
from consensus_engine.core.time_utils import utcnow
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.review import JudgmentStatus, PeerReview
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.models.vote import JudgmentVote, VoteCase, VoteCaseStatus
from consensus_engine.schemas.vote import (
    ExpiredCases,
    VoteCandidate,
    VoteConsensus,
    VoteResolution,
)
from consensus_engine.services import audit_service
from consensus_engine.services.identity_service import normalize_address, resolve_identity

logger = logging.getLogger(__name__)

VOTABLE_STATUSES = (
    SubmissionStatus.AI_REVIEWED,
    SubmissionStatus.UNDER_PEER_REVIEW,
)


def get_case(db: Session, submission_id: int) -> Optional[VoteCase]:
    return db.query(VoteCase).filter(VoteCase.submission_id == submission_id).first()


def list_cases(
    db: Session,
    *,
    status: Optional[VoteCaseStatus] = VoteCaseStatus.OPEN_FOR_VOTING,
    skip: int = 0,
    limit: int = 100,
) -> list[VoteCase]:
    query = db.query(VoteCase)
    if status is not None:
        query = query.filter(VoteCase.status == status)
    return query.order_by(VoteCase.opened_at.asc()).offset(skip).limit(limit).all()


def find_vote_candidates(db: Session, now: Optional[datetime] = None) -> list[VoteCandidate]:
    """
    Submissions whose recent reviews disagree past the divergence threshold.

    Only reviews from the trailing window count. Submissions that already
    have a case (open or closed) are not candidates again.
    """
    since = (now or utcnow()) - timedelta(days=settings.VOTE_WINDOW_DAYS)
    with_case = select(VoteCase.submission_id)

    rows = (
        db.query(PeerReview.submission_id, PeerReview.xp_score)
        .join(Submission, Submission.id == PeerReview.submission_id)
        .filter(
            PeerReview.is_superseded.is_(False),
            PeerReview.created_at >= since,
            Submission.status.in_(VOTABLE_STATUSES),
            ~PeerReview.submission_id.in_(with_case),
        )
        .order_by(PeerReview.submission_id, PeerReview.id)
        .all()
    )

    scores_by_submission: dict[int, list[int]] = {}
    for submission_id, xp_score in rows:
        scores_by_submission.setdefault(submission_id, []).append(xp_score)

    candidates = []
    for submission_id, scores in scores_by_submission.items():
        if len(scores) < max(2, settings.DIVERGENCE_MIN_REVIEWS):
            continue
        std_dev = float(np.std(scores, ddof=1))
        if std_dev > settings.DIVERGENCE_THRESHOLD:
            candidates.append(VoteCandidate(
                submission_id=submission_id,
                std_dev=std_dev,
                review_count=len(scores),
                min_xp=min(scores),
                max_xp=max(scores),
            ))

    candidates.sort(key=lambda c: c.std_dev, reverse=True)
    return candidates


def _open_case(db: Session, submission_id: int, std_dev: float) -> VoteCase:
    submission = db.get(Submission, submission_id)
    if submission is None:
        raise SubmissionNotFound(f"submission {submission_id} not found")

    case = VoteCase(
        submission_id=submission_id,
        status=VoteCaseStatus.OPEN_FOR_VOTING,
        peer_std_dev=std_dev,
        opened_at=utcnow(),
    )
    db.add(case)
    if submission.status != SubmissionStatus.UNDER_PEER_REVIEW:
        submission.status = SubmissionStatus.UNDER_PEER_REVIEW
    db.flush()
    return case


def open_case(db: Session, submission_id: int, std_dev: float) -> VoteCase:
    """Open the vote case for a submission. Returns the existing one if already open."""
    existing = get_case(db, submission_id)
    if existing is not None:
        return existing
    try:
        case = run_in_transaction(db, _open_case, submission_id, std_dev)
    except IntegrityError:
        # lost the race against another trigger; the unique submission_id kept one row
        existing = get_case(db, submission_id)
        if existing is None:
            raise
        return existing

    logger.info(f"Opened vote case for submission {submission_id} (std dev {std_dev:.1f})")
    return case


def _insert_vote(db: Session, vote: JudgmentVote) -> JudgmentVote:
    db.add(vote)
    db.flush()
    case = get_case(db, vote.submission_id)
    case.total_votes = (
        db.query(JudgmentVote).filter(JudgmentVote.submission_id == vote.submission_id).count()
    )
    return vote


def cast_vote(
    db: Session,
    submission_id: int,
    wallet_address: str,
    vote_xp: int,
    signature: str,
) -> JudgmentVote:
    """
    Record one ballot.

    The wallet is resolved to its owner first, so every wallet linked to the
    same user counts as one voter. The unique constraints on JudgmentVote are
    what finally enforce this; an insert that trips them is AlreadyVoted.
    """
    if vote_xp < 0:
        raise ValueError("vote_xp must not be negative")

    case = get_case(db, submission_id)
    if case is None or case.status != VoteCaseStatus.OPEN_FOR_VOTING:
        raise VotingClosed(f"submission {submission_id} is not open for voting")

    identity = resolve_identity(db, wallet_address)
    prior = (
        db.query(JudgmentVote.id)
        .filter(
            JudgmentVote.submission_id == submission_id,
            or_(
                JudgmentVote.voter_identity == identity.key,
                JudgmentVote.wallet_address.in_(sorted(identity.wallets)),
            ),
        )
        .first()
    )
    if prior is not None:
        raise AlreadyVoted(f"{identity.key} already voted on submission {submission_id}")

    vote = JudgmentVote(
        submission_id=submission_id,
        wallet_address=normalize_address(wallet_address),
        voter_identity=identity.key,
        vote_xp=int(vote_xp),
        signature=signature,
        created_at=utcnow(),
    )
    try:
        return run_in_transaction(db, _insert_vote, vote)
    except IntegrityError as e:
        raise AlreadyVoted(
            f"{identity.key} already voted on submission {submission_id}"
        ) from e


def check_vote_consensus(db: Session, submission_id: int) -> VoteConsensus:
    votes = [
        row[0]
        for row in db.query(JudgmentVote.vote_xp)
        .filter(JudgmentVote.submission_id == submission_id)
        .all()
    ]
    total = len(votes)
    distribution = Counter(votes)
    if total == 0:
        return VoteConsensus(submission_id=submission_id, has_consensus=False, total_votes=0)

    # most votes first, lower XP first on ties
    ranked = sorted(distribution.items(), key=lambda item: (-item[1], item[0]))
    winning_xp, winning_count = ranked[0]
    losing_xp = ranked[1][0] if len(ranked) > 1 else None
    share = winning_count / total

    has_consensus = (
        total >= settings.MIN_VOTES_FOR_CONSENSUS
        and share > settings.VOTE_MAJORITY_THRESHOLD
    )
    return VoteConsensus(
        submission_id=submission_id,
        has_consensus=has_consensus,
        total_votes=total,
        winning_xp=winning_xp,
        losing_xp=losing_xp,
        leader_share=share,
        distribution=dict(distribution),
    )


def _label_reviews(
    db: Session,
    submission_id: int,
    consensus: VoteConsensus,
) -> tuple[list[int], list[int]]:
    case = (
        db.query(VoteCase)
        .filter(VoteCase.submission_id == submission_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    if case.status != VoteCaseStatus.OPEN_FOR_VOTING:
        raise VotingClosed(f"vote case for submission {submission_id} is already closed")

    validated, invalidated = [], []
    reviews = (
        db.query(PeerReview)
        .filter(
            PeerReview.submission_id == submission_id,
            PeerReview.is_superseded.is_(False),
        )
        .all()
    )
    for review in reviews:
        if review.xp_score == consensus.winning_xp:
            review.judgment_status = JudgmentStatus.VALIDATED
            validated.append(review.id)
        elif consensus.losing_xp is not None and review.xp_score == consensus.losing_xp:
            review.judgment_status = JudgmentStatus.INVALIDATED
            invalidated.append(review.id)

    case.status = VoteCaseStatus.RESOLVED
    case.closed_at = utcnow()
    case.winning_xp = consensus.winning_xp
    case.losing_xp = consensus.losing_xp
    case.total_votes = consensus.total_votes
    return validated, invalidated


def resolve_case(db: Session, submission_id: int) -> VoteResolution:
    """
    Close a case whose votes reached quorum and majority.

    The submission is finalized with the ordinary consensus blend first;
    the review labels written afterwards only feed future reliability scores.
    """
    from consensus_engine.services.consensus_service import calculate_consensus

    case = get_case(db, submission_id)
    if case is None or case.status != VoteCaseStatus.OPEN_FOR_VOTING:
        raise VotingClosed(f"submission {submission_id} has no open vote case")

    consensus = check_vote_consensus(db, submission_id)
    if not consensus.has_consensus:
        raise NoConsensusCandidate(
            f"submission {submission_id}: {consensus.total_votes} votes, "
            f"leader share {consensus.leader_share:.2f}"
        )

    # Finalization commits on its own. If labelling then fails the case stays
    # open, and calling this again recomputes the finalized submission.
    submission = db.get(Submission, submission_id)
    result = calculate_consensus(
        db,
        submission_id,
        allow_divergent=True,
        recompute=submission.status == SubmissionStatus.FINALIZED,
    )

    validated, invalidated = run_in_transaction(db, _label_reviews, submission_id, consensus)
    logger.info(
        f"Resolved vote case for submission {submission_id}: winner={consensus.winning_xp} "
        f"validated={len(validated)} invalidated={len(invalidated)}"
    )
    audit_service.record_automation(
        db,
        job_name="vote_resolution",
        job_type="VOTE",
        status=audit_service.STATUS_SUCCESS,
        result={
            "submission_id": submission_id,
            "winning_xp": consensus.winning_xp,
            "losing_xp": consensus.losing_xp,
            "total_votes": consensus.total_votes,
            "final_xp": result.final_xp,
        },
    )
    return VoteResolution(
        submission_id=submission_id,
        winning_xp=consensus.winning_xp,
        losing_xp=consensus.losing_xp,
        final_xp=result.final_xp,
        validated_review_ids=validated,
        invalidated_review_ids=invalidated,
    )


def _expire(db: Session, cutoff: datetime, now: datetime) -> list[int]:
    stale = (
        db.query(VoteCase)
        .filter(
            VoteCase.status == VoteCaseStatus.OPEN_FOR_VOTING,
            VoteCase.opened_at < cutoff,
        )
        .with_for_update()
        .all()
    )
    expired = []
    for case in stale:
        case.status = VoteCaseStatus.UNRESOLVED
        case.closed_at = now
        submission = db.get(Submission, case.submission_id)
        if submission is not None and submission.status != SubmissionStatus.FINALIZED:
            submission.status = SubmissionStatus.FLAGGED
        expired.append(case.submission_id)
    return expired


def expire_stale_cases(db: Session, now: Optional[datetime] = None) -> ExpiredCases:
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.VOTE_TIMEOUT_DAYS)
    expired = run_in_transaction(db, _expire, cutoff, now)

    if expired:
        logger.warning(f"Vote cases timed out, escalated to admin: {expired}")
        audit_service.record_automation(
            db,
            job_name="vote_timeout",
            job_type="VOTE",
            status=audit_service.STATUS_SUCCESS,
            result={"flagged_submission_ids": expired, "cutoff": cutoff.isoformat()},
        )
    return ExpiredCases(expired=expired)
