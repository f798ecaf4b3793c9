"""
Consensus calculation and finalization.
"""

from datetime import timedelta

import pytest

from consensus_engine.core.errors import AlreadyFinalized, InsufficientReviews, SubmissionNotFound
from consensus_engine.core.time_utils import utcnow
from consensus_engine.models.automation_log import ShadowConsensusLog
from consensus_engine.models.ledger import TransactionType, XpTransaction
from consensus_engine.models.review import AssignmentStatus, ReviewAssignment
from consensus_engine.models.submission import SubmissionStatus
from consensus_engine.models.user import User
from consensus_engine.services import ledger_service, vote_service
from consensus_engine.services.consensus_service import (
    agreement_score,
    blend,
    calculate_consensus,
    confidence_label,
    get_consensus_summary,
    is_divergent,
    peer_std_dev,
)


class TestConsensusMath:
    def test_divergence_uses_sample_std_dev(self):
        assert peer_std_dev([10, 95]) == pytest.approx(60.10, abs=0.01)
        assert is_divergent(peer_std_dev([10, 95]), 2)

    def test_single_review_never_divergent(self):
        assert peer_std_dev([10]) == 0.0
        assert not is_divergent(80.0, 1)

    def test_agreement(self):
        assert agreement_score(0.0) == 1.0
        assert agreement_score(12.5) == pytest.approx(0.5)
        assert agreement_score(40.0) == 0.0

    def test_blend(self):
        assert blend(42.333, 40) == 42
        assert blend(86.6, None) == 87

    def test_confidence_label(self):
        assert confidence_label(1.0, 1.0, 5) == "high"
        assert confidence_label(0.6, 0.7, 3) == "medium"
        assert confidence_label(0.0, 0.5, 1) == "low"


class TestCalculateConsensus:
    def test_finalizes_agreeing_reviews(self, db_session, reviewed_submission):
        """AI 40 with peers 40/45/42 finalizes at 42."""
        submission, reviews = reviewed_submission([40, 45, 42], ai_xp=40)

        result = calculate_consensus(db_session, submission.id)

        assert result.final_xp == 42
        assert result.divergent is False
        assert result.consensus_score == pytest.approx(0.92, abs=0.01)
        assert result.review_count == 3
        assert result.outliers == []

        db_session.refresh(submission)
        assert submission.status == SubmissionStatus.FINALIZED
        assert submission.final_xp == 42
        assert submission.finalized_at is not None

        author = db_session.get(User, submission.user_id)
        assert author.total_xp == 42
        for review in reviews:
            reviewer = db_session.get(User, review.reviewer_id)
            assert reviewer.total_xp == 2

    def test_review_outside_window_gets_nothing(self, db_session, reviewed_submission):
        submission, reviews = reviewed_submission([40, 42, 44, 41, 80], ai_xp=40)

        result = calculate_consensus(db_session, submission.id)

        outlier = reviews[-1]
        assert abs(outlier.xp_score - result.final_xp) > 15
        assert db_session.get(User, outlier.reviewer_id).total_xp == 0

    def test_outlier_excluded_from_peer_xp(self, db_session, reviewed_submission):
        submission, reviews = reviewed_submission([50, 50, 50, 50, 50, 52, 48, 50, 50, 130])

        result = calculate_consensus(db_session, submission.id)

        assert result.outliers == [reviews[-1].id]
        assert result.peer_xp == pytest.approx(50.0)
        assert result.final_xp == 50

    def test_ledger_matches_cached_totals(self, db_session, reviewed_submission):
        submission, reviews = reviewed_submission([40, 45, 42], ai_xp=40)
        calculate_consensus(db_session, submission.id)

        for user_id in [submission.user_id] + [r.reviewer_id for r in reviews]:
            ledger_service.verify_cached_total(db_session, user_id)

    def test_recompute_is_idempotent(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        calculate_consensus(db_session, submission.id)
        before = db_session.query(XpTransaction).count()

        result = calculate_consensus(db_session, submission.id, recompute=True)

        assert result.final_xp == 42
        assert db_session.query(XpTransaction).count() == before

    def test_already_finalized(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        calculate_consensus(db_session, submission.id)

        with pytest.raises(AlreadyFinalized):
            calculate_consensus(db_session, submission.id)

    def test_outstanding_assignment_blocks(self, db_session, reviewed_submission, make_user):
        submission, _ = reviewed_submission([40, 45], ai_xp=40)
        db_session.add(ReviewAssignment(
            submission_id=submission.id,
            reviewer_id=make_user().id,
            status=AssignmentStatus.PENDING,
            deadline=utcnow() + timedelta(days=1),
        ))
        db_session.commit()

        with pytest.raises(InsufficientReviews):
            calculate_consensus(db_session, submission.id)

        db_session.refresh(submission)
        assert submission.status == SubmissionStatus.AI_REVIEWED
        assert db_session.query(XpTransaction).count() == 0

    def test_missed_assignment_does_not_block(self, db_session, reviewed_submission, make_user):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        db_session.add(ReviewAssignment(
            submission_id=submission.id,
            reviewer_id=make_user().id,
            status=AssignmentStatus.MISSED,
            deadline=utcnow() - timedelta(days=1),
        ))
        db_session.commit()

        assert calculate_consensus(db_session, submission.id).final_xp == 42

    def test_no_reviews(self, db_session, make_submission):
        submission = make_submission(ai_xp=40)
        with pytest.raises(InsufficientReviews):
            calculate_consensus(db_session, submission.id)

    def test_unknown_submission(self, db_session):
        with pytest.raises(SubmissionNotFound):
            calculate_consensus(db_session, 999)

    def test_divergent_opens_vote_case(self, db_session, reviewed_submission):
        """Peers 10 and 95 disagree too much; the submission goes to a community vote."""
        submission, _ = reviewed_submission([10, 95], ai_xp=50)

        result = calculate_consensus(db_session, submission.id)

        assert result.divergent is True
        assert result.final_xp is None
        assert result.peer_std_dev == pytest.approx(60.1, abs=0.1)

        db_session.refresh(submission)
        assert submission.status == SubmissionStatus.UNDER_PEER_REVIEW
        assert submission.final_xp is None
        assert vote_service.get_case(db_session, submission.id) is not None
        assert db_session.query(XpTransaction).count() == 0

    def test_divergent_twice_keeps_one_case(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([10, 95])
        calculate_consensus(db_session, submission.id)
        calculate_consensus(db_session, submission.id)

        assert len(vote_service.list_cases(db_session)) == 1

    def test_shadow_consensus_logged(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        calculate_consensus(db_session, submission.id)

        logs = db_session.query(ShadowConsensusLog).filter_by(submission_id=submission.id).all()
        assert {log.shadow_formula_id for log in logs} == {"CUSTOM_V1", "CUSTOM_V2"}
        assert all(log.active_formula_id == "LEGACY" for log in logs)

    def test_reviewer_rewards_are_peer_review_credits(self, db_session, reviewed_submission):
        submission, reviews = reviewed_submission([40, 45, 42], ai_xp=40)
        calculate_consensus(db_session, submission.id)

        rows = (
            db_session.query(XpTransaction)
            .filter(XpTransaction.type == TransactionType.PEER_REVIEW)
            .all()
        )
        assert sorted(r.source_id for r in rows) == sorted(f"review:{r.id}" for r in reviews)


class TestConsensusSummary:
    def test_summary(self, db_session, reviewed_submission):
        first, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        second, _ = reviewed_submission([20, 60], ai_xp=40)
        calculate_consensus(db_session, first.id)
        calculate_consensus(db_session, second.id)

        summary = get_consensus_summary(db_session)
        assert summary.total_finalized == 2
        assert summary.by_agreement["high"] == 1
        assert summary.by_agreement["low"] == 1
        assert summary.avg_review_count == pytest.approx(2.5)
