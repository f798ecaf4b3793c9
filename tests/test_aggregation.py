"""
XP aggregation pipeline: batch finalization and ledger reconciliation.
"""

from datetime import timedelta

import pytest

from consensus_engine.core.errors import ReconciliationMismatch
from consensus_engine.core.time_utils import utcnow
from consensus_engine.models.automation_log import AutomationLog
from consensus_engine.models.review import AssignmentStatus, ReviewAssignment
from consensus_engine.models.submission import SubmissionStatus
from consensus_engine.models.user import User
from consensus_engine.services import aggregation_service, ledger_service


class TestAggregateXp:
    def test_aggregate(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)

        result = aggregation_service.aggregate_xp(db_session, submission.id)

        assert result.finalized
        assert result.final_xp == 42
        assert result.author_id == submission.user_id
        assert result.author_total_xp == 42

    def test_divergent_not_finalized(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([10, 95])

        result = aggregation_service.aggregate_xp(db_session, submission.id)

        assert not result.finalized
        assert result.divergent
        assert result.author_total_xp == 0


class TestReadySubmissions:
    def test_find_ready(self, db_session, reviewed_submission, make_submission, make_user):
        ready, _ = reviewed_submission([40, 45, 42])
        waiting, _ = reviewed_submission([40, 45])
        db_session.add(ReviewAssignment(
            submission_id=waiting.id,
            reviewer_id=make_user().id,
            status=AssignmentStatus.IN_PROGRESS,
            deadline=utcnow() + timedelta(days=1),
        ))
        db_session.commit()
        make_submission()  # nothing reviewed yet
        reviewed_submission([40, 45], status=SubmissionStatus.FINALIZED)

        assert aggregation_service.find_ready_submissions(db_session) == [ready.id]

    def test_open_vote_case_not_ready(self, db_session, reviewed_submission):
        submission, _ = reviewed_submission([10, 95])
        aggregation_service.aggregate_xp(db_session, submission.id)

        assert aggregation_service.find_ready_submissions(db_session) == []

    def test_batch_isolates_failures(self, db_session, reviewed_submission, make_submission):
        """One bad submission does not stop the others."""
        good, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        divergent, _ = reviewed_submission([10, 95])
        empty = make_submission()

        batch = aggregation_service.process_ready_submissions(
            db_session, [good.id, 999, divergent.id, empty.id]
        )

        assert batch.processed == 1
        assert batch.skipped == 2
        assert [e.target for e in batch.errors] == ["submission:999"]
        assert "SubmissionNotFound" in batch.errors[0].detail
        assert len(batch.items) == 4

        log = db_session.query(AutomationLog).filter_by(job_name="process_ready_submissions").one()
        assert log.status == "PARTIAL"
        assert log.result["processed"] == 1

    def test_batch_default_picks_ready(self, db_session, reviewed_submission):
        first, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        second, _ = reviewed_submission([100, 110], ai_xp=100)

        batch = aggregation_service.process_ready_submissions(db_session)

        assert batch.processed == 2
        assert batch.errors == []
        assert aggregation_service.find_ready_submissions(db_session) == []


class TestReconciliation:
    def test_detects_and_rebuilds(self, db_session, make_user, credit):
        user = make_user()
        credit(user, 30)
        user.total_xp = 999
        db_session.commit()

        with pytest.raises(ReconciliationMismatch):
            ledger_service.verify_cached_total(db_session, user.id)

        report = aggregation_service.reconcile_user_totals(db_session)

        assert report.mismatches == [{"user_id": user.id, "cached": 999, "ledger": 30}]
        assert db_session.get(User, user.id).total_xp == 30
        assert db_session.query(AutomationLog).filter_by(job_name="reconcile_user_totals").count() == 1

    def test_clean_ledger(self, db_session, make_user, credit):
        user = make_user()
        credit(user, 30)

        report = aggregation_service.reconcile_user_totals(db_session, [user.id])

        assert report.checked == 1
        assert report.mismatches == []
