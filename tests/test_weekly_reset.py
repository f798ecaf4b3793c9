"""
Weekly window close: missed-review penalties, streaks and weekly stats.
"""

from datetime import datetime, timezone

import pytest

from consensus_engine.core.time_utils import ensure_utc, previous_week
from consensus_engine.models.automation_log import AutomationLog
from consensus_engine.models.ledger import TransactionType, WeeklyStats, XpTransaction
from consensus_engine.models.review import AssignmentStatus, ReviewAssignment
from consensus_engine.models.user import User
from consensus_engine.services import weekly_service

# Wednesday of ISO week 2026-W42; the reset closes 2026-W41 (Oct 5 - Oct 12)
NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def week_data(db_session, make_user, make_submission, credit):
    alice = make_user("alice", streak_weeks=2)
    bob = make_user("bob", streak_weeks=4)
    carol = make_user("carol")
    dave = make_user("dave")
    submission = make_submission()

    credit(alice, 150, created_at=_utc(2026, 10, 6, 9))
    credit(bob, 50, created_at=_utc(2026, 10, 7, 9))

    overdue = ReviewAssignment(
        submission_id=submission.id,
        reviewer_id=carol.id,
        status=AssignmentStatus.PENDING,
        deadline=_utc(2026, 10, 8),
    )
    not_due = ReviewAssignment(
        submission_id=submission.id,
        reviewer_id=dave.id,
        status=AssignmentStatus.IN_PROGRESS,
        deadline=_utc(2026, 10, 20),
    )
    db_session.add_all([overdue, not_due])
    db_session.commit()
    return {"alice": alice, "bob": bob, "carol": carol, "dave": dave, "overdue": overdue, "not_due": not_due}


class TestWeeklyReset:
    def test_closes_previous_week(self, db_session, week_data):
        assert previous_week(NOW) == (2026, 41)

        result = weekly_service.process_weekly_reset(db_session, NOW)

        assert (result.year, result.week_number) == (2026, 41)
        assert not result.already_closed
        assert result.missed_assignments == 1
        assert result.penalties_applied == 1
        assert result.streaks_awarded == 1

    def test_missed_review_penalty(self, db_session, week_data):
        weekly_service.process_weekly_reset(db_session, NOW)
        carol = db_session.get(User, week_data["carol"].id)

        assert carol.total_xp == -10
        assert carol.missed_reviews == 1
        assert db_session.get(ReviewAssignment, week_data["overdue"].id).status == AssignmentStatus.MISSED
        assert db_session.get(ReviewAssignment, week_data["not_due"].id).status == AssignmentStatus.IN_PROGRESS

        penalty = db_session.query(XpTransaction).filter_by(type=TransactionType.PENALTY).one()
        assert penalty.source_id == f"assignment:{week_data['overdue'].id}"
        # last second of the closed week
        assert ensure_utc(penalty.created_at) == _utc(2026, 10, 11, 23, 59, 59)

    def test_streaks(self, db_session, week_data):
        weekly_service.process_weekly_reset(db_session, NOW)

        assert db_session.get(User, week_data["alice"].id).streak_weeks == 3
        assert db_session.get(User, week_data["bob"].id).streak_weeks == 0
        assert db_session.get(User, week_data["dave"].id).streak_weeks == 0

    def test_weekly_stats(self, db_session, week_data):
        weekly_service.process_weekly_reset(db_session, NOW)

        stats = {
            s.user_id: s
            for s in db_session.query(WeeklyStats).filter_by(year=2026, week_number=41).all()
        }
        alice = stats[week_data["alice"].id]
        assert alice.xp_total == 150
        assert alice.earned_streak
        carol = stats[week_data["carol"].id]
        assert carol.xp_total == -10
        assert carol.reviews_missed == 1
        assert week_data["dave"].id not in stats

    def test_current_week_counter_reset(self, db_session, week_data):
        alice = db_session.get(User, week_data["alice"].id)
        alice.current_week_xp = 150
        db_session.commit()

        weekly_service.process_weekly_reset(db_session, NOW)

        alice = db_session.get(User, week_data["alice"].id)
        assert alice.current_week_xp == 0
        assert alice.total_xp == 150

    def test_rerun_is_noop(self, db_session, week_data):
        weekly_service.process_weekly_reset(db_session, NOW)
        transactions = db_session.query(XpTransaction).count()

        again = weekly_service.process_weekly_reset(db_session, NOW)

        assert again.already_closed
        assert db_session.query(XpTransaction).count() == transactions
        assert db_session.get(User, week_data["alice"].id).streak_weeks == 3
        assert db_session.query(AutomationLog).filter_by(job_name="weekly_reset").count() == 1


class TestWeeklyInsights:
    def test_closed_week(self, db_session, week_data):
        weekly_service.process_weekly_reset(db_session, NOW)

        insights = weekly_service.get_weekly_insights(db_session, 2026, 41)

        assert insights.closed
        assert insights.total_xp == 190
        assert insights.reviews_missed == 1
        assert insights.streaks_awarded == 1
        assert insights.top_users[0] == {"user_id": week_data["alice"].id, "username": "alice", "xp": 150}

    def test_open_week_computed_live(self, db_session, week_data):
        insights = weekly_service.get_weekly_insights(db_session, 2026, 41)

        assert not insights.closed
        assert insights.total_xp == 200
        assert [u["username"] for u in insights.top_users] == ["alice", "bob"]
