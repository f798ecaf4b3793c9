"""
Shared fixtures: an in-memory SQLite database per test and small factories
for the rows every engine test needs.
"""

import itertools
import os
from datetime import timedelta

# Settings are read at import time; keep tests off any real database or .env
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from consensus_engine.core.time_utils import utcnow
from consensus_engine.db.base import Base
from consensus_engine.models.ledger import TransactionType
from consensus_engine.models.review import AssignmentStatus, PeerReview, ReviewAssignment
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.models.user import User
from consensus_engine.services import ledger_service

TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def engine():
    # StaticPool: every session in a test shares the one in-memory database
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a test database session."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_user(db_session):
    counter = itertools.count(1)

    def _make(username=None, **kwargs):
        n = next(counter)
        user = User(
            username=username or f"user{n}",
            email=f"user{n}@test.com",
            role=kwargs.pop("role", "reviewer"),
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_submission(db_session, make_user):
    def _make(author=None, ai_xp=None, status=SubmissionStatus.AI_REVIEWED, **kwargs):
        author = author or make_user(role="user")
        submission = Submission(
            user_id=author.id,
            url=kwargs.pop("url", "https://example.com/post"),
            platform=kwargs.pop("platform", "twitter"),
            ai_xp=ai_xp,
            status=status,
            **kwargs,
        )
        db_session.add(submission)
        db_session.commit()
        db_session.refresh(submission)
        return submission

    return _make


@pytest.fixture
def add_review(db_session, make_user):
    """Completed assignment plus its review."""

    def _add(
        submission,
        xp_score,
        reviewer=None,
        quality_rating=None,
        is_late=False,
        created_at=None,
    ):
        reviewer = reviewer or make_user()
        now = created_at or utcnow()
        assignment = ReviewAssignment(
            submission_id=submission.id,
            reviewer_id=reviewer.id,
            status=AssignmentStatus.COMPLETED,
            deadline=now + timedelta(days=3),
            completed_at=now,
            is_late=is_late,
        )
        db_session.add(assignment)
        db_session.flush()
        review = PeerReview(
            submission_id=submission.id,
            reviewer_id=reviewer.id,
            assignment_id=assignment.id,
            xp_score=xp_score,
            quality_rating=quality_rating,
            is_late=is_late,
            created_at=now,
        )
        db_session.add(review)
        db_session.commit()
        db_session.refresh(review)
        return review

    return _add


@pytest.fixture
def reviewed_submission(make_submission, add_review):
    """Factory: a submission with one completed review per score."""

    def _make(scores, ai_xp=None, **kwargs):
        submission = make_submission(ai_xp=ai_xp, **kwargs)
        reviews = [add_review(submission, score) for score in scores]
        return submission, reviews

    return _make


@pytest.fixture
def credit(db_session):
    """Append a ledger row and refresh the user's cached totals."""

    def _credit(user, amount, created_at=None, type=TransactionType.SUBMISSION_REWARD, source_id=None):
        ledger_service.append_transaction(
            db_session,
            user_id=user.id,
            amount=amount,
            type=type,
            source_id=source_id,
            created_at=created_at,
        )
        ledger_service.refresh_cached_totals(db_session, [user.id])
        db_session.commit()

    return _credit
