# consensus_engine/models/review.py
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    DateTime,
    Enum,
    ForeignKey,
)
from sqlalchemy.sql import func
from consensus_engine.db.base_class import Base


class AssignmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    MISSED = "MISSED"
    REASSIGNED = "REASSIGNED"


OUTSTANDING_ASSIGNMENT_STATUSES = (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS)


class JudgmentStatus(str, enum.Enum):
    UNSET = "UNSET"
    VALIDATED = "VALIDATED"
    INVALIDATED = "INVALIDATED"


class ReviewAssignment(Base):
    __tablename__ = "review_assignments"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(Integer, ForeignKey("submissions.id"), nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(
        Enum(AssignmentStatus, native_enum=False, length=20),
        nullable=False,
        default=AssignmentStatus.PENDING,
        index=True,
    )
    assigned_at = Column(DateTime(timezone=True), server_default=func.now())
    deadline = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    is_late = Column(Boolean, nullable=False, default=False)


class PeerReview(Base):
    __tablename__ = "peer_reviews"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(Integer, ForeignKey("submissions.id"), nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    assignment_id = Column(Integer, ForeignKey("review_assignments.id"), nullable=True)

    xp_score = Column(Integer, nullable=False)  # 0-300
    quality_rating = Column(Integer, nullable=True)  # 1-5
    is_late = Column(Boolean, nullable=False, default=False)

    # Set only by vote resolution
    judgment_status = Column(
        Enum(JudgmentStatus, native_enum=False, length=20),
        nullable=False,
        default=JudgmentStatus.UNSET,
    )

    # Admin corrections supersede a review with a new row instead of rewriting it
    is_superseded = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
