# consensus_engine/models/submission.py
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Float,
    Enum,
    ForeignKey,
)
from sqlalchemy.sql import func
from consensus_engine.db.base_class import Base


class SubmissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    AI_REVIEWED = "AI_REVIEWED"
    UNDER_PEER_REVIEW = "UNDER_PEER_REVIEW"
    FINALIZED = "FINALIZED"
    REJECTED = "REJECTED"
    FLAGGED = "FLAGGED"


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    url = Column(Text, nullable=True)
    platform = Column(String(50), nullable=True)

    status = Column(
        Enum(SubmissionStatus, native_enum=False, length=20),
        nullable=False,
        default=SubmissionStatus.PENDING,
        index=True,
    )

    # Scores
    ai_xp = Column(Integer, nullable=True)
    peer_xp = Column(Float, nullable=True)
    final_xp = Column(Integer, nullable=True)
    consensus_score = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=False, default=0)

    week_number = Column(Integer, nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic lock: concurrent finalizations of the same row fail with StaleDataError
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}
