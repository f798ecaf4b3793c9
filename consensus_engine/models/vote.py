# consensus_engine/models/vote.py
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
    UniqueConstraint,
)
from consensus_engine.core.time_utils import utcnow
from consensus_engine.db.base_class import Base


class VoteCaseStatus(str, enum.Enum):
    OPEN_FOR_VOTING = "OPEN_FOR_VOTING"
    RESOLVED = "RESOLVED"
    UNRESOLVED = "UNRESOLVED"


class VoteCase(Base):
    __tablename__ = "vote_cases"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(Integer, ForeignKey("submissions.id"), unique=True, nullable=False)
    status = Column(
        Enum(VoteCaseStatus, native_enum=False, length=20),
        nullable=False,
        default=VoteCaseStatus.OPEN_FOR_VOTING,
        index=True,
    )
    peer_std_dev = Column(Float, nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    winning_xp = Column(Integer, nullable=True)
    losing_xp = Column(Integer, nullable=True)
    total_votes = Column(Integer, nullable=False, default=0)


class JudgmentVote(Base):
    """One immutable ballot. Uniqueness per wallet and per resolved identity is enforced by the table."""

    __tablename__ = "judgment_votes"
    __table_args__ = (
        UniqueConstraint("submission_id", "wallet_address", name="uq_vote_submission_wallet"),
        UniqueConstraint("submission_id", "voter_identity", name="uq_vote_submission_identity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(Integer, ForeignKey("submissions.id"), nullable=False, index=True)
    wallet_address = Column(String(128), nullable=False)
    # "user:<id>" for linked wallets, "wallet:<address>" otherwise
    voter_identity = Column(String(160), nullable=False)
    vote_xp = Column(Integer, nullable=False)
    signature = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
