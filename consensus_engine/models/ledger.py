# consensus_engine/models/ledger.py
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Enum,
    ForeignKey,
    JSON,
    UniqueConstraint,
)
from consensus_engine.core.time_utils import utcnow
from consensus_engine.db.base_class import Base


class TransactionType(str, enum.Enum):
    SUBMISSION_REWARD = "SUBMISSION_REWARD"
    PEER_REVIEW = "PEER_REVIEW"
    AI_EVAL = "AI_EVAL"
    PENALTY = "PENALTY"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    MONTHLY_AWARD = "MONTHLY_AWARD"
    MONTHLY_AWARD_REVERSAL = "MONTHLY_AWARD_REVERSAL"
    LEGACY_TRANSFER = "LEGACY_TRANSFER"


AWARD_TRANSACTION_TYPES = (
    TransactionType.MONTHLY_AWARD,
    TransactionType.MONTHLY_AWARD_REVERSAL,
)

STANDINGS_EXCLUDED_TYPES = AWARD_TRANSACTION_TYPES + (TransactionType.ADMIN_ADJUSTMENT,)


class XpTransaction(Base):
    """Append-only ledger row. Rows are never updated or deleted."""

    __tablename__ = "xp_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(Enum(TransactionType, native_enum=False, length=32), nullable=False, index=True)
    week_number = Column(Integer, nullable=False)
    # e.g. "submission:12", "assignment:7", "monthly_winner:3"
    source_id = Column(String(64), nullable=True, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class WeeklyStats(Base):
    __tablename__ = "weekly_stats"
    __table_args__ = (UniqueConstraint("user_id", "year", "week_number"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    year = Column(Integer, nullable=False)
    week_number = Column(Integer, nullable=False)
    xp_total = Column(Integer, nullable=False, default=0)
    reviews_done = Column(Integer, nullable=False, default=0)
    reviews_missed = Column(Integer, nullable=False, default=0)
    earned_streak = Column(Boolean, nullable=False, default=False)


class WeekWindow(Base):
    __tablename__ = "week_windows"
    __table_args__ = (UniqueConstraint("year", "week_number"),)

    id = Column(Integer, primary_key=True, index=True)
    year = Column(Integer, nullable=False)
    week_number = Column(Integer, nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    summary = Column(JSON, nullable=True)
