# consensus_engine/models/award.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    UniqueConstraint,
)
from consensus_engine.core.time_utils import utcnow
from consensus_engine.db.base_class import Base


class MonthlyWinner(Base):
    __tablename__ = "monthly_winners"
    __table_args__ = (
        UniqueConstraint("month", "rank", name="uq_monthly_winner_rank"),
        UniqueConstraint("month", "user_id", name="uq_monthly_winner_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    month = Column(String(7), nullable=False, index=True)  # YYYY-MM
    rank = Column(Integer, nullable=False)  # 1-3
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    xp_awarded = Column(Integer, nullable=False)
    awarded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
