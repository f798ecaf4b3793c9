# consensus_engine/models/user.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from consensus_engine.db.base_class import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)
    role = Column(String(20), nullable=False, default="user")  # 'user' / 'reviewer' / 'admin'

    # Cached projections of the XP ledger, only ever recomputed from it
    total_xp = Column(Integer, nullable=False, default=0)
    current_week_xp = Column(Integer, nullable=False, default=0)

    streak_weeks = Column(Integer, nullable=False, default=0)
    missed_reviews = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserWallet(Base):
    __tablename__ = "user_wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    address = Column(String(128), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
