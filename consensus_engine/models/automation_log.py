# consensus_engine/models/automation_log.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Float,
    ForeignKey,
    JSON,
)
from consensus_engine.core.time_utils import utcnow
from consensus_engine.db.base_class import Base


class AutomationLog(Base):
    __tablename__ = "automation_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(100), nullable=False, index=True)
    job_type = Column(String(50), nullable=False)
    triggered_by = Column(String(50), nullable=False, default="system")
    status = Column(String(20), nullable=False)  # SUCCESS / PARTIAL / FAILED
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ShadowConsensusLog(Base):
    __tablename__ = "shadow_consensus_logs"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(Integer, ForeignKey("submissions.id"), nullable=False, index=True)
    active_formula_id = Column(String(32), nullable=False)
    active_score = Column(Float, nullable=False)
    shadow_formula_id = Column(String(32), nullable=False)
    shadow_score = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
