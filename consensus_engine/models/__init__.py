from consensus_engine.models.user import User, UserWallet
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.models.review import (
    AssignmentStatus,
    JudgmentStatus,
    PeerReview,
    ReviewAssignment,
)
from consensus_engine.models.ledger import (
    TransactionType,
    WeeklyStats,
    WeekWindow,
    XpTransaction,
)
from consensus_engine.models.vote import JudgmentVote, VoteCase, VoteCaseStatus
from consensus_engine.models.award import MonthlyWinner
from consensus_engine.models.automation_log import AutomationLog, ShadowConsensusLog

__all__ = [
    "AssignmentStatus",
    "AutomationLog",
    "JudgmentStatus",
    "JudgmentVote",
    "MonthlyWinner",
    "PeerReview",
    "ReviewAssignment",
    "ShadowConsensusLog",
    "Submission",
    "SubmissionStatus",
    "TransactionType",
    "User",
    "UserWallet",
    "VoteCase",
    "VoteCaseStatus",
    "WeeklyStats",
    "WeekWindow",
    "XpTransaction",
]
