# consensus_engine/db/base.py
# Import every model so Base.metadata is complete for create_all()
from consensus_engine.db.base_class import Base  # noqa

from consensus_engine.models.user import User, UserWallet  # noqa
from consensus_engine.models.submission import Submission  # noqa
from consensus_engine.models.review import ReviewAssignment, PeerReview  # noqa
from consensus_engine.models.ledger import XpTransaction, WeeklyStats, WeekWindow  # noqa
from consensus_engine.models.vote import VoteCase, JudgmentVote  # noqa
from consensus_engine.models.award import MonthlyWinner  # noqa
from consensus_engine.models.automation_log import AutomationLog, ShadowConsensusLog  # noqa
