# consensus_engine/core/errors.py


class ConsensusEngineError(Exception):
    pass


class SubmissionNotFound(ConsensusEngineError):
    pass


class InsufficientReviews(ConsensusEngineError):
    """Finalization attempted before every required reviewer responded. Retry later."""


class AlreadyFinalized(ConsensusEngineError):
    pass


class AlreadyVoted(ConsensusEngineError):
    pass


class VotingClosed(ConsensusEngineError):
    pass


class NoConsensusCandidate(ConsensusEngineError):
    """Vote quorum or majority not met; the case stays open."""


class CooldownViolation(ConsensusEngineError):
    pass


class ReconciliationMismatch(ConsensusEngineError):
    def __init__(self, user_id: int, cached: int, ledger: int):
        super().__init__(
            f"user {user_id}: cached total {cached} != ledger sum {ledger}"
        )
        self.user_id = user_id
        self.cached = cached
        self.ledger = ledger


class TransientStoreFailure(ConsensusEngineError):
    pass


class WinnerNotFound(ConsensusEngineError):
    pass


class InvalidMonth(ConsensusEngineError):
    pass
