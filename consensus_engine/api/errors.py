# consensus_engine/api/errors.py
from fastapi import HTTPException, status

from consensus_engine.core.errors import (
    AlreadyFinalized,
    AlreadyVoted,
    ConsensusEngineError,
    CooldownViolation,
    SubmissionNotFound,
    TransientStoreFailure,
    VotingClosed,
    WinnerNotFound,
)

_STATUS_BY_ERROR = (
    ((SubmissionNotFound, WinnerNotFound), status.HTTP_404_NOT_FOUND),
    ((AlreadyFinalized, AlreadyVoted, VotingClosed, CooldownViolation), status.HTTP_409_CONFLICT),
    ((TransientStoreFailure,), status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(e: ConsensusEngineError) -> HTTPException:
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(e, error_types):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
