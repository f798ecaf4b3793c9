"""
Engine Tasks for Worker
These tasks are executed by RQ workers (or a cron-style scheduler) and each
one takes its period explicitly, so a re-run closes the same window again.
"""

import logging
from datetime import datetime
from typing import Optional

from consensus_engine.core.errors import ConsensusEngineError
from consensus_engine.core.time_utils import ensure_utc, utcnow
from consensus_engine.db.session import SessionLocal
from consensus_engine.services import (
    aggregation_service,
    monthly_award_service,
    vote_service,
    weekly_service,
)

logger = logging.getLogger(__name__)


def _parse_now(now_iso: Optional[str]) -> datetime:
    if not now_iso:
        return utcnow()
    return ensure_utc(datetime.fromisoformat(now_iso))


def consensus_task(submission_id: int) -> dict:
    """
    Worker task to finalize one submission.

    Returns a summary dict; InsufficientReviews and other engine errors are
    reported in it rather than raised, so the job is not retried blindly.
    """
    db = SessionLocal()
    try:
        logger.info(f"Starting consensus task for submission {submission_id}")
        result = aggregation_service.aggregate_xp(db, submission_id)
        logger.info(
            f"Completed consensus task for submission {submission_id}: "
            f"finalized={result.finalized}, final_xp={result.final_xp}"
        )
        return {"status": "success", **result.model_dump()}

    except ConsensusEngineError as e:
        logger.warning(f"Consensus not reached for submission {submission_id}: {e}")
        return {
            "status": "error",
            "submission_id": submission_id,
            "error": str(e),
            "error_type": type(e).__name__,
        }

    except Exception as e:
        logger.error(
            f"Unexpected error during consensus task for submission {submission_id}: {e}",
            exc_info=True,
        )
        return {"status": "error", "submission_id": submission_id, "error": str(e)}

    finally:
        db.close()


def process_submissions_task() -> dict:
    db = SessionLocal()
    try:
        batch = aggregation_service.process_ready_submissions(db, triggered_by="cron")
        return {"status": "success", **batch.model_dump()}
    except Exception as e:
        logger.error(f"Unexpected error while processing submissions: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


def weekly_reset_task(now_iso: Optional[str] = None) -> dict:
    db = SessionLocal()
    try:
        now = _parse_now(now_iso)
        logger.info(f"Starting weekly reset as of {now.isoformat()}")
        result = weekly_service.process_weekly_reset(db, now, triggered_by="cron")
        return {"status": "success", **result.model_dump()}
    except Exception as e:
        logger.error(f"Weekly reset failed: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


def monthly_award_task(month: str) -> dict:
    db = SessionLocal()
    try:
        logger.info(f"Starting monthly award for {month}")
        result = monthly_award_service.award_monthly_winner(db, month, triggered_by="cron")
        return {"status": "success", **result.model_dump(mode="json")}
    except ConsensusEngineError as e:
        logger.warning(f"Monthly award for {month} not run: {e}")
        return {"status": "error", "month": month, "error": str(e)}
    except Exception as e:
        logger.error(f"Unexpected error awarding {month}: {e}", exc_info=True)
        return {"status": "error", "month": month, "error": str(e)}
    finally:
        db.close()


def expire_votes_task(now_iso: Optional[str] = None) -> dict:
    db = SessionLocal()
    try:
        now = _parse_now(now_iso)
        result = vote_service.expire_stale_cases(db, now)
        return {"status": "success", **result.model_dump()}
    except Exception as e:
        logger.error(f"Vote expiry failed: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


def reconcile_totals_task() -> dict:
    db = SessionLocal()
    try:
        report = aggregation_service.reconcile_user_totals(db, triggered_by="cron")
        return {"status": "success", **report.model_dump()}
    except Exception as e:
        logger.error(f"Reconciliation failed: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()
