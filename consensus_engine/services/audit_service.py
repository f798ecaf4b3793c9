# consensus_engine/services/audit_service.py
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from consensus_engine.models.automation_log import AutomationLog

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_PARTIAL = "PARTIAL"
STATUS_FAILED = "FAILED"


def status_for(errors: list) -> str:
    return STATUS_PARTIAL if errors else STATUS_SUCCESS


def record_automation(
    db: Session,
    *,
    job_name: str,
    job_type: str,
    status: str,
    result: Optional[dict[str, Any]] = None,
    triggered_by: str = "system",
) -> Optional[AutomationLog]:
    """
    Append an AutomationLog row. Best-effort.

    Call it after the business transaction has committed: a failure here is
    logged and rolled back on its own and never undoes the operation it
    describes.
    """
    try:
        entry = AutomationLog(
            job_name=job_name,
            job_type=job_type,
            triggered_by=triggered_by,
            status=status,
            result=result or {},
        )
        db.add(entry)
        db.commit()
        return entry
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to write automation log for {job_name}: {e}")
        return None
