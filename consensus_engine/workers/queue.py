# consensus_engine/workers/queue.py

from typing import Any, Callable

from redis import Redis
from rq import Queue

from consensus_engine.core.config import settings

_DEFAULT_QUEUE_NAME = "default"
_CONSENSUS_QUEUE_NAME = "consensus"
_PERIODIC_QUEUE_NAME = "periodic"

_redis_conn: Redis | None = None


def get_redis_connection() -> Redis:
    global _redis_conn
    if _redis_conn is None:
        _redis_conn = Redis.from_url(settings.REDIS_URL)
    return _redis_conn


def get_queue(name: str = _DEFAULT_QUEUE_NAME) -> Queue:
    return Queue(name, connection=get_redis_connection())


def enqueue_job(
    func: Callable[..., Any],
    *args: Any,
    queue_name: str = _DEFAULT_QUEUE_NAME,
    **kwargs: Any,
) -> str:
    q = get_queue(queue_name)
    job = q.enqueue(func, *args, **kwargs)
    return job.id


def enqueue_consensus_task(submission_id: int) -> str:
    from consensus_engine.workers.tasks import consensus_task

    return enqueue_job(consensus_task, submission_id, queue_name=_CONSENSUS_QUEUE_NAME)


def enqueue_weekly_reset(now_iso: str | None = None) -> str:
    from consensus_engine.workers.tasks import weekly_reset_task

    return enqueue_job(weekly_reset_task, now_iso, queue_name=_PERIODIC_QUEUE_NAME)


def enqueue_monthly_award(month: str) -> str:
    from consensus_engine.workers.tasks import monthly_award_task

    return enqueue_job(monthly_award_task, month, queue_name=_PERIODIC_QUEUE_NAME)
