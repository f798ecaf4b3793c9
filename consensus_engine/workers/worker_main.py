# consensus_engine/workers/worker_main.py

from rq import Queue, SimpleWorker

from consensus_engine.core.logging_config import configure_logging
from consensus_engine.workers.queue import get_redis_connection


QUEUE_NAMES = ["consensus", "periodic", "default"]


def main():
    configure_logging()
    redis_conn = get_redis_connection()

    queues = [Queue(name, connection=redis_conn) for name in QUEUE_NAMES]

    worker = SimpleWorker(queues, connection=redis_conn)

    worker.work()


if __name__ == "__main__":
    main()
