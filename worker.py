"""
Background worker: drains the DB-backed job queue.

Run with ``python worker.py``; SIGTERM and Ctrl-C finish the current batch
and exit.
"""
import signal
import time

from servio.logging_config import get_logger
from servio.services.task_queue import TASK_REGISTRY, run_pending_jobs

# Registers the rating recompute task
from servio.tasks import rating_tasks  # noqa: F401

logger = get_logger(__name__)

BATCH_SIZE = 10
IDLE_SLEEP_SECONDS = 2
ERROR_SLEEP_SECONDS = 5


class Worker:
    def __init__(self, batch_size: int = BATCH_SIZE):
        self.batch_size = batch_size
        self.running = True

    def stop(self, *_):
        logger.info("worker_stopping")
        self.running = False

    def run_once(self) -> int:
        return run_pending_jobs(limit=self.batch_size)

    def run(self) -> None:
        logger.info("worker_started", tasks=sorted(TASK_REGISTRY), batch_size=self.batch_size)
        while self.running:
            try:
                if self.run_once() == 0:
                    time.sleep(IDLE_SLEEP_SECONDS)
            except Exception:
                logger.error("worker_batch_failed", exc_info=True)
                time.sleep(ERROR_SLEEP_SECONDS)
        logger.info("worker_stopped")


def start_worker():
    worker = Worker()
    signal.signal(signal.SIGTERM, worker.stop)
    signal.signal(signal.SIGINT, worker.stop)
    worker.run()


if __name__ == "__main__":
    start_worker()
