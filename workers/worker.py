from __future__ import annotations

import logging
import os
import time

import redis  # type: ignore

from core.config import ENVIRONMENT, FANOUT_QUEUE_NAME, LOG_LEVEL
from core.logging import configure_logging
from core.queue import decode_task, get_queue_client

from .handlers import handle_task

logger = logging.getLogger("worker")


def process_one(raw) -> bool:
    """Run a single queue item; returns False when it failed."""
    try:
        name, payload = decode_task(raw)
    except ValueError as exc:
        logger.warning("Discarded malformed task: %s", exc)
        return False
    try:
        handle_task(name, payload)
    except Exception as exc:
        logger.exception("Worker task %s failed: %s", name, exc)
        return False
    return True


def main() -> None:
    configure_logging(environment=ENVIRONMENT, log_level=LOG_LEVEL)
    queue = os.getenv("WORKER_QUEUE", FANOUT_QUEUE_NAME)
    poll_timeout = int(os.getenv("WORKER_POLL_TIMEOUT_SECONDS", "5"))
    r = get_queue_client()
    logger.info("Worker started | queue=%s", queue)

    while True:
        try:
            item = r.blpop(queue, timeout=poll_timeout)
        except redis.RedisError as exc:
            logger.error("Queue read failed: %s", exc)
            time.sleep(1)
            continue
        if not item:
            continue
        _queue_name, raw = item
        if not process_one(raw):
            time.sleep(0.25)


if __name__ == "__main__":
    main()
