# bulkjobs/queueing/rq_worker.py
from __future__ import annotations

import importlib
import logging
import os

from rq import Queue
from rq import Worker as RQWorker

from bulkjobs.config import load_settings
from bulkjobs.queueing import tasks as _tasks  # noqa: F401  (ensure task module is imported)
from bulkjobs.queueing.redis_conn import get_redis

log = logging.getLogger(__name__)


def _queue_names() -> list[str]:
    raw = os.getenv("RQ_QUEUE", "")
    if raw.strip():
        return [q.strip() for q in raw.split(",") if q.strip()]
    return [load_settings().queue.queue_name]


def _select_worker_cls():
    """Honor RQ_WORKER_CLASS (dotted path) if set; else the forking rq.Worker."""
    env_cls = os.getenv("RQ_WORKER_CLASS", "").strip()
    if env_cls:
        mod, name = env_cls.rsplit(".", 1)
        return getattr(importlib.import_module(mod), name)
    return RQWorker


def run(queue_names: list[str] | None = None, *, burst: bool = False) -> None:
    cfg = load_settings()
    r = get_redis(cfg.queue.rq_redis_url)
    names = queue_names or _queue_names()
    queues = [Queue(name, connection=r) for name in names]

    worker_cls = _select_worker_cls()
    log.info("Worker class: %s.%s", worker_cls.__module__, worker_cls.__name__)
    log.info("Queues: %s", ", ".join(names))

    w = worker_cls(queues, connection=r)

    # Only the forking Worker supports with_scheduler
    if worker_cls is RQWorker:
        w.work(with_scheduler=True, burst=burst)
    else:
        w.work(burst=burst)


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    run()
