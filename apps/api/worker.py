"""RQ worker process entrypoint for public-mirror tasks."""

import logging

from rq import Worker

from config import settings
from services.mirror_queue import get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    worker = Worker([settings.MIRROR_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
