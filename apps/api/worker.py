"""RQ worker process entrypoint for settlement jobs."""

import logging

from redis import Redis
from rq import Worker

from config import settings
from services.job_queue import JOB_QUEUE_NAME


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker([JOB_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
