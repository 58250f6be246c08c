"""RQ worker process entrypoint for background image analysis jobs."""

from rq import Worker

from services.analysis_queue import ANALYSIS_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([ANALYSIS_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
