import logging
from typing import Optional

import redis


def redis_client(url: str) -> redis.Redis:
    return redis.from_url(url, decode_responses=False)


class JobAnnouncer:
    """Publishes newly created jobs on a redis stream for executors to consume."""

    def __init__(self, rdb: redis.Redis, stream_name: str = "jobs:stream"):
        self.rdb = rdb
        self.stream_name = stream_name

    def announce(self, job_id: str, status: str, location: str) -> str:
        entry_id = self.rdb.xadd(
            self.stream_name,
            {"jobId": job_id, "status": status, "jobFile": location},
        )
        logging.debug("Announced job %s on %s as %s", job_id, self.stream_name, entry_id)
        return entry_id


def build_announcer(settings) -> Optional[JobAnnouncer]:
    if not settings.redis_url:
        return None
    return JobAnnouncer(redis_client(settings.redis_url), settings.stream_name)
