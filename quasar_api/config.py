import math
import os
from dataclasses import dataclass
from typing import Optional


def _flag(value: Optional[str]) -> bool:
    return (value or "false").lower() in {"1", "true", "yes"}


def _seconds(env, name: str, default: str, positive: bool = False) -> float:
    value = float(env.get(name, default))
    if not math.isfinite(value) or value < 0 or (positive and value == 0):
        bound = "> 0" if positive else ">= 0"
        raise RuntimeError(f"{name} must be a finite number of seconds {bound}, got {value!r}")
    return value


@dataclass(frozen=True)
class Settings:
    jobs_folder: str
    sources_folder: str
    assets_folder: str
    jobs_destination: str = "local"

    s3_bucket: str = ""
    s3_prefix: str = "jobs/"
    s3_endpoint: Optional[str] = None
    s3_region: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_force_path_style: bool = False

    redis_url: str = ""
    stream_name: str = "jobs:stream"

    port: int = 3000
    log_level: str = "INFO"
    poll_interval: float = 0.25
    grace_period: float = 1.0
    max_wait: float = 30.0

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        env = os.environ if env is None else env

        missing = [name for name in ("JOBS_FOLDER", "SOURCES_FOLDER", "ASSETS_FOLDER") if not env.get(name)]
        destination = env.get("JOBS_DESTINATION", "local").lower()
        if destination not in {"local", "s3"}:
            raise RuntimeError(f"Unsupported JOBS_DESTINATION: {destination}")
        if destination == "s3" and not env.get("S3_JOB_BUCKET_NAME"):
            missing.append("S3_JOB_BUCKET_NAME")
        if missing:
            raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")

        return cls(
            jobs_folder=env["JOBS_FOLDER"],
            sources_folder=env["SOURCES_FOLDER"],
            assets_folder=env["ASSETS_FOLDER"],
            jobs_destination=destination,
            s3_bucket=env.get("S3_JOB_BUCKET_NAME", ""),
            s3_prefix=env.get("S3_JOB_PREFIX", "jobs/"),
            s3_endpoint=env.get("S3_ENDPOINT"),
            s3_region=env.get("S3_REGION"),
            s3_access_key_id=env.get("S3_ACCESS_KEY_ID"),
            s3_secret_access_key=env.get("S3_SECRET_ACCESS_KEY"),
            s3_force_path_style=_flag(env.get("S3_FORCE_PATH_STYLE")),
            redis_url=env.get("REDIS_URL", ""),
            stream_name=env.get("REDIS_STREAM_NAME", "jobs:stream"),
            port=int(env.get("PORT", "3000")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            poll_interval=_seconds(env, "WATCH_POLL_INTERVAL_SEC", "0.25", positive=True),
            grace_period=_seconds(env, "WATCH_GRACE_SEC", "1.0"),
            max_wait=_seconds(env, "MAX_WAIT_SEC", "30"),
        )
