from __future__ import annotations

import argparse
import json
import logging
import math
import sys

from . import __version__
from .config import Settings
from .errors import QuasarError
from .models import TERMINAL_STATUSES, JobStatus, TimedOut


def _seconds(value: str) -> float:
    seconds = float(value)
    if not math.isfinite(seconds) or seconds < 0:
        raise argparse.ArgumentTypeError(f"expected a finite number of seconds >= 0, got {value}")
    return seconds


def _positive_seconds(value: str) -> float:
    seconds = _seconds(value)
    if seconds == 0:
        raise argparse.ArgumentTypeError("expected a number of seconds > 0")
    return seconds


def _print_record(record) -> None:
    print(json.dumps(record.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False))


def cmd_serve(args, settings: Settings) -> int:
    import uvicorn

    from .main import build_lifecycle, create_app

    if not args.no_logo:
        logging.info("quasar-api %s", __version__)
    app = create_app(settings, build_lifecycle(settings))
    port = args.port or settings.port
    logging.info("quasar api running on port:%s at http://localhost:%s", port, port)
    uvicorn.run(app, host=args.host, port=port, log_level=settings.log_level.lower())
    return 0


def cmd_status(args, settings: Settings) -> int:
    from .storage import build_store

    _print_record(build_store(settings).read(args.job_id))
    return 0


def cmd_transition(args, settings: Settings) -> int:
    from .storage import build_store

    record = build_store(settings).transition(
        args.job_id, JobStatus(args.from_status), JobStatus(args.to_status), artifact_path=args.artifact
    )
    _print_record(record)
    return 0


def cmd_wait(args, settings: Settings) -> int:
    from .storage import build_store
    from .watcher import CompletionWatcher

    watcher = CompletionWatcher(build_store(settings), grace_period=settings.grace_period)
    poll = args.poll if args.poll is not None else settings.poll_interval
    result = watcher.wait(args.job_id, TERMINAL_STATUSES, args.timeout, poll)
    if isinstance(result, TimedOut):
        last = result.last_status.value if result.last_status else "unknown"
        print(f"timed out after {result.waited:.1f}s waiting on {args.job_id} (last status: {last})")
        return 2
    _print_record(result)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="quasar-api", description="Quasar job API and job lifecycle tools.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--no-logo", action="store_true", help="Skip the startup banner.")
    serve.set_defaults(func=cmd_serve)

    status = sub.add_parser("status", help="Print a job record.")
    status.add_argument("job_id")
    status.set_defaults(func=cmd_status)

    statuses = [s.value for s in JobStatus]
    transition = sub.add_parser("transition", help="Move a job to its next status.")
    transition.add_argument("job_id")
    transition.add_argument("from_status", choices=statuses)
    transition.add_argument("to_status", choices=statuses)
    transition.add_argument("--artifact", default=None, help="Artifact path to record on the job.")
    transition.set_defaults(func=cmd_transition)

    wait = sub.add_parser("wait", help="Wait until a job completes or fails.")
    wait.add_argument("job_id")
    wait.add_argument("--timeout", type=_seconds, default=60.0)
    wait.add_argument("--poll", type=_positive_seconds, default=None)
    wait.set_defaults(func=cmd_wait)
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        return args.func(args, settings)
    except QuasarError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
