"""Helper script to run the disclosure pipeline worker locally."""

from __future__ import annotations

import os
from pathlib import Path

from kessan.tasks.celery_app import celery_app


def str_to_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def build_worker_argv() -> list[str]:
    concurrency = os.getenv("WORKER_CONCURRENCY", "2")
    loglevel = os.getenv("LOG_LEVEL", "INFO")
    argv = ["worker", f"--concurrency={concurrency}", f"--loglevel={loglevel}"]
    # Embedded beat drives the scheduled new-release poll
    if str_to_bool(os.getenv("WORKER_BEAT"), True):
        argv.append("--beat")
    return argv


def main() -> None:
    backend_dir = Path(__file__).resolve().parent
    os.chdir(backend_dir)
    celery_app.worker_main(build_worker_argv())


if __name__ == "__main__":
    main()
