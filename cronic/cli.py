#!/usr/bin/env python3
"""
cli.py

Command line entry point: read a crontab and run its jobs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cronic.cron import OverlapPolicy
from cronic.crontab import Crontab, next_run_times, read_crontab_at_path
from cronic.errors import CronicError
from cronic.log import JobLogger, setup_logging
from cronic.supervisor import ShutdownCoordinator

UTC = timezone.utc
DEFAULT_PREVIEW_COUNT = 3


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cronic",
        description="Run the jobs of a crontab, logging their output.",
    )
    parser.add_argument("crontab", metavar="CRONTAB", help="Path to a crontab or YAML job list")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--json", action="store_true", help="enable JSON logging")
    parser.add_argument(
        "--overlapping",
        action="store_true",
        help="allow a job to start while its previous run is still going",
    )
    parser.add_argument("--log-file", help="also write logs to this file")
    parser.add_argument(
        "--test",
        action="store_true",
        help="validate the crontab, print upcoming runs and exit without running jobs",
    )
    return parser.parse_args(argv)


def command_test(tab: Crontab, path: Path, count: int = DEFAULT_PREVIEW_COUNT) -> int:
    now_utc = datetime.now(tz=UTC)
    print(f"Crontab valid: {path}")
    print(f"Shell: {tab.context.shell}")
    print(f"Total jobs: {len(tab.jobs)}")
    for job in tab.jobs:
        print("=" * 80)
        print(f"Job at position {job.position}: {job.command}")
        print(f"Schedule: {job.schedule_text} ({job.schedule.timezone_name})")
        print(f"Next {count} run(s):")
        for run_dt in next_run_times(job.schedule, count, now_utc=now_utc):
            print(f"- {run_dt.astimezone(job.schedule.timezone).isoformat()}")
    return 0


def command_daemon(tab: Crontab, logger: JobLogger, policy: OverlapPolicy) -> int:
    coordinator = ShutdownCoordinator(logger)
    coordinator.install_signal_handlers()
    for job in tab.jobs:
        coordinator.add_job(job, tab.context, policy)
    logger.info("started %s job(s) (overlap=%s)", len(tab.jobs), policy.value)
    return coordinator.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logger = JobLogger(setup_logging(debug=args.debug, json_output=args.json, log_file=args.log_file))
    crontab_path = Path(args.crontab)

    try:
        logger.info("read crontab: %s", crontab_path)
        tab = read_crontab_at_path(crontab_path)
        if args.test:
            return command_test(tab, crontab_path)
        policy = OverlapPolicy.CONCURRENT if args.overlapping else OverlapPolicy.SERIAL
        return command_daemon(tab, logger, policy)
    except CronicError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
