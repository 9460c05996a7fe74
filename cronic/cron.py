"""
cron.py

Per-job scheduling loop, overrun monitor, subprocess execution and output
draining.
"""

from __future__ import annotations

import enum
import errno
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING, Optional

from cronic.crontab import ExecutionContext, Job, Schedule
from cronic.errors import CronicError, JobExecutionError, JobStartError
from cronic.log import JobLogger

if TYPE_CHECKING:
    from cronic.supervisor import JobGroup

UTC = timezone.utc
READ_BUFFER_SIZE = 64 * 1024


class OverlapPolicy(enum.Enum):
    SERIAL = "serial"
    CONCURRENT = "concurrent"


@dataclass
class RunResult:
    success: bool
    duration_seconds: float
    return_code: Optional[int] = None
    error: Optional[CronicError] = None


def _is_closed_stream_error(exc: Exception) -> bool:
    # The pipe may be closed under us when the process group goes away.
    if isinstance(exc, ValueError):
        return True
    return isinstance(exc, OSError) and exc.errno == errno.EBADF


def _emit(reader_logger: JobLogger, line: bytes) -> None:
    reader_logger.info("%s", line.decode("utf-8", errors="replace"))


def _drain(reader_logger: JobLogger, reader: IO[bytes]) -> None:
    # A "\r" ending a split chunk is held back until we know whether "\n" follows.
    held_cr = False
    try:
        while True:
            try:
                chunk = reader.readline(READ_BUFFER_SIZE)
            except (OSError, ValueError) as exc:
                if not _is_closed_stream_error(exc):
                    reader_logger.error("failed to read pipe: %s", exc)
                break

            if not chunk:
                break

            is_prefix = not chunk.endswith(b"\n") and len(chunk) >= READ_BUFFER_SIZE
            if held_cr:
                held_cr = False
                if chunk == b"\n":
                    continue
                chunk = b"\r" + chunk

            # Only the terminator is stripped: "\n" or "\r\n", once.
            if chunk.endswith(b"\r\n"):
                line = chunk[:-2]
            elif chunk.endswith(b"\n"):
                line = chunk[:-1]
            elif is_prefix and chunk.endswith(b"\r"):
                line, held_cr = chunk[:-1], True
            else:
                line = chunk
            _emit(reader_logger, line)

            if is_prefix:
                reader_logger.warning("last line exceeded buffer size, continuing...")

        if held_cr:
            _emit(reader_logger, b"\r")
    except Exception as exc:  # pragma: no cover - defensive
        reader_logger.exception("output drain failed: %s", exc)
    finally:
        try:
            reader.close()
        except OSError as exc:
            reader_logger.error("failed to close pipe: %s", exc)


def start_reader_drain(reader_logger: JobLogger, reader: IO[bytes], name: str) -> threading.Thread:
    """Consume ``reader`` line by line on a new thread; join it to wait for completion."""
    thread = threading.Thread(target=_drain, args=(reader_logger, reader), name=name, daemon=True)
    thread.start()
    return thread


def _describe_exit(return_code: int) -> str:
    if return_code < 0:
        try:
            name = signal.Signals(-return_code).name
        except ValueError:
            name = f"signal {-return_code}"
        return f"terminated by {name}"
    return f"exit status {return_code}"


def build_env(context: ExecutionContext) -> dict:
    env = os.environ.copy()
    env.update(context.environ)
    return env


def run_job(context: ExecutionContext, command: str, job_logger: JobLogger) -> RunResult:
    job_logger.info("starting")
    started = time.monotonic()

    try:
        process = subprocess.Popen(
            [context.shell, "-c", command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=build_env(context),
            # Own process group: an interactive CTRL+C stops cronic, not the children.
            start_new_session=True,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        return RunResult(
            success=False,
            duration_seconds=time.monotonic() - started,
            error=JobStartError(f"error starting command: {exc}"),
        )

    if process.stdout is None or process.stderr is None:  # pragma: no cover - defensive
        process.kill()
        process.wait()
        return RunResult(
            success=False,
            duration_seconds=time.monotonic() - started,
            error=JobStartError("error starting command: output pipes unavailable"),
        )

    drains = [
        start_reader_drain(job_logger.with_fields({"channel": "stdout"}), process.stdout, "cronic-stdout"),
        start_reader_drain(job_logger.with_fields({"channel": "stderr"}), process.stderr, "cronic-stderr"),
    ]
    for drain in drains:
        drain.join()

    return_code = process.wait()
    duration = time.monotonic() - started
    if return_code != 0:
        return RunResult(
            success=False,
            duration_seconds=duration,
            return_code=return_code,
            error=JobExecutionError(f"error running command: {_describe_exit(return_code)}", return_code),
        )
    return RunResult(success=True, duration_seconds=duration, return_code=return_code)


def _seconds_until(moment: datetime) -> float:
    return max(0.0, (moment - datetime.now(tz=UTC)).total_seconds())


def monitor_job(cancel: threading.Event, schedule: Schedule, t0: datetime, job_logger: JobLogger) -> None:
    t = t0
    while True:
        try:
            t = schedule.next_fire_after(t)
        except CronicError:
            # No fire time left, so no start can be missed.
            return
        if cancel.wait(_seconds_until(t)):
            return
        job_logger.warning(
            "not starting: job is still running since %s (%s elapsed)",
            t0.isoformat(),
            t - t0,
        )


def run_iteration(
    context: ExecutionContext,
    job: Job,
    scheduled_for: datetime,
    job_logger: JobLogger,
) -> RunResult:
    cancel = threading.Event()
    monitor = threading.Thread(
        target=monitor_job,
        args=(cancel, job.schedule, scheduled_for, job_logger),
        name="cronic-monitor",
        daemon=True,
    )
    monitor.start()
    try:
        result = run_job(context, job.command, job_logger)
    finally:
        cancel.set()
        monitor.join()

    if result.success:
        job_logger.info("job succeeded")
    else:
        job_logger.error("%s", result.error)
    return result


def _job_loop(
    context: ExecutionContext,
    job: Job,
    exit_signal: threading.Event,
    cron_logger: JobLogger,
    policy: OverlapPolicy,
) -> None:
    iteration = 0
    next_run = datetime.now(tz=UTC)

    while True:
        try:
            next_run = job.schedule.next_fire_after(next_run)
        except CronicError as exc:
            cron_logger.error("unable to compute next run, stopping: %s", exc)
            return
        cron_logger.debug("job will run next at %s", next_run.isoformat())

        delay = (next_run - datetime.now(tz=UTC)).total_seconds()
        if delay < 0 and policy is OverlapPolicy.SERIAL:
            cron_logger.warning("job took too long to run: it should have started %.3fs ago", -delay)
            next_run = datetime.now(tz=UTC)
            continue

        if exit_signal.wait(max(0.0, delay)):
            cron_logger.debug("shutting down")
            return

        job_logger = cron_logger.with_fields({"iteration": iteration})
        if policy is OverlapPolicy.CONCURRENT:
            # Detached: not joined on shutdown.
            threading.Thread(
                target=run_iteration,
                args=(context, job, next_run, job_logger),
                name=f"cronic-job-{job.position}-{iteration}",
                daemon=True,
            ).start()
        else:
            run_iteration(context, job, next_run, job_logger)

        iteration += 1


def start_job(
    group: "JobGroup",
    context: ExecutionContext,
    job: Job,
    exit_signal: threading.Event,
    cron_logger: JobLogger,
    policy: OverlapPolicy = OverlapPolicy.SERIAL,
) -> None:
    """Start the scheduling loop for ``job`` in ``group``."""
    group.spawn(
        _job_loop,
        context,
        job,
        exit_signal,
        cron_logger,
        policy,
        name=f"cronic-loop-{job.position}",
    )
