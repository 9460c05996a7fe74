"""
supervisor.py

Owns the per-job scheduler loops: starts one per job, stops them all on
SIGINT/SIGTERM and waits for every loop to finish.
"""

from __future__ import annotations

import signal
import threading
from typing import Any, Callable, List, Optional

from cronic.cron import OverlapPolicy, start_job
from cronic.crontab import ExecutionContext, Job
from cronic.log import JobLogger


class JobGroup:
    """Threads joined together as one unit."""

    def __init__(self) -> None:
        self._threads: List[threading.Thread] = []

    def spawn(self, target: Callable[..., Any], *args: Any, name: Optional[str] = None) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()
        return thread

    def __len__(self) -> int:
        return len(self._threads)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every spawned thread. Returns False if some are still alive."""
        threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        return not any(thread.is_alive() for thread in threads)


class ShutdownCoordinator:
    def __init__(self, logger: JobLogger):
        self.logger = logger
        self.group = JobGroup()
        self.exit_signals: List[threading.Event] = []
        self._terminate = threading.Event()
        self._signal_name: Optional[str] = None

    def add_job(
        self,
        job: Job,
        context: ExecutionContext,
        policy: OverlapPolicy = OverlapPolicy.SERIAL,
    ) -> threading.Event:
        exit_signal = threading.Event()
        self.exit_signals.append(exit_signal)
        cron_logger = self.logger.with_fields(
            {
                "job.schedule": job.schedule_text,
                "job.command": job.command,
                "job.position": job.position,
            }
        )
        start_job(self.group, context, job, exit_signal, cron_logger, policy)
        return exit_signal

    def install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, _: Any) -> None:
            self.request_termination(signum)

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handle_signal)

    def request_termination(self, signum: Optional[int] = None) -> None:
        if self._terminate.is_set():
            return
        if signum is not None:
            self._signal_name = signal.Signals(signum).name
        self._terminate.set()

    def shutdown(self) -> None:
        for exit_signal in self.exit_signals:
            exit_signal.set()
        self.logger.info("waiting for jobs to finish")
        self.group.join()
        self.logger.info("exiting")

    def run(self) -> int:
        # Timed waits keep the main thread responsive to signal handlers.
        while not self._terminate.wait(1.0):
            pass
        self.logger.info("received %s, shutting down", self._signal_name or "stop request")
        self.shutdown()
        return 0
