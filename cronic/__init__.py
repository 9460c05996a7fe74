"""cronic: run crontab jobs as supervised subprocesses with structured logs."""

__version__ = "0.1.0"
