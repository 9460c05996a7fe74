"""
errors.py

Exception hierarchy. ``ConfigError`` is fatal at startup; the job errors
describe a single failed invocation and never stop the scheduler.
"""

from __future__ import annotations

from typing import Optional


class CronicError(Exception):
    """Base error for cronic."""


class ConfigError(CronicError):
    """Crontab read or validation error."""


class JobStartError(CronicError):
    """The subprocess could not be started."""


class JobExecutionError(CronicError):
    """The subprocess exited unsuccessfully."""

    def __init__(self, message: str, return_code: Optional[int] = None):
        super().__init__(message)
        self.return_code = return_code
