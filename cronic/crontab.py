"""
crontab.py

Job list decoding and the cron schedule engine.

Two file formats are understood: a classic crontab (environment assignments
and ``<expression> <command>`` lines) and a YAML job list. Both decode into a
``Crontab``: one shared, read-only ``ExecutionContext`` and the list of jobs.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadDateError, croniter

from cronic.errors import ConfigError

UTC = timezone.utc
DEFAULT_SHELL = "/bin/sh"
YAML_SUFFIXES = {".yml", ".yaml"}

SHORTCUTS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
# Longest candidate first. Six fields add a trailing year; seven put seconds
# in front of that.
FIELD_COUNTS = (7, 6, 5)
YEAR_MIN = 1970
YEAR_MAX = 2099
ENV_LINE_RE = re.compile(r"^([^\s=]+)\s*=\s*(.*)$")
MAX_CANDIDATES = 10000


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            return ZoneInfo(tz_name), tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, where: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {where}.') from exc


def _parse_years(token: str) -> Optional[FrozenSet[int]]:
    """Expand a year field (``*``, ``2030``, ``2030-2035``, ``*/2``, lists) or None if invalid."""
    years: Set[int] = set()
    for part in token.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                return None
            step = int(step_text)
        if part == "*":
            start, end = YEAR_MIN, YEAR_MAX
        elif "-" in part:
            left, right = part.split("-", 1)
            if not left.isdigit() or not right.isdigit():
                return None
            start, end = int(left), int(right)
        elif part.isdigit():
            start = int(part)
            end = YEAR_MAX if step > 1 else start
        else:
            return None
        if start < YEAR_MIN or end > YEAR_MAX or start > end:
            return None
        years.update(range(start, end + 1, step))
    return frozenset(years)


def _translate(text: str) -> Optional[Tuple[str, Optional[FrozenSet[int]]]]:
    """Split a cron expression into croniter's form and a year filter, or None if invalid."""
    raw = text.strip()
    if raw.startswith("@"):
        expression = SHORTCUTS.get(raw.lower())
        return (expression, None) if expression else None

    fields = raw.split()
    year_token = "*"
    if len(fields) == 7:
        # croniter reads seconds as the last field.
        year_token = fields[6]
        fields = fields[1:6] + fields[:1]
    elif len(fields) == 6:
        year_token = fields[5]
        fields = fields[:5]
    elif len(fields) != 5:
        return None

    years: Optional[FrozenSet[int]] = None
    if year_token != "*":
        years = _parse_years(year_token)
        if years is None:
            return None
    expression = " ".join(fields)
    if not croniter.is_valid(expression):
        return None
    return expression, years


def _is_nonexistent_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive


def _is_ambiguous_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    fold0 = naive.replace(tzinfo=tz, fold=0)
    fold1 = naive.replace(tzinfo=tz, fold=1)
    return fold0.utcoffset() != fold1.utcoffset()


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class Schedule:
    text: str
    expression: str
    timezone: ZoneInfo
    timezone_name: str
    # None means every year.
    years: Optional[FrozenSet[int]] = None

    @classmethod
    def parse(cls, text: str, tz: Optional[ZoneInfo] = None) -> "Schedule":
        """Parse ``text`` in zone ``tz``; expressions that can never fire again are rejected."""
        translated = _translate(text)
        if translated is None:
            raise ConfigError(f'Error: Invalid cron expression "{text}".')
        expression, years = translated
        if tz is None:
            tz, tz_name = system_timezone()
        else:
            tz_name = getattr(tz, "key", str(tz))
        schedule = cls(
            text=text.strip(),
            expression=expression,
            timezone=tz,
            timezone_name=tz_name,
            years=years,
        )
        try:
            schedule.next_fire_after(datetime.now(tz=UTC))
        except ConfigError as exc:
            raise ConfigError(f'Error: Cron expression "{schedule.text}" never fires.') from exc
        return schedule

    def _restart_at_year(self, after_year: int) -> Optional[datetime]:
        later = [year for year in self.years or () if year > after_year]
        if not later:
            return None
        return datetime(min(later), 1, 1, tzinfo=self.timezone) - timedelta(seconds=1)

    def next_fire_after(self, reference: datetime) -> datetime:
        """Return the first fire time strictly after ``reference`` (UTC-aware).

        Raises ``ConfigError`` when the expression has no fire time left.
        """
        local_after = _ensure_aware_utc(reference).astimezone(self.timezone)
        if self.years is not None and local_after.year not in self.years:
            local_after = self._restart_at_year(local_after.year)
            if local_after is None:
                raise ConfigError(f'Error: Schedule "{self.text}" has no upcoming fire time.')
        iterator = croniter(self.expression, local_after)
        for _ in range(MAX_CANDIDATES):
            try:
                nxt = iterator.get_next(datetime)
            except CroniterBadDateError as exc:
                raise ConfigError(f'Error: Schedule "{self.text}" has no upcoming fire time.') from exc
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=self.timezone)
            else:
                nxt = nxt.astimezone(self.timezone)
            if self.years is not None and nxt.year not in self.years:
                restart = self._restart_at_year(nxt.year)
                if restart is None:
                    break
                iterator = croniter(self.expression, restart)
                continue
            if _is_nonexistent_local(nxt, self.timezone):
                continue
            if _is_ambiguous_local(nxt, self.timezone) and nxt.fold == 1:
                continue
            return nxt.astimezone(UTC)
        raise ConfigError(f'Error: Schedule "{self.text}" has no upcoming fire time.')


@dataclass(frozen=True)
class ExecutionContext:
    shell: str = DEFAULT_SHELL
    environ: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "environ", MappingProxyType(dict(self.environ)))


@dataclass(frozen=True)
class Job:
    schedule: Schedule
    command: str
    position: int

    @property
    def schedule_text(self) -> str:
        return self.schedule.text


@dataclass(frozen=True)
class Crontab:
    context: ExecutionContext
    jobs: List[Job]


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _parse_job_line(line: str, tz: ZoneInfo, position: int) -> Optional[Job]:
    if line.startswith("@"):
        parts = line.split(None, 1)
        if parts[0].lower() not in SHORTCUTS:
            return None
        if len(parts) < 2:
            raise ConfigError(f"Error: Missing command at line {position}.")
        return Job(schedule=Schedule.parse(parts[0], tz), command=parts[1].strip(), position=position)

    for count in FIELD_COUNTS:
        parts = line.split(None, count)
        if len(parts) <= count:
            continue
        text = " ".join(parts[:count])
        if _translate(text) is None:
            continue
        return Job(schedule=Schedule.parse(text, tz), command=parts[count].strip(), position=position)
    return None


def parse_crontab(text: str) -> Crontab:
    tz, _ = system_timezone()
    shell = DEFAULT_SHELL
    environ: Dict[str, str] = {}
    jobs: List[Job] = []

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        match = ENV_LINE_RE.match(line)
        if match:
            key, value = match.group(1), _unquote(match.group(2).strip())
            if key == "SHELL":
                shell = value
            elif key == "CRON_TZ":
                tz = parse_timezone(value, f"line {lineno}")
            else:
                environ[key] = value
            continue

        job = _parse_job_line(line, tz, lineno)
        if job is None:
            raise ConfigError(f'Error: Invalid crontab line {lineno}: "{line}".')
        jobs.append(job)

    return Crontab(context=ExecutionContext(shell=shell, environ=environ), jobs=jobs)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _check_keys(raw: Dict[str, Any], allowed: set, field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def _parse_environment(raw: Any, field_path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    environ: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key or "=" in key:
            raise ConfigError(f'Error: Invalid variable name "{key}" in {field_path}.')
        if isinstance(value, bool):
            value = "true" if value else "false"
        if not isinstance(value, (str, int, float)):
            raise ConfigError(f"Error: {field_path}.{key} must be a scalar value.")
        environ[key] = str(value)
    return environ


def parse_yaml_crontab(text: str) -> Crontab:
    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level job list must be a mapping.")
    _check_keys(payload, {"shell", "timezone", "environment", "jobs"}, "top level")

    shell = ensure_str(payload.get("shell", DEFAULT_SHELL), "shell")
    if "timezone" in payload:
        tz = parse_timezone(ensure_str(payload["timezone"], "timezone"), "timezone")
    else:
        tz, _ = system_timezone()
    environ = _parse_environment(payload.get("environment"), "environment")

    jobs_raw = payload.get("jobs") or []
    if not isinstance(jobs_raw, list):
        raise ConfigError("Error: jobs must be a list.")

    jobs: List[Job] = []
    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        _check_keys(job_raw, {"schedule", "command", "timezone"}, path)
        job_tz = tz
        if "timezone" in job_raw:
            job_tz = parse_timezone(ensure_str(job_raw["timezone"], f"{path}.timezone"), f"{path}.timezone")
        schedule_text = ensure_str(job_raw.get("schedule"), f"{path}.schedule")
        try:
            schedule = Schedule.parse(schedule_text, job_tz)
        except ConfigError as exc:
            raise ConfigError(f"{exc} ({path}.schedule)") from exc
        command = ensure_str(job_raw.get("command"), f"{path}.command")
        jobs.append(Job(schedule=schedule, command=command, position=idx + 1))

    return Crontab(context=ExecutionContext(shell=shell, environ=environ), jobs=jobs)


def read_crontab_at_path(path: Path) -> Crontab:
    if not path.exists():
        raise ConfigError(f"Error: Crontab file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Error: Failed to read {path}: {exc}") from exc
    if path.suffix.lower() in YAML_SUFFIXES:
        return parse_yaml_crontab(text)
    return parse_crontab(text)


def next_run_times(schedule: Schedule, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or datetime.now(tz=UTC))
    runs: List[datetime] = []
    while len(runs) < count:
        cursor = schedule.next_fire_after(cursor)
        runs.append(cursor)
    return runs
