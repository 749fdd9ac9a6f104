#!/usr/bin/env python3
"""
rota.py

Daily rotation scheduler for unit-of-work scripts.

One unit from a fixed rotation runs per scheduling day for a fixed number of
cycles. Progress is checkpointed to a JSON state file after every cycle so an
interrupted run resumes where it stopped instead of starting over.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter

from rota_progress import ProgressEvent, parse_progress_line


DEFAULT_CONFIG = "rota.yaml"
DEFAULT_LOG_DIR = "logs"
DEFAULT_STATE_FILE = ".rota/daily-schedule.json"
DEFAULT_CYCLES = 50
DEFAULT_ROLLOVER = "00:00:10"
DEFAULT_RETRY_BACKOFF = "5m"
DEFAULT_RESTART_DELAY = "5m"
DEFAULT_PREVIEW_COUNT = 5
TERMINATE_GRACE_SECONDS = 10

STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
VALID_STATUSES = {
    STATUS_NOT_STARTED,
    STATUS_IN_PROGRESS,
    STATUS_PAUSED,
    STATUS_COMPLETED,
    STATUS_FAILED,
}
RESUMABLE_STATUSES = {STATUS_IN_PROGRESS, STATUS_PAUSED}

PHASE_IDLE = "idle"
PHASE_RESUMING = "resuming"
PHASE_RUNNING = "running"
PHASE_WAITING = "waiting"

ROLLOVER_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")
DURATION_RE = re.compile(r"^(\d+)\s*([smh])$")
DURATION_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}


class RotaError(Exception):
    """Base error for rota."""


class ConfigError(RotaError):
    """Config validation error."""


class StateError(RotaError):
    """Persisted state document is invalid."""


logger = logging.getLogger("rota")


def setup_logging(log_dir: Optional[Path] = None, now: Optional[datetime] = None) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_dir is not None:
        stamp = (now or datetime.now()).strftime("%Y-%m-%d")
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / f"rota_{stamp}.log", encoding="utf-8")
        except OSError as exc:
            logger.warning("Unable to open log file in %s: %s", log_dir, exc)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    return logger


@dataclass(frozen=True)
class UnitSpec:
    name: str
    path: str
    resolved_path: Path
    working_dir: Path


@dataclass(frozen=True)
class ScheduleSettings:
    rotation: List[str]
    cycles: int
    rollover_text: str
    rollover_cron: str
    retry_backoff_seconds: int
    restart_delay_seconds: int

    @property
    def rollover_offset(self) -> timedelta:
        return rollover_offset(self.rollover_text)


@dataclass(frozen=True)
class RotaConfig:
    config_path: Path
    units: Dict[str, UnitSpec]
    schedule: ScheduleSettings
    state_file: Path
    timezone: ZoneInfo
    timezone_name: str

    def now(self) -> datetime:
        return datetime.now(tz=self.timezone)


@dataclass
class ResumePoint:
    unit: str
    cycle: int

    def to_payload(self) -> Dict[str, Any]:
        return {"unit": self.unit, "cycle": self.cycle}


@dataclass
class ScheduleState:
    last_run_date: datetime
    rotation_index: int = 0
    active_unit: Optional[str] = None
    status: str = STATUS_NOT_STARTED
    cycles_completed: int = 0
    total_cycles: int = DEFAULT_CYCLES
    resume_point: Optional[ResumePoint] = None
    unit_completed_today: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "rotationIndex": self.rotation_index,
            "lastRunDate": self.last_run_date.isoformat(),
            "activeUnit": self.active_unit,
            "status": self.status,
            "cyclesCompleted": self.cycles_completed,
            "totalCycles": self.total_cycles,
            "resumePoint": self.resume_point.to_payload() if self.resume_point else None,
            "unitCompletedToday": self.unit_completed_today,
        }

    @staticmethod
    def from_payload(raw: Any, tz: ZoneInfo, default_total: int, now: datetime) -> "ScheduleState":
        if not isinstance(raw, dict):
            raise StateError("state document must be a JSON object")

        status = raw.get("status", STATUS_NOT_STARTED)
        if status not in VALID_STATUSES:
            raise StateError(f'status must be one of {sorted(VALID_STATUSES)}, got "{status}"')

        active_unit = raw.get("activeUnit")
        if active_unit is not None and (not isinstance(active_unit, str) or not active_unit.strip()):
            raise StateError("activeUnit must be a non-empty string or null")

        completed_today = raw.get("unitCompletedToday", False)
        if not isinstance(completed_today, bool):
            raise StateError("unitCompletedToday must be true or false")

        total_cycles = _state_int(raw, "totalCycles", default_total)
        cycles_completed = min(_state_int(raw, "cyclesCompleted", 0), total_cycles)

        return ScheduleState(
            last_run_date=_parse_state_timestamp(raw.get("lastRunDate"), tz, now),
            rotation_index=_state_int(raw, "rotationIndex", 0),
            active_unit=active_unit,
            status=status,
            cycles_completed=cycles_completed,
            total_cycles=total_cycles,
            resume_point=_parse_resume_point(raw.get("resumePoint")),
            unit_completed_today=completed_today,
        )


def _state_int(raw: Dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise StateError(f"{key} must be a non-negative integer")
    return value


def _parse_state_timestamp(value: Any, tz: ZoneInfo, now: datetime) -> datetime:
    if value is None:
        return now
    if not isinstance(value, str):
        raise StateError("lastRunDate must be an ISO timestamp string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise StateError(f'lastRunDate must be an ISO timestamp, got "{value}"') from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _parse_resume_point(value: Any) -> Optional[ResumePoint]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise StateError("resumePoint must be an object or null")
    unit = value.get("unit")
    cycle = value.get("cycle")
    if not isinstance(unit, str) or not unit.strip():
        raise StateError("resumePoint.unit must be a non-empty string")
    if isinstance(cycle, bool) or not isinstance(cycle, int) or cycle < 1:
        raise StateError("resumePoint.cycle must be an integer >= 1")
    return ResumePoint(unit=unit, cycle=cycle)


@dataclass
class UnitRunResult:
    unit: str
    success: bool
    completed_cycles: int
    total_cycles: int
    start_cycle: int
    remaining_cycles: int
    launched: bool
    return_code: Optional[int] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except ZoneInfoNotFoundError:
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def schedule_day(moment: datetime, tz: ZoneInfo, offset: timedelta = timedelta(0)) -> date:
    """Scheduling day containing ``moment``; a day starts at the rollover time."""
    return (moment.astimezone(tz) - offset).date()


def same_schedule_day(first: datetime, second: datetime, tz: ZoneInfo, offset: timedelta = timedelta(0)) -> bool:
    return schedule_day(first, tz, offset) == schedule_day(second, tz, offset)


def next_rollover(after: datetime, cron_expr: str, tz: ZoneInfo, offset: timedelta = timedelta(0)) -> datetime:
    """First rollover that starts a later scheduling day than ``after``."""
    local_after = after.astimezone(tz)
    current_day = schedule_day(local_after, tz, offset)
    iterator = croniter(cron_expr, local_after)
    for _ in range(400):
        nxt = iterator.get_next(datetime)
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=tz)
        else:
            nxt = nxt.astimezone(tz)
        if schedule_day(nxt, tz, offset) > current_day:
            return nxt
    raise RotaError(f"Unable to compute next rollover for cron expression {cron_expr!r}.")


def advance_rotation(index: int, length: int) -> int:
    if length <= 0:
        raise RotaError("rotation must contain at least one unit")
    return (index + 1) % length


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_rollover(value: Any, field_path: str) -> Tuple[str, str]:
    """Return the rollover text and its six-field (seconds last) cron expression."""
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be HH:MM or HH:MM:SS string.")
    match = ROLLOVER_RE.match(value.strip())
    if not match:
        raise ConfigError(f'Error: {field_path} must be HH:MM or HH:MM:SS (24-hour), got "{value}".')
    hour = int(match.group(1))
    minute = int(match.group(2))
    second = int(match.group(3) or 0)
    return value.strip(), f"{minute} {hour} * * * {second}"


def rollover_offset(rollover_text: str) -> timedelta:
    match = ROLLOVER_RE.match(rollover_text.strip())
    if not match:
        raise ConfigError(f'Error: rollover must be HH:MM or HH:MM:SS (24-hour), got "{rollover_text}".')
    return timedelta(
        hours=int(match.group(1)),
        minutes=int(match.group(2)),
        seconds=int(match.group(3) or 0),
    )


def parse_duration(value: Any, field_path: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        if value <= 0:
            raise ConfigError(f"Error: {field_path} must be > 0.")
        return value
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a duration like 30s, 5m, 1h.")
    match = DURATION_RE.match(value.strip().lower())
    if not match:
        raise ConfigError(f'Error: {field_path} must be in format <number><s|m|h>, got "{value}".')
    amount = int(match.group(1))
    if amount <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return amount * DURATION_UNIT_SECONDS[match.group(2)]


def _check_unknown_keys(raw: Dict[str, Any], allowed: set, field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _resolve_working_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty path string.")
    raw = Path(value.strip())
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    resolved = resolved.resolve()
    if not resolved.exists() or not resolved.is_dir():
        raise ConfigError(f"Error: working directory does not exist at {field_path}: {resolved}")
    return resolved


def parse_units(raw: Any, field_path: str, default_working_dir: Path, config_dir: Path) -> Dict[str, UnitSpec]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")
    units: Dict[str, UnitSpec] = {}
    for idx, unit_raw in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if not isinstance(unit_raw, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        _check_unknown_keys(unit_raw, {"name", "path", "working_dir"}, item_path)

        name = ensure_str(unit_raw.get("name"), f"{item_path}.name")
        if name in units:
            raise ConfigError(f'Error: Duplicate unit name "{name}".')

        working_dir = default_working_dir
        if "working_dir" in unit_raw:
            working_dir = _resolve_working_dir(unit_raw["working_dir"], config_dir, f"{item_path}.working_dir")

        path_str = ensure_str(unit_raw.get("path"), f"{item_path}.path")
        raw_path = Path(path_str)
        resolved = raw_path if raw_path.is_absolute() else (working_dir / raw_path)
        resolved = resolved.resolve()
        if not resolved.exists() or not resolved.is_file():
            raise ConfigError(f"Error: Unit script does not exist for {item_path}.path: {resolved}")

        units[name] = UnitSpec(name=name, path=path_str, resolved_path=resolved, working_dir=working_dir)
    return units


def parse_schedule_settings(raw: Any, field_path: str, units: Dict[str, UnitSpec]) -> ScheduleSettings:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    _check_unknown_keys(raw, {"rotation", "cycles", "rollover", "retry_backoff", "restart_delay"}, field_path)

    rotation_raw = raw.get("rotation")
    if not isinstance(rotation_raw, list) or not rotation_raw:
        raise ConfigError(f"Error: {field_path}.rotation must be a non-empty list of unit names.")
    rotation: List[str] = []
    for idx, item in enumerate(rotation_raw):
        name = ensure_str(item, f"{field_path}.rotation[{idx}]")
        if name not in units:
            raise ConfigError(f'Error: {field_path}.rotation[{idx}] references unknown unit "{name}".')
        rotation.append(name)

    rollover_text, rollover_cron = parse_rollover(
        raw.get("rollover", DEFAULT_ROLLOVER), f"{field_path}.rollover"
    )
    return ScheduleSettings(
        rotation=rotation,
        cycles=ensure_int(raw.get("cycles"), f"{field_path}.cycles", DEFAULT_CYCLES, 1),
        rollover_text=rollover_text,
        rollover_cron=rollover_cron,
        retry_backoff_seconds=parse_duration(
            raw.get("retry_backoff", DEFAULT_RETRY_BACKOFF), f"{field_path}.retry_backoff"
        ),
        restart_delay_seconds=parse_duration(
            raw.get("restart_delay", DEFAULT_RESTART_DELAY), f"{field_path}.restart_delay"
        ),
    )


def parse_config(config_path: Path) -> RotaConfig:
    payload = _load_config_payload(config_path)
    config_dir = config_path.parent
    _check_unknown_keys(payload, {"version", "defaults", "state", "schedule", "units"}, "top-level config")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    _check_unknown_keys(defaults, {"working_dir", "timezone"}, "defaults")

    _, system_tz_name = system_timezone()
    timezone_name = defaults.get("timezone", system_tz_name)
    if not isinstance(timezone_name, str):
        raise ConfigError("Error: defaults.timezone must be a timezone string.")
    timezone_obj = parse_timezone(timezone_name, "defaults.timezone")

    default_working_dir = _resolve_working_dir(
        defaults.get("working_dir", "."), config_dir, "defaults.working_dir"
    )

    state_raw = payload.get("state", {}) or {}
    if not isinstance(state_raw, dict):
        raise ConfigError("Error: state must be a mapping.")
    _check_unknown_keys(state_raw, {"file"}, "state")
    state_file = Path(ensure_str(state_raw.get("file", DEFAULT_STATE_FILE), "state.file"))
    if not state_file.is_absolute():
        state_file = (config_dir / state_file).resolve()

    units = parse_units(payload.get("units"), "units", default_working_dir, config_dir)
    schedule = parse_schedule_settings(payload.get("schedule"), "schedule", units)

    return RotaConfig(
        config_path=config_path,
        units=units,
        schedule=schedule,
        state_file=state_file,
        timezone=timezone_obj,
        timezone_name=timezone_name,
    )


class StateStore:
    """Single JSON document holding the scheduler state.

    ``read`` never raises: a missing, unreadable or invalid document is
    replaced with defaults. ``write`` logs I/O failures instead of raising.
    Every mutation should go through a fresh read (see ``update``).
    """

    def __init__(
        self,
        path: Path,
        tz: ZoneInfo,
        default_total_cycles: int = DEFAULT_CYCLES,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.path = path
        self.timezone = tz
        self.default_total_cycles = default_total_cycles
        self._clock = clock or (lambda: datetime.now(tz=tz))

    def default_state(self) -> ScheduleState:
        return ScheduleState(
            last_run_date=self._clock(),
            total_cycles=self.default_total_cycles,
        )

    def read(self) -> ScheduleState:
        if not self.path.exists():
            logger.info("State file %s not found; creating default state.", self.path)
            return self._reset()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return ScheduleState.from_payload(raw, self.timezone, self.default_total_cycles, self._clock())
        except (OSError, ValueError, StateError) as exc:
            logger.error("State read failed (%s): %s; resetting to defaults.", self.path, exc)
            return self._reset()

    def write(self, state: ScheduleState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(state.to_payload(), indent=2) + "\n", encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            logger.error("State write failed (%s): %s", self.path, exc)

    def update(self, mutate: Callable[[ScheduleState], None]) -> ScheduleState:
        state = self.read()
        mutate(state)
        self.write(state)
        return state

    def _reset(self) -> ScheduleState:
        state = self.default_state()
        self.write(state)
        return state


def plan_resume(state: ScheduleState, unit: str, total_cycles: int) -> Tuple[int, int]:
    """Return ``(start_cycle, remaining_cycles)`` for running ``unit``.

    A checkpoint for the same unit is resumed from its cycle. Cycles already
    confirmed for the unit are never repeated, so a checkpoint whose cycle is
    confirmed resumes from the following one.
    """
    start_cycle = 1
    if state.resume_point is not None and state.resume_point.unit == unit:
        start_cycle = state.resume_point.cycle
    if state.active_unit == unit:
        start_cycle = max(start_cycle, state.cycles_completed + 1)
    remaining = max(total_cycles - (start_cycle - 1), 0)
    return start_cycle, remaining


def build_unit_env(unit: UnitSpec, run_id: str) -> Dict[str, str]:
    return {
        "ROTA_UNIT": unit.name,
        "ROTA_RUN_ID": run_id,
        "ROTA_SCRIPT_PATH": str(unit.resolved_path),
        "PYTHONUNBUFFERED": "1",
    }


class UnitRunner:
    """Runs one unit as a child process and checkpoints its progress."""

    def __init__(self, config: RotaConfig, store: StateStore, output: Optional[TextIO] = None) -> None:
        self.config = config
        self.store = store
        self._output = output

    @property
    def output(self) -> TextIO:
        return self._output or sys.stdout

    def run(self, unit_name: str, total_cycles: int) -> UnitRunResult:
        unit = self.config.units.get(unit_name)
        if unit is None:
            raise RotaError(f'Unknown unit "{unit_name}".')

        start_cycle, remaining = plan_resume(self.store.read(), unit_name, total_cycles)
        if remaining == 0:
            logger.info(
                "[%s] All %s cycle(s) already completed; nothing to launch.",
                unit_name,
                total_cycles,
            )

            def mark_done(state: ScheduleState) -> None:
                state.active_unit = unit_name
                state.total_cycles = total_cycles
                state.cycles_completed = total_cycles
                state.status = STATUS_COMPLETED
                state.resume_point = None

            self.store.update(mark_done)
            return UnitRunResult(
                unit=unit_name,
                success=True,
                completed_cycles=total_cycles,
                total_cycles=total_cycles,
                start_cycle=start_cycle,
                remaining_cycles=0,
                launched=False,
            )

        def mark_started(state: ScheduleState) -> None:
            state.active_unit = unit_name
            state.total_cycles = total_cycles
            state.cycles_completed = start_cycle - 1
            state.status = STATUS_IN_PROGRESS

        self.store.update(mark_started)

        started = datetime.now(tz=self.config.timezone)
        run_id = f"{unit_name}:{started.strftime('%Y%m%d%H%M%S')}-{os.getpid()}"
        logger.info(
            "[%s] Starting unit %s: cycles %s-%s (%s remaining of %s)",
            run_id,
            unit_name,
            start_cycle,
            total_cycles,
            remaining,
            total_cycles,
        )

        command = [sys.executable, str(unit.resolved_path), str(start_cycle), str(remaining)]
        env = os.environ.copy()
        env.update(build_unit_env(unit, run_id))
        try:
            process = subprocess.Popen(
                command,
                cwd=str(unit.working_dir),
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            logger.error("[%s] Failed to start unit %s: %s", run_id, unit_name, exc)

            def mark_spawn_failed(state: ScheduleState) -> None:
                state.status = STATUS_FAILED

            self.store.update(mark_spawn_failed)
            return UnitRunResult(
                unit=unit_name,
                success=False,
                completed_cycles=start_cycle - 1,
                total_cycles=total_cycles,
                start_cycle=start_cycle,
                remaining_cycles=remaining,
                launched=False,
                error="spawn",
            )

        return_code = self._supervise(process, unit_name, total_cycles, run_id)
        duration = (datetime.now(tz=self.config.timezone) - started).total_seconds()

        state = self.store.read()
        completed = state.cycles_completed if state.active_unit == unit_name else 0
        success = return_code == 0 and completed >= total_cycles
        state.active_unit = unit_name
        if success:
            state.status = STATUS_COMPLETED
            state.resume_point = None
        else:
            # Keep the checkpoint so the next attempt resumes mid-unit.
            state.status = STATUS_FAILED
        self.store.write(state)

        if success:
            logger.info(
                "[%s] Unit %s completed %s/%s cycle(s) in %.2fs",
                run_id,
                unit_name,
                completed,
                total_cycles,
                duration,
            )
        else:
            logger.error(
                "[%s] Unit %s failed (code=%s, cycles=%s/%s, duration=%.2fs)",
                run_id,
                unit_name,
                return_code,
                completed,
                total_cycles,
                duration,
            )

        return UnitRunResult(
            unit=unit_name,
            success=success,
            completed_cycles=completed,
            total_cycles=total_cycles,
            start_cycle=start_cycle,
            remaining_cycles=remaining,
            launched=True,
            return_code=return_code,
            duration_seconds=duration,
            error=None if success else ("exit_code" if return_code != 0 else "incomplete"),
        )

    def _supervise(self, process: subprocess.Popen, unit_name: str, total_cycles: int, run_id: str) -> int:
        try:
            if process.stdout is not None:
                for line in process.stdout:
                    event = parse_progress_line(line)
                    if event is None:
                        self.output.write(line)
                        self.output.flush()
                        continue
                    self.record_progress(unit_name, event, total_cycles, run_id)
            return process.wait()
        finally:
            if process.poll() is None:
                logger.warning("[%s] Terminating unit process (pid=%s).", unit_name, process.pid)
                process.terminate()
                try:
                    process.wait(timeout=TERMINATE_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
            if process.stdout is not None:
                process.stdout.close()

    def record_progress(
        self, unit_name: str, event: ProgressEvent, total_cycles: int, run_id: Optional[str] = None
    ) -> None:
        if event.unit and event.unit != unit_name:
            logger.warning("[%s] Ignoring progress reported for unit %s.", unit_name, event.unit)
            return
        if run_id and event.run_id and event.run_id != run_id:
            logger.warning("[%s] Ignoring progress from another run (%s).", unit_name, event.run_id)
            return
        if event.cycle > total_cycles:
            logger.warning(
                "[%s] Ignoring progress for cycle %s beyond target %s.",
                unit_name,
                event.cycle,
                total_cycles,
            )
            return

        def apply(state: ScheduleState) -> None:
            state.active_unit = unit_name
            state.cycles_completed = event.cycle
            state.status = STATUS_IN_PROGRESS
            state.resume_point = ResumePoint(unit=unit_name, cycle=event.cycle)

        self.store.update(apply)
        logger.info("[%s] Cycle %s of %s completed.", unit_name, event.cycle, total_cycles)


class DailyScheduler:
    """Runs one rotation unit per scheduling day, forever.

    ``sleep`` and ``clock`` are injectable; ``stop`` ends the loop at the next
    suspension point.
    """

    def __init__(
        self,
        config: RotaConfig,
        store: StateStore,
        runner: UnitRunner,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.runner = runner
        self._sleep = sleep
        self._clock = clock or config.now
        self._stop_requested = False
        self.phase = PHASE_IDLE

    @property
    def rotation(self) -> List[str]:
        return self.config.schedule.rotation

    def stop(self) -> None:
        self._stop_requested = True

    def _same_day(self, first: datetime, second: datetime) -> bool:
        return same_schedule_day(first, second, self.config.timezone, self.config.schedule.rollover_offset)

    def run(self) -> int:
        logger.info(
            "Starting daily schedule: rotation=%s cycles=%s rollover=%s (%s)",
            ",".join(self.rotation),
            self.config.schedule.cycles,
            self.config.schedule.rollover_text,
            self.config.timezone_name,
        )
        while not self._stop_requested:
            try:
                self.run_procedure()
            except Exception as exc:
                logger.exception("Daily schedule failed: %s", exc)
                if self._stop_requested:
                    break
                delay = self.config.schedule.restart_delay_seconds
                logger.error("Restarting daily schedule in %ss.", delay)
                self.phase = PHASE_IDLE
                self._sleep(delay)
        logger.info("Daily schedule stopped.")
        return 0

    def run_procedure(self) -> None:
        self.phase = PHASE_IDLE
        self.refresh_day()
        self.resume_pending()
        while not self._stop_requested:
            self.step()

    def refresh_day(self, state: Optional[ScheduleState] = None) -> ScheduleState:
        """Re-read state and clear the completed-today flag on a new day."""
        if state is None:
            state = self.store.read()
        changed = False
        if state.unit_completed_today and not self._same_day(state.last_run_date, self._clock()):
            logger.info("New day since last run (%s); clearing completed flag.", state.last_run_date.isoformat())
            state.unit_completed_today = False
            changed = True
        if state.rotation_index >= len(self.rotation):
            logger.warning(
                "Rotation index %s out of range for %s unit(s); wrapping.",
                state.rotation_index,
                len(self.rotation),
            )
            state.rotation_index %= len(self.rotation)
            changed = True
        if changed:
            self.store.write(state)
        return state

    def today_unit(self, state: ScheduleState) -> str:
        return self.rotation[state.rotation_index % len(self.rotation)]

    def resume_pending(self) -> bool:
        state = self.store.read()
        resume = state.resume_point
        if resume is None:
            return False
        if resume.unit != self.today_unit(state):
            return False
        if not self._same_day(state.last_run_date, self._clock()):
            return False
        if state.unit_completed_today or state.status not in RESUMABLE_STATUSES:
            return False

        self.phase = PHASE_RESUMING
        logger.info("Resuming unit %s from cycle %s.", resume.unit, resume.cycle)
        result = self.runner.run(resume.unit, self.config.schedule.cycles)
        if result.success:
            self.complete_day(resume.unit)
            return True
        logger.error("Resume of unit %s failed; continuing with daily loop.", resume.unit)
        return False

    def step(self) -> None:
        state = self.refresh_day()
        if state.unit_completed_today:
            self.wait_for_next_day()
            return

        unit = self.today_unit(state)
        self.phase = PHASE_RUNNING
        result = self.runner.run(unit, self.config.schedule.cycles)
        if result.success:
            self.complete_day(unit)
            return
        self.back_off(unit, result)

    def complete_day(self, unit: str) -> ScheduleState:
        now = self._clock()

        def advance(state: ScheduleState) -> None:
            state.rotation_index = advance_rotation(state.rotation_index, len(self.rotation))
            state.cycles_completed = 0
            state.status = STATUS_NOT_STARTED
            state.resume_point = None
            state.last_run_date = now
            state.unit_completed_today = True

        state = self.store.update(advance)
        logger.info(
            "Unit %s done for %s; next unit: %s.",
            unit,
            now.date().isoformat(),
            self.today_unit(state),
        )
        return state

    def back_off(self, unit: str, result: UnitRunResult) -> None:
        delay = self.config.schedule.retry_backoff_seconds
        logger.error(
            "Unit %s did not finish (%s/%s cycles, error=%s); retrying in %ss.",
            unit,
            result.completed_cycles,
            result.total_cycles,
            result.error,
            delay,
        )
        self.phase = PHASE_WAITING
        self._sleep(delay)

    def wait_for_next_day(self) -> None:
        now = self._clock()
        schedule = self.config.schedule
        wake = next_rollover(now, schedule.rollover_cron, self.config.timezone, schedule.rollover_offset)
        seconds = max((wake - now).total_seconds(), 0.0)
        logger.info("Waiting until %s for the next day (%.0fs).", wake.isoformat(), seconds)
        self.phase = PHASE_WAITING
        self._sleep(seconds)
        if self._stop_requested:
            return

        def clear_flag(state: ScheduleState) -> None:
            state.unit_completed_today = False

        self.store.update(clear_flag)


def flush_interrupted_state(store: StateStore) -> ScheduleState:
    """Persist a resumable terminal status for an interrupted process."""
    state = store.read()
    state.status = STATUS_PAUSED if state.cycles_completed < state.total_cycles else STATUS_COMPLETED
    store.write(state)
    return state


def make_signal_handler(
    store: StateStore, on_stop: Optional[Callable[[], None]] = None
) -> Callable[[int, Any], None]:
    def handle(signum: int, _frame: Any) -> None:
        if on_stop is not None:
            on_stop()
        state = flush_interrupted_state(store)
        logger.info(
            "Received signal %s; state saved (status=%s, cycles=%s/%s).",
            signum,
            state.status,
            state.cycles_completed,
            state.total_cycles,
        )
        raise SystemExit(0)

    return handle


def install_signal_handlers(store: StateStore, on_stop: Optional[Callable[[], None]] = None) -> None:
    handler = make_signal_handler(store, on_stop)
    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def build_store(config: RotaConfig) -> StateStore:
    return StateStore(config.state_file, config.timezone, config.schedule.cycles, clock=config.now)


def command_validate(config_path: Path) -> int:
    config = parse_config(config_path)
    print(f"Config valid: {config_path}")
    print(f"Units: {len(config.units)}")
    print(f"Rotation: {' -> '.join(config.schedule.rotation)}")
    print(f"Cycles per day: {config.schedule.cycles}")
    print(f"Rollover: {config.schedule.rollover_text} ({config.timezone_name})")
    print(f"State file: {config.state_file}")
    for unit in config.units.values():
        print(f"- {unit.name}: {unit.path} (cwd={unit.working_dir})")
    return 0


def command_status(config_path: Path) -> int:
    config = parse_config(config_path)
    state = build_store(config).read()
    rotation = config.schedule.rotation
    print(f"State file: {config.state_file}")
    print(f"Today's unit: {rotation[state.rotation_index % len(rotation)]}")
    print(f"Completed today: {'yes' if state.unit_completed_today else 'no'}")
    print(f"Last run: {state.last_run_date.astimezone(config.timezone).isoformat()}")
    print(f"Active unit: {state.active_unit or '(none)'}")
    print(f"Status: {state.status}")
    print(f"Cycles: {state.cycles_completed}/{state.total_cycles}")
    if state.resume_point:
        print(f"Resume point: {state.resume_point.unit} @ cycle {state.resume_point.cycle}")
    return 0


def command_preview(config_path: Path, count: int, now: Optional[datetime] = None) -> int:
    config = parse_config(config_path)
    state = build_store(config).read()
    rotation = config.schedule.rotation
    index = state.rotation_index % len(rotation)
    cursor = (now or config.now()).astimezone(config.timezone)
    offset = config.schedule.rollover_offset

    print(f"Rotation: {' -> '.join(rotation)} ({config.schedule.cycles} cycle(s) per day)")
    shown = 0
    done_today = state.unit_completed_today and same_schedule_day(
        state.last_run_date, cursor, config.timezone, offset
    )
    if not done_today:
        today = schedule_day(cursor, config.timezone, offset)
        print(f"- today ({today.isoformat()}): {rotation[index]} (pending)")
        index = advance_rotation(index, len(rotation))
        shown += 1
    while shown < count:
        cursor = next_rollover(cursor, config.schedule.rollover_cron, config.timezone, offset)
        print(f"- {cursor.isoformat()}: {rotation[index]}")
        index = advance_rotation(index, len(rotation))
        shown += 1
    return 0


def command_run_unit(config_path: Path, unit_name: str, cycles: Optional[int]) -> int:
    config = parse_config(config_path)
    if unit_name not in config.units:
        raise RotaError(f'Unknown unit "{unit_name}". Known units: {sorted(config.units)}')
    store = build_store(config)
    install_signal_handlers(store)
    result = UnitRunner(config, store).run(unit_name, cycles or config.schedule.cycles)
    return 0 if result.success else 1


def command_daily(config_path: Path) -> int:
    config = parse_config(config_path)
    store = build_store(config)
    scheduler = DailyScheduler(config, store, UnitRunner(config, store))
    install_signal_handlers(store, on_stop=scheduler.stop)
    return scheduler.run()


def command_menu(config_path: Path, prompt: Callable[[str], str] = input) -> int:
    config = parse_config(config_path)
    names = list(config.units)
    print("rota: select an action")
    for idx, name in enumerate(names, start=1):
        print(f"  {idx}) run {name}")
    print("  d) daily mode")
    print("  q) exit")
    try:
        choice = prompt("> ").strip().lower()
    except EOFError:
        return 0

    if choice in {"", "q", "exit"}:
        return 0
    if choice in {"d", "daily"}:
        return command_daily(config_path)
    if choice.isdigit() and 1 <= int(choice) <= len(names):
        return command_run_unit(config_path, names[int(choice) - 1], cycles=None)
    if choice in config.units:
        return command_run_unit(config_path, choice, cycles=None)
    print(f'Unknown choice "{choice}".')
    return 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="rota daily rotation scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to rota YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--log-dir",
        default=DEFAULT_LOG_DIR,
        help=f"Directory for dated log files (default: {DEFAULT_LOG_DIR})",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("daily", help="Run the daily rotation loop")

    run_parser = subparsers.add_parser("run", help="Run one unit once")
    run_parser.add_argument("--unit", required=True, help="Unit name")
    run_parser.add_argument("--cycles", type=int, help="Cycle target (default: schedule.cycles)")

    subparsers.add_parser("status", help="Show persisted schedule state")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming rotation days")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Number of days")

    subparsers.add_parser("validate", help="Validate config")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(Path(args.log_dir))
    config_path = Path(args.config).resolve()

    try:
        if args.command is None:
            return command_menu(config_path)
        if args.command == "daily":
            return command_daily(config_path)
        if args.command == "run":
            if args.cycles is not None and args.cycles <= 0:
                raise RotaError("--cycles must be >= 1")
            return command_run_unit(config_path, args.unit, args.cycles)
        if args.command == "status":
            return command_status(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise RotaError("--count must be >= 1")
            return command_preview(config_path, args.count)
        if args.command == "validate":
            return command_validate(config_path)
        raise RotaError(f"Unsupported command: {args.command}")
    except RotaError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
