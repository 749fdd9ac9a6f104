#!/usr/bin/env python3
"""
Cycle progress contract shared by rota and the unit scripts it launches.

A unit reports each finished cycle on stdout, one event per line:

    rota:progress {"cycle": 3, "total": 50, "unit": "izumi", "run_id": "izumi:20260310000010-4242"}

The runner also accepts the plain-text form ``Cycle 3 of 50`` so that units
which only print human-readable progress keep working.
"""

from __future__ import annotations

import json
import os
import re
import sys
from dataclasses import dataclass
from typing import Any, Dict, Optional, TextIO


PROGRESS_PREFIX = "rota:progress "
TEXT_PROGRESS_RE = re.compile(r"Cycle (\d+) of (\d+)")


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text if text else None


@dataclass(frozen=True)
class ProgressEvent:
    cycle: int
    total: int
    unit: Optional[str] = None
    run_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"cycle": self.cycle, "total": self.total}
        if self.unit:
            payload["unit"] = self.unit
        if self.run_id:
            payload["run_id"] = self.run_id
        return payload

    def to_line(self) -> str:
        return PROGRESS_PREFIX + json.dumps(self.to_payload(), separators=(", ", ": "))


def _positive_int(value: Any) -> Optional[int]:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


def parse_progress_line(line: str) -> Optional[ProgressEvent]:
    """Return the progress event carried by one stdout line, if any."""
    text = line.strip()
    if not text:
        return None

    if text.startswith(PROGRESS_PREFIX.strip()):
        body = text[len(PROGRESS_PREFIX.strip()):].strip()
        try:
            raw = json.loads(body)
        except ValueError:
            return None
        if not isinstance(raw, dict):
            return None
        cycle = _positive_int(raw.get("cycle"))
        total = _positive_int(raw.get("total"))
        if cycle is None or total is None:
            return None
        unit = raw.get("unit")
        run_id = raw.get("run_id")
        return ProgressEvent(
            cycle=cycle,
            total=total,
            unit=_non_empty(unit) if isinstance(unit, str) else None,
            run_id=_non_empty(run_id) if isinstance(run_id, str) else None,
        )

    match = TEXT_PROGRESS_RE.search(text)
    if not match:
        return None
    cycle = int(match.group(1))
    total = int(match.group(2))
    if cycle <= 0 or total <= 0:
        return None
    return ProgressEvent(cycle=cycle, total=total)


class ProgressReporter:
    """Worker-side helper: prints structured progress lines for the runner."""

    def __init__(self, unit: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
        self.unit = _non_empty(unit) or _non_empty(os.getenv("ROTA_UNIT"))
        self.run_id = _non_empty(os.getenv("ROTA_RUN_ID"))
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    def cycle_completed(self, cycle: int, total: int) -> ProgressEvent:
        if cycle <= 0 or total <= 0:
            raise ValueError(f"cycle and total must be >= 1, got {cycle}/{total}")
        event = ProgressEvent(cycle=cycle, total=total, unit=self.unit, run_id=self.run_id)
        self.stream.write(event.to_line() + "\n")
        self.stream.flush()
        return event


reporter = ProgressReporter()
