#!/usr/bin/env python3
"""
Sample stake/unstake unit.

Simulates one stake followed by one unstake per cycle. Usage:

    stake_demo.py <start_cycle> <remaining_cycles>

Set ROTA_DEMO_FAILURE_RATE (0..1) to inject transient failures.
"""

from __future__ import annotations

import argparse
import os
import random
import sys
import time
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from rota_progress import reporter  # noqa: E402

MAX_CONSECUTIVE_FAILURES = 3


class TransientError(Exception):
    """Simulated connectivity failure."""


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulated stake/unstake cycles.")
    parser.add_argument("start_cycle", type=int, nargs="?", default=1)
    parser.add_argument("remaining_cycles", type=int, nargs="?", default=50)
    return parser.parse_args()


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def stake(rng: random.Random, cycle: int, failure_rate: float) -> float:
    amount = round(rng.uniform(0.01, 0.05), 4)
    print(f"[Cycle {cycle}] Staking {amount} ...")
    if rng.random() < failure_rate:
        raise TransientError("stake endpoint unreachable")
    return amount


def unstake(rng: random.Random, cycle: int, amount: float, failure_rate: float) -> None:
    print(f"[Cycle {cycle}] Unstaking {amount} ...")
    if rng.random() < failure_rate:
        raise TransientError("unstake endpoint unreachable")


def main() -> int:
    args = parse_args()
    if args.start_cycle < 1 or args.remaining_cycles < 1:
        print("Error: start_cycle and remaining_cycles must be >= 1")
        return 2

    delay = env_float("ROTA_DEMO_DELAY_SECONDS", 0.2)
    retry_delay = env_float("ROTA_DEMO_RETRY_SECONDS", 1.0)
    failure_rate = env_float("ROTA_DEMO_FAILURE_RATE", 0.0)
    rng = random.Random()
    last_cycle = args.start_cycle + args.remaining_cycles - 1

    print(f"Starting stake cycles {args.start_cycle}..{last_cycle}")
    completed = 0
    failures = 0
    cycle = args.start_cycle
    while cycle <= last_cycle:
        try:
            amount = stake(rng, cycle, failure_rate)
            time.sleep(delay)
            unstake(rng, cycle, amount, failure_rate)
        except TransientError as exc:
            failures += 1
            print(f"[Cycle {cycle}] failed: {exc} ({failures}/{MAX_CONSECUTIVE_FAILURES})")
            if failures >= MAX_CONSECUTIVE_FAILURES:
                print("Too many consecutive failures; stopping.")
                break
            time.sleep(retry_delay)
            continue
        failures = 0
        completed += 1
        reporter.cycle_completed(cycle, last_cycle)
        cycle += 1
        if cycle <= last_cycle:
            time.sleep(delay)

    print(f"Completed {completed} of {args.remaining_cycles} cycles")
    return 0 if completed == args.remaining_cycles else 1


if __name__ == "__main__":
    raise SystemExit(main())
