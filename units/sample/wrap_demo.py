#!/usr/bin/env python3
"""
Sample wrap/unwrap unit.

Each cycle wraps a random amount and unwraps it again, printing plain-text
progress lines (``Cycle <n> of <total>``) instead of structured events.
"""

from __future__ import annotations

import argparse
import os
import random
import time


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulated wrap/unwrap cycles.")
    parser.add_argument("start_cycle", type=int, nargs="?", default=1)
    parser.add_argument("remaining_cycles", type=int, nargs="?", default=50)
    parser.add_argument("--seed", type=int, default=None)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.start_cycle < 1 or args.remaining_cycles < 1:
        print("Error: start_cycle and remaining_cycles must be >= 1")
        return 2
    try:
        delay = float(os.getenv("ROTA_DEMO_DELAY_SECONDS", "0.2"))
    except ValueError:
        delay = 0.2

    rng = random.Random(args.seed)
    last_cycle = args.start_cycle + args.remaining_cycles - 1
    balance = 0.0
    for cycle in range(args.start_cycle, last_cycle + 1):
        amount = round(rng.uniform(0.01, 0.05), 4)
        balance += amount
        print(f"[Cycle {cycle}] Wrapped {amount}")
        time.sleep(delay)
        balance -= amount
        print(f"[Cycle {cycle}] Unwrapped {amount}")
        print(f"Cycle {cycle} of {last_cycle}", flush=True)

    print(f"All cycles from {args.start_cycle} to {last_cycle} completed (balance={balance:.4f})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
