#!/usr/bin/env python3
"""
Billwatch Sweep Runner

Runs one reconciliation sweep and exits. Meant for cron or any external
scheduler; overlapping invocations are safe because each pass is leased in
the database.

Usage:
    python scripts/run_sweep.py
    python scripts/run_sweep.py --force

Environment Variables:
    BILLWATCH_DB_PATH / DATABASE_URL - where the Billwatch tables live
"""

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from billwatch.services.sweep import get_sweep  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the Billwatch reconciliation sweep once")
    parser.add_argument("--force", action="store_true", help="Run every pass regardless of its interval")
    args = parser.parse_args()

    results = get_sweep().run(force=args.force)
    print(json.dumps(results, indent=2, default=str))
    failed = [name for name, result in results.items() if result.get("status") == "failed"]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
