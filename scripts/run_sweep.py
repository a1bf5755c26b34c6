#!/usr/bin/env python3
"""
Run the expiry sweep once (cron) or continuously (--loop).
"""

import asyncio
import sys

from holeinone.core.database import close_db
from holeinone.core.engine.sweeper import ExpirySweeper


async def run(loop: bool) -> int:
    sweeper = ExpirySweeper()
    try:
        if loop:
            await sweeper.run_forever()
            return 0

        report = await sweeper.run_once()
        print(f"Entries auto-missed:       {len(report.entries_auto_missed)}")
        for entry_id in report.entries_auto_missed:
            print(f"  {entry_id}")
        print(f"Verifications auto-missed: {len(report.verifications_auto_missed)}")
        for verification_id in report.verifications_auto_missed:
            print(f"  {verification_id}")
        return 0
    finally:
        await close_db()


if __name__ == "__main__":
    if len(sys.argv) > 2 or (len(sys.argv) == 2 and sys.argv[1] != "--loop"):
        print("Usage: python run_sweep.py [--loop]")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(run(loop="--loop" in sys.argv)))
    except KeyboardInterrupt:
        sys.exit(0)
