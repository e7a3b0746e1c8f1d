#!/usr/bin/env python3
"""
Run one reminder pass from the command line.

For cron hosts that cannot call the HTTP trigger:

    0 * * * * cd /srv/slotkeeper && python3 Backend/scripts/run_reminders.py
"""
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add Backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.config import get_settings
from app.core.db import AsyncSessionLocal, engine
from app.notifications import get_notifier
from app.reminders import run_reminder_pass


async def main() -> int:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        async with AsyncSessionLocal() as session:
            report = await run_reminder_pass(session, sender=get_notifier())
    finally:
        await engine.dispose()

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.events_failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
