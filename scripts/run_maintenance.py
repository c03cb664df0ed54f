"""
Periodic maintenance: SLA breach sweep, suppression expiry and (optionally)
opening scheduled test runs for tests that are due.

Run from cron or a systemd timer:
    cd backend && python ../scripts/run_maintenance.py [--schedule-runs] [--worker-id ID]
"""
import argparse
import asyncio
import logging
import socket
import sys
from pathlib import Path

# Ensure backend is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from grc_api.config import settings  # noqa: E402
from grc_api.database import async_session, engine  # noqa: E402
from grc_api.services.execution import create_scheduled_runs  # noqa: E402
from grc_api.services.maintenance import expire_suppressions, mark_sla_breaches  # noqa: E402

logger = logging.getLogger("run_maintenance")


async def run(schedule_runs: bool, worker_id: str) -> None:
    async with async_session() as s:
        breached = await mark_sla_breaches(s)
        reopened = await expire_suppressions(s)
        started = await create_scheduled_runs(s, worker_id) if schedule_runs else []
    await engine.dispose()
    logger.info(
        "Maintenance done: %d SLA breach(es), %d suppression(s) expired, %d run(s) scheduled",
        breached, reopened, len(started),
    )


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--schedule-runs", action="store_true", help="open scheduled runs for due tests")
    parser.add_argument("--worker-id", default=socket.gethostname(), help="worker id stamped on scheduled runs")
    args = parser.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    asyncio.run(run(args.schedule_runs, args.worker_id))


if __name__ == "__main__":
    main()
