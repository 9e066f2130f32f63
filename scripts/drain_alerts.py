"""Deliver every alert that is currently due, then exit.

Talks to the database directly, so it can run while the API is down.
"""

import argparse
import asyncio
import json

from arledger.common.config import load_settings
from arledger.common.db import Database
from arledger.common.logging import configure_logging
from arledger.services.api.wiring import build_services


async def drain(max_batches: int) -> dict[str, int]:
    settings = load_settings()
    configure_logging("drain-alerts", settings.log_level)
    database = Database(settings.database_url).connect()
    services = build_services(settings, database)
    totals = {"requeued": 0, "expired": 0, "sent": 0, "failed": 0, "skipped": 0}
    try:
        for _ in range(max_batches):
            counts = await services.delivery.run_once()
            for key, value in counts.items():
                totals[key] += value
            if sum(counts.values()) == 0:
                break
    finally:
        await services.delivery.channel.close()
        database.close()
    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver due alerts once.")
    parser.add_argument("--max-batches", type=int, default=20)
    args = parser.parse_args()
    print(json.dumps(asyncio.run(drain(args.max_batches)), indent=2))


if __name__ == "__main__":
    main()
