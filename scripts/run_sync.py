"""
Script to run one order sync from the command line
"""

import argparse
import asyncio
import json
import sys
import os
import logging
from datetime import datetime

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import get_engine
from core.logging import setup_logging
from order_sync.service import create_sync_service
from schemas.sync import SyncFilters
from models.base import SyncStatus

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sync customer orders from the remote API")
    parser.add_argument("--full", action="store_true", help="ignore the incremental watermark")
    parser.add_argument(
        "--updated-after",
        type=datetime.fromisoformat,
        help="only fetch records updated after this ISO-8601 timestamp"
    )
    parser.add_argument("--status", help="only fetch records with this order status")
    return parser.parse_args(argv)


async def run_sync(args) -> int:
    """Run one sync and print the finished run as JSON"""
    service = create_sync_service(settings)
    filters = SyncFilters(updated_after=args.updated_after, status=args.status)

    try:
        connections = await service.test_connections()
        if not connections["success"]:
            logger.warning(f"Connection test failed: {json.dumps(connections, default=str)}")

        run = await service.trigger_sync(full_sync=args.full, filters=filters)
        print(json.dumps(run.model_dump(mode="json"), indent=2))
        return 0 if run.status == SyncStatus.SUCCEEDED else 1

    except Exception as e:
        logger.error(f"Sync script error: {str(e)}")
        return 1
    finally:
        await service.shutdown()
        await get_engine().dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_sync(parse_args())))
