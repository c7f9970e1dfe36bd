"""
Copy engine worker: owns ingestion, the ledger writer and real execution.
Run from repo root: cd backend && python -m workers.copy_engine_worker
Or from backend: python -m workers.copy_engine_worker
"""

import asyncio
import os
import sys

# Ensure backend is on path when run as python -m workers.copy_engine_worker from project root
_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import init_database
from services.copy_engine import CopyEngine
from utils.logger import get_logger, setup_logging

setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("copy_engine_worker")


async def main() -> None:
    """Init DB and run the engine until interrupted."""
    await init_database()
    logger.info("Database initialized", url=settings.DATABASE_URL)
    engine = CopyEngine()
    await engine.start()
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Copy engine worker shutting down")
    finally:
        await engine.lifecycle.drain()
        await engine.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
