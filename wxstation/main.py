"""
Ingestion entry point for the external scheduler.

The scheduler fetches the device payload from the vendor API and hands it
over as a JSON file (or on stdin); this module stores it and refreshes the
rollups covering it.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional, Sequence

import asyncpg

from .config import Settings, get_settings
from .db import close_pool, ensure_schema, get_pool
from .errors import IngestFailure
from .ingest import ingest_payload
from .schemas import Observation
from .store import PostgresStore

logger = logging.getLogger(__name__)


def load_payload(path: str) -> Any:
    try:
        if path == "-":
            return json.load(sys.stdin)
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as exc:
        raise IngestFailure(f"Could not read payload from {path}: {exc}") from exc


async def run_ingestion(payload: Any, settings: Settings) -> Observation:
    try:
        pool = await get_pool(settings)
        await ensure_schema(pool)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        await close_pool()
        raise IngestFailure(f"Database unavailable: {exc}") from exc
    try:
        return await ingest_payload(PostgresStore(pool), payload)
    finally:
        await close_pool()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wxstation-ingest",
        description="Store one station reading and refresh its rollup buckets.",
    )
    parser.add_argument("payload", help="Path to the device JSON payload, or '-' for stdin.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    try:
        payload = load_payload(args.payload)
        obs = asyncio.run(run_ingestion(payload, settings))
    except IngestFailure as exc:
        logger.error("Ingestion failed: %s", exc)
        return 1
    logger.info("[ok] upserted %s", obs.time.isoformat())
    return 0


if __name__ == "__main__":
    sys.exit(main())
