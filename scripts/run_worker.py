#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import pathlib
import sys
from dataclasses import replace

from dotenv import load_dotenv

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from jobmatch.broadcast import SessionBroadcaster
from jobmatch.config import create_worker_settings_from_env
from jobmatch.object_storage import create_object_storage_from_env
from jobmatch.oracle import create_oracle_from_env, get_provider_info
from jobmatch.store import create_store_from_env
from jobmatch.worker_runtime import create_worker_pool_from_env

logger = logging.getLogger("jobmatch.run_worker")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resume analysis worker pool.")
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Number of workers (0 means WORKER_CONCURRENCY).",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Run a single worker for N iterations and print its stats (0 means run forever).",
    )
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = create_worker_settings_from_env()
    if args.iterations > 0:
        size = 1
    elif args.workers > 0:
        size = args.workers
    else:
        size = settings.concurrency
    settings = replace(settings, concurrency=size)

    store = create_store_from_env()
    storage = create_object_storage_from_env()
    oracle = create_oracle_from_env()
    logger.info("oracle provider: %s", json.dumps(get_provider_info(), ensure_ascii=True))

    pool = create_worker_pool_from_env(
        store=store,
        storage=storage,
        oracle=oracle,
        settings=settings,
        broadcaster=SessionBroadcaster(),
    )
    if args.iterations > 0:
        stats = pool.run_forever(stop_after_iterations=args.iterations)
        print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
        return 0

    logger.info("starting %d workers on queue %s", size, settings.queue_name)
    try:
        pool.run_forever()
    except KeyboardInterrupt:
        logger.info("interrupted, shutting down")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
