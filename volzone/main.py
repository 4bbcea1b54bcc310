"""VolZone — CLI entry point.

Runs the signal engine for every configured instrument, or a single cycle
with ``--once``.
"""

import argparse
import asyncio
import json
import logging
import signal

from volzone.broker.bybit_client import BybitClient
from volzone.config import load_config, load_instruments
from volzone.engine_manager import EngineManager
from volzone.repos.db import init_db
from volzone.repos.signal_repo import SignalRepo
from volzone.repos.volatility_repo import VolatilityRepo

logger = logging.getLogger("volzone")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VolZone volatility-zone signal engine")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle per instrument and print the results",
    )
    parser.add_argument(
        "--cycles",
        type=int,
        default=0,
        help="Stop after this many cycles per instrument (0 = run until interrupted)",
    )
    parser.add_argument("--env", default=None, help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


async def _run(manager: EngineManager, max_cycles: int) -> dict[str, list[dict]]:
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, manager.stop_all)
    logger.info("Starting VolZone with %d instrument(s).", len(manager.instrument_names))
    return await manager.run_all(max_cycles=max_cycles)


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments, wire collaborators and run the engines."""
    args = build_parser().parse_args(argv)

    config = load_config(args.env)
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    init_db(config.db_path)
    broker = BybitClient(config)
    manager = EngineManager(
        config=config,
        broker=broker,
        instruments=load_instruments(),
        sink=SignalRepo(config.db_path),
        vol_repo=VolatilityRepo(config.db_path),
    )
    manager.build_engines()

    max_cycles = 1 if args.once else args.cycles
    results = asyncio.run(_run(manager, max_cycles))
    if args.once:
        print(json.dumps(results, indent=2, default=str))
    logger.info("VolZone stopped.")


if __name__ == "__main__":
    main()
