from __future__ import annotations

import argparse
import asyncio

from agriqcert.core.logging import configure_logging
from agriqcert.services.container import build_container
from agriqcert.workers.issuance_worker import run_issuance_cycle, run_issuance_loop


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the sequential issuance poller without arq")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs per cycle")
    parser.add_argument("--worker-id", default=None, help="Override the worker identifier")
    return parser


async def _main(args: argparse.Namespace) -> int:
    configure_logging()
    container = build_container()
    if args.once:
        processed = await run_issuance_cycle(container, limit=args.limit, worker_id=args.worker_id)
        print(f"processed={processed}")
        return 0
    await run_issuance_loop(container, worker_id=args.worker_id)
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_main(args))


if __name__ == "__main__":
    raise SystemExit(main())
