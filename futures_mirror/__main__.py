"""CLI entrypoint for the Futures mirror.

Usage:
    futures-mirror                  # Run listener + settlement scanner
    futures-mirror --once           # Run a single settlement scan and exit
    futures-mirror --serve-status   # Run both units behind the status API
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

import uvicorn

from futures_mirror import __version__
from futures_mirror.config import settings
from futures_mirror.service import MirrorService
from futures_mirror.store import EventStore


def main() -> None:
    parser = argparse.ArgumentParser(description="Futures event mirror and settlement bot")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single settlement scan against the mirror and exit (no listener)",
    )
    parser.add_argument(
        "--serve-status",
        action="store_true",
        help="Serve /health and /status while running",
    )
    parser.add_argument(
        "--no-scanner",
        action="store_true",
        help="Mirror events only; do not submit settlements",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help=f"Mirror database URL (default: {settings.database_url})",
    )
    parser.add_argument(
        "--host",
        default=settings.status_host,
        help=f"Status API host (default: {settings.status_host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.status_port,
        help=f"Status API port (default: {settings.status_port})",
    )
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    service = MirrorService(
        store=EventStore(database_url=args.database_url),
        run_scanner=not args.no_scanner,
    )

    if args.once:
        sys.exit(service.scan_once())

    print(f"Futures mirror v{__version__}")
    print(f"   RPC:       {settings.rpc_url}")
    print(f"   Contract:  {settings.contract_address}")
    print(f"   Mirror:    {args.database_url}")
    print(f"   Scanner:   {'off' if args.no_scanner else f'every {settings.scan_interval_seconds:.0f}s'}")
    print()

    if args.serve_status:
        from futures_mirror.status_api import create_app

        server = uvicorn.Server(
            uvicorn.Config(create_app(service), host=args.host, port=args.port, log_level="info")
        )

        def _shutdown() -> None:
            server.should_exit = True

        service.on_fatal = _shutdown
        print(f"   Status:    http://{args.host}:{args.port}/health")
        server.run()
        sys.exit(service.exit_code)

    def _handle_signal(signum, _frame) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        service.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    sys.exit(service.run())


if __name__ == "__main__":
    main()
