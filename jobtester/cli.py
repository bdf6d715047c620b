"""
CLI entry point for jobtester.

Commands:
- run: execute one tester pass (input from --input or the INPUT record)
- abort: abort every run recorded in a store's CALLS record
- serve: start the control API
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from jobtester import __version__
from jobtester.config import EXIT_SUCCESS, EXIT_TESTS_FAILED, EXIT_USAGE_ERROR
from jobtester.engine.errors import AggregateFailure, RemoteInvocationError, UsageError
from jobtester.engine.recovery import abort_recorded_runs
from jobtester.infra.logging_config import setup_logging
from jobtester.infra.settings import get_settings
from jobtester.infra.storage import RemoteKeyValueStore
from jobtester.platform.client import PlatformClient
from jobtester.service import run_tester

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def global_cli_args(args: argparse.Namespace) -> List[str]:
    """Global flags to repeat when the run command re-executes itself."""
    forwarded = ["--log-dir", args.log_dir]
    if args.verbose:
        forwarded.insert(0, "--verbose")
    return forwarded


def cmd_run(args: argparse.Namespace) -> int:
    """
    Run one tester pass.

    Returns:
        Exit code
    """
    settings = get_settings()

    try:
        decision = asyncio.run(run_tester(
            settings,
            input_path=args.input,
            cli_args=global_cli_args(args),
        ))
    except UsageError as e:
        logger.error(f"[CLI] {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR
    except AggregateFailure as e:
        logger.error(f"[CLI] {e}")
        return EXIT_TESTS_FAILED
    except RemoteInvocationError as e:
        logger.error(f"[CLI] Platform error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TESTS_FAILED

    if decision is not None:
        logger.info(f"[CLI] Finished: {decision.state.value}")

    return EXIT_SUCCESS


def cmd_abort(args: argparse.Namespace) -> int:
    """Abort every run recorded in the given store."""
    settings = get_settings()

    async def _abort() -> dict:
        async with PlatformClient(settings.api_url, settings.token) as client:
            return await abort_recorded_runs(client, RemoteKeyValueStore(client, args.kv))

    stats = asyncio.run(_abort())

    print(f"Aborted: {len(stats['aborted'])}, errors: {len(stats['errors'])}")
    return EXIT_SUCCESS


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the control API with uvicorn."""
    import uvicorn

    uvicorn.run("jobtester.api.main:app", host=args.host, port=args.port)
    return EXIT_SUCCESS


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="jobtester",
        description="jobtester - end-to-end tests for remote platform jobs",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--log-dir",
        default="logs",
        help="Directory for log files (default: logs)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a test program")
    run_parser.add_argument(
        "-i", "--input",
        help="Path to the input JSON (default: INPUT record of the tester's store)"
    )

    # abort command
    abort_parser = subparsers.add_parser("abort", help="Abort runs recorded in a store")
    abort_parser.add_argument(
        "kv",
        help="Key/value store id holding the CALLS record"
    )

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the control API")
    serve_parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Bind address (default: {DEFAULT_HOST})"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port (default: {DEFAULT_PORT})"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    load_dotenv()

    parser = create_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_SUCCESS if e.code == 0 else EXIT_USAGE_ERROR

    log_level = "DEBUG" if args.verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    setup_logging(log_level, log_dir=args.log_dir)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "abort":
        return cmd_abort(args)
    elif args.command == "serve":
        return cmd_serve(args)
    else:
        parser.print_help()
        return EXIT_USAGE_ERROR


if __name__ == "__main__":
    sys.exit(main())
