"""Command-line entry point.

Example:
    accordload --rw-register -t 4 -r 1,2,3,4,5 -n 1000 -H 172.17.0.2 -s 1000 > history.jsonl

The history goes to stdout (or --output); logs and the progress bar go to
stderr.
"""

import argparse
import logging
import sys

from tqdm import tqdm

from accordload.clock import Clock
from accordload.config import ConfigurationError, load_run_config
from accordload.history import HistoryRecorder, export_parquet, load_history
from accordload.runner import run
from accordload.statements import SCHEMA

logger = logging.getLogger(__name__)


def _register_set(arg: str) -> list[int]:
    """Parse ``3,4,5`` into a sorted list of distinct register ids."""
    try:
        return sorted({int(r) for r in arg.split(",") if r.strip()})
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid register set: {arg!r}")


def _hosts(arg: str) -> list[str]:
    return [h.strip() for h in arg.split(",") if h.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Drive Accord transaction workloads against a Cassandra cluster "
                    "and record the operation history"
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to TOML configuration file; flags override it"
    )
    models = parser.add_mutually_exclusive_group()
    models.add_argument("--cas-register", dest="model", action="store_const", const="cas-register",
                        help="Single-register read/write/cas workload (Knossos)")
    models.add_argument("--rw-register", dest="model", action="store_const", const="rw-register",
                        help="Read/write register transactions (Elle)")
    models.add_argument("--list-append", dest="model", action="store_const", const="list-append",
                        help="List read/append transactions (Elle)")
    parser.add_argument(
        "-r", "--register-set", type=_register_set, metavar="SET",
        help="Registers to operate against, as a comma-separated list like 3,4,5"
    )
    parser.add_argument(
        "-t", "--thread-count", type=int, metavar="COUNT",
        help="Number of workers to run concurrently"
    )
    parser.add_argument(
        "-s", "--start-time", type=int, metavar="TIME",
        help="Starting relative time in nanoseconds"
    )
    parser.add_argument(
        "-n", "--operation-count", type=int, metavar="COUNT",
        help="Total number of operations, divided evenly across workers"
    )
    parser.add_argument(
        "-u", "--upper-bound", type=int, metavar="BOUND",
        help="Upper bound (exclusive) of values a cas-register can hold"
    )
    parser.add_argument(
        "--read-timeout", type=int, metavar="MS",
        help="Driver read timeout in milliseconds"
    )
    parser.add_argument(
        "-H", "--hosts", type=_hosts,
        help="Hosts to contact, comma-separated"
    )
    parser.add_argument("--keyspace", help="Keyspace holding the workload tables")
    parser.add_argument("--seed", type=int, help="Seed for reproducible operation choices")
    parser.add_argument(
        "--nohost-backoff", type=float, metavar="SECONDS",
        help="Delay before reporting a no-host-available failure"
    )
    parser.add_argument(
        "-f", "--format", choices=["json", "edn"],
        help="History record format"
    )
    parser.add_argument("-o", "--output", help="Write the history to this file instead of stdout")
    parser.add_argument(
        "--parquet", metavar="PATH",
        help="Also export the history to parquet (requires --output and json format)"
    )
    parser.add_argument(
        "-p", "--print-schema", action="store_true",
        help="Print the bootstrap schema and exit"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true",
        help="Suppress all logging except errors"
    )
    parser.add_argument(
        "--no-progress", action="store_true",
        help="Disable progress bar"
    )
    return parser


def _overrides(args: argparse.Namespace) -> dict:
    return {
        "cluster": {
            "hosts": args.hosts,
            "keyspace": args.keyspace,
            "read_timeout_ms": args.read_timeout,
        },
        "workload": {
            "model": args.model,
            "thread_count": args.thread_count,
            "operation_count": args.operation_count,
            "register_set": args.register_set,
            "upper_bound": args.upper_bound,
            "seed": args.seed,
        },
        "history": {
            "start_time_ns": args.start_time,
            "format": args.format,
            "nohost_backoff_s": args.nohost_backoff,
        },
    }


def cli(argv=None):
    """CLI entry point for accordload."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    if args.quiet:
        logging.basicConfig(level=logging.ERROR, format='%(levelname)s: %(message)s')
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')

    if args.print_schema:
        print(SCHEMA)
        return

    try:
        config = load_run_config(args.config, _overrides(args))
    except ConfigurationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors:
            print(f"  ✗ {error}", file=sys.stderr)
        sys.exit(1)

    if args.parquet and (not args.output or config.output_format != "json"):
        parser.error("--parquet requires --output and the json history format")

    stream = open(args.output, "w") if args.output else sys.stdout
    recorder = HistoryRecorder(stream, Clock(config.start_time_ns), config.output_format)

    show_progress = not args.no_progress and not args.verbose and not args.quiet
    total = config.per_worker_count * config.thread_count
    try:
        with tqdm(total=total, unit="op", desc=config.model, file=sys.stderr,
                  disable=not show_progress) as pbar:
            run(config, recorder, progress=pbar.update)
    finally:
        if stream is not sys.stdout:
            stream.close()

    if args.parquet:
        export_parquet(load_history(args.output), args.parquet)


if __name__ == "__main__":
    cli()
