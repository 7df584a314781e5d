import asyncio
import dataclasses
import json
import signal
import sys
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser, Namespace
from datetime import datetime, timedelta, timezone
from logging import getLogger
from types import TracebackType
from typing import Any, List, Optional, Sequence, TextIO, Type

from google.cloud import bigquery

import slotwatch.bigquery_helpers as bigquery_helpers
from slotwatch.aggregation import aggregate
from slotwatch.error_handling import ErrorHandlerConfiguration
from slotwatch.jobs import (
    DEFAULT_JOB_STATES,
    JOB_STATES,
    fetch_job_records,
    get_job_record,
    load_reservations,
)
from slotwatch.logging import configure_package_logger, configure_root_logger
from slotwatch.model import JobRecord, UsageRow
from slotwatch.polling import UsageMonitor
from slotwatch.render import OUTPUT_FORMATS, write_rows
from slotwatch.validation import filter_attributed, parse_job_records

logger = getLogger(__package__)

parser = ArgumentParser(
    prog="slotwatch",
    description="Observe running BigQuery jobs and break down slot reservation usage by project and user",
    formatter_class=ArgumentDefaultsHelpFormatter,
)

parser.add_argument(
    "-v",
    "--verbose",
    help="Turns on more logging. Stack multiple times to increase logging even further.",
    action="count",
    default=0,
)

parser.add_argument(
    "--report-errors", help="Report errors to Google Cloud.", action="store_true",
)

parser.add_argument(
    "--log-to-gcloud", help="Send logs to Google Cloud Logging.", action="store_true",
)

parser.add_argument(
    "-f",
    "--format",
    help="How to write the usage hierarchy.",
    choices=OUTPUT_FORMATS,
    default="json",
)

parser.add_argument(
    "--no-tooltips",
    help="Leave out the human-readable summary of each usage row.",
    action="store_true",
)

subparsers = parser.add_subparsers(dest="command", help="What to do")


def timestamp_arg(s: str) -> datetime:
    ts = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)

    return ts


def _add_source_arguments(p: ArgumentParser) -> None:
    p.add_argument(
        "-p",
        "--project",
        help="A project to observe jobs in. Repeat to observe several. Defaults to the client's project.",
        action="append",
        dest="projects",
        default=[],
    )

    p.add_argument(
        "--reservation-dataset",
        help="The dataset containing the reservation_project and reservation_slot tables.",
        default=bigquery_helpers.DEFAULT_RESERVATION_DATASET,
    )

    p.add_argument(
        "--reservation-project",
        help="The project containing the reservation dataset. Defaults to the client's project.",
        default="",
    )

    p.add_argument(
        "--state",
        help=f"Which jobs to observe. Repeat to observe several. Defaults to {', '.join(DEFAULT_JOB_STATES)}.",
        choices=JOB_STATES,
        action="append",
        dest="states",
    )

    p.add_argument(
        "--max-age",
        help="Ignore jobs created more than this many minutes ago.",
        type=lambda s: timedelta(minutes=float(s)),
    )

    p.add_argument(
        "--start",
        help="Only include jobs still executing at or after this ISO 8601 time (UTC if no offset is given).",
        type=timestamp_arg,
    )

    p.add_argument(
        "--end",
        help="Only include jobs which started at or before this ISO 8601 time (UTC if no offset is given).",
        type=timestamp_arg,
    )


snapshot_parser = subparsers.add_parser(
    "snapshot",
    help="Aggregate the current jobs once",
    formatter_class=ArgumentDefaultsHelpFormatter,
)
_add_source_arguments(snapshot_parser)

live_parser = subparsers.add_parser(
    "live",
    help="Keep aggregating jobs on an interval",
    formatter_class=ArgumentDefaultsHelpFormatter,
)
_add_source_arguments(live_parser)

live_parser.add_argument(
    "--interval",
    help="Seconds to wait between refreshes.",
    type=lambda s: timedelta(seconds=float(s)),
    default=UsageMonitor.DEFAULT_POLLING_INTERVAL,
)

live_parser.add_argument(
    "--iterations", help="Stop after this many refreshes.", type=int,
)

reservations_parser = subparsers.add_parser(
    "reservations",
    help="List the reservation assigned to each project",
    formatter_class=ArgumentDefaultsHelpFormatter,
)

reservations_parser.add_argument(
    "--reservation-dataset",
    help="The dataset containing the reservation_project and reservation_slot tables.",
    default=bigquery_helpers.DEFAULT_RESERVATION_DATASET,
)

reservations_parser.add_argument(
    "--reservation-project",
    help="The project containing the reservation dataset. Defaults to the client's project.",
    default="",
)

job_parser = subparsers.add_parser(
    "job",
    help="Look up a single job by ID",
    formatter_class=ArgumentDefaultsHelpFormatter,
)

job_parser.add_argument("job_id", help="The ID of the job to look up.")

job_parser.add_argument(
    "-p",
    "--project",
    help="The project the job ran in. Defaults to the client's project.",
)

job_parser.add_argument("--location", help="The location the job ran in, e.g. US.")

job_parser.add_argument(
    "--reservation-dataset",
    help="The dataset containing the reservation_project and reservation_slot tables.",
    default=bigquery_helpers.DEFAULT_RESERVATION_DATASET,
)

job_parser.add_argument(
    "--reservation-project",
    help="The project containing the reservation dataset. Defaults to the client's project.",
    default="",
)

render_parser = subparsers.add_parser(
    "render",
    help="Aggregate job records from a JSON file, as served by the jobs endpoint",
    formatter_class=ArgumentDefaultsHelpFormatter,
)

render_parser.add_argument(
    "path", help="The JSON file to read, or - for standard input.",
)


def install_except_hook(error_handler: ErrorHandlerConfiguration) -> None:
    mgr = error_handler("Uncaught exception:")
    mgr.__enter__()

    def _hook(
        type_: Type[BaseException], value: BaseException, traceback: TracebackType,
    ) -> None:
        if not mgr.__exit__(type_, value, traceback):
            sys.__excepthook__(type_, value, traceback)

    sys.excepthook = _hook


def _fetch(
    client: bigquery.Client, args: Namespace, error_handler: ErrorHandlerConfiguration
) -> List[JobRecord]:
    min_creation_time = None
    if args.max_age is not None:
        min_creation_time = datetime.now(timezone.utc) - args.max_age

    return fetch_job_records(
        client,
        args.projects or [client.project],
        error_handler,
        reservation_dataset=args.reservation_dataset,
        reservation_project=args.reservation_project,
        state_filters=args.states or DEFAULT_JOB_STATES,
        min_creation_time=min_creation_time,
        start=args.start,
        end=args.end,
    )


def _print_rows(args: Namespace, rows: Sequence[UsageRow], out: TextIO) -> None:
    write_rows(rows, out, fmt=args.format)
    out.flush()


def render(args: Namespace, out: TextIO = sys.stdout) -> List[UsageRow]:
    if args.path == "-":
        payload: Any = json.load(sys.stdin)
    else:
        with open(args.path, "r") as f:
            payload = json.load(f)

    records = filter_attributed(parse_job_records(payload))
    rows = aggregate(records, tooltips=not args.no_tooltips)
    _print_rows(args, rows, out)
    return rows


def snapshot(
    args: Namespace, error_handler: ErrorHandlerConfiguration, out: TextIO = sys.stdout
) -> List[UsageRow]:
    client = bigquery.Client()
    records = filter_attributed(_fetch(client, args, error_handler))
    rows = aggregate(records, tooltips=not args.no_tooltips)
    _print_rows(args, rows, out)
    return rows


def live(
    args: Namespace, error_handler: ErrorHandlerConfiguration, out: TextIO = sys.stdout
) -> None:
    client = bigquery.Client()
    monitor = UsageMonitor(
        source=lambda: _fetch(client, args, error_handler),
        sink=lambda rows: _print_rows(args, rows, out),
        error_handler=error_handler,
        polling_interval=args.interval,
        tooltips=not args.no_tooltips,
    )

    async def _run() -> None:
        await monitor.start(iterations=args.iterations)

    asyncio.run(_run())


def reservations(args: Namespace, out: TextIO = sys.stdout) -> None:
    client = bigquery.Client()
    for reservation in load_reservations(
        client, dataset=args.reservation_dataset, project=args.reservation_project
    ).values():
        out.write(
            f"{reservation.project_id}\t{reservation.reservation_id}\t{reservation.slots:g}\n"
        )


def lookup_job(
    args: Namespace,
    out: TextIO = sys.stdout,
    client: Optional[bigquery.Client] = None,
) -> JobRecord:
    if client is None:
        client = bigquery.Client()

    reservations = load_reservations(
        client, dataset=args.reservation_dataset, project=args.reservation_project
    )

    record = get_job_record(
        client,
        args.job_id,
        reservations,
        project=args.project,
        location=args.location,
    )

    json.dump(dataclasses.asdict(record), out, indent=2, default=str)
    out.write("\n")
    return record

def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parser.parse_args(argv)

    error_handler = ErrorHandlerConfiguration(report_to_gcloud=args.report_errors)
    configure_root_logger(args.verbose, log_to_gcloud=args.log_to_gcloud)
    configure_package_logger(logger, args.verbose, log_to_gcloud=args.log_to_gcloud)
    install_except_hook(error_handler)

    # Install SIGINT handler. This is apparently necessary for the process to be interruptible with Ctrl-C on Windows:
    # https://bugs.python.org/issue23057
    signal.signal(signal.SIGINT, signal.SIG_DFL)

    if args.command == "snapshot":
        snapshot(args, error_handler)
    elif args.command == "live":
        live(args, error_handler)
    elif args.command == "reservations":
        reservations(args)
    elif args.command == "job":
        lookup_job(args)
    elif args.command == "render":
        render(args)
    else:
        parser.print_usage()


if __name__ == "__main__":
    main()
