from datetime import datetime
from logging import getLogger
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from google.cloud import bigquery

import slotwatch.bigquery_helpers as bigquery_helpers
from slotwatch.error_handling import ErrorHandlerConfiguration
from slotwatch.model import JobRecord, Reservation, TimelineSample, slot_usage_series

logger = getLogger(__name__)

JOB_STATES = ["running", "pending", "done"]
"""Values accepted by the BigQuery Jobs API as a state filter."""

DEFAULT_JOB_STATES = ("running", "pending")
"""The states observed on every refresh: jobs that are using, or waiting for, slots."""


def load_reservations(
    client: bigquery.Client,
    dataset: str = bigquery_helpers.DEFAULT_RESERVATION_DATASET,
    project: str = "",
) -> Dict[str, Reservation]:
    """
    Reads the reservation mapping tables in `dataset`, returning each project's reservation keyed by project ID.
    """

    sql = bigquery_helpers.RESERVATIONS_QUERY.format(
        project_table=bigquery_helpers.qualified_table(
            dataset, bigquery_helpers.RESERVATION_PROJECT_TABLE, project
        ),
        slot_table=bigquery_helpers.qualified_table(
            dataset, bigquery_helpers.RESERVATION_SLOT_TABLE, project
        ),
    )

    logger.debug(f"Loading reservations: {sql}")

    reservations: Dict[str, Reservation] = {}
    for row in client.query(sql).result():
        reservation = Reservation(
            reservation_id=str(row["reservation_id"]),
            project_id=str(row["project_id"]),
            slots=float(row["reservation_slot"] or 0),
        )

        if reservation.project_id in reservations:
            logger.warning(
                f"Project {reservation.project_id} is assigned to more than one reservation, using {reservation.reservation_id}"
            )

        reservations[reservation.project_id] = reservation

    logger.info(f"Loaded {len(reservations)} reservation assignments")
    return reservations


def _timeline(job: Any) -> List[TimelineSample]:
    entries = getattr(job, "timeline", None) or []
    return [
        TimelineSample(
            elapsed_ms=int(entry.elapsed_ms or 0),
            active_units=int(entry.active_units or 0),
            completed_units=int(entry.completed_units or 0),
            pending_units=int(entry.pending_units or 0),
            slot_millis=int(entry.slot_millis or 0),
        )
        for entry in entries
    ]


def _error_message(job: Any) -> str:
    error_result = getattr(job, "error_result", None)
    if not error_result:
        return ""

    return str(error_result.get("message", error_result))


def job_record_from_bigquery_job(
    job: Any, project_id: str, reservation: Optional[Reservation]
) -> JobRecord:
    """
    Converts a job listed by the BigQuery client into a `JobRecord`, attributing it to `reservation`.

    Jobs in projects without a reservation are attributed to a zero-capacity default reservation.
    """

    if reservation is None:
        reservation = Reservation(
            reservation_id=bigquery_helpers.DEFAULT_RESERVATION_ID,
            project_id=project_id,
            slots=0,
        )

    timeline = _timeline(job)
    return JobRecord(
        job_id=job.job_id,
        project_id=project_id,
        user_email=getattr(job, "user_email", None) or "",
        reservation_id=reservation.reservation_id,
        reserved_slots=reservation.slots,
        slot_usage_series=slot_usage_series(timeline),
        location=getattr(job, "location", None) or "",
        state=getattr(job, "state", None) or "",
        job_type=getattr(job, "job_type", None) or "",
        statement_type=getattr(job, "statement_type", None) or "",
        priority=getattr(job, "priority", None) or "",
        query=getattr(job, "query", None) or "",
        error=_error_message(job),
        create_time=getattr(job, "created", None),
        start_time=getattr(job, "started", None),
        end_time=getattr(job, "ended", None),
        timeline=tuple(timeline),
    )

def overlaps_window(
    record: JobRecord, start: Optional[datetime], end: Optional[datetime]
) -> bool:
    """
    Whether the job was executing at some point between `start` and `end`.

    Jobs that have not started yet are placed at their creation time, and jobs that have not finished are treated as still running.
    """

    began = record.start_time or record.create_time
    if end is not None and began is not None and began > end:
        return False

    if start is not None and record.end_time is not None and record.end_time <= start:
        return False

    return True


def list_job_records(
    client: bigquery.Client,
    projects: Iterable[str],
    reservations: Dict[str, Reservation],
    error_handler: ErrorHandlerConfiguration,
    state_filters: Sequence[str] = DEFAULT_JOB_STATES,
    min_creation_time: Optional[datetime] = None,
    max_creation_time: Optional[datetime] = None,
) -> List[JobRecord]:
    """
    Lists the jobs of all users in each of `projects` which are in any of `state_filters`, attributing each to its project's reservation.

    Failing to list one project's jobs is reported through `error_handler`, and does not prevent listing the others.
    """

    records: List[JobRecord] = []
    seen: Set[Tuple[str, str]] = set()

    for project_id in projects:
        reservation = reservations.get(project_id)
        if reservation is None:
            logger.debug(
                f"Project {project_id} has no reservation, attributing its jobs to {bigquery_helpers.DEFAULT_RESERVATION_ID}"
            )

        with error_handler(f"Failed to list jobs in project {project_id}:"):
            project_records = []
            for state_filter in state_filters:
                jobs = client.list_jobs(
                    project=project_id,
                    all_users=True,
                    state_filter=state_filter,
                    min_creation_time=min_creation_time,
                    max_creation_time=max_creation_time,
                )

                for job in jobs:
                    # A job can change state between listings.
                    key = (project_id, job.job_id)
                    if key in seen:
                        continue

                    seen.add(key)
                    project_records.append(
                        job_record_from_bigquery_job(job, project_id, reservation)
                    )

            logger.debug(f"Listed {len(project_records)} jobs in {project_id}")
            records.extend(project_records)

    return records


def get_job_record(
    client: bigquery.Client,
    job_id: str,
    reservations: Dict[str, Reservation],
    project: Optional[str] = None,
    location: Optional[str] = None,
) -> JobRecord:
    """
    Looks up a single job by ID, attributing it to its project's reservation.

    Raises `google.api_core.exceptions.NotFound` if there is no such job.
    """

    job = client.get_job(job_id, project=project, location=location)
    project_id = getattr(job, "project", None) or project or client.project

    logger.debug(f"Found job {job_id} in {project_id}")
    return job_record_from_bigquery_job(job, project_id, reservations.get(project_id))


def fetch_job_records(
    client: bigquery.Client,
    projects: Iterable[str],
    error_handler: ErrorHandlerConfiguration,
    reservation_dataset: str = bigquery_helpers.DEFAULT_RESERVATION_DATASET,
    reservation_project: str = "",
    state_filters: Sequence[str] = DEFAULT_JOB_STATES,
    min_creation_time: Optional[datetime] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[JobRecord]:
    """
    Takes a fresh snapshot of job records: reloads the reservation assignments, then lists jobs in every project.

    If `start` or `end` is given, only jobs executing during that window are kept.
    """

    reservations = load_reservations(
        client, dataset=reservation_dataset, project=reservation_project
    )

    records = list_job_records(
        client,
        projects,
        reservations,
        error_handler,
        state_filters=state_filters,
        min_creation_time=min_creation_time,
        max_creation_time=end,
    )

    if start is not None or end is not None:
        records = [r for r in records if overlaps_window(r, start, end)]

    logger.info(f"Fetched {len(records)} job records")
    return records
