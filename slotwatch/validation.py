import dataclasses
import math
from datetime import datetime
from logging import getLogger
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from slotwatch.model import JobRecord, TimelineSample, slot_usage_series

logger = getLogger(__name__)


class RecordValidationError(ValueError):
    """
    Raised when a job record from a data source does not have the shape required for aggregation.
    """


_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "job_id": ("jobid", "job_id", "jobId"),
    "project_id": ("projectid", "project_id", "projectId"),
    "user_email": ("email", "user_email", "userEmail"),
    "reservation_id": ("reservationid", "reservation_id", "reservationId"),
    "reserved_slots": ("slots", "reserved_slots", "reservedSlots"),
    "slot_usage_series": ("slotusage", "slot_usage_series", "slotUsageSeries"),
    "timeline": ("timeline",),
    "location": ("location",),
    "state": ("state",),
    "job_type": ("type", "job_type"),
    "statement_type": ("statementtype", "statement_type"),
    "priority": ("priority",),
    "query": ("query",),
    "error": ("error",),
    "create_time": ("createtime", "create_time"),
    "start_time": ("starttime", "start_time"),
    "end_time": ("endtime", "end_time"),
}
"""Accepted spellings of each field: the dashboard's lowercase JSON keys, snake_case and camelCase."""

_REQUIRED_KEYS = ("job_id", "project_id", "reservation_id")


def _lookup(d: Mapping[str, Any], name: str) -> Any:
    for alias in _FIELD_ALIASES[name]:
        value = d.get(alias)
        if value is not None:
            return value

    return None


def _number(value: Any, name: str) -> float:
    if value is None or value == "":
        return 0.0

    if isinstance(value, bool):
        raise RecordValidationError(f"Expected a number for {name}, got {value!r}")

    try:
        number = float(value)
    except (TypeError, ValueError) as err:
        raise RecordValidationError(
            f"Expected a number for {name}, got {value!r}"
        ) from err

    if not math.isfinite(number) or number < 0:
        raise RecordValidationError(
            f"Expected a finite, non-negative number for {name}, got {value!r}"
        )

    return number


def _timestamp(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value

    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as err:
        raise RecordValidationError(
            f"Expected an ISO 8601 timestamp for {name}, got {value!r}"
        ) from err


def _timeline(value: Any) -> Tuple[TimelineSample, ...]:
    if not isinstance(value, Sequence) or isinstance(value, str):
        raise RecordValidationError(f"Expected a list for timeline, got {value!r}")

    samples = []
    for entry in value:
        if not isinstance(entry, Mapping):
            raise RecordValidationError(
                f"Expected an object for timeline sample, got {entry!r}"
            )

        elapsed_ms = entry.get("elapsed_ms", entry.get("elapsed"))
        samples.append(
            TimelineSample(
                elapsed_ms=int(_number(elapsed_ms, "elapsed_ms")),
                active_units=int(_number(entry.get("active_units"), "active_units")),
                completed_units=int(
                    _number(entry.get("completed_units"), "completed_units")
                ),
                pending_units=int(_number(entry.get("pending_units"), "pending_units")),
                slot_millis=int(_number(entry.get("slot_millis"), "slot_millis")),
            )
        )

    return tuple(samples)


def record_from_dict(d: Mapping[str, Any]) -> JobRecord:
    """
    Validates a job record decoded from JSON, and converts it into a `JobRecord`.

    Raises `RecordValidationError` if a grouping key is missing or a numeric field is malformed. Missing numeric fields are treated as zero.
    """

    if not isinstance(d, Mapping):
        raise RecordValidationError(f"Expected an object for job record, got {d!r}")

    for name in _REQUIRED_KEYS:
        value = _lookup(d, name)
        if value is None or str(value) == "":
            raise RecordValidationError(f"Job record is missing {name}: {d!r}")

    timeline: Tuple[TimelineSample, ...] = ()
    raw_timeline = _lookup(d, "timeline")
    if raw_timeline is not None:
        timeline = _timeline(raw_timeline)

    raw_series = _lookup(d, "slot_usage_series")
    if raw_series is not None:
        if not isinstance(raw_series, Sequence) or isinstance(raw_series, str):
            raise RecordValidationError(
                f"Expected a list for slot_usage_series, got {raw_series!r}"
            )

        series = tuple(_number(v, "slot_usage_series") for v in raw_series)
    else:
        series = slot_usage_series(timeline)

    return JobRecord(
        job_id=str(_lookup(d, "job_id")),
        project_id=str(_lookup(d, "project_id")),
        user_email=str(_lookup(d, "user_email") or ""),
        reservation_id=str(_lookup(d, "reservation_id")),
        reserved_slots=_number(_lookup(d, "reserved_slots"), "reserved_slots"),
        slot_usage_series=series,
        location=str(_lookup(d, "location") or ""),
        state=str(_lookup(d, "state") or ""),
        job_type=str(_lookup(d, "job_type") or ""),
        statement_type=str(_lookup(d, "statement_type") or ""),
        priority=str(_lookup(d, "priority") or ""),
        query=str(_lookup(d, "query") or ""),
        error=str(_lookup(d, "error") or ""),
        create_time=_timestamp(_lookup(d, "create_time"), "create_time"),
        start_time=_timestamp(_lookup(d, "start_time"), "start_time"),
        end_time=_timestamp(_lookup(d, "end_time"), "end_time"),
        timeline=timeline,
    )


def parse_job_records(
    payload: Union[Mapping[str, Any], Sequence[Any]]
) -> List[JobRecord]:
    """
    Converts a JSON job listing (either a bare list, or an object with a "data" list) into records, logging and skipping any that are malformed.
    """

    if isinstance(payload, Mapping):
        entries = payload.get("data") or []
    else:
        entries = payload

    records = []
    for entry in entries:
        try:
            records.append(record_from_dict(entry))
        except RecordValidationError as err:
            logger.warning(f"Skipping malformed job record: {err}")

    logger.debug(f"Parsed {len(records)} of {len(entries)} job records")
    return reassign_projects(records)


def reassign_projects(records: Sequence[JobRecord]) -> List[JobRecord]:
    """
    Moves every job of a project into the last reservation that project was seen in, so that each project appears only once in the hierarchy.
    """

    last_seen: Dict[str, JobRecord] = {}
    for record in records:
        previous = last_seen.get(record.project_id)
        if previous is not None and previous.reservation_id != record.reservation_id:
            logger.warning(
                f"Project {record.project_id} is assigned to more than one reservation, using {record.reservation_id}"
            )

        last_seen[record.project_id] = record

    reassigned = []
    for record in records:
        latest = last_seen[record.project_id]
        if record.reservation_id != latest.reservation_id:
            record = dataclasses.replace(
                record,
                reservation_id=latest.reservation_id,
                reserved_slots=latest.reserved_slots,
            )

        reassigned.append(record)

    return reassigned


def filter_attributed(records: Iterable[JobRecord]) -> List[JobRecord]:
    """
    Drops records without a user email, which cannot be placed in the user level of the hierarchy.
    """

    kept = []
    dropped = 0
    for record in records:
        if record.user_email:
            kept.append(record)
        else:
            dropped += 1

    if dropped:
        logger.debug(f"Dropped {dropped} job records without a user email")

    return kept
