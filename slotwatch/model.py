from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

ROOT_LABEL = "all"
"""The label of the synthetic root row that every reservation hangs off."""


@dataclass(frozen=True)
class TimelineSample:
    """
    One entry of a BigQuery query job's execution timeline.
    """

    elapsed_ms: int = 0
    """Milliseconds since the job started, at the time of this sample."""

    active_units: int = 0
    completed_units: int = 0
    pending_units: int = 0

    slot_millis: int = 0
    """Cumulative slot-milliseconds consumed by the job up to this sample."""


def slot_usage_series(samples: Iterable[TimelineSample]) -> Tuple[float, ...]:
    """
    Converts cumulative timeline samples into the average number of slots in use over each sampled interval.

    The first interval is measured from the start of the job. Intervals which do not advance in time contribute zero.
    """

    series: List[float] = []
    previous_elapsed = 0
    previous_slot_millis = 0

    for sample in samples:
        elapsed_delta = sample.elapsed_ms - previous_elapsed
        slot_millis_delta = sample.slot_millis - previous_slot_millis

        if elapsed_delta > 0:
            series.append(slot_millis_delta / elapsed_delta)
        else:
            series.append(0.0)

        previous_elapsed = sample.elapsed_ms
        previous_slot_millis = sample.slot_millis

    return tuple(series)


@dataclass(frozen=True)
class Reservation:
    """
    Maps a project onto the slot reservation it draws capacity from.
    """

    reservation_id: str
    project_id: str

    slots: float
    """The declared capacity of the whole reservation, not this project's share of it."""


@dataclass(frozen=True)
class JobRecord:
    """
    A submitted BigQuery job, attributed to the reservation its project is assigned to.
    """

    job_id: str
    project_id: str
    user_email: str
    reservation_id: str

    reserved_slots: float = 0.0
    """The capacity of `reservation_id`. Every record sharing a reservation carries the same value."""

    slot_usage_series: Tuple[float, ...] = ()
    """Slot usage samples over the job's lifetime, oldest first."""

    location: str = ""
    state: str = ""
    job_type: str = ""
    statement_type: str = ""
    priority: str = ""
    query: str = ""
    error: str = ""
    create_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    timeline: Tuple[TimelineSample, ...] = field(default=(), repr=False)
    """The raw timeline the usage series was derived from, when known."""

    @property
    def final_slot_usage(self) -> float:
        """
        The most recent slot usage sample, or zero if the job has not reported any.
        """

        if not self.slot_usage_series:
            return 0.0

        return self.slot_usage_series[-1]


@dataclass(frozen=True)
class UsageRow:
    """
    One node of the reservation → project → user hierarchy, as consumed by a treemap.
    """

    label: str

    parent_label: Optional[str]
    """The label of the parent row. Only the root row has no parent."""

    allocated_slots: float
    """The slots allotted to this node, used as the treemap size."""

    usage_fraction: float
    """Slots consumed divided by `allocated_slots`, used as the treemap color."""

    display_tooltip: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent_label is None
