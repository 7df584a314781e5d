import dataclasses
import math
from logging import getLogger
from typing import List, Sequence

from slotwatch.grouping import group_by
from slotwatch.model import ROOT_LABEL, JobRecord, UsageRow
from slotwatch.render import format_tooltip

logger = getLogger(__name__)


def _usage_fraction(absolute_usage: float, allocated_slots: float) -> float:
    if allocated_slots == 0 or not math.isfinite(allocated_slots):
        return 0.0

    fraction = absolute_usage / allocated_slots
    if not math.isfinite(fraction):
        return 0.0

    return fraction


def user_label(project_id: str, user_email: str) -> str:
    return f"{project_id}/{user_email}"


def aggregate(
    job_records: Sequence[JobRecord], tooltips: bool = False
) -> List[UsageRow]:
    """
    Buckets job records into a reservation → project → user hierarchy for display as a treemap.

    A reservation's slots are split evenly between the distinct projects running jobs in it, and each project's share is split evenly again between its distinct users. This deliberately ignores how much each project or user actually consumes.

    A user's usage is the final slot usage sample of each of their jobs, summed, over their share of slots. Projects and reservations sum the absolute usage of their children over their own allocation. A zero allocation always yields a usage fraction of zero.

    The hierarchy is flattened into rows linked by `parent_label`, emitted in the order groups were first seen. Records with missing user emails should be filtered out beforehand.
    """

    rows: List[UsageRow] = [
        UsageRow(
            label=ROOT_LABEL, parent_label=None, allocated_slots=0, usage_fraction=0
        )
    ]

    for reservation_id, reservation_records in group_by(
        job_records, lambda r: r.reservation_id
    ).items():
        reserved_slots = reservation_records[0].reserved_slots
        by_project = group_by(reservation_records, lambda r: r.project_id)
        project_slots = reserved_slots / len(by_project)
        reservation_usage = 0.0

        for project_id, project_records in by_project.items():
            by_user = group_by(project_records, lambda r: r.user_email)
            user_slots = project_slots / len(by_user)
            project_usage = 0.0

            for user_email, user_records in by_user.items():
                user_usage = sum(r.final_slot_usage for r in user_records)
                project_usage += user_usage

                rows.append(
                    UsageRow(
                        label=user_label(project_id, user_email),
                        parent_label=project_id,
                        allocated_slots=user_slots,
                        usage_fraction=_usage_fraction(user_usage, user_slots),
                    )
                )

            reservation_usage += project_usage
            rows.append(
                UsageRow(
                    label=project_id,
                    parent_label=reservation_id,
                    allocated_slots=project_slots,
                    usage_fraction=_usage_fraction(project_usage, project_slots),
                )
            )

        rows.append(
            UsageRow(
                label=reservation_id,
                parent_label=ROOT_LABEL,
                allocated_slots=reserved_slots,
                usage_fraction=_usage_fraction(reservation_usage, reserved_slots),
            )
        )

    logger.debug(f"Aggregated {len(job_records)} job records into {len(rows)} rows")

    if tooltips:
        return [
            dataclasses.replace(row, display_tooltip=format_tooltip(row))
            for row in rows
        ]

    return rows
