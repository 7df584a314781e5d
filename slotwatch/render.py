import json
from enum import Enum, unique
from typing import Any, List, Sequence, TextIO

import pandas as pd

from slotwatch.model import UsageRow


@unique
class UsageTableColumn(Enum):
    """
    Specifies the columns of tabular usage output, so that exported files and DataFrames agree on naming.
    """

    LABEL = "label"
    PARENT_LABEL = "parent_label"
    ALLOCATED_SLOTS = "allocated_slots"
    USAGE_FRACTION = "usage_fraction"
    DISPLAY_TOOLTIP = "display_tooltip"


TREEMAP_HEADER = ["Label", "Parent", "Allocated slots (size)", "Usage % (color)"]
"""Column labels for a Google Charts treemap data table."""

OUTPUT_FORMATS = ["json", "csv", "datatable"]


def usage_percent(usage_fraction: float) -> float:
    return usage_fraction * 100


def format_tooltip(row: UsageRow) -> str:
    """
    Summarizes a row for humans, e.g. "proj/alice@example.com: 25.0 of 50.0 slots (50.0%)".
    """

    used = row.usage_fraction * row.allocated_slots
    return f"{row.label}: {used:.1f} of {row.allocated_slots:.1f} slots ({usage_percent(row.usage_fraction):.1f}%)"


def treemap_data_table(rows: Sequence[UsageRow]) -> List[List[Any]]:
    """
    Builds the argument to `google.visualization.arrayToDataTable` for drawing `rows` as a treemap.
    """

    table: List[List[Any]] = [list(TREEMAP_HEADER)]
    for row in rows:
        table.append(
            [
                row.label,
                row.parent_label,
                row.allocated_slots,
                usage_percent(row.usage_fraction),
            ]
        )

    return table


def rows_to_dataframe(rows: Sequence[UsageRow]) -> pd.DataFrame:
    return pd.DataFrame(
        data={
            UsageTableColumn.LABEL.value: [r.label for r in rows],
            UsageTableColumn.PARENT_LABEL.value: [r.parent_label for r in rows],
            UsageTableColumn.ALLOCATED_SLOTS.value: [
                float(r.allocated_slots) for r in rows
            ],
            UsageTableColumn.USAGE_FRACTION.value: [
                float(r.usage_fraction) for r in rows
            ],
            UsageTableColumn.DISPLAY_TOOLTIP.value: [r.display_tooltip for r in rows],
        },
        columns=[c.value for c in UsageTableColumn],
    )


def write_rows(rows: Sequence[UsageRow], stream: TextIO, fmt: str = "json") -> None:
    """
    Writes `rows` to `stream` in one of `OUTPUT_FORMATS`.
    """

    if fmt == "csv":
        rows_to_dataframe(rows).to_csv(stream, index=False)
    elif fmt == "json":
        json.dump(
            {"data": rows_to_dataframe(rows).to_dict(orient="records")},
            stream,
            indent=2,
        )
        stream.write("\n")
    elif fmt == "datatable":
        json.dump(treemap_data_table(rows), stream)
        stream.write("\n")
    else:
        raise ValueError(f"Unknown output format {fmt!r}")
