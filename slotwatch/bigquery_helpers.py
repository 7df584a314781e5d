MAX_BIGQUERY_OPERATIONS_PER_DAY = 100000
"""The number of BigQuery API requests per day we allow polling to make, across all observed projects."""

PERMITTED_OPERATIONS_PER_DAY = MAX_BIGQUERY_OPERATIONS_PER_DAY * 0.5
"""How much of the BigQuery operations allowance to actually use, to leave headroom for other things."""

DEFAULT_RESERVATION_DATASET = "slot_reservation"
"""The dataset holding the reservation mapping tables."""

RESERVATION_PROJECT_TABLE = "reservation_project"
"""Table of (reservation_id, project_id) assignments."""

RESERVATION_SLOT_TABLE = "reservation_slot"
"""Table of (reservation_id, reservation_slot) capacities."""

DEFAULT_RESERVATION_ID = "default"
"""The reservation that jobs in projects without an assignment are attributed to."""

RESERVATIONS_QUERY = """
SELECT p.reservation_id, p.project_id, s.reservation_slot
FROM `{project_table}` AS p
JOIN `{slot_table}` AS s
USING (reservation_id)
"""


def qualified_table(dataset: str, table: str, project: str = "") -> str:
    """
    Joins the parts of a table name as `project.dataset.table`, omitting the project if it is not given.
    """

    if project:
        return f"{project}.{dataset}.{table}"

    return f"{dataset}.{table}"
