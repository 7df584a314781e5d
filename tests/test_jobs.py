import unittest
from datetime import datetime, timezone

from google.api_core.exceptions import NotFound

from slotwatch.error_handling import ErrorHandlerConfiguration
from slotwatch.jobs import (
    fetch_job_records,
    get_job_record,
    job_record_from_bigquery_job,
    list_job_records,
    load_reservations,
    overlaps_window,
)
from slotwatch.model import Reservation

from tests.helpers import StubBigQueryClient, bigquery_job, timeline_entry


def _at(hour: int, minute: int) -> datetime:
    return datetime(2019, 7, 1, hour, minute, tzinfo=timezone.utc)


_RESERVATION_ROWS = [
    {"reservation_id": "R1", "project_id": "P1", "reservation_slot": 100},
    {"reservation_id": "R1", "project_id": "P2", "reservation_slot": 100},
    {"reservation_id": "R2", "project_id": "P3", "reservation_slot": 500},
]


class TestLoadReservations(unittest.TestCase):
    def test_keyed_by_project(self) -> None:
        client = StubBigQueryClient(reservation_rows=_RESERVATION_ROWS)
        reservations = load_reservations(client, dataset="ds", project="admin")  # type: ignore

        self.assertEqual(
            reservations["P2"],
            Reservation(reservation_id="R1", project_id="P2", slots=100.0),
        )
        self.assertEqual(reservations["P3"].slots, 500.0)
        self.assertEqual(len(client.queries), 1)
        self.assertIn("`admin.ds.reservation_project`", client.queries[0])
        self.assertIn("`admin.ds.reservation_slot`", client.queries[0])

    def test_default_dataset(self) -> None:
        client = StubBigQueryClient()
        self.assertEqual(load_reservations(client), {})  # type: ignore
        self.assertIn("`slot_reservation.reservation_project`", client.queries[0])


class TestJobRecordFromBigQueryJob(unittest.TestCase):
    def test_conversion(self) -> None:
        bq_job = bigquery_job(
            "job_1",
            "alice@example.com",
            timeline=[timeline_entry(1000, 5000), timeline_entry(2000, 25000)],
            error_result={"message": "Quota exceeded"},
        )
        record = job_record_from_bigquery_job(
            bq_job, "P1", Reservation(reservation_id="R1", project_id="P1", slots=100)
        )

        self.assertEqual(record.job_id, "job_1")
        self.assertEqual(record.project_id, "P1")
        self.assertEqual(record.user_email, "alice@example.com")
        self.assertEqual(record.reservation_id, "R1")
        self.assertEqual(record.reserved_slots, 100)
        self.assertEqual(record.slot_usage_series, (5.0, 20.0))
        self.assertEqual(record.job_type, "query")
        self.assertEqual(record.error, "Quota exceeded")

    def test_unassigned_project(self) -> None:
        record = job_record_from_bigquery_job(
            bigquery_job("job_2", "bob@example.com", timeline=None), "P9", None
        )
        self.assertEqual(record.reservation_id, "default")
        self.assertEqual(record.reserved_slots, 0)
        self.assertEqual(record.slot_usage_series, ())


class TestListJobRecords(unittest.TestCase):
    def setUp(self) -> None:
        self.error_handler = ErrorHandlerConfiguration(report_to_gcloud=False)
        self.client = StubBigQueryClient(
            reservation_rows=_RESERVATION_ROWS,
            jobs_by_project={
                "P1": [
                    bigquery_job("a", "alice@example.com"),
                    bigquery_job("q", "quinn@example.com", state="PENDING"),
                    bigquery_job("z", "zed@example.com", state="DONE"),
                ],
                "P3": [
                    bigquery_job("b", "bob@example.com"),
                    bigquery_job("c", "carol@example.com"),
                ],
            },
            failing_projects=["P2"],
        )

    def test_lists_running_and_pending_jobs(self) -> None:
        reservations = load_reservations(self.client)  # type: ignore
        records = list_job_records(
            self.client, ["P1", "P3"], reservations, self.error_handler  # type: ignore
        )

        self.assertEqual([r.job_id for r in records], ["a", "q", "b", "c"])
        self.assertEqual([r.reservation_id for r in records], ["R1", "R1", "R2", "R2"])
        self.assertEqual(
            [(c["project"], c["state_filter"]) for c in self.client.list_jobs_calls],
            [("P1", "running"), ("P1", "pending"), ("P3", "running"), ("P3", "pending")],
        )
        for call in self.client.list_jobs_calls:
            self.assertTrue(call["all_users"])

    def test_chosen_states(self) -> None:
        records = list_job_records(
            self.client,  # type: ignore
            ["P1"],
            {},
            self.error_handler,
            state_filters=["done"],
        )
        self.assertEqual([r.job_id for r in records], ["z"])
        self.assertEqual(records[0].reservation_id, "default")

    def test_repeated_listing_appears_once(self) -> None:
        records = list_job_records(
            self.client,  # type: ignore
            ["P3", "P3"],
            {},
            self.error_handler,
        )
        self.assertEqual([r.job_id for r in records], ["b", "c"])

    def test_failing_project_does_not_stop_others(self) -> None:
        with self.assertLogs(level="ERROR"):
            records = fetch_job_records(
                self.client, ["P1", "P2", "P3"], self.error_handler  # type: ignore
            )

        self.assertEqual([r.job_id for r in records], ["a", "q", "b", "c"])
        self.assertEqual(
            [c["project"] for c in self.client.list_jobs_calls],
            ["P1", "P1", "P2", "P3", "P3"],
        )


class TestTimeWindow(unittest.TestCase):
    def setUp(self) -> None:
        self.error_handler = ErrorHandlerConfiguration(report_to_gcloud=False)
        self.client = StubBigQueryClient(
            reservation_rows=_RESERVATION_ROWS,
            jobs_by_project={
                "P1": [
                    # Finished before the window opened.
                    bigquery_job(
                        "early",
                        "a@example.com",
                        state="DONE",
                        created=_at(8, 0),
                        started=_at(8, 0),
                        ended=_at(8, 30),
                    ),
                    # Overlaps the start of the window.
                    bigquery_job(
                        "overlap",
                        "b@example.com",
                        state="DONE",
                        created=_at(9, 30),
                        started=_at(9, 30),
                        ended=_at(10, 15),
                    ),
                    # Still running.
                    bigquery_job(
                        "running",
                        "c@example.com",
                        created=_at(10, 30),
                        started=_at(10, 30),
                    ),
                    # Created after the window closed.
                    bigquery_job(
                        "late",
                        "d@example.com",
                        created=_at(12, 0),
                        started=_at(12, 0),
                    ),
                ]
            },
        )

    def test_overlaps_window(self) -> None:
        record = job_record_from_bigquery_job(
            bigquery_job(
                "j", "u", created=_at(9, 0), started=_at(9, 0), ended=_at(10, 0)
            ),
            "P1",
            None,
        )

        self.assertTrue(overlaps_window(record, _at(9, 30), _at(11, 0)))
        self.assertTrue(overlaps_window(record, None, None))
        self.assertFalse(overlaps_window(record, _at(10, 0), _at(11, 0)))
        self.assertFalse(overlaps_window(record, _at(6, 0), _at(8, 59)))

    def test_fetch_within_window(self) -> None:
        records = fetch_job_records(
            self.client,  # type: ignore
            ["P1"],
            self.error_handler,
            state_filters=["running", "done"],
            start=_at(10, 0),
            end=_at(11, 0),
        )

        self.assertEqual([r.job_id for r in records], ["running", "overlap"])
        for call in self.client.list_jobs_calls:
            self.assertEqual(call["max_creation_time"], _at(11, 0))


class TestGetJobRecord(unittest.TestCase):
    def setUp(self) -> None:
        self.client = StubBigQueryClient(
            reservation_rows=_RESERVATION_ROWS,
            jobs_by_project={
                "P3": [
                    bigquery_job(
                        "j1",
                        "bob@example.com",
                        timeline=[timeline_entry(2000, 8000)],
                    )
                ]
            },
        )

    def test_found(self) -> None:
        reservations = load_reservations(self.client)  # type: ignore
        record = get_job_record(self.client, "j1", reservations)  # type: ignore

        self.assertEqual(record.project_id, "P3")
        self.assertEqual(record.reservation_id, "R2")
        self.assertEqual(record.reserved_slots, 500)
        self.assertEqual(record.slot_usage_series, (4.0,))

    def test_not_found(self) -> None:
        with self.assertRaises(NotFound):
            get_job_record(self.client, "missing", {})  # type: ignore


if __name__ == "__main__":
    unittest.main()
