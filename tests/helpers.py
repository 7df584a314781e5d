from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from google.api_core.exceptions import NotFound

from slotwatch.model import JobRecord


def job(
    reservation_id: str,
    project_id: str,
    user_email: str,
    usage: Sequence[float] = (),
    reserved_slots: float = 100,
    job_id: Optional[str] = None,
) -> JobRecord:
    return JobRecord(
        job_id=job_id or f"{project_id}-{user_email}-{len(usage)}",
        project_id=project_id,
        user_email=user_email,
        reservation_id=reservation_id,
        reserved_slots=reserved_slots,
        slot_usage_series=tuple(usage),
    )


def timeline_entry(elapsed_ms: int, slot_millis: int, **kwargs: int) -> Any:
    return SimpleNamespace(
        elapsed_ms=elapsed_ms,
        slot_millis=slot_millis,
        active_units=kwargs.get("active_units", 0),
        completed_units=kwargs.get("completed_units", 0),
        pending_units=kwargs.get("pending_units", 0),
    )


def bigquery_job(
    job_id: str,
    user_email: str,
    timeline: Optional[Iterable[Any]] = (),
    **kwargs: Any
) -> Any:
    fields: Dict[str, Any] = {
        "job_id": job_id,
        "user_email": user_email,
        "timeline": list(timeline or []),
        "location": "US",
        "state": "RUNNING",
        "job_type": "query",
        "statement_type": "SELECT",
        "priority": "INTERACTIVE",
        "query": "SELECT 1",
        "error_result": None,
        "created": None,
        "started": None,
        "ended": None,
    }
    fields.update(kwargs)
    return SimpleNamespace(**fields)


class StubQueryJob:
    def __init__(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = rows

    def result(self) -> List[Dict[str, Any]]:
        return self._rows


class StubBigQueryClient:
    """
    Stands in for `google.cloud.bigquery.Client`, serving canned reservation rows and job listings.
    """

    def __init__(
        self,
        reservation_rows: Optional[List[Dict[str, Any]]] = None,
        jobs_by_project: Optional[Dict[str, List[Any]]] = None,
        failing_projects: Iterable[str] = (),
        project: str = "home-project",
    ) -> None:
        self.project = project
        self.reservation_rows = reservation_rows or []
        self.jobs_by_project = jobs_by_project or {}
        self.failing_projects = set(failing_projects)
        self.queries: List[str] = []
        self.list_jobs_calls: List[Dict[str, Any]] = []

    def query(self, sql: str) -> StubQueryJob:
        self.queries.append(sql)
        return StubQueryJob(self.reservation_rows)

    def list_jobs(
        self,
        project: str,
        state_filter: Optional[str] = None,
        max_creation_time: Optional[datetime] = None,
        **kwargs: Any
    ) -> List[Any]:
        self.list_jobs_calls.append(
            dict(
                project=project,
                state_filter=state_filter,
                max_creation_time=max_creation_time,
                **kwargs
            )
        )
        if project in self.failing_projects:
            raise RuntimeError(f"Permission denied on {project}")

        jobs = []
        for job in self.jobs_by_project.get(project, []):
            if state_filter is not None and job.state.lower() != state_filter:
                continue

            if (
                max_creation_time is not None
                and job.created is not None
                and job.created > max_creation_time
            ):
                continue

            jobs.append(job)

        return jobs

    def get_job(
        self, job_id: str, project: Optional[str] = None, location: Optional[str] = None
    ) -> Any:
        for project_id, jobs in self.jobs_by_project.items():
            if project is not None and project_id != project:
                continue

            for job in jobs:
                if job.job_id == job_id:
                    return SimpleNamespace(project=project_id, **vars(job))

        raise NotFound(f"Not found: Job {job_id}")
