"""
Per-run task ledger.

One Task is recorded per (period, region) attempt on the primary path.  A
later secondary attempt never adds a task; it updates the existing one in
place, either flipping it to ``success/secondary`` or extending its error
text with the portal failure.
"""

from __future__ import annotations

from dataclasses import dataclass

from pipeline.periods import Period
from pipeline.records import METHOD_PRIMARY, METHOD_SECONDARY

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


@dataclass
class Task:
    period: Period
    region: str
    status: str
    method: str = METHOD_PRIMARY
    error: str | None = None

    @property
    def key(self) -> tuple[Period, str]:
        return (self.period, self.region)

    def to_dict(self) -> dict:
        return {
            "period": self.period.label(),
            "region": self.region,
            "status": self.status,
            "method": self.method,
            "error": self.error,
        }


class TaskLedger:
    """Ordered record of task outcomes for one coordinator run."""

    def __init__(self):
        self._tasks: list[Task] = []
        self._index: dict[tuple[Period, str], Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(self._tasks)

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks)

    def _append(self, task: Task) -> Task:
        if task.key in self._index:
            raise ValueError(f"Task already recorded for {task.region} {task.period.label()}")
        self._tasks.append(task)
        self._index[task.key] = task
        return task

    def record_success(self, period: Period, region: str) -> Task:
        return self._append(Task(period, region, STATUS_SUCCESS, METHOD_PRIMARY))

    def record_failure(self, period: Period, region: str, error: str) -> Task:
        return self._append(Task(period, region, STATUS_FAILURE, METHOD_PRIMARY, error))

    def get(self, period: Period, region: str) -> Task | None:
        return self._index.get((period, region))

    def mark_secondary_success(self, period: Period, region: str) -> Task:
        task = self._index[(period, region)]
        task.status = STATUS_SUCCESS
        task.method = METHOD_SECONDARY
        task.error = None
        return task

    def mark_secondary_failure(self, period: Period, region: str, error: str) -> Task:
        task = self._index[(period, region)]
        task.status = STATUS_FAILURE
        task.error = f"{task.error} | portal: {error}" if task.error else f"portal: {error}"
        return task

    def failures(self) -> list[Task]:
        return [t for t in self._tasks if t.status == STATUS_FAILURE]

    def counts_by_method(self) -> dict[str, int]:
        counts = {METHOD_PRIMARY: 0, METHOD_SECONDARY: 0}
        for task in self._tasks:
            if task.status == STATUS_SUCCESS:
                counts[task.method] = counts.get(task.method, 0) + 1
        return counts

    def success_count(self) -> int:
        return sum(1 for t in self._tasks if t.status == STATUS_SUCCESS)

    def failure_count(self) -> int:
        return sum(1 for t in self._tasks if t.status == STATUS_FAILURE)
