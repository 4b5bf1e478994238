"""
Run summary

Collects the outcome of every task of a run and decides the exit
status. The per sample and stage table is available as
`pandas.DataFrame` and can be written as TSV trace file.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import pandas as pd  # type: ignore

from sampleflow.exceptions import PublishError
from sampleflow.task import TaskInstance, TaskStatus

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class RunSummary:
    """Outcome of a workflow run

    Args:
      tasks: All task instances (including all attempts)
      publish_errors: Publishing failures
      aborted: Whether the run was aborted
      not_started: Tasks that were ready but never dispatched
      diagnostics: Messages about inputs, e.g. empty optional channels
      peak_cpus: Maximum number of cpus in use at the same time
    """
    COLUMNS = ["stage", "sample", "occurrence", "attempt", "status", "ignored",
               "exit_code", "cpus", "duration", "work_dir", "error"]

    def __init__(
            self,
            tasks: List[TaskInstance],
            publish_errors: Optional[List[PublishError]] = None,
            aborted: bool = False,
            not_started: Optional[List[TaskInstance]] = None,
            diagnostics: Optional[List[str]] = None,
            peak_cpus: int = 0,
    ) -> None:
        self.tasks = list(tasks)
        self.publish_errors = list(publish_errors or [])
        self.aborted = aborted
        self.not_started = list(not_started or [])
        self.diagnostics = list(diagnostics or [])
        self.peak_cpus = peak_cpus

    def __repr__(self):
        return (f"{self.__class__.__name__}(tasks={len(self.tasks)},"
                f" failed={len(self.failed)}, success={self.success})")

    @property
    def final_tasks(self) -> List[TaskInstance]:
        """Last attempt of each task"""
        final: Dict[Tuple[str, str, int], TaskInstance] = OrderedDict()
        for task in self.tasks:
            final[(task.stage.name, task.sample, task.occurrence)] = task
        return list(final.values())

    @property
    def failed(self) -> List[TaskInstance]:
        """Finally failed tasks of stages without ignore policy"""
        return [
            task for task in self.final_tasks
            if task.status == TaskStatus.FAILED and not task.ignored
        ]

    @property
    def ignored(self) -> List[TaskInstance]:
        return [task for task in self.final_tasks if task.ignored]

    @property
    def succeeded(self) -> List[TaskInstance]:
        return [task for task in self.final_tasks if task.status == TaskStatus.SUCCEEDED]

    @property
    def success(self) -> bool:
        """True if the run completed without (non-ignored) failure"""
        return not self.aborted and not self.failed

    def status_of(self, sample: str, stage: str) -> List[TaskStatus]:
        """Final status of each task of ``stage`` for ``sample``"""
        return [
            task.status for task in self.final_tasks
            if task.sample == sample and task.stage.name == stage
        ]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per task attempt"""
        rows = [
            {
                "stage": task.stage.name,
                "sample": task.sample,
                "occurrence": task.occurrence,
                "attempt": task.attempt,
                "status": task.status.value,
                "ignored": task.ignored,
                "exit_code": task.exit_code,
                "cpus": task.stage.cpus,
                "duration": task.duration,
                "work_dir": str(task.work_dir) if task.work_dir else None,
                "error": str(task.error) if task.error else None,
            }
            for task in self.tasks
        ]
        return pd.DataFrame(rows, columns=self.COLUMNS)

    def status_table(self) -> pd.DataFrame:
        """Final status by sample (rows) and stage (columns)"""
        df = self.to_dataframe()
        if df.empty:
            return df
        df = df.drop_duplicates(subset=["stage", "sample", "occurrence"], keep="last")
        return df.pivot_table(
            index="sample", columns="stage", values="status",
            aggfunc=lambda values: ",".join(values), sort=False
        )

    def write_tsv(self, path) -> None:
        """Write trace file"""
        self.to_dataframe().to_csv(path, sep="\t", index=False)

    def log_summary(self) -> None:
        for message in self.diagnostics:
            log.warning("%s", message)
        for error in self.publish_errors:
            log.warning("Publish error: %s", error)
        counts = ", ".join([
            f"{len(self.succeeded)} succeeded",
            f"{len(self.failed)} failed",
            f"{len(self.ignored)} ignored",
        ])
        if self.not_started:
            counts += f", {len(self.not_started)} not started"
        log.warning("Tasks: %s", counts)
        for task in self.failed:
            log.error("Failed: %s (%s)", task.name, task.error)
        if self.aborted:
            log.error("Run was aborted")
