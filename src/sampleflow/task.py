"""
Task instances and their working directories
"""

import enum
import logging
import time
import uuid
from pathlib import Path
from typing import Optional, Union

from sampleflow.channel import SampleTuple
from sampleflow.exceptions import ChannelError, TaskExecutionError, TaskStateError

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class TaskStatus(enum.Enum):
    """Lifecycle of a task"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


class TaskInstance:
    """One execution of a stage for one sample tuple

    A retry is a new instance with ``attempt`` incremented. Status
    changes only forward (``PENDING -> RUNNING -> SUCCEEDED|FAILED``).
    Terminal states cannot be left.

    Args:
      stage: The stage to run
      input: The input tuple
      occurrence: Counts how often this sample id reached this stage
        before (0 for the first time)
      attempt: Attempt number, starting at 1
    """
    def __init__(self, stage, input: SampleTuple,  # pylint: disable=redefined-builtin
                 occurrence: int = 0, attempt: int = 1) -> None:
        self.stage = stage
        self.input = input
        self.occurrence = occurrence
        self.attempt = attempt
        self.work_dir: Optional[Path] = None
        self.exit_code: Optional[int] = None
        self.output: Optional[SampleTuple] = None
        self.error: Optional[TaskExecutionError] = None
        self.started: Optional[float] = None
        self.finished: Optional[float] = None
        #: Failure dropped under ``error_strategy: ignore``
        self.ignored = False
        self._status = TaskStatus.PENDING

    def __repr__(self):
        return (f"{self.__class__.__name__}({self.stage.name}:{self.sample}"
                f"#{self.attempt} {self._status.value})")

    @property
    def sample(self) -> str:
        return self.input.id

    @property
    def name(self) -> str:
        """Human readable task identifier"""
        suffix = f"~{self.occurrence + 1}" if self.occurrence else ""
        return f"{self.stage.name}:{self.sample}{suffix}"

    @property
    def status(self) -> TaskStatus:
        return self._status

    def _transition(self, new: TaskStatus) -> None:
        if self._status.terminal:
            raise TaskStateError(
                f"Task {self.name} is {self._status.value}, cannot become {new.value}"
            )
        if new == TaskStatus.RUNNING and self._status != TaskStatus.PENDING:
            raise TaskStateError(f"Task {self.name} is already {self._status.value}")
        self._status = new

    def start(self) -> None:
        self._transition(TaskStatus.RUNNING)
        self.started = time.time()

    def succeed(self, output: SampleTuple) -> None:
        if self._status != TaskStatus.RUNNING:
            raise TaskStateError(f"Task {self.name} cannot succeed without running")
        self._transition(TaskStatus.SUCCEEDED)
        self.output = output
        self.finished = time.time()

    def fail(self, error: TaskExecutionError) -> None:
        self._transition(TaskStatus.FAILED)
        self.error = error
        if error.exit_code is not None:
            self.exit_code = error.exit_code
        self.finished = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started is None or self.finished is None:
            return None
        return self.finished - self.started

    def retry(self) -> "TaskInstance":
        """New instance for the next attempt of this task"""
        return TaskInstance(self.stage, self.input, self.occurrence, self.attempt + 1)


class WorkArena:
    """Allocates isolated working directories

    Layout: ``<root>/<run_id>/<stage>/<sample>[~N]/attempt-<K>``, where
    ``N`` counts repeated arrivals of the same sample id at the same
    stage. Directories are created exclusively, so no two tasks ever
    share one.

    Args:
      root: Base directory for all runs
      run_id: Name of this run's subdirectory (default: timestamp and random suffix)
    """
    def __init__(self, root: Union[str, Path], run_id: Optional[str] = None) -> None:
        self.root = Path(root).absolute()
        self.run_id = run_id or f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
        self.path = self.root / self.run_id

    def __repr__(self):
        return f"{self.__class__.__name__}({str(self.path)!r})"

    def allocate(self, task: TaskInstance) -> Path:
        """Create the working directory for ``task``

        Raises:
          ChannelError: if the sample id cannot be used as directory name
          FileExistsError: if the directory exists already
        """
        sample = task.sample
        if not sample or "/" in sample or sample in (".", ".."):
            raise ChannelError(f"Sample id '{sample}' cannot be used as directory name")
        name = f"{sample}~{task.occurrence + 1}" if task.occurrence else sample
        path = self.path / task.stage.name / name / f"attempt-{task.attempt}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.mkdir(exist_ok=False)
        task.work_dir = path
        return path
