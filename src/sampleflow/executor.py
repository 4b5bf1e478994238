"""
Runs task scripts as local processes

Each task runs ``bash .command.sh`` inside its own working directory
in a new process group. Standard output and error go to
``.command.out`` and ``.command.err``, the exit status to
``.exitcode``. When the awaiting coroutine is cancelled, the whole
process group is terminated and the working directory is left as is.
"""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Dict, List, Optional

from sampleflow.channel import SampleTuple
from sampleflow.env import EnvRegistry
from sampleflow.exceptions import ChannelError, TaskExecutionError
from sampleflow.task import TaskInstance, WorkArena

log = logging.getLogger(__name__)  # pylint: disable=invalid-name

COMMAND_FILE = ".command.sh"
STDOUT_FILE = ".command.out"
STDERR_FILE = ".command.err"
EXITCODE_FILE = ".exitcode"

#: Files in each task directory written by the engine
CONTROL_FILES = frozenset((COMMAND_FILE, STDOUT_FILE, STDERR_FILE, EXITCODE_FILE))

#: Number of stderr lines attached to task errors
STDERR_TAIL = 20


def tail(path: Path, lines: int = STDERR_TAIL) -> str:
    """Last ``lines`` lines of file ``path`` (empty if missing)"""
    try:
        with open(path, "r", errors="replace") as fdes:
            return "".join(fdes.readlines()[-lines:])
    except FileNotFoundError:
        return ""


class LocalExecutor:
    """Executes tasks as local subprocesses

    Args:
      arena: Provides the working directories
      envs: Environments for activation lines
      shell: Shell running the task scripts
      term_grace: Seconds between SIGTERM and SIGKILL on abort
    """
    def __init__(
            self,
            arena: WorkArena,
            envs: Optional[EnvRegistry] = None,
            shell: str = "bash",
            term_grace: float = 5.0,
    ) -> None:
        self.arena = arena
        self.envs = envs or EnvRegistry()
        self.shell = shell
        self.term_grace = term_grace
        self._procs: Dict[int, asyncio.subprocess.Process] = {}

    @property
    def running(self) -> int:
        """Number of live processes"""
        return len(self._procs)

    def materialize_inputs(self, task: TaskInstance) -> List[str]:
        """Symlink input files into the task directory

        Links are named like the input file. If that name is taken,
        ``<index>_<name>`` is used instead.

        Returns:
          The link names, in input order
        """
        names: List[str] = []
        for index, path in enumerate(task.input.files):
            name = path.name
            if name in names or name in CONTROL_FILES:
                name = f"{index}_{path.name}"
            (task.work_dir / name).symlink_to(Path(path).absolute())
            names.append(name)
        return names

    def write_script(self, task: TaskInstance, inputs: List[str]) -> Path:
        script = task.stage.render(task.sample, inputs, task.work_dir, task.attempt)
        lines = ["#!/usr/bin/env bash", "set -euo pipefail"]
        lines.extend(self.envs.activation_lines(task.stage.env))
        lines.append(script.rstrip("\n"))
        path = task.work_dir / COMMAND_FILE
        with open(path, "w") as fdes:
            fdes.write("\n".join(lines) + "\n")
        return path

    def environment(self, task: TaskInstance) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            "SAMPLEFLOW_CPUS": str(task.stage.cpus),
            "SAMPLEFLOW_SAMPLE": task.sample,
            "SAMPLEFLOW_ATTEMPT": str(task.attempt),
        })
        return env

    def prepare(self, task: TaskInstance) -> List[str]:
        """Allocate working directory, link inputs and write script

        Raises:
          TaskExecutionError: if the task cannot be set up
        """
        stage = task.stage
        if stage.inputs is not None and len(task.input.files) != stage.inputs:
            raise TaskExecutionError(
                task,
                f"Stage {stage.name} expects {stage.inputs} input files per sample,"
                f" got {len(task.input.files)} for {task.sample}"
            )
        try:
            self.arena.allocate(task)
            inputs = self.materialize_inputs(task)
            self.write_script(task, inputs)
        except ChannelError as exc:
            raise TaskExecutionError(task, str(exc)) from exc
        except OSError as exc:
            raise TaskExecutionError(task, f"Failed to set up task directory: {exc}") from exc
        except (IndexError, KeyError, AttributeError, TypeError, ValueError) as exc:
            raise TaskExecutionError(
                task, f"Failed to render script of stage {stage.name}: {exc!r}"
            ) from exc
        return inputs

    async def run(self, task: TaskInstance) -> TaskInstance:
        """Run ``task`` to completion

        Task failures are recorded on the task, not raised. If the
        coroutine is cancelled, the process is terminated, the task
        marked failed and `asyncio.CancelledError` re-raised.
        """
        task.start()
        try:
            inputs = self.prepare(task)
        except TaskExecutionError as exc:
            log.error("Task %s failed: %s", task.name, exc)
            task.fail(exc)
            return task
        except Exception as exc:  # pylint: disable=broad-except
            error = TaskExecutionError(task, f"Failed to set up task {task.name}: {exc!r}")
            log.error("%s", error)
            task.fail(error)
            return task

        log.debug("Starting task %s in %s", task.name, task.work_dir)
        try:
            exit_code = await self._execute(task)
        except asyncio.CancelledError:
            task.fail(TaskExecutionError(
                task, f"Task {task.name} was aborted", exit_code=task.exit_code,
                stderr=tail(task.work_dir / STDERR_FILE)
            ))
            raise
        except OSError as exc:
            task.fail(TaskExecutionError(task, f"Failed to start task {task.name}: {exc}"))
            return task

        task.exit_code = exit_code
        if exit_code != 0:
            stderr = tail(task.work_dir / STDERR_FILE)
            error = TaskExecutionError(
                task,
                f"Task {task.name} failed with exit code {exit_code}"
                f" (see {task.work_dir})",
                exit_code=exit_code,
                stderr=stderr,
            )
            log.error("%s\n%s", error, stderr.rstrip())
            task.fail(error)
            return task

        try:
            files, missing = task.stage.collect_outputs(
                task.work_dir, task.sample, set(inputs) | CONTROL_FILES
            )
        except Exception as exc:  # pylint: disable=broad-except
            error = TaskExecutionError(
                task, f"Failed to collect outputs of task {task.name}: {exc!r}",
                exit_code=exit_code,
            )
            log.error("%s", error)
            task.fail(error)
            return task
        if missing:
            error = TaskExecutionError(
                task,
                f"Task {task.name} produced no file matching required output(s)"
                f" {', '.join(repr(out.pattern) for out in missing)} (see {task.work_dir})",
                exit_code=exit_code,
                stderr=tail(task.work_dir / STDERR_FILE),
            )
            log.error("%s", error)
            task.fail(error)
            return task

        task.succeed(SampleTuple(task.sample, tuple(files)))
        log.debug("Task %s finished: %s", task.name, ", ".join(f.name for f in files))
        return task

    async def _execute(self, task: TaskInstance) -> int:
        work_dir = task.work_dir
        with open(work_dir / STDOUT_FILE, "wb") as out, \
             open(work_dir / STDERR_FILE, "wb") as err:
            proc = await asyncio.create_subprocess_exec(
                self.shell, COMMAND_FILE,
                cwd=str(work_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                env=self.environment(task),
                start_new_session=True,
            )
        self._procs[proc.pid] = proc
        try:
            exit_code = await proc.wait()
        except asyncio.CancelledError:
            await self.terminate(proc)
            task.exit_code = proc.returncode
            self._write_exitcode(work_dir, proc.returncode)
            raise
        finally:
            self._procs.pop(proc.pid, None)
        self._write_exitcode(work_dir, exit_code)
        return exit_code

    @staticmethod
    def _write_exitcode(work_dir: Path, exit_code: Optional[int]) -> None:
        with open(work_dir / EXITCODE_FILE, "w") as fdes:
            fdes.write(f"{exit_code}\n")

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Stop process group of ``proc``

        Sends SIGTERM, then SIGKILL if the process has not exited
        after `term_grace` seconds.
        """
        if proc.returncode is not None:
            return
        log.warning("Terminating process %i", proc.pid)
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self.term_grace)
        except asyncio.TimeoutError:
            log.warning("Killing process %i", proc.pid)
            self._signal(proc, signal.SIGKILL)
            await proc.wait()

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
