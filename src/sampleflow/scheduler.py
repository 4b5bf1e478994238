"""
Dispatches tasks under a global CPU budget

The scheduler owns all mutable run state. It runs on a single asyncio
event loop: tasks run as external processes, the loop awaits their
exit and, for each completion, forwards the output tuple to the
consumers of the finished stage.

Ready tasks are ordered by ``(epoch, stage order, arrival)``. Tuples of
the source channels are ready in epoch 0. Each completion opens a new
epoch, so tasks made ready by earlier completions are dispatched
first. Dispatch always takes the head of the queue; if it does not
fit into the free budget, nothing else is started until it does.
"""

import asyncio
import heapq
import itertools
import logging
import os
from collections import Counter
from typing import Dict, List, Optional, Tuple

from tqdm import tqdm  # type: ignore

from sampleflow.channel import SampleTuple
from sampleflow.exceptions import ConfigurationError
from sampleflow.executor import LocalExecutor
from sampleflow.graph import StageNode, WorkflowGraph
from sampleflow.publish import Publisher
from sampleflow.report import RunSummary
from sampleflow.task import TaskInstance, TaskStatus

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class Scheduler:
    """Runs a workflow graph

    Args:
      graph: The validated workflow graph
      executor: Runs individual tasks
      publisher: Publishes outputs of succeeded tasks (None to disable)
      cpus: Global CPU budget (default: number of cores)
      fail_fast: Abort the run on the first failure of a stage
        without ``ignore`` policy
      progress: Show progress bar
    """
    def __init__(
            self,
            graph: WorkflowGraph,
            executor: LocalExecutor,
            publisher: Optional[Publisher] = None,
            cpus: Optional[int] = None,
            fail_fast: bool = False,
            progress: bool = False,
    ) -> None:
        self.graph = graph
        self.executor = executor
        self.publisher = publisher
        self.cpus = cpus or os.cpu_count() or 1
        self.fail_fast = fail_fast
        self.progress = progress

        #: CPUs used by running tasks
        self.cpus_in_use = 0
        #: Maximum of `cpus_in_use` seen
        self.peak_cpus = 0
        #: Names of tasks in the order they were started
        self.dispatch_order: List[str] = []
        #: All task instances, in creation order
        self.tasks: List[TaskInstance] = []

        self._queue: List[Tuple[int, int, int, TaskInstance]] = []
        self._epoch = 0
        self._seq = itertools.count()
        self._arrivals: Counter = Counter()
        self._running: Dict[asyncio.Task, TaskInstance] = {}
        self._publishing: List[asyncio.Task] = []
        self._aborted = False
        self._bar = None

    def check_budget(self) -> None:
        """Verify that every stage fits into the CPU budget

        Raises:
          ConfigurationError: if a stage requests more cpus than available
        """
        if not isinstance(self.cpus, int) or self.cpus < 1:
            raise ConfigurationError(self, f"CPU budget must be a positive integer (got {self.cpus!r})")
        for stage in self.graph.stages:
            if stage.cpus > self.cpus:
                raise ConfigurationError(
                    stage,
                    f"Stage '{stage.name}' requests {stage.cpus} cpus,"
                    f" but the budget is {self.cpus}"
                )

    def _enqueue(self, node: StageNode, item: SampleTuple) -> None:
        occurrence = self._arrivals[(node.name, item.id)]
        self._arrivals[(node.name, item.id)] += 1
        self._push(TaskInstance(node.stage, item, occurrence), node.order)

    def _push(self, task: TaskInstance, order: int) -> None:
        self.tasks.append(task)
        heapq.heappush(self._queue, (self._epoch, order, next(self._seq), task))
        if self._bar is not None:
            self._bar.total += 1
            self._bar.refresh()

    def _emit(self, source: str, item: SampleTuple) -> None:
        for node in self.graph.consumers(source):
            self._enqueue(node, item)

    def _dispatch(self) -> None:
        while self._queue and not self._aborted:
            task = self._queue[0][3]
            if self.cpus_in_use + task.stage.cpus > self.cpus:
                break
            heapq.heappop(self._queue)
            self.cpus_in_use += task.stage.cpus
            self.peak_cpus = max(self.peak_cpus, self.cpus_in_use)
            self.dispatch_order.append(task.name)
            log.info("Starting %s (attempt %i, %i cpus)", task.name, task.attempt, task.stage.cpus)
            self._running[asyncio.ensure_future(self.executor.run(task))] = task

    def _complete(self, task: TaskInstance) -> None:
        """Handle finished task; opens a new epoch"""
        self.cpus_in_use -= task.stage.cpus
        self._epoch += 1
        if self._bar is not None:
            self._bar.update(1)
        if task.status == TaskStatus.SUCCEEDED:
            log.info("Finished %s", task.name)
            self._emit(task.stage.name, task.output)
            if self.publisher is not None:
                self._publishing.append(asyncio.ensure_future(self.publisher.publish(task)))
            return
        if task.attempt <= task.stage.retries:
            log.warning("Retrying %s (attempt %i of %i)",
                        task.name, task.attempt + 1, task.stage.retries + 1)
            node = self.graph.node(task.stage.name)
            self._push(task.retry(), node.order)
            return
        if self.publisher is not None:
            self._publishing.append(asyncio.ensure_future(self.publisher.skip(task)))
        if task.stage.ignore_errors:
            task.ignored = True
            log.warning("Ignoring failure of %s, dropping sample %s", task.name, task.sample)
            return
        log.error("Task %s failed, sample %s will not be processed further",
                  task.name, task.sample)
        if self.fail_fast:
            self._aborted = True

    async def _abort(self, cancel_publishing: bool = False) -> None:
        """Cancel running tasks and wait for their processes to end"""
        self._aborted = True
        for future in self._running:
            future.cancel()
        if self._running:
            log.warning("Terminating %i running task(s)", len(self._running))
            await asyncio.gather(*self._running, return_exceptions=True)
        unfinished = list(self._running.values()) + [entry[3] for entry in self._queue]
        for task in self._running.values():
            self.cpus_in_use -= task.stage.cpus
        self._running.clear()
        if cancel_publishing:
            for future in self._publishing:
                future.cancel()
        elif self.publisher is not None:
            for task in unfinished:
                await self.publisher.skip(task)
        await asyncio.gather(*self._publishing, return_exceptions=cancel_publishing)

    async def run(self) -> RunSummary:
        """Run all tasks reachable from the graph's channels

        Returns:
          Summary of the run. Task failures do not raise.
        """
        self.check_budget()
        self._bar = tqdm(total=0, unit="task", desc="tasks", disable=not self.progress)
        try:
            for name, channel in self.graph.channels.items():
                for item in channel:
                    self._emit(name, item)
            self._dispatch()
            while self._running:
                done, _ = await asyncio.wait(
                    list(self._running), return_when=asyncio.FIRST_COMPLETED
                )
                # process simultaneous completions in creation order
                for future in sorted(done, key=lambda f: self.tasks.index(self._running[f])):
                    task = self._running.pop(future)
                    future.result()
                    self._complete(task)
                if self._aborted:
                    log.error("Aborting run after failure")
                    await self._abort()
                    break
                self._dispatch()
            await asyncio.gather(*self._publishing)
        except asyncio.CancelledError:
            log.error("Run cancelled")
            await self._abort(cancel_publishing=True)
            raise
        except Exception:
            log.error("Run failed unexpectedly, terminating running tasks")
            await self._abort(cancel_publishing=True)
            raise
        finally:
            self._bar.close()
            self._bar = None
            if self.publisher is not None:
                self.publisher.finish()

        pending = [entry[3] for entry in self._queue]
        self._queue.clear()
        return RunSummary(
            tasks=self.tasks,
            publish_errors=list(self.publisher.errors) if self.publisher else [],
            aborted=self._aborted,
            not_started=pending,
            peak_cpus=self.peak_cpus,
        )
