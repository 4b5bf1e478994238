"""
Workflow runner

Combines graph, working directory arena, executor, publisher and
scheduler to run one workflow from start to end.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Union

from sampleflow.env import EnvRegistry
from sampleflow.exceptions import WorkflowAborted
from sampleflow.executor import LocalExecutor
from sampleflow.graph import WorkflowGraph
from sampleflow.publish import Publisher
from sampleflow.report import RunSummary
from sampleflow.scheduler import Scheduler
from sampleflow.task import WorkArena

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class Workflow:
    """Runs a workflow graph

    Args:
      graph: The workflow graph
      outdir: Root of the published output tree
      workdir: Root of the task working directories
      cpus: Global CPU budget (default: all cores)
      fail_fast: Abort on first failure
      cleanup: Remove the run's working directories after a fully
        successful run
      envs: Environment definitions
      run_id: Name of this run's working directory
      shell: Shell running the task scripts
      progress: Show a progress bar
      diagnostics: Messages about inputs, passed on to the summary
    """
    def __init__(
            self,
            graph: WorkflowGraph,
            outdir: Union[str, Path],
            workdir: Union[str, Path],
            cpus: Optional[int] = None,
            fail_fast: bool = False,
            cleanup: bool = False,
            envs: Optional[EnvRegistry] = None,
            run_id: Optional[str] = None,
            shell: str = "bash",
            progress: bool = False,
            diagnostics: Optional[List[str]] = None,
    ) -> None:
        graph.validate()
        self.graph = graph
        self.arena = WorkArena(workdir, run_id)
        self.publisher = Publisher(outdir)
        self.executor = LocalExecutor(self.arena, envs, shell)
        self.scheduler = Scheduler(
            graph, self.executor, self.publisher, cpus, fail_fast, progress
        )
        self.scheduler.check_budget()
        self.cleanup = cleanup
        self.diagnostics = list(diagnostics or [])

    async def run_async(self) -> RunSummary:
        log.info("Running %i stage(s) with up to %i cpus, work dir %s",
                 len(self.graph.stages), self.scheduler.cpus, self.arena.path)
        summary = await self.scheduler.run()
        summary.diagnostics[:0] = self.diagnostics
        if self.cleanup and summary.success and not summary.publish_errors:
            log.info("Removing work directory %s", self.arena.path)
            shutil.rmtree(self.arena.path, ignore_errors=True)
        return summary

    def run(self) -> RunSummary:
        """Run the workflow

        Raises:
          WorkflowAborted: if interrupted by the user. Running
            processes are terminated; work directories are kept.
        """
        try:
            return asyncio.run(self.run_async())
        except KeyboardInterrupt:
            raise WorkflowAborted(
                f"Interrupted; work directories left in {self.arena.path}"
            ) from None


def run_pipeline(
        cfg,
        name: str,
        input_dirs: Optional[Dict[str, str]] = None,
        run_id: Optional[str] = None,
        progress: bool = False,
) -> RunSummary:
    """Run configured pipeline ``name``

    Args:
      cfg: The `ConfigMgr`
      name: Name of the pipeline
      input_dirs: Overrides of input directories by input name
    Raises:
      EmptyChannelError: if a required input has no files
      ConfigurationError: if the configuration is invalid
    """
    pipeline = cfg.get_pipeline(name)
    graph, diagnostics = pipeline.build_graph(cfg.get_stage, input_dirs)
    workflow = Workflow(
        graph,
        outdir=cfg.outdir,
        workdir=cfg.workdir,
        cpus=cfg.cpus,
        fail_fast=cfg.fail_fast,
        cleanup=cfg.cleanup,
        envs=cfg.envs,
        run_id=run_id,
        shell=cfg.shell,
        progress=progress,
        diagnostics=diagnostics,
    )
    return workflow.run()
