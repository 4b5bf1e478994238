"""Pipelines Module

Contains classes for pre-configured pipelines: named inputs and the
stages their samples flow through.
"""

import logging
import os

from collections import OrderedDict
from collections.abc import Mapping
from typing import Callable, Dict, List, Optional, Tuple

from sampleflow.channel import DEFAULT_MATE_PATTERN, Channel, concat
from sampleflow.common import ensure_list
from sampleflow.exceptions import ConfigurationError
from sampleflow.graph import WorkflowGraph
from sampleflow.ids import make_id_strategy, make_id_transform
from sampleflow.stage.base import ConfigStage


log = logging.getLogger(__name__)  # pylint: disable=invalid-name

#: Name of the channel holding the concatenation of all inputs
INPUT_CHANNEL = "input"


class InputSpec:
    """Configured input of a pipeline

    Example:
        inputs:
          reads:
            dir: !workdir raw
            glob: "*.fastq.gz"
            pairs: true
            required: false
            id:
              strip_suffix: .fastq.gz
            rename:
              - ["^Sample_", ""]
    """
    KEYS = ("dir", "glob", "id", "pairs", "rename", "required")

    def __init__(self, name: str, cfg) -> None:
        if not isinstance(cfg, Mapping):
            raise ConfigurationError(cfg, f"Input '{name}' must be a mapping")
        unknown = [key for key in cfg if key not in self.KEYS]
        if unknown:
            raise ConfigurationError(
                cfg, f"Unknown key '{unknown[0]}' in input '{name}'", key=unknown[0]
            )
        if not cfg.get("dir"):
            raise ConfigurationError(cfg, f"Input '{name}' must have a 'dir'")
        self.name = name
        self.cfg = cfg
        self.dir = cfg.get_path("dir", absolute=True) if hasattr(cfg, "get_path") \
            else os.path.abspath(cfg["dir"])
        self.glob = str(cfg.get("glob") or "*.fastq.gz")
        self.required = bool(cfg.get("required", True))
        pairs = cfg.get("pairs", False)
        if pairs is True:
            self.mate_pattern: Optional[str] = DEFAULT_MATE_PATTERN
        elif pairs:
            self.mate_pattern = str(pairs)
        else:
            self.mate_pattern = None
        self.id_strategy = make_id_strategy(cfg.get("id"))
        self.rename = make_id_transform(cfg.get("rename")) if cfg.get("rename") else None

    def __repr__(self):
        return f"{self.__class__.__name__}({self.name!r}, {self.pattern()!r})"

    def pattern(self, directory: Optional[str] = None) -> str:
        return os.path.join(directory or self.dir, self.glob)

    def make_channel(self, directory: Optional[str] = None) -> Channel:
        """Discover files of this input

        Args:
          directory: Overrides the configured directory
        Raises:
          EmptyChannelError: if required and nothing matches
        """
        channel = Channel.from_glob(
            self.pattern(directory), self.id_strategy, self.required, self.name
        )
        if self.mate_pattern:
            channel = channel.pair(self.mate_pattern)
        if self.rename:
            channel = channel.map_ids(self.rename)
        return channel


class Pipeline(ConfigStage):
    """
    A named workflow: inputs and a sequence of stages.

    Pipelines are configured via ``sampleflow.yml``. By default, the
    first stage consumes the concatenation of all inputs (in the order
    listed) and each further stage consumes the output of the stage
    before it. Stages may name their sources with ``from``, listing
    inputs, stages or ``input`` for the concatenation.

    Example:
        pipelines:
          my_pipeline:
            doc: Trim and assemble
            inputs:
              reads:
                dir: raw
            stages:
              - trim
              - assemble
              - qc:
                  from: [trim, assemble]
    """
    def __init__(self, name: str, cfg) -> None:
        super().__init__(name, cfg)
        self.doc(cfg.get("doc") or "")

        if not cfg.get("inputs"):
            raise ConfigurationError(cfg, f"Pipeline '{name}' must have 'inputs'")
        if not isinstance(cfg.inputs, Mapping):
            raise ConfigurationError(cfg, "Pipeline inputs must be a mapping", key="inputs")
        #: Inputs by name, in configured order
        self.inputs: Dict[str, InputSpec] = OrderedDict(
            (input_name, InputSpec(input_name, cfg.inputs[input_name]))
            for input_name in cfg.inputs
        )

        #: Dictionary of stage names with the names of their sources
        self.stages: Dict[str, List[str]] = OrderedDict()
        if not cfg.get("stages"):
            raise ConfigurationError(cfg, f"Pipeline '{name}' must have stages entry")
        prev = INPUT_CHANNEL
        for index, stage in enumerate(cfg.stages):
            if stage is None:
                raise ConfigurationError(self, f"Empty stage name in pipeline '{name}'")
            if isinstance(stage, str):
                stage_name = stage
                stage_cfg = {}
            else:
                stage_name = next(iter(stage))
                stage_cfg = stage[stage_name] or {}
            if stage_name in self.stages:
                raise ConfigurationError(
                    cfg.stages, f"Stage '{stage_name}' listed twice in pipeline '{name}'",
                    key=index
                )
            self.stages[stage_name] = ensure_list(stage_cfg.get("from"), str) \
                or [prev]
            prev = stage_name

    def build_graph(
            self,
            get_stage: Callable,
            input_dirs: Optional[Dict[str, str]] = None,
    ) -> Tuple[WorkflowGraph, List[str]]:
        """Create workflow graph for this pipeline

        Args:
          get_stage: Returns the configured `Stage` for a name
          input_dirs: Overrides of input directories by input name
        Returns:
          The validated graph and diagnostic messages about empty inputs
        Raises:
          EmptyChannelError: if a required input has no files
          ConfigurationError: if the pipeline is malformed
        """
        input_dirs = dict(input_dirs or {})
        unknown = set(input_dirs) - set(self.inputs)
        if unknown:
            raise ConfigurationError(
                self,
                f"Pipeline '{self.name}' has no input(s) {', '.join(sorted(unknown))}"
                f" (has: {', '.join(self.inputs)})"
            )
        diagnostics: List[str] = []
        graph = WorkflowGraph()
        channels = []
        for input_name, spec in self.inputs.items():
            channel = spec.make_channel(input_dirs.get(input_name))
            if not channel:
                diagnostics.append(
                    f"Input '{input_name}' of pipeline '{self.name}' is empty"
                    f" (pattern '{spec.pattern(input_dirs.get(input_name))}')"
                )
            channels.append(channel)
            graph.add_channel(input_name, channel)

        def no_input():
            message = f"Pipeline '{self.name}' has no input samples"
            log.warning(message)
            diagnostics.append(message)

        if INPUT_CHANNEL not in self.inputs:
            graph.add_channel(INPUT_CHANNEL, concat(*channels).if_empty(no_input))
        for stage_name, sources in self.stages.items():
            graph.add_stage(get_stage(stage_name), sources)
        graph.validate()
        return graph, diagnostics
