"""
Workflow graph

The graph connects named source channels and stages. Each stage lists
its sources, which are channel names or names of other stages. A
stage receives every tuple emitted by any of its sources and emits its
own output tuples to every stage naming it as source. Readiness of a
task depends only on these edges, so fan-in and fan-out need no
special treatment.

>>> graph = WorkflowGraph()
>>> graph.add_channel("reads", Channel.from_glob("raw/*.fastq.gz"))
>>> graph.add_stage(trim, "reads")
>>> graph.add_stage(assemble, "trim")
>>> graph.validate()
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Union

from sampleflow.channel import Channel
from sampleflow.common import ensure_list
from sampleflow.exceptions import ConfigurationError

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class StageNode:
    """A stage and the names of its sources"""
    def __init__(self, stage, sources: List[str], order: int) -> None:
        self.stage = stage
        self.sources = sources
        self.order = order

    @property
    def name(self) -> str:
        return self.stage.name

    def __repr__(self):
        return f"{self.__class__.__name__}({self.name!r} <- {self.sources!r})"


class WorkflowGraph:
    """Directed acyclic graph of channels and stages"""
    def __init__(self) -> None:
        self.channels: Dict[str, Channel] = OrderedDict()
        self._nodes: List[StageNode] = []
        self._duplicates: List[str] = []

    def __repr__(self):
        return (f"{self.__class__.__name__}(channels={list(self.channels)!r},"
                f" stages={[node.name for node in self._nodes]!r})")

    def _check_name(self, name: str) -> None:
        if name in self.channels or any(node.name == name for node in self._nodes):
            self._duplicates.append(name)

    def add_channel(self, name: str, channel: Channel) -> None:
        """Add source channel ``name``"""
        self._check_name(name)
        self.channels.setdefault(name, channel)

    def add_stage(self, stage, sources: Union[str, Iterable[str]]) -> StageNode:
        """Add ``stage`` consuming the tuples of ``sources``

        Stages are ordered by the sequence of calls to this method.
        This order breaks ties in the scheduler's ready queue.
        """
        self._check_name(stage.name)
        node = StageNode(stage, ensure_list(sources, str), len(self._nodes))
        self._nodes.append(node)
        return node

    @property
    def nodes(self) -> List[StageNode]:
        return list(self._nodes)

    @property
    def stages(self) -> List:
        return [node.stage for node in self._nodes]

    def node(self, name: str) -> StageNode:
        for node in self._nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    def consumers(self, source: str) -> List[StageNode]:
        """Nodes receiving the tuples of ``source``, in declaration order"""
        return [node for node in self._nodes if source in node.sources]

    def validate(self) -> None:
        """Check graph structure and stage directives

        Raises:
          ConfigurationError: for duplicate names, unknown sources,
            stages without sources, cycles or invalid stages
        """
        if self._duplicates:
            name = self._duplicates[0]
            obj = self.node(name).stage if name not in self.channels else self
            raise ConfigurationError(
                obj, f"Name '{name}' used more than once in workflow graph"
            )
        stage_names = {node.name for node in self._nodes}
        for node in self._nodes:
            if not node.sources:
                raise ConfigurationError(node.stage, f"Stage '{node.name}' has no source")
            for source in node.sources:
                if source not in self.channels and source not in stage_names:
                    raise ConfigurationError(
                        node.stage,
                        f"Stage '{node.name}' consumes unknown source '{source}'"
                        f" (have: {', '.join(list(self.channels) + sorted(stage_names))})"
                    )
            node.stage.validate()
        self.topological_order()
        for name in self.channels:
            if not self.consumers(name):
                log.debug("Channel '%s' is not consumed by any stage", name)

    def topological_order(self) -> List[StageNode]:
        """Stage nodes such that sources come before consumers

        Raises:
          ConfigurationError: if the graph has a cycle
        """
        order: List[StageNode] = []
        state: Dict[str, int] = {}  # 1 visiting, 2 done

        def visit(node: StageNode, path: List[str]) -> None:
            if state.get(node.name) == 2:
                return
            if state.get(node.name) == 1:
                cycle = path[path.index(node.name):] + [node.name]
                raise ConfigurationError(
                    node.stage, f"Cycle in workflow graph: {' -> '.join(cycle)}"
                )
            state[node.name] = 1
            for source in node.sources:
                if source in self.channels:
                    continue
                try:
                    visit(self.node(source), path + [node.name])
                except KeyError:
                    pass
            state[node.name] = 2
            order.append(node)

        for node in self._nodes:
            visit(node, [])
        return order

    @classmethod
    def chain(cls, stages: Iterable, channel: Channel,
              name: Optional[str] = None) -> "WorkflowGraph":
        """Build straight chain ``channel -> stages[0] -> stages[1] -> ...``"""
        graph = cls()
        source = name or channel.name or "input"
        graph.add_channel(source, channel)
        for stage in stages:
            graph.add_stage(stage, source)
            source = stage.name
        return graph

    def get_fileline(self, key=None):
        return None, None
