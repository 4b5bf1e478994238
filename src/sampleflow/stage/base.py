"""
Base classes for all Stage types
"""

import logging

from typing import Optional

from sampleflow.yaml import MultiProxy


log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class BaseStage:
    """Base class for stage types"""

    #: Name of file defining this stage (None if created in code)
    filename: Optional[str] = None

    #: Line number within `filename` at which this stage is defined
    lineno: Optional[int] = None

    def __init__(self, name: str) -> None:
        #: The name of the stage is a string uniquely identifying it
        #: among all stages in a graph.
        self.name = name

        #: The docstring describing this stage. Visible via
        #: ``sampleflow stage list``.
        self.docstring: Optional[str] = None

    def __str__(self) -> str:
        """Cast to string we just emit our name"""
        return self.name

    def __repr__(self):
        """Using `repr()` we emit the subclass as well as our name"""
        return f"{self.__class__.__name__}({self!s})"

    def doc(self, doc: str) -> None:
        """Add documentation to Stage

        Args:
          doc: Docstring shown in stage listings
        """
        self.docstring = doc

    def match(self, name: str) -> bool:
        """Check if the ``name`` can refer to this stage"""
        return name == self.name


class ConfigStage(BaseStage):
    """Base for stages created via configuration

    These Stages derive from the ``sampleflow.yml`` and not from code.
    """
    def __init__(self, name: str, cfg: 'MultiProxy', *args, **kwargs):
        #: Semi-colon separated list of file names defining this Stage.
        self.filename = ';'.join(cfg.get_files())
        #: Line number within the first file at which this Stage is defined.
        self.lineno = next(iter(cfg.get_linenos()), None)
        #: The configuration object defining this Stage.
        self.cfg = cfg
        super().__init__(name, *args, **kwargs)

    @property
    def defined_in(self):
        """List of files defining this stage"""
        return self.cfg.get_files()
