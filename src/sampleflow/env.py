"""
This module maps environment references to activation commands.

Creating or installing environments is left to the user. A stage
naming ``env: flye`` gets the activation lines of the ``flye`` entry
in the ``envs`` section prepended to its script:

.. code-block:: yaml
   :caption: sampleflow.yml

   use_envs: true
   envs:
     flye:
       conda: flye-2.9
     polish:
       modules: [bwa-mem2/2.2.1, polypolish]
     custom:
       activate: source /opt/tools/venv/bin/activate
"""

import logging
import shlex
from collections.abc import Mapping
from typing import Dict, List, Optional

from sampleflow.common import ensure_list
from sampleflow.exceptions import ConfigurationError


log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class Env:
    """Represents a named tool environment

    Args:
      name: Name used by stages to reference this environment
      conda: Name or path of a conda environment
      modules: Environment modules to load
      activate: Arbitrary shell line(s) run before the script
    """

    KEYS = ("conda", "modules", "activate")

    def __init__(
            self,
            name: str,
            conda: Optional[str] = None,
            modules: Optional[List[str]] = None,
            activate=None,
    ) -> None:
        self.name = name
        self.conda = conda
        self.modules = ensure_list(modules, str)
        self.activate = ensure_list(activate, str)

    def __repr__(self):
        return (f"{self.__class__.__name__}({self.name!r}, conda={self.conda!r},"
                f" modules={self.modules!r})")

    @classmethod
    def from_config(cls, name: str, cfg) -> "Env":
        if isinstance(cfg, str):
            return cls(name, conda=cfg)
        if not isinstance(cfg, Mapping):
            raise ConfigurationError(cfg, f"Environment '{name}' must be a mapping")
        unknown = [key for key in cfg if key not in cls.KEYS]
        if unknown:
            raise ConfigurationError(
                cfg, f"Unknown key '{unknown[0]}' in environment '{name}'", key=unknown[0]
            )
        return cls(name, cfg.get("conda"), cfg.get("modules"), cfg.get("activate"))

    def activation_lines(self) -> List[str]:
        """Shell lines making this environment active"""
        lines = []
        if self.modules:
            lines.append("module load " + " ".join(shlex.quote(mod) for mod in self.modules))
        if self.conda:
            lines.append('eval "$(conda shell.bash hook)"')
            lines.append("conda activate " + shlex.quote(self.conda))
        lines.extend(self.activate)
        return lines


class EnvRegistry:
    """Collection of environments from config

    Args:
      envs: Mapping of names to `Env` objects
      enabled: If False, no activation lines are produced (tools are
        expected in ``PATH``)
    """
    def __init__(self, envs: Optional[Dict[str, Env]] = None, enabled: bool = True) -> None:
        self.envs = dict(envs or {})
        self.enabled = enabled

    @classmethod
    def from_config(cls, cfg, enabled: bool = True) -> "EnvRegistry":
        envs = {}
        for name in (cfg or {}):
            envs[name] = Env.from_config(name, cfg[name])
        return cls(envs, enabled)

    def __contains__(self, name):
        return name in self.envs

    def check(self, stage) -> None:
        """Verify that the environment ``stage`` references exists

        Raises:
          ConfigurationError: if the reference is unknown and
            environments are in use
        """
        if stage.env is None or not self.enabled:
            return
        if stage.env not in self.envs:
            raise stage.error(
                f"Stage '{stage.name}' references unknown environment '{stage.env}'"
                f" (known: {', '.join(sorted(self.envs)) or 'none'})",
                "env"
            )

    def activation_lines(self, name: Optional[str]) -> List[str]:
        if name is None or not self.enabled:
            return []
        return self.envs[name].activation_lines()
