import atexit
import logging
import os

from collections.abc import Mapping
from typing import Dict, List, Optional

from xdg import xdg_config_home  # type: ignore

import sampleflow
import sampleflow.yaml
from sampleflow.env import EnvRegistry
from sampleflow.exceptions import ConfigurationError, SampleflowUsageError
from sampleflow.stage import ConfiguredStage, Pipeline

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ResourceLimits:
    """Allows adjusting resources to local compute environment

    Each config item defines processing for a stage resource (currently
    only ``cpus``). Each item may have a ``default`` value filled in
    for stages not defining the resource, ``min`` and ``max`` defining
    the lower and upper bounds, and a ``scale`` value applied to
    configured values to adjust resources up or down globally.

    .. code-block:: yaml
       :caption: sampleflow.yml

       resource_limits:
         cpus:
           default: 2
           max: 16
    """
    RESOURCES = ("cpus",)
    OPTIONS = ("default", "min", "max", "scale")

    def __init__(self, cfg: Optional[Mapping]) -> None:
        if cfg is None:
            cfg = {}
        if not isinstance(cfg, Mapping):
            raise ConfigurationError(cfg, "Limits section must be a map (key: value)")
        self.limits = self.parse_config(cfg)
        log.debug("Parsed Resource Limits: %s", str(self.limits))

    def parse_config(self, cfg):
        """Parses limits config"""
        limits = {}
        for name, params in cfg.items():
            if name not in self.RESOURCES:
                raise ConfigurationError(
                    cfg, f'Unknown resource "{name}" in resource_limits', key=name
                )
            if not isinstance(params, Mapping):
                raise ConfigurationError(cfg, f'Limits for "{name}" must be a map', key=name)
            lconf = {}
            for opt in params:
                if opt not in self.OPTIONS:
                    raise ConfigurationError(
                        params, f'Unknown parameter "{opt}" in "{name}" resource_limits', opt
                    )
                value = params.get(opt)
                if value is None:
                    continue
                try:
                    lconf[opt] = float(value) if opt == "scale" else int(value)
                except (TypeError, ValueError):
                    raise ConfigurationError(
                        params, f'Failed to parse "{value}"', key=opt
                    ) from None
            limits[name] = lconf
        return limits

    def apply(self, stage: ConfiguredStage) -> None:
        """Adjust resources of ``stage``"""
        for rsrc, config in self.limits.items():
            value = stage.cfg.get(rsrc) if rsrc in stage.cfg else None
            value = self.adjust_value(
                value,
                config.get("default"),
                config.get("scale"),
                config.get("min"),
                config.get("max")
            )
            if value is not None:
                setattr(stage, rsrc, max(1, int(round(value))))

    @staticmethod
    def adjust_value(
            value: Optional[float],
            default: Optional[float],
            scale: Optional[float],
            minimum: Optional[float],
            maximum: Optional[float],
    ) -> Optional[float]:
        """Applies default, scale, minimum and maximum to a numeric value)"""
        if value is None:
            if default is None:
                return None
            value = default
        elif scale is not None:
            value *= scale
        if minimum is not None and value < minimum:
            value = minimum
        if maximum is not None and value > maximum:
            value = maximum
        return value


class ConfigMgr(object):
    """Manages workflow configuration

    This is a singleton object of which only one instance should be
    around at a given time. It is available via
    `sampleflow.get_config()`.

    ConfigMgr loads and maintains the workflow configuration as given
    in the ``sampleflow.yml`` files located in the workflow root
    directory, the user config folder
    (``$XDG_CONFIG_HOME/sampleflow``) and the installation ``etc``
    folder.
    """
    KEY_STAGES = 'stages'
    KEY_PIPELINES = 'pipelines'
    KEY_ENVS = 'envs'
    KEY_LIMITS = 'resource_limits'
    KEY_OVERRIDES = 'overrides'
    CONF_FNAME = 'sampleflow.yml'
    CONF_DEFAULT_FNAME = sampleflow._defaults_file

    __instance = None

    @classmethod
    def user_config_file(cls) -> str:
        return os.path.join(str(xdg_config_home()), "sampleflow", cls.CONF_FNAME)

    @classmethod
    def find_config(cls):
        """Locates sampleflow config files and workflow root

        The root work dir is determined as the first (parent)
        directory containing a file named ``ConfigMgr.CONF_FNAME``
        (default ``sampleflow.yml``).

        The stack of config files comprises 1. the default config
        ``ConfigMgr.CONF_DEFAULT_FNAME`` (``etc/defaults.yml`` in the
        package directory), 2. the user config
        (``$XDG_CONFIG_HOME/sampleflow/sampleflow.yml``) and 3. the
        ``sampleflow.yml`` in the root.

        Returns:
          root: Root working directory
          conffiles: list of active configuration files
        """
        # always include defaults
        conffiles = [cls.CONF_DEFAULT_FNAME]

        # include user config if present
        user_fname = cls.user_config_file()
        if os.path.exists(user_fname):
            conffiles.append(user_fname)

        # try to find a sampleflow.yml in CWD and upwards
        filename = cls.CONF_FNAME
        log.debug("Locating '%s'", filename)
        try:
            curpath = os.path.abspath(os.getcwd())
        except FileNotFoundError:
            raise SampleflowUsageError("The current work directory has been deleted?!") from None
        while not os.path.exists(os.path.join(curpath, filename)):
            log.debug("  not in '%s'", curpath)
            curpath, removed = os.path.split(curpath)
            if not removed:
                break
        if os.path.exists(os.path.join(curpath, filename)):
            root = curpath
            log.debug("  Found '%s' in '%s'", filename, curpath)
            conffiles.append(os.path.join(root, cls.CONF_FNAME))
        else:
            root = os.path.abspath(os.getcwd())
            log.debug("  No '%s' found; using %s as root", filename, root)

        return root, conffiles

    @classmethod
    def instance(cls):
        """Returns the active ConfigMgr instance"""
        if cls.__instance is None:
            cls.__instance = cls(*cls.find_config())
        return cls.__instance

    @classmethod
    def unload(cls):
        log.debug("Unloading ConfigMgr")
        cls.__instance = None

    def __init__(self, root, conffiles):
        log.debug("Inizializing ConfigMgr")
        self.root = root
        self.conffiles = conffiles
        self._config = sampleflow.yaml.load(conffiles, root)
        self._limits = None

    def add_overrides(self, name: str, values: Mapping) -> None:
        """Add layer of config values ranking above all files

        Used for command line options. Paths should be absolute.
        """
        self._config.add_layer(name, values)

    def _get_dir(self, key: str) -> str:
        if self._config.get(key) is None:
            raise ConfigurationError(self._config, f"Config value '{key}' must be set")
        return self._config.get_path(key, absolute=True)

    @property
    def outdir(self) -> str:
        """Absolute path of the output tree"""
        return self._get_dir("outdir")

    @property
    def workdir(self) -> str:
        """Absolute path of the task working directory root"""
        return self._get_dir("workdir")

    @property
    def cpus(self) -> int:
        """Global CPU budget"""
        value = self._config.get("cpus")
        if value is None:
            return os.cpu_count() or 1
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigurationError(self._config, "cpus must be a positive integer", key="cpus")
        return value

    @property
    def fail_fast(self) -> bool:
        return bool(self._config.get("fail_fast", False))

    @property
    def cleanup(self) -> bool:
        """Remove the run's work directory after a successful run"""
        return bool(self._config.get("cleanup", False))

    @property
    def shell(self) -> str:
        """The shell running task scripts

        Change by adding e.g. ``shell: /path/to/bash`` to ``sampleflow.yml``.
        """
        return str(self._config.get("shell") or "bash")

    @property
    def envs(self) -> EnvRegistry:
        return EnvRegistry.from_config(
            self._config.get(self.KEY_ENVS),
            bool(self._config.get("use_envs", False))
        )

    @property
    def limits(self) -> ResourceLimits:
        if self._limits is None:
            self._limits = ResourceLimits(self._config.get(self.KEY_LIMITS))
        return self._limits

    @property
    def stage_names(self) -> List[str]:
        return list(self._config.get(self.KEY_STAGES) or {})

    def get_stage(self, name: str) -> ConfiguredStage:
        """Create configured stage ``name``

        Resource limits and ``overrides.stages.<name>`` are applied.

        Raises:
          ConfigurationError: if there is no such stage or it is malformed
        """
        stages = self._config.get(self.KEY_STAGES) or {}
        if name not in stages:
            raise ConfigurationError(
                self._config,
                f"Unknown stage '{name}' (known: {', '.join(stages) or 'none'})",
                key=self.KEY_STAGES
            )
        stage = ConfiguredStage(name, stages[name])
        self.limits.apply(stage)
        overrides = self._config.get(self.KEY_OVERRIDES) or {}
        stage_overrides = (overrides.get("stages") or {}).get(name)
        if stage_overrides:
            if not isinstance(stage_overrides, Mapping):
                raise ConfigurationError(
                    overrides, f"Overrides for stage '{name}' must be a mapping", key="stages"
                )
            stage.configure(stage_overrides)
        else:
            stage.validate()
        self.envs.check(stage)
        return stage

    @property
    def stages(self) -> Dict[str, ConfiguredStage]:
        return {name: self.get_stage(name) for name in self.stage_names}

    @property
    def pipelines(self) -> Dict[str, Pipeline]:
        cfg = self._config.get(self.KEY_PIPELINES) or {}
        return {name: Pipeline(name, cfg[name]) for name in cfg}

    def get_pipeline(self, name: str) -> Pipeline:
        cfg = self._config.get(self.KEY_PIPELINES) or {}
        if name not in cfg:
            raise SampleflowUsageError(
                f"Unknown pipeline '{name}' (known: {', '.join(cfg) or 'none'})"
            )
        return Pipeline(name, cfg[name])

    def to_yaml(self, show_source=False) -> str:
        return self._config.to_yaml(show_source)

    def get(self, key, default=None):
        return self._config.get(key, default)


atexit.register(ConfigMgr.unload)
