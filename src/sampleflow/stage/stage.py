"""
Implements the "Stage"

A stage is a named unit of work. For each sample tuple reaching it,
its script template is rendered and run in a fresh working directory.
Files matching the stage's output globs then form the tuple passed on
to downstream stages and are published into the output tree.

>>> trim = Stage(
...     "trim",
...     script="fastp -w {cpus} -i {input[0]} -I {input[1]}"
...            " -o {sample}_R1.fq.gz -O {sample}_R2.fq.gz",
...     inputs=2,
...     outputs=["{sample}_R1.fq.gz", "{sample}_R2.fq.gz"],
...     cpus=4,
...     publish={"mode": "copy"},
... )
"""

import enum
import fnmatch
import glob
import logging
import os
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from string import Formatter
from typing import Iterable, List, Optional, Sequence, Set, Tuple, Union

from sampleflow.common import AttrDict, ensure_list
from sampleflow.exceptions import ConfigurationError
from sampleflow.stage.base import ConfigStage
from sampleflow.stage.params import Parametrizable
from sampleflow.string import GetNameFormatter, QuotedFormatter

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


#: Fields available in script templates
TEMPLATE_FIELDS = frozenset(
    ("sample", "input", "cpus", "params", "attempt", "stage", "workdir")
)

#: Fields available in output globs
OUTPUT_FIELDS = frozenset(("sample", "params"))

#: Fields available in publish directory templates
PUBLISH_FIELDS = frozenset(("sample", "stage"))

#: Stand-in values for parameters without default in trial renderings
TRIAL_PARAM_VALUES = {"int": 1, "float": 1.0, "str": "value", "path": "/path"}

#: Stand-in sample id for trial renderings
TRIAL_SAMPLE = "sample"


def _check_fields(stage, template: str, allowed: Iterable[str], what: str,
                  key: Optional[str] = None) -> None:
    formatter = GetNameFormatter()
    try:
        names = list(formatter.get_names(template))
    except ValueError as exc:
        raise stage.error(f"Malformed {what} '{template}': {exc}", key) from None
    for name in names:
        root = formatter.get_root_names("{" + name + "}") if name else {""}
        unknown = set(root) - set(allowed)
        if unknown:
            raise stage.error(
                f"Unknown field '{{{name}}}' in {what} '{template}'"
                f" (allowed: {', '.join(sorted(allowed))})",
                key
            )
        if name.startswith("params."):
            pname = name[len("params."):].split(".")[0].split("[")[0]
            if pname not in {param.name for param in stage.params}:
                raise stage.error(
                    f"Unknown parameter '{pname}' in {what} '{template}'", key
                )


def _trial_format(stage, template: str, what: str, key: str,
                  formatter: Optional[Formatter] = None, /, **fields) -> str:
    """Render ``template`` once with stand-in values

    Catches format specs and lookups that cannot work with values of
    the types substituted at run time.
    """
    try:
        return (formatter or Formatter()).format(template, **fields)
    except (ValueError, TypeError, AttributeError, KeyError) as exc:
        raise stage.error(f"Malformed {what} '{template}': {exc}", key) from None


def _check_glob(stage, pattern: str, rendered: str) -> None:
    if not rendered or rendered == ".":
        raise stage.error(f"Output glob '{pattern}' is empty", "outputs")
    for part in PurePosixPath(rendered).parts:
        if "**" in part and part != "**":
            raise stage.error(
                f"Malformed output glob '{pattern}':"
                f" '**' can only be an entire path component",
                "outputs"
            )


class ErrorStrategy(enum.Enum):
    """What to do when a task of a stage fails"""
    #: Failure fails the run (other samples still complete)
    FAIL = "fail"
    #: Failure drops the sample from downstream stages without failing the run
    IGNORE = "ignore"


class PublishMode(enum.Enum):
    """How outputs are placed into the output tree"""
    COPY = "copy"
    LINK = "link"
    SYMLINK = "symlink"


class OutputGlob:
    """Glob pattern for stage output files

    Patterns are resolved relative to the task working directory and
    may use ``{sample}`` and ``{params.NAME}``.

    Args:
      pattern: The glob pattern
      optional: If False, a task matching no file for this pattern fails
    """
    def __init__(self, pattern: str, optional: bool = False) -> None:
        self.pattern = pattern
        self.optional = optional

    def __repr__(self):
        opt = ", optional=True" if self.optional else ""
        return f"{self.__class__.__name__}({self.pattern!r}{opt})"

    def __eq__(self, other):
        return (isinstance(other, OutputGlob) and
                self.pattern == other.pattern and
                self.optional == other.optional)

    def render(self, sample: str, params: AttrDict) -> str:
        # file name patterns need no shell quoting, but glob escaping
        params = AttrDict(
            (name, glob.escape(value) if isinstance(value, str) else value)
            for name, value in params.items()
        )
        return Formatter().format(self.pattern, sample=glob.escape(sample), params=params)

    def validate(self, stage) -> None:
        if os.path.isabs(self.pattern):
            raise stage.error(f"Output glob '{self.pattern}' must be relative", "outputs")
        if ".." in Path(self.pattern).parts:
            raise stage.error(
                f"Output glob '{self.pattern}' must not leave the work directory",
                "outputs"
            )
        _check_fields(stage, self.pattern, OUTPUT_FIELDS, "output glob", "outputs")
        rendered = _trial_format(stage, self.pattern, "output glob", "outputs",
                                 sample=TRIAL_SAMPLE, params=stage.trial_params())
        _check_glob(stage, self.pattern, rendered)

    @classmethod
    def make(cls, value) -> "OutputGlob":
        if isinstance(value, OutputGlob):
            return value
        if isinstance(value, str):
            return cls(value)
        if isinstance(value, Mapping):
            return cls(str(value["pattern"]), bool(value.get("optional", False)))
        raise TypeError(f"Cannot make output glob from {value!r}")


class PublishRule:
    """Where and how a stage publishes its outputs

    Args:
      dir: Target directory template relative to ``outdir``; must
        contain ``{sample}``
      mode: `PublishMode` or its value (copy, link, symlink)
      pattern: fnmatch pattern(s) selecting published outputs by file
        name; None publishes all outputs
      overwrite: Replace existing, different files
      enabled: Set to False to publish nothing
    """
    KEYS = ("dir", "mode", "pattern", "overwrite", "enabled")

    def __init__(
            self,
            dir: str = "{sample}",  # pylint: disable=redefined-builtin
            mode: Union[str, PublishMode] = PublishMode.COPY,
            pattern: Union[None, str, Sequence[str]] = None,
            overwrite: bool = True,
            enabled: bool = True,
    ) -> None:
        self.dir = dir
        self.mode = mode
        self.patterns = ensure_list(pattern, str)
        self.overwrite = overwrite
        self.enabled = enabled

    def __repr__(self):
        return (f"{self.__class__.__name__}(dir={self.dir!r}, mode={self.mode!r},"
                f" pattern={self.patterns!r}, overwrite={self.overwrite!r},"
                f" enabled={self.enabled!r})")

    def validate(self, stage) -> None:
        try:
            self.mode = PublishMode(getattr(self.mode, "value", self.mode))
        except ValueError:
            raise stage.error(
                f"Unknown publish mode '{self.mode}'"
                f" (must be one of {', '.join(m.value for m in PublishMode)})",
                "publish"
            ) from None
        _check_fields(stage, self.dir, PUBLISH_FIELDS, "publish dir", "publish")
        _trial_format(stage, self.dir, "publish dir", "publish",
                      sample=TRIAL_SAMPLE, stage=stage.name)
        if "{sample}" not in self.dir:
            raise stage.error(
                f"Publish dir '{self.dir}' must contain '{{sample}}'", "publish"
            )
        if os.path.isabs(self.dir) or ".." in Path(self.dir).parts:
            raise stage.error(
                f"Publish dir '{self.dir}' must be relative to the output directory",
                "publish"
            )

    def selects(self, path: Path) -> bool:
        """Check if output ``path`` is to be published"""
        if not self.patterns:
            return True
        return any(fnmatch.fnmatch(path.name, pat) for pat in self.patterns)

    def target_dir(self, outdir: Path, sample: str, stage: str) -> Path:
        return Path(outdir) / Formatter().format(self.dir, sample=sample, stage=stage)

    def update(self, cfg) -> None:
        for key, value in cfg.items():
            if key == "pattern":
                self.patterns = ensure_list(value, str)
            elif key == "mode":
                self.mode = value
            else:
                setattr(self, key, value)

    @classmethod
    def make(cls, value) -> "PublishRule":
        if isinstance(value, PublishRule):
            return value
        if value is None or value is True:
            return cls()
        if value is False:
            return cls(enabled=False)
        if isinstance(value, str):
            return cls(mode=value)
        if isinstance(value, Mapping):
            rule = cls()
            rule.update(value)
            return rule
        raise TypeError(f"Cannot make publish rule from {value!r}")


class Stage(Parametrizable):
    """
    Creates a new stage

    Script templates may use these fields, all expanded shell quoted:

    * ``{sample}`` -- the sample id
    * ``{input}`` -- all input file names (``{input[0]}`` for the first)
    * ``{cpus}`` -- the number of cpus allotted
    * ``{params.NAME}`` -- the value of parameter NAME
    * ``{attempt}`` -- the attempt number, starting with 1
    * ``{stage}`` -- the stage name
    * ``{workdir}`` -- the absolute path of the task working directory

    Literal braces, e.g. for shell variables, must be doubled
    (``${{HOME}}``). The format spec ``:raw`` disables quoting.
    """

    def __init__(
            self,
            name: str,
            script: str,
            outputs: Iterable = (),
            inputs: Optional[int] = None,
            cpus: int = 1,
            env: Optional[str] = None,
            publish=None,
            params: Optional[Mapping] = None,
            error_strategy: Union[str, ErrorStrategy] = ErrorStrategy.FAIL,
            retries: int = 0,
            doc: Optional[str] = None,
    ) -> None:
        """
        Args:
          name: Name of this stage
          script: Shell script template
          outputs: Output glob patterns (`str`, `OutputGlob` or mapping
            with ``pattern`` and ``optional``)
          inputs: Number of files each input tuple must have (None for any)
          cpus: Number of cpus allotted to each task
          env: Name of environment to activate (see ``envs``)
          publish: `PublishRule`, a mapping of its arguments, a mode name
            or False to disable publishing
          params: Mapping of parameter names to either a default value or
            a mapping with ``type``, ``default`` and (for flags) ``value``
          error_strategy: ``fail`` or ``ignore``
          retries: Number of times a failed task is re-run
          doc: Description
        """
        super().__init__(name)
        self.script = script
        self.inputs = inputs
        self.cpus = cpus
        self.env = env
        self.error_strategy = error_strategy
        self.retries = retries
        self.doc(doc or "")
        try:
            self.outputs: List[OutputGlob] = [
                OutputGlob.make(output) for output in ensure_list(outputs)
            ]
        except (TypeError, KeyError) as exc:
            raise self.error(f"Malformed output list: {exc}", "outputs") from None
        try:
            self.publish = PublishRule.make(publish)
        except (TypeError, AttributeError) as exc:
            raise self.error(f"Malformed publish rule: {exc}", "publish") from None
        for pname, pdef in (params or {}).items():
            self._add_param_from(pname, pdef)
        self.validate()

    def __repr__(self):
        return (f"{self.__class__.__name__} {self!s} "
                f"({self.filename}:{self.lineno})")

    def error(self, msg: str, key: Optional[str] = None) -> ConfigurationError:
        """Create error pointing at this stage's definition"""
        return ConfigurationError(self, msg)

    def _add_param_from(self, name: str, pdef) -> None:
        if isinstance(pdef, Mapping):
            unknown = set(pdef) - {"type", "default", "value"}
            if unknown:
                raise self.error(
                    f"Unknown key(s) in parameter '{name}': {', '.join(sorted(unknown))}",
                    "params"
                )
            typ = pdef.get("type")
            default = pdef.get("default")
            value = pdef.get("value")
        else:
            typ, default, value = None, pdef, None
        if typ is None:
            if isinstance(default, bool):
                typ = "flag"
            elif isinstance(default, int):
                typ = "int"
            elif isinstance(default, float):
                typ = "float"
            else:
                typ = "str"
        self.add_param(name, typ, default, value)

    def validate(self) -> None:
        """Check stage directives

        Raises:
          ConfigurationError: on the first problem found
        """
        if not isinstance(self.cpus, int) or isinstance(self.cpus, bool) or self.cpus < 1:
            raise self.error(
                f"Stage '{self.name}': cpus must be a positive integer (got {self.cpus!r})",
                "cpus"
            )
        if self.inputs is not None and (
                not isinstance(self.inputs, int) or self.inputs < 1):
            raise self.error(
                f"Stage '{self.name}': inputs must be a positive integer or empty",
                "inputs"
            )
        if not isinstance(self.retries, int) or self.retries < 0:
            raise self.error(
                f"Stage '{self.name}': retries must be a non-negative integer", "retries"
            )
        try:
            self.error_strategy = ErrorStrategy(
                getattr(self.error_strategy, "value", self.error_strategy)
            )
        except ValueError:
            raise self.error(
                f"Stage '{self.name}': unknown error_strategy '{self.error_strategy}'"
                f" (must be one of {', '.join(s.value for s in ErrorStrategy)})",
                "error_strategy"
            ) from None
        if not isinstance(self.script, str) or not self.script.strip():
            raise self.error(f"Stage '{self.name}' has no script", "script")
        _check_fields(self, self.script, TEMPLATE_FIELDS, "script", "script")
        try:
            _trial_format(self, self.script, "script", "script", QuotedFormatter(),
                          sample=TRIAL_SAMPLE,
                          input=[f"input{n}" for n in range(self.inputs or 1)],
                          cpus=self.cpus, params=self.trial_params(), attempt=1,
                          stage=self.name, workdir="/work")
        except IndexError:
            if self.inputs is not None:
                raise self.error(
                    f"Script of stage '{self.name}' uses more input files"
                    f" than the {self.inputs} it takes",
                    "script"
                ) from None
        for output in self.outputs:
            output.validate(self)
        self.publish.validate(self)

    def trial_params(self) -> AttrDict:
        """Parameter values with stand-ins for those without default"""
        values = self.param_values()
        return AttrDict(
            (name, TRIAL_PARAM_VALUES.get(self.get_param(name).type_name)
             if value is None else value)
            for name, value in values.items()
        )

    @property
    def ignore_errors(self) -> bool:
        return self.error_strategy == ErrorStrategy.IGNORE

    def configure(self, overrides) -> None:
        """Apply per-stage overrides

        Recognized keys are ``cpus``, ``params``, ``error_strategy``,
        ``retries``, ``publish`` and ``env``.
        """
        for key, value in overrides.items():
            if key == "params":
                if not isinstance(value, Mapping):
                    raise ConfigurationError(
                        overrides, "Parameter overrides must be a mapping", key=key
                    )
                for pname, pvalue in value.items():
                    self.set_param(pname, pvalue)
            elif key == "publish":
                if isinstance(value, Mapping):
                    unknown = set(value) - set(PublishRule.KEYS)
                    if unknown:
                        raise ConfigurationError(
                            overrides,
                            f"Unknown publish key(s): {', '.join(sorted(unknown))}",
                            key=key
                        )
                    self.publish.update(value)
                else:
                    self.publish = PublishRule.make(value)
            elif key in ("cpus", "error_strategy", "retries", "env"):
                log.debug("Overriding %s=%s in stage %s with %s",
                          key, getattr(self, key), self.name, value)
                setattr(self, key, value)
            else:
                raise ConfigurationError(
                    overrides, f'Cannot override "{key}" field of stage {self.name}', key=key
                )
        self.validate()

    def render(self, sample: str, inputs: Sequence[str], work_dir: Union[str, Path],
               attempt: int = 1) -> str:
        """Render script template for one task

        Raises:
          IndexError: if the template references more inputs than given
        """
        return QuotedFormatter().format(
            self.script,
            sample=sample,
            input=list(inputs),
            cpus=self.cpus,
            params=self.param_values(),
            attempt=attempt,
            stage=self.name,
            workdir=str(work_dir),
        )

    def collect_outputs(
            self, work_dir: Path, sample: str, exclude: Set[str]
    ) -> Tuple[List[Path], List[OutputGlob]]:
        """Resolve output globs in ``work_dir``

        Args:
          work_dir: The task working directory
          sample: The sample id
          exclude: Names (relative to work_dir) never considered outputs
        Returns:
          Matched files in glob order and the required globs that
          matched nothing.
        """
        params = self.param_values()
        found: List[Path] = []
        missing: List[OutputGlob] = []
        for output in self.outputs:
            pattern = output.render(sample, params)
            matches = [
                path for path in sorted(work_dir.glob(pattern))
                if path.is_file()
                and str(path.relative_to(work_dir)) not in exclude
            ]
            if not matches and not output.optional:
                missing.append(output)
            for path in matches:
                if path not in found:
                    found.append(path)
        return found, missing


class ConfiguredStage(ConfigStage, Stage):
    """Stage defined in the ``stages`` section of the configuration

    Example:

    .. code-block:: yaml

       stages:
         trim:
           doc: Trim reads with fastp
           inputs: 2
           cpus: 4
           params:
             qual: {type: int, default: 20}
           outputs:
             - "{sample}_R1.fq.gz"
             - "{sample}_R2.fq.gz"
           publish: {mode: copy}
           script: >-
             fastp -w {cpus} -q {params.qual} ...
    """

    KEYS = ("doc", "script", "outputs", "inputs", "cpus", "env",
            "publish", "params", "error_strategy", "retries")

    def __init__(self, name: str, cfg) -> None:
        unknown = [key for key in cfg if key not in self.KEYS]
        if unknown:
            raise ConfigurationError(
                cfg, f"Unknown key '{unknown[0]}' in definition of stage '{name}'",
                key=unknown[0]
            )
        if "script" not in cfg:
            raise ConfigurationError(cfg, f"Stage '{name}' must have a 'script'")
        kwargs = {key: cfg.get(key) for key in self.KEYS if key in cfg}
        for key in ("outputs", "params", "publish"):
            # flatten config proxies into plain containers
            if key in kwargs and kwargs[key] is not None and not isinstance(kwargs[key], (str, bool)):
                kwargs[key] = _plain(kwargs[key])
        params = kwargs.get("params")
        for pname, pdef in (params.items() if isinstance(params, dict) else ()):
            if isinstance(pdef, dict) and pdef.get("type") == "path" \
                    and pdef.get("default") is not None:
                pdef["default"] = cfg["params"][pname].get_path("default", absolute=True)
        super().__init__(name, cfg, **kwargs)

    def error(self, msg: str, key: Optional[str] = None) -> ConfigurationError:
        if key is not None and key in self.cfg:
            return ConfigurationError(self.cfg, msg, key=key)
        return ConfigurationError(self, msg)


def _plain(value):
    """Convert config proxies into dicts and lists"""
    if isinstance(value, Mapping):
        return {key: _plain(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)) or (
            hasattr(value, "__iter__") and not isinstance(value, (str, bytes))):
        return [_plain(val) for val in value]
    return value
