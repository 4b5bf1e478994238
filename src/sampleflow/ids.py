"""
Sample id extraction

Sample ids are derived once from the name of the first file of a
sample and then passed on unchanged through all stages. How the id is
cut from a file name depends on naming conventions, so the rule is a
pluggable strategy:

.. code-block:: yaml
   :caption: sampleflow.yml

   pipelines:
     trim:
       inputs:
         reads:
           dir: raw
           glob: "*.fastq.gz"
           id:
             strip_suffix: [.fastq.gz, .fq.gz]
             strip_prefix: "Sample_"
           rename:
             - ["_S\\d+$", ""]
"""

import logging
import os
import re
from collections.abc import Mapping
from typing import Callable, Iterable, List, Sequence, Tuple, Union

from sampleflow.common import ensure_list
from sampleflow.exceptions import ChannelError, ConfigurationError

log = logging.getLogger(__name__)  # pylint: disable=invalid-name

PathLike = Union[str, "os.PathLike[str]"]

#: Suffixes stripped from read files by default
DEFAULT_SUFFIXES = (".fastq.gz", ".fq.gz", ".fastq", ".fq")


class IdStrategy:
    """Base class for id extraction strategies

    Strategies are callables mapping a file path to a sample id.
    """
    def __call__(self, path: PathLike) -> str:
        raise NotImplementedError()


class SuffixStrip(IdStrategy):
    """Id is the file's basename minus the first matching suffix"""
    def __init__(self, suffixes: Iterable[str] = DEFAULT_SUFFIXES) -> None:
        # longest first, so that ".fastq.gz" wins over ".gz"
        self.suffixes = sorted(ensure_list(suffixes), key=len, reverse=True)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.suffixes!r})"

    def __call__(self, path: PathLike) -> str:
        name = os.path.basename(os.fspath(path))
        for suffix in self.suffixes:
            if name.endswith(suffix) and len(name) > len(suffix):
                return name[:-len(suffix)]
        raise ChannelError(
            f"Cannot derive sample id from '{name}': none of the suffixes"
            f" {', '.join(self.suffixes)} match"
        )


class RegexId(IdStrategy):
    """Id is the named group ``id`` of a regular expression

    The expression is searched in the basename of the file.
    """
    def __init__(self, pattern: str) -> None:
        self.regex = re.compile(pattern)
        if "id" not in self.regex.groupindex:
            raise ValueError(f"Regex '{pattern}' must have a group named 'id'")

    def __repr__(self):
        return f"{self.__class__.__name__}({self.regex.pattern!r})"

    def __call__(self, path: PathLike) -> str:
        name = os.path.basename(os.fspath(path))
        match = self.regex.search(name)
        if not match or not match.group("id"):
            raise ChannelError(
                f"Cannot derive sample id from '{name}':"
                f" no match for '{self.regex.pattern}'"
            )
        return match.group("id")


class PrefixStrip(IdStrategy):
    """Removes ``prefix`` from the id computed by ``strategy``"""
    def __init__(self, prefix: str, strategy: IdStrategy = None) -> None:
        self.prefix = prefix
        self.strategy = strategy or SuffixStrip()

    def __repr__(self):
        return f"{self.__class__.__name__}({self.prefix!r}, {self.strategy!r})"

    def __call__(self, path: PathLike) -> str:
        sample_id = self.strategy(path)
        if self.prefix and sample_id.startswith(self.prefix) \
           and len(sample_id) > len(self.prefix):
            return sample_id[len(self.prefix):]
        return sample_id


class RegexSubstitution:
    """Pure id transform applying `re.sub`"""
    def __init__(self, pattern: str, repl: str) -> None:
        self.regex = re.compile(pattern)
        self.repl = repl

    def __repr__(self):
        return f"{self.__class__.__name__}({self.regex.pattern!r}, {self.repl!r})"

    def __call__(self, sample_id: str) -> str:
        return self.regex.sub(self.repl, sample_id)


class Substitutions:
    """Applies a sequence of `RegexSubstitution` in order"""
    def __init__(self, subs: Sequence[Tuple[str, str]]) -> None:
        self.subs: List[RegexSubstitution] = [
            RegexSubstitution(pattern, repl) for pattern, repl in subs
        ]

    def __call__(self, sample_id: str) -> str:
        for sub in self.subs:
            sample_id = sub(sample_id)
        return sample_id


def make_id_strategy(cfg) -> IdStrategy:
    """Create id strategy from config mapping

    Recognized keys are ``strip_suffix`` (str or list), ``regex``
    (pattern with group named ``id``) and ``strip_prefix``. ``regex``
    and ``strip_suffix`` are mutually exclusive.
    """
    if cfg is None:
        return SuffixStrip()
    if not isinstance(cfg, Mapping):
        raise ConfigurationError(cfg, "Sample id rule must be a mapping")
    unknown = set(cfg) - {"strip_suffix", "regex", "strip_prefix"}
    if unknown:
        raise ConfigurationError(
            cfg, f"Unknown key(s) in sample id rule: {', '.join(sorted(unknown))}",
            key=sorted(unknown)[0]
        )
    if "regex" in cfg and "strip_suffix" in cfg:
        raise ConfigurationError(
            cfg, "Sample id rule cannot have both 'regex' and 'strip_suffix'", key="regex"
        )
    if "regex" in cfg:
        try:
            strategy: IdStrategy = RegexId(cfg["regex"])
        except (re.error, ValueError) as exc:
            raise ConfigurationError(cfg, f"Malformed id regex: {exc}", key="regex") from None
    else:
        suffixes = ensure_list(cfg.get("strip_suffix")) or DEFAULT_SUFFIXES
        strategy = SuffixStrip(suffixes)
    if cfg.get("strip_prefix"):
        strategy = PrefixStrip(cfg["strip_prefix"], strategy)
    return strategy


def make_id_transform(cfg) -> Callable[[str], str]:
    """Create id transform from list of ``[pattern, replacement]`` pairs"""
    subs = []
    for num, item in enumerate(ensure_list(cfg)):
        if isinstance(item, str) or len(item) != 2:
            raise ConfigurationError(
                cfg, "Each rename entry must be a [pattern, replacement] pair", key=num
            )
        try:
            re.compile(item[0])
        except re.error as exc:
            raise ConfigurationError(cfg, f"Malformed rename pattern: {exc}", key=num) from None
        subs.append((str(item[0]), str(item[1])))
    return Substitutions(subs)
