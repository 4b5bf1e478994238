"""
Channels carry sample tuples between stages

A `Channel` is an ordered collection of `SampleTuple` objects. Each
tuple couples a sample id with the files currently representing that
sample. Channels are created from the file system and combined before
they are handed to the workflow graph:

>>> long_reads = Channel.from_glob("raw/*.fastq.gz")
>>> run1 = Channel.from_file_pairs("run1/*.fastq.gz")
>>> run2 = Channel.from_file_pairs("run2/*.fastq.gz", required=False)
>>> short_reads = run1.concat(run2).if_empty("No short reads found")
"""

import glob
import logging
import os
import re
from pathlib import Path
from typing import (
    Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple, Union
)

from sampleflow.exceptions import EmptyChannelError, PairingError
from sampleflow.ids import IdStrategy, SuffixStrip

log = logging.getLogger(__name__)  # pylint: disable=invalid-name

#: Matches the mate marker at the end of a sample id, e.g. "_R1", ".2"
#: or "_R2_001".
DEFAULT_MATE_PATTERN = r"[_.]R?(?P<mate>[12])(_001)?$"


class SampleTuple(NamedTuple):
    """A sample id and the ordered files holding the sample's data"""
    id: str
    files: Tuple[Path, ...]

    @classmethod
    def make(cls, sample_id: str, files: Iterable[Union[str, "os.PathLike[str]"]]) -> "SampleTuple":
        return cls(sample_id, tuple(Path(fname) for fname in files))


class Channel:
    """Ordered multiset of sample tuples

    Args:
      items: The initial tuples
      name: Name used in log messages and diagnostics
    """
    def __init__(self, items: Iterable[SampleTuple] = (), name: Optional[str] = None) -> None:
        self.name = name or "channel"
        self._items: List[SampleTuple] = []
        for item in items:
            if not isinstance(item, SampleTuple):
                item = SampleTuple.make(*item)
            self._items.append(item)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.name!r}, {len(self)} tuples)"

    def __iter__(self) -> Iterator[SampleTuple]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    @property
    def ids(self) -> List[str]:
        """Sample ids in emission order (may contain duplicates)"""
        return [item.id for item in self._items]

    @classmethod
    def from_glob(
            cls,
            pattern: str,
            id_strategy: Optional[IdStrategy] = None,
            required: bool = True,
            name: Optional[str] = None,
    ) -> "Channel":
        """Create channel with one tuple per file matching ``pattern``

        Files are sorted by path. The id of each tuple is computed by
        ``id_strategy`` (default: strip read file suffixes).

        Raises:
          EmptyChannelError: if nothing matches and ``required`` is set
        """
        name = name or pattern
        id_strategy = id_strategy or SuffixStrip()
        paths = sorted(
            path for path in glob.glob(os.fspath(pattern), recursive=True)
            if os.path.isfile(path)
        )
        if not paths:
            if required:
                raise EmptyChannelError(name, pattern)
            log.warning("No files found for input '%s' (pattern '%s')", name, pattern)
            return cls(name=name)
        log.debug("Input '%s': %i files match '%s'", name, len(paths), pattern)
        return cls(
            (SampleTuple(id_strategy(path), (Path(path),)) for path in paths),
            name=name
        )

    @classmethod
    def from_file_pairs(
            cls,
            pattern: str,
            id_strategy: Optional[IdStrategy] = None,
            required: bool = True,
            name: Optional[str] = None,
            mate_pattern: str = DEFAULT_MATE_PATTERN,
    ) -> "Channel":
        """Create channel of read pairs

        Equivalent to `from_glob` followed by `pair`.
        """
        return cls.from_glob(pattern, id_strategy, required, name).pair(mate_pattern)

    def pair(self, pattern: str = DEFAULT_MATE_PATTERN, size: int = 2) -> "Channel":
        """Group tuples into pairs (or groups of ``size``)

        The ``pattern`` must contain a group named ``mate``. It is
        searched in each tuple's id; the id with the match removed
        becomes the id of the group. Within each group, files are
        ordered by mate value. Groups are emitted in order of their
        first appearance.

        Raises:
          PairingError: if an id has no mate marker, if a group does
            not contain exactly ``size`` tuples or if a mate value
            occurs twice within a group.
        """
        regex = re.compile(pattern)
        groups: Dict[str, List[Tuple[str, SampleTuple]]] = {}
        for item in self._items:
            match = regex.search(item.id)
            if not match:
                raise PairingError(
                    f"Sample '{item.id}' in '{self.name}' has no mate marker"
                    f" matching '{pattern}'"
                )
            prefix = item.id[:match.start()] + item.id[match.end():]
            groups.setdefault(prefix, []).append((match.group("mate"), item))

        items = []
        for prefix, members in groups.items():
            mates = [mate for mate, _ in members]
            if len(members) != size or len(set(mates)) != len(mates):
                files = ", ".join(str(fn) for _, item in members for fn in item.files)
                raise PairingError(
                    f"Sample '{prefix}' in '{self.name}' has {len(members)} files,"
                    f" expected {size}: {files}"
                )
            members.sort(key=lambda member: member[0])
            files = tuple(fn for _, item in members for fn in item.files)
            items.append(SampleTuple(prefix, files))
        return Channel(items, name=self.name)

    def map_ids(self, transform: Callable[[str], str]) -> "Channel":
        """Reassign the id of each tuple using ``transform``

        Files are left untouched.
        """
        return Channel(
            (SampleTuple(transform(item.id), item.files) for item in self._items),
            name=self.name
        )

    def concat(self, *others: "Channel") -> "Channel":
        """All tuples of this channel followed by all tuples of ``others``

        Ids are not deduplicated. If several channels hold the same
        id, each tuple is processed independently downstream.
        """
        return concat(self, *others)

    def if_empty(self, fallback) -> "Channel":
        """Replace an empty channel using ``fallback``

        A non-empty channel is returned unchanged. Otherwise,
        ``fallback`` decides:

        - `str`: message logged as warning, returns empty channel
        - exception (instance or class): raised
        - callable: called without arguments, the result (`Channel`,
          iterable of tuples or None) becomes the new channel
        """
        if self._items:
            return self
        if isinstance(fallback, str):
            log.warning(fallback)
            return Channel(name=self.name)
        if isinstance(fallback, BaseException) or (
                isinstance(fallback, type) and issubclass(fallback, BaseException)):
            raise fallback
        result = fallback()
        if result is None:
            return Channel(name=self.name)
        if isinstance(result, Channel):
            return result
        return Channel(result, name=self.name)


def concat(*channels: Channel) -> Channel:
    """Concatenate channels in order"""
    name = "+".join(channel.name for channel in channels)
    return Channel(
        (item for channel in channels for item in channel),
        name=name
    )
