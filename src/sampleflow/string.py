import re
import shlex

from string import Formatter
from typing import Set

from sampleflow.common import is_container


class GetNameFormatter(Formatter):
    def get_names(self, pattern: str):
        for val in self.parse(pattern):
            if val[1] is not None:
                yield val[1]

    def get_root_names(self, pattern: str) -> Set[str]:
        """Names of the objects referenced by ``pattern``

        For ``{params.min_len}`` and ``{input[0]}``, these are ``params``
        and ``input``.
        """
        return set(
            re.split(r"[.\[]", name, maxsplit=1)[0]
            for name in self.get_names(pattern)
        )


class QuotedFormatter(GetNameFormatter):
    """Formatter quoting expanded values for use in shell commands

    Each value is passed through `shlex.quote`. Sequences expand to
    their space separated, individually quoted elements. The format
    spec ``raw`` disables quoting.

    >>> QuotedFormatter().format("ls {files}", files=["a b", "c"])
    "ls 'a b' c"
    """
    def format_field(self, value, format_spec: str):
        if format_spec == "raw":
            if is_container(value):
                return " ".join(str(item) for item in value)
            return str(value)
        if is_container(value):
            return " ".join(shlex.quote(format(item, format_spec)) for item in value)
        return shlex.quote(format(value, format_spec))
