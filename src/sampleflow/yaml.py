"""
Layered YAML configuration

Configuration files are loaded as layers. Keys in later files (higher
layers) override keys in earlier ones, mappings are merged key by key
and sequences are concatenated. The proxies returned by `load` keep
track of the file and line each value came from, so that errors can
point at the offending entry.
"""
import io
import logging
import os
from collections.abc import Mapping, Sequence
from typing import Optional

from ruamel.yaml import RoundTripRepresenter, YAML, yaml_object  # type: ignore

from sampleflow.common import AttrDict
from sampleflow.exceptions import ConfigurationError


log = logging.getLogger(__name__)  # pylint: disable=invalid-name


class LayeredConfError(ConfigurationError):
    """Error in layered configuration"""
    def __init__(self, obj: object, msg: str, key: Optional[object] = None, stack=None):
        super().__init__(obj, msg, key)
        self.stack = stack or []

    def get_fileline(self):
        if self.obj:
            if hasattr(self.obj, "get_fileline"):
                return self.obj.get_fileline(self.key)
            if isinstance(self.obj, Sequence) and len(self.obj) == 2:
                if hasattr(self.obj[1], "_yaml_line_col"):
                    return self.obj[0], self.obj[1]._yaml_line_col.line + 1
                return self.obj
        return None, None

    def show(self, file=None) -> None:
        super().show(file)
        for entry in reversed(self.stack):
            log.error("  included from %s:%s", entry.filename, entry.lineno)


class Entry:
    """Location of an include statement"""
    def __init__(self, filename, yaml, index):
        self.filename = filename
        try:
            self.lineno = yaml._yaml_line_col.data[index][0] + 1
        except (AttributeError, KeyError, IndexError):
            self.lineno = 0


class MixedTypeError(LayeredConfError):
    """Mixed types in proxy collection"""


class AttrItemAccessMixin:
    """Mixin class mapping dot to bracket access

    Added to classes implementing __getitem__, this mixin will allow
    acessing items using dot notation. I.e. "object.xyz" is
    translated to "object[xyz]".
    """
    def __getattr__(self, key):
        try:
            if key[0] == "_":
                return self.__getattribute__(key)
            return self[key]
        except (IndexError, KeyError) as exc:
            raise AttributeError(key) from exc

    def __setattr__(self, key, value):
        if key[0] == "_":
            object.__setattr__(self, key, value)
        else:
            raise NotImplementedError()


def _line_of(layer, key=None):
    try:
        if key is None:
            return layer._yaml_line_col.line + 1
        return layer._yaml_line_col.data[key][0] + 1
    except (AttributeError, KeyError, IndexError, TypeError):
        return None


class MultiProxy:
    """Base class for layered container structure"""
    def __init__(self, maps, root=None, parent=None, key=None):
        self._maps = list(maps)
        self._parent = parent
        self._key = key
        self._root = root

    def _make_proxy(self, key, items):
        item = items[0][1]
        if isinstance(item, Mapping):
            return MultiMapProxy(items, parent=self, key=key)
        if isinstance(item, str):
            return item
        if isinstance(item, Sequence):
            return MultiSeqProxy(items, parent=self, key=key)
        return item

    def _finditem(self, key):
        raise NotImplementedError()

    def __getitem__(self, key):
        return self._make_proxy(key, self._finditem(key))

    def get_files(self):
        return [fn for fn, layer in self._maps]

    def get_linenos(self):
        return [line for line in (_line_of(layer) for _, layer in self._maps)
                if line is not None]

    def get_fileline(self, key=None):
        if key is not None:
            for fname, layer in self._maps:
                try:
                    if key in layer:
                        return fname, _line_of(layer, key)
                except TypeError:
                    pass
        return ";".join(self.get_files()), next(iter(self.get_linenos()), None)

    def to_yaml(self, show_source=False):
        buf = io.StringIO()
        if show_source:
            for fn, layer in self._maps:
                buf.write(f"--- # from '{fn}' # ---\n")
                rt_yaml.dump(layer, buf)
        else:
            rt_yaml.dump(self, buf)
        return buf.getvalue()

    def __str__(self):
        return self.to_yaml()

    def __repr__(self):
        return f"{self.__class__.__name__}({self._maps!r})"

    def _get_root(self):
        node = self
        while node._parent:
            node = node._parent
        return node

    def get_path(self, key=None, absolute=False):
        """Resolve path stored under ``key``

        Relative paths are interpreted relative to the file defining
        them, or relative to the workflow root if tagged ``!workdir``.
        """
        items = self._finditem(key)
        value = self._make_proxy(key, items)
        if isinstance(value, MultiProxy):
            return value.get_paths(absolute)
        if value is None:
            return None
        fname = items[0][0]

        rootpath = self._get_root()._root
        if isinstance(value, WorkdirTag):
            path = str(value)
            basepath = rootpath
        else:
            path = os.path.expanduser(str(value))
            basepath = os.path.dirname(fname)
        if os.path.isabs(path):
            return path
        filepath = os.path.join(basepath, path)
        if absolute:
            return os.path.normpath(os.path.abspath(filepath))
        return os.path.relpath(filepath, rootpath)


class MultiMapProxy(MultiProxy, AttrItemAccessMixin, Mapping):
    """Mapping Proxy for layered containers"""
    def __contains__(self, key):
        return any(key in m for _, m in self._maps)

    def __len__(self):
        return len(set(k for _, m in self._maps for k in m))

    def _finditem(self, key):
        items = [(fn, m[key]) for fn, m in self._maps if key in m]
        if not items:
            raise KeyError(f"key '{key}' not found in any map")
        # Mappings, Sequences and Atomic types should not override one
        # another, can only have one of those and None.
        def get_type(obj):
            if isinstance(obj, Mapping):
                return "Mapping"
            if isinstance(obj, str):
                return "Scalar"
            if isinstance(obj, Sequence):
                return "Sequence"
            return "Scalar"
        typs = [get_type(m[1]) for m in items if m[1] is not None]
        if len(set(typs)) > 1:
            stack = [Entry(fn, m, key) for fn, m in self._maps if key in m]
            raise MixedTypeError(
                self,
                f"Cannot merge contents of configuration key '{key}'"
                f" due to mismatching content types.\n"
                f"  types = {typs}",
                key=key,
                stack=stack
            )
        # a None in a higher layer masks lower layers
        if items[0][1] is None:
            return items[:1]
        return [item for item in items if item[1] is not None]

    def __iter__(self):
        for key in dict.fromkeys(k for _, m in self._maps for k in m):
            yield key

    def get(self, key, default=None):
        try:
            return self[key]
        except KeyError:
            return default

    def get_paths(self, absolute=False):
        return AttrDict(
            (key, self.get_path(key, absolute))
            for key in self.keys()
            if self.get(key) is not None
        )


class MultiSeqProxy(MultiProxy, AttrItemAccessMixin, Sequence):
    """Sequence Proxy for layered containers"""
    def __contains__(self, value):
        return any(value in m for _, m in self._maps)

    def __iter__(self):
        index = 0
        for fn, smap in self._maps:
            for item in smap:
                yield self._make_proxy(index, [(fn, item)])
                index += 1

    def __len__(self):
        return sum(len(m) for _, m in self._maps)

    def __str__(self):
        return "+".join(f"{m}" for _, m in self._maps)

    def _locateitem(self, index):
        if isinstance(index, slice):
            raise NotImplementedError()
        if isinstance(index, str):
            try:
                index = int(index)
            except ValueError as exc:
                raise KeyError(index) from exc
        for fn, smap in self._maps:
            if index >= len(smap):
                index -= len(smap)
            else:
                return fn, smap, index
        raise IndexError(index)

    def _finditem(self, key):
        fn, smap, index = self._locateitem(key)
        return [(fn, smap[index])]

    def get_paths(self, absolute=False):
        return [self.get_path(i, absolute) for i in range(len(self))]

    def get_fileline(self, key=None):
        if key is None:
            return ";".join(self.get_files()), next(iter(self.get_linenos()), None)
        fn, smap, index = self._locateitem(key)
        return fn, _line_of(smap, index)


class LayeredConfProxy(MultiMapProxy):
    """Layered configuration"""

    def add_layer(self, name, container):
        """Add ``container`` as new top layer named ``name``"""
        self._maps.insert(0, (name, container))

    def remove_layer(self, name):
        map_name = self._maps[0][0]
        if map_name != name:
            raise LayeredConfError(self, f"in remove_layer: {map_name} != {name}")
        self._maps.pop(0)

    def __enter__(self):
        self.add_layer("dynamic", {})
        return self

    def __exit__(self, *args):
        self.remove_layer("dynamic")


RoundTripRepresenter.add_representer(LayeredConfProxy,
                                     RoundTripRepresenter.represent_dict)
RoundTripRepresenter.add_representer(MultiMapProxy,
                                     RoundTripRepresenter.represent_dict)
RoundTripRepresenter.add_representer(MultiSeqProxy,
                                     RoundTripRepresenter.represent_list)


rt_yaml = YAML(typ="rt")


@yaml_object(rt_yaml)
class WorkdirTag:
    """Path relative to the workflow root rather than to the defining file"""
    yaml_tag = "!workdir"

    def __init__(self, path) -> None:
        self.path = path

    def __repr__(self):
        return f"!workdir {self.path}"

    def __str__(self):
        return self.path

    @classmethod
    def from_yaml(cls, _constructor, node):
        return cls(node.value)

    @classmethod
    def to_yaml(cls, representer, instance):
        return representer.represent_scalar(
            cls.yaml_tag, instance.path
        )


def load(files, root=None):
    """Load configuration files

    Creates a `LayeredConfProxy` configuration object from a set of
    YAML files. Files listed later will override parts of earlier
    included files. Each file may pull in others using ``include``;
    included files rank below the including file.
    """

    def load_one(fname, stack):
        if any(fname == entry.filename for entry in stack):
            raise LayeredConfError((fname, None), "Recursion in includes", stack=stack)
        log.debug("Loading YAML configuration from %s", fname)
        try:
            with open(fname, "r") as fdes:
                yaml = rt_yaml.load(fdes)
        except IOError as exc:
            raise LayeredConfError((fname, None), "Failed to read file", stack=stack) from exc
        if yaml is None:
            yaml = {}
        if not isinstance(yaml, Mapping):
            raise LayeredConfError((fname, 1), "Config must have mapping as toplevel",
                                   stack=stack)
        layers = [(fname, yaml)]

        includes = yaml.get("include", [])
        if not includes:
            return layers

        basedir = os.path.dirname(fname)
        if isinstance(includes, str):
            includes = [includes]
        if not isinstance(includes, Sequence):
            raise LayeredConfError((fname, yaml), 'Statement "include" must be a list',
                                   stack=stack)

        for num, include in enumerate(reversed(includes)):
            path = os.path.join(basedir, include)
            stack.append(Entry(fname, yaml, "include"))
            layers.extend(load_one(path, stack))
            stack.pop()
        return layers

    files = [os.path.abspath(os.fspath(fname)) for fname in files]
    if not root:
        root = os.path.dirname(files[-1])

    layers = []
    for fname in reversed(files):
        layers.extend(load_one(fname, []))
    return LayeredConfProxy(layers, root=root)
