"""
Small helpers shared by the config, stage and graph modules
"""
from collections.abc import Iterable, Mapping


class AttrDict(dict):
    """Read-only attribute access to dict keys

    Used for parameter values in templates (``{params.name}``).
    Nested mappings are wrapped on access.
    """
    def __getattr__(self, attr):
        try:
            val = self[attr]
        except KeyError:
            raise AttributeError(f"No attribute '{attr}' (have: {', '.join(self)})") from None
        if isinstance(val, Mapping) and not isinstance(val, AttrDict):
            return AttrDict(val)
        return val

    def __setattr__(self, attr, value):
        if attr.startswith("_"):
            super().__setattr__(attr, value)
        else:
            raise NotImplementedError()


def is_container(obj):
    """Check if object is container, considering strings not containers"""
    return not isinstance(obj, (str, bytes)) and isinstance(obj, Iterable)


def ensure_list(obj, convert=None):
    """Wrap ``obj`` in a `list` as needed

    Args:
      obj: None, a scalar or an iterable
      convert: Applied to each item if given
    """
    if obj is None:
        items = []
    elif is_container(obj) and not isinstance(obj, Mapping):
        items = list(obj)
    else:
        items = [obj]
    if convert is not None:
        items = [convert(item) for item in items]
    return items
