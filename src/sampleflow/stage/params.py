"""
Typed stage parameters

Stages declare tool parameters (minimum read length, quality cutoff,
...) with a type and a default. Values given in ``overrides`` or on
the command line are converted to the declared type before they are
substituted into the script template as ``{params.NAME}``.
"""

import abc
import os
from typing import Dict, List, Type

from sampleflow.common import AttrDict
from sampleflow.exceptions import ConfigurationError
from sampleflow.stage.base import BaseStage


class Param(abc.ABC):
    """Stage Parameter (base class)"""

    #: Type/Class mapping for param types
    types: Dict[str, "Type[Param]"] = {}

    #: Name of type, must be overwritten by children
    type_name: str = NotImplemented

    def __init__(self, stage: BaseStage, name: str, default=None, value=None) -> None:
        self.stage = stage
        self.name = name
        self.value = value
        self.default = self.convert(default) if default is not None else None

    def __eq__(self, other):
        return (
            self.type_name == other.type_name and
            self.name == other.name and
            self.value == other.value and
            self.default == other.default
        )

    def __repr__(self):
        return (f"StageParameter(typ='{self.type_name}', "
                f"name='{self.name}', default='{self.default}')")

    def __init_subclass__(cls, **kwargs) -> None:
        super().__init_subclass__(**kwargs)
        if cls.type_name == NotImplemented:
            raise TypeError("Subclasses of Param must override 'type_name'")
        if cls.type_name in cls.types:
            raise TypeError(
                f"Type name '{cls.type_name}' already used by {cls.types[cls.type_name]}"
            )
        cls.types[cls.type_name] = cls

    @classmethod
    def make(cls, stage: BaseStage, typ: str, name: str, default=None, value=None) -> "Param":
        if typ not in cls.types:
            raise ConfigurationError(
                stage,
                f"Unknown stage parameter type '{typ}'"
                f" (must be one of {', '.join(sorted(cls.types))})"
            )
        try:
            return cls.types[typ](stage, name, default, value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                stage, f"Bad default for parameter '{name}': {exc}"
            ) from None

    @abc.abstractmethod
    def convert(self, value):
        """Convert ``value`` to the type of this parameter

        Raises:
          ValueError: if the value cannot be converted
        """

    def resolve(self, value=None):
        """Value substituted into templates"""
        if value is None:
            return self.default
        return self.convert(value)


class ParamInt(Param):
    """Stage Int Parameter"""
    type_name = "int"

    def convert(self, value):
        if isinstance(value, bool):
            raise ValueError(f"'{value}' is not an integer")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"'{value}' is not an integer")
        return int(value)


class ParamFloat(Param):
    """Stage Float Parameter"""
    type_name = "float"

    def convert(self, value):
        if isinstance(value, bool):
            raise ValueError(f"'{value}' is not a number")
        return float(value)


class ParamStr(Param):
    """Stage String Parameter"""
    type_name = "str"

    def convert(self, value):
        return str(value)


class ParamPath(Param):
    """Stage Path Parameter

    Relative paths are made absolute with respect to the current
    working directory, so that they remain valid inside task
    directories. Defaults from configuration files are resolved
    beforehand, like other configured paths.
    """
    type_name = "path"

    def convert(self, value):
        return os.path.abspath(os.path.expanduser(str(value)))


class ParamFlag(Param):
    """Stage Flag Parameter

    A boolean. In templates, it expands to ``value`` (the command line
    flag, e.g. ``--careful``) if set and to nothing otherwise.
    """
    type_name = "flag"

    TRUE = ("true", "yes", "on", "1")
    FALSE = ("false", "no", "off", "0", "")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if self.default is None:
            self.default = False

    def convert(self, value):
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        text = str(value).lower()
        if text in self.TRUE:
            return True
        if text in self.FALSE:
            return False
        raise ValueError(f"'{value}' is not a boolean")

    def resolve(self, value=None):
        enabled = super().resolve(value)
        if not enabled:
            return []
        return [self.value if self.value is not None else f"--{self.name}"]


class Parametrizable(BaseStage):
    """Stage with typed parameters"""
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.__params: List[Param] = []
        self.__overrides: Dict[str, object] = {}

    def add_param(self, name: str, typ: str, default=None, value=None) -> bool:
        """Add parameter to stage

        Example:
            >>> stage.add_param("min_len", "int", default=1000)

            This makes ``{params.min_len}`` expand to ``1000`` unless
            overridden.

        Args:
          name: Name of parameter in params
          typ:  The type of the parameter (int, float, str, flag, path)
          default: default value if not overridden
          value: for flags, the text ``{params.NAME}`` expands to if set
        """
        new_param = Param.make(self, typ, name, default, value)
        for param in self.__params:
            if param == new_param:
                return False
            if param.name == name:
                raise ConfigurationError(
                    self,
                    f"Names must be unique. Name '{name}' already used by {param}.\n"
                    f"  while trying to add {new_param}"
                )
        self.__params.append(new_param)
        return True

    @property
    def params(self) -> List[Param]:
        return self.__params

    def get_param(self, name: str) -> Param:
        for param in self.__params:
            if param.name == name:
                return param
        raise KeyError(name)

    def set_param(self, name: str, value) -> None:
        """Override the value of parameter ``name``

        Raises:
          ConfigurationError: if there is no such parameter or the value
            does not convert to its type
        """
        try:
            param = self.get_param(name)
        except KeyError:
            raise ConfigurationError(
                self,
                f"Stage '{self.name}' has no parameter '{name}'"
                f" (has: {', '.join(p.name for p in self.__params) or 'none'})"
            ) from None
        try:
            self.__overrides[name] = param.convert(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                self,
                f"Bad value for parameter '{name}' of stage '{self.name}'"
                f" (type {param.type_name}): {exc}"
            ) from None

    def param_values(self) -> AttrDict:
        """Resolved values for all parameters"""
        return AttrDict(
            (param.name, param.resolve(self.__overrides.get(param.name)))
            for param in self.__params
        )
