import os
import warnings

try:
    from importlib.metadata import version as _dist_version, PackageNotFoundError
    __version__ = _dist_version(__name__)
except PackageNotFoundError:
    __version__ = "0.0.0"


try:
    __numeric_version__ = sum(
        (100 ** n) * int(m)
        for n, m in enumerate(__version__.split(".")[2::-1]))
except ValueError:
    warnings.warn(f"Could not parse version {__version__}")
    __numeric_version__ = 0

# Paths of files distributed with the package
_rsc_dir = __path__[0]
_etc_dir = os.path.join(_rsc_dir, "etc")
_defaults_file = os.path.join(_etc_dir, "defaults.yml")


def get_config() -> 'config.ConfigMgr':
    """Access the current sampleflow configuration object.

    The object is created on first access from the config files found
    relative to the current working directory. Tests unload it between
    runs with ``get_config().unload()``.
    """
    from sampleflow.config import ConfigMgr
    return ConfigMgr.instance()
