import logging
import os
import shlex
import shutil
import textwrap
from pathlib import Path

import pytest

from sampleflow.config import ConfigMgr

from .data import Runner, make_reads

log = logging.getLogger(__name__)


# Add pytest options
# ==================

def pytest_addoption(parser):
    parser.addoption("--cwd-save-dir", metavar="DIR",
                     default="test_failures",
                     help="""Tests needing local files are run in a temporary
                     directory. If a test fails, a copy of the directory is
                     made in this location.""")
    parser.addoption("--cwd-save-always", action="store_true",
                     default=False, help="Always save test CWD")


# Allow executing tests in dir saved on error
# ===========================================

@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    # execute all other hooks to obtain the report object
    outcome = yield
    rep = outcome.get_result()

    # set a report attribute for each phase of a call, which can
    # be "setup", "call", "teardown"
    setattr(item, "rep_" + rep.when, rep)


@pytest.fixture()
def saved_tmpdir(request, tmp_path):
    yield tmp_path
    if (
        request.config.getoption("--cwd-save-always")
        or not hasattr(request.node, 'rep_call')
        or request.node.rep_call.failed
    ):
        name_parts = request.node.name.replace("]", "").split("[")
        cwd_save_dir = request.config.getoption("--cwd-save-dir")
        destdir = Path(cwd_save_dir).absolute().joinpath(*name_parts)
        if destdir.exists():
            shutil.rmtree(destdir)
        destdir.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(tmp_path), str(destdir))
        log.error("Saved failed test data to %s", str(destdir))


@pytest.fixture()
def saved_cwd(saved_tmpdir):
    cwd = os.getcwd()
    os.chdir(saved_tmpdir)
    yield saved_tmpdir
    os.chdir(cwd)


@pytest.fixture(autouse=True)
def no_user_config(tmp_path_factory, monkeypatch):
    """Keep settings in the user's config dir from interfering"""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path_factory.mktemp("xdg_config")))
    yield
    ConfigMgr.unload()


@pytest.fixture(autouse=True)
def restore_log_level():
    """Undo log level changes made by CLI invocations (``-q``/``-v``)"""
    logger = logging.getLogger("sampleflow")
    level = logger.level
    yield
    logger.setLevel(level)


# Inject executables into PATH
# ==============================

@pytest.fixture()
def bin_dir(saved_tmpdir):
    binpath = os.path.join(saved_tmpdir, "bin")
    try:
        os.mkdir(binpath)
    except FileExistsError:
        if not os.path.isdir(binpath):
            raise
    path = os.environ['PATH']
    os.environ['PATH'] = ':'.join((binpath, path))
    yield binpath
    os.environ['PATH'] = path


class MockCmd(object):
    """Fake tool logging its calls

    The ``code`` is run after logging the call, with the arguments
    still in ``$@``.
    """
    _calls = None

    def __init__(self, bin_dir, name, code=""):
        self.filename = os.path.join(bin_dir, name)
        self.logname = self.filename + "_cmd.log"
        content = "\n".join([
            '#!/bin/sh',
            'echo "$0 $@" >> "{}"'.format(self.logname),
            '\n'
        ])
        with open(self.filename, "w") as f:
            f.write(content)
            f.write(textwrap.dedent(code))
        os.chmod(self.filename, 0o700)

    @property
    def calls(self):
        if not os.path.exists(self.logname):
            log.debug("%s is empty", self.logname)
            return []
        with open(self.logname) as r:
            data = r.read().splitlines()
        log.debug("%s:\n |  %s", self.logname, "\n | ".join(data))
        return data


@pytest.fixture
def mock_cmd(request, bin_dir):
    cmd, script = request.param
    yield MockCmd(bin_dir, cmd, script)


# Sample data
# ===========

@pytest.fixture()
def reads_dir(saved_tmpdir):
    """Directory with single end samples A and B"""
    make_reads(saved_tmpdir / "raw", ["A.fastq.gz", "B.fastq.gz"])
    return saved_tmpdir / "raw"


@pytest.fixture()
def runner(saved_tmpdir):
    return Runner(saved_tmpdir)


# Call into CLI
# =============

class Invoker(object):
    """Wrap invoking shell command

    Handles writing of out.log and cmd.sh as well as reloading the
    sampleflow config on each call.
    """
    def __init__(self):
        from click.testing import CliRunner
        self.runner = CliRunner()
        from sampleflow.cli import main
        self.main = main

    def call(self, *args, standalone_mode=False, **kwargs):
        """Call into sampleflow CLI

        ``standalone_mode`` defaults to False so that exceptions are
        passed rather than caught.

        """
        # force reload
        ConfigMgr.unload()

        argstr = " ".join(shlex.quote(arg) for arg in args)
        with open("cmd.sh", "w") as f:
            f.write("#!/bin/bash -x\n")
            f.write(f"PATH={os.environ['PATH']} sampleflow {argstr} \"$@\"\n")

        result = self.runner.invoke(self.main, args, **kwargs,
                                    standalone_mode=standalone_mode)

        with open("out.log", "w") as f:
            f.write(result.output)

        if result.exception and not standalone_mode:
            raise result.exception

        return result

    def call_raises(self, *args, **kwargs):
        return self.call(*args, standalone_mode=True, **kwargs)


@pytest.fixture()
def invoker(saved_cwd):
    invoker = Invoker()
    yield invoker
    ConfigMgr.unload()


@pytest.fixture(name="envvar")
def envvar_():
    to_restore = {}

    def envvar(var, value):
        if var in os.environ:
            to_restore[var] = os.environ[var]
        else:
            to_restore[var] = None
        os.environ[var] = value

    yield envvar

    for var, value in to_restore.items():
        if value is not None:
            os.environ[var] = value
        else:
            del os.environ[var]
