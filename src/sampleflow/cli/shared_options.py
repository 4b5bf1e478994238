"""
Options and log setup shared by all ``sampleflow`` commands
"""

import logging
import os
import sys

import click
import tqdm
from coloredlogs import ColoredFormatter

log = logging.getLogger(__name__)  # pylint: disable=invalid-name

context_settings = {
    'help_option_names': ['-h', '--help']
}

#: Colors by level name
LEVEL_STYLES = {
    'debug': {'color': 'blue'},
    'info': {'color': 'green'},
    'warning': {'color': 'yellow'},
    'error': {'color': 'red'},
    'critical': {'color': 'red', 'bold': True},
}


class ProgressAwareHandler(logging.StreamHandler):
    """Writes log records above a running task progress bar

    The record goes through `tqdm.tqdm.write`, which clears and redraws
    active bars. The stream is looked up on each write, so redirections
    of ``sys.stderr`` (e.g. by click's test runner) are honored.
    """
    def emit(self, record):
        try:
            tqdm.tqdm.write(self.format(record), file=sys.stderr)
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)


class TaskLogFormatter(ColoredFormatter):
    """Plain messages for our own loggers, ``[name]`` prefix for others"""
    def __init__(self, color=True):
        super().__init__("%(source)s%(message)s",
                         level_styles=LEVEL_STYLES if color else {},
                         field_styles={})

    def format(self, record):
        if record.name == "sampleflow" or record.name.startswith("sampleflow."):
            record.source = ""
        else:
            record.source = f"[{record.name}] "
        return super().format(record)


class LogSetup:
    """Per invocation log configuration

    Installs the console handler on the root logger once and resets
    the ``sampleflow`` logger to WARNING. Each ``-v`` lowers and each
    ``-q`` raises that level by one step.
    """
    def __init__(self):
        self.logger = logging.getLogger("sampleflow")
        self.logger.setLevel(logging.WARNING)
        root = logging.getLogger()
        for handler in root.handlers:
            if isinstance(handler, ProgressAwareHandler):
                self.console = handler
                break
        else:
            self.console = ProgressAwareHandler()
            self.console.setLevel(logging.DEBUG)
            root.addHandler(self.console)
        self.set_color(sys.stderr.isatty())

    def set_color(self, color):
        self.console.setFormatter(TaskLogFormatter(color))

    def shift_level(self, steps):
        level = self.logger.getEffectiveLevel() + steps * 10
        self.logger.setLevel(max(logging.DEBUG, min(logging.CRITICAL, level)))

    @staticmethod
    def add_file(filename):
        handler = logging.FileHandler(filename)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s"
        ))
        logging.getLogger().addHandler(handler)


def set_verbosity(ctx, param, val):
    setup = ctx.ensure_object(LogSetup)
    if val:
        setup.shift_level(-val if param.name == "verbose" else val)


def set_logfile(ctx, _param, val):
    if val:
        ctx.ensure_object(LogSetup).add_file(val)


def set_color(ctx, _param, val):
    if val is not None:
        ctx.ensure_object(LogSetup).set_color(val)


def enable_debug(_ctx, _param, val):
    """Start the debugger on uncaught exceptions and on SIGUSR1"""
    if not val:
        return
    import pdb  # pylint: disable=import-outside-toplevel
    import signal  # pylint: disable=import-outside-toplevel
    import traceback  # pylint: disable=import-outside-toplevel

    def excepthook(typ, value, trace):
        traceback.print_exception(typ, value, trace)
        pdb.pm()

    sys.excepthook = excepthook
    signal.signal(signal.SIGUSR1, lambda _sig, frame: pdb.Pdb().set_trace(frame))
    log.error("Dropping into PDB on uncaught exception. "
              "To trigger the debugger now, call 'kill -s SIGUSR1 %i'", os.getpid())


def log_options(f):
    """Add logging options to a command"""
    options = [
        click.option("--verbose", "-v", count=True, expose_value=False,
                     callback=set_verbosity, help="Increase log verbosity"),
        click.option("--quiet", "-q", count=True, expose_value=False,
                     callback=set_verbosity, help="Decrease log verbosity"),
        click.option("--log-file", metavar="FILE", expose_value=False,
                     callback=set_logfile, help="Also write log to FILE"),
        click.option("--color/--no-color", default=None, expose_value=False,
                     callback=set_color,
                     help="Colorize log (default: if stderr is a terminal)"),
        click.option("--pdb", "-P", is_flag=True, expose_value=False,
                     callback=enable_debug,
                     help="Drop into debugger on uncaught exception"),
    ]
    for option in options:
        f = option(f)
    return f


class Group(click.Group):
    """Group adding the log options to each subcommand"""
    def command(self, *args, **kwargs):
        command = super().command(*args, context_settings=context_settings,
                                  **kwargs)

        def wrapper(f):
            return command(log_options(f))
        return wrapper


def command(*args, **kwargs):
    command = click.command(*args, context_settings=context_settings, **kwargs)

    def wrapper(f):
        return command(log_options(f))
    return wrapper


def group(*args, **kwargs):
    return command(*args, cls=Group, **kwargs)
