"""Exceptions raised by sampleflow"""
import sys
import textwrap
from typing import Optional, Tuple

from click import ClickException, echo


class SampleflowException(Exception):
    """Base class of all sampleflow Exceptions"""


class SampleflowPrettyException(SampleflowException, ClickException):
    """Exception that does not lead to stack trace on CLI

    Inheriting from ClickException makes ``click`` print only the
    ``self.msg`` value of the exception, rather than allowing Python
    to print a full stack trace.

    This is useful for exceptions indicating usage or configuration
    errors. We use this, instead of `click.UsageError` and friends so
    that the exceptions can be caught and handled explicitly where
    needed.
    """


class SampleflowLocateableError(SampleflowPrettyException):
    """Errors that have a file location to be shown

    Args:
      obj: The object causing the exception. If it has ``lineno``
        and ``filename``, these will be shown as part of the error
        message on the command line.
      msg: The message to display
    """
    def __init__(self, obj: object, msg: str) -> None:
        self.obj = obj
        super().__init__(msg)

    def get_fileline(self) -> Tuple[Optional[str], Optional[int]]:
        """Retrieve filename and linenumber from object associated with exception

        Returns:
           Tuple of filename and linenumber
        """
        return getattr(self.obj, "filename", None), getattr(self.obj, "lineno", None)

    def show(self, file=None) -> None:
        super().show(file)
        if file is None:
            file = sys.stderr
        fname, line = self.get_fileline()
        if fname:
            if line is None:
                echo(f"Problem occurred in {fname}:", file=file)
            else:
                echo(f"Problem occurred in line {line} of {fname}:", file=file)


class SampleflowUsageError(SampleflowPrettyException):
    """General usage error"""


class ConfigurationError(SampleflowLocateableError):
    """Indicates a malformed stage directive, glob pattern or config entry

    Raised while the workflow graph is built, before any task runs.

    Args:
      obj: Object or config subtree causing error
      msg: The message to display
      key: Key indicating part of ``obj`` causing error
    """
    def __init__(self, obj: object, msg: str, key: Optional[object] = None) -> None:
        super().__init__(obj, msg)
        self.key = key

    def get_fileline(self):
        if hasattr(self.obj, "get_fileline"):
            return self.obj.get_fileline(self.key)
        return super().get_fileline()


class ChannelError(SampleflowPrettyException):
    """Indicates a problem creating or transforming a channel"""


class EmptyChannelError(ChannelError):
    """A required input channel matched no files

    Raised before any task is dispatched.
    """
    def __init__(self, name: str, pattern: str) -> None:
        self.name = name
        self.pattern = pattern
        super().__init__(f"No files found for input '{name}' (pattern '{pattern}')")


class PairingError(ChannelError):
    """Files could not be grouped into tuples of the expected size"""
    def __init__(self, msg: str) -> None:
        super().__init__(textwrap.dedent(msg))


class TaskExecutionError(SampleflowException):
    """A task's command exited non-zero or a required output was not produced

    Args:
      task: The failed task
      msg: Description of the failure
      exit_code: Exit status of the command (None if it never ran)
      stderr: Tail of the captured standard error
    """
    def __init__(self, task, msg: str, exit_code: Optional[int] = None,
                 stderr: str = "") -> None:
        super().__init__(msg)
        self.task = task
        self.exit_code = exit_code
        self.stderr = stderr


class TaskStateError(SampleflowException):
    """Illegal status change of a task (e.g. leaving a terminal state)"""


class PublishError(SampleflowException):
    """Failure to place a task output into the output directory

    Never fails the task itself, it is recorded as separate event.
    """
    def __init__(self, task, path, msg: str) -> None:
        super().__init__(msg)
        self.task = task
        self.path = path


class WorkflowAborted(SampleflowException):
    """The run was aborted; in-flight tasks were terminated"""
