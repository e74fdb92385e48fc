"""
Error taxonomy of a segmentation run.

- ResourceError: a bucket could not get its temp directory. Fatal, the run
  stops at once.
- LaunchError: the tool process could not start. Recorded on the bucket and
  judged after every bucket has finished.
- PartialOutputMiss: an expected mask file is absent. Recovered with a blank
  mask; only ever logged.
- DownstreamDetectionError: converting the label volume to objects failed.
  Fatal, its message is reported verbatim.
- CancellationError: raised when a run reaches a step after it was cancelled.
  Not a failure: the orchestrator catches it and reports the cancellation
  flag and reason, never an error message.
"""

import errno
from typing import Optional


class OrchestrationError(Exception):
    """Base class for errors raised while orchestrating a run."""
    pass


class ResourceError(OrchestrationError):
    """A bucket workspace (temp directory) could not be created."""
    pass


class LaunchError(OrchestrationError):
    """The external tool process could not be started."""

    def __init__(self, message: str, permission_denied: bool = False):
        super().__init__(message)
        self.permission_denied = permission_denied


class DownstreamDetectionError(OrchestrationError):
    """The label-to-objects conversion failed."""
    pass


class CancellationError(OrchestrationError):
    """The run was cancelled before this step could run."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "Cancelled")
        self.reason = reason


class PartialOutputMiss(UserWarning):
    """An expected per-frame mask was not produced by any bucket."""
    pass


PERMISSION_HINT = (
    "The executable does not have the file permission to run.\n"
    "Please see https://github.com/MouseLand/cellpose#run-cellpose-without-local-python-installation "
    "for more information."
)


def classify_launch_error(exc: BaseException, tool_name: str = "Cellpose") -> LaunchError:
    """
    Turn an exception raised while starting the tool into a LaunchError.

    A permission-denied error (errno 13) gets a remediation hint; every other
    error message is passed through verbatim.

    Args:
        exc: Exception raised by the process launch
        tool_name: Display name of the tool for the message

    Returns:
        LaunchError with a human-readable message
    """
    denied = isinstance(exc, PermissionError) or getattr(exc, "errno", None) == errno.EACCES
    if not denied and "error=13" in str(exc):
        denied = True
    if denied:
        return LaunchError(
            f"Problem running {tool_name}:\n{PERMISSION_HINT}\n",
            permission_denied=True,
        )
    return LaunchError(f"Problem running {tool_name}:\n{exc}")
