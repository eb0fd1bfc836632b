"""fileworks — cancellable background file jobs with streamed progress.

Typical use from a UI loop::

    from fileworks import start_local_copy_batch, POLL_INTERVAL

    receiver, token = start_local_copy_batch(["a.txt"], "/src", "/dst")
    while not receiver.finished:
        for event in receiver.drain():
            ...
"""

from __future__ import annotations

import logging
import sys

from fileworks.cancel import CancelToken
from fileworks.config import ConfigManager
from fileworks.conflicts import Conflict, ConflictResolution, ConflictResolver, detect_conflicts
from fileworks.errors import (
    ConflictPending,
    FileworksError,
    ProtocolError,
    ToolMissing,
    ValidationError,
)
from fileworks.jobs import (
    start_archive_create,
    start_archive_extract,
    start_local_copy_batch,
    start_local_move_batch,
    start_remote_to_remote_transfer,
    start_remote_transfer,
    start_same_folder_duplicate,
)
from fileworks.progress import POLL_INTERVAL, JobResult
from fileworks.symlinks import filter_sensitive_symlinks_for_copy, filter_symlinks_for_archive
from fileworks.transport import (
    KeyFileAuth,
    PasswordAuth,
    RemoteProfile,
    TransferDirection,
    TransferRequest,
)

__version__ = "0.1.0"

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: int = logging.INFO) -> None:
    """Set up root logging to stderr for a host application or script."""
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


__all__ = [
    "CancelToken",
    "ConfigManager",
    "Conflict",
    "ConflictPending",
    "ConflictResolution",
    "ConflictResolver",
    "FileworksError",
    "JobResult",
    "KeyFileAuth",
    "POLL_INTERVAL",
    "PasswordAuth",
    "ProtocolError",
    "RemoteProfile",
    "ToolMissing",
    "TransferDirection",
    "TransferRequest",
    "ValidationError",
    "configure_logging",
    "detect_conflicts",
    "filter_sensitive_symlinks_for_copy",
    "filter_symlinks_for_archive",
    "start_archive_create",
    "start_archive_extract",
    "start_local_copy_batch",
    "start_local_move_batch",
    "start_remote_to_remote_transfer",
    "start_remote_transfer",
    "start_same_folder_duplicate",
]
