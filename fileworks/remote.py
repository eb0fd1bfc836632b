"""Remote transfer orchestration: local<->remote and remote<->remote jobs.

A remote-to-remote job is staged through a private local directory::

    source server --(phase 1, source profile's cascade)--> r2r_XXXX/
    r2r_XXXX/     --(phase 2, target profile's cascade)--> target server

Only the items that arrived in phase 1 are uploaded in phase 2, and the
staging directory is removed on every exit path.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Sequence

from fileworks.cancel import CancelToken
from fileworks.config import DEFAULT_CONFIG
from fileworks.errors import ProtocolError
from fileworks.progress import (
    CANCELLED_MESSAGE,
    BatchTally,
    JobResult,
    PrepareComplete,
    Preparing,
    ProgressSender,
)
from fileworks.transport import (
    KeyFileAuth,
    PasswordAuth,
    RemoteProfile,
    Transport,
    TransferDirection,
    TransferRequest,
    default_transports,
    select_transport,
)

__all__ = [
    "KeyFileAuth",
    "PasswordAuth",
    "RemoteProfile",
    "TransferDirection",
    "TransferRequest",
    "run_remote_transfer",
    "run_remote_to_remote_transfer",
    "STAGING_PREFIX",
]

logger = logging.getLogger(__name__)

STAGING_PREFIX = "r2r_"


def _cancelled(sender: ProgressSender, tally: BatchTally, name: str) -> JobResult:
    sender.error(name, CANCELLED_MESSAGE)
    return sender.complete(tally, cancelled=True)


def _run_phase(
    transport: Transport,
    request: TransferRequest,
    token: CancelToken,
    sender: ProgressSender,
    tally: BatchTally,
) -> tuple[str | None, bool]:
    """Run one transport pass.

    Returns ``(interrupted_item, aborted)``: the item cancellation stopped
    (or ``None``) and whether a hard protocol error ended the pass.
    """
    try:
        return transport.transfer(request, token, sender, tally), False
    except ProtocolError as exc:
        logger.error("%s transfer to %s aborted: %s", transport.name, request.profile.host, exc)
        return None, True


# ---------------------------------------------------------------------------
# Local <-> remote
# ---------------------------------------------------------------------------


def run_remote_transfer(
    request: TransferRequest,
    token: CancelToken,
    sender: ProgressSender,
    transports: Sequence[Transport] | None = None,
    timeout: float = 15.0,
) -> JobResult:
    """Transfer *request*'s items with the first available transport."""
    total = len(request.source_files)
    sender.send(Preparing(f"Transferring {total} file(s)..."))
    tally = BatchTally()
    try:
        transport = select_transport(request.profile, transports or default_transports(timeout))
    except ProtocolError as exc:
        tally.record_failure(str(exc))
        sender.error("", str(exc))
        return sender.complete(tally)
    sender.send(PrepareComplete())

    interrupted, _ = _run_phase(transport, request, token, sender, tally)
    if interrupted is not None or token.is_cancelled():
        logger.info("Remote transfer cancelled after %d item(s)", tally.success)
        return _cancelled(sender, tally, interrupted or "")
    logger.info(
        "Remote transfer finished: %d ok, %d failed", tally.success, tally.failure
    )
    return sender.complete(tally)


# ---------------------------------------------------------------------------
# Remote <-> remote
# ---------------------------------------------------------------------------


def _staged_name(item: str) -> str:
    return os.path.basename(item.rstrip("/"))


def run_remote_to_remote_transfer(
    source_profile: RemoteProfile,
    target_profile: RemoteProfile,
    source_files: Iterable[str],
    source_base: str,
    target_path: str,
    token: CancelToken,
    sender: ProgressSender,
    staging_root: str | os.PathLike[str] | None = None,
    source_transports: Sequence[Transport] | None = None,
    target_transports: Sequence[Transport] | None = None,
    timeout: float = 15.0,
) -> JobResult:
    """Copy items between two servers through a temporary local directory.

    Counting: an item succeeds only once it reaches the target; a failure in
    either phase counts against it once.
    """
    source_files = tuple(source_files)
    sender.send(
        Preparing(f"Transferring {len(source_files)} file(s) between remote servers...")
    )
    tally = BatchTally()

    root = Path(staging_root or DEFAULT_CONFIG["staging_dir"]).expanduser()
    try:
        root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=root))
    except OSError as exc:
        tally.record_failure(f"Failed to create temp dir: {exc}")
        sender.error("", tally.last_error)
        return sender.complete(tally)
    logger.debug("Staging remote-to-remote transfer in %s", staging)

    try:
        return _stage_and_forward(
            source_profile, target_profile, source_files, source_base, target_path,
            staging, token, sender, tally,
            source_transports or default_transports(timeout),
            target_transports or default_transports(timeout),
        )
    finally:
        shutil.rmtree(staging, ignore_errors=True)
        logger.debug("Removed staging directory %s", staging)


def _stage_and_forward(
    source_profile: RemoteProfile,
    target_profile: RemoteProfile,
    source_files: tuple[str, ...],
    source_base: str,
    target_path: str,
    staging: Path,
    token: CancelToken,
    sender: ProgressSender,
    tally: BatchTally,
    source_transports: Sequence[Transport],
    target_transports: Sequence[Transport],
) -> JobResult:
    try:
        downloader = select_transport(source_profile, source_transports)
        uploader = select_transport(target_profile, target_transports)
    except ProtocolError as exc:
        tally.record_failure(str(exc))
        sender.error("", str(exc))
        return sender.complete(tally)
    sender.send(PrepareComplete())

    # Phase 1: source server -> staging
    download = TransferRequest(
        TransferDirection.REMOTE_TO_LOCAL, source_profile, source_files,
        source_base, str(staging),
    )
    staged = BatchTally()
    interrupted, aborted = _run_phase(downloader, download, token, sender, staged)
    tally.failure, tally.last_error = staged.failure, staged.last_error
    if interrupted is not None or token.is_cancelled():
        return _cancelled(sender, tally, interrupted or "")
    if aborted:
        sender.error("", f"Download failed: {staged.last_error}")
        return sender.complete(tally)

    arrived = tuple(_staged_name(item) for item in downloader.completed)
    if not arrived:
        logger.info("Nothing was staged; skipping upload to %s", target_profile.host)
        return sender.complete(tally)

    # Phase 2: staging -> target server
    upload = TransferRequest(
        TransferDirection.LOCAL_TO_REMOTE, target_profile, arrived,
        str(staging), target_path,
    )
    interrupted, aborted = _run_phase(uploader, upload, token, sender, tally)
    if interrupted is not None or token.is_cancelled():
        return _cancelled(sender, tally, interrupted or "")
    if aborted:
        sender.error("", f"Upload failed: {tally.last_error}")
    logger.info(
        "Remote-to-remote transfer finished: %d ok, %d failed", tally.success, tally.failure
    )
    return sender.complete(tally)
