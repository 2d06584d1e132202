"""Optional post-task verification command."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

from work_loop.errors import AbortedError, VerificationFailedError
from work_loop.sanitization import sanitize_diagnostic

logger = logging.getLogger(__name__)


def run_verification(
    command: str,
    *,
    cwd: Path | None,
    timeout_seconds: int,
    shutdown_requested: Callable[[], bool] | None = None,
    poll_interval_seconds: float = 0.05,
) -> str:
    """Run ``command`` through the shell; raise ``VerificationFailedError`` unless it exits 0.

    ``shutdown_requested`` is polled while the command runs; once it returns true
    the command is terminated and ``AbortedError`` is raised.
    """

    logger.info("Running verification: %s", command)
    with tempfile.TemporaryFile() as output_file:
        try:
            process = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=output_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as error:
            raise VerificationFailedError(command=command, output=str(error)) from error

        deadline = time.monotonic() + timeout_seconds
        try:
            while process.poll() is None:
                if shutdown_requested is not None and shutdown_requested():
                    raise AbortedError("Verification was aborted")
                if time.monotonic() >= deadline:
                    raise VerificationFailedError(
                        command=command,
                        output=f"timed out after {timeout_seconds}s",
                    )
                time.sleep(poll_interval_seconds)
        except BaseException:
            _terminate_group(process)
            raise

        output_file.seek(0)
        raw_output = output_file.read().decode("utf-8", errors="replace")

    output = sanitize_diagnostic(raw_output)
    if process.returncode != 0:
        raise VerificationFailedError(
            command=command,
            output=output or f"exit code {process.returncode}",
        )
    return output


def _terminate_group(process: subprocess.Popen[bytes]) -> None:
    """Stop the shell and everything it spawned."""

    if process.poll() is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except OSError:
            return
        process.wait(timeout=2)
