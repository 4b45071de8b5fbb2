"""Run external processes (git, gh, cookstyle) with a deadline and a stop signal."""

import logging
import subprocess
import threading
import time
from pathlib import Path

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.5


class CommandError(RuntimeError):
    """Raised when an external command cannot be run to completion."""

    retryable = True


class CommandTimeout(CommandError):
    """Raised when a command outlives its deadline and is killed."""


class CommandCancelled(CommandError):
    """Raised when the operator stops the run while a command is in flight."""

    retryable = False


class CancelToken:
    """Combine an operator stop event with an optional per-task deadline.

    One token is created per repository task and threaded through every
    external call that task makes, so a deadline covers the task including
    its retries.
    """

    def __init__(self, stop_event: threading.Event | None = None, timeout: float | None = None):
        self.stop_event = stop_event or threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


def _effective_timeout(timeout: float | None, token: CancelToken | None) -> float | None:
    remaining = token.remaining() if token else None
    if timeout is None:
        return remaining
    if remaining is None:
        return timeout
    return min(timeout, remaining)


def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = None,
    token: CancelToken | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *cmd* and return its completed process.

    A non-zero exit status is returned to the caller, not raised. The child is
    killed and :class:`CommandTimeout` raised when the effective deadline (the
    smaller of *timeout* and the token's remaining time) passes, and
    :class:`CommandCancelled` raised when the token's stop event is set.
    """
    if token is not None and token.cancelled:
        raise CommandCancelled(f"cancelled before start: {' '.join(cmd)}")

    limit = _effective_timeout(timeout, token)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            text=True,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        raise CommandError(f"could not start {cmd[0]}: {exc}") from exc

    pending_input = input_text
    while True:
        elapsed = time.monotonic() - started
        if token is not None and token.cancelled:
            _kill(proc)
            raise CommandCancelled(f"cancelled: {' '.join(cmd)}")
        if limit is not None and elapsed >= limit:
            _kill(proc)
            raise CommandTimeout(f"timed out after {limit:.0f}s: {' '.join(cmd)}")

        wait_seconds = _POLL_SECONDS if limit is None else min(_POLL_SECONDS, max(0.01, limit - elapsed))
        try:
            stdout, stderr = proc.communicate(input=pending_input, timeout=wait_seconds)
        except subprocess.TimeoutExpired:
            # stdin is written on the first communicate() call only
            pending_input = None
            continue
        return subprocess.CompletedProcess(
            args=cmd,
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)
