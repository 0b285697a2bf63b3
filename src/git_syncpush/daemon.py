import asyncio
import logging
import signal
import sys
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Settings
from .constants import (
    APP_NAME,
    DEFAULT_MAX_LOG_SIZE,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
)
from .errors import CommitError, PushError, SignalRegistrationError, StagingError
from .health import ReadinessGate
from .ops import GitBackend, Identity, SyncBackend, prepare_repository

logger = logging.getLogger(APP_NAME)


class SyncState(Enum):
    """States of the synchronization loop."""

    IDLE = "idle"
    STAGING = "staging"
    COMMITTING = "committing"
    PUBLISHING = "publishing"
    DRAINING = "draining"
    TERMINATED = "terminated"


class CycleResult(Enum):
    """Outcome of a single stage/commit/push pass."""

    NO_CHANGES = "no_changes"
    PUBLISHED = "published"
    STAGE_FAILED = "stage_failed"
    COMMIT_FAILED = "commit_failed"
    PUSH_FAILED = "push_failed"


class SyncLoop:
    """Drives a `SyncBackend` on a fixed cadence until cancelled.

    Cycles run strictly one after another in a worker thread. Cancellation is
    only observed while idle, so a started cycle always runs to completion.
    After cancellation a single drain cycle runs before the loop terminates.

    Attributes:
        backend (SyncBackend): The stage/commit/push implementation.
        period (float): Seconds between ticks.
        state (SyncState): The current state.
    """

    def __init__(self, backend: SyncBackend, period: float):
        if period <= 0:
            raise ValueError(f"Sync period must be positive, got {period}")
        self.backend = backend
        self.period = period
        self.state = SyncState.IDLE

    def _transition(self, state: SyncState) -> None:
        logger.debug(f"STATE: {self.state.value} -> {state.value}")
        self.state = state

    def run_cycle(self, resting: SyncState = SyncState.IDLE) -> CycleResult:
        """Runs one stage -> commit -> push pass.

        A staging or commit failure abandons the cycle (nothing is pushed). A
        push failure keeps the snapshot that was just created.

        Args:
            resting (SyncState): The state to return to once the pass is over.

        Returns:
            CycleResult: What the pass did.
        """
        try:
            self._transition(SyncState.STAGING)
            try:
                dirty = self.backend.stage()
            except StagingError as e:
                logger.error(f"STAGING ERROR: {e}")
                return CycleResult.STAGE_FAILED

            if not dirty:
                logger.info("No changes detected, skipping.")
                return CycleResult.NO_CHANGES

            self._transition(SyncState.COMMITTING)
            try:
                commit_id = self.backend.commit()
            except CommitError as e:
                # No new snapshot, so nothing new to publish.
                logger.error(f"COMMIT ERROR: {e}")
                return CycleResult.COMMIT_FAILED
            logger.info(f"COMMITTED: {commit_id}")

            self._transition(SyncState.PUBLISHING)
            try:
                self.backend.push()
            except PushError as e:
                logger.error(f"PUSH ERROR: {e}")
                return CycleResult.PUSH_FAILED
            logger.info("SUCCESS: Changes have been pushed to the remote.")
            return CycleResult.PUBLISHED
        finally:
            self._transition(resting)

    async def _wait_for_tick(self, cancel: asyncio.Event, delay: float) -> bool:
        """Waits until the next tick. Returns True if cancelled instead."""
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    async def run(self, cancel: asyncio.Event) -> None:
        """Runs cycles until `cancel` is set, then drains once.

        The first tick fires immediately. Ticks missed because a cycle ran long
        are skipped, not replayed.

        Args:
            cancel (asyncio.Event): Set to request a graceful shutdown.
        """
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while True:
            delay = max(0.0, next_tick - loop.time())
            if await self._wait_for_tick(cancel, delay):
                break

            await asyncio.to_thread(self.run_cycle)

            next_tick += self.period
            now = loop.time()
            if next_tick < now:
                next_tick = now

        logger.info("Signal received, finishing up...")
        self._transition(SyncState.DRAINING)
        await asyncio.to_thread(self.run_cycle, SyncState.DRAINING)
        self._transition(SyncState.TERMINATED)
        logger.info("Sync loop terminated.")


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop, cancel: asyncio.Event
) -> None:
    """Converts SIGINT/SIGTERM into a single cancellation notification.

    Args:
        loop (asyncio.AbstractEventLoop): The loop running the sync task.
        cancel (asyncio.Event): The event to set when a signal arrives.

    Raises:
        SignalRegistrationError: If handlers cannot be installed.
    """

    def handle(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, terminating...")
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            raise SignalRegistrationError(
                f"Failed to install {sig.name} handler: {e}"
            ) from e


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    max_bytes: int = DEFAULT_MAX_LOG_SIZE,
) -> None:
    """Configures the logging subsystem.

    Args:
        level (str): Minimum level for the application logger.
        log_file (Path | None): If set, also log to this file with rotation.
        max_bytes (int): Max size of the log file before it is rotated.
    """
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    # Always log to stderr (captured by the container runtime).
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


async def run(settings: Settings, readiness: ReadinessGate) -> SyncLoop:
    """Prepares the working tree and runs the sync loop until a signal arrives.

    Args:
        settings (Settings): Startup settings.
        readiness (ReadinessGate): Flipped once the working tree is ready.

    Returns:
        SyncLoop: The terminated loop.

    Raises:
        SignalRegistrationError: If termination handling cannot be installed.
        SetupError: If the working tree cannot be prepared.
    """
    cancel = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), cancel)

    repo = await asyncio.to_thread(
        prepare_repository,
        settings.repo,
        settings.path,
        settings.username,
        settings.password,
    )
    readiness.mark_ready()

    backend = GitBackend(
        repo,
        Identity(settings.author_name, settings.author_email),
        settings.username,
        settings.password,
    )
    sync_loop = SyncLoop(backend, settings.period)
    await sync_loop.run(cancel)
    return sync_loop
