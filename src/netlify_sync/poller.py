"""The poll state machine and the long-lived poll loop.

One call to ``PollDriver.poll_once`` is one state-machine step:

    IDLE --digest changed--> NEEDS_DEPLOY --next poll--> DEPLOYING
    DEPLOYING --deploy finished (ok or failed)--> IDLE

``NEEDS_DEPLOY`` and ``DEPLOYING`` are separate steps so the menu shows
"deploying" before a blocking deploy starts. OFFLINE is reported without
touching the state file.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from .deployer import Clock, DeployClient, run_deploy, utcnow
from .digest import compute_digest, diff_digests
from .models import DeployRecord, DeployStatus, DirectoryDigest, SyncState
from .persistence import StatePersister
from .utils import Config
from .worker import DetachedDeploy, WorkerState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    """What one poll decided; enough to render the menu."""

    status: DeployStatus
    state: SyncState
    online: bool = True
    error: str | None = None
    log: str | None = None


class PollDriver:
    """Runs one state-machine step per ``poll_once`` call."""

    def __init__(
        self,
        config: Config,
        persister: StatePersister,
        client_factory: Callable[[], DeployClient],
        is_online: Callable[[], bool],
        *,
        detached: DetachedDeploy | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize poll driver.

        Args:
            config: Runtime configuration
            persister: State store
            client_factory: Builds the deploy client; only called when deploying
            is_online: Connectivity probe
            detached: Worker launcher, required for the "subprocess" strategy
            clock: Returns the current time (injectable for tests)
        """
        if config.deploy_strategy == "subprocess" and detached is None:
            raise ValueError("deploy_strategy 'subprocess' requires a DetachedDeploy")
        self.config = config
        self.persister = persister
        self.client_factory = client_factory
        self.is_online = is_online
        self.detached = detached
        self._clock = clock

    def poll_once(self) -> PollResult:
        """Advance the state machine by one step.

        Raises:
            StateLockedError: If another poll holds the state lock
            DigestError: If the watched directory cannot be read
            ConfigError: If the deploy client cannot be built
        """
        with self.persister.lock():
            state = self.persister.load()

            if not self.is_online():
                logger.info("Offline, skipping poll")
                return PollResult(DeployStatus.OFFLINE, state, online=False)

            if state.status is DeployStatus.NEEDS_DEPLOY:
                state = replace(state, status=DeployStatus.DEPLOYING)
                self.persister.save(state)
                logger.info("Deploy scheduled for next poll")
                return PollResult(DeployStatus.DEPLOYING, state)

            if state.status is DeployStatus.DEPLOYING:
                if self.config.deploy_strategy == "subprocess":
                    return self._step_detached(state)
                return self._step_inprocess(state)

            return self._step_idle(state)

    def request_deploy(self) -> SyncState:
        """Queue a deploy regardless of the digest (the manual trigger)."""
        with self.persister.lock():
            state = self.persister.load()
            if state.status is DeployStatus.IDLE:
                state = replace(state, status=DeployStatus.NEEDS_DEPLOY)
                self.persister.save(state)
                logger.info("Deploy requested manually")
            return state

    def _step_idle(self, state: SyncState) -> PollResult:
        digest = compute_digest(self.config.src_dir, self.config.ignore_patterns)
        if digest == state.last_digest:
            return PollResult(DeployStatus.IDLE, state)

        diff = diff_digests(state.last_digest, digest)
        logger.info(
            "Change detected, deploy needed",
            extra={"extra_context": {"changes": diff.summary()}},
        )
        state = replace(state, status=DeployStatus.NEEDS_DEPLOY, pending_digest=digest)
        self.persister.save(state)
        return PollResult(DeployStatus.NEEDS_DEPLOY, state)

    def _step_inprocess(self, state: SyncState) -> PollResult:
        digest = compute_digest(self.config.src_dir, self.config.ignore_patterns)
        record = run_deploy(self.client_factory(), self.config, digest, clock=self._clock)
        return self._finish(state, record, digest)

    def _step_detached(self, state: SyncState) -> PollResult:
        assert self.detached is not None
        if state.worker is None:
            digest = compute_digest(self.config.src_dir, self.config.ignore_patterns)
            handle = self.detached.start(digest)
            state = replace(state, worker=handle)
            self.persister.save(state)
            return PollResult(DeployStatus.DEPLOYING, state)

        outcome = self.detached.collect(state.worker)
        if outcome.state is WorkerState.RUNNING:
            return PollResult(DeployStatus.DEPLOYING, state, log=outcome.log)

        assert outcome.record is not None
        result = self._finish(state, outcome.record, outcome.digest or state.worker.digest)
        self.persister.clear_worker_files()
        return result

    def _finish(
        self, state: SyncState, record: DeployRecord, digest: DirectoryDigest
    ) -> PollResult:
        state = SyncState(
            status=DeployStatus.IDLE,
            last_digest=digest,
            pending_digest=None,
            deploys=state.with_deploy(record, self.config.history_limit),
            worker=None,
        )
        self.persister.save(state)
        logger.info(
            "Deploy finished",
            extra={"extra_context": {"failed": record.failed, "files": record.changed_file_count}},
        )
        return PollResult(DeployStatus.IDLE, state)


class SyncPoller:
    """Background thread that runs ``poll_once`` on an interval.

    This is the long-lived alternative to one process per timer tick: results
    are published to a queue for the main thread to display.
    """

    def __init__(
        self,
        driver: PollDriver,
        update_queue: queue.Queue[PollResult | Exception],
        refresh_seconds: float = 10.0,
    ):
        self.driver = driver
        self.update_queue = update_queue
        self.refresh_seconds = refresh_seconds

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._poll_count = 0

    def _publish(self, item: PollResult | Exception) -> None:
        try:
            self.update_queue.put_nowait(item)
        except queue.Full:
            logger.warning("Update queue full, dropping poll result")

    def poll(self) -> None:
        """Run one poll and publish its result (or the error it raised)."""
        start_time = time.perf_counter()
        try:
            self._publish(self.driver.poll_once())
        except Exception as err:
            # Keep the loop alive; the error is shown until the next poll
            logger.error(f"Error in poll cycle: {err}", exc_info=True)
            self._publish(err)
        self._poll_count += 1
        logger.debug(
            "Poll cycle finished",
            extra={
                "extra_context": {
                    "poll_count": self._poll_count,
                    "poll_ms": round((time.perf_counter() - start_time) * 1000, 2),
                }
            },
        )

    def _run(self) -> None:
        logger.info(f"SyncPoller started with refresh interval {self.refresh_seconds}s")
        while not self._stop_event.is_set():
            self.poll()
            self._stop_event.wait(self.refresh_seconds)
        logger.info("SyncPoller stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background polling thread."""
        if self.running:
            logger.warning("SyncPoller already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="SyncPoller")
        self._thread.start()

    def stop(self) -> None:
        """Stop the background polling thread gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping SyncPoller...")
        self._stop_event.set()
        self._thread.join(timeout=self.refresh_seconds * 2)

        if self._thread.is_alive():
            logger.warning("SyncPoller thread did not stop within timeout")
        else:
            logger.info("SyncPoller stopped successfully")

        self._thread = None
