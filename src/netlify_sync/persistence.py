"""State persistence for netlify-sync.

This module handles saving and loading the sync state to/from disk. Writes
go to a temp file that is renamed over the state file, and every poll holds an
advisory lock so overlapping invocations cannot interleave read-modify-write.
"""

from __future__ import annotations

import fcntl
import json
import logging
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .exceptions import StateError, StateLockedError
from .models import SyncState

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
LOCK_FILENAME = "state.lock"
WORKER_LOG_FILENAME = "deploy.log"
WORKER_ERROR_FILENAME = "deploy-error.log"
WORKER_RESULT_FILENAME = "deploy-result.json"


class StatePersister:
    """Manages the state file and the worker files that live beside it."""

    def __init__(self, state_dir: Path):
        """Initialize state persister.

        Args:
            state_dir: Directory to store state files (~/.cache/netlify-sync/)
        """
        self.state_dir = state_dir
        self.state_file = state_dir / STATE_FILENAME
        self.lock_file = state_dir / LOCK_FILENAME
        self.worker_log = state_dir / WORKER_LOG_FILENAME
        self.worker_error_log = state_dir / WORKER_ERROR_FILENAME
        self.worker_result = state_dir / WORKER_RESULT_FILENAME

    def save(self, state: SyncState) -> None:
        """Atomically replace the state file with ``state``.

        Raises:
            StateError: If the state cannot be written
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        temp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.state_dir,
                prefix=f".{STATE_FILENAME}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                temp_path = Path(f.name)
                json.dump(state.to_dict(), f, indent=2)
            temp_path.replace(self.state_file)
        except OSError as err:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise StateError(f"Failed to save state to {self.state_file}: {err}") from err

        logger.debug(
            "State saved",
            extra={"extra_context": {"status": state.status.value, "deploys": len(state.deploys)}},
        )

    def load(self) -> SyncState:
        """Load state from disk, bootstrapping a default state on first run.

        A corrupted state file is replaced by a fresh default state.
        """
        if not self.state_file.exists():
            logger.info("No state file found, writing initial state")
            state = SyncState()
            self.save(state)
            return state

        try:
            with self.state_file.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            return SyncState.from_dict(data)
        except OSError as err:
            raise StateError(f"Failed to read state file {self.state_file}: {err}") from err
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as err:
            logger.warning(f"Corrupted state file, resetting: {err}")
            state = SyncState()
            self.save(state)
            return state

    def peek(self) -> SyncState:
        """Read state without bootstrapping or repairing anything."""
        try:
            with self.state_file.open("r", encoding="utf-8") as f:
                return SyncState.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError):
            return SyncState()

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive advisory lock for one read-modify-write cycle.

        Raises:
            StateLockedError: If another invocation holds the lock
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self.lock_file.open("a") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as err:
                raise StateLockedError("Another poll is already running") from err
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def clear_worker_files(self) -> None:
        for path in (self.worker_log, self.worker_error_log, self.worker_result):
            path.unlink(missing_ok=True)

    def reset(self) -> None:
        """Remove the state file and any worker leftovers."""
        self.state_file.unlink(missing_ok=True)
        self.clear_worker_files()
        logger.info("State reset", extra={"extra_context": {"state_dir": str(self.state_dir)}})
