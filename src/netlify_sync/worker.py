"""Detached deploy worker.

With ``deploy_strategy = "subprocess"`` the poll invocation starts the deploy
in a separate process and exits immediately, so the menu bar never waits on
the network. The worker prints progress lines to ``deploy.log`` and, when the
deploy finishes, writes ``deploy-result.json``. Later polls read that file
instead of scanning the log for completion markers.
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil

from .deployer import Clock, DeployClient, run_deploy, utcnow
from .digest import compute_digest
from .exceptions import DeployError
from .models import DeployRecord, DirectoryDigest, WorkerHandle
from .persistence import StatePersister
from .utils import Config

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
# started_at is taken just after spawning, so the worker cannot be younger than this
PID_REUSE_MARGIN_SECONDS = 5.0


class WorkerState(Enum):
    RUNNING = "running"
    FINISHED = "finished"
    CRASHED = "crashed"


@dataclass(frozen=True)
class WorkerOutcome:
    """What a poll finds when it checks on a detached worker."""

    state: WorkerState
    log: str = ""
    record: DeployRecord | None = None
    digest: DirectoryDigest | None = None


def _is_alive(pid: int, started_at: datetime) -> bool:
    """Return True if ``pid`` is still the worker started at ``started_at``."""
    try:
        process = psutil.Process(pid)
        if process.create_time() > started_at.timestamp() + PID_REUSE_MARGIN_SECONDS:
            logger.info(f"Pid {pid} was reused by another process")
            return False
        return process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""


class DetachedDeploy:
    """Starts deploy workers and collects their results."""

    def __init__(
        self,
        config: Config,
        config_path: Path,
        persister: StatePersister,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config
        self.config_path = config_path
        self.persister = persister
        self._clock = clock
        self._process: subprocess.Popen[bytes] | None = None

    def command(self) -> list[str]:
        return [
            self.config.python_executable,
            "-m",
            "netlify_sync.cli",
            "--config",
            str(self.config_path),
            "deploy-worker",
        ]

    def start(self, digest: DirectoryDigest) -> WorkerHandle:
        """Launch a worker in its own session and return its handle.

        Raises:
            DeployError: If the worker process cannot be spawned
        """
        self.persister.state_dir.mkdir(parents=True, exist_ok=True)
        self.persister.clear_worker_files()
        command = self.command()
        logger.info(f"Starting deploy worker: {' '.join(command)}")

        try:
            with (
                self.persister.worker_log.open("wb") as stdout,
                self.persister.worker_error_log.open("wb") as stderr,
            ):
                self._process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
        except OSError as err:
            raise DeployError(f"Failed to start deploy worker: {err}") from err

        return WorkerHandle(pid=self._process.pid, started_at=self._clock(), digest=digest)

    def collect(self, handle: WorkerHandle) -> WorkerOutcome:
        """Check on the worker described by ``handle``."""
        if self._process is not None and self._process.pid == handle.pid:
            # reap our own child so it does not linger as a zombie
            self._process.poll()

        log = _read_text(self.persister.worker_log)
        if self.persister.worker_result.exists():
            try:
                data = json.loads(self.persister.worker_result.read_text(encoding="utf-8"))
                record = DeployRecord.from_dict(data["record"])
                digest = {str(k): str(v) for k, v in data.get("digest", handle.digest).items()}
            except (OSError, ValueError, KeyError, TypeError) as err:
                logger.error(f"Unreadable worker result: {err}")
                return self._crashed(handle, log, f"unreadable deploy result: {err}")
            return WorkerOutcome(WorkerState.FINISHED, log=log, record=record, digest=digest)

        if _is_alive(handle.pid, handle.started_at):
            return WorkerOutcome(WorkerState.RUNNING, log=log)

        stderr = _read_text(self.persister.worker_error_log).strip()
        tail = "\n".join(stderr.splitlines()[-STDERR_TAIL_LINES:])
        return self._crashed(handle, log, tail)

    def _crashed(self, handle: WorkerHandle, log: str, detail: str) -> WorkerOutcome:
        logger.warning(
            "Deploy worker exited without a result",
            extra={"extra_context": {"pid": handle.pid}},
        )
        error = "Something went wrong\ndeploy worker exited without a result"
        if detail:
            error += f"\n{detail}"
        record = DeployRecord(
            timestamp=handle.started_at,
            duration_seconds=max((self._clock() - handle.started_at).total_seconds(), 0.0),
            log=log,
            error=error,
        )
        return WorkerOutcome(WorkerState.CRASHED, log=log, record=record, digest=handle.digest)


def _write_result(path: Path, record: DeployRecord, digest: DirectoryDigest) -> None:
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", delete=False
    ) as f:
        json.dump({"record": record.to_dict(), "digest": digest}, f, indent=2)
    Path(f.name).replace(path)


def _print_line(line: str) -> None:
    print(line, flush=True)


def run_worker(
    config: Config,
    persister: StatePersister,
    client: DeployClient,
    clock: Clock = utcnow,
) -> int:
    """Body of the ``deploy-worker`` command.

    Returns:
        Exit code (0=deploy succeeded, 1=deploy failed)
    """
    digest = compute_digest(config.src_dir, config.ignore_patterns)
    record = run_deploy(client, config, digest, clock=clock, on_line=_print_line)
    if record.error:
        print(record.error, file=sys.stderr, flush=True)
    _write_result(persister.worker_result, record, digest)
    return 1 if record.failed else 0
