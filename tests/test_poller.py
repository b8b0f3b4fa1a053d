"""Tests for the poll state machine."""

from __future__ import annotations

import queue
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from netlify_sync.digest import compute_digest
from netlify_sync.exceptions import DigestError, StateLockedError
from netlify_sync.models import DeployRecord, DeployStatus, SyncState, WorkerHandle
from netlify_sync.netlify_client import DeployEvent, DeployResult, NetlifyConnectionError
from netlify_sync.persistence import StatePersister
from netlify_sync.poller import PollDriver, PollResult, SyncPoller
from netlify_sync.utils import Config
from netlify_sync.worker import WorkerOutcome, WorkerState

STARTED = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeClient:
    """Deploy client that records calls and can fail on demand."""

    def __init__(self) -> None:
        self.deployed: list[dict[str, str]] = []
        self.error: Exception | None = None

    def deploy(self, site_id, src_dir, digest, status_cb=None, message=None, deploy_timeout=300.0):
        self.deployed.append(dict(digest))
        status_cb(DeployEvent("hashing", "stop", f"Finished hashing {len(digest)} files"))
        if self.error:
            raise self.error
        return DeployResult(
            deploy_id=f"d{len(self.deployed)}",
            admin_url="https://app.netlify.com/sites/cdn",
            uploaded=tuple(digest),
        )


class FakeDetached:
    """Stand-in for DetachedDeploy."""

    def __init__(self) -> None:
        self.started: list[dict[str, str]] = []
        self.outcome: WorkerOutcome = WorkerOutcome(WorkerState.RUNNING, log="✓ step\n")

    def start(self, digest):
        self.started.append(digest)
        return WorkerHandle(pid=99, started_at=STARTED, digest=digest)

    def collect(self, handle):
        return self.outcome


@pytest.fixture
def site_dir(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text("v1", encoding="utf-8")
    return root


def _config(tmp_path: Path, site_dir: Path, **overrides) -> Config:
    payload = {
        "src_dir": str(site_dir),
        "site_id": "cdn.netlify.app",
        "token_path": str(tmp_path / "token"),
        "state_dir": str(tmp_path / "state"),
        "history_limit": 3,
    }
    payload.update(overrides)
    return Config.from_dict(payload)


@pytest.fixture
def config(tmp_path: Path, site_dir: Path) -> Config:
    return _config(tmp_path, site_dir)


@pytest.fixture
def persister(config: Config) -> StatePersister:
    return StatePersister(config.state_dir)


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


class Connectivity:
    def __init__(self) -> None:
        self.online = True

    def __call__(self) -> bool:
        return self.online


@pytest.fixture
def connectivity() -> Connectivity:
    return Connectivity()


@pytest.fixture
def driver(
    config: Config, persister: StatePersister, client: FakeClient, connectivity: Connectivity
) -> PollDriver:
    return PollDriver(config, persister, lambda: client, connectivity, clock=lambda: STARTED)


class TestPollOnce:
    """Tests for PollDriver.poll_once."""

    def test_change_then_deploy_sequence(
        self, driver: PollDriver, persister: StatePersister, client: FakeClient, site_dir: Path
    ) -> None:
        first = driver.poll_once()
        assert first.status is DeployStatus.NEEDS_DEPLOY
        assert first.state.last_digest == {}
        assert first.state.pending_digest == compute_digest(site_dir, (".*", "_src/"))

        second = driver.poll_once()
        assert second.status is DeployStatus.DEPLOYING
        assert persister.load().status is DeployStatus.DEPLOYING
        assert client.deployed == []

        third = driver.poll_once()
        assert third.status is DeployStatus.IDLE
        assert len(client.deployed) == 1
        assert third.state.last_digest == client.deployed[0]
        assert third.state.pending_digest is None
        assert third.state.deploys[0].remote.deploy_id == "d1"
        assert persister.load() == third.state

        fourth = driver.poll_once()
        assert fourth.status is DeployStatus.IDLE
        assert len(client.deployed) == 1

    def test_unchanged_directory_does_not_write(
        self,
        driver: PollDriver,
        persister: StatePersister,
        site_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        digest = compute_digest(site_dir, (".*", "_src/"))
        persister.save(SyncState(last_digest=digest))
        saves: list[SyncState] = []
        monkeypatch.setattr(persister, "save", saves.append)

        result = driver.poll_once()

        assert result.status is DeployStatus.IDLE
        assert saves == []

    def test_ignored_files_do_not_trigger(
        self, driver: PollDriver, persister: StatePersister, site_dir: Path
    ) -> None:
        persister.save(SyncState(last_digest=compute_digest(site_dir, (".*", "_src/"))))
        (site_dir / ".DS_Store").write_bytes(b"junk")

        assert driver.poll_once().status is DeployStatus.IDLE

    def test_offline_leaves_state_untouched(
        self,
        driver: PollDriver,
        persister: StatePersister,
        connectivity: Connectivity,
    ) -> None:
        persister.save(SyncState(status=DeployStatus.NEEDS_DEPLOY))
        before = persister.state_file.read_bytes()
        connectivity.online = False

        result = driver.poll_once()

        assert result.status is DeployStatus.OFFLINE
        assert not result.online
        assert persister.state_file.read_bytes() == before

    def test_failed_deploy_is_recorded(
        self, driver: PollDriver, persister: StatePersister, client: FakeClient
    ) -> None:
        client.error = NetlifyConnectionError("https://api.netlify.com", OSError("refused"))
        persister.save(SyncState(status=DeployStatus.DEPLOYING, pending_digest={"/x": "1"}))

        result = driver.poll_once()

        assert result.status is DeployStatus.IDLE
        record = result.state.deploys[0]
        assert record.failed
        assert "refused" in record.error
        assert record.log == "✓ Finished hashing 1 files\n"
        assert result.state.last_digest == client.deployed[0]

    def test_history_is_capped(
        self, driver: PollDriver, persister: StatePersister
    ) -> None:
        old = tuple(
            DeployRecord(timestamp=STARTED - timedelta(days=n), duration_seconds=1.0)
            for n in range(1, 4)
        )
        persister.save(SyncState(status=DeployStatus.DEPLOYING, deploys=old))

        result = driver.poll_once()

        assert len(result.state.deploys) == 3
        assert result.state.deploys[0].timestamp == STARTED
        assert result.state.deploys[1:] == old[:2]

    def test_unreadable_directory_propagates(
        self, driver: PollDriver, site_dir: Path, persister: StatePersister
    ) -> None:
        persister.save(SyncState())
        (site_dir / "index.html").unlink()
        site_dir.rmdir()

        with pytest.raises(DigestError):
            driver.poll_once()
        assert persister.load() == SyncState()

    def test_locked_state_is_refused(
        self, driver: PollDriver, persister: StatePersister
    ) -> None:
        with persister.lock():
            with pytest.raises(StateLockedError):
                driver.poll_once()


class TestRequestDeploy:
    """Tests for the manual trigger."""

    def test_queues_deploy_when_idle(
        self, driver: PollDriver, persister: StatePersister, client: FakeClient
    ) -> None:
        state = driver.request_deploy()

        assert state.status is DeployStatus.NEEDS_DEPLOY
        assert driver.poll_once().status is DeployStatus.DEPLOYING
        assert driver.poll_once().status is DeployStatus.IDLE
        assert len(client.deployed) == 1

    def test_no_change_while_deploying(
        self, driver: PollDriver, persister: StatePersister
    ) -> None:
        persister.save(SyncState(status=DeployStatus.DEPLOYING))

        assert driver.request_deploy().status is DeployStatus.DEPLOYING


class TestDetachedStrategy:
    """Tests for the subprocess deploy strategy."""

    @pytest.fixture
    def detached(self) -> FakeDetached:
        return FakeDetached()

    @pytest.fixture
    def detached_driver(
        self,
        tmp_path: Path,
        site_dir: Path,
        persister: StatePersister,
        client: FakeClient,
        detached: FakeDetached,
    ) -> PollDriver:
        config = _config(tmp_path, site_dir, deploy_strategy="subprocess")
        return PollDriver(
            config, persister, lambda: client, lambda: True, detached=detached, clock=lambda: STARTED
        )

    def test_requires_launcher(
        self, tmp_path: Path, site_dir: Path, persister: StatePersister
    ) -> None:
        config = _config(tmp_path, site_dir, deploy_strategy="subprocess")

        with pytest.raises(ValueError, match="subprocess"):
            PollDriver(config, persister, FakeClient, lambda: True)

    def test_starts_worker_then_reports_progress(
        self,
        detached_driver: PollDriver,
        persister: StatePersister,
        detached: FakeDetached,
        client: FakeClient,
    ) -> None:
        persister.save(SyncState(status=DeployStatus.DEPLOYING))

        started = detached_driver.poll_once()
        assert started.status is DeployStatus.DEPLOYING
        assert started.state.worker.pid == 99
        assert len(detached.started) == 1

        running = detached_driver.poll_once()
        assert running.status is DeployStatus.DEPLOYING
        assert running.log == "✓ step\n"
        assert len(detached.started) == 1
        assert client.deployed == []

    def test_collects_finished_worker(
        self, detached_driver: PollDriver, persister: StatePersister, detached: FakeDetached
    ) -> None:
        handle = WorkerHandle(pid=99, started_at=STARTED, digest={"/index.html": "old"})
        persister.save(SyncState(status=DeployStatus.DEPLOYING, worker=handle))
        persister.worker_log.write_text("✓ done\n", encoding="utf-8")
        record = DeployRecord(timestamp=STARTED, duration_seconds=2.0, changed_file_count=1)
        detached.outcome = WorkerOutcome(
            WorkerState.FINISHED, record=record, digest={"/index.html": "new"}
        )

        result = detached_driver.poll_once()

        assert result.status is DeployStatus.IDLE
        assert result.state.worker is None
        assert result.state.last_digest == {"/index.html": "new"}
        assert result.state.deploys == (record,)
        assert not persister.worker_log.exists()


class TestSyncPoller:
    """Tests for SyncPoller."""

    def test_publishes_results(self, driver: PollDriver) -> None:
        updates: queue.Queue[PollResult | Exception] = queue.Queue()

        SyncPoller(driver, updates).poll()

        item = updates.get_nowait()
        assert isinstance(item, PollResult)
        assert item.status is DeployStatus.NEEDS_DEPLOY

    def test_publishes_errors(self, driver: PollDriver, persister: StatePersister) -> None:
        updates: queue.Queue[PollResult | Exception] = queue.Queue()
        poller = SyncPoller(driver, updates)

        with persister.lock():
            poller.poll()

        assert isinstance(updates.get_nowait(), StateLockedError)

    def test_start_and_stop(self, driver: PollDriver) -> None:
        updates: queue.Queue[PollResult | Exception] = queue.Queue()
        poller = SyncPoller(driver, updates, refresh_seconds=0.05)

        poller.start()
        first = updates.get(timeout=5)
        poller.stop()

        assert isinstance(first, PollResult)
        assert not poller.running


def test_poll_result_defaults() -> None:
    result = PollResult(DeployStatus.IDLE, SyncState())

    assert result.online
    assert result.error is None
