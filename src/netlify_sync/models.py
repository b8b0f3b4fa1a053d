"""State data models for netlify-sync.

Everything here round-trips through the JSON state file via ``to_dict`` /
``from_dict``. Missing fields load as defaults so older state files keep working.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

DirectoryDigest = dict[str, str]


class DeployStatus(Enum):
    """Status of the deploy state machine."""

    IDLE = "IDLE"
    NEEDS_DEPLOY = "NEEDS_DEPLOY"
    DEPLOYING = "DEPLOYING"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"

    @property
    def is_persistent(self) -> bool:
        """OFFLINE and ERROR are display-only and never written to disk."""
        return self not in (DeployStatus.OFFLINE, DeployStatus.ERROR)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class RemoteDeploy:
    """Reference to a deploy on the hosting provider."""

    deploy_id: str
    admin_url: str

    @property
    def deploy_url(self) -> str:
        return f"{self.admin_url.rstrip('/')}/deploys/{self.deploy_id}"

    def to_dict(self) -> dict:
        return {"deploy_id": self.deploy_id, "admin_url": self.admin_url}

    @classmethod
    def from_dict(cls, data: dict) -> RemoteDeploy:
        return cls(deploy_id=str(data["deploy_id"]), admin_url=str(data["admin_url"]))


@dataclass(frozen=True)
class DeployRecord:
    """Outcome of a single deploy attempt.

    A record with ``error`` set is a failed attempt; it still carries the log
    collected up to the failure.
    """

    timestamp: datetime
    duration_seconds: float
    changed_file_count: int = 0
    log: str = ""
    error: str | None = None
    remote: RemoteDeploy | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "duration_seconds": self.duration_seconds,
            "changed_file_count": self.changed_file_count,
            "log": self.log,
            "error": self.error,
            "remote": self.remote.to_dict() if self.remote else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeployRecord:
        remote_data = data.get("remote")
        error = data.get("error")
        return cls(
            timestamp=_parse_timestamp(str(data["timestamp"])),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            changed_file_count=int(data.get("changed_file_count", 0)),
            log=str(data.get("log", "")),
            error=str(error) if error is not None else None,
            remote=RemoteDeploy.from_dict(remote_data) if remote_data else None,
        )


@dataclass(frozen=True)
class WorkerHandle:
    """A detached deploy worker started by a previous invocation."""

    pid: int
    started_at: datetime
    digest: DirectoryDigest = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "digest": dict(self.digest),
        }

    @classmethod
    def from_dict(cls, data: dict) -> WorkerHandle:
        return cls(
            pid=int(data["pid"]),
            started_at=_parse_timestamp(str(data["started_at"])),
            digest={str(k): str(v) for k, v in dict(data.get("digest", {})).items()},
        )


@dataclass(frozen=True)
class SyncState:
    """Everything persisted between poll invocations."""

    status: DeployStatus = DeployStatus.IDLE
    last_digest: DirectoryDigest = field(default_factory=dict)
    pending_digest: DirectoryDigest | None = None
    deploys: tuple[DeployRecord, ...] = ()
    worker: WorkerHandle | None = None

    def with_deploy(self, record: DeployRecord, limit: int) -> tuple[DeployRecord, ...]:
        """Return the history with ``record`` prepended, capped at ``limit``."""
        return (record, *self.deploys)[:limit]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "last_digest": dict(self.last_digest),
            "pending_digest": (
                dict(self.pending_digest) if self.pending_digest is not None else None
            ),
            "deploys": [deploy.to_dict() for deploy in self.deploys],
            "worker": self.worker.to_dict() if self.worker else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SyncState:
        status = DeployStatus(data.get("status", DeployStatus.IDLE.value))
        if not status.is_persistent:
            status = DeployStatus.IDLE
        pending = data.get("pending_digest")
        worker = data.get("worker")
        return cls(
            status=status,
            last_digest={str(k): str(v) for k, v in dict(data.get("last_digest", {})).items()},
            pending_digest=(
                {str(k): str(v) for k, v in dict(pending).items()} if pending is not None else None
            ),
            deploys=tuple(DeployRecord.from_dict(item) for item in data.get("deploys", [])),
            worker=WorkerHandle.from_dict(worker) if worker else None,
        )
