"""Run one deploy and capture its outcome as a DeployRecord."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from .models import DeployRecord, DirectoryDigest, RemoteDeploy
from .netlify_client import DeployEvent, DeployResult, StatusCallback
from .utils import Config

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class DeployClient(Protocol):
    def deploy(
        self,
        site_id: str,
        src_dir,
        digest: DirectoryDigest,
        status_cb: StatusCallback | None = None,
        message: str | None = None,
        deploy_timeout: float = 300.0,
    ) -> DeployResult: ...


class DeployLog:
    """Collects one line per finished deploy step."""

    def __init__(self, on_line: Callable[[str], None] | None = None) -> None:
        self.lines: list[str] = []
        self._on_line = on_line

    def __call__(self, event: DeployEvent) -> None:
        if event.phase in ("start", "progress"):
            return
        line = f"✓ {event.msg}"
        self.lines.append(line)
        if self._on_line:
            self._on_line(line)

    @property
    def text(self) -> str:
        return "".join(f"{line}\n" for line in self.lines)


def format_error(err: BaseException) -> str:
    stack = "".join(traceback.format_exception(type(err), err, err.__traceback__)).rstrip()
    return f"Something went wrong\n{stack}\n{err}"


def run_deploy(
    client: DeployClient,
    config: Config,
    digest: DirectoryDigest,
    *,
    clock: Clock = utcnow,
    on_line: Callable[[str], None] | None = None,
) -> DeployRecord:
    """Deploy ``config.src_dir`` and return the resulting record.

    Failures of the deploy mechanism are captured in ``DeployRecord.error``
    rather than raised.

    Args:
        client: Deploy mechanism (normally a NetlifyClient)
        config: Runtime configuration
        digest: Files to deploy, as computed with ``config.ignore_patterns``
        clock: Returns the current time (injectable for tests)
        on_line: Optional callback for each log line as it is produced
    """
    started_at = clock()
    start = time.perf_counter()
    log = DeployLog(on_line)

    logger.info(
        "Deploy started",
        extra={"extra_context": {"site_id": config.site_id, "files": len(digest)}},
    )

    error: str | None = None
    result: DeployResult | None = None
    try:
        result = client.deploy(
            config.site_id,
            config.src_dir,
            digest,
            status_cb=log,
            message=config.deploy_message,
            deploy_timeout=config.deploy_timeout_seconds,
        )
    except Exception as err:
        logger.error("Deploy failed", extra={"extra_context": {"error": str(err)}}, exc_info=True)
        error = format_error(err)

    duration = time.perf_counter() - start
    if result is None:
        return DeployRecord(
            timestamp=started_at,
            duration_seconds=duration,
            log=log.text,
            error=error,
        )

    logger.info(
        "Deploy completed",
        extra={
            "extra_context": {
                "deploy_id": result.deploy_id,
                "uploaded": len(result.uploaded),
                "duration_seconds": round(duration, 2),
            }
        },
    )
    return DeployRecord(
        timestamp=started_at,
        duration_seconds=duration,
        changed_file_count=len(result.uploaded),
        log=log.text,
        remote=RemoteDeploy(deploy_id=result.deploy_id, admin_url=result.admin_url),
    )
