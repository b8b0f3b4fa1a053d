"""Overview of every site on the account with its latest build status."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlparse

from .render import COLOR_FAILURE, COLOR_PENDING, COLOR_SUCCESS, SEPARATOR, menu_line

logger = logging.getLogger(__name__)

SITES_ICON = "◆"


class BuildState(Enum):
    NONE = "none"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"
    BUILDING = "building"

    @property
    def needs_attention(self) -> bool:
        return self in (BuildState.ERROR, BuildState.BUILDING)


BUILD_MARKS = {
    BuildState.NONE: ("○", None),
    BuildState.DONE: ("●", COLOR_SUCCESS),
    BuildState.CANCELLED: ("◐", COLOR_FAILURE),
    BuildState.ERROR: ("●", COLOR_FAILURE),
    BuildState.BUILDING: ("●", COLOR_PENDING),
}


class SitesClient(Protocol):
    def list_sites(self) -> list[dict[str, Any]]: ...

    def list_builds(self, site_id: str) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class SiteSummary:
    domain: str
    label: str
    admin_url: str
    build: BuildState


def build_state(build: dict[str, Any] | None) -> BuildState:
    """Classify a build; a build can be both done and errored (cancelled)."""
    if not build or not build.get("id"):
        return BuildState.NONE
    done = bool(build.get("done"))
    error = bool(build.get("error"))
    if done and error:
        return BuildState.CANCELLED
    if done:
        return BuildState.DONE
    if error:
        return BuildState.ERROR
    return BuildState.BUILDING


def split_hostname(url: str) -> tuple[str, str]:
    """Return ``(domain, label)`` such as ``("netlify.app", "my-site")``."""
    hostname = urlparse(url).hostname or url
    pieces = hostname.split(".")
    if len(pieces) <= 2:
        return hostname, hostname
    return ".".join(pieces[-2:]), ".".join(pieces[:-2])


def collect_sites(client: SitesClient) -> list[SiteSummary]:
    """Fetch every site and the latest build of each."""
    summaries: list[SiteSummary] = []
    for site in client.list_sites():
        site_id = str(site.get("site_id") or site.get("id"))
        builds = client.list_builds(site_id)
        domain, label = split_hostname(str(site.get("ssl_url") or site.get("url") or site_id))
        summaries.append(
            SiteSummary(
                domain=domain,
                label=label,
                admin_url=str(site.get("admin_url", "")),
                build=build_state(builds[0] if builds else None),
            )
        )
    logger.debug("Collected sites", extra={"extra_context": {"sites": len(summaries)}})
    return summaries


def render_sites(sites: list[SiteSummary]) -> list[str]:
    """Sites grouped by domain, with a badge counting builds needing attention."""
    notifications = sum(1 for site in sites if site.build.needs_attention)
    lines = [f"{SITES_ICON} {notifications}" if notifications else SITES_ICON, SEPARATOR]

    by_domain: dict[str, list[SiteSummary]] = {}
    for site in sites:
        by_domain.setdefault(site.domain, []).append(site)

    for domain in sorted(by_domain):
        lines.append(domain)
        for site in by_domain[domain]:
            mark, color = BUILD_MARKS[site.build]
            lines.append(menu_line(f"{mark} {site.label}", href=site.admin_url or None, color=color))

    if not sites:
        lines.append("No sites found")
    return lines


def render_sites_error(err: Exception) -> list[str]:
    return [SITES_ICON, SEPARATOR, "Whoops, caught an error.", str(err)]
