"""Render sync state in the menu-bar plugin text protocol.

The first line is the menu-bar title (an icon glyph, optionally followed by a
badge count). ``---`` separates sections, and each following line is a menu
entry that may carry ``| key=value`` attributes.

Rendering is pure: no I/O, no clock access. The caller passes ``now`` so the
same inputs always produce the same lines.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta

from .models import DeployRecord, DeployStatus

SEPARATOR = "---"
NESTED = "-- "

ICONS = {
    DeployStatus.IDLE: "▲",
    DeployStatus.NEEDS_DEPLOY: "△",
    DeployStatus.DEPLOYING: "⟳",
    DeployStatus.OFFLINE: "⚠",
    DeployStatus.ERROR: "✖",
}

COLOR_SUCCESS = "#2e7d32"
COLOR_FAILURE = "#c62828"
COLOR_PENDING = "#c58a00"

# shown instead of the IDLE glyph while the most recent deploy is a failure
FAILED_DEPLOY_ICON = "▲✗"


def _format_attr(key: str, value: object) -> str:
    text = str(value).lower() if isinstance(value, bool) else str(value)
    if any(ch.isspace() for ch in text):
        text = '"' + text.replace('"', '\\"') + '"'
    return f"{key}={text}"


def menu_line(text: str, **attrs: object) -> str:
    """Return one menu entry, appending attributes after a ``|``."""
    parts = [_format_attr(key, value) for key, value in attrs.items() if value is not None]
    if not parts:
        return text
    return f"{text} | {' '.join(parts)}"


def action_attrs(command: Sequence[str]) -> dict[str, object]:
    """Attributes that make a menu entry run ``command`` without a terminal."""
    attrs: dict[str, object] = {"bash": command[0]}
    for index, arg in enumerate(command[1:], start=1):
        attrs[f"param{index}"] = arg
    attrs["terminal"] = False
    return attrs


def title_line(status: DeployStatus, badge: int = 0, last_failed: bool = False) -> str:
    icon = FAILED_DEPLOY_ICON if last_failed and status is DeployStatus.IDLE else ICONS[status]
    return f"{icon} {badge}" if badge > 0 else icon


def get_display_time(timestamp: datetime, now: datetime) -> str:
    """Return the time relative to ``now``, e.g. "Yesterday, 10:30:01 AM".

    Days are rounded from the raw difference, so anything within twelve hours
    of ``now`` reads as "Today".
    """
    local = timestamp.astimezone(now.tzinfo) if now.tzinfo else timestamp
    days = round((local - now) / timedelta(days=1))
    if days == 0:
        relative = "Today"
    elif days == -1:
        relative = "Yesterday"
    elif days == 1:
        relative = "Tomorrow"
    elif days < 0:
        relative = f"{-days} days ago"
    else:
        relative = f"In {days} days"

    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{relative}, {hour}:{local.minute:02d}:{local.second:02d} {suffix}"


def _deploy_lines(deploy: DeployRecord, now: datetime, nested: bool) -> list[str]:
    prefix = NESTED if nested else ""
    mark = "✗" if deploy.failed else "✓"
    lines = [
        menu_line(
            f"{mark} {get_display_time(deploy.timestamp, now)}",
            color=COLOR_FAILURE if deploy.failed else COLOR_SUCCESS,
            href=deploy.remote.deploy_url if deploy.remote else None,
        )
    ]

    if deploy.error:
        lines.extend(prefix + item for item in deploy.error.split("\n") if item)
        return lines

    lines.append(
        f"{prefix}{deploy.changed_file_count} files in {round(deploy.duration_seconds, 1)}s"
    )
    lines.extend(prefix + item for item in deploy.log.split("\n") if item)
    return lines


def render(
    status: DeployStatus,
    deploys: Sequence[DeployRecord],
    online: bool,
    *,
    now: datetime,
    error: str | None = None,
    log: str | None = None,
    trigger_command: Sequence[str] | None = None,
    reset_command: Sequence[str] | None = None,
    deploys_url: str | None = None,
    badge: int = 0,
) -> list[str]:
    """Return the menu for the given state.

    Args:
        status: Status to display; ``online=False`` always shows OFFLINE
        deploys: Deploy history, most recent first
        online: Result of the connectivity probe
        now: Reference time for relative timestamps
        error: Error text shown in the ERROR state
        log: Progress log shown while DEPLOYING
        trigger_command: Command run by the "DEPLOY" entry
        reset_command: Command run by the "Reset State" entry
        deploys_url: Provider page listing the site's deploys
        badge: Count shown next to the icon
    """
    if not online:
        status = DeployStatus.OFFLINE

    last_failed = bool(deploys) and deploys[0].failed
    lines = [title_line(status, badge, last_failed), SEPARATOR]

    if status is DeployStatus.OFFLINE:
        lines.append("No internet connection")
        lines.append("Syncing has been temporarily disabled")
        lines.append(SEPARATOR)

    if status is DeployStatus.ERROR:
        lines.append(menu_line("Error running deploy", color=COLOR_FAILURE))
        if error:
            lines.extend(NESTED + item for item in error.split("\n") if item)
        lines.append(SEPARATOR)

    if status is DeployStatus.DEPLOYING:
        lines.append(menu_line("Deploy in progress...", color=COLOR_PENDING, href=deploys_url))
        if log:
            lines.extend(item for item in log.split("\n") if item)
        lines.append(SEPARATOR)
    elif status is DeployStatus.NEEDS_DEPLOY:
        lines.append(menu_line("Deploy queued...", color=COLOR_PENDING, href=deploys_url))
        lines.append(SEPARATOR)
    elif trigger_command and status is not DeployStatus.OFFLINE:
        lines.append(menu_line("⚡️ DEPLOY ⚡️", color=COLOR_PENDING, **action_attrs(trigger_command)))
        lines.append(SEPARATOR)

    if deploys:
        latest, *older = deploys
        lines.extend(_deploy_lines(latest, now, nested=False))
        if older:
            lines.append(SEPARATOR)
            for deploy in older:
                lines.extend(_deploy_lines(deploy, now, nested=True))
    else:
        lines.append("No deploys yet")

    lines.append(SEPARATOR)
    lines.append(menu_line("Refresh Script", refresh=True))
    if reset_command:
        lines.append(menu_line("Reset State", **action_attrs(reset_command)))
    return lines
