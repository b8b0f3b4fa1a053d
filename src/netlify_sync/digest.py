"""Directory digests used as a change-detection fingerprint.

A digest maps every non-ignored file under the watched root to the SHA-1 of
its bytes. Keys are root-relative POSIX paths with a leading ``/``, which is
also the shape the Netlify file-digest deploy API expects.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pathspec import GitIgnoreSpec

from .exceptions import DigestError
from .models import DirectoryDigest

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class IgnoreMatcher:
    """Gitignore-style matcher for paths relative to the watched root."""

    def __init__(self, patterns: tuple[str, ...] | list[str]):
        self.patterns = tuple(patterns)
        self.spec = GitIgnoreSpec.from_lines(self.patterns)

    def is_ignored(self, rel_posix: str, is_dir: bool = False) -> bool:
        rel_posix = rel_posix.lstrip("/")
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def sha1_file(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    h = hashlib.sha1()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def _raise_walk_error(err: OSError) -> None:
    raise err


def compute_digest(root: Path, ignore_patterns: tuple[str, ...] | list[str]) -> DirectoryDigest:
    """Return the digest of every non-ignored file under ``root``.

    Raises:
        DigestError: If the root or any file/directory under it cannot be read
    """
    root = Path(root)
    if not root.is_dir():
        raise DigestError(f"Source directory not found: {root}")

    matcher = IgnoreMatcher(ignore_patterns)
    digest: DirectoryDigest = {}

    try:
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            dirnames[:] = sorted(
                d for d in dirnames if not matcher.is_ignored(f"{rel_dir}/{d}", is_dir=True)
            )
            for name in filenames:
                rel_path = f"{rel_dir}/{name}" if rel_dir else name
                if matcher.is_ignored(rel_path):
                    continue
                digest["/" + rel_path] = sha1_file(Path(dirpath) / name)
    except OSError as err:
        raise DigestError(f"Failed to read {err.filename or root}: {err}") from err

    logger.debug(
        "Computed directory digest",
        extra={"extra_context": {"root": str(root), "files": len(digest)}},
    )
    return digest


@dataclass(frozen=True)
class DigestDiff:
    """Paths that differ between two digests."""

    added: tuple[str, ...]
    removed: tuple[str, ...]
    modified: tuple[str, ...]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.modified)

    @property
    def count(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def summary(self) -> str:
        return f"{len(self.added)} added, {len(self.modified)} modified, {len(self.removed)} removed"


def diff_digests(old: DirectoryDigest, new: DirectoryDigest) -> DigestDiff:
    """Compare two digests entry by entry."""
    return DigestDiff(
        added=tuple(sorted(set(new) - set(old))),
        removed=tuple(sorted(set(old) - set(new))),
        modified=tuple(sorted(p for p in set(old) & set(new) if old[p] != new[p])),
    )
