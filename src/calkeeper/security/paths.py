"""Containment checks for file paths sourced from configuration.

Credential, log and cache paths come from configuration and must stay inside
the application root, under a named subdirectory.  Paths are canonicalized
with symlinks resolved before any comparison.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePath

from calkeeper.errors import PathTraversalError

logger = logging.getLogger(__name__)


def _has_parent_segment(candidate: str | os.PathLike[str]) -> bool:
    raw = os.fspath(candidate)
    return ".." in PurePath(raw.replace("\\", "/")).parts


def resolve_path(
    candidate: str | os.PathLike[str],
    required_subdir: str,
    application_root: str | os.PathLike[str],
) -> Path:
    """Validate *candidate* and return its canonical absolute path.

    Relative candidates are interpreted relative to *application_root*.

    Raises
    ------
    PathTraversalError
        If the candidate contains a ``..`` segment, resolves outside
        *application_root*, or does not sit below a directory named
        *required_subdir* inside the root.
    """
    if _has_parent_segment(candidate):
        raise PathTraversalError("Path traversal detected")

    root = Path(application_root).resolve()
    path = Path(candidate)
    if not path.is_absolute():
        path = root / path

    # resolve() follows symlinks for every component that exists.
    resolved = path.resolve()
    parent = resolved.parent

    if not parent.is_relative_to(root) or not resolved.is_relative_to(root):
        raise PathTraversalError("File path must be within the application directory")

    if required_subdir not in parent.relative_to(root).parts:
        raise PathTraversalError(f"File must be in a {required_subdir!r} directory")

    return resolved


def ensure_private_dir(directory: Path, mode: int = 0o700) -> None:
    """Create *directory* (and parents) and restrict it to *mode*."""
    if not directory.is_dir():
        directory.mkdir(mode=mode, parents=True, exist_ok=True)
        logger.debug("Created directory %s", directory)
    os.chmod(directory, mode)


class PathGuard:
    """Bound form of :func:`resolve_path` for one application root."""

    def __init__(self, application_root: str | os.PathLike[str]) -> None:
        self.application_root = Path(application_root).resolve()

    def resolve(self, candidate: str | os.PathLike[str], required_subdir: str) -> Path:
        return resolve_path(candidate, required_subdir, self.application_root)
