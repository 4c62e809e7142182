"""Tests for path containment checks."""

from __future__ import annotations

import os

import pytest

from calkeeper.errors import PathTraversalError
from calkeeper.security.paths import PathGuard, ensure_private_dir, resolve_path

pytestmark = pytest.mark.unit


class TestResolvePath:
    def test_relative_path_inside_required_subdir(self, app_root):
        resolved = resolve_path("token/token.json", "token", app_root)
        assert resolved == (app_root / "token" / "token.json").resolve()

    def test_nested_subdir_is_accepted(self, app_root):
        resolved = resolve_path("data/token/nested/t.json", "token", app_root)
        assert resolved.name == "t.json"

    def test_absolute_path_inside_root(self, app_root):
        candidate = app_root / "logs" / "app.log"
        assert resolve_path(candidate, "logs", app_root) == candidate.resolve()

    @pytest.mark.parametrize(
        "candidate",
        ["../token/token.json", "token/../../etc/passwd", "token/..\\..\\x.json"],
    )
    def test_parent_segments_are_rejected(self, app_root, candidate):
        with pytest.raises(PathTraversalError, match="traversal"):
            resolve_path(candidate, "token", app_root)

    def test_path_outside_root_is_rejected(self, app_root, tmp_path):
        with pytest.raises(PathTraversalError, match="within the application directory"):
            resolve_path(tmp_path / "token" / "token.json", "token", app_root)

    def test_missing_required_subdir_is_rejected(self, app_root):
        with pytest.raises(PathTraversalError, match="'token' directory"):
            resolve_path("other/token.json", "token", app_root)

    def test_file_named_like_subdir_is_not_enough(self, app_root):
        with pytest.raises(PathTraversalError):
            resolve_path("token", "token", app_root)

    def test_symlink_escaping_root_is_rejected(self, app_root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (app_root / "token").symlink_to(outside, target_is_directory=True)
        with pytest.raises(PathTraversalError):
            resolve_path("token/token.json", "token", app_root)

    def test_path_guard_binds_root(self, app_root):
        guard = PathGuard(app_root)
        assert guard.resolve("cache/c.json", "cache").parent.name == "cache"


class TestEnsurePrivateDir:
    def test_creates_directory_with_mode(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_private_dir(target)
        assert target.is_dir()
        assert (os.stat(target).st_mode & 0o777) == 0o700

    def test_tightens_existing_directory(self, tmp_path):
        target = tmp_path / "open"
        target.mkdir(mode=0o777)
        ensure_private_dir(target)
        assert (os.stat(target).st_mode & 0o777) == 0o700
