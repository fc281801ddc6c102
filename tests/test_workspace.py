"""Tests for relay_ide.workspace and relay_ide.sensitivity — the sandbox gates."""

from __future__ import annotations

import os

import pytest

from relay_ide.errors import SandboxViolation, SensitivePathError
from relay_ide.sensitivity import ensure_not_sensitive, is_sensitive, match_sensitive
from relay_ide.workspace import Workspace, WorkspacePool


class TestWorkspaceInit:
    def test_missing_root(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            Workspace(tmp_path / "nope")

    def test_root_is_a_file(self, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("x")
        with pytest.raises(ValueError, match="not a directory"):
            Workspace(f)


class TestResolve:
    def test_relative_path(self, workspace_dir):
        ws = Workspace(workspace_dir)
        assert ws.resolve("src/main.py") == (workspace_dir / "src" / "main.py").resolve()

    @pytest.mark.parametrize(
        "path,reason",
        [
            ("", "empty"),
            ("a\x00b", "null bytes"),
            ("../outside.txt", "'..'"),
            ("src/../../x", "'..'"),
            (".git/config", "blocked"),
        ],
    )
    def test_rejected(self, workspace_dir, path, reason):
        ws = Workspace(workspace_dir)
        with pytest.raises(SandboxViolation, match=reason):
            ws.resolve(path)

    def test_absolute_rejected(self, workspace_dir):
        ws = Workspace(workspace_dir)
        with pytest.raises(SandboxViolation, match="Absolute"):
            ws.resolve(str(workspace_dir / "src" / "main.py"))

    def test_symlink_escape(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret_plan.txt").write_text("x")
        try:
            os.symlink(outside, root / "link")
        except (OSError, NotImplementedError):
            pytest.skip("symlinks not supported")
        with pytest.raises(SandboxViolation, match="outside the sandbox"):
            Workspace(root).resolve("link/secret_plan.txt")


class TestIsWithin:
    def test_sibling_prefix_is_outside(self, tmp_path):
        app = tmp_path / "app"
        app.mkdir()
        (tmp_path / "app-other").mkdir()
        ws = Workspace(app)
        assert ws.is_within(app / "x.py")
        assert ws.is_within(app)
        assert not ws.is_within(tmp_path / "app-other" / "x.py")


class TestIterFiles:
    def test_skips_vendor_dirs(self, workspace_dir):
        (workspace_dir / "node_modules").mkdir()
        (workspace_dir / "node_modules" / "lib.js").write_text("x")
        ws = Workspace(workspace_dir)
        rels = [ws.relative(p) for p in ws.iter_files()]
        assert "src/main.py" in rels
        assert not any(r.startswith("node_modules/") for r in rels)


class TestWorkspacePool:
    def test_reuses_workspace_per_root(self, workspace_dir):
        pool = WorkspacePool()
        assert pool.get(workspace_dir) is pool.get(str(workspace_dir))
        assert len(pool) == 1

    def test_closed_pool_refuses(self, workspace_dir):
        pool = WorkspacePool()
        pool.get(workspace_dir)
        pool.close()
        assert len(pool) == 0
        with pytest.raises(RuntimeError, match="closed"):
            pool.get(workspace_dir)


class TestSensitivity:
    @pytest.mark.parametrize(
        "path,pattern",
        [
            (".env", "dotenv"),
            ("config/.env.production", "dotenv_variant"),
            ("deploy/credentials.json", "credentials"),
            ("server.pem", "pem"),
            ("home/.ssh/id_rsa", "ssh_key"),
            (".npmrc", "auth_rc"),
            ("./.bash_history", "shell_history"),
        ],
    )
    def test_sensitive(self, path, pattern):
        assert match_sensitive(path) == pattern

    @pytest.mark.parametrize("path", ["src/main.py", "README.md", "docs/environment.md"])
    def test_ordinary(self, path):
        assert not is_sensitive(path)

    def test_windows_separators(self):
        assert is_sensitive("config\\.env")

    def test_ensure_raises(self):
        with pytest.raises(SensitivePathError) as exc_info:
            ensure_not_sensitive(".env")
        assert exc_info.value.to_dict()["pattern"] == "dotenv"
