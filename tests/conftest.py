"""Shared fixtures for Convoy tests."""

import shutil
import stat
import subprocess
from pathlib import Path

import pytest

from convoy.config import ConvoyConfig
from convoy.jobs import JobContext
from convoy.logging import LogConfig, reset_loggers, set_config

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path):
    """Send structured logs to a temp directory."""
    reset_loggers()
    set_config(LogConfig(log_dir=tmp_path / "logs"))
    yield tmp_path / "logs"
    reset_loggers()


@pytest.fixture
def config(tmp_path) -> ConvoyConfig:
    """Config rooted in tmp_path with fast timings."""
    app_root = tmp_path / "app"
    app_root.mkdir()
    return ConvoyConfig(
        storage_root=tmp_path / "storage",
        app_root=app_root,
        git_timeout=10,
        deploy_timeout=10,
        settle_delay=0,
        terminate_grace=0.2,
    )


@pytest.fixture
def ctx(config):
    """Fully wired job context."""
    context = JobContext.create(config)
    yield context
    context.close()


@pytest.fixture
def write_wrapper(tmp_path, config):
    """Install a fake Claude wrapper script whose body is given by the test."""

    def _write(body: str) -> Path:
        wrapper = tmp_path / "claude-wrapper.sh"
        wrapper.write_text("#!/bin/sh\n" + body)
        wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        config.wrapper_path = str(wrapper)
        return wrapper

    return _write


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def make_git_repo(path: Path, files: dict[str, str] | None = None) -> Path:
    """Create a git repository with one commit."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "config", "user.name", "Test")
    git(path, "config", "user.email", "test@example.com")
    for name, content in (files or {"README.md": "hello\n"}).items():
        (path / name).write_text(content)
    git(path, "add", ".")
    git(path, "commit", "-q", "-m", "initial")
    return path


def make_base(config: ConvoyConfig, name: str, files: dict[str, str] | None = None) -> Path:
    """Create a plain (non-git) base checkout for a repository."""
    base = config.base_path(name)
    base.mkdir(parents=True, exist_ok=True)
    for filename, content in (files or {"README.md": "hello\n"}).items():
        (base / filename).write_text(content)
    return base
