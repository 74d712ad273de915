"""Tests for the Directory Stager and git boundary."""

import json
import shutil
from unittest.mock import patch

import pytest

from conftest import git, make_base, make_git_repo, requires_git
from convoy.exceptions import GitCommandError, ResourceMissingError, StageFailureError
from convoy.persistence import ConvoyRepository
from convoy.staging import DirectoryStager, default_branch, run_git


@pytest.fixture
def repo(config):
    repository = ConvoyRepository(config.db_path)
    repository.initialize()
    yield repository
    repository.close()


@pytest.fixture
def stager(config, repo):
    return DirectoryStager(config, repo)


def _stage_events(log_dir) -> list[str]:
    path = log_dir / "stage.jsonl"
    if not path.exists():
        return []
    return [json.loads(line)["event"] for line in path.read_text().splitlines() if line.strip()]


class TestRunGit:
    """Tests for the git command boundary."""

    def test_missing_directory_raises(self, tmp_path):
        """Running git in a missing directory is a GitCommandError."""
        with pytest.raises(GitCommandError):
            run_git(["status"], tmp_path / "missing")

    @requires_git
    def test_failure_carries_exit_code(self, tmp_path):
        """A non-zero exit keeps its code and stderr."""
        with pytest.raises(GitCommandError) as exc_info:
            run_git(["rev-parse", "HEAD"], tmp_path)
        assert exc_info.value.exit_code != 0

    @requires_git
    def test_unchecked_returns_result(self, tmp_path):
        """With check=False the result is returned as-is."""
        result = run_git(["rev-parse", "HEAD"], tmp_path, check=False)
        assert result.returncode != 0


class TestDefaultBranch:
    """Tests for default branch discovery."""

    def test_falls_back_to_main(self, tmp_path):
        """A plain directory yields main."""
        assert default_branch(tmp_path) == "main"

    @requires_git
    def test_current_branch(self, tmp_path):
        """Without a remote HEAD the checked-out branch is used."""
        repo = make_git_repo(tmp_path / "repo")
        git(repo, "checkout", "-q", "-b", "feature")
        assert default_branch(repo) == "feature"

    @requires_git
    def test_remote_head(self, tmp_path):
        """The remote HEAD wins when a clone has one."""
        origin = make_git_repo(tmp_path / "origin")
        git(origin, "branch", "-M", "trunk")
        clone = tmp_path / "clone"
        git(tmp_path, "clone", "-q", str(origin), str(clone))
        git(clone, "checkout", "-q", "-b", "local-work")
        assert default_branch(clone) == "trunk"


class TestEnsureHot:
    """Tests for DirectoryStager.ensure_hot."""

    def test_copies_base_into_hot(self, config, stager):
        """Test a cold repository is copied."""
        make_base(config, "app", {"README.md": "hello\n"})

        hot = stager.ensure_hot("app")

        assert hot == config.hot_path("app")
        assert (hot / "README.md").read_text() == "hello\n"
        assert config.base_path("app").exists()

    def test_idempotent(self, config, stager):
        """Test a second call does not copy again."""
        make_base(config, "app")
        real_copytree = shutil.copytree

        with patch("convoy.staging.stager.shutil.copytree", side_effect=real_copytree) as copytree:
            stager.ensure_hot("app")
            stager.ensure_hot("app")

        assert copytree.call_count == 1

    def test_no_temp_directories_left(self, config, stager):
        """Test only the final hot directory remains."""
        make_base(config, "app")
        stager.ensure_hot("app")
        assert [p.name for p in config.hot_root.iterdir()] == ["app"]

    def test_missing_base_deletes_record(self, config, stager, repo, isolated_logs):
        """Test a missing base raises and prunes the catalog."""
        repo.add_repository("gone")

        with pytest.raises(ResourceMissingError):
            stager.ensure_hot("gone")

        assert repo.get_repository("gone") is None
        assert not config.hot_path("gone").exists()
        assert "missing_base" in _stage_events(isolated_logs)

    def test_concurrent_winner_keeps_hot(self, config, stager, isolated_logs):
        """Test the temp copy is discarded when hot appears mid-copy."""
        make_base(config, "app", {"file.txt": "ours"})
        real_copytree = shutil.copytree

        def copy_then_lose_race(src, dst, **kwargs):
            real_copytree(src, dst, **kwargs)
            winner = config.hot_path("app")
            winner.mkdir()
            (winner / "file.txt").write_text("theirs")

        with patch("convoy.staging.stager.shutil.copytree", side_effect=copy_then_lose_race):
            hot = stager.ensure_hot("app")

        assert (hot / "file.txt").read_text() == "theirs"
        assert [p.name for p in config.hot_root.iterdir()] == ["app"]
        assert "race_lost" in _stage_events(isolated_logs)

    def test_rename_failure(self, config, stager):
        """Test a failed rename cleans up and raises StageFailureError."""
        make_base(config, "app")

        with patch("convoy.staging.stager.os.rename", side_effect=OSError("disk full")):
            with pytest.raises(StageFailureError):
                stager.ensure_hot("app")

        assert list(config.hot_root.iterdir()) == []

    def test_copy_failure(self, config, stager):
        """Test a failed copy raises StageFailureError."""
        make_base(config, "app")

        with patch("convoy.staging.stager.shutil.copytree", side_effect=OSError("no space")):
            with pytest.raises(StageFailureError):
                stager.ensure_hot("app")

        assert not config.hot_path("app").exists()

    def test_refresh_failure_still_copies(self, config, stager, repo, isolated_logs):
        """Test a base that is not a git checkout is still copied."""
        repo.add_repository("app")
        make_base(config, "app")

        stager.ensure_hot("app")

        assert config.hot_path("app").exists()
        assert repo.get_repository("app").last_pulled_at is None
        assert "refresh_failed" in _stage_events(isolated_logs)

    @requires_git
    def test_refresh_pulls_origin(self, tmp_path, config, stager, repo):
        """Test the base is synced with origin before copying."""
        origin = make_git_repo(tmp_path / "origin")
        branch = git(origin, "rev-parse", "--abbrev-ref", "HEAD")
        base = config.base_path("app")
        base.parent.mkdir(parents=True)
        git(tmp_path, "clone", "-q", str(origin), str(base))

        (origin / "new.txt").write_text("fresh")
        git(origin, "add", "new.txt")
        git(origin, "commit", "-q", "-m", "new file")
        repo.add_repository("app", branch=branch)

        hot = stager.ensure_hot("app")

        assert (hot / "new.txt").read_text() == "fresh"
        assert repo.get_repository("app").last_pulled_at is not None


class TestBlankBase:
    """Tests for the blank repository bootstrap."""

    @requires_git
    def test_bootstrap_creates_repository(self, config, stager):
        """Test the shared base becomes a git repository with one commit."""
        root = stager.bootstrap_blank_base()

        assert (root / ".git").is_dir()
        assert (root / ".gitkeep").exists()
        assert git(root, "log", "--format=%s") == "Initial commit"

    def test_bootstrap_skips_existing(self, config, stager):
        """Test an existing base directory is left untouched."""
        config.blank_root.mkdir(parents=True)
        (config.blank_root / "keep.txt").write_text("x")

        with patch("convoy.staging.stager.run_git") as run:
            stager.bootstrap_blank_base()

        run.assert_not_called()
        assert not (config.blank_root / ".gitkeep").exists()


class TestRemoveHot:
    """Tests for remove_hot."""

    def test_remove(self, config, stager):
        """Test removing an existing hot directory."""
        make_base(config, "app")
        stager.ensure_hot("app")

        assert stager.remove_hot("app") is True
        assert stager.remove_hot("app") is False
