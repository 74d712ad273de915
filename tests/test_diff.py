"""Tests for diff capture."""

from unittest.mock import patch

from conftest import git, make_git_repo, requires_git
from convoy.exceptions import GitCommandError
from convoy.staging import capture_diff, read_diff
from convoy.staging.diff import diff_path


def _clone_with_origin(tmp_path):
    origin = make_git_repo(tmp_path / "origin", {"app.py": "print('v1')\n"})
    project = tmp_path / "project"
    git(tmp_path, "clone", "-q", str(origin), str(project))
    git(project, "config", "user.name", "Test")
    git(project, "config", "user.email", "test@example.com")
    return project


class TestCaptureDiff:
    """Tests for capture_diff."""

    def test_not_a_repository(self, tmp_path):
        """Test a directory without .git is skipped."""
        assert capture_diff(tmp_path) is None
        assert read_diff(tmp_path) == ""

    @requires_git
    def test_committed_changes_are_captured(self, tmp_path):
        """Test commits ahead of origin end up in project.diff."""
        project = _clone_with_origin(tmp_path)
        (project / "app.py").write_text("print('v2')\n")
        git(project, "commit", "-q", "-am", "change")

        path = capture_diff(project)

        assert path == diff_path(project)
        assert "v2" in read_diff(project)

    @requires_git
    def test_empty_diff_is_removed(self, tmp_path):
        """Test no diff file remains when nothing changed."""
        project = _clone_with_origin(tmp_path)

        assert capture_diff(project) is None
        assert not diff_path(project).exists()

    def test_git_failure_is_swallowed(self, tmp_path):
        """Test git errors never escape."""
        (tmp_path / ".git").mkdir()
        with patch(
            "convoy.staging.diff.run_git", side_effect=GitCommandError("bad revision")
        ):
            assert capture_diff(tmp_path) is None
