import shutil
import subprocess

import pytest

from agent_dispatch.clients.git import GitClient, GitError, epic_branch_name, slugify

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "project" / "repo"
    path.mkdir(parents=True)
    env_args = ["-c", "user.name=Dispatch", "-c", "user.email=dispatch@example.com"]
    subprocess.run(["git", "init", "-q", str(path)], check=True)
    subprocess.run(
        ["git", *env_args, "-C", str(path), "commit", "-q", "--allow-empty", "-m", "init"], check=True
    )
    return path


def test_branch_naming():
    assert slugify("  Login & Sign-up Flow!! ") == "login-sign-up-flow"
    assert len(slugify("x" * 100)) == 40
    assert epic_branch_name("7", "Payments v2") == "feature/epic-7-payments-v2"


def test_create_worktree_is_reused(repo):
    client = GitClient()

    first = client.create_worktree(str(repo), "7", "Payments v2")

    assert first.branch_name == "feature/epic-7-payments-v2"
    assert first.worktree_path.startswith(str(repo.resolve().parent / ".agent-dispatch-worktrees"))
    assert "feature/epic-7-payments-v2" in client.local_branches(str(repo))

    second = client.create_worktree(str(repo), "7", "Payments v2")
    assert second == first

    client.remove_worktree(str(repo), first.worktree_path)
    recreated = client.create_worktree(str(repo), "7", "Payments v2")
    assert recreated.worktree_path == first.worktree_path


def test_git_failures_raise(tmp_path):
    with pytest.raises(GitError):
        GitClient().local_branches(str(tmp_path / "not-a-repo"))
