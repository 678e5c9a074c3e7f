from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Iterable

import pytest

from rigwright.core.config import RigConfig, WorkerEntry, save_rig_config
from rigwright.core.vcs.detection import _clear_detection_cache
from rigwright.core.vcs.types import VCSBackend

DEFAULT_WORKERS = ("alice", "bob", "carol")


def run(cmd: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=True)


@pytest.fixture(autouse=True)
def vcs_identity(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolate git and jj from the developer's configuration."""
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Rig Tester")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "rig@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Rig Tester")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "rig@example.com")
    monkeypatch.setenv("JJ_USER", "Rig Tester")
    monkeypatch.setenv("JJ_EMAIL", "rig@example.com")
    jj_config = home / "jj-config.toml"
    jj_config.write_text('[user]\nname = "Rig Tester"\nemail = "rig@example.com"\n', encoding="utf-8")
    monkeypatch.setenv("JJ_CONFIG", str(jj_config))
    monkeypatch.delenv("RIGWRIGHT_VCS_TIMEOUT", raising=False)
    _clear_detection_cache()


@pytest.fixture()
def git() -> Callable[..., str]:
    """Run git in a directory and return stripped stdout."""

    def _git(cwd: Path, *args: str) -> str:
        return run(["git", *args], cwd=cwd).stdout.strip()

    return _git


@pytest.fixture()
def git_repo(tmp_path: Path, git) -> Path:
    """A git repository on ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    (repo / "README.md").write_text("# Test\n", encoding="utf-8")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


@pytest.fixture()
def conflicting_branches(git_repo: Path, git) -> Path:
    """``left`` and ``right`` both rewrite README.md; ``clean`` touches another file."""
    for branch, path, content in (
        ("left", "README.md", "left\n"),
        ("right", "README.md", "right\n"),
        ("clean", "NOTES.md", "notes\n"),
    ):
        git(git_repo, "checkout", "-q", "-b", branch, "main")
        (git_repo / path).write_text(content, encoding="utf-8")
        git(git_repo, "add", path)
        git(git_repo, "commit", "-q", "-m", f"{branch} change")
    git(git_repo, "checkout", "-q", "main")
    return git_repo


@pytest.fixture()
def make_rig(tmp_path: Path, git) -> Callable[..., Path]:
    """Build a git rig: a bare store plus one independent clone per worker.

    Every worker sits on ``worker/<name>`` with one pushed commit of its own.
    """

    def _make(workers: Iterable[str] = DEFAULT_WORKERS, name: str = "rig") -> Path:
        seed = tmp_path / f"{name}-seed"
        seed.mkdir()
        git(seed, "init", "-q", "-b", "main")
        (seed / "README.md").write_text("# Rig\n", encoding="utf-8")
        git(seed, "add", "README.md")
        git(seed, "commit", "-q", "-m", "Initial commit")

        rig = tmp_path / name
        rig.mkdir()
        run(["git", "clone", "-q", "--bare", str(seed), str(rig / ".repo.git")])

        entries: dict[str, WorkerEntry] = {}
        for worker in workers:
            path = rig / "crew" / worker
            path.parent.mkdir(parents=True, exist_ok=True)
            run(["git", "clone", "-q", str(rig / ".repo.git"), str(path)])
            branch = f"worker/{worker}"
            git(path, "checkout", "-q", "-b", branch)
            (path / f"{worker}.txt").write_text(f"{worker}\n", encoding="utf-8")
            git(path, "add", f"{worker}.txt")
            git(path, "commit", "-q", "-m", f"{worker} work")
            git(path, "push", "-q", "-u", "origin", branch)
            entries[worker] = WorkerEntry(path=f"crew/{worker}", branch=branch)

        save_rig_config(rig, RigConfig(name=name, vcs=VCSBackend.GIT, workers=entries))
        return rig

    return _make


@pytest.fixture()
def rig(make_rig) -> Path:
    return make_rig()
