"""
Tests for the migration controller.

The rigs here migrate git -> git: independent clones become worktrees of
a shared bare anchor. That exercises every phase with only git installed;
the jj path is covered at the end when jj is available.
"""

import shutil
from pathlib import Path

import pytest

from rigwright.core.config import DispatchGate, load_rig_config, save_rig_config, task_marker_path
from rigwright.core.vcs import GitVCS, VCSBackend, VCSCommandError, detect_vcs_type
from rigwright.migration import (
    ConversionPartialFailure,
    MigrationAbortedError,
    MigrationController,
    MigrationError,
    MigrationInProgressError,
    MigrationPhase,
    MigrationRecord,
    NoMigrationError,
    PhasePreconditionError,
    load_record,
)
from rigwright.migration.backup import backups_root, latest_backup, read_manifest

JJ_AVAILABLE = shutil.which("jj") is not None

WORKERS = ("alice", "bob", "carol")


def _heads(rig: Path) -> dict[str, tuple[str, str]]:
    heads = {}
    for worker in WORKERS:
        vcs = GitVCS(work_dir=rig / "crew" / worker)
        heads[worker] = (vcs.current_branch(), vcs.rev("HEAD"))
    return heads


def _is_standalone(path: Path) -> bool:
    return (path / ".git").is_dir()


@pytest.fixture
def fail_worker(monkeypatch):
    """Make attaching the named workers fail; returns the attempt log."""
    original = GitVCS.workspace_add_existing
    attempts: list[str] = []
    failing: set[str] = set()

    def flaky(self, path, branch):
        attempts.append(Path(path).name)
        if Path(path).name in failing:
            raise VCSCommandError("workspace add", message=f"simulated failure for {Path(path).name}")
        return original(self, path, branch)

    monkeypatch.setattr(GitVCS, "workspace_add_existing", flaky)

    def _fail(*names: str):
        failing.clear()
        failing.update(names)
        return attempts

    return _fail


# =============================================================================
# Happy path
# =============================================================================


class TestFullMigration:
    def test_converts_every_worker(self, rig):
        before = _heads(rig)
        events = []

        result = MigrationController(
            rig, "git", progress=lambda phase, status, detail: events.append((phase, status))
        ).run()

        assert sorted(result.converted) == list(WORKERS)
        assert result.anchor == rig.resolve() / ".repo.git.anchor"
        assert _heads(rig) == before
        for worker in WORKERS:
            path = rig / "crew" / worker
            assert (path / ".git").is_file()
            assert (path / f"{worker}.txt").read_text() == f"{worker}\n"

        anchor = GitVCS(git_dir=result.anchor)
        listed = {ws.path.resolve() for ws in anchor.workspace_list()}
        assert listed == {(rig / "crew" / w).resolve() for w in WORKERS}

        config = load_rig_config(rig)
        assert config.vcs == VCSBackend.GIT
        assert config.anchor == ".repo.git.anchor"
        assert all(entry.workspace for entry in config.workers.values())
        assert not config.frozen

        assert load_record(rig) is None
        assert not (rig / ".rig" / "migration").exists()
        started = [phase for phase, status in events if status == "started"]
        assert started == [
            MigrationPhase.PRECHECK,
            MigrationPhase.FREEZE,
            MigrationPhase.CONVERT_REPOSITORY,
            MigrationPhase.CONVERT_WORKSPACES,
            MigrationPhase.UPDATE_CONFIG,
            MigrationPhase.RESUME,
        ]

    def test_backup_and_manifest_outlive_the_record(self, rig):
        result = MigrationController(rig, "git", archive=True).run()
        directory = latest_backup(rig)
        assert directory is not None
        assert result.backup.resolve() == (directory / "store").resolve()
        manifest = read_manifest(directory)
        assert manifest.source_backend == "git"
        assert set(manifest.branches) == set(WORKERS)
        assert manifest.archive and Path(manifest.archive).is_file()

    def test_ignored_files_follow_the_worker(self, rig, git):
        alice = rig / "crew" / "alice"
        (alice / ".gitignore").write_text(".env\nbuild/\n")
        git(alice, "add", ".gitignore")
        git(alice, "commit", "-q", "-m", "ignore local files")
        git(alice, "push", "-q")
        (alice / ".env").write_text("TOKEN=local\n")
        (alice / "build").mkdir()
        (alice / "build" / "out.bin").write_bytes(b"\x00\x01")

        MigrationController(rig, "git").run()

        assert (alice / ".git").is_file()
        assert (alice / ".env").read_text() == "TOKEN=local\n"
        assert (alice / "build" / "out.bin").read_bytes() == b"\x00\x01"
        assert GitVCS(work_dir=alice).status().clean

    def test_anchor_points_at_store_upstream(self, rig):
        result = MigrationController(rig, "git").run()
        upstream = GitVCS(git_dir=rig / ".repo.git").remote_url("origin")
        assert GitVCS(git_dir=result.anchor).remote_url("origin") == upstream

    def test_record_is_persisted_at_each_phase(self, rig, monkeypatch):
        seen = []
        original = MigrationController._update_config

        def spy(self, record):
            stored = load_record(self.rig_root)
            seen.append((stored.phase, stored.frozen, sorted(stored.converted)))
            return original(self, record)

        monkeypatch.setattr(MigrationController, "_update_config", spy)
        MigrationController(rig, "git").run()
        assert seen == [(MigrationPhase.UPDATE_CONFIG, True, list(WORKERS))]

    @pytest.mark.parametrize("target", ["git", "jj"])
    def test_second_run_refused_once_migrated(self, rig, target):
        MigrationController(rig, "git").run()
        with pytest.raises(MigrationError, match="already has an anchor"):
            MigrationController(rig, target).run()
        assert load_record(rig) is None
        assert not DispatchGate(rig).is_frozen()
        assert not (rig / ".repo.jj.anchor").exists()


# =============================================================================
# Pre-check
# =============================================================================


class TestPrecheck:
    def test_dirty_worker_rejects_without_side_effects(self, rig):
        (rig / "crew" / "bob" / "wip.txt").write_text("wip\n")
        marker = task_marker_path(rig, "carol")
        marker.parent.mkdir(parents=True)
        marker.write_text("task\n")

        with pytest.raises(PhasePreconditionError) as info:
            MigrationController(rig, "git").run()

        assert info.value.result.offending_workers == ["bob", "carol"]
        assert load_record(rig) is None
        assert not backups_root(rig).exists()
        assert not DispatchGate(rig).is_frozen()
        assert not (rig / ".repo.git.anchor").exists()

    def test_workers_sharing_a_branch_are_rejected(self, rig, git):
        git(rig / "crew" / "carol", "checkout", "-q", "worker/bob")
        config = load_rig_config(rig)
        config.workers["carol"].branch = "worker/bob"
        save_rig_config(rig, config)

        with pytest.raises(PhasePreconditionError) as info:
            MigrationController(rig, "git").run()

        assert info.value.result.offending_workers == ["bob", "carol"]
        assert load_record(rig) is None
        assert not (rig / ".repo.git.anchor").exists()

    def test_in_progress_migration_blocks_new_run(self, rig, fail_worker):
        fail_worker("carol")
        with pytest.raises(ConversionPartialFailure):
            MigrationController(rig, "git").run()
        with pytest.raises(MigrationInProgressError):
            MigrationController(rig, "git").run()

    def test_target_required(self, rig):
        with pytest.raises(ValueError):
            MigrationController(rig).run()


# =============================================================================
# Partial failure, retry and resume
# =============================================================================


class TestResume:
    def test_partial_failure_retries_then_records(self, rig, fail_worker):
        attempts = fail_worker("carol")

        with pytest.raises(ConversionPartialFailure) as info:
            MigrationController(rig, "git", max_attempts=3).run()

        assert sorted(info.value.converted) == ["alice", "bob"]
        assert list(info.value.failed) == ["carol"]
        assert attempts.count("carol") == 3
        assert _is_standalone(rig / "crew" / "carol")

        record = load_record(rig)
        assert record.phase == MigrationPhase.CONVERT_WORKSPACES
        assert record.frozen
        assert sorted(record.converted) == ["alice", "bob"]
        assert "simulated failure" in record.failed["carol"]
        assert DispatchGate(rig).is_frozen()

    def test_resume_converts_only_remaining_workers(self, rig, fail_worker):
        before = _heads(rig)
        attempts = fail_worker("carol")
        with pytest.raises(ConversionPartialFailure):
            MigrationController(rig, "git").run()

        fail_worker()
        attempts.clear()
        result = MigrationController(rig).resume()

        assert attempts == ["carol"]
        assert sorted(result.converted) == list(WORKERS)
        assert _heads(rig) == before
        assert load_record(rig) is None
        assert not DispatchGate(rig).is_frozen()
        assert all(entry.workspace for entry in load_rig_config(rig).workers.values())

    def test_resume_after_crash_mid_conversion(self, rig, fail_worker):
        """A parked clone without a workspace is restored, then converted."""
        fail_worker("carol")
        with pytest.raises(ConversionPartialFailure):
            MigrationController(rig, "git", max_attempts=1).run()

        carol = rig / "crew" / "carol"
        parked = rig / ".rig" / "migration" / "standalone" / "carol"
        parked.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(carol), str(parked))

        fail_worker()
        result = MigrationController(rig).resume()
        assert "carol" in result.converted
        assert (carol / "carol.txt").read_text() == "carol\n"
        assert not parked.exists()

    def test_resume_after_interrupt_between_attach_and_record(self, rig, monkeypatch):
        before = _heads(rig)
        original = MigrationRecord.mark_converted
        interrupted = ["carol"]

        def interrupt_once(self, worker):
            if worker in interrupted:
                interrupted.remove(worker)
                raise KeyboardInterrupt
            return original(self, worker)

        monkeypatch.setattr(MigrationRecord, "mark_converted", interrupt_once)
        with pytest.raises(KeyboardInterrupt):
            MigrationController(rig, "git").run()

        record = load_record(rig)
        assert sorted(record.converted) == ["alice", "bob"]
        assert (rig / ".rig" / "migration" / "standalone" / "carol").is_dir()
        assert (rig / "crew" / "carol" / ".git").is_file()

        result = MigrationController(rig).resume()

        assert sorted(result.converted) == list(WORKERS)
        assert _heads(rig) == before
        assert load_record(rig) is None

    def test_resume_without_migration(self, rig):
        with pytest.raises(NoMigrationError):
            MigrationController(rig).resume()


# =============================================================================
# Abort
# =============================================================================


class TestAbort:
    def test_clone_failure_aborts_automatically(self, rig, monkeypatch):
        before = _heads(rig)

        def broken_clone(self, url, dest):
            Path(dest).mkdir(parents=True)
            (Path(dest) / "partial").write_text("half a clone")
            raise VCSCommandError("clone bare", message="simulated network failure")

        monkeypatch.setattr(GitVCS, "clone_bare", broken_clone)

        with pytest.raises(MigrationAbortedError) as info:
            MigrationController(rig, "git").run()

        report = info.value.report
        assert report.phase == MigrationPhase.CONVERT_REPOSITORY
        assert any("anchor" in item for item in report.removed)
        assert any("backup" in item for item in report.removed)
        assert "convert_repository" in str(info.value)
        assert not (rig / ".repo.git.anchor").exists()
        assert load_record(rig) is None
        assert not DispatchGate(rig).is_frozen()
        assert load_rig_config(rig).anchor is None
        assert _heads(rig) == before

    def test_abort_after_partial_conversion_restores_clones(self, rig, fail_worker):
        before = _heads(rig)
        fail_worker("carol")
        with pytest.raises(ConversionPartialFailure):
            MigrationController(rig, "git", max_attempts=1).run()

        report = MigrationController(rig).abort()

        assert report.phase == MigrationPhase.CONVERT_WORKSPACES
        removed = " ".join(report.removed)
        assert "workspace alice" in removed
        assert "workspace bob" in removed
        assert "workspace carol" not in removed
        for worker in WORKERS:
            assert _is_standalone(rig / "crew" / worker)
        assert _heads(rig) == before
        assert not (rig / ".repo.git.anchor").exists()
        assert load_record(rig) is None
        assert not DispatchGate(rig).is_frozen()
        assert "workspace" not in (rig / ".rig" / "config.yaml").read_text()

    def test_abort_without_migration(self, rig):
        with pytest.raises(NoMigrationError):
            MigrationController(rig).abort()

    def test_cannot_abort_after_config_update(self, rig, monkeypatch):
        original = MigrationController._resume
        crashes = [OSError("disk full")]

        def crash_once(self, record):
            if crashes:
                raise crashes.pop()
            return original(self, record)

        monkeypatch.setattr(MigrationController, "_resume", crash_once)
        with pytest.raises(OSError):
            MigrationController(rig, "git").run()

        record = load_record(rig)
        assert record.phase == MigrationPhase.RESUME
        assert "disk full" in record.last_outcome
        with pytest.raises(MigrationError, match="Cannot abort"):
            MigrationController(rig).abort()

        MigrationController(rig).resume()
        assert load_record(rig) is None
        assert not DispatchGate(rig).is_frozen()


# =============================================================================
# jj target
# =============================================================================


@pytest.mark.skipif(not JJ_AVAILABLE, reason="jj not installed")
class TestJujutsuTarget:
    def test_git_rig_becomes_jj_workspaces(self, rig):
        before = _heads(rig)
        result = MigrationController(rig, "jj").run()

        assert sorted(result.converted) == list(WORKERS)
        assert detect_vcs_type(result.anchor) == VCSBackend.JUJUTSU
        config = load_rig_config(rig)
        assert config.vcs == VCSBackend.JUJUTSU
        for worker in WORKERS:
            path = rig / "crew" / worker
            assert detect_vcs_type(path) == VCSBackend.JUJUTSU
            assert (path / f"{worker}.txt").exists()
        from rigwright.core.vcs import JujutsuVCS

        for worker, (branch, commit) in before.items():
            vcs = JujutsuVCS(work_dir=rig / "crew" / worker)
            assert vcs.current_branch() == branch
            assert vcs.rev(branch) == commit
