"""Tests for the transactional installer: staging, commit, rollback and recovery."""

import asyncio
import os

import pytest

from modsync.exceptions import InstallFailedError, IntegrityViolationError
from modsync.install import InstallApplier, InstallPlanner, read_lockfile
from modsync.install import applier as applier_module
from modsync.install.applier import DISABLED_SUFFIX, JOURNAL_NAME, LOCK_NAME, STAGING_NAME
from modsync.models import ResolutionResult

from conftest import GAME_VERSION, LOADER


class SimulatedCrash(RuntimeError):
    pass


def snapshot(directory):
    state = {}
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            stat = os.stat(path)
            with open(path, "rb") as f:
                state[name] = (f.read(), stat.st_mtime_ns)
        else:
            state[name] = "<dir>"
    return state


class Installer:
    """Resolution → plan → obtain → apply against a temporary mod directory."""

    def __init__(self, tmp_path, cache):
        self.mods_dir = str(tmp_path / "mods")
        self.lockfile_path = str(tmp_path / "modsync.lock")
        self.cache = cache
        self.user_dir = str(tmp_path / "user")
        self.applier = InstallApplier(self.mods_dir, self.lockfile_path, cache, user_dir=self.user_dir)
        self.planner = InstallPlanner()

    def sync(self, *versions, disabled=(), broken=()):
        async def main():
            lockfile = await read_lockfile(self.lockfile_path)
            result = ResolutionResult(LOADER, GAME_VERSION, {v.reference: v for v in versions})
            plan = self.planner.plan(result, lockfile, broken)
            artifacts = await self.cache.obtain_many(plan.to_fetch())
            await self.applier.apply(plan, lockfile, artifacts, disabled=disabled)
            return plan

        return asyncio.run(main())

    def lockfile(self):
        return asyncio.run(read_lockfile(self.lockfile_path))

    def jars(self):
        return sorted(name for name in os.listdir(self.mods_dir) if name.endswith(".jar"))


@pytest.fixture
def installer(tmp_path, cache):
    return Installer(tmp_path, cache)


def test_fresh_install(installer, modrinth):
    a = modrinth.add("moda", "1.0.0", data=b"A1")
    b = modrinth.add("modb", "1.0.0", data=b"B1")

    installer.sync(a, b)

    assert installer.jars() == ["modrinth-moda-moda-1.0.0.jar", "modrinth-modb-modb-1.0.0.jar"]
    with open(os.path.join(installer.mods_dir, "modrinth-moda-moda-1.0.0.jar"), "rb") as f:
        assert f.read() == b"A1"
    assert len(installer.lockfile()) == 2
    assert sorted(os.listdir(installer.mods_dir)) == installer.jars()


def test_second_identical_apply_does_not_touch_the_directory(installer, modrinth):
    a = modrinth.add("moda", "1.0.0")
    installer.sync(a)
    before = snapshot(installer.mods_dir)
    with open(installer.lockfile_path, "rb") as f:
        lock_before = f.read()

    plan = installer.sync(a)

    assert plan.is_noop
    assert snapshot(installer.mods_dir) == before
    with open(installer.lockfile_path, "rb") as f:
        assert f.read() == lock_before


def test_update_and_remove(installer, modrinth):
    a1 = modrinth.add("moda", "1.0.0", data=b"A1")
    b = modrinth.add("modb", "1.0.0")
    installer.sync(a1, b)
    a2 = modrinth.add("moda", "2.0.0", data=b"A2")

    installer.sync(a2)

    assert installer.jars() == ["modrinth-moda-moda-2.0.0.jar"]
    entry = installer.lockfile().get(a2.reference)
    assert entry.version == "2.0.0"
    assert entry.checksum == a2.checksum


def test_untracked_file_with_same_name_is_replaced(installer, modrinth):
    a = modrinth.add("moda", "1.0.0", data=b"A1")
    os.makedirs(installer.mods_dir)
    stray = os.path.join(installer.mods_dir, "modrinth-moda-moda-1.0.0.jar")
    with open(stray, "wb") as f:
        f.write(b"manual copy")

    installer.sync(a)

    with open(stray, "rb") as f:
        assert f.read() == b"A1"


def test_failed_commit_rolls_back(installer, modrinth, monkeypatch):
    a1 = modrinth.add("moda", "1.0.0", data=b"A1")
    b1 = modrinth.add("modb", "1.0.0", data=b"B1")
    installer.sync(a1, b1)
    before = {name: data for name, (data, _) in snapshot(installer.mods_dir).items()}
    with open(installer.lockfile_path, "rb") as f:
        lock_before = f.read()

    a2 = modrinth.add("moda", "2.0.0", data=b"A2")
    b2 = modrinth.add("modb", "2.0.0", data=b"B2")
    real_replace = os.replace

    def failing_replace(src, dst):
        if str(dst).endswith("modrinth-modb-modb-2.0.0.jar"):
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(applier_module.os, "replace", failing_replace)

    with pytest.raises(InstallFailedError) as exc:
        installer.sync(a2, b2)

    monkeypatch.undo()
    assert exc.value.code == "E401"
    assert {name: data for name, (data, _) in snapshot(installer.mods_dir).items()} == before
    with open(installer.lockfile_path, "rb") as f:
        assert f.read() == lock_before


def test_corrupted_artifact_is_rejected_before_commit(installer, modrinth, cache):
    a = modrinth.add("moda", "1.0.0", data=b"A1")

    async def main():
        lockfile = await read_lockfile(installer.lockfile_path)
        result = ResolutionResult(LOADER, GAME_VERSION, {a.reference: a})
        plan = installer.planner.plan(result, lockfile)
        artifacts = await cache.obtain_many(plan.to_fetch())
        with open(artifacts[a.reference].path, "wb") as f:
            f.write(b"bit rot")
        await installer.applier.apply(plan, lockfile, artifacts)

    with pytest.raises(IntegrityViolationError):
        asyncio.run(main())

    assert installer.jars() == []
    assert not os.path.exists(installer.lockfile_path)
    assert not os.path.exists(os.path.join(installer.mods_dir, STAGING_NAME))


def test_crash_before_lockfile_write_is_rolled_back(installer, modrinth, monkeypatch):
    a1 = modrinth.add("moda", "1.0.0", data=b"A1")
    installer.sync(a1)
    a2 = modrinth.add("moda", "2.0.0", data=b"A2")

    def crash(path, lockfile):
        raise SimulatedCrash()

    monkeypatch.setattr(applier_module, "write_lockfile", crash)
    with pytest.raises(SimulatedCrash):
        installer.sync(a2)
    monkeypatch.undo()

    assert os.path.exists(os.path.join(installer.mods_dir, JOURNAL_NAME))
    assert installer.jars() == ["modrinth-moda-moda-2.0.0.jar"]

    outcome = asyncio.run(installer.applier.recover())

    assert outcome == "rollback"
    assert installer.jars() == ["modrinth-moda-moda-1.0.0.jar"]
    assert installer.lockfile().get(a1.reference).version == "1.0.0"
    assert sorted(os.listdir(installer.mods_dir)) == installer.jars()


def test_crash_after_lockfile_write_rolls_forward(installer, modrinth, monkeypatch):
    a1 = modrinth.add("moda", "1.0.0")
    installer.sync(a1)
    a2 = modrinth.add("moda", "2.0.0")

    def crash(self, staging):
        raise SimulatedCrash()

    monkeypatch.setattr(applier_module.InstallApplier, "_finish", crash)
    with pytest.raises(SimulatedCrash):
        installer.sync(a2)
    monkeypatch.undo()

    outcome = asyncio.run(installer.applier.recover())

    assert outcome == "forward"
    assert installer.jars() == ["modrinth-moda-moda-2.0.0.jar"]
    assert installer.lockfile().get(a2.reference).version == "2.0.0"
    assert sorted(os.listdir(installer.mods_dir)) == installer.jars()


def test_recover_without_journal(installer):
    assert asyncio.run(installer.applier.recover()) is None


def test_apply_rejects_stale_lockfile(installer, modrinth):
    a = modrinth.add("moda", "1.0.0")
    b = modrinth.add("modb", "1.0.0")

    async def main():
        lockfile = await read_lockfile(installer.lockfile_path)
        result = ResolutionResult(LOADER, GAME_VERSION, {a.reference: a})
        plan = installer.planner.plan(result, lockfile)
        artifacts = await installer.cache.obtain_many(plan.to_fetch())
        return plan, lockfile, artifacts

    plan, lockfile, artifacts = asyncio.run(main())
    installer.sync(b)

    with pytest.raises(InstallFailedError):
        asyncio.run(installer.applier.apply(plan, lockfile, artifacts))


def test_concurrent_applies_are_serialized(installer, modrinth):
    a = modrinth.add("moda", "1.0.0")
    order = []
    real_stage = InstallApplier._stage

    async def tracking_stage(self, placements, artifacts, staging):
        order.append("start")
        await asyncio.sleep(0.01)
        result = await real_stage(self, placements, artifacts, staging)
        order.append("end")
        return result

    async def main():
        lockfile = await read_lockfile(installer.lockfile_path)
        result = ResolutionResult(LOADER, GAME_VERSION, {a.reference: a})
        plan = installer.planner.plan(result, lockfile)
        artifacts = await installer.cache.obtain_many(plan.to_fetch())
        return await asyncio.gather(
            installer.applier.apply(plan, lockfile, artifacts),
            installer.applier.apply(plan, lockfile, artifacts),
            return_exceptions=True,
        )

    InstallApplier._stage = tracking_stage
    try:
        outcomes = asyncio.run(main())
    finally:
        InstallApplier._stage = real_stage

    assert order == ["start", "end"]
    # the second apply sees the lockfile written by the first and refuses the stale plan
    assert isinstance(outcomes[1], InstallFailedError)
    assert installer.jars() == ["modrinth-moda-moda-1.0.0.jar"]


def test_lock_held_by_live_process(installer, modrinth):
    a = modrinth.add("moda", "1.0.0")
    os.makedirs(installer.mods_dir)
    with open(os.path.join(installer.mods_dir, LOCK_NAME), "w") as f:
        f.write(str(os.getppid()))

    with pytest.raises(InstallFailedError):
        installer.sync(a)


def test_stale_lock_is_taken_over(installer, modrinth):
    a = modrinth.add("moda", "1.0.0")
    os.makedirs(installer.mods_dir)
    with open(os.path.join(installer.mods_dir, LOCK_NAME), "w") as f:
        f.write("2147483000")

    installer.sync(a)

    assert installer.jars() == ["modrinth-moda-moda-1.0.0.jar"]
    assert not os.path.exists(os.path.join(installer.mods_dir, LOCK_NAME))


def test_verify_and_repair(installer, modrinth):
    a = modrinth.add("moda", "1.0.0", data=b"A1")
    b = modrinth.add("modb", "1.0.0", data=b"B1")
    installer.sync(a, b)
    os.remove(os.path.join(installer.mods_dir, "modrinth-moda-moda-1.0.0.jar"))
    with open(os.path.join(installer.mods_dir, "modrinth-modb-modb-1.0.0.jar"), "wb") as f:
        f.write(b"garbage")
    lockfile = installer.lockfile()

    report = asyncio.run(installer.applier.verify(lockfile))
    assert [e.reference for e in report.missing] == [a.reference]
    assert [e.reference for e in report.corrupt] == [b.reference]

    repaired = asyncio.run(installer.applier.repair(lockfile))
    assert repaired.ok
    assert len(repaired.repaired) == 2
    assert asyncio.run(installer.applier.verify(lockfile)).ok


def test_vanished_blob_fails_without_touching_the_directory(installer, modrinth, cache):
    a = modrinth.add("moda", "1.0.0", data=b"A1")

    async def main():
        lockfile = await read_lockfile(installer.lockfile_path)
        result = ResolutionResult(LOADER, GAME_VERSION, {a.reference: a})
        plan = installer.planner.plan(result, lockfile)
        artifacts = await cache.obtain_many(plan.to_fetch())
        os.remove(artifacts[a.reference].path)
        await installer.applier.apply(plan, lockfile, artifacts)

    with pytest.raises(InstallFailedError) as exc:
        asyncio.run(main())

    assert exc.value.code == "E401"
    assert installer.jars() == []
    assert not os.path.exists(installer.lockfile_path)
    assert not os.path.exists(os.path.join(installer.mods_dir, STAGING_NAME))
    assert not os.path.exists(os.path.join(installer.mods_dir, JOURNAL_NAME))


def test_journal_write_failure_is_reported(installer, modrinth, monkeypatch):
    a1 = modrinth.add("moda", "1.0.0", data=b"A1")
    installer.sync(a1)
    before = {name: data for name, (data, _) in snapshot(installer.mods_dir).items()}
    a2 = modrinth.add("moda", "2.0.0", data=b"A2")

    def failing_journal(self, txid, target, ops):
        raise OSError("no space left on device")

    monkeypatch.setattr(applier_module.InstallApplier, "_write_journal", failing_journal)
    with pytest.raises(InstallFailedError):
        installer.sync(a2)
    monkeypatch.undo()

    assert {name: data for name, (data, _) in snapshot(installer.mods_dir).items()} == before
    assert installer.lockfile().get(a1.reference).version == "1.0.0"


def test_crash_during_repair_only_commit_completes_forward(installer, modrinth, monkeypatch):
    a = modrinth.add("moda", "1.0.0", data=b"A1")
    installer.sync(a)
    target = os.path.join(installer.mods_dir, "modrinth-moda-moda-1.0.0.jar")
    os.remove(target)
    real_replace = os.replace

    def crashing_replace(src, dst):
        if str(dst).endswith("modrinth-moda-moda-1.0.0.jar"):
            raise SimulatedCrash()
        return real_replace(src, dst)

    monkeypatch.setattr(applier_module.os, "replace", crashing_replace)
    with pytest.raises(SimulatedCrash):
        installer.sync(a, broken={a.reference})
    monkeypatch.undo()

    assert not os.path.exists(target)

    outcome = asyncio.run(installer.applier.recover())

    assert outcome == "forward"
    with open(target, "rb") as f:
        assert f.read() == b"A1"
    assert asyncio.run(installer.applier.verify(installer.lockfile())).ok
    assert sorted(os.listdir(installer.mods_dir)) == installer.jars()


def test_recover_removes_staging_left_without_journal(installer):
    stale = os.path.join(installer.mods_dir, STAGING_NAME, "abc", "new")
    os.makedirs(stale)
    with open(os.path.join(stale, "x.jar"), "wb") as f:
        f.write(b"partial")

    assert asyncio.run(installer.applier.recover()) is None

    assert not os.path.exists(os.path.join(installer.mods_dir, STAGING_NAME))
    assert not os.path.exists(os.path.join(installer.mods_dir, LOCK_NAME))


def test_disabled_mod_is_parked_and_restored(installer, modrinth):
    a = modrinth.add("moda", "1.0.0", data=b"A1")
    b = modrinth.add("modb", "1.0.0", data=b"B1")
    installer.sync(a, b)

    installer.sync(a, disabled={b.reference})

    assert installer.jars() == ["modrinth-moda-moda-1.0.0.jar"]
    parked = os.path.join(installer.mods_dir, "modrinth-modb-modb-1.0.0.jar" + DISABLED_SUFFIX)
    with open(parked, "rb") as f:
        assert f.read() == b"B1"
    assert b.reference not in installer.lockfile()

    installer.sync(a, b)

    assert installer.jars() == ["modrinth-moda-moda-1.0.0.jar", "modrinth-modb-modb-1.0.0.jar"]
    assert not os.path.exists(parked)


def test_removed_mod_that_is_not_disabled_is_deleted(installer, modrinth):
    a = modrinth.add("moda", "1.0.0")
    b = modrinth.add("modb", "1.0.0")
    installer.sync(a, b)

    installer.sync(a)

    assert sorted(os.listdir(installer.mods_dir)) == ["modrinth-moda-moda-1.0.0.jar"]


def test_failed_disable_is_rolled_back(installer, modrinth, monkeypatch):
    a1 = modrinth.add("moda", "1.0.0", data=b"A1")
    b = modrinth.add("modb", "1.0.0", data=b"B1")
    installer.sync(a1, b)
    before = {name: data for name, (data, _) in snapshot(installer.mods_dir).items()}
    a2 = modrinth.add("moda", "2.0.0", data=b"A2")
    real_replace = os.replace

    def failing_replace(src, dst):
        if str(dst).endswith("modrinth-moda-moda-2.0.0.jar"):
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(applier_module.os, "replace", failing_replace)
    with pytest.raises(InstallFailedError):
        installer.sync(a2, disabled={b.reference})
    monkeypatch.undo()

    assert {name: data for name, (data, _) in snapshot(installer.mods_dir).items()} == before
