"""Local jars from the user directory are installed next to resolved mods."""

import asyncio
import hashlib
import os

from modsync.install import PlanAction, scan_user_jars, user_jars_enabled
from modsync.models import ModLoader, Platform
from modsync.orchestrator import ModSyncOrchestrator

from conftest import GAME_VERSION, make_config


def run(config, platforms, action):
    async def main():
        async with ModSyncOrchestrator(config, platforms=platforms) as orchestrator:
            return await action(orchestrator)

    return asyncio.run(main())


def put(directory, name, data):
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, name), "wb") as f:
        f.write(data)


def mods(config):
    return sorted(
        name for name in os.listdir(config.server.mods_dir) if name.endswith(".jar")
    )


def test_scan_user_jars(tmp_path):
    directory = str(tmp_path / "user")
    put(directory, "b.jar", b"B")
    put(directory, "a.JAR", b"A")
    put(directory, "notes.txt", b"ignored")
    os.makedirs(os.path.join(directory, "nested.jar"))

    versions = asyncio.run(scan_user_jars(directory))

    assert [v.reference.project_id for v in versions] == ["a.JAR", "b.jar"]
    first = versions[0]
    assert first.reference.platform == Platform.LOCAL
    assert first.checksum.value == hashlib.sha1(b"A").hexdigest()
    assert first.version == first.checksum.value[:12]
    assert first.loaders == frozenset(ModLoader)


def test_missing_user_directory_is_empty(tmp_path):
    assert asyncio.run(scan_user_jars(str(tmp_path / "absent"))) == []


def test_quilt_skips_user_jars():
    assert not user_jars_enabled(ModLoader.QUILT)
    assert user_jars_enabled(ModLoader.FABRIC)


def test_user_jars_follow_the_directory(tmp_path, platforms, modrinth):
    modrinth.add("moda", "1.0.0")
    config = make_config(tmp_path, ["modrinth:moda"])
    put(config.server.user_dir, "extra.jar", b"v1")

    plan = run(config, platforms, lambda o: o.sync())

    assert {str(s.reference): s.action for s in plan.steps} == {
        "local:extra.jar": PlanAction.ADD,
        "modrinth:moda": PlanAction.ADD,
    }
    assert mods(config) == ["local-extra.jar", "modrinth-moda-moda-1.0.0.jar"]
    with open(os.path.join(config.server.mods_dir, "local-extra.jar"), "rb") as f:
        assert f.read() == b"v1"
    assert sum(modrinth.fetch_calls.values()) == 1

    # new content in the user directory is an update
    put(config.server.user_dir, "extra.jar", b"v2")
    plan = run(config, platforms, lambda o: o.sync())
    assert {str(s.reference): s.action for s in plan.steps}["local:extra.jar"] == PlanAction.UPDATE
    with open(os.path.join(config.server.mods_dir, "local-extra.jar"), "rb") as f:
        assert f.read() == b"v2"

    os.remove(os.path.join(config.server.user_dir, "extra.jar"))
    plan = run(config, platforms, lambda o: o.sync())
    assert {str(s.reference): s.action for s in plan.steps}["local:extra.jar"] == PlanAction.REMOVE
    assert mods(config) == ["modrinth-moda-moda-1.0.0.jar"]


def test_user_jars_are_ignored_on_quilt(tmp_path, platforms, modrinth):
    modrinth.add("moda", "1.0.0", loaders=["quilt"])
    config = make_config(
        tmp_path,
        ["modrinth:moda"],
        server={"loader": "quilt", "game_version": GAME_VERSION},
    )
    put(config.server.user_dir, "extra.jar", b"v1")

    run(config, platforms, lambda o: o.sync())

    assert mods(config) == ["modrinth-moda-moda-1.0.0.jar"]


def test_local_entry_is_repaired_from_user_directory(tmp_path, platforms):
    config = make_config(tmp_path, [])
    put(config.server.user_dir, "extra.jar", b"v1")
    run(config, platforms, lambda o: o.sync())
    target = os.path.join(config.server.mods_dir, "local-extra.jar")
    with open(target, "wb") as f:
        f.write(b"garbage")

    report = run(config, platforms, lambda o: o.verify(repair=True))

    assert report.ok
    assert [entry.file_name for entry in report.repaired] == ["local-extra.jar"]
    with open(target, "rb") as f:
        assert f.read() == b"v1"
