"""Shared fixtures: an in-memory platform so no test touches the network."""

import asyncio
import hashlib
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional

import pytest

from modsync.api import ArtifactStream, PlatformClient, PlatformSet
from modsync.download import ArtifactCache
from modsync.exceptions import APINotFoundError
from modsync.models import (
    Checksum,
    Dependency,
    ModLoader,
    ModReference,
    ModSyncConfig,
    ModVersion,
    Platform,
    Relation,
)

LOADER = ModLoader.FABRIC
GAME_VERSION = "1.20.1"


def ref(text: str) -> ModReference:
    return ModReference.parse(text)


def req(target: str, constraint: str = "*") -> Dependency:
    return Dependency(ref(target), constraint, Relation.REQUIRED)


def opt(target: str, constraint: str = "*") -> Dependency:
    return Dependency(ref(target), constraint, Relation.OPTIONAL)


def incompatible(target: str, constraint: str = "*") -> Dependency:
    return Dependency(ref(target), constraint, Relation.INCOMPATIBLE)


class FakePlatform(PlatformClient):
    """Serves versions and artifact bytes from memory and counts calls."""

    def __init__(self, platform: Platform = Platform.MODRINTH, **kwargs):
        kwargs.setdefault("retry_delay", 0)
        super().__init__(**kwargs)
        self.platform = platform
        self.versions: Dict[ModReference, List[ModVersion]] = defaultdict(list)
        self.artifacts: Dict[str, bytes] = {}
        self.list_calls: Counter = Counter()
        self.fetch_calls: Counter = Counter()
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.fetch_delay = 0.0
        self.aliases: Dict[str, str] = {}
        self._clock = 0

    def add(
        self,
        project: str,
        version: str,
        dependencies: Iterable[Dependency] = (),
        loaders: Iterable[str] = ("fabric",),
        game_versions: Iterable[str] = (GAME_VERSION,),
        data: Optional[bytes] = None,
        with_checksum: bool = True,
        published: Optional[str] = None,
    ) -> ModVersion:
        """Register a version; later additions are published later."""
        self._clock += 1
        reference = ModReference(self.platform, project)
        data = data if data is not None else f"{self.platform.value}:{project}@{version}".encode()
        url = f"https://fake.invalid/{self.platform.value}/{project}/{version}.jar"
        mod_version = ModVersion(
            reference=reference,
            version=version,
            loaders=frozenset(ModLoader.parse(loader) for loader in loaders),
            game_versions=frozenset(game_versions),
            artifact_url=url,
            file_name=f"{project.split('/')[-1]}-{version}.jar",
            checksum=Checksum("sha1", hashlib.sha1(data).hexdigest()) if with_checksum else None,
            dependencies=tuple(dependencies),
            published=published or f"2024-01-01T00:00:{self._clock:02d}.000000Z",
            file_id=f"{project}-{version}",
            size=len(data),
        )
        self.versions[reference].append(mod_version)
        self.artifacts[url] = data
        return mod_version

    def fail_next(self, key: str, *errors: Exception):
        """Queue errors for the next calls keyed by project id or artifact URL."""
        self.failures[key].extend(errors)

    def _maybe_fail(self, key: str):
        if self.failures.get(key):
            raise self.failures[key].pop(0)

    async def canonical_reference(self, reference: ModReference) -> ModReference:
        return ModReference(self.platform, self.aliases.get(reference.project_id, reference.project_id))

    async def _fetch_versions(self, reference: ModReference) -> List[ModVersion]:
        self.list_calls[reference] += 1
        await asyncio.sleep(0)
        self._maybe_fail(reference.project_id)
        if reference not in self.versions:
            raise APINotFoundError(f"{reference} 不存在", context={"reference": str(reference)})
        return list(self.versions[reference])

    async def fetch_artifact(self, version: ModVersion) -> ArtifactStream:
        self.fetch_calls[version.artifact_url] += 1
        await asyncio.sleep(self.fetch_delay)
        self._maybe_fail(version.artifact_url)
        return ArtifactStream.from_bytes(
            self.artifacts[version.artifact_url], version.checksum, chunk_size=4
        )

    async def close(self):
        pass


@pytest.fixture
def modrinth() -> FakePlatform:
    return FakePlatform(Platform.MODRINTH)


@pytest.fixture
def curseforge() -> FakePlatform:
    return FakePlatform(Platform.CURSEFORGE)


@pytest.fixture
def github() -> FakePlatform:
    return FakePlatform(Platform.GITHUB)


@pytest.fixture
def platforms(modrinth, curseforge, github) -> PlatformSet:
    return PlatformSet([modrinth, curseforge, github])


@pytest.fixture
def cache(tmp_path, platforms) -> ArtifactCache:
    return ArtifactCache(str(tmp_path / "cache"), platforms, max_workers=4)


def make_config(tmp_path, mods, **extra) -> ModSyncConfig:
    data = {
        "server": {"loader": "fabric", "game_version": GAME_VERSION},
        "mods": mods,
        "cache": {"dir": str(tmp_path / "cache")},
    }
    data.update(extra)
    return ModSyncConfig.from_dict(data, base_dir=str(tmp_path / "server"))
