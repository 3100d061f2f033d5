"""
平台分发

按 ModReference 的平台把调用分派给对应客户端；解析器与缓存只依赖此接口。
"""

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from modsync.api.base import ArtifactStream, PlatformClient
from modsync.api.curseforge import CurseForgeClient
from modsync.api.github import GitHubClient
from modsync.api.modrinth import ModrinthClient
from modsync.exceptions import NoCompatibleVersionError
from modsync.models import (
    Checksum,
    ModLoader,
    ModReference,
    ModVersion,
    NetworkConfig,
    Platform,
)
from modsync.services.version_matcher import VersionMatcher

T = TypeVar("T")


class PlatformSet:
    """三个平台客户端的统一入口"""

    def __init__(self, clients: Iterable[PlatformClient]):
        self._clients: Dict[Platform, PlatformClient] = {
            client.platform: client for client in clients
        }
        self.matcher = VersionMatcher()

    @classmethod
    def from_config(cls, network: NetworkConfig) -> "PlatformSet":
        """根据网络配置创建三个平台客户端，共享同一个并发上限"""
        semaphore = asyncio.Semaphore(network.max_concurrent)
        common = dict(
            max_retries=network.max_retries,
            retry_delay=network.retry_delay,
            request_timeout=network.request_timeout,
            semaphore=semaphore,
        )
        return cls(
            [
                ModrinthClient(**common),
                CurseForgeClient(api_key=network.curseforge_api_key, **common),
                GitHubClient(token=network.github_token, **common),
            ]
        )

    def client_for(self, ref: ModReference) -> PlatformClient:
        try:
            return self._clients[ref.platform]
        except KeyError:
            raise ValueError(f"没有可用于平台 {ref.platform.value} 的客户端")

    async def list_versions(self, ref: ModReference) -> List[ModVersion]:
        return await self.client_for(ref).list_versions(ref)

    async def canonical_reference(self, ref: ModReference) -> ModReference:
        return await self.client_for(ref).canonical_reference(ref)

    def declared_checksum(self, version: ModVersion) -> Checksum:
        return self.client_for(version.reference).declared_checksum(version)

    async def fetch_artifact(self, version: ModVersion) -> ArtifactStream:
        return await self.client_for(version.reference).fetch_artifact(version)

    async def with_retry(
        self,
        version: ModVersion,
        operation: Callable[[], Awaitable[T]],
        description: str,
    ) -> T:
        return await self.client_for(version.reference).with_retry(operation, description)

    async def resolve_latest(
        self,
        ref: ModReference,
        loader: ModLoader,
        game_version: str,
        constraint: Optional[str] = None,
        extra_loaders: Iterable[ModLoader] = (),
    ) -> ModVersion:
        """
        获取满足约束的最新兼容版本

        Raises:
            NoCompatibleVersionError: 没有兼容版本
        """
        versions = await self.list_versions(ref)
        newest = self.matcher.newest(versions, loader, game_version, constraint, extra_loaders)
        if newest is None:
            raise NoCompatibleVersionError(
                f"{ref} 没有兼容 {loader.value} {game_version} 的版本",
                context={"reference": str(ref), "constraint": constraint},
            )
        return newest

    async def close(self):
        for client in self._clients.values():
            await client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
