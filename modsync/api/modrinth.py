"""
Modrinth API 客户端
"""

from typing import Dict, List, Optional

from loguru import logger

from modsync.api.base import PlatformClient, normalize_timestamp
from modsync.models import (
    Checksum,
    Dependency,
    ModLoader,
    ModReference,
    ModVersion,
    Platform,
    Relation,
)

MODRINTH_BASE_URL = "https://api.modrinth.com/v2"

_RELATIONS = {
    "required": Relation.REQUIRED,
    "optional": Relation.OPTIONAL,
    "incompatible": Relation.INCOMPATIBLE,
}


def _get_primary_file(version: dict) -> Optional[dict]:
    """获取主文件信息"""
    files = version.get("files", [])
    if not files:
        return None

    # 优先选择 primary 文件
    for file in files:
        if file.get("primary", False):
            return file

    return files[0]


def _parse_loaders(names: List[str]) -> frozenset:
    loaders = set()
    for name in names:
        try:
            loaders.add(ModLoader(name.lower()))
        except ValueError:
            continue
    return frozenset(loaders)


def version_from_modrinth(ref: ModReference, data: dict) -> Optional[ModVersion]:
    """
    将 Modrinth API 返回的版本信息转换为 ModVersion 对象。

    没有文件的版本无法安装，返回 None。
    """
    primary = _get_primary_file(data)
    if primary is None:
        return None

    hashes = primary.get("hashes") or {}
    checksum = None
    if hashes.get("sha1"):
        checksum = Checksum("sha1", hashes["sha1"])
    elif hashes.get("sha512"):
        checksum = Checksum("sha512", hashes["sha512"])

    dependencies = []
    for dep in data.get("dependencies", []):
        relation = _RELATIONS.get(dep.get("dependency_type", "required"))
        if relation is None:
            # embedded 依赖已打包在制品中
            continue
        project_id = dep.get("project_id")
        if not project_id:
            logger.debug(f"[平台] {ref} 的依赖缺少 project_id，已忽略: {dep}")
            continue
        dependencies.append(
            Dependency(
                reference=ModReference(Platform.MODRINTH, project_id),
                constraint=dep.get("version_id") or "*",
                relation=relation,
            )
        )

    return ModVersion(
        reference=ref,
        version=data.get("version_number", ""),
        file_id=data.get("id"),
        loaders=_parse_loaders(data.get("loaders", [])),
        game_versions=frozenset(data.get("game_versions", [])),
        artifact_url=primary["url"],
        file_name=primary["filename"],
        checksum=checksum,
        dependencies=tuple(dependencies),
        published=normalize_timestamp(data.get("date_published")),
        size=primary.get("size", 0),
    )


class ModrinthClient(PlatformClient):
    """Modrinth API 客户端"""

    platform = Platform.MODRINTH
    base_url = MODRINTH_BASE_URL

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._canonical: Dict[str, ModReference] = {}

    async def canonical_reference(self, ref: ModReference) -> ModReference:
        """
        slug 与项目 ID 都能访问同一个项目，依赖只用项目 ID 引用。
        查询项目信息得到 ID，避免同一模组以两个引用出现在结果中。
        """
        cached = self._canonical.get(ref.project_id)
        if cached is not None:
            return cached
        data = await self.with_retry(
            lambda: self._get_json(f"{self.base_url}/project/{ref.project_id}", ref=ref),
            f"查询 {ref} 的项目 ID",
        )
        canonical = ModReference(Platform.MODRINTH, str(data.get("id") or ref.project_id))
        if canonical != ref:
            logger.debug(f"[平台] {ref} 即 {canonical}")
        self._canonical[ref.project_id] = canonical
        self._canonical[canonical.project_id] = canonical
        return canonical

    async def _fetch_versions(self, ref: ModReference) -> List[ModVersion]:
        response = await self._get_json(
            f"{self.base_url}/project/{ref.project_id}/version", ref=ref
        )
        versions = []
        for item in response or []:
            version = version_from_modrinth(ref, item)
            if version is not None:
                versions.append(version)
        return versions
