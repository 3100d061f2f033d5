"""
CurseForge API 客户端

文件列表按页获取；gameVersions 字段同时包含游戏版本与加载器名称，需要拆分。
"""

import re
from typing import Dict, List, Optional

from loguru import logger

from modsync.api.base import PlatformClient, normalize_timestamp
from modsync.exceptions import APIError
from modsync.models import (
    Checksum,
    Dependency,
    ModLoader,
    ModReference,
    ModVersion,
    Platform,
    Relation,
)

CURSEFORGE_BASE_URL = "https://api.curseforge.com"
PAGE_SIZE = 50

# relationType: 1 内嵌库, 2 可选, 3 必需, 4 工具, 5 不兼容, 6 包含
_RELATIONS = {
    2: Relation.OPTIONAL,
    3: Relation.REQUIRED,
    5: Relation.INCOMPATIBLE,
}

# hashes.algo: 1 SHA1, 2 MD5
_HASH_ALGOS = {1: "sha1", 2: "md5"}

_GAME_VERSION = re.compile(r"^\d+\.\d+(\.\d+)?(-[\w.]+)?$")


def _split_game_versions(values: List[str]):
    loaders = set()
    game_versions = set()
    for value in values:
        try:
            loaders.add(ModLoader(value.lower()))
            continue
        except ValueError:
            pass
        if _GAME_VERSION.match(value):
            game_versions.add(value)
    return frozenset(loaders), frozenset(game_versions)


def _pick_checksum(hashes: List[dict]) -> Optional[Checksum]:
    by_algo: Dict[str, str] = {}
    for item in hashes:
        algo = _HASH_ALGOS.get(item.get("algo"))
        if algo and item.get("value"):
            by_algo[algo] = item["value"]
    for algo in ("sha1", "md5"):
        if algo in by_algo:
            return Checksum(algo, by_algo[algo])
    return None


def version_from_curseforge(ref: ModReference, data: dict) -> Optional[ModVersion]:
    """将 CurseForge 文件信息转换为 ModVersion；禁止第三方下载的文件返回 None"""
    url = data.get("downloadUrl")
    if not url:
        logger.debug(f"[平台] {ref} 文件 {data.get('id')} 不允许第三方下载，已忽略")
        return None

    loaders, game_versions = _split_game_versions(data.get("gameVersions", []))

    dependencies = []
    for dep in data.get("dependencies", []):
        relation = _RELATIONS.get(dep.get("relationType"))
        if relation is None or dep.get("modId") is None:
            continue
        dependencies.append(
            Dependency(
                reference=ModReference(Platform.CURSEFORGE, str(dep["modId"])),
                relation=relation,
            )
        )

    return ModVersion(
        reference=ref,
        version=data.get("displayName") or data.get("fileName", ""),
        file_id=str(data["id"]),
        loaders=loaders,
        game_versions=game_versions,
        artifact_url=url,
        file_name=data["fileName"],
        checksum=_pick_checksum(data.get("hashes", [])),
        dependencies=tuple(dependencies),
        published=normalize_timestamp(data.get("fileDate")),
        size=data.get("fileLength", 0),
    )


class CurseForgeClient(PlatformClient):
    """CurseForge API 客户端"""

    platform = Platform.CURSEFORGE
    base_url = CURSEFORGE_BASE_URL

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Accept"] = "application/json"
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _fetch_versions(self, ref: ModReference) -> List[ModVersion]:
        if not self.api_key:
            raise APIError(
                "访问 CurseForge 需要 API key (network.curseforge_api_key 或 CURSEFORGE_API_KEY)",
                context={"reference": str(ref)},
            )

        versions = []
        index = 0
        while True:
            response = await self._get_json(
                f"{self.base_url}/v1/mods/{ref.project_id}/files",
                params={"index": index, "pageSize": PAGE_SIZE},
                ref=ref,
            )
            files = response.get("data", [])
            for item in files:
                version = version_from_curseforge(ref, item)
                if version is not None:
                    versions.append(version)

            pagination = response.get("pagination", {})
            index += len(files)
            if not files or index >= pagination.get("totalCount", 0):
                break
        return versions
