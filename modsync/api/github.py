"""
GitHub Releases 客户端

每个非草稿 release 中的每个 .jar 资源都视为一个版本。
加载器与游戏版本从资源名（以及 release 名称/标签）推断。
"""

import re
from typing import Dict, List, Optional

from loguru import logger

from modsync.api.base import PlatformClient, normalize_timestamp
from modsync.models import Checksum, ModLoader, ModReference, ModVersion, Platform

GITHUB_BASE_URL = "https://api.github.com"

# 1.x 旧式版本号，以及 26.1 起以年份开头的版本号
_GAME_VERSION = re.compile(r"(?<![\d.])(?:1|2[5-9])\.\d{1,2}(?:\.\d{1,2})?(?!\d|\.\d)")
PER_PAGE = 100
MAX_PAGES = 10
_SKIPPED_SUFFIXES = ("-sources.jar", "-dev.jar", "-javadoc.jar")


def infer_loaders(name: str) -> frozenset:
    tokens = set(re.split(r"[^a-z0-9]+", name.lower()))
    return frozenset(loader for loader in ModLoader if loader.value in tokens)


def infer_game_versions(*texts: Optional[str]) -> frozenset:
    versions = set()
    for text in texts:
        if text:
            versions.update(_GAME_VERSION.findall(text))
    return frozenset(versions)


def versions_from_release(ref: ModReference, release: dict) -> List[ModVersion]:
    """将一个 release 转换为若干 ModVersion"""
    if release.get("draft"):
        return []

    versions = []
    for asset in release.get("assets", []):
        name = asset.get("name", "")
        lowered = name.lower()
        if not lowered.endswith(".jar") or lowered.endswith(_SKIPPED_SUFFIXES):
            continue

        checksum = None
        digest = asset.get("digest")
        if digest:
            checksum = Checksum.parse(digest)

        versions.append(
            ModVersion(
                reference=ref,
                version=release.get("tag_name", ""),
                file_id=str(asset["id"]),
                loaders=infer_loaders(name),
                game_versions=infer_game_versions(
                    name, release.get("name"), release.get("tag_name")
                ),
                artifact_url=asset["browser_download_url"],
                file_name=name,
                checksum=checksum,
                published=normalize_timestamp(
                    release.get("published_at") or release.get("created_at")
                ),
                size=asset.get("size", 0),
            )
        )
    return versions


class GitHubClient(PlatformClient):
    """GitHub Releases 客户端，project_id 形如 owner/repo"""

    platform = Platform.GITHUB
    base_url = GITHUB_BASE_URL

    def __init__(self, token: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.token = token

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Accept"] = "application/vnd.github+json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _fetch_versions(self, ref: ModReference) -> List[ModVersion]:
        versions = []
        for page in range(1, MAX_PAGES + 1):
            releases = await self._get_json(
                f"{self.base_url}/repos/{ref.project_id}/releases",
                params={"per_page": PER_PAGE, "page": page},
                ref=ref,
            ) or []
            for release in releases:
                versions.extend(versions_from_release(ref, release))
            if len(releases) < PER_PAGE:
                break
        else:
            logger.debug(f"[平台] {ref} 的 release 超过 {MAX_PAGES} 页，只读取最新的部分")
        return versions
