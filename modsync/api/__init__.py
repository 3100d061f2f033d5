"""
ModSync 平台层

包含平台客户端接口与 Modrinth、CurseForge、GitHub 三个实现。
"""

from modsync.api.base import ArtifactStream, PlatformClient
from modsync.api.modrinth import ModrinthClient
from modsync.api.curseforge import CurseForgeClient
from modsync.api.github import GitHubClient
from modsync.api.registry import PlatformSet

__all__ = [
    "ArtifactStream",
    "PlatformClient",
    "ModrinthClient",
    "CurseForgeClient",
    "GitHubClient",
    "PlatformSet",
]
