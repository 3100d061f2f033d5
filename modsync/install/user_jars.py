"""
本地模组

user 目录中的 .jar 文件与解析出的模组一同安装（Quilt 服务器除外）。
每个文件以 local:<文件名> 为引用，内容哈希即版本，文件变化时按更新处理。
"""

import os
from typing import List

from loguru import logger

from modsync.download import Artifact, FileVerifier
from modsync.models import Checksum, ModLoader, ModReference, ModVersion, Platform

USER_JAR_ALGORITHM = "sha1"


def user_jars_enabled(loader: ModLoader) -> bool:
    """Quilt 服务器不安装 user 目录中的本地模组"""
    return loader != ModLoader.QUILT


async def scan_user_jars(directory: str) -> List[ModVersion]:
    """
    扫描本地模组目录

    Args:
        directory: user 目录，不存在时视为空

    Returns:
        按文件名排序的本地模组版本
    """
    if not os.path.isdir(directory):
        return []

    versions = []
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if not os.path.isfile(path) or not name.lower().endswith(".jar"):
            continue
        digest = await FileVerifier.calc_hash(path, USER_JAR_ALGORITHM)
        if digest is None:
            logger.warning(f"[本地] 无法读取 {path}，已跳过")
            continue
        versions.append(
            ModVersion(
                reference=ModReference(Platform.LOCAL, name),
                version=digest[:12],
                loaders=frozenset(ModLoader),
                game_versions=frozenset(),
                artifact_url=os.path.abspath(path),
                file_name=name,
                checksum=Checksum(USER_JAR_ALGORITHM, digest),
                file_id=digest,
                size=os.path.getsize(path),
            )
        )
    logger.debug(f"[本地] {directory} 中有 {len(versions)} 个本地模组")
    return versions


def local_artifact(version: ModVersion) -> Artifact:
    """本地模组直接以源文件作为制品，暂存时仍会校验哈希"""
    return Artifact(version=version, checksum=version.checksum, path=version.artifact_url)
