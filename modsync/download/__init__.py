"""
ModSync 下载层

包含内容寻址的制品缓存与文件校验。
"""

from modsync.download.cache import Artifact, ArtifactCache, CacheEntry, CacheStats
from modsync.download.verifier import FileVerifier

__all__ = [
    "Artifact",
    "ArtifactCache",
    "CacheEntry",
    "CacheStats",
    "FileVerifier",
]
