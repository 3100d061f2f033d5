"""
ModSync 数据模型包

包含配置模型、API 模型、解析模型与锁文件模型定义。
"""

from modsync.models.config import (
    ModLoader,
    Platform,
    ModEntry,
    ServerConfig,
    NetworkConfig,
    CacheConfig,
    ModSyncConfig,
    FABRIC_API,
    PRESETS,
    USER_DIR_NAME,
)
from modsync.models.api import (
    ModReference,
    Relation,
    Dependency,
    Checksum,
    ModVersion,
)
from modsync.models.resolution import (
    DesiredMod,
    ResolutionRequest,
    ResolutionResult,
)
from modsync.models.lock import LockEntry, Lockfile, install_file_name

__all__ = [
    # 配置模型
    "ModLoader",
    "Platform",
    "ModEntry",
    "ServerConfig",
    "NetworkConfig",
    "CacheConfig",
    "ModSyncConfig",
    "FABRIC_API",
    "PRESETS",
    "USER_DIR_NAME",
    # API 模型
    "ModReference",
    "Relation",
    "Dependency",
    "Checksum",
    "ModVersion",
    # 解析模型
    "DesiredMod",
    "ResolutionRequest",
    "ResolutionResult",
    # 锁文件模型
    "LockEntry",
    "Lockfile",
    "install_file_name",
]
