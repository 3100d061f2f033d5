"""
ModSync 服务层

包含业务逻辑服务：兼容性过滤、版本约束、依赖解析。
"""

from modsync.services.version_matcher import (
    VersionConstraint,
    VersionMatcher,
    compare_versions,
)
from modsync.services.dependency_resolver import Decision, DependencyResolver

__all__ = [
    "VersionConstraint",
    "VersionMatcher",
    "compare_versions",
    "Decision",
    "DependencyResolver",
]
