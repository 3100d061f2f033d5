"""
API 数据模型

定义与平台无关的模组引用、版本、依赖与校验值。
所有模型在获取后都是不可变的值对象。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from modsync.models.config import ModLoader, Platform


@dataclass(frozen=True, order=True)
class ModReference:
    """
    模组引用（平台 + 项目标识），与具体版本无关。
    """

    platform: Platform = field(compare=False)
    project_id: str = field(compare=False)
    sort_key: Tuple[str, str] = field(init=False, repr=False, compare=True)

    def __post_init__(self):
        object.__setattr__(self, "sort_key", (self.platform.value, self.project_id))

    @classmethod
    def parse(cls, text: str) -> "ModReference":
        """解析 "platform:project" 形式的引用；缺省平台为 Modrinth"""
        platform, sep, project = text.strip().partition(":")
        if not sep:
            return cls(Platform.MODRINTH, platform)
        return cls(Platform.parse(platform), project)

    def __str__(self) -> str:
        return f"{self.platform.value}:{self.project_id}"


class Relation(Enum):
    """依赖关系类型"""

    REQUIRED = "required"
    OPTIONAL = "optional"
    INCOMPATIBLE = "incompatible"


@dataclass(frozen=True)
class Dependency:
    """依赖声明：目标引用 + 版本约束 + 关系"""

    reference: ModReference
    constraint: str = "*"
    relation: Relation = Relation.REQUIRED

    def to_dict(self) -> Dict[str, str]:
        return {
            "reference": str(self.reference),
            "constraint": self.constraint,
            "relation": self.relation.value,
        }


@dataclass(frozen=True)
class Checksum:
    """制品校验值"""

    algorithm: str
    value: str

    def __post_init__(self):
        object.__setattr__(self, "algorithm", self.algorithm.lower())
        object.__setattr__(self, "value", self.value.lower())

    @classmethod
    def parse(cls, text: str) -> "Checksum":
        algorithm, sep, value = text.partition(":")
        if not sep or not value:
            raise ValueError(f"无效的校验值: {text!r}")
        return cls(algorithm, value)

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


@dataclass(frozen=True)
class ModVersion:
    """
    模组版本信息。

    version 为人类可读的版本号；file_id 为平台内部的版本/文件标识。
    published 为平台报告的发布时间（ISO 8601），用于“最新优先”排序。
    """

    reference: ModReference
    version: str
    loaders: FrozenSet[ModLoader]
    game_versions: FrozenSet[str]
    artifact_url: str
    file_name: str
    checksum: Optional[Checksum] = None
    dependencies: Tuple[Dependency, ...] = ()
    published: str = ""
    file_id: Optional[str] = None
    size: int = 0

    def supports(self, loader: ModLoader, game_version: str) -> bool:
        """是否同时兼容目标加载器与游戏版本"""
        return loader in self.loaders and game_version in self.game_versions

    def supports_any(self, loaders: Iterable[ModLoader], game_version: str) -> bool:
        return bool(self.loaders.intersection(loaders)) and game_version in self.game_versions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": str(self.reference),
            "version": self.version,
            "file_id": self.file_id,
            "loaders": sorted(loader.value for loader in self.loaders),
            "game_versions": sorted(self.game_versions),
            "artifact_url": self.artifact_url,
            "file_name": self.file_name,
            "checksum": str(self.checksum) if self.checksum else None,
            "dependencies": [dep.to_dict() for dep in self.dependencies],
            "published": self.published,
        }

    def __str__(self) -> str:
        return f"{self.reference}@{self.version}"
