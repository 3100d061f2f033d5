"""
版本匹配服务

实现兼容性过滤（加载器 + 游戏版本）、“最新优先”排序与版本约束匹配。
"""

from functools import cmp_to_key
from typing import Iterable, List, Optional

import semantic_version

from modsync.models import ModLoader, ModVersion

ANY = "*"


def _parse_semver(text: str) -> Optional[semantic_version.Version]:
    """
    解析版本号；"1.3"、"v2.1"、"1.20.1.5" 等不完整写法按 coerce 补全
    """
    try:
        return semantic_version.Version(text)
    except ValueError:
        pass
    if text[:1] in ("v", "V") and text[1:2].isdigit():
        text = text[1:]
    try:
        return semantic_version.Version.coerce(text)
    except ValueError:
        return None


def compare_versions(left: str, right: str) -> int:
    """
    比较两个版本号

    两者都能按语义化版本解析（含补全后的 "1.3" 这类写法）时按语义比较，
    否则按字面字符串比较。

    Returns:
        -1 / 0 / 1
    """
    left_semver = _parse_semver(left)
    right_semver = _parse_semver(right)
    if left_semver is not None and right_semver is not None:
        if left_semver == right_semver:
            # 构建元数据不参与语义比较
            return (left > right) - (left < right)
        return -1 if left_semver < right_semver else 1
    return (left > right) - (left < right)


class VersionConstraint:
    """
    版本约束

    支持 "*"（任意）、精确版本号或平台版本 ID，以及 semantic_version 的
    SimpleSpec 语法（">=1.2"、"^2.0"、">=1.0,<2.0" 等）。
    """

    def __init__(self, raw: Optional[str] = None):
        self.raw = (raw or ANY).strip() or ANY
        self._spec: Optional[semantic_version.SimpleSpec] = None
        if self.raw != ANY:
            try:
                self._spec = semantic_version.SimpleSpec(self.raw)
            except ValueError:
                self._spec = None

    @property
    def is_any(self) -> bool:
        return self.raw == ANY

    def matches(self, version: ModVersion) -> bool:
        if self.is_any:
            return True
        if self.raw == version.version or self.raw == version.file_id:
            return True
        if self._spec is None:
            return False
        parsed = _parse_semver(version.version)
        if parsed is None:
            return False
        return self._spec.match(parsed)

    def __eq__(self, other) -> bool:
        return isinstance(other, VersionConstraint) and self.raw == other.raw

    def __hash__(self) -> int:
        return hash(self.raw)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"VersionConstraint({self.raw!r})"


def _newest_first(left: ModVersion, right: ModVersion) -> int:
    if left.published != right.published:
        return -1 if left.published > right.published else 1
    order = compare_versions(left.version, right.version)
    if order:
        return -order
    left_id, right_id = left.file_id or "", right.file_id or ""
    return (left_id < right_id) - (left_id > right_id)


class VersionMatcher:
    """版本匹配器"""

    def filter(
        self,
        versions: Iterable[ModVersion],
        loader: ModLoader,
        game_version: str,
        extra_loaders: Iterable[ModLoader] = (),
    ) -> List[ModVersion]:
        """
        过滤出兼容目标加载器与游戏版本的版本，按最新优先排序

        排序依据为平台报告的发布时间，其次是版本号比较。
        空结果是合法的，由调用方解释为“没有兼容版本”。

        Args:
            versions: 平台返回的全部版本
            loader: 目标加载器
            game_version: 目标游戏版本
            extra_loaders: 额外接受的加载器（例如 Quilt 服务器接受 Fabric 模组）

        Returns:
            最新优先的兼容版本列表
        """
        loaders = {loader, *extra_loaders}
        compatible = [v for v in versions if v.supports_any(loaders, game_version)]
        return sorted(compatible, key=cmp_to_key(_newest_first))

    def matches(self, version: ModVersion, constraint: Optional[str]) -> bool:
        """检查版本是否满足约束"""
        return VersionConstraint(constraint).matches(version)

    def newest(
        self,
        versions: Iterable[ModVersion],
        loader: ModLoader,
        game_version: str,
        constraint: Optional[str] = None,
        extra_loaders: Iterable[ModLoader] = (),
    ) -> Optional[ModVersion]:
        """返回满足约束的最新兼容版本"""
        spec = VersionConstraint(constraint)
        for version in self.filter(versions, loader, game_version, extra_loaders):
            if spec.matches(version):
                return version
        return None
