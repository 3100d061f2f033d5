"""
解析请求与解析结果模型
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, Mapping, Optional, Tuple

from modsync.models.api import ModReference, ModVersion
from modsync.models.config import ModLoader


@dataclass(frozen=True)
class DesiredMod:
    """期望安装的模组（可选版本约束）"""

    reference: ModReference
    constraint: Optional[str] = None


@dataclass(frozen=True)
class ResolutionRequest:
    """一次解析-安装操作的输入"""

    loader: ModLoader
    game_version: str
    desired: Tuple[DesiredMod, ...] = ()
    extra_loaders: FrozenSet[ModLoader] = frozenset()

    def __post_init__(self):
        seen = set()
        for mod in self.desired:
            if mod.reference in seen:
                raise ValueError(f"期望集合中存在重复引用: {mod.reference}")
            seen.add(mod.reference)


class ResolutionResult(Mapping):
    """
    解析结果：引用到唯一选中版本的映射。

    迭代顺序按引用排序，保证相同输入得到逐字节相同的序列化结果。
    """

    def __init__(
        self,
        loader: ModLoader,
        game_version: str,
        selections: Dict[ModReference, ModVersion],
    ):
        self.loader = loader
        self.game_version = game_version
        self._selections = {ref: selections[ref] for ref in sorted(selections)}

    def __getitem__(self, ref: ModReference) -> ModVersion:
        return self._selections[ref]

    def __iter__(self) -> Iterator[ModReference]:
        return iter(self._selections)

    def __len__(self) -> int:
        return len(self._selections)

    def to_dict(self) -> dict:
        return {
            "loader": self.loader.value,
            "game_version": self.game_version,
            "mods": [version.to_dict() for version in self._selections.values()],
        }

    def dumps(self) -> str:
        """确定性的 JSON 序列化"""
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False)

    def fingerprint(self) -> str:
        return hashlib.sha256(self.dumps().encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        mods = ", ".join(str(version) for version in self._selections.values())
        return f"ResolutionResult({self.loader.value} {self.game_version}: {mods})"
