"""
锁文件模型

锁文件是“实际已安装了什么”的唯一事实来源。
"""

import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional

from modsync.models.api import Checksum, ModReference, ModVersion
from modsync.models.config import Platform

LOCKFILE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class LockEntry:
    """单个已安装模组的持久化记录"""

    reference: ModReference
    version: str
    checksum: Checksum
    file_name: str
    file_id: Optional[str] = None

    @property
    def platform(self) -> Platform:
        return self.reference.platform

    @classmethod
    def from_version(cls, version: ModVersion, checksum: Checksum) -> "LockEntry":
        return cls(
            reference=version.reference,
            version=version.version,
            checksum=checksum,
            file_name=install_file_name(version),
            file_id=version.file_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.reference.platform.value,
            "project": self.reference.project_id,
            "version": self.version,
            "file_id": self.file_id,
            "checksum": str(self.checksum),
            "file": self.file_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockEntry":
        return cls(
            reference=ModReference(Platform.parse(data["platform"]), str(data["project"])),
            version=str(data["version"]),
            checksum=Checksum.parse(data["checksum"]),
            file_name=str(data["file"]),
            file_id=data.get("file_id"),
        )


def install_file_name(version: ModVersion) -> str:
    """
    模组目录中的文件名，仅由锁条目即可推导。

    以平台与项目为前缀，避免不同模组的同名制品相互覆盖。
    本地 jar 的项目标识就是其文件名，只加平台前缀。
    """
    name = os.path.basename(version.file_name.replace("\\", "/"))
    if version.reference.platform == Platform.LOCAL:
        return f"{Platform.LOCAL.value}-{name}"
    project = version.reference.project_id.replace("/", "_")
    return f"{version.reference.platform.value}-{project}-{name}"


class Lockfile:
    """按引用为键的锁条目有序集合"""

    def __init__(self, entries: Iterable[LockEntry] = ()):
        self._entries: Dict[ModReference, LockEntry] = {}
        for entry in entries:
            if entry.reference in self._entries:
                raise ValueError(f"锁文件中存在重复条目: {entry.reference}")
            self._entries[entry.reference] = entry
        self._entries = {ref: self._entries[ref] for ref in sorted(self._entries)}

    def get(self, ref: ModReference) -> Optional[LockEntry]:
        return self._entries.get(ref)

    def __contains__(self, ref: ModReference) -> bool:
        return ref in self._entries

    def __iter__(self) -> Iterator[LockEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Lockfile):
            return NotImplemented
        return self._entries == other._entries

    def checksums(self) -> set:
        return {entry.checksum for entry in self}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": LOCKFILE_FORMAT_VERSION,
            "mods": [entry.to_dict() for entry in self],
        }

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n"

    def fingerprint(self) -> str:
        return hashlib.sha256(self.dumps().encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lockfile":
        return cls(LockEntry.from_dict(item) for item in data.get("mods", []))
