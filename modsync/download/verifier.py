"""
文件校验器

实现多算法哈希计算、文件存在性检查、文件完整性验证。
"""

import hashlib
import os
from typing import Optional

import aiofiles

from modsync.models import Checksum


class FileVerifier:
    """文件校验器"""

    @staticmethod
    async def calc_hash(file_path: str, algorithm: str = "sha1") -> Optional[str]:
        """
        计算文件的哈希值

        Args:
            file_path: 文件路径
            algorithm: hashlib 支持的算法名

        Returns:
            十六进制哈希值或 None（如果文件不存在）
        """
        if not os.path.exists(file_path):
            return None

        digest = hashlib.new(algorithm)
        try:
            async with aiofiles.open(file_path, "rb") as f:
                while True:
                    data = await f.read(65536)
                    if not data:
                        break
                    digest.update(data)
            return digest.hexdigest()
        except (IOError, OSError):
            return None

    @staticmethod
    async def verify(file_path: str, expected: Optional[Checksum]) -> bool:
        """
        校验文件的哈希是否匹配

        Returns:
            是否匹配（如果没有预期值则只检查存在性）
        """
        if expected is None:
            return FileVerifier.exists(file_path)

        current = await FileVerifier.calc_hash(file_path, expected.algorithm)
        if current is None:
            return False

        return current == expected.value

    @staticmethod
    def exists(file_path: str) -> bool:
        """检查文件是否存在"""
        return os.path.isfile(file_path)

