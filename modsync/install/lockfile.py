"""
锁文件读写

JSON 格式，键有序、缩进固定，保证相同内容逐字节一致。写入采用临时文件 + 原子替换。
"""

import json
import os

import aiofiles
from loguru import logger

from modsync.exceptions import LockfileError
from modsync.models import Lockfile
from modsync.models.lock import LOCKFILE_FORMAT_VERSION


def parse_lockfile(text: str, path: str = "<memory>") -> Lockfile:
    """解析锁文件内容"""
    if not text.strip():
        return Lockfile()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise LockfileError(f"锁文件不是合法的 JSON: {e}", context={"path": path})

    version = data.get("version")
    if version != LOCKFILE_FORMAT_VERSION:
        raise LockfileError(
            f"不支持的锁文件版本: {version}",
            context={"path": path, "expected": LOCKFILE_FORMAT_VERSION},
        )
    try:
        return Lockfile.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise LockfileError(f"锁文件条目格式错误: {e}", context={"path": path})


async def read_lockfile(path: str) -> Lockfile:
    """读取锁文件；文件不存在时返回空锁文件"""
    if not os.path.exists(path):
        logger.debug(f"[锁文件] {path} 不存在，视为空")
        return Lockfile()
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return parse_lockfile(await f.read(), path)


def read_lockfile_text(path: str) -> str:
    if not os.path.exists(path):
        return ""
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def write_lockfile(path: str, lockfile: Lockfile) -> None:
    """
    原子写入锁文件

    同步实现：安装提交阶段不含 await，一旦开始就不会被取消打断。
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(lockfile.dumps())
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    logger.debug(f"[锁文件] 已写入 {path} ({len(lockfile)} 个条目)")
