"""
制品缓存

以内容校验值为键的持久化制品存储，独立于任何模组目录。

- 命中时重新计算哈希，损坏的缓存会被丢弃并重新下载。
- 同一校验值的并发请求只会触发一次网络下载。
- 平台未提供校验值时，首次下载计算 sha256 并持久化为信任记录。
"""

import asyncio
import hashlib
import json
import os
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import aiofiles
from loguru import logger

from modsync.download.verifier import FileVerifier
from modsync.exceptions import ChecksumUnavailableError, IntegrityViolationError
from modsync.models import Checksum, ModReference, ModVersion

TRUST_ALGORITHM = "sha256"


@dataclass
class CacheEntry:
    """缓存条目（仅在缓存内部使用）"""

    checksum: Checksum
    path: str
    last_access: float


@dataclass
class Artifact:
    """已校验的本地制品"""

    version: ModVersion
    checksum: Checksum
    path: str


@dataclass
class CacheStats:
    """缓存统计"""

    hits: int = 0
    fetched: int = 0
    discarded: int = 0
    bytes_downloaded: int = 0


class ArtifactCache:
    """制品缓存"""

    def __init__(self, root: str, platforms, max_workers: int = 4):
        """
        Args:
            root: 缓存根目录
            platforms: 提供 fetch_artifact / declared_checksum / with_retry 的平台入口
            max_workers: 批量获取时的并发下载数
        """
        self.root = root
        self.platforms = platforms
        self.max_workers = max_workers
        self.verifier = FileVerifier()
        self.stats = CacheStats()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._waiters: Dict[str, int] = defaultdict(int)
        self._trusted: Optional[Dict[str, str]] = None
        self._trust_lock = asyncio.Lock()

    @property
    def blobs_dir(self) -> str:
        return os.path.join(self.root, "blobs")

    @property
    def tmp_dir(self) -> str:
        return os.path.join(self.root, "tmp")

    @property
    def trust_path(self) -> str:
        return os.path.join(self.root, "trusted.json")

    def blob_path(self, checksum: Checksum) -> str:
        return os.path.join(
            self.blobs_dir, checksum.algorithm, checksum.value[:2], checksum.value
        )

    def contains(self, checksum: Checksum) -> bool:
        return self.verifier.exists(self.blob_path(checksum))

    async def obtain(self, version: ModVersion) -> Artifact:
        """
        获取已校验的本地制品

        Raises:
            IntegrityViolationError: 下载内容与声明的校验值不符
        """
        expected = await self._expected_checksum(version)
        key = str(expected) if expected else f"url:{version.artifact_url}"

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._obtain(version, expected))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug(f"[缓存] {version} 正在下载，等待已有任务")

        self._waiters[key] += 1
        try:
            artifact = await asyncio.shield(task)
        except asyncio.CancelledError:
            # 最后一个等待者取消时才中止下载
            if self._waiters[key] == 1 and not task.done():
                task.cancel()
            raise
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]

        if artifact.version != version:
            artifact = Artifact(version, artifact.checksum, artifact.path)
        return artifact

    async def obtain_many(self, versions: Iterable[ModVersion]) -> Dict[ModReference, Artifact]:
        """以有限的并发数批量获取制品"""
        queue: asyncio.Queue = asyncio.Queue()
        for version in versions:
            queue.put_nowait(version)
        if queue.empty():
            return {}

        results: Dict[ModReference, Artifact] = {}

        async def worker():
            while True:
                try:
                    version = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[version.reference] = await self.obtain(version)

        count = min(self.max_workers, queue.qsize())
        logger.info(f"[缓存] 准备 {queue.qsize()} 个制品，最大并发数: {count}")
        workers = [
            asyncio.create_task(worker(), name=f"cache-worker-{i}") for i in range(count)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return results

    async def _obtain(self, version: ModVersion, expected: Optional[Checksum]) -> Artifact:
        if expected is not None:
            path = self.blob_path(expected)
            if self.verifier.exists(path):
                if await self.verifier.verify(path, expected):
                    os.utime(path, None)
                    self.stats.hits += 1
                    logger.debug(f"[缓存] 命中 {version} ({expected})")
                    return Artifact(version, expected, path)
                logger.warning(f"[缓存] {path} 校验失败，丢弃并重新下载")
                self.stats.discarded += 1
                os.remove(path)

        algorithm = expected.algorithm if expected else TRUST_ALGORITHM
        logger.info(f"[下载] {version.file_name}")
        tmp_path, digest = await self.platforms.with_retry(
            version,
            lambda: self._download(version, algorithm),
            f"下载 {version.file_name}",
        )

        try:
            if expected is not None and digest != expected.value:
                self.stats.discarded += 1
                raise IntegrityViolationError(
                    f"{version} 的校验值不符",
                    context={
                        "reference": str(version.reference),
                        "expected": str(expected),
                        "actual": f"{algorithm}:{digest}",
                        "url": version.artifact_url,
                    },
                )

            checksum = expected or Checksum(algorithm, digest)
            if expected is None:
                await self._trust(version, checksum)

            path = self.blob_path(checksum)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        self.stats.fetched += 1
        logger.success(f"[完成] '{version.file_name}' 已缓存 ({checksum})")
        return Artifact(version, checksum, path)

    async def _download(self, version: ModVersion, algorithm: str):
        """下载到临时文件并同时计算哈希（单次尝试）"""
        os.makedirs(self.tmp_dir, exist_ok=True)
        tmp_path = os.path.join(self.tmp_dir, f"{uuid.uuid4().hex}.part")
        digest = hashlib.new(algorithm)
        stream = await self.platforms.fetch_artifact(version)
        try:
            async with stream:
                async with aiofiles.open(tmp_path, "wb") as f:
                    async for chunk in stream:
                        digest.update(chunk)
                        await f.write(chunk)
                        self.stats.bytes_downloaded += len(chunk)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return tmp_path, digest.hexdigest()

    async def _expected_checksum(self, version: ModVersion) -> Optional[Checksum]:
        try:
            return self.platforms.declared_checksum(version)
        except ChecksumUnavailableError:
            trusted = (await self._load_trust()).get(version.artifact_url)
            if trusted:
                return Checksum.parse(trusted)
            logger.debug(f"[缓存] {version} 没有校验值，将采用首次使用信任")
            return None

    async def _load_trust(self) -> Dict[str, str]:
        if self._trusted is None:
            async with self._trust_lock:
                if self._trusted is None:
                    trusted: Dict[str, str] = {}
                    if os.path.exists(self.trust_path):
                        async with aiofiles.open(self.trust_path, "r", encoding="utf-8") as f:
                            trusted = json.loads(await f.read() or "{}")
                    self._trusted = trusted
        return self._trusted

    async def _trust(self, version: ModVersion, checksum: Checksum):
        """持久化首次使用信任记录"""
        trusted = await self._load_trust()
        async with self._trust_lock:
            trusted[version.artifact_url] = str(checksum)
            os.makedirs(self.root, exist_ok=True)
            tmp_path = f"{self.trust_path}.tmp"
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(trusted, sort_keys=True, indent=2))
            os.replace(tmp_path, self.trust_path)
        logger.info(f"[信任] 记录 {version} 的校验值 {checksum}")

    def entries(self) -> List[CacheEntry]:
        """列出缓存中的全部条目"""
        result = []
        if not os.path.isdir(self.blobs_dir):
            return result
        for algorithm in sorted(os.listdir(self.blobs_dir)):
            algo_dir = os.path.join(self.blobs_dir, algorithm)
            for prefix in sorted(os.listdir(algo_dir)):
                prefix_dir = os.path.join(algo_dir, prefix)
                for name in sorted(os.listdir(prefix_dir)):
                    path = os.path.join(prefix_dir, name)
                    result.append(
                        CacheEntry(Checksum(algorithm, name), path, os.path.getatime(path))
                    )
        return result

    def prune(self, protected: Set[Checksum]) -> int:
        """
        删除未受保护的缓存条目

        Args:
            protected: 必须保留的校验值（至少包含当前锁文件引用的全部制品）

        Returns:
            删除的条目数
        """
        removed = 0
        for entry in self.entries():
            if entry.checksum in protected:
                continue
            os.remove(entry.path)
            removed += 1
            logger.debug(f"[清理] 删除缓存 {entry.checksum}")
        logger.info(f"[清理] 删除 {removed} 个缓存条目，保留 {len(protected)} 个")
        return removed
