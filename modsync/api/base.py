"""
平台客户端接口

为三个分发平台提供统一的能力集合：列出版本、获取制品。
重试、超时与并发上限由基类统一实现，子类只负责各自的 HTTP 细节与数据转换。
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiohttp
from loguru import logger

from modsync.exceptions import (
    APIError,
    APINotFoundError,
    APIRateLimitError,
    APIUnreachableError,
    ChecksumUnavailableError,
)
from modsync.models import Checksum, ModReference, ModVersion, Platform

T = TypeVar("T")

CHUNK_SIZE = 8192


def normalize_timestamp(text: Optional[str]) -> str:
    """将平台返回的时间统一为 UTC ISO 8601，便于按字符串排序"""
    if not text:
        return ""
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _retry_after(response: aiohttp.ClientResponse) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value:
        try:
            return max(float(value), 0.0)
        except ValueError:
            try:
                moment = parsedate_to_datetime(value)
                return max(moment.timestamp() - time.time(), 0.0)
            except (TypeError, ValueError):
                return None
    reset = response.headers.get("X-RateLimit-Reset") or response.headers.get(
        "X-Ratelimit-Reset"
    )
    if reset:
        try:
            reset_value = float(reset)
        except ValueError:
            return None
        # GitHub 返回 epoch 秒，Modrinth 返回剩余秒数
        if reset_value > 1_000_000_000:
            return max(reset_value - time.time(), 0.0)
        return reset_value
    return None


class ArtifactStream:
    """
    制品字节流

    通过 ``async with`` 使用，结束时释放底层连接；在块与块之间可被取消。
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        checksum: Optional[Checksum] = None,
        size: int = 0,
        close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.checksum = checksum
        self.size = size
        self._chunks = chunks
        self._close = close

    @classmethod
    def from_bytes(
        cls, data: bytes, checksum: Optional[Checksum] = None, chunk_size: int = CHUNK_SIZE
    ) -> "ArtifactStream":
        async def chunks():
            for offset in range(0, len(data), chunk_size):
                yield data[offset : offset + chunk_size]

        return cls(chunks(), checksum=checksum, size=len(data))

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks

    async def __aenter__(self) -> "ArtifactStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._close is not None:
            await self._close()


class PlatformClient(ABC):
    """平台客户端基类"""

    platform: Platform
    base_url: str = ""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        request_timeout: float = 30.0,
        semaphore: Optional[asyncio.Semaphore] = None,
        max_concurrent: int = 5,
    ):
        self._session = session
        self._owned_session = session is None
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._semaphore = semaphore or asyncio.Semaphore(max_concurrent)

    @property
    def session(self) -> aiohttp.ClientSession:
        """获取或创建 aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owned_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": "modsync/0.1.0"}

    @abstractmethod
    async def _fetch_versions(self, ref: ModReference) -> List[ModVersion]:
        """向平台请求项目的全部版本（单次尝试，不含重试）"""

    async def list_versions(self, ref: ModReference) -> List[ModVersion]:
        """
        列出项目的全部版本

        Raises:
            APINotFoundError: 项目在该平台上不存在
            APIRateLimitError: 重试耗尽后仍被限流
            APIUnreachableError: 重试耗尽后仍无法连接
        """
        if ref.platform != self.platform:
            raise ValueError(f"{ref} 不属于平台 {self.platform.value}")
        versions = await self.with_retry(
            lambda: self._fetch_versions(ref), f"列出 {ref} 的版本"
        )
        logger.debug(f"[平台] {ref} 共有 {len(versions)} 个版本")
        return versions

    async def canonical_reference(self, ref: ModReference) -> ModReference:
        """把项目别名（如 slug）换成平台的稳定 ID，默认原样返回"""
        return ref

    def declared_checksum(self, version: ModVersion) -> Checksum:
        """
        平台声明的制品校验值

        Raises:
            ChecksumUnavailableError: 平台没有提供完整性哈希
        """
        if version.checksum is None:
            raise ChecksumUnavailableError(
                f"平台未提供 {version} 的校验值",
                context={"reference": str(version.reference), "url": version.artifact_url},
            )
        return version.checksum

    async def fetch_artifact(self, version: ModVersion) -> ArtifactStream:
        """
        打开制品下载流（单次尝试；调用方通过 with_retry 重试）

        Raises:
            APIRateLimitError / APIUnreachableError / APINotFoundError
        """
        try:
            response = await self.session.get(
                version.artifact_url, headers=self._headers(), timeout=self.timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise APIUnreachableError(
                f"下载失败: {e}", context={"url": version.artifact_url}
            ) from e

        try:
            self._raise_for_status(response)
        except APIError:
            response.release()
            raise

        async def chunks():
            try:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    yield chunk
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise APIUnreachableError(
                    f"下载中断: {e}", context={"url": version.artifact_url}
                ) from e

        async def close():
            response.release()

        return ArtifactStream(
            chunks(),
            checksum=version.checksum,
            size=int(response.headers.get("Content-Length", 0) or 0),
            close=close,
        )

    async def with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """
        在并发上限内执行操作，对瞬时错误做指数退避重试

        限流时若平台给出的 retry-after 大于退避时间，则以其为准。
        """
        for attempt in range(self.max_retries + 1):
            try:
                async with self._semaphore:
                    return await operation()
            except APIError as e:
                if not e.transient or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2**attempt)
                if isinstance(e, APIRateLimitError) and e.retry_after:
                    delay = max(delay, e.retry_after)
                logger.warning(
                    f"[重试] {description} 失败 (第 {attempt + 1} 次): {e}. "
                    f"{delay:.1f}s 后重试..."
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    def _raise_for_status(self, response: aiohttp.ClientResponse, ref: Optional[ModReference] = None):
        """将 HTTP 状态码映射为异常体系"""
        context = {"reference": str(ref)} if ref else {}
        if response.status == 200:
            return
        if response.status == 404:
            raise APINotFoundError(
                f"{ref or response.url} 在 {self.platform.value} 上不存在",
                context=context,
                response=response,
            )
        if response.status == 429 or (
            response.status == 403
            and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            raise APIRateLimitError(
                f"{self.platform.value} 请求被限流",
                retry_after=_retry_after(response),
                context=context,
                response=response,
            )
        if response.status >= 500:
            raise APIUnreachableError(
                f"{self.platform.value} 服务器错误 (状态码: {response.status})",
                context=context,
                response=response,
            )
        raise APIError(
            f"API 请求失败 (状态码: {response.status})",
            context=context,
            response=response,
        )

    async def _get_json(
        self,
        url: str,
        params: Optional[dict] = None,
        ref: Optional[ModReference] = None,
    ):
        """发送 GET 请求并解析 JSON"""
        try:
            async with self.session.get(
                url, params=params, headers=self._headers(), timeout=self.timeout
            ) as response:
                self._raise_for_status(response, ref)
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise APIUnreachableError(
                f"请求 {self.platform.value} 失败: {e}",
                context={"url": url, "reference": str(ref) if ref else None},
            ) from e

    async def close(self):
        """关闭客户端"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
