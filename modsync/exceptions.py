"""
ModSync 统一异常体系

提供分层的异常结构，支持错误代码、上下文信息和 JSON 序列化。
网络层错误（未找到、限流、不可达）可重试；解析层与校验层错误按原样上报。
"""

from typing import Any, Dict, List, Optional
import aiohttp


class ModSyncError(Exception):
    """ModSync 基础异常类"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self._get_default_code()
        self.context = context or {}

    def _get_default_code(self) -> str:
        """获取默认错误代码"""
        return "E000"

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "type": self.__class__.__name__,
        }

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class ConfigError(ModSyncError):
    """配置相关错误"""

    def _get_default_code(self) -> str:
        return "E100"


class ConfigParseError(ConfigError):
    """配置解析错误"""

    def _get_default_code(self) -> str:
        return "E101"


class ConfigValidationError(ConfigError):
    """配置验证错误"""

    def _get_default_code(self) -> str:
        return "E102"


class APIError(ModSyncError):
    """平台 API 相关错误"""

    transient = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        response: Optional[aiohttp.ClientResponse] = None,
    ):
        super().__init__(message, code, context)
        self.response = response
        if response is not None:
            self.context["status_code"] = response.status
            self.context["url"] = str(response.url)

    def _get_default_code(self) -> str:
        return "E200"


class APINotFoundError(APIError):
    """项目在其平台上不存在"""

    def _get_default_code(self) -> str:
        return "E404"


class APIRateLimitError(APIError):
    """API 速率限制，携带 retry_after 提示（秒）"""

    transient = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        response: Optional[aiohttp.ClientResponse] = None,
    ):
        super().__init__(message, code, context, response)
        self.retry_after = retry_after
        if retry_after is not None:
            self.context["retry_after"] = retry_after

    def _get_default_code(self) -> str:
        return "E429"


class APIUnreachableError(APIError):
    """网络或传输层失败，包括服务器 5xx 与超时"""

    transient = True

    def _get_default_code(self) -> str:
        return "E503"


class ResolutionError(ModSyncError):
    """依赖解析错误（给定输入时是确定的，不会盲目重试）"""

    def _get_default_code(self) -> str:
        return "E600"


class NoCompatibleVersionError(ResolutionError):
    """没有任何版本同时兼容目标加载器与游戏版本"""

    def _get_default_code(self) -> str:
        return "E601"


class UnresolvableConflictError(ResolutionError):
    """约束冲突且搜索空间已穷尽"""

    def __init__(
        self,
        message: str,
        chain: Optional[List[str]] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code, context)
        self.chain = list(chain or [])
        self.context["chain"] = self.chain

    def _get_default_code(self) -> str:
        return "E602"

    def __str__(self) -> str:
        text = super().__str__()
        if self.chain:
            text += "\n  " + "\n  ".join(self.chain)
        return text


class DownloadError(ModSyncError):
    """下载相关错误"""

    def _get_default_code(self) -> str:
        return "E300"


class IntegrityViolationError(DownloadError):
    """下载或缓存内容与声明的校验值不符（致命，永不绕过）"""

    def _get_default_code(self) -> str:
        return "E302"


class ChecksumUnavailableError(DownloadError):
    """平台没有提供完整性哈希"""

    def _get_default_code(self) -> str:
        return "E304"


class InstallError(ModSyncError):
    """安装相关错误"""

    def _get_default_code(self) -> str:
        return "E400"


class InstallFailedError(InstallError):
    """文件系统变更失败（已尽力回滚）"""

    def _get_default_code(self) -> str:
        return "E401"


class LockfileError(InstallError):
    """锁文件无法读取或格式错误"""

    def _get_default_code(self) -> str:
        return "E402"


__all__ = [
    # 基础异常
    "ModSyncError",
    # 配置异常
    "ConfigError",
    "ConfigParseError",
    "ConfigValidationError",
    # API 异常
    "APIError",
    "APINotFoundError",
    "APIRateLimitError",
    "APIUnreachableError",
    # 解析异常
    "ResolutionError",
    "NoCompatibleVersionError",
    "UnresolvableConflictError",
    # 下载与校验异常
    "DownloadError",
    "IntegrityViolationError",
    "ChecksumUnavailableError",
    # 安装异常
    "InstallError",
    "InstallFailedError",
    "LockfileError",
]
