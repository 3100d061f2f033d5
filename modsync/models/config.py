"""
配置数据模型

定义服务器、模组条目、网络与缓存配置，以及从字典构建配置的逻辑。
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from modsync.exceptions import ConfigValidationError


class ModLoader(Enum):
    """服务端模组加载器"""

    QUILT = "quilt"
    FABRIC = "fabric"
    FORGE = "forge"
    NEOFORGE = "neoforge"
    VELOCITY = "velocity"

    @classmethod
    def parse(cls, value: Union[str, "ModLoader"]) -> "ModLoader":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigValidationError(
                f"未知的模组加载器: {value}",
                context={"allowed": [loader.value for loader in cls]},
            )


class Platform(Enum):
    """模组分发平台"""

    MODRINTH = "modrinth"
    CURSEFORGE = "curseforge"
    GITHUB = "github"
    # 用户目录中的本地 jar，不经过任何平台
    LOCAL = "local"

    @classmethod
    def parse(cls, value: Union[str, "Platform"]) -> "Platform":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigValidationError(
                f"未知的平台: {value}",
                context={"allowed": [platform.value for platform in cls]},
            )


@dataclass
class ModEntry:
    """
    期望安装的模组条目。

    version 为可选的版本约束（例如 ">=1.2"、"^2.0"、"1.4.0"）。
    """

    id: str
    platform: Platform = Platform.MODRINTH
    version: Optional[str] = None

    @classmethod
    def from_any(cls, data: Union[str, dict]) -> "ModEntry":
        """从字符串简写或字典构建条目"""
        if isinstance(data, str):
            platform, _, project = data.partition(":")
            if not project:
                # 纯 ID 视为 Modrinth 项目
                return cls(id=data.strip())
            entry = cls(id=project.strip(), platform=Platform.parse(platform))
        elif isinstance(data, dict):
            mod_id = data.get("id") or data.get("slug")
            if not mod_id:
                raise ConfigValidationError("模组条目缺少 id", context={"entry": data})
            entry = cls(
                id=str(mod_id),
                platform=Platform.parse(data.get("platform", Platform.MODRINTH.value)),
                version=data.get("version"),
            )
        else:
            raise ConfigValidationError(f"无效的模组条目: {data!r}")

        if entry.platform == Platform.LOCAL:
            raise ConfigValidationError(
                f"本地模组无需配置，请直接放入 user 目录: {entry.id}"
            )
        return entry

    @property
    def key(self) -> str:
        return f"{self.platform.value}:{self.id}"


@dataclass
class ServerConfig:
    """服务器目标配置"""

    loader: ModLoader
    game_version: str
    mods_dir: str = "mods"
    lockfile: str = "modsync.lock"
    # 与解析出的模组一同安装的本地 jar 目录，默认 <mods_dir>/user
    user_dir: Optional[str] = None
    extra_loaders: List[ModLoader] = field(default_factory=list)

    def __post_init__(self):
        if self.user_dir is None:
            self.user_dir = os.path.join(self.mods_dir, USER_DIR_NAME)


USER_DIR_NAME = "user"

# Fabric API 在 Modrinth 上的项目 ID
FABRIC_API = "modrinth:P7dR8mSH"

# 预设：依赖替换 + 额外期望模组 + 额外接受的加载器
PRESETS: Dict[str, Dict[str, Any]] = {
    "quilt": {
        "overrides": {FABRIC_API: "modrinth:qvIfYCYJ"},
        "mods": [],
        "loaders": [ModLoader.FABRIC],
    },
    "sinytra": {
        "overrides": {FABRIC_API: "modrinth:Aqlf1Shp"},
        "mods": ["modrinth:FYpiwiBR"],
        "loaders": [ModLoader.FABRIC],
    },
}


@dataclass
class NetworkConfig:
    """网络与重试配置"""

    max_concurrent: int = 5
    max_retries: int = 3
    retry_delay: float = 1.0
    request_timeout: float = 30.0
    resolve_timeout: Optional[float] = None
    curseforge_api_key: Optional[str] = None
    github_token: Optional[str] = None


@dataclass
class CacheConfig:
    """制品缓存配置"""

    dir: str = field(
        default_factory=lambda: os.path.join(
            os.path.expanduser("~"), ".cache", "modsync"
        )
    )
    max_workers: int = 4


@dataclass
class ModSyncConfig:
    """ModSync 完整配置"""

    server: ServerConfig
    mods: List[ModEntry] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)
    overrides: Dict[str, str] = field(default_factory=dict)
    presets: List[str] = field(default_factory=list)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[str] = None) -> "ModSyncConfig":
        """
        从字典构建配置

        Args:
            data: 解析后的配置字典
            base_dir: 相对路径的基准目录（通常为配置文件所在目录）

        Returns:
            ModSyncConfig 实例
        """
        server_data = data.get("server")
        if not isinstance(server_data, dict):
            raise ConfigValidationError("缺少 [server] 配置段")

        if not server_data.get("loader"):
            raise ConfigValidationError("请配置 server.loader")
        if not server_data.get("game_version"):
            raise ConfigValidationError("请配置 server.game_version")

        mods_dir = server_data.get("mods_dir", "mods")
        lockfile = server_data.get("lockfile", "modsync.lock")
        user_dir = server_data.get("user_dir")
        if base_dir:
            mods_dir = os.path.join(base_dir, mods_dir)
            lockfile = os.path.join(base_dir, lockfile)
            if user_dir:
                user_dir = os.path.join(base_dir, user_dir)
        server = ServerConfig(
            loader=ModLoader.parse(server_data["loader"]),
            game_version=str(server_data["game_version"]),
            mods_dir=mods_dir,
            lockfile=lockfile,
            user_dir=user_dir,
            extra_loaders=[ModLoader.parse(item) for item in server_data.get("extra_loaders", [])],
        )

        mods = [ModEntry.from_any(entry) for entry in data.get("mods", [])]
        seen = set()
        for mod in mods:
            if mod.key in seen:
                raise ConfigValidationError(f"模组重复配置: {mod.key}")
            seen.add(mod.key)

        overrides = {str(k): str(v) for k, v in data.get("overrides", {}).items()}
        presets = [str(name).strip().lower() for name in data.get("presets", [])]
        for name in presets:
            preset = PRESETS.get(name)
            if preset is None:
                raise ConfigValidationError(
                    f"未知的预设: {name}", context={"allowed": sorted(PRESETS)}
                )
            for source, target in preset["overrides"].items():
                # 显式配置的替换优先于预设
                overrides.setdefault(source, target)
            for item in preset["mods"]:
                mod = ModEntry.from_any(item)
                if mod.key not in seen:
                    mods.append(mod)
                    seen.add(mod.key)
            for loader in preset["loaders"]:
                if loader != server.loader and loader not in server.extra_loaders:
                    server.extra_loaders.append(loader)

        network_data = data.get("network", {})
        resolve_timeout = network_data.get("resolve_timeout")
        network = NetworkConfig(
            max_concurrent=int(network_data.get("max_concurrent", 5)),
            max_retries=int(network_data.get("max_retries", 3)),
            retry_delay=float(network_data.get("retry_delay", 1.0)),
            request_timeout=float(network_data.get("request_timeout", 30.0)),
            resolve_timeout=float(resolve_timeout) if resolve_timeout else None,
            curseforge_api_key=network_data.get("curseforge_api_key")
            or os.environ.get("CURSEFORGE_API_KEY"),
            github_token=network_data.get("github_token")
            or os.environ.get("GITHUB_TOKEN"),
        )
        if network.max_concurrent <= 0:
            raise ConfigValidationError("network.max_concurrent 必须为正整数")
        if network.max_retries < 0:
            raise ConfigValidationError("network.max_retries 不能为负数")

        cache_data = data.get("cache", {})
        cache = CacheConfig()
        if cache_data.get("dir"):
            cache.dir = os.path.expanduser(cache_data["dir"])
        cache.max_workers = int(cache_data.get("max_workers", cache.max_workers))
        if cache.max_workers <= 0:
            raise ConfigValidationError("cache.max_workers 必须为正整数")

        return cls(
            server=server,
            mods=mods,
            disabled=[str(item) for item in data.get("disabled", [])],
            overrides=overrides,
            presets=presets,
            network=network,
            cache=cache,
        )
