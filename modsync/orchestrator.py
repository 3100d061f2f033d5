"""
主协调器

整合平台、解析、缓存与安装组件，实现 解析 → 计划 → 获取 → 提交 的同步流程。
"""

import asyncio
from typing import Dict, Optional, Set

from loguru import logger

from modsync.api import PlatformSet
from modsync.download import ArtifactCache
from modsync.exceptions import ConfigError, ResolutionError
from modsync.install import (
    InstallApplier,
    InstallPlan,
    InstallPlanner,
    VerifyReport,
    local_artifact,
    read_lockfile,
    scan_user_jars,
    user_jars_enabled,
)
from modsync.models import (
    DesiredMod,
    Lockfile,
    ModReference,
    ModSyncConfig,
    Platform,
    ResolutionRequest,
    ResolutionResult,
)
from modsync.services import DependencyResolver


class ModSyncOrchestrator:
    """ModSync 主协调器"""

    def __init__(
        self,
        config: ModSyncConfig,
        platforms: Optional[PlatformSet] = None,
        cache: Optional[ArtifactCache] = None,
    ):
        self.config = config
        self.platforms = platforms or PlatformSet.from_config(config.network)
        self.cache = cache or ArtifactCache(
            config.cache.dir, self.platforms, max_workers=config.cache.max_workers
        )
        self.planner = InstallPlanner()
        self.applier = InstallApplier(
            config.server.mods_dir,
            config.server.lockfile,
            self.cache,
            user_dir=config.server.user_dir,
        )
        self.last_resolver: Optional[DependencyResolver] = None
        self.last_plan: Optional[InstallPlan] = None

    async def _canonical(self, text: str) -> ModReference:
        return await self.platforms.canonical_reference(ModReference.parse(text))

    async def disabled(self) -> Set[ModReference]:
        """已禁用的模组（规范化后的引用）"""
        return {await self._canonical(item) for item in self.config.disabled}

    async def build_request(self) -> ResolutionRequest:
        """
        根据配置构建解析请求（排除已禁用的模组）

        配置中的 slug 先换成平台的项目 ID，与依赖声明使用同一种引用。
        """
        disabled = await self.disabled()
        desired = []
        seen = set()
        for mod in self.config.mods:
            ref = await self.platforms.canonical_reference(ModReference(mod.platform, mod.id))
            if ref in seen:
                raise ConfigError(
                    f"模组重复配置: {mod.key}", context={"reference": str(ref)}
                )
            seen.add(ref)
            if ref in disabled:
                logger.info(f"[配置] {ref} 已禁用，跳过")
                continue
            desired.append(DesiredMod(ref, mod.version))
        return ResolutionRequest(
            loader=self.config.server.loader,
            game_version=self.config.server.game_version,
            desired=tuple(desired),
            extra_loaders=frozenset(self.config.server.extra_loaders),
        )

    async def overrides(self) -> Dict[ModReference, ModReference]:
        result = {}
        for source, target in self.config.overrides.items():
            source_ref, target_ref = await self._canonical(source), await self._canonical(target)
            if source_ref == target_ref:
                raise ConfigError(f"依赖替换不能指向自身: {source}")
            result[source_ref] = target_ref
        return result

    async def load_lockfile(self) -> Lockfile:
        return await read_lockfile(self.config.server.lockfile)

    async def resolve(self) -> ResolutionResult:
        """解析期望集合，并加入 user 目录中的本地模组"""
        request = await self.build_request()
        resolver = DependencyResolver(self.platforms, overrides=await self.overrides())
        self.last_resolver = resolver
        timeout = self.config.network.resolve_timeout
        try:
            result = await asyncio.wait_for(resolver.resolve(request), timeout)
        except asyncio.TimeoutError:
            raise ResolutionError(
                f"依赖解析超时 ({timeout}s)",
                context={"decisions": len(resolver.decisions)},
            )

        if not user_jars_enabled(request.loader):
            return result
        local = await scan_user_jars(self.config.server.user_dir)
        if not local:
            return result
        selections = dict(result.items())
        for version in local:
            selections[version.reference] = version
        return ResolutionResult(result.loader, result.game_version, selections)

    async def _plan(self, lockfile: Lockfile, result: ResolutionResult) -> InstallPlan:
        report = await self.applier.verify(lockfile)
        broken = {entry.reference for entry in report.broken}
        plan = self.planner.plan(result, lockfile, broken)
        self.last_plan = plan
        return plan

    async def plan(self) -> InstallPlan:
        """试运行：生成安装计划，不下载也不修改任何文件"""
        lockfile = await self.load_lockfile()
        result = await self.resolve()
        plan = await self._plan(lockfile, result)
        logger.info(f"[计划] {plan.summary()}")
        return plan

    async def sync(self) -> InstallPlan:
        """解析、获取制品并提交到模组目录"""
        logger.info("开始 ModSync 同步任务...")
        await self.applier.recover()

        lockfile = await self.load_lockfile()
        result = await self.resolve()
        plan = await self._plan(lockfile, result)
        logger.info(f"[计划] {plan.summary()}")

        if plan.is_noop:
            logger.success("已是最新状态，无需变更")
            return plan

        remote, local = [], []
        for version in plan.to_fetch():
            (local if version.reference.platform == Platform.LOCAL else remote).append(version)
        artifacts = await self.cache.obtain_many(remote)
        for version in local:
            artifacts[version.reference] = local_artifact(version)
        await self.applier.apply(plan, lockfile, artifacts, disabled=await self.disabled())
        logger.success("ModSync 同步完成!")
        return plan

    async def verify(self, repair: bool = False) -> VerifyReport:
        """校验模组目录与锁文件是否一致"""
        lockfile = await self.load_lockfile()
        if repair:
            return await self.applier.repair(lockfile)
        return await self.applier.verify(lockfile)

    async def recover(self) -> Optional[str]:
        return await self.applier.recover()

    async def prune(self) -> int:
        """清理缓存，保留当前锁文件引用的全部制品"""
        lockfile = await self.load_lockfile()
        return self.cache.prune(lockfile.checksums())

    def get_stats(self) -> dict:
        stats = self.cache.stats
        return {
            "decisions": len(self.last_resolver.decisions) if self.last_resolver else 0,
            "cache_hits": stats.hits,
            "fetched": stats.fetched,
            "discarded": stats.discarded,
            "bytes_downloaded": stats.bytes_downloaded,
        }

    async def close(self):
        await self.platforms.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
