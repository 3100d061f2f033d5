"""
安装执行器

把安装计划作为一次事务提交到模组目录：

1. 暂存：从缓存复制新增/更新的制品到暂存目录，并最后一次校验。
2. 写入事务日志。
3. 提交：旧文件移入备份（被禁用的模组改名为 .disabled），暂存文件移入最终位置
   （纯重命名，不含 await）。
4. 原子写入锁文件，删除日志与备份。

提交失败时按逆序回滚已执行的重命名；进程崩溃留下的日志在下次运行时恢复。
"""

import asyncio
import json
import os
import shutil
import uuid
import weakref
from dataclasses import dataclass, field
from typing import Collection, Dict, List, Optional, Tuple

from loguru import logger

from modsync.download import Artifact, ArtifactCache, FileVerifier
from modsync.exceptions import InstallFailedError, IntegrityViolationError
from modsync.install.lockfile import (
    parse_lockfile,
    read_lockfile,
    read_lockfile_text,
    write_lockfile,
)
from modsync.install.planner import InstallPlan, PlanAction
from modsync.models import LockEntry, Lockfile, ModReference, Platform

JOURNAL_NAME = ".modsync-journal.json"
STAGING_NAME = ".modsync-staging"
LOCK_NAME = ".modsync.pid"
DISABLED_SUFFIX = ".disabled"

_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class DirectoryLock:
    """
    模组目录锁

    同一进程内用 asyncio.Lock 串行化，跨进程用 O_EXCL 创建的 pid 文件互斥。
    持有者进程已不存在的 pid 文件视为过期并接管。
    """

    def __init__(self, directory: str):
        self.directory = os.path.realpath(directory)
        self.path = os.path.join(self.directory, LOCK_NAME)
        self._lock: Optional[asyncio.Lock] = None

    async def __aenter__(self):
        locks = _LOCKS.setdefault(asyncio.get_running_loop(), {})
        self._lock = locks.setdefault(self.directory, asyncio.Lock())
        await self._lock.acquire()
        try:
            self._acquire_file()
        except BaseException:
            self._lock.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if os.path.exists(self.path):
                os.remove(self.path)
        finally:
            self._lock.release()

    def _acquire_file(self, retry: bool = True):
        os.makedirs(self.directory, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            owner = self._owner()
            if retry and (owner is None or not _pid_alive(owner)):
                logger.warning(f"[安装] 接管过期的目录锁 {self.path} (pid={owner})")
                os.remove(self.path)
                return self._acquire_file(retry=False)
            raise InstallFailedError(
                "模组目录正被另一个进程使用",
                context={"directory": self.directory, "pid": owner},
            )
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

    def _owner(self) -> Optional[int]:
        try:
            with open(self.path, "r") as f:
                return int(f.read().strip() or 0) or None
        except (OSError, ValueError):
            return None


@dataclass
class VerifyReport:
    """目录校验结果"""

    missing: List[LockEntry] = field(default_factory=list)
    corrupt: List[LockEntry] = field(default_factory=list)
    repaired: List[LockEntry] = field(default_factory=list)

    @property
    def broken(self) -> List[LockEntry]:
        return self.missing + self.corrupt

    @property
    def ok(self) -> bool:
        return not self.broken


class InstallApplier:
    """安装执行器"""

    def __init__(
        self,
        mods_dir: str,
        lockfile_path: str,
        cache: ArtifactCache,
        user_dir: Optional[str] = None,
    ):
        self.mods_dir = mods_dir
        self.lockfile_path = lockfile_path
        self.cache = cache
        self.user_dir = user_dir
        self.verifier = FileVerifier()

    @property
    def journal_path(self) -> str:
        return os.path.join(self.mods_dir, JOURNAL_NAME)

    @property
    def staging_root(self) -> str:
        return os.path.join(self.mods_dir, STAGING_NAME)

    def lock(self) -> DirectoryLock:
        return DirectoryLock(self.mods_dir)

    def target_path(self, entry: LockEntry) -> str:
        return os.path.join(self.mods_dir, entry.file_name)

    async def apply(
        self,
        plan: InstallPlan,
        lockfile: Lockfile,
        artifacts: Dict[ModReference, Artifact],
        disabled: Collection[ModReference] = (),
    ) -> Lockfile:
        """
        提交安装计划

        Args:
            plan: 安装计划
            lockfile: 生成计划时使用的锁文件
            artifacts: 新增/更新模组的已校验制品
            disabled: 被禁用的模组；其文件改名为 .disabled 保留而不是删除

        Returns:
            提交后的锁文件

        Raises:
            IntegrityViolationError: 暂存制品校验失败（目录未被修改）
            InstallFailedError: 暂存或提交失败（目录已恢复）
        """
        if plan.is_noop:
            logger.info("[安装] 没有需要执行的变更")
            return lockfile

        async with self.lock():
            self._recover()
            current = await read_lockfile(self.lockfile_path)
            if current != lockfile:
                raise InstallFailedError(
                    "锁文件在计划生成后被修改，请重新生成计划",
                    context={"lockfile": self.lockfile_path},
                )

            entries = {entry.reference: entry for entry in lockfile}
            for step in plan.of(PlanAction.REMOVE):
                entries.pop(step.reference, None)
            placements: List[LockEntry] = []
            for version in plan.to_fetch():
                artifact = artifacts.get(version.reference)
                if artifact is None:
                    raise InstallFailedError(
                        f"缺少 {version} 的制品", context={"reference": str(version.reference)}
                    )
                entry = LockEntry.from_version(version, artifact.checksum)
                entries[version.reference] = entry
                placements.append(entry)
            target = Lockfile(entries.values())

            txid = uuid.uuid4().hex
            staging = os.path.join(self.staging_root, txid)
            try:
                staged = await self._stage(placements, artifacts, staging)
            except OSError as e:
                self._discard(staging)
                raise InstallFailedError(
                    f"暂存制品失败: {e}", context={"directory": self.mods_dir}
                ) from e
            except BaseException:
                self._discard(staging)
                raise

            # 以下提交阶段不含 await
            try:
                ops = self._plan_renames(plan, placements, staged, staging, disabled)
                self._write_journal(txid, target, ops)
            except OSError as e:
                self._discard(staging)
                raise InstallFailedError(
                    f"写入事务日志失败: {e}", context={"journal": self.journal_path}
                ) from e
            done: List[Tuple[str, str]] = []
            try:
                for src, dst in ops:
                    os.replace(src, dst)
                    done.append((src, dst))
                write_lockfile(self.lockfile_path, target)
            except OSError as e:
                logger.error(f"[安装] 提交失败，开始回滚: {e}")
                self._rollback(done)
                self._finish(staging)
                raise InstallFailedError(
                    f"安装提交失败: {e}",
                    context={"directory": self.mods_dir, "applied": len(done)},
                ) from e

            self._finish(staging)
            logger.success(f"[完成] 已提交安装计划：{plan.summary()}")
            return target

    async def _stage(
        self,
        placements: List[LockEntry],
        artifacts: Dict[ModReference, Artifact],
        staging: str,
    ) -> Dict[ModReference, str]:
        os.makedirs(os.path.join(staging, "new"), exist_ok=True)
        os.makedirs(os.path.join(staging, "backup"), exist_ok=True)
        staged = {}
        for entry in placements:
            artifact = artifacts[entry.reference]
            path = os.path.join(staging, "new", entry.file_name)
            shutil.copyfile(artifact.path, path)
            if not await self.verifier.verify(path, entry.checksum):
                raise IntegrityViolationError(
                    f"暂存的 {entry.reference} 校验失败",
                    context={
                        "reference": str(entry.reference),
                        "expected": str(entry.checksum),
                        "blob": artifact.path,
                    },
                )
            logger.debug(f"[安装] 已暂存 {entry.file_name}")
            staged[entry.reference] = path
        return staged

    def _plan_renames(
        self,
        plan: InstallPlan,
        placements: List[LockEntry],
        staged: Dict[ModReference, str],
        staging: str,
        disabled: Collection[ModReference] = (),
    ) -> List[Tuple[str, str]]:
        backup_dir = os.path.join(staging, "backup")
        ops: List[Tuple[str, str]] = []
        vacated = set()

        def backup(path: str):
            if path not in vacated and os.path.exists(path):
                name = os.path.basename(path)
                ops.append((path, os.path.join(backup_dir, f"{len(ops)}-{name}")))
                vacated.add(path)

        for step in plan.steps:
            if step.action not in (PlanAction.REMOVE, PlanAction.UPDATE):
                continue
            old = self.target_path(step.old)
            if step.action == PlanAction.REMOVE and step.reference in disabled:
                if os.path.exists(old):
                    parked = old + DISABLED_SUFFIX
                    backup(parked)
                    ops.append((old, parked))
                    vacated.add(old)
                continue
            backup(old)

        for entry in placements:
            final = self.target_path(entry)
            # 重新启用的模组不再需要 .disabled 副本
            backup(final + DISABLED_SUFFIX)
            # 未被锁文件记录的同名文件
            backup(final)
            ops.append((staged[entry.reference], final))
        return ops

    def _write_journal(self, txid: str, target: Lockfile, ops: List[Tuple[str, str]]):
        tmp_path = f"{self.journal_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "txid": txid,
                    "target": target.fingerprint(),
                    "ops": [[src, dst] for src, dst in ops],
                },
                f,
                indent=2,
            )
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.journal_path)

    @staticmethod
    def _rollback(ops: List[Tuple[str, str]]):
        for src, dst in reversed(ops):
            if os.path.exists(dst) and not os.path.exists(src):
                try:
                    os.replace(dst, src)
                except OSError as e:
                    logger.error(f"[安装] 回滚 {dst} -> {src} 失败: {e}")

    @staticmethod
    def _complete(ops: List[Tuple[str, str]]):
        """补做尚未执行的重命名"""
        for src, dst in ops:
            if os.path.exists(src) and not os.path.exists(dst):
                try:
                    os.replace(src, dst)
                except OSError as e:
                    logger.error(f"[恢复] 补做 {src} -> {dst} 失败: {e}")

    def _finish(self, staging: str):
        if os.path.exists(self.journal_path):
            os.remove(self.journal_path)
        shutil.rmtree(staging, ignore_errors=True)
        self._cleanup_staging_root()

    def _discard(self, staging: str):
        """丢弃尚未进入提交阶段的事务"""
        for path in (self.journal_path, f"{self.journal_path}.tmp"):
            if os.path.exists(path):
                os.remove(path)
        shutil.rmtree(staging, ignore_errors=True)
        self._cleanup_staging_root()

    def _cleanup_staging_root(self):
        try:
            os.rmdir(self.staging_root)
        except OSError:
            pass

    async def recover(self) -> Optional[str]:
        """
        处理上次中断留下的事务日志与暂存目录

        Returns:
            "forward"（锁文件已是目标，补齐并清理备份）、"rollback"（恢复原状态）
            或 None（没有未完成的事务）
        """
        if not os.path.exists(self.journal_path) and not os.path.exists(self.staging_root):
            return None
        async with self.lock():
            return self._recover()

    def _recover(self) -> Optional[str]:
        if not os.path.exists(self.journal_path):
            # 写入日志之前中断的事务不曾改动模组目录
            if os.path.exists(self.staging_root):
                logger.info("[恢复] 清理中断事务留下的暂存目录")
                shutil.rmtree(self.staging_root, ignore_errors=True)
            return None

        try:
            with open(self.journal_path, "r", encoding="utf-8") as f:
                journal = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InstallFailedError(
                f"事务日志无法读取: {e}", context={"journal": self.journal_path}
            ) from e

        staging = os.path.join(self.staging_root, journal["txid"])
        ops = [(src, dst) for src, dst in journal["ops"]]
        current = parse_lockfile(read_lockfile_text(self.lockfile_path), self.lockfile_path)

        if current.fingerprint() == journal["target"]:
            # 只修复文件的计划不改变锁文件，锁文件一致不代表重命名已全部完成
            logger.info(f"[恢复] 事务 {journal['txid']} 的锁文件已是目标，补齐并清理备份")
            self._complete(ops)
            outcome = "forward"
        else:
            logger.warning(f"[恢复] 事务 {journal['txid']} 未完成，回滚")
            self._rollback(ops)
            outcome = "rollback"

        self._finish(staging)
        shutil.rmtree(self.staging_root, ignore_errors=True)
        return outcome

    async def verify(self, lockfile: Lockfile) -> VerifyReport:
        """检查锁文件记录的每个文件是否存在且未损坏"""
        report = VerifyReport()
        for entry in lockfile:
            path = self.target_path(entry)
            if not self.verifier.exists(path):
                logger.warning(f"[校验] 缺失 {entry.file_name}")
                report.missing.append(entry)
            elif not await self.verifier.verify(path, entry.checksum):
                logger.warning(f"[校验] 损坏 {entry.file_name}")
                report.corrupt.append(entry)
        return report

    async def repair(self, lockfile: Lockfile) -> VerifyReport:
        """
        从缓存恢复缺失或损坏的文件

        本地模组从 user 目录恢复。没有可用来源的条目保留在报告的 missing/corrupt 中。
        """
        report = await self.verify(lockfile)
        if report.ok:
            return report

        async with self.lock():
            remaining = VerifyReport()
            for entry in report.broken:
                source = self._repair_source(entry)
                if source is None:
                    (remaining.missing if entry in report.missing else remaining.corrupt).append(entry)
                    continue
                tmp_path = os.path.join(self.mods_dir, f".{entry.file_name}.{uuid.uuid4().hex}.tmp")
                shutil.copyfile(source, tmp_path)
                if not await self.verifier.verify(tmp_path, entry.checksum):
                    os.remove(tmp_path)
                    logger.warning(f"[修复] {source} 与 {entry.checksum} 不符")
                    (remaining.missing if entry in report.missing else remaining.corrupt).append(entry)
                    continue
                os.replace(tmp_path, self.target_path(entry))
                remaining.repaired.append(entry)
                logger.success(f"[修复] 已恢复 {entry.file_name}")
        return remaining

    def _repair_source(self, entry: LockEntry) -> Optional[str]:
        if entry.platform == Platform.LOCAL:
            if self.user_dir is None:
                return None
            path = os.path.join(self.user_dir, entry.reference.project_id)
            return path if os.path.isfile(path) else None
        if not self.cache.contains(entry.checksum):
            return None
        return self.cache.blob_path(entry.checksum)
