"""
ModSync 安装层

包含锁文件读写、安装计划、本地模组与事务化的安装执行器。
"""

from modsync.install.applier import DISABLED_SUFFIX, DirectoryLock, InstallApplier, VerifyReport
from modsync.install.lockfile import parse_lockfile, read_lockfile, write_lockfile
from modsync.install.planner import InstallPlan, InstallPlanner, PlanAction, PlanStep
from modsync.install.user_jars import local_artifact, scan_user_jars, user_jars_enabled

__all__ = [
    "DISABLED_SUFFIX",
    "DirectoryLock",
    "InstallApplier",
    "VerifyReport",
    "parse_lockfile",
    "read_lockfile",
    "write_lockfile",
    "InstallPlan",
    "InstallPlanner",
    "PlanAction",
    "PlanStep",
    "local_artifact",
    "scan_user_jars",
    "user_jars_enabled",
]
