"""
安装计划

比较解析结果与现有锁文件，得到最小的新增/更新/删除计划。
当前锁文件由调用方显式传入，试运行与实际安装互不干扰。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Collection, List, Optional

from modsync.models import (
    LockEntry,
    Lockfile,
    ModReference,
    ModVersion,
    ResolutionResult,
    install_file_name,
)


class PlanAction(Enum):
    """计划动作"""

    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    NOOP = "noop"


@dataclass(frozen=True)
class PlanStep:
    """单个模组的计划动作"""

    action: PlanAction
    reference: ModReference
    old: Optional[LockEntry] = None
    new: Optional[ModVersion] = None

    def describe(self) -> str:
        if self.action == PlanAction.ADD:
            return f"+ {self.reference} {self.new.version}"
        if self.action == PlanAction.UPDATE:
            return f"~ {self.reference} {self.old.version} -> {self.new.version}"
        if self.action == PlanAction.REMOVE:
            return f"- {self.reference} {self.old.version}"
        return f"= {self.reference} {self.old.version}"


@dataclass
class InstallPlan:
    """安装计划"""

    steps: List[PlanStep] = field(default_factory=list)

    def of(self, action: PlanAction) -> List[PlanStep]:
        return [step for step in self.steps if step.action == action]

    @property
    def changes(self) -> List[PlanStep]:
        return [step for step in self.steps if step.action != PlanAction.NOOP]

    @property
    def is_noop(self) -> bool:
        return not self.changes

    def to_fetch(self) -> List[ModVersion]:
        """需要获取制品的版本（新增与更新）"""
        return [
            step.new
            for step in self.steps
            if step.action in (PlanAction.ADD, PlanAction.UPDATE)
        ]

    def summary(self) -> str:
        return (
            f"新增 {len(self.of(PlanAction.ADD))}，"
            f"更新 {len(self.of(PlanAction.UPDATE))}，"
            f"删除 {len(self.of(PlanAction.REMOVE))}，"
            f"不变 {len(self.of(PlanAction.NOOP))}"
        )


def _same(entry: LockEntry, version: ModVersion) -> bool:
    if entry.version != version.version or entry.file_id != version.file_id:
        return False
    if entry.file_name != install_file_name(version):
        return False
    # 无平台校验值的制品以首次使用信任的记录为准，只比较版本
    if version.checksum is not None and version.checksum != entry.checksum:
        return False
    return True


class InstallPlanner:
    """安装计划器"""

    def plan(
        self,
        result: ResolutionResult,
        lockfile: Lockfile,
        broken: Collection[ModReference] = (),
    ) -> InstallPlan:
        """
        生成安装计划

        Args:
            result: 解析结果
            lockfile: 当前锁文件
            broken: 文件缺失或损坏的已安装模组，即使版本未变也会重新安装

        Returns:
            按引用排序的计划
        """
        steps = []
        for ref in result:
            version = result[ref]
            entry = lockfile.get(ref)
            if entry is None:
                steps.append(PlanStep(PlanAction.ADD, ref, new=version))
            elif ref in broken or not _same(entry, version):
                steps.append(PlanStep(PlanAction.UPDATE, ref, old=entry, new=version))
            else:
                steps.append(PlanStep(PlanAction.NOOP, ref, old=entry, new=version))

        for entry in lockfile:
            if entry.reference not in result:
                steps.append(PlanStep(PlanAction.REMOVE, entry.reference, old=entry))

        steps.sort(key=lambda step: step.reference)
        return InstallPlan(steps)
