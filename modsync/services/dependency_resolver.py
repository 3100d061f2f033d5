"""
依赖处理服务

以显式的决策栈做增量约束传播与回溯搜索，求出满足全部约束的版本选择。

- 工作列表按稳定顺序推进：先是按引用排序的期望模组，再按声明顺序加入必需依赖。
- 每个决策记录 (引用, 有序候选列表, 当前下标)，回溯时只需调整下标。
- 叶子死路时跳回到导致冲突的最近决策；该决策也穷尽后按时间顺序回溯。
- 可选依赖从不因“可选”而被拉入，但若该模组出现在结果中，其约束同样生效。
- 循环依赖无需特殊处理：已选中的引用直接用其选择校验约束。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

from loguru import logger

from modsync.exceptions import NoCompatibleVersionError, UnresolvableConflictError
from modsync.models import (
    ModReference,
    ModVersion,
    Relation,
    ResolutionRequest,
    ResolutionResult,
)
from modsync.services.version_matcher import VersionConstraint, VersionMatcher

DEFAULT_MAX_STEPS = 10000


@dataclass
class Decision:
    """决策栈中的一项"""

    reference: ModReference
    candidates: List[ModVersion]
    index: int

    @property
    def version(self) -> ModVersion:
        return self.candidates[self.index]


@dataclass
class _Imposed:
    """施加在某个引用上的约束及其来源（source 为栈下标，None 表示用户）"""

    constraint: VersionConstraint
    source: Optional[int]
    reason: str


@dataclass
class _SearchState:
    """由决策栈重放得到的派生状态"""

    selected: Dict[ModReference, int] = field(default_factory=dict)
    constraints: Dict[ModReference, List[_Imposed]] = field(default_factory=dict)
    forbidden: Dict[ModReference, List[_Imposed]] = field(default_factory=dict)
    required_by: Dict[ModReference, List[int]] = field(default_factory=dict)
    worklist: List[ModReference] = field(default_factory=list)
    seeds: Set[ModReference] = field(default_factory=set)

    def enqueue(self, ref: ModReference):
        if ref not in self.required_by and ref not in self.seeds:
            self.worklist.append(ref)

    def next_pending(self) -> Optional[ModReference]:
        for ref in self.worklist:
            if ref not in self.selected:
                return ref
        return None

    def pending(self) -> List[ModReference]:
        return [ref for ref in self.worklist if ref not in self.selected]


@dataclass
class _DeadEnd:
    reference: ModReference
    culprits: Set[int]
    chain: List[str]
    no_candidates: bool = False


class DependencyResolver:
    """依赖解析器"""

    def __init__(
        self,
        source,
        overrides: Optional[Mapping[ModReference, ModReference]] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        """
        Args:
            source: 提供 ``list_versions(ref)`` 的平台入口（通常是 PlatformSet）
            overrides: 依赖引用替换表
            max_steps: 回溯次数上限
        """
        self.source = source
        self.overrides = dict(overrides or {})
        self.max_steps = max_steps
        self.matcher = VersionMatcher()
        self.decisions: List[Decision] = []
        self._tasks: Dict[ModReference, asyncio.Task] = {}

    async def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        """
        解析依赖

        Args:
            request: 解析请求

        Returns:
            内部一致的 ResolutionResult

        Raises:
            NoCompatibleVersionError: 期望模组没有任何兼容版本
            UnresolvableConflictError: 约束冲突且搜索空间已穷尽
        """
        stack: List[Decision] = []
        first_dead_end: Optional[_DeadEnd] = None
        steps = 0
        logger.info(
            f"[解析] 开始解析 {len(request.desired)} 个模组 "
            f"({request.loader.value} {request.game_version})"
        )

        try:
            while True:
                # 每个工作项之间都是取消点
                await asyncio.sleep(0)

                state = self._replay(request, stack)
                ref = state.next_pending()
                if ref is None:
                    break

                self._prefetch(request, state.pending())
                candidates = await self._candidates(request, ref)

                if not candidates:
                    if ref in state.seeds:
                        raise NoCompatibleVersionError(
                            f"{ref} 没有兼容 {request.loader.value} "
                            f"{request.game_version} 的版本",
                            context={"reference": str(ref)},
                        )
                    dead_end = _DeadEnd(
                        reference=ref,
                        culprits=set(state.required_by.get(ref, [])),
                        chain=self._origin(state, stack, ref)
                        + [f"{ref} 没有兼容 {request.loader.value} {request.game_version} 的版本"],
                        no_candidates=True,
                    )
                else:
                    index, culprits, reasons = self._first_acceptable(
                        state, stack, ref, candidates, 0
                    )
                    if index is not None:
                        stack.append(Decision(ref, candidates, index))
                        logger.debug(
                            f"[解析] 第 {len(stack)} 层: 选择 {candidates[index]}"
                        )
                        continue
                    culprits.update(state.required_by.get(ref, []))
                    dead_end = _DeadEnd(
                        reference=ref,
                        culprits=culprits,
                        chain=self._origin(state, stack, ref) + reasons,
                    )

                if first_dead_end is None:
                    first_dead_end = dead_end
                steps += 1
                if steps > self.max_steps:
                    raise UnresolvableConflictError(
                        f"解析 {dead_end.reference} 时回溯次数超过上限 {self.max_steps}",
                        chain=dead_end.chain,
                        context={"reference": str(dead_end.reference)},
                    )
                logger.debug(
                    f"[回溯] {dead_end.reference} 无可用候选，冲突来源: "
                    f"{[str(stack[i].version) for i in sorted(dead_end.culprits)]}"
                )
                backjumped = self._backjump(request, stack, dead_end.culprits)
                if backjumped is None:
                    self._raise_exhausted(first_dead_end)
                stack = backjumped
        finally:
            self.decisions = list(stack)
            await self._drain()

        result = ResolutionResult(
            request.loader,
            request.game_version,
            {decision.reference: decision.version for decision in stack},
        )
        logger.success(f"[解析] 解析完成，共 {len(result)} 个模组")
        return result

    @staticmethod
    def _raise_exhausted(dead_end: _DeadEnd):
        if dead_end.no_candidates:
            raise NoCompatibleVersionError(
                f"{dead_end.reference} 没有兼容版本，且无法通过调整其他选择避开",
                context={"reference": str(dead_end.reference), "chain": dead_end.chain},
            )
        raise UnresolvableConflictError(
            f"无法为 {dead_end.reference} 找到满足全部约束的版本",
            chain=dead_end.chain,
            context={"reference": str(dead_end.reference)},
        )

    def _target(self, ref: ModReference) -> ModReference:
        return self.overrides.get(ref, ref)

    def _replay(self, request: ResolutionRequest, stack: List[Decision]) -> _SearchState:
        """从决策栈重放出选择、约束与工作列表"""
        state = _SearchState()
        for desired in sorted(request.desired, key=lambda mod: mod.reference):
            state.worklist.append(desired.reference)
            state.seeds.add(desired.reference)
            if desired.constraint:
                state.constraints.setdefault(desired.reference, []).append(
                    _Imposed(
                        VersionConstraint(desired.constraint),
                        None,
                        f"期望集合要求 {desired.reference} {desired.constraint}",
                    )
                )

        for position, decision in enumerate(stack):
            state.selected[decision.reference] = position
            chosen = decision.version
            for dep in chosen.dependencies:
                target = self._target(dep.reference)
                if target == decision.reference:
                    continue
                constraint = VersionConstraint(dep.constraint)
                if dep.relation == Relation.INCOMPATIBLE:
                    state.forbidden.setdefault(target, []).append(
                        _Imposed(constraint, position, f"{chosen} 与 {target} {constraint} 不兼容")
                    )
                    continue
                state.constraints.setdefault(target, []).append(
                    _Imposed(
                        constraint,
                        position,
                        f"{chosen} {'要求' if dep.relation == Relation.REQUIRED else '可选依赖'} "
                        f"{target} {constraint}",
                    )
                )
                if dep.relation == Relation.REQUIRED:
                    state.enqueue(target)
                    state.required_by.setdefault(target, []).append(position)
        return state

    def _check(
        self,
        state: _SearchState,
        stack: List[Decision],
        ref: ModReference,
        candidate: ModVersion,
    ) -> Tuple[bool, Set[int], List[str]]:
        """检查候选是否与当前状态一致，返回 (是否通过, 冲突来源, 原因)"""
        culprits: Set[int] = set()
        reasons: List[str] = []

        for imposed in state.constraints.get(ref, []):
            if not imposed.constraint.matches(candidate):
                reasons.append(imposed.reason)
                if imposed.source is not None:
                    culprits.add(imposed.source)

        for imposed in state.forbidden.get(ref, []):
            if imposed.constraint.matches(candidate):
                reasons.append(imposed.reason)
                if imposed.source is not None:
                    culprits.add(imposed.source)

        for dep in candidate.dependencies:
            target = self._target(dep.reference)
            position = state.selected.get(target)
            if target == ref or position is None:
                continue
            chosen = stack[position].version
            matches = VersionConstraint(dep.constraint).matches(chosen)
            if dep.relation == Relation.INCOMPATIBLE and matches:
                reasons.append(f"{candidate} 与已选择的 {chosen} 不兼容")
                culprits.add(position)
            elif dep.relation != Relation.INCOMPATIBLE and not matches:
                reasons.append(f"{candidate} 要求 {target} {dep.constraint}，但已选择 {chosen}")
                culprits.add(position)

        return not reasons, culprits, reasons

    def _first_acceptable(
        self,
        state: _SearchState,
        stack: List[Decision],
        ref: ModReference,
        candidates: List[ModVersion],
        start: int,
    ) -> Tuple[Optional[int], Set[int], List[str]]:
        culprits: Set[int] = set()
        reasons: List[str] = []
        for index in range(start, len(candidates)):
            ok, why, text = self._check(state, stack, ref, candidates[index])
            if ok:
                return index, culprits, reasons
            culprits.update(why)
            for line in text:
                if line not in reasons:
                    reasons.append(line)
        return None, culprits, reasons

    def _backjump(
        self,
        request: ResolutionRequest,
        stack: List[Decision],
        culprits: Set[int],
    ) -> Optional[List[Decision]]:
        """
        跳回到最近的冲突来源并尝试其下一个候选

        Returns:
            新的决策栈；搜索空间穷尽时返回 None
        """
        if not culprits:
            return None
        stack = stack[: max(culprits) + 1]
        while stack:
            top = stack.pop()
            state = self._replay(request, stack)
            index, _, _ = self._first_acceptable(
                state, stack, top.reference, top.candidates, top.index + 1
            )
            if index is not None:
                stack.append(Decision(top.reference, top.candidates, index))
                logger.debug(f"[回溯] {top.version} -> {top.candidates[index]}")
                return stack
            logger.debug(f"[回溯] {top.reference} 的候选已穷尽")
        return None

    def _origin(
        self, state: _SearchState, stack: List[Decision], ref: ModReference
    ) -> List[str]:
        """描述引用是如何进入工作列表的（沿第一个要求者回溯到期望集合）"""
        chain: List[str] = []
        current = ref
        visited = {ref}
        while True:
            requirers = state.required_by.get(current)
            if not requirers:
                break
            parent = stack[requirers[0]]
            chain.append(f"{parent.version} 依赖 {current}")
            if parent.reference in visited:
                break
            visited.add(parent.reference)
            current = parent.reference
        chain.reverse()
        return chain

    def _prefetch(self, request: ResolutionRequest, refs: List[ModReference]):
        """并发预取待处理引用的候选版本；结果仍按工作列表顺序逐个折叠"""
        for ref in refs:
            if ref not in self._tasks:
                self._tasks[ref] = asyncio.ensure_future(self._load(request, ref))

    async def _load(self, request: ResolutionRequest, ref: ModReference) -> List[ModVersion]:
        versions = await self.source.list_versions(ref)
        candidates = self.matcher.filter(
            versions, request.loader, request.game_version, request.extra_loaders
        )
        logger.debug(f"[解析] {ref}: {len(versions)} 个版本，{len(candidates)} 个兼容")
        return candidates

    async def _candidates(self, request: ResolutionRequest, ref: ModReference) -> List[ModVersion]:
        if ref not in self._tasks:
            self._tasks[ref] = asyncio.ensure_future(self._load(request, ref))
        return await self._tasks[ref]

    async def _drain(self):
        """取消并回收未使用的预取任务"""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
