"""
依赖处理服务

将请求的根模组展开为完整的安装计划：按依赖类型处理、依赖去重、循环依赖安全。
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from loguru import logger

from modman.exceptions import (
    IncompatibleDependencyError,
    NotFoundError,
    TransportError,
)
from modman.models import (
    DependencyKind,
    DependencyRef,
    ResolvedMod,
    Source,
    VersionConstraint,
)
from modman.services.api_client import RegistryClient


class FailureKind(Enum):
    """解析失败类型"""

    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    INCOMPATIBLE = "incompatible"

    def __str__(self) -> str:
        return self.value


@dataclass
class ResolutionFailure:
    """单个模组的解析失败"""

    mod_id: str
    source: Source
    kind: FailureKind
    detail: str
    parent: Optional[str] = None  # 声明该依赖的模组，根模组为 None
    root: Optional[str] = None  # 所属的根模组


@dataclass
class ResolutionReport:
    """解析结果"""

    mods: List[ResolvedMod] = field(default_factory=list)
    failures: List[ResolutionFailure] = field(default_factory=list)
    already_installed: List[str] = field(default_factory=list)
    # 请求的根模组 ID -> 注册表返回的规范 ID
    canonical_ids: Dict[str, str] = field(default_factory=dict)
    # 模组 ID -> 引入该模组的根模组 ID
    origins: Dict[str, str] = field(default_factory=dict)

    @property
    def failed_roots(self) -> Set[str]:
        return {failure.root for failure in self.failures if failure.root}

    @property
    def aborted_roots(self) -> Set[str]:
        """因不兼容依赖而中止的根模组"""
        return {
            failure.root
            for failure in self.failures
            if failure.root and failure.kind is FailureKind.INCOMPATIBLE
        }

    def installable(self) -> List[ResolvedMod]:
        """
        可以进入安装计划的模组

        排除归属于已中止根模组的模组。被其它根模组依赖的模组在解析时已转交给
        那个根模组，因此仍会留在计划中。
        """
        aborted = self.aborted_roots
        return [mod for mod in self.mods if self.origins.get(mod.id) not in aborted]


@dataclass
class _Claims:
    """单次解析中共享的认领状态"""

    ids: Set[str]
    resolved: Dict[str, ResolvedMod] = field(default_factory=dict)
    # 请求 ID（可能是 slug）-> 规范 ID
    aliases: Dict[str, str] = field(default_factory=dict)

    def add(self, mod: ResolvedMod):
        self.ids.add(mod.id)
        self.resolved[mod.id] = mod


class DependencyResolver:
    """依赖解析器"""

    def __init__(self, clients: Mapping[Source, RegistryClient]):
        self.clients = dict(clients)

    async def _fetch(
        self, mod_id: str, source: Source, constraint: VersionConstraint
    ) -> ResolvedMod:
        """从对应来源的注册表获取模组的规范版本"""
        client = self.clients.get(source)
        if client is None:
            raise NotFoundError(
                mod_id, f"没有可用于来源 {source.display_name} 的注册表: '{mod_id}'"
            )

        info = await client.resolve_version(mod_id, constraint)
        try:
            return info.to_resolved_mod(source)
        except ValueError as e:
            raise NotFoundError(mod_id, str(e))

    @staticmethod
    def _failure(
        mod_id: str,
        source: Source,
        error: Exception,
        parent: Optional[str],
        root: str,
    ) -> ResolutionFailure:
        kind = (
            FailureKind.NOT_FOUND
            if isinstance(error, NotFoundError)
            else FailureKind.TRANSPORT
        )
        return ResolutionFailure(
            mod_id=mod_id,
            source=source,
            kind=kind,
            detail=str(error),
            parent=parent,
            root=root,
        )

    async def resolve(
        self,
        roots: Iterable[Tuple[str, Source]],
        constraint: VersionConstraint,
        baseline_ids: Iterable[str] = (),
        follow_dependencies: bool = True,
    ) -> ResolutionReport:
        """
        解析根模组及其传递依赖

        Args:
            roots: 请求的根模组 (ID, 来源) 列表
            constraint: 游戏版本 / 加载器 / 发布渠道约束
            baseline_ids: 已安装的模组 ID，不会被重复获取
            follow_dependencies: 是否解析依赖

        Returns:
            ResolutionReport: 安装计划、逐项失败与已安装提示
        """
        report = ResolutionReport()
        claims = _Claims(ids=set(baseline_ids))

        for mod_id, source in roots:
            if mod_id not in claims.ids:
                await self._resolve_root(
                    mod_id, source, constraint, claims, report, follow_dependencies
                )
                continue

            orphan = self._orphaned(mod_id, claims, report)
            if orphan is None:
                logger.info(f"[跳过] 模组 '{mod_id}' 已安装或已在计划中")
                report.already_installed.append(mod_id)
                continue

            report.canonical_ids[mod_id] = orphan.id
            await self._take_over_root(
                orphan, constraint, claims, report, follow_dependencies
            )

        logger.debug(
            f"[解析] 完成: {len(report.mods)} 个模组, {len(report.failures)} 个失败"
        )
        return report

    @staticmethod
    def _orphaned(
        mod_id: str, claims: _Claims, report: ResolutionReport
    ) -> Optional[ResolvedMod]:
        """已解析、但所属根模组已中止的模组"""
        mod = claims.resolved.get(claims.aliases.get(mod_id, mod_id))
        if mod is None or report.origins.get(mod.id) not in report.aborted_roots:
            return None
        return mod

    async def _resolve_root(
        self,
        mod_id: str,
        source: Source,
        constraint: VersionConstraint,
        claims: _Claims,
        report: ResolutionReport,
        follow_dependencies: bool,
    ):
        """解析单个根模组及其依赖树"""
        claims.ids.add(mod_id)
        try:
            root = await self._fetch(mod_id, source, constraint)
        except (NotFoundError, TransportError) as e:
            logger.warning(f"[解析] 无法解析模组 '{mod_id}' ({source.display_name}): {e}")
            report.failures.append(self._failure(mod_id, source, e, None, mod_id))
            return

        report.canonical_ids[mod_id] = root.id
        claims.aliases[mod_id] = root.id
        if root.id != mod_id and root.id in claims.ids:
            orphan = self._orphaned(root.id, claims, report)
            if orphan is None:
                logger.info(f"[跳过] 模组 '{root.name}' 已安装或已在计划中")
                report.already_installed.append(root.id)
                return
            await self._take_over_root(
                orphan, constraint, claims, report, follow_dependencies
            )
            return

        claims.add(root)
        report.mods.append(root)
        report.origins[root.id] = root.id
        logger.info(f"[解析] 找到模组 '{root.name}' {root.version}")

        await self._expand(root, constraint, claims, report, follow_dependencies)

    async def _take_over_root(
        self,
        mod: ResolvedMod,
        constraint: VersionConstraint,
        claims: _Claims,
        report: ResolutionReport,
        follow_dependencies: bool,
    ):
        """将已中止根模组下的模组作为新的根模组重新展开（不重新获取）"""
        logger.info(f"[解析] 模组 '{mod.name}' 所属的根模组已中止，作为根模组重新展开")
        report.origins[mod.id] = mod.id
        await self._expand(mod, constraint, claims, report, follow_dependencies)

    async def _expand(
        self,
        root: ResolvedMod,
        constraint: VersionConstraint,
        claims: _Claims,
        report: ResolutionReport,
        follow_dependencies: bool,
    ):
        """展开根模组的依赖树"""
        if not follow_dependencies:
            return

        # 显式栈代替递归：同一节点的必需依赖并发获取，子树按深度优先逐个展开
        stack: List[ResolvedMod] = [root]
        while stack:
            node = stack.pop()

            incompatible = [
                dep
                for dep in node.dependencies
                if dep.kind is DependencyKind.INCOMPATIBLE
            ]
            if incompatible:
                dep = incompatible[0]
                error = IncompatibleDependencyError(dep.target_id, parent=node.id)
                logger.error(f"[解析] 模组 '{root.name}' 解析中止: {error}")
                report.failures.append(
                    ResolutionFailure(
                        mod_id=dep.target_id,
                        source=dep.source,
                        kind=FailureKind.INCOMPATIBLE,
                        detail=str(error),
                        parent=node.id,
                        root=root.id,
                    )
                )
                # 该根模组尚未开始的工作全部放弃，已解析的模组不回滚
                return

            pending: List[DependencyRef] = []
            taken: List[ResolvedMod] = []
            for dep in node.dependencies:
                if dep.kind is not DependencyKind.REQUIRED:
                    logger.debug(f"[依赖] 跳过 {dep.kind} 依赖 '{dep.target_id}'")
                    continue
                if dep.target_id in claims.ids:
                    orphan = self._orphaned(dep.target_id, claims, report)
                    if orphan is not None:
                        taken.append(self._take_over(orphan, root, report))
                    continue
                claims.ids.add(dep.target_id)
                pending.append(dep)

            fetched: List[ResolvedMod] = []
            if pending:
                results = await asyncio.gather(
                    *(
                        self._fetch(dep.target_id, dep.source, constraint)
                        for dep in pending
                    ),
                    return_exceptions=True,
                )

                for dep, result in zip(pending, results):
                    if isinstance(result, (NotFoundError, TransportError)):
                        logger.warning(
                            f"[依赖] 无法解析 '{node.name}' 的依赖 '{dep.target_id}': {result}"
                        )
                        report.failures.append(
                            self._failure(dep.target_id, dep.source, result, node.id, root.id)
                        )
                        continue
                    if isinstance(result, BaseException):
                        raise result

                    claims.aliases[dep.target_id] = result.id
                    if result.id != dep.target_id and result.id in claims.ids:
                        orphan = self._orphaned(result.id, claims, report)
                        if orphan is not None:
                            taken.append(self._take_over(orphan, root, report))
                        continue

                    claims.add(result)
                    logger.info(f"[依赖] 添加依赖: {result.name} (ID: {result.id})")
                    report.mods.append(result)
                    report.origins[result.id] = root.id
                    fetched.append(result)

            stack.extend(reversed(fetched + taken))

    @staticmethod
    def _take_over(
        mod: ResolvedMod, root: ResolvedMod, report: ResolutionReport
    ) -> ResolvedMod:
        """把已中止根模组下的依赖转交给当前根模组，之后随当前根模组一起展开"""
        logger.info(f"[依赖] 模组 '{root.name}' 接管依赖 '{mod.name}'")
        report.origins[mod.id] = root.id
        return mod
