"""
主协调器

整合存储、状态同步、依赖解析与下载，实现 init / add / sync / remove / list 流程。
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from modman.download import DownloadItem, DownloadManager, DownloadOutcome
from modman.exceptions import ConfigError, StateAbsentError
from modman.models import (
    Config,
    DeclaredMod,
    ModLoader,
    ReleaseChannel,
    ResolvedMod,
    Source,
)
from modman.services import (
    DependencyResolver,
    ModrinthClient,
    ReconcileReport,
    RegistryClient,
    ResolutionReport,
    StateReconciler,
)
from modman.store import PersistentStore


ConfirmCallback = Callable[[List[ResolvedMod]], bool]


@dataclass
class SyncResult:
    """一次 add / sync 的结果"""

    reconcile: ReconcileReport
    resolution: Optional[ResolutionReport] = None
    outcomes: List[DownloadOutcome] = field(default_factory=list)
    committed: List[ResolvedMod] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_downloads(self) -> List[DownloadOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.verified]

    @property
    def ok(self) -> bool:
        failures = self.resolution.failures if self.resolution else []
        return not failures and not self.failed_downloads


class ModManOrchestrator:
    """ModMan 主协调器"""

    def __init__(
        self,
        base_dir: str = ".",
        clients: Optional[Mapping[Source, RegistryClient]] = None,
        store: Optional[PersistentStore] = None,
        download_manager: Optional[DownloadManager] = None,
        max_concurrent: int = 5,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        request_timeout: float = 30.0,
    ):
        self.store = store or PersistentStore(base_dir)
        if clients is None:
            clients = {Source.MODRINTH: ModrinthClient(timeout=request_timeout)}
        self.clients: Dict[Source, RegistryClient] = dict(clients)
        self.resolver = DependencyResolver(self.clients)
        self.reconciler = StateReconciler(self.store, self.clients)
        self.download_manager = download_manager or DownloadManager(
            max_concurrent=max_concurrent,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )

    def init(
        self,
        game_version: str,
        loader: ModLoader,
        channels: Optional[Sequence[ReleaseChannel]] = None,
        mods_folder: str = "./mods",
        force: bool = False,
    ) -> Config:
        """
        写入配置文件

        已存在配置时需要 force，且保留原有的模组列表。
        """
        mods: List[DeclaredMod] = []
        if self.store.has_config():
            if not force:
                raise ConfigError(
                    f"配置文件已存在: {self.store.config_path}，使用 --force 覆盖"
                )
            mods = self.store.load_config().mods
            logger.warning("[初始化] 覆盖已有配置，保留模组列表")

        if not channels:
            channels = list(ReleaseChannel)

        config = Config(
            game_version=game_version,
            loader=loader,
            allowed_release_channels=list(channels),
            mods_folder=mods_folder,
            mods=mods,
        )
        self.store.save_config(config)
        os.makedirs(config.mods_path(self.store.base_dir), exist_ok=True)
        logger.success(f"[初始化] 已创建配置: {self.store.config_path}")
        return config

    def _load_config(self) -> Config:
        try:
            return self.store.load_config()
        except StateAbsentError:
            raise ConfigError(
                f"配置文件不存在: {self.store.config_path}，请先运行 modman init"
            )

    async def sync(
        self,
        requested: Sequence[Tuple[str, Source]] = (),
        confirm: Optional[ConfirmCallback] = None,
        follow_dependencies: bool = True,
    ) -> SyncResult:
        """
        同步状态并安装请求的模组

        Args:
            requested: 用户显式请求的 (ID, 来源)
            confirm: 确认回调，收到安装计划，返回 False 时取消下载
            follow_dependencies: 是否解析依赖
        """
        config = self._load_config()
        lockfile = self.store.load_lockfile_or_empty()

        report = await self.reconciler.reconcile(config, lockfile)
        result = SyncResult(reconcile=report)
        config, lockfile = report.config, report.lockfile

        # 合并根模组：显式请求、缺失依赖、新声明的模组、校验失败的模组
        roots: List[Tuple[str, Source]] = list(requested)
        roots += [(dep.target_id, dep.source) for dep in report.missing_dependencies]
        roots += [(mod.id, mod.source) for mod in report.new_mods]
        roots += [
            (entry.id, entry.source)
            for entry in report.reinstall_bad_checksum
            if entry.source.is_registry
        ]
        roots = list(dict.fromkeys(roots))

        if not roots:
            logger.info("[同步] 模组目录与锁文件一致，无需安装")
            return result

        repair_ids = {dep.target_id for dep in report.missing_dependencies}
        repair_ids |= {entry.id for entry in report.reinstall_bad_checksum}
        baseline = [entry.id for entry in lockfile if entry.id not in repair_ids]

        resolution = await self.resolver.resolve(
            roots, config.constraint, baseline, follow_dependencies
        )
        result.resolution = resolution

        plan_mods = resolution.installable()
        if not plan_mods:
            logger.info("[同步] 没有需要下载的模组")
            # 已安装的模组仍可能需要登记到配置
            self._commit(config, lockfile, [], requested, report, resolution)
            return result

        if confirm is not None and not confirm(plan_mods):
            logger.info("[同步] 已取消安装")
            result.cancelled = True
            return result

        mods_dir = config.mods_path(self.store.base_dir)
        plan = [
            DownloadItem(
                url=mod.download_url,
                destination=os.path.join(mods_dir, mod.file_name),
                display_name=mod.name,
                expected_hash=mod.content_hash,
                mod_id=mod.id,
            )
            for mod in plan_mods
        ]
        result.outcomes = await self.download_manager.download(plan)

        for outcome in result.failed_downloads:
            logger.error(
                f"[下载] '{outcome.item.display_name}' 未安装 ({outcome.status.value}): "
                f"{outcome.detail}"
            )

        result.committed = [
            mod for mod, outcome in zip(plan_mods, result.outcomes) if outcome.verified
        ]
        self._commit(config, lockfile, result.committed, requested, report, resolution)
        return result

    def _commit(
        self,
        config: Config,
        lockfile: List[ResolvedMod],
        verified: List[ResolvedMod],
        requested: Sequence[Tuple[str, Source]],
        report: ReconcileReport,
        resolution: ResolutionReport,
    ):
        """将校验通过的模组写入锁文件，并登记显式请求的根模组"""
        mods_dir = config.mods_path(self.store.base_dir)
        entries: Dict[str, ResolvedMod] = {entry.id: entry for entry in lockfile}
        declared = list(config.mods)

        for mod in verified:
            old = entries.get(mod.id)
            if old is not None and old.file_name != mod.file_name:
                old_path = os.path.join(mods_dir, old.file_name)
                if os.path.isfile(old_path):
                    os.remove(old_path)
                    logger.info(f"[更新] 已删除旧版本文件: {old.file_name}")

            # 同名文件已被新下载覆盖
            for other in list(entries.values()):
                if other.id != mod.id and other.file_name == mod.file_name:
                    del entries[other.id]
                    declared = [d for d in declared if d.id != other.id]

            entries[mod.id] = mod

        roots = list(requested) + [(mod.id, mod.source) for mod in report.new_mods]
        for mod_id, source in roots:
            canonical = resolution.canonical_ids.get(mod_id, mod_id)
            entry = entries.get(canonical)
            if entry is None:
                continue

            declared_mod = DeclaredMod(source=source, id=canonical, name=entry.name)
            index = next(
                (i for i, d in enumerate(declared) if d.id in (mod_id, canonical)),
                None,
            )
            if index is None:
                declared.append(declared_mod)
                logger.info(f"[添加] 已将 '{entry.name}' 加入配置")
            elif declared[index].id != canonical:
                declared[index] = declared_mod

        config.mods = declared
        self.store.save_state(config, list(entries.values()))
        logger.success(f"[完成] 已记录 {len(verified)} 个校验通过的模组")

    async def add(
        self,
        requested: Sequence[Tuple[str, Source]],
        confirm: Optional[ConfirmCallback] = None,
        follow_dependencies: bool = True,
    ) -> SyncResult:
        """添加模组"""
        return await self.sync(requested, confirm, follow_dependencies)

    async def remove(self, mod_ids: Sequence[str]) -> Tuple[List[str], ReconcileReport]:
        """
        从配置中移除模组

        不再被引用的锁文件条目及其文件由状态同步清理。

        Returns:
            实际移除的 ID 与同步结果
        """
        config = self._load_config()
        targets = set(mod_ids)
        removed = [mod.id for mod in config.mods if mod.id in targets]
        for mod_id in targets.difference(removed):
            logger.warning(f"[移除] 配置中没有模组 '{mod_id}'")

        config.mods = [mod for mod in config.mods if mod.id not in targets]
        lockfile = self.store.load_lockfile_or_empty()
        report = await self.reconciler.reconcile(config, lockfile)
        return removed, report

    def list_mods(self) -> Tuple[Config, List[ResolvedMod]]:
        """读取配置与锁文件"""
        return self._load_config(), self.store.load_lockfile_or_empty()

    async def close(self):
        """关闭客户端与下载器"""
        for client in self.clients.values():
            await client.close()
        await self.download_manager.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
