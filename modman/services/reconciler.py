"""
状态同步服务

对比模组目录、锁文件与配置文件，修正三者之间的偏差：

1. 扫描模组目录，计算每个文件的 SHA512
2. 按文件名与锁文件匹配：未跟踪的文件通过哈希反查注册表，失败则登记为本地模组；
   哈希不一致的条目需要重新安装
3. 锁文件中文件已丢失的条目：仍被其他模组依赖的需要重新下载，否则连同不再被引用的依赖一起移除
4. 移除无法从配置中声明的模组到达的条目；配置中有而锁文件中没有的模组需要解析下载
5. 保存修正后的配置文件与锁文件

在没有外部变化的情况下重复运行，结果为空且文件内容不变。
"""

import asyncio
import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Set, Tuple

from loguru import logger

from modman.download.verifier import FileVerifier
from modman.exceptions import NotFoundError, TransportError
from modman.models import (
    Config,
    DeclaredMod,
    DependencyKind,
    DependencyRef,
    ResolvedMod,
    Source,
    VersionInfo,
)
from modman.services.api_client import RegistryClient
from modman.store import PersistentStore


ARTIFACT_EXTENSION = ".jar"


@dataclass
class ScannedFile:
    """模组目录中的文件"""

    file_name: str
    content_hash: str
    size: int


@dataclass
class ReconcileReport:
    """同步结果"""

    missing_dependencies: List[DependencyRef] = field(default_factory=list)
    new_mods: List[DeclaredMod] = field(default_factory=list)
    reinstall_bad_checksum: List[ResolvedMod] = field(default_factory=list)
    adopted: List[ResolvedMod] = field(default_factory=list)
    renamed: List[Tuple[str, str]] = field(default_factory=list)
    pruned: List[ResolvedMod] = field(default_factory=list)
    config: Optional[Config] = None
    lockfile: List[ResolvedMod] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (
            self.missing_dependencies or self.new_mods or self.reinstall_bad_checksum
        )


class StateReconciler:
    """状态同步器"""

    def __init__(
        self,
        store: PersistentStore,
        clients: Mapping[Source, RegistryClient],
    ):
        self.store = store
        self.clients = dict(clients)
        self.verifier = FileVerifier()

    async def reconcile(
        self, config: Config, lockfile: List[ResolvedMod]
    ) -> ReconcileReport:
        """
        同步模组目录、锁文件与配置文件

        修正后的配置与锁文件会在返回前写回存储，并附在结果中。

        Raises:
            StateWriteError: 写回失败
        """
        report = ReconcileReport()
        mods_dir = config.mods_path(self.store.base_dir)
        entries: Dict[str, ResolvedMod] = {entry.id: entry for entry in lockfile}
        declared: List[DeclaredMod] = list(config.mods)

        # (1) 扫描
        scanned = await self._scan(mods_dir)

        # (2) 按文件名匹配锁文件
        by_file: Dict[str, ResolvedMod] = {
            entry.file_name: entry for entry in lockfile
        }
        untracked: List[ScannedFile] = []
        bad_checksum: List[ResolvedMod] = []

        for file in scanned:
            entry = by_file.pop(file.file_name, None)
            if entry is None:
                untracked.append(file)
            elif entry.content_hash.lower() == file.content_hash:
                continue
            elif entry.source is Source.LOCAL:
                # 本地模组没有可信来源，以磁盘内容为准
                entries[entry.id] = ResolvedMod.local(
                    file.file_name, file.content_hash, file.size
                )
            else:
                logger.warning(f"[校验] '{entry.name}' ({file.file_name}) SHA512 不匹配")
                bad_checksum.append(entry)

        if untracked:
            await self._adopt(untracked, mods_dir, entries, declared, report)

        # (3) 文件已丢失的条目（被改名找回的除外）
        leftover = self._prune_missing(
            [entry for entry in by_file.values() if entries.get(entry.id) is entry],
            mods_dir,
            entries,
            declared,
            report,
        )

        # (4) 与配置中声明的根模组对齐
        self._prune_unreachable(mods_dir, entries, declared, report)

        report.new_mods = [
            mod
            for mod in declared
            if mod.source.is_registry and mod.id not in entries
        ]
        report.reinstall_bad_checksum = [
            entry for entry in bad_checksum if entry.id in entries
        ]
        report.missing_dependencies = self._missing_dependencies(leftover, entries)

        # (5) 保存
        new_config = replace(config, mods=declared)
        new_lockfile = list(entries.values())
        self.store.save_state(new_config, new_lockfile)
        report.config = new_config
        report.lockfile = new_lockfile

        logger.info(
            f"[同步] 完成: {len(report.missing_dependencies)} 个缺失依赖, "
            f"{len(report.new_mods)} 个新模组, "
            f"{len(report.reinstall_bad_checksum)} 个校验失败"
        )
        return report

    async def _scan(self, mods_dir: str) -> List[ScannedFile]:
        """扫描模组目录并计算哈希"""
        if not os.path.isdir(mods_dir):
            logger.warning(f"[扫描] 模组目录不存在: {mods_dir}")
            return []

        names = sorted(
            name
            for name in os.listdir(mods_dir)
            if name.lower().endswith(ARTIFACT_EXTENSION)
            and os.path.isfile(os.path.join(mods_dir, name))
        )
        hashes = await asyncio.gather(
            *(self.verifier.calc_hash(os.path.join(mods_dir, name)) for name in names)
        )

        scanned = []
        for name, digest in zip(names, hashes):
            if digest is None:
                logger.warning(f"[扫描] 无法读取文件: {name}")
                continue
            size = self.verifier.get_size(os.path.join(mods_dir, name))
            scanned.append(ScannedFile(name, digest, size))

        logger.debug(f"[扫描] 模组目录中共有 {len(scanned)} 个文件")
        return scanned

    async def _lookup(self, content_hash: str) -> Optional[Tuple[Source, VersionInfo]]:
        """依次在各注册表中反查哈希"""
        for source, client in self.clients.items():
            if not source.is_registry:
                continue
            try:
                return source, await client.resolve_by_hash(content_hash)
            except NotFoundError:
                continue
            except TransportError as e:
                logger.warning(f"[反查] {source.display_name} 请求失败: {e}")
        return None

    async def _adopt(
        self,
        untracked: List[ScannedFile],
        mods_dir: str,
        entries: Dict[str, ResolvedMod],
        declared: List[DeclaredMod],
        report: ReconcileReport,
    ):
        """登记未被跟踪的文件"""
        matches = await asyncio.gather(
            *(self._lookup(file.content_hash) for file in untracked)
        )

        for file, match in zip(untracked, matches):
            resolved = None
            if match is not None:
                source, info = match
                try:
                    resolved = info.to_resolved_mod(source)
                except ValueError:
                    resolved = None

            tracked = entries.get(resolved.id) if resolved is not None else None
            if tracked is not None and os.path.isfile(
                os.path.join(mods_dir, tracked.file_name)
            ):
                logger.warning(
                    f"[同步] '{file.file_name}' 与已跟踪的模组 '{resolved.name}' 重复，按本地模组登记"
                )
                resolved = tracked = None

            if resolved is not None:
                file_name = self._rename(mods_dir, file.file_name, resolved.file_name, report)
                resolved = resolved.with_changes(
                    file_name=file_name,
                    content_hash=file.content_hash,
                    size=file.size,
                )
            else:
                resolved = ResolvedMod.local(file.file_name, file.content_hash, file.size)
                logger.info(f"[同步] 无法匹配来源，登记为本地模组: {file.file_name}")

            entries[resolved.id] = resolved
            if tracked is not None:
                # 已跟踪模组的文件被改名，替换原条目
                logger.info(f"[同步] 找回模组 '{resolved.name}' ({resolved.file_name})")
                continue

            if resolved.source.is_registry:
                logger.info(f"[同步] 识别到模组 '{resolved.name}' ({resolved.file_name})")
            report.adopted.append(resolved)
            if not any(mod.id == resolved.id for mod in declared):
                declared.append(
                    DeclaredMod(source=resolved.source, id=resolved.id, name=resolved.name)
                )

    @staticmethod
    def _rename(
        mods_dir: str, current: str, target: str, report: ReconcileReport
    ) -> str:
        """重命名为注册表中的规范文件名，目标已存在时保留原名"""
        if current == target:
            return current

        dst = os.path.join(mods_dir, target)
        if os.path.exists(dst):
            logger.warning(f"[同步] 目标文件名已存在，保留原名: {current}")
            return current

        try:
            os.rename(os.path.join(mods_dir, current), dst)
        except OSError as e:
            logger.warning(f"[同步] 重命名 '{current}' 失败，保留原名: {e}")
            return current

        report.renamed.append((current, target))
        return target

    @staticmethod
    def _is_required(mod_id: str, entries: Dict[str, ResolvedMod]) -> bool:
        """是否仍有其他条目将其作为必需依赖"""
        return any(
            other.id != mod_id and other.requires(mod_id)
            for other in entries.values()
        )

    def _remove(
        self,
        entry: ResolvedMod,
        mods_dir: str,
        entries: Dict[str, ResolvedMod],
        declared_ids: Set[str],
        report: ReconcileReport,
    ):
        """
        移除条目，并按引用计数移除不再被需要的依赖

        仍被引用或在配置中声明的依赖不会被移除。
        """
        stack = [entry]
        while stack:
            current = stack.pop()
            if current.id not in entries:
                continue

            del entries[current.id]
            report.pruned.append(current)
            self._delete_file(mods_dir, current.file_name)
            logger.info(f"[同步] 移除模组 '{current.name}'")

            for dep_id in current.required_ids:
                dep = entries.get(dep_id)
                if dep is None or dep_id in declared_ids:
                    continue
                if not self._is_required(dep_id, entries):
                    stack.append(dep)

    @staticmethod
    def _delete_file(mods_dir: str, file_name: str):
        path = os.path.join(mods_dir, file_name)
        if os.path.isfile(path):
            os.remove(path)
            logger.debug(f"[同步] 已删除文件: {file_name}")

    def _prune_missing(
        self,
        leftover: List[ResolvedMod],
        mods_dir: str,
        entries: Dict[str, ResolvedMod],
        declared: List[DeclaredMod],
        report: ReconcileReport,
    ) -> List[ResolvedMod]:
        """
        处理文件已丢失的条目

        Returns:
            仍被其他模组依赖、需要重新下载的条目
        """
        missing: Dict[str, ResolvedMod] = {}
        for entry in leftover:
            if entry.source is Source.LOCAL:
                # 本地模组的文件消失即视为用户删除
                entries.pop(entry.id, None)
                declared[:] = [mod for mod in declared if mod.id != entry.id]
                report.pruned.append(entry)
                logger.info(f"[同步] 本地模组文件已删除: {entry.file_name}")
            else:
                missing[entry.id] = entry

        declared_ids = {mod.id for mod in declared}

        # 反复移除孤立条目，直到剩余条目全部被依赖
        changed = True
        while changed:
            changed = False
            for mod_id in list(missing):
                if mod_id not in entries:
                    del missing[mod_id]
                    continue
                if not self._is_required(mod_id, entries):
                    entry = missing.pop(mod_id)
                    self._remove(entry, mods_dir, entries, declared_ids, report)
                    changed = True

        return list(missing.values())

    def _prune_unreachable(
        self,
        mods_dir: str,
        entries: Dict[str, ResolvedMod],
        declared: List[DeclaredMod],
        report: ReconcileReport,
    ):
        """移除无法从声明的根模组沿必需依赖到达的条目"""
        reachable: Set[str] = set()
        stack = [mod.id for mod in declared if mod.id in entries]
        while stack:
            mod_id = stack.pop()
            if mod_id in reachable:
                continue
            reachable.add(mod_id)
            stack.extend(
                dep_id
                for dep_id in entries[mod_id].required_ids
                if dep_id in entries and dep_id not in reachable
            )

        for entry in [e for e in entries.values() if e.id not in reachable]:
            del entries[entry.id]
            report.pruned.append(entry)
            self._delete_file(mods_dir, entry.file_name)
            logger.info(f"[同步] 模组 '{entry.name}' 未在配置中声明，已移除")

    @staticmethod
    def _missing_dependencies(
        leftover: List[ResolvedMod], entries: Dict[str, ResolvedMod]
    ) -> List[DependencyRef]:
        """
        汇总需要重新解析的依赖：文件丢失但仍被依赖的条目，
        以及被必需却不在锁文件中的模组
        """
        missing: Dict[str, DependencyRef] = {}
        for entry in leftover:
            if entry.id in entries:
                missing[entry.id] = DependencyRef(
                    source=entry.source,
                    target_id=entry.id,
                    kind=DependencyKind.REQUIRED,
                )

        for entry in entries.values():
            for dep in entry.dependencies:
                if dep.kind is DependencyKind.REQUIRED and dep.target_id not in entries:
                    missing.setdefault(dep.target_id, dep)

        return list(missing.values())
