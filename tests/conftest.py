"""
Pytest fixtures for modman tests.
"""

import asyncio
import hashlib
import os
from collections import Counter
from typing import Dict, Iterable, List, Optional

import pytest

from modman.download import DownloadItem, DownloadOutcome, DownloadStatus
from modman.exceptions import NotFoundError
from modman.models import (
    Config,
    DeclaredMod,
    DependencyInfo,
    DependencyKind,
    FileInfo,
    ModLoader,
    ResolvedMod,
    Source,
    VersionConstraint,
    VersionInfo,
)
from modman.orchestrator import ModManOrchestrator
from modman.services import RegistryClient
from modman.store import PersistentStore


def sha512(content: bytes) -> str:
    return hashlib.sha512(content).hexdigest()


class FakeRegistry(RegistryClient):
    """In-memory registry keyed by project id (and optional slug)."""

    source = Source.MODRINTH

    def __init__(self):
        self.versions: Dict[str, VersionInfo] = {}
        self.contents: Dict[str, bytes] = {}
        self.errors: Dict[str, Exception] = {}
        self.hash_errors: Dict[str, Exception] = {}
        self.calls: Counter = Counter()
        self.hash_calls: List[str] = []

    def publish(
        self,
        mod_id: str,
        name: Optional[str] = None,
        version: str = "1.0.0",
        requires: Iterable[str] = (),
        optional: Iterable[str] = (),
        incompatible: Iterable[str] = (),
        embedded: Iterable[str] = (),
        slug: Optional[str] = None,
        file_name: Optional[str] = None,
        content: Optional[bytes] = None,
    ) -> VersionInfo:
        content = content if content is not None else f"{mod_id}-{version}".encode()
        file_name = file_name or f"{mod_id}-{version}.jar"
        dependencies = (
            [DependencyInfo(d, DependencyKind.REQUIRED) for d in requires]
            + [DependencyInfo(d, DependencyKind.OPTIONAL) for d in optional]
            + [DependencyInfo(d, DependencyKind.INCOMPATIBLE) for d in incompatible]
            + [DependencyInfo(d, DependencyKind.EMBEDDED) for d in embedded]
        )
        info = VersionInfo(
            project_id=mod_id,
            version_id=f"{mod_id}-v{version}",
            display_name=name or mod_id.capitalize(),
            version=version,
            files=[
                FileInfo(
                    url=f"https://cdn.example.invalid/{mod_id}/{file_name}",
                    filename=file_name,
                    size=len(content),
                    hashes={"sha512": sha512(content)},
                    primary=True,
                )
            ],
            dependencies=dependencies,
            published_at="2024-01-01T00:00:00Z",
        )
        self.versions[mod_id] = info
        if slug:
            self.versions[slug] = info
        self.contents[mod_id] = content
        return info

    def resolved(self, mod_id: str) -> ResolvedMod:
        return self.versions[mod_id].to_resolved_mod(Source.MODRINTH)

    async def resolve_version(
        self, mod_id: str, constraint: VersionConstraint
    ) -> VersionInfo:
        self.calls[mod_id] += 1
        await asyncio.sleep(0)
        if mod_id in self.errors:
            raise self.errors[mod_id]
        if mod_id not in self.versions:
            raise NotFoundError(mod_id)
        return self.versions[mod_id]

    async def resolve_by_hash(self, content_hash: str) -> VersionInfo:
        self.hash_calls.append(content_hash)
        await asyncio.sleep(0)
        if content_hash in self.hash_errors:
            raise self.hash_errors[content_hash]
        for info in self.versions.values():
            if info.files[0].sha512 == content_hash:
                return info
        raise NotFoundError(content_hash)


class FakeDownloader:
    """Writes registry contents to disk instead of fetching over HTTP."""

    def __init__(self, registry: FakeRegistry):
        self.registry = registry
        self.corrupt = set()
        self.unreachable = set()
        self.plans: List[List[DownloadItem]] = []

    async def download(self, plan: List[DownloadItem]) -> List[DownloadOutcome]:
        self.plans.append(plan)
        outcomes = []
        for item in plan:
            if item.mod_id in self.unreachable:
                outcomes.append(
                    DownloadOutcome(item, DownloadStatus.TRANSPORT_FAILURE, detail="连接失败")
                )
                continue

            content = self.registry.contents[item.mod_id]
            if item.mod_id in self.corrupt:
                content = b"corrupted:" + content
            actual = sha512(content)
            if actual != item.expected_hash:
                outcomes.append(
                    DownloadOutcome(
                        item, DownloadStatus.CHECKSUM_MISMATCH, actual_hash=actual
                    )
                )
                continue

            os.makedirs(os.path.dirname(item.destination), exist_ok=True)
            with open(item.destination, "wb") as f:
                f.write(content)
            outcomes.append(
                DownloadOutcome(item, DownloadStatus.VERIFIED, actual_hash=actual)
            )
        return outcomes

    async def close(self):
        pass


def place(mods_dir: str, registry: FakeRegistry, mod_id: str, file_name=None) -> ResolvedMod:
    """Write a registry artifact into the mods folder and return its lockfile entry."""
    entry = registry.resolved(mod_id)
    os.makedirs(mods_dir, exist_ok=True)
    with open(os.path.join(mods_dir, file_name or entry.file_name), "wb") as f:
        f.write(registry.contents[mod_id])
    return entry


def write_file(mods_dir: str, file_name: str, content: bytes) -> str:
    os.makedirs(mods_dir, exist_ok=True)
    path = os.path.join(mods_dir, file_name)
    with open(path, "wb") as f:
        f.write(content)
    return path


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def store(tmp_path) -> PersistentStore:
    return PersistentStore(str(tmp_path))


@pytest.fixture
def mods_dir(tmp_path) -> str:
    return os.path.join(str(tmp_path), "mods")


@pytest.fixture
def config() -> Config:
    return Config(game_version="1.20.1", loader=ModLoader.FABRIC)


@pytest.fixture
def constraint(config) -> VersionConstraint:
    return config.constraint


@pytest.fixture
def declare():
    def _declare(config: Config, *mod_ids: str) -> Config:
        for mod_id in mod_ids:
            config.mods.append(DeclaredMod(Source.MODRINTH, mod_id, mod_id.capitalize()))
        return config

    return _declare


@pytest.fixture
def downloader(registry) -> FakeDownloader:
    return FakeDownloader(registry)


@pytest.fixture
def orchestrator(store, registry, downloader) -> ModManOrchestrator:
    return ModManOrchestrator(
        store=store,
        clients={Source.MODRINTH: registry},
        download_manager=downloader,
    )
