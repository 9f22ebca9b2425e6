"""
End-to-end flow tests: reconcile, resolve, download and commit only verified mods.
"""

import os

import pytest

from conftest import place
from modman.exceptions import ConfigError
from modman.models import DeclaredMod, ModLoader, ReleaseChannel, Source


def _files(store):
    mods = os.path.join(store.base_dir, "mods")
    return sorted(os.listdir(mods)) if os.path.isdir(mods) else []


def _lock_ids(store):
    return [entry.id for entry in store.load_lockfile()]


def _declared_ids(store):
    return [mod.id for mod in store.load_config().mods]


@pytest.fixture
def initialized(orchestrator):
    orchestrator.init("1.20.1", ModLoader.FABRIC)
    return orchestrator


class TestInit:
    def test_writes_config(self, orchestrator, store):
        config = orchestrator.init(
            "1.20.1", ModLoader.QUILT, [ReleaseChannel.RELEASE], mods_folder="./mods"
        )

        assert store.load_config() == config
        assert config.allowed_release_channels == [ReleaseChannel.RELEASE]
        assert os.path.isdir(os.path.join(store.base_dir, "mods"))

    def test_refuses_to_overwrite(self, initialized):
        with pytest.raises(ConfigError):
            initialized.init("1.20.4", ModLoader.FABRIC)

    def test_force_keeps_declared_mods(self, initialized, store):
        config = store.load_config()
        config.mods.append(DeclaredMod(Source.MODRINTH, "alpha", "Alpha"))
        store.save_config(config)

        config = initialized.init("1.20.4", ModLoader.FABRIC, force=True)

        assert config.game_version == "1.20.4"
        assert [mod.id for mod in config.mods] == ["alpha"]

    @pytest.mark.asyncio
    async def test_sync_requires_config(self, orchestrator):
        with pytest.raises(ConfigError):
            await orchestrator.sync()


class TestAdd:
    @pytest.mark.asyncio
    async def test_installs_root_and_dependencies(self, initialized, registry, store):
        registry.publish("alpha", requires=["beta"])
        registry.publish("beta")

        result = await initialized.add([("alpha", Source.MODRINTH)])

        assert result.ok
        assert [mod.id for mod in result.committed] == ["alpha", "beta"]
        assert _lock_ids(store) == ["alpha", "beta"]
        assert _declared_ids(store) == ["alpha"]
        assert _files(store) == ["alpha-1.0.0.jar", "beta-1.0.0.jar"]

    @pytest.mark.asyncio
    async def test_only_verified_items_are_committed(
        self, initialized, registry, downloader, store
    ):
        registry.publish("alpha", requires=["beta", "gamma"])
        registry.publish("beta")
        registry.publish("gamma")
        downloader.corrupt.add("beta")
        downloader.unreachable.add("gamma")

        result = await initialized.add([("alpha", Source.MODRINTH)])

        assert not result.ok
        assert [o.item.mod_id for o in result.failed_downloads] == ["beta", "gamma"]
        assert _lock_ids(store) == ["alpha"]
        assert _files(store) == ["alpha-1.0.0.jar"]

        # 下次同步时缺失的依赖被重新安装
        downloader.corrupt.clear()
        downloader.unreachable.clear()
        repaired = await initialized.sync()

        assert sorted(d.target_id for d in repaired.reconcile.missing_dependencies) == [
            "beta",
            "gamma",
        ]
        assert sorted(_lock_ids(store)) == ["alpha", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_failed_root_is_not_declared(self, initialized, registry, downloader, store):
        registry.publish("alpha")
        downloader.unreachable.add("alpha")

        result = await initialized.add([("alpha", Source.MODRINTH)])

        assert result.committed == []
        assert _declared_ids(store) == []
        assert store.load_lockfile() == []

    @pytest.mark.asyncio
    async def test_declined_confirmation(self, initialized, registry, downloader, store):
        registry.publish("alpha")
        plans = []

        def decline(plan):
            plans.append([mod.id for mod in plan])
            return False

        result = await initialized.add([("alpha", Source.MODRINTH)], confirm=decline)

        assert result.cancelled
        assert plans == [["alpha"]]
        assert downloader.plans == []
        assert _declared_ids(store) == []

    @pytest.mark.asyncio
    async def test_slug_is_declared_by_canonical_id(self, initialized, registry, store):
        registry.publish("AANobbMI", name="Sodium", slug="sodium")

        await initialized.add([("sodium", Source.MODRINTH)])

        assert store.load_config().mods == [
            DeclaredMod(Source.MODRINTH, "AANobbMI", "Sodium")
        ]

    @pytest.mark.asyncio
    async def test_installed_dependency_becomes_declared(
        self, initialized, registry, downloader, store
    ):
        registry.publish("alpha", requires=["beta"])
        registry.publish("beta")
        await initialized.add([("alpha", Source.MODRINTH)])

        result = await initialized.add([("beta", Source.MODRINTH)])

        assert result.resolution.already_installed == ["beta"]
        assert len(downloader.plans) == 1
        assert _declared_ids(store) == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_ignore_dependencies(self, initialized, registry, store):
        registry.publish("alpha", requires=["beta"])
        registry.publish("beta")

        await initialized.add([("alpha", Source.MODRINTH)], follow_dependencies=False)

        assert _lock_ids(store) == ["alpha"]

    @pytest.mark.asyncio
    async def test_incompatible_root_is_not_installed(
        self, initialized, registry, downloader, store
    ):
        registry.publish("alpha", requires=["beta"])
        registry.publish("beta", incompatible=["optifine"])
        registry.publish("other")

        result = await initialized.add(
            [("alpha", Source.MODRINTH), ("other", Source.MODRINTH)]
        )

        assert not result.ok
        assert [mod.id for mod in result.committed] == ["other"]
        assert _declared_ids(store) == ["other"]

    @pytest.mark.asyncio
    async def test_dependency_shared_with_incompatible_root(
        self, initialized, registry, store
    ):
        registry.publish("alpha", requires=["shared", "bad"])
        registry.publish("bad", incompatible=["optifine"])
        registry.publish("beta", requires=["shared"])
        registry.publish("shared")

        result = await initialized.add(
            [("alpha", Source.MODRINTH), ("beta", Source.MODRINTH)]
        )

        assert not result.ok
        assert sorted(_lock_ids(store)) == ["beta", "shared"]
        assert _declared_ids(store) == ["beta"]
        assert _files(store) == ["beta-1.0.0.jar", "shared-1.0.0.jar"]

        # 锁文件满足依赖闭包，再次同步无需修复
        repaired = await initialized.sync()
        assert repaired.reconcile.missing_dependencies == []


class TestSync:
    @pytest.mark.asyncio
    async def test_clean_sync(self, initialized, registry, downloader, store):
        registry.publish("alpha")
        await initialized.add([("alpha", Source.MODRINTH)])

        result = await initialized.sync()

        assert result.ok
        assert result.resolution is None
        assert len(downloader.plans) == 1

    @pytest.mark.asyncio
    async def test_restores_deleted_dependency(self, initialized, registry, store):
        registry.publish("alpha", requires=["beta"])
        registry.publish("beta")
        await initialized.add([("alpha", Source.MODRINTH)])
        os.remove(os.path.join(store.base_dir, "mods", "beta-1.0.0.jar"))

        result = await initialized.sync()

        assert [mod.id for mod in result.committed] == ["beta"]
        assert _files(store) == ["alpha-1.0.0.jar", "beta-1.0.0.jar"]

    @pytest.mark.asyncio
    async def test_reinstalls_tampered_file(self, initialized, registry, store):
        registry.publish("alpha")
        await initialized.add([("alpha", Source.MODRINTH)])
        path = os.path.join(store.base_dir, "mods", "alpha-1.0.0.jar")
        with open(path, "wb") as f:
            f.write(b"tampered")

        result = await initialized.sync()

        assert [entry.id for entry in result.reconcile.reinstall_bad_checksum] == ["alpha"]
        with open(path, "rb") as f:
            assert f.read() == registry.contents["alpha"]

    @pytest.mark.asyncio
    async def test_installs_hand_declared_mod(self, initialized, registry, store):
        registry.publish("alpha")
        config = store.load_config()
        config.mods.append(DeclaredMod(Source.MODRINTH, "alpha", "Alpha"))
        store.save_config(config)

        result = await initialized.sync()

        assert [mod.id for mod in result.reconcile.new_mods] == ["alpha"]
        assert _lock_ids(store) == ["alpha"]

    @pytest.mark.asyncio
    async def test_update_replaces_old_file(self, initialized, registry, store):
        registry.publish("alpha", requires=["beta"])
        registry.publish("beta", version="1.0.0")
        await initialized.add([("alpha", Source.MODRINTH)])
        os.remove(os.path.join(store.base_dir, "mods", "beta-1.0.0.jar"))
        registry.publish("beta", version="1.1.0")

        await initialized.sync()

        assert _files(store) == ["alpha-1.0.0.jar", "beta-1.1.0.jar"]
        assert [e.version for e in store.load_lockfile() if e.id == "beta"] == ["1.1.0"]

    @pytest.mark.asyncio
    async def test_adopts_untracked_files(self, initialized, registry, store):
        registry.publish("alpha")
        place(os.path.join(store.base_dir, "mods"), registry, "alpha")

        result = await initialized.sync()

        assert [entry.id for entry in result.reconcile.adopted] == ["alpha"]
        assert _declared_ids(store) == ["alpha"]


class TestRemove:
    @pytest.mark.asyncio
    async def test_prunes_dependencies_but_keeps_shared(self, initialized, registry, store):
        registry.publish("alpha", requires=["lib", "alpha-only"])
        registry.publish("other", requires=["lib"])
        registry.publish("lib")
        registry.publish("alpha-only")
        await initialized.add([("alpha", Source.MODRINTH), ("other", Source.MODRINTH)])

        removed, report = await initialized.remove(["alpha"])

        assert removed == ["alpha"]
        assert sorted(entry.id for entry in report.pruned) == ["alpha", "alpha-only"]
        assert sorted(_lock_ids(store)) == ["lib", "other"]
        assert _files(store) == ["lib-1.0.0.jar", "other-1.0.0.jar"]

    @pytest.mark.asyncio
    async def test_unknown_id(self, initialized):
        removed, report = await initialized.remove(["ghost"])

        assert removed == []
        assert report.pruned == []


class TestList:
    @pytest.mark.asyncio
    async def test_lists_state(self, initialized, registry):
        registry.publish("alpha")
        await initialized.add([("alpha", Source.MODRINTH)])

        config, lockfile = initialized.list_mods()

        assert [mod.id for mod in config.mods] == ["alpha"]
        assert [entry.id for entry in lockfile] == ["alpha"]
