import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from pyright_playground.cache import validate_version
from pyright_playground.config import LANGSERVER_ENTRY_POINT
from pyright_playground.errors import InstallError, InvalidVersionError


class TestValidateVersion:
    @pytest.mark.parametrize("version", ["1.1.300", "1.10.0", "1.1.300-dev.1", "v2"])
    def test_accepts_version_strings(self, version):
        validate_version(version)

    @pytest.mark.parametrize("version", ["", "../etc", "1.1/300", ".hidden", "1 2"])
    def test_rejects_unsafe_strings(self, version):
        with pytest.raises(InvalidVersionError):
            validate_version(version)


class TestEnsureInstalled:
    @pytest.mark.asyncio
    async def test_installs_missing_version(self, make_cache, installer, clock, store):
        cache = make_cache()

        directory = await cache.ensure_installed("1.1.300")

        assert installer.calls == ["1.1.300"]
        assert directory == store.get_version_dir("1.1.300")
        assert directory.is_dir()
        assert store.last_used("1.1.300") == clock.now

    @pytest.mark.asyncio
    async def test_cache_hit_skips_installer_and_bumps_usage(self, make_cache, installer, clock, store):
        cache = make_cache()
        await cache.ensure_installed("1.1.300")
        clock.advance(30)

        await cache.ensure_installed("1.1.300")

        assert installer.calls == ["1.1.300"]
        assert store.last_used("1.1.300") == clock.now

    @pytest.mark.asyncio
    async def test_failed_install_leaves_nothing_behind(self, make_cache, installer, store):
        installer.failing.add("9.9.9")
        cache = make_cache()

        with pytest.raises(InstallError):
            await cache.ensure_installed("9.9.9")

        assert not store.is_installed("9.9.9")
        assert list(store.staging_dir.iterdir()) == []
        assert not cache.is_pinned("9.9.9")

    @pytest.mark.asyncio
    async def test_concurrent_requests_install_once(self, make_cache, installer):
        installer.gate = asyncio.Event()
        cache = make_cache()

        first = asyncio.create_task(cache.ensure_installed("1.1.300"))
        second = asyncio.create_task(cache.ensure_installed("1.1.300"))
        await asyncio.sleep(0.05)
        installer.gate.set()

        assert await first == await second
        assert installer.calls == ["1.1.300"]

    @pytest.mark.asyncio
    async def test_different_versions_install_in_parallel(self, make_cache, installer):
        installer.gate = asyncio.Event()
        cache = make_cache()

        tasks = [
            asyncio.create_task(cache.ensure_installed(v)) for v in ("1.1.300", "1.1.299")
        ]
        await asyncio.sleep(0.05)
        assert sorted(installer.calls) == ["1.1.299", "1.1.300"]

        installer.gate.set()
        await asyncio.gather(*tasks)


class TestEviction:
    @pytest.mark.asyncio
    async def test_capacity_two_evicts_oldest(self, make_cache, clock, store):
        cache = make_cache(capacity=2)
        await cache.ensure_installed("1.0.0")
        clock.advance(1)
        await cache.ensure_installed("1.0.1")
        clock.advance(1)

        await cache.ensure_installed("1.0.2")

        assert store.list_versions() == ["1.0.1", "1.0.2"]

    @pytest.mark.asyncio
    async def test_recent_use_protects_older_install(self, make_cache, clock, store):
        cache = make_cache(capacity=2)
        await cache.ensure_installed("1.0.0")
        clock.advance(1)
        await cache.ensure_installed("1.0.1")
        clock.advance(1)
        await cache.ensure_installed("1.0.0")
        clock.advance(1)

        await cache.ensure_installed("1.0.2")

        assert store.list_versions() == ["1.0.0", "1.0.2"]

    @pytest.mark.asyncio
    async def test_pinned_version_is_never_evicted(self, make_cache, clock, store):
        cache = make_cache(capacity=2)
        await cache.acquire("1.0.0")
        clock.advance(1)
        await cache.ensure_installed("1.0.1")
        clock.advance(1)

        await cache.ensure_installed("1.0.2")

        assert store.list_versions() == ["1.0.0", "1.0.2"]
        assert cache.is_pinned("1.0.0")

    @pytest.mark.asyncio
    async def test_ties_break_by_version_string(self, make_cache, store):
        cache = make_cache(capacity=2)
        await cache.ensure_installed("1.0.1")
        await cache.ensure_installed("1.0.0")

        await cache.ensure_installed("1.0.2")

        assert store.list_versions() == ["1.0.1", "1.0.2"]

    @pytest.mark.asyncio
    async def test_orphan_directories_go_first(self, make_cache, store, clock):
        store.get_version_dir("0.9.0").mkdir(parents=True)
        cache = make_cache(capacity=2)
        await cache.load()
        await cache.ensure_installed("1.0.0")
        clock.advance(1)

        await cache.ensure_installed("1.0.1")

        assert store.list_versions() == ["1.0.0", "1.0.1"]

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_evict(self, make_cache, store):
        store.get_version_dir("1.0.0").mkdir(parents=True)
        store.get_version_dir("1.0.1").mkdir(parents=True)
        store.get_version_dir("1.0.2").mkdir(parents=True)
        cache = make_cache(capacity=2)
        await cache.load()

        await cache.ensure_installed("1.0.0")

        assert len(store.list_versions()) == 3

    @pytest.mark.asyncio
    async def test_all_pinned_overflows_capacity(self, make_cache, store):
        cache = make_cache(capacity=1)
        await cache.acquire("1.0.0")
        await cache.acquire("1.0.1")

        assert store.list_versions() == ["1.0.0", "1.0.1"]

    @pytest.mark.asyncio
    async def test_failed_delete_does_not_leave_broken_install(
        self, make_cache, installer, clock, store
    ):
        cache = make_cache(capacity=1)
        await cache.ensure_installed("1.0.0")
        clock.advance(1)

        def partial_rmtree(path, *args, **kwargs):
            (Path(path) / LANGSERVER_ENTRY_POINT).unlink()
            raise OSError("device busy")

        with patch("pyright_playground.storage.local.shutil.rmtree", side_effect=partial_rmtree):
            await cache.ensure_installed("1.0.1")

        assert store.list_versions() == ["1.0.1"]
        assert not store.is_installed("1.0.0")

        clock.advance(1)
        directory = await cache.ensure_installed("1.0.0")

        assert installer.calls == ["1.0.0", "1.0.1", "1.0.0"]
        assert (directory / LANGSERVER_ENTRY_POINT).is_file()

    @pytest.mark.asyncio
    async def test_evicted_leftovers_cleared_on_load(self, make_cache, clock, store):
        cache = make_cache(capacity=1)
        await cache.ensure_installed("1.0.0")
        clock.advance(1)

        with patch("pyright_playground.storage.local.shutil.rmtree", side_effect=OSError("busy")):
            await cache.ensure_installed("1.0.1")
        assert list(store.staging_dir.iterdir()) != []

        await cache.load()

        assert not store.staging_dir.exists()
        assert store.list_versions() == ["1.0.1"]


class TestInstallLocks:
    @pytest.mark.asyncio
    async def test_locks_released_after_failed_installs(self, make_cache, installer):
        cache = make_cache()
        versions = [f"9.9.{n}" for n in range(50)]
        installer.failing.update(versions)

        for version in versions:
            with pytest.raises(InstallError):
                await cache.ensure_installed(version)

        assert cache._install_locks == {}

    @pytest.mark.asyncio
    async def test_locks_released_after_success(self, make_cache):
        cache = make_cache()

        await cache.ensure_installed("1.1.300")
        await cache.ensure_installed("1.1.300")

        assert cache._install_locks == {}

    @pytest.mark.asyncio
    async def test_waiters_share_one_lock_until_done(self, make_cache, installer):
        installer.gate = asyncio.Event()
        cache = make_cache()

        tasks = [asyncio.create_task(cache.ensure_installed("1.1.300")) for _ in range(3)]
        await asyncio.sleep(0.05)

        assert list(cache._install_locks) == ["1.1.300"]
        assert cache._lock_users["1.1.300"] == 3

        installer.gate.set()
        await asyncio.gather(*tasks)

        assert cache._install_locks == {}
        assert installer.calls == ["1.1.300"]


class TestPins:
    @pytest.mark.asyncio
    async def test_acquire_holds_pin_until_released(self, make_cache):
        cache = make_cache()
        await cache.acquire("1.1.300")
        assert cache.is_pinned("1.1.300")

        cache.unpin("1.1.300")
        assert not cache.is_pinned("1.1.300")

    @pytest.mark.asyncio
    async def test_pins_are_counted(self, make_cache):
        cache = make_cache()
        await cache.acquire("1.1.300")
        await cache.acquire("1.1.300")

        cache.unpin("1.1.300")
        assert cache.is_pinned("1.1.300")
        cache.unpin("1.1.300")
        assert not cache.is_pinned("1.1.300")

    @pytest.mark.asyncio
    async def test_failed_acquire_releases_pin(self, make_cache, installer):
        installer.failing.add("9.9.9")
        cache = make_cache()

        with pytest.raises(InstallError):
            await cache.acquire("9.9.9")

        assert not cache.is_pinned("9.9.9")

    @pytest.mark.asyncio
    async def test_invalid_version_rejected_before_install(self, make_cache, installer):
        cache = make_cache()

        with pytest.raises(InvalidVersionError):
            await cache.acquire("../../bin")

        assert installer.calls == []
