"""
End-to-end reconcile sequences through BaseScanProvider with in-memory clients.
"""
import pytest

from oobscan.core.exceptions import FatalError, RetryableError
from oobscan.modules.scanning.domain.models import ResourceState
from oobscan.modules.scanning.domain.naming import resource_names
from oobscan.shared.core.config import get_settings
from tests.fakes import SCAN_ID, FakeAPIError, FakeScanProvider, collect_retries

NAMES = resource_names(SCAN_ID)


def _live(provider):
    """Names of every resource the fake provider currently holds."""
    stores = [provider.snapshots.store, provider.volumes.store, provider.compute.store]
    if provider.staged_copies is not None:
        stores.append(provider.staged_copies.store)
    if provider.network_interfaces is not None:
        stores.append(provider.network_interfaces.store)
    return {name for store in stores for name in store.states}


class TestRunAssetScan:
    async def test_same_region_converges_without_staged_copy(self, provider, descriptor, timing):
        retries = await collect_retries(provider.run_asset_scan, descriptor)

        assert [r.suggested_delay for r in retries] == [
            timing.snapshot,
            timing.snapshot,
            timing.volume,
            timing.volume,
            timing.compute,
            timing.compute,
            timing.compute,
            timing.compute,
            timing.compute,
            timing.compute,
        ]
        assert provider.staged_copies.store.created == []
        assert provider.staged_copies.grants_issued == 0
        source = provider.volumes.sources[NAMES.volume]
        assert not source.is_import
        assert source.snapshot.name == NAMES.snapshot
        assert provider.compute.create_args[NAMES.compute]["network_interface"].name == NAMES.network_interface
        assert provider.compute.attach_calls == 1

    async def test_cross_region_copies_then_revokes_exactly_once(self, provider, cross_region_descriptor, timing):
        retries = await collect_retries(provider.run_asset_scan, cross_region_descriptor)

        assert [r.suggested_delay for r in retries][:4] == [
            timing.snapshot,
            timing.snapshot,
            timing.staged_copy,
            timing.staged_copy,
        ]
        assert len(retries) == 12
        staged = provider.staged_copies
        assert staged.grants_issued == 1
        assert staged.revocations == 1
        assert not staged.active_grants
        source = provider.volumes.sources[NAMES.volume]
        assert source.is_import
        assert source.staged_copy.name == NAMES.staged_copy

    async def test_cross_region_without_staged_copy_support_uses_snapshot(
        self, timing, cross_region_descriptor
    ):
        provider = FakeScanProvider(get_settings(), timing, staged_copies=False, network_interfaces=False)
        retries = await collect_retries(provider.run_asset_scan, cross_region_descriptor)
        assert len(retries) == 8
        assert not provider.volumes.sources[NAMES.volume].is_import
        assert provider.compute.create_args[NAMES.compute]["network_interface"] is None

    async def test_repeated_runs_after_ready_create_nothing(self, provider, cross_region_descriptor):
        await collect_retries(provider.run_asset_scan, cross_region_descriptor)
        for _ in range(3):
            await provider.run_asset_scan(cross_region_descriptor)

        assert provider.snapshots.store.created == [NAMES.snapshot]
        assert provider.staged_copies.store.created == [NAMES.staged_copy]
        assert provider.volumes.store.created == [NAMES.volume]
        assert provider.network_interfaces.store.created == [NAMES.network_interface]
        assert provider.compute.store.created == [NAMES.compute]
        assert provider.compute.attach_calls == 1
        assert provider.staged_copies.grants_issued == provider.staged_copies.revocations == 1

    async def test_failed_snapshot_short_circuits(self, provider, descriptor):
        with pytest.raises(RetryableError):
            await provider.run_asset_scan(descriptor)
        provider.snapshots.store.set_state(NAMES.snapshot, ResourceState.FAILED)

        with pytest.raises(FatalError):
            await provider.run_asset_scan(descriptor)
        assert provider.volumes.store.created == []
        assert provider.compute.store.created == []

    async def test_fatal_volume_create_leaves_teardown_possible(self, provider, descriptor):
        provider.volumes.store.fail_next("create", FakeAPIError(400, "InvalidParameter"))
        with pytest.raises(FatalError):
            await collect_retries(provider.run_asset_scan, descriptor)

        await collect_retries(provider.remove_asset_scan, descriptor)
        assert _live(provider) == set()

    @pytest.mark.parametrize(
        "client, operation",
        [
            ("staged_copies", "start_copy"),
            ("volumes", "create"),
            ("network_interfaces", "create"),
            ("compute", "create"),
        ],
    )
    async def test_authorization_failure_at_any_step_is_fatal(
        self, provider, cross_region_descriptor, client, operation
    ):
        getattr(provider, client).store.fail_next(operation, FakeAPIError(403, "AuthorizationFailed"))

        with pytest.raises(FatalError):
            await collect_retries(provider.run_asset_scan, cross_region_descriptor)

        assert provider.compute.store.created == []
        assert provider.compute.attach_calls == 0
        assert not provider.staged_copies.active_grants

    async def test_authorization_failure_on_attach_is_fatal(self, provider, descriptor):
        provider.compute.store.fail_next("attach_volume", FakeAPIError(403, "AuthorizationFailed"))

        with pytest.raises(FatalError):
            await collect_retries(provider.run_asset_scan, descriptor)

        assert provider.compute.attach_calls == 0
        assert provider.compute.attachments == {}


class TestRemoveAssetScan:
    async def test_teardown_of_nothing_succeeds_immediately(self, provider, descriptor):
        await provider.remove_asset_scan(descriptor)
        assert provider.snapshots.store.deleted == []

    async def test_teardown_deletes_in_reverse_order(self, provider, cross_region_descriptor, timing):
        await collect_retries(provider.run_asset_scan, cross_region_descriptor)
        retries = await collect_retries(provider.remove_asset_scan, cross_region_descriptor)

        assert len(retries) == 5
        assert all(r.suggested_delay == timing.teardown for r in retries)
        assert _live(provider) == set()
        assert provider.compute.store.deleted == [NAMES.compute]
        assert provider.network_interfaces.store.deleted == [NAMES.network_interface]
        assert provider.volumes.store.deleted == [NAMES.volume]
        assert provider.staged_copies.store.deleted == [NAMES.staged_copy]
        assert provider.snapshots.store.deleted == [NAMES.snapshot]

    async def test_teardown_is_repeatable(self, provider, descriptor):
        await collect_retries(provider.run_asset_scan, descriptor)
        await collect_retries(provider.remove_asset_scan, descriptor)
        await provider.remove_asset_scan(descriptor)
        await provider.remove_asset_scan(descriptor)
        assert provider.snapshots.store.deleted == [NAMES.snapshot]

    async def test_teardown_mid_copy_closes_open_grant(self, provider, cross_region_descriptor):
        # Snapshot ready, copy started, grant still open
        for _ in range(3):
            with pytest.raises(RetryableError):
                await provider.run_asset_scan(cross_region_descriptor)
        staged = provider.staged_copies
        assert staged.active_grants

        await collect_retries(provider.remove_asset_scan, cross_region_descriptor)
        assert staged.grants_issued == staged.revocations == 1
        assert _live(provider) == set()

    async def test_teardown_waits_out_throttling(self, provider, descriptor, timing):
        await collect_retries(provider.run_asset_scan, descriptor)
        provider.compute.store.fail_next("lookup", FakeAPIError(429))
        with pytest.raises(RetryableError) as exc:
            await provider.remove_asset_scan(descriptor)
        assert exc.value.suggested_delay == timing.throttle
        await collect_retries(provider.remove_asset_scan, descriptor)
        assert _live(provider) == set()

    async def test_provider_is_an_async_context_manager(self, provider):
        async with provider as entered:
            assert entered is provider
        assert provider.closed
